"""
pymmdist.batch - headless inversion API for scripting and automation.

A configuration file is a JSON document with a ``_pymmdist_config`` header
and the sections of ``pymmdist.state.StateManager.DEFAULT_STATE`` (``grid``,
``partial_grid``, ``kernel``, ``tikhonov``, ``exp_dist``, ``twomey``, ``mart``).  Each
solver section with ``"enabled": true`` is run.

Typical usage
-------------
Build the reconstruction grid from a config, assemble the kernel, invert:
    from pymmdist.batch import load_config, grid_from_config, kernel_from_config, run_inversions
    config = load_config("pymmdist_config.json")
    grid = grid_from_config(config['grid'], config.get('partial_grid'))
    A = kernel_from_config([pma, dma], grid, tfer_charge, config.get('kernel'), n_data=b.size)
    results = run_inversions(A, b, grid, config, sigma=sigma)
    x = results['tikhonov']['x']

Config file and data in one call:
    results = invert_from_config(A, b, "pymmdist_config.json", grid=grid)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Union

import numpy as np

from pymmdist.core.errors import PymmdistError
from pymmdist.core.grid import Grid, GridLike
from pymmdist.core.invert import exp_dist, initial_guess, mart, tikhonov, twomey
from pymmdist.core.kernel import DEFAULT_CHARGE_STATES, DEFAULT_THRESHOLD, TransferDevice, gen_kernel
from pymmdist.core.partial_grid import PartialGrid

log = logging.getLogger(__name__)

CONFIG_HEADER = '_pymmdist_config'

METHODS = ('tikhonov', 'exp_dist', 'twomey', 'mart')


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def load_config(config_file: Union[str, Path]) -> Optional[Dict]:
    """Load and validate a pymmdist JSON config file.  Returns None on failure."""
    config_file = Path(config_file)
    try:
        with open(config_file, 'r') as f:
            config = json.load(f)
    except (OSError, ValueError) as e:
        log.error(f"Cannot read config file '{config_file}': {e}")
        return None

    if not isinstance(config, dict) or CONFIG_HEADER not in config:
        log.error(f"'{config_file}' is not a pymmdist configuration file "
                  f"(missing '{CONFIG_HEADER}' header).")
        return None

    return config


def grid_from_config(grid_section: Dict, partial_section: Optional[Dict] = None) -> GridLike:
    """
    Build the reconstruction grid described by a config.

    Args:
        grid_section:    ``{'span': [[min0, max0], [min1, max1]], 'ne': [n0, n1],
                         'discrete': 'logarithmic'}``, or ``'edges'`` in place
                         of ``span``/``ne``.
        partial_section: Optional cut settings; a ``PartialGrid`` is returned
                         when present with ``enabled`` true.

    Raises:
        InvalidGridSpec: for malformed grid or cut settings.
    """
    discrete = grid_section.get('discrete', 'logarithmic')
    span = grid_section.get('span')
    ne = grid_section.get('ne')
    edges = grid_section.get('edges')

    if partial_section and partial_section.get('enabled', True):
        grid = PartialGrid(
            span, ne, discrete,
            r0=partial_section.get('r0'),
            slope0=partial_section.get('slope0', 1.0),
            r1=partial_section.get('r1'),
            slope1=partial_section.get('slope1', 0.0),
            edges=edges,
        )
    else:
        grid = Grid(span, ne, discrete, edges=edges)

    log.info(f"Grid from config: {grid!r}")
    return grid


def kernel_from_config(
    devices: Sequence[TransferDevice],
    grid: GridLike,
    charge_fraction: Callable,
    kernel_section: Optional[Dict] = None,
    n_data: Optional[int] = None,
):
    """
    Assemble the kernel with the charging settings of a config.

    Args:
        devices:         Transfer devices, as for ``gen_kernel``.
        grid:            Reconstruction grid.
        charge_fraction: ``charge_fraction(sizes, charge_states)``.
        kernel_section:  ``{'charge_states': [1, 2, 3], 'threshold': 1e-7,
                         'charge_axis': 1}``; missing keys use the
                         ``gen_kernel`` defaults.
        n_data:          Data length the setpoints must match.
    """
    section = kernel_section or {}
    return gen_kernel(
        devices, grid, charge_fraction,
        charge_states=tuple(int(z) for z in section.get('charge_states', DEFAULT_CHARGE_STATES)),
        threshold=float(section.get('threshold', DEFAULT_THRESHOLD)),
        charge_axis=int(section.get('charge_axis', 1)),
        n_data=n_data,
    )


# ---------------------------------------------------------------------------
# Inversions
# ---------------------------------------------------------------------------

def _run_method(method: str, A, b, grid: GridLike, section: Dict, x0, sigma) -> Dict:
    if method == 'tikhonov':
        return tikhonov(
            A, b, float(section.get('lambda', 1.0)),
            order=int(section.get('order', 1)),
            grid=grid,
            nonneg=bool(section.get('nonneg', True)),
            sigma=sigma,
        )
    if method == 'exp_dist':
        return exp_dist(
            A, b, float(section.get('lambda', 1.0)),
            np.asarray(section['Gd'], dtype=float), grid,
            nonneg=bool(section.get('nonneg', False)),
            truncation=float(section.get('truncation', 0.01)),
            sigma=sigma,
        )
    if method == 'twomey':
        return twomey(
            A, b, x0=x0,
            iterations=int(section.get('iterations', 500)),
            grid=grid,
            smooth=bool(section.get('smooth', False)),
            tol=section.get('tol'),
        )
    return mart(
        A, b, x0=x0,
        iterations=int(section.get('iterations', 100)),
        relaxation=float(section.get('relaxation', 1.0)),
        tol=section.get('tol'),
    )


def run_inversions(
    A,
    b,
    grid: GridLike,
    config: Dict,
    x_ref=None,
    x0=None,
    grid_b: Optional[GridLike] = None,
    sigma=None,
) -> Dict[str, Optional[Dict]]:
    """
    Run every enabled inversion method in ``config``.

    Parameters
    ----------
    A, b : kernel and data.
    grid : reconstruction grid the kernel was built on.
    config : dict
        Configuration (from ``load_config`` or ``StateManager.state``).
    x_ref : array, optional
        Reference distribution; adds ``'error'`` (``||x - x_ref||``) to each
        result.
    x0 : array, optional
        Initial guess for the iterative methods.
    grid_b : Grid, optional
        Grid of the data points.  When given (and ``x0`` is not) the
        iterative methods start from ``initial_guess(A, b, grid_b, grid)``.
    sigma : array, optional
        Data uncertainties.  The regularized methods invert the
        noise-weighted system (see ``tikhonov``); the iterative schemes use
        the raw data.

    Returns
    -------
    dict
        ``{method: result}`` for each enabled method.  A method that fails on
        invalid input maps to None and the failure is logged.
    """
    if x0 is None and grid_b is not None:
        x0 = initial_guess(A, b, grid_b, grid)
    if x_ref is not None:
        x_ref = np.asarray(x_ref, dtype=float).ravel()

    results = {}
    for method in METHODS:
        section = config.get(method)
        if not section or not section.get('enabled', False):
            continue

        log.info(f"Running {method} inversion")
        try:
            result = _run_method(method, A, b, grid, section, x0, sigma)
        except (PymmdistError, ValueError, KeyError) as e:
            log.error(f"{method} inversion failed: {e}")
            results[method] = None
            continue

        if x_ref is not None:
            result['error'] = float(np.linalg.norm(result['x'] - x_ref))
        log.info(f"{method}: status={result['status']}, residual={result['residual_norm']:.4g}")
        results[method] = result

    return results


def invert_from_config(
    A,
    b,
    config_file: Union[str, Path],
    grid: Optional[GridLike] = None,
    x_ref=None,
    x0=None,
    sigma=None,
) -> Optional[Dict[str, Optional[Dict]]]:
    """
    Load ``config_file`` and run its enabled inversions on ``A``, ``b``.

    The grid is built from the config's ``grid`` / ``partial_grid`` sections
    unless one is passed in.  Returns None if the config cannot be used.
    """
    config = load_config(config_file)
    if config is None:
        return None

    if grid is None:
        if 'grid' not in config:
            log.error(f"Config file '{config_file}' has no 'grid' group.")
            return None
        try:
            grid = grid_from_config(config['grid'], config.get('partial_grid'))
        except PymmdistError as e:
            log.error(f"Invalid grid in '{config_file}': {e}")
            return None

    return run_inversions(A, b, grid, config, x_ref=x_ref, x0=x0, sigma=sigma)
