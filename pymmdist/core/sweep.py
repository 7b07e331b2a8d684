"""
Parameter sweeps over the solvers in ``pymmdist.core.invert``.

Each sweep evaluates one solver over a sequence of parameter values and
returns

    {'results': [result, ...],   one solver result dict per value
     'values':  np.ndarray,      the parameter values, in input order
     'errors':  np.ndarray|None, ||x - x_ref|| per value when x_ref is given
     'best':    int|None}        index of the smallest error

so that the regularization parameter (or the Twomey iteration count) can be
chosen against a known phantom, or later by an external criterion.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np

from pymmdist.core.grid import GridLike
from pymmdist.core.invert import exp_dist, mart, tikhonov, twomey
from pymmdist.core.regularization import DEFAULT_TRUNCATION, exp_dist_lpr

log = logging.getLogger(__name__)


def _summarize(results: list, values, x_ref) -> dict:
    errors = None
    best = None
    if x_ref is not None:
        x_ref = np.asarray(x_ref, dtype=float).ravel()
        errors = np.array([np.linalg.norm(r['x'] - x_ref) for r in results])
        for r, err in zip(results, errors):
            r['error'] = float(err)
        best = int(np.argmin(errors)) if errors.size else None
    return {
        'results': results,
        'values':  np.asarray(values),
        'errors':  errors,
        'best':    best,
    }


def tikhonov_sweep(
    A,
    b,
    lambdas: Sequence[float],
    order=1,
    grid: Optional[GridLike] = None,
    x_ref=None,
    nonneg: bool = False,
    weight=None,
    sigma=None,
) -> dict:
    """Tikhonov solution for every lambda in ``lambdas`` (``sigma`` weights the data rows)."""
    lambdas = np.asarray(lambdas, dtype=float).ravel()
    log.debug(f"Tikhonov sweep over {lambdas.size} lambda values (order {order})")
    results = [
        tikhonov(A, b, lam, order=order, grid=grid, nonneg=nonneg, weight=weight, sigma=sigma)
        for lam in lambdas
    ]
    return _summarize(results, lambdas, x_ref)


def exp_dist_sweep(
    A,
    b,
    lambdas: Sequence[float],
    Gd,
    grid: GridLike,
    x_ref=None,
    nonneg: bool = False,
    truncation: float = DEFAULT_TRUNCATION,
    sigma=None,
) -> dict:
    """
    Exponential-distance solution for every lambda in ``lambdas``.

    The prior operator depends only on ``Gd`` and the grid, so it is built
    once and shared by all points.  ``sigma`` weights the data rows as in
    ``exp_dist``.
    """
    lambdas = np.asarray(lambdas, dtype=float).ravel()
    L = exp_dist_lpr(Gd, grid, truncation=truncation)
    log.debug(f"Exponential-distance sweep over {lambdas.size} lambda values")
    results = [
        exp_dist(A, b, lam, Gd, grid, nonneg=nonneg, L=L, sigma=sigma)
        for lam in lambdas
    ]
    return _summarize(results, lambdas, x_ref)


def twomey_sweep(
    A,
    b,
    x0=None,
    iterations: Sequence[int] = (1, 10, 100),
    x_ref=None,
    grid: Optional[GridLike] = None,
    smooth: bool = False,
    warm_start: Optional[str] = None,
) -> dict:
    """
    Twomey solutions after each iteration count in ``iterations``.

    The counts are sorted and the iteration is continued from one recorded
    point to the next, so the whole sweep costs ``max(iterations)`` sweeps
    and each entry equals a fresh ``twomey`` run with that many iterations.

    With ``warm_start='mart'`` the first (smallest) count is run with
    ``mart`` instead and Twomey continues from that estimate; the first
    entry is then the MART result.
    """
    if warm_start not in (None, 'mart'):
        raise ValueError(f"Unknown warm start {warm_start!r}; expected None or 'mart'.")
    counts = np.unique(np.asarray(iterations, dtype=int).ravel())
    if counts.size == 0 or counts[0] < 0:
        raise ValueError(f"Iteration counts must be non-negative, got {list(iterations)}.")

    results = []
    x = x0
    done = 0
    for n in counts:
        if warm_start == 'mart' and not results:
            res = mart(A, b, x0=x, iterations=int(n))
        else:
            res = twomey(A, b, x0=x, iterations=int(n - done), grid=grid, smooth=smooth)
        res['n_iterations'] = int(n)
        results.append(res)
        x = res['x']
        done = int(n)
        log.debug(f"Twomey sweep: {n} iterations, residual {res['residual_norm']:.4g}")

    return _summarize(results, counts, x_ref)
