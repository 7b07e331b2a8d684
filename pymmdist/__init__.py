"""
pymmdist: inversion of two-dimensional particle size distributions

Reconstructs a distribution x on a 2-D grid (e.g. particle mass x mobility
diameter) from tandem measurements b = A x + e, where the kernel A combines
instrument transfer functions over charge states.

Modules:
    core: grids, kernel assembly, regularization operators and solvers
    state: persistent JSON settings
    batch: headless inversion runs driven by a config file

Example:
    >>> from pymmdist import Grid, gen_kernel, tikhonov
    >>> grid = Grid([[0.01, 100], [10, 1000]], [50, 64], 'log').partial(0, 1)
    >>> A = gen_kernel([pma, dma], grid, tfer_charge, n_data=b.size)
    >>> res = tikhonov(A, b, 1.0, order=1, grid=grid, nonneg=True)
    >>> X = grid.reshape(res['x'])
"""

__version__ = "0.1.0"

from pymmdist.core import (
    Grid,
    GridLike,
    PartialGrid,
    TransferDevice,
    charge_contributions,
    gen_kernel,
    rebase_kernel,
    tikhonov_lpr,
    exp_dist_lpr,
    tikhonov,
    exp_dist,
    twomey,
    mart,
    initial_guess,
    tikhonov_sweep,
    exp_dist_sweep,
    twomey_sweep,
    PymmdistError,
    InvalidGridSpec,
    SetpointMismatch,
    DimensionMismatch,
    SingularSystemWarning,
    NonConvergenceWarning,
)
from pymmdist.batch import load_config, grid_from_config, kernel_from_config, run_inversions, invert_from_config
from pymmdist.state import StateManager

__all__ = [
    "Grid",
    "GridLike",
    "PartialGrid",
    "TransferDevice",
    "charge_contributions",
    "gen_kernel",
    "rebase_kernel",
    "tikhonov_lpr",
    "exp_dist_lpr",
    "tikhonov",
    "exp_dist",
    "twomey",
    "mart",
    "initial_guess",
    "tikhonov_sweep",
    "exp_dist_sweep",
    "twomey_sweep",
    "PymmdistError",
    "InvalidGridSpec",
    "SetpointMismatch",
    "DimensionMismatch",
    "SingularSystemWarning",
    "NonConvergenceWarning",
    "load_config",
    "grid_from_config",
    "kernel_from_config",
    "run_inversions",
    "invert_from_config",
    "StateManager",
]
