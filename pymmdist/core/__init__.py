"""
Core modules for pymmdist.

This package contains the discretisation and inversion engine:
- Grid / PartialGrid: 2-D size-parameter grids, full or with a cut region removed
- Kernel assembly from instrument transfer functions
- Regularization operators (Tikhonov orders 0-2, exponential distance)
- Solvers: Tikhonov, exponential distance, Twomey, MART
"""

from pymmdist.core.errors import (
    DimensionMismatch,
    InvalidGridSpec,
    NonConvergenceWarning,
    PymmdistError,
    PymmdistWarning,
    SetpointMismatch,
    SingularSystemWarning,
)
from pymmdist.core.grid import Grid, GridLike
from pymmdist.core.partial_grid import PartialGrid
from pymmdist.core.kernel import TransferDevice, charge_contributions, gen_kernel, rebase_kernel
from pymmdist.core.regularization import exp_dist_gpr, exp_dist_lpr, tikhonov_lpr
from pymmdist.core.invert import exp_dist, initial_guess, mart, tikhonov, twomey
from pymmdist.core.sweep import exp_dist_sweep, tikhonov_sweep, twomey_sweep

__all__ = [
    "Grid", "GridLike", "PartialGrid",
    "TransferDevice", "charge_contributions", "gen_kernel", "rebase_kernel",
    "tikhonov_lpr", "exp_dist_lpr", "exp_dist_gpr",
    "tikhonov", "exp_dist", "twomey", "mart", "initial_guess",
    "tikhonov_sweep", "exp_dist_sweep", "twomey_sweep",
    "PymmdistError", "InvalidGridSpec", "SetpointMismatch", "DimensionMismatch",
    "PymmdistWarning", "SingularSystemWarning", "NonConvergenceWarning",
]
