"""
Error and warning taxonomy for pymmdist.

Construction-time problems (grids, kernels, solver inputs) raise; numerical
degeneracies met while solving are recovered and reported through a
``status`` entry in the solver result plus a warning.

    PymmdistError
    ├── InvalidGridSpec      malformed span / counts / edges / cut
    ├── SetpointMismatch     device setpoints disagree with each other or the data
    └── DimensionMismatch    vector and matrix shapes disagree

    PymmdistWarning (UserWarning)
    ├── SingularSystemWarning   normal equations replaced by a fallback solve
    └── NonConvergenceWarning   iterative solver missed its tolerance
"""

from __future__ import annotations


class PymmdistError(Exception):
    """Base class for errors raised by pymmdist."""


class InvalidGridSpec(PymmdistError, ValueError):
    """Grid span, element counts, edges, spacing mode or cut are malformed."""


class SetpointMismatch(PymmdistError, ValueError):
    """Setpoint counts disagree between devices or with the data vector."""


class DimensionMismatch(PymmdistError, ValueError):
    """Array shapes are inconsistent (grid vectors, A, b, L, x0)."""


class PymmdistWarning(UserWarning):
    """Base class for recoverable numerical conditions."""


class SingularSystemWarning(PymmdistWarning):
    """The full solve did not run; a minimum-norm or bounded fallback was used."""


class NonConvergenceWarning(PymmdistWarning):
    """An iterative solver stopped at its iteration budget above tolerance."""


# Solver status strings
STATUS_NORMAL = 'normal_equations'
STATUS_NNLS = 'nnls'
STATUS_LSTSQ = 'lstsq'
STATUS_LSQ_LINEAR = 'lsq_linear'
STATUS_COMPLETE = 'complete'
STATUS_CONVERGED = 'converged'
STATUS_NOT_CONVERGED = 'not_converged'

FALLBACK_STATUSES = frozenset({STATUS_LSTSQ, STATUS_LSQ_LINEAR})
