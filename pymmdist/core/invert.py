"""
Solvers for the linear inverse problem ``b = A x + e``.

Two families are provided, all consuming the same kernel ``A`` (dense or
sparse, ``(n_b, Ne)``) and data ``b``:

  * Regularized least squares - ``tikhonov`` (orders 0, 1, 2 or a custom
    operator) and ``exp_dist`` (exponential-distance prior).  Both minimise

        ||A x - b||^2 + lambda^2 ||L x||^2

    through the normal equations ``(A'A + lambda^2 L'L) x = A'b`` (Cholesky),
    or through ``scipy.optimize.nnls`` on the augmented system
    ``[A; lambda L] x = [b; 0]`` when ``nonneg=True``.
  * Multiplicative iterative schemes - ``twomey`` and ``mart``, which keep
    x non-negative by construction and run for a fixed iteration budget.

Every solver returns a dict:

    x                read-only solution vector (Ne,)
    method, status   solver name and the path actually taken
    fallback         True when the full solve did not run
    x_norm           ||x||
    residual_norm    ||A x - b||
    prior_norm       ||lambda L x|| (0 for the iterative schemes)
    information      -1/2 (||A x - b||^2 + ||lambda L x||^2)

plus method-specific entries (``lambda``, ``order``, ``posterior_std``,
``n_iterations``, ``converged``, ``residual_history``).

The regularized solvers take optional data uncertainties ``sigma`` and then
invert the noise-weighted system ``Lb A x = Lb b`` with ``Lb = diag(1/sigma)``;
``A`` and ``b`` in the diagnostics above are the weighted ones.

Shape problems raise ``DimensionMismatch`` before any computation.  A
singular or indefinite normal-equation system is not an error: the solver
falls back to a minimum-norm ``lstsq`` solve, sets ``status='lstsq'`` and
``fallback=True``, logs a warning and issues a ``SingularSystemWarning``.

Usage example
-------------
>>> res = tikhonov(A, b, 0.1, order=1, grid=grid, nonneg=True)
>>> x = res['x']
>>> res = twomey(A, b, x0=initial_guess(A, b, grid_b, grid), iterations=500)
"""

from __future__ import annotations

import logging
import warnings
from typing import Callable, Optional, Tuple

import numpy as np
import scipy.sparse as sp
from scipy import linalg
from scipy.optimize import lsq_linear, nnls

from pymmdist.core.errors import (
    FALLBACK_STATUSES,
    STATUS_COMPLETE,
    STATUS_CONVERGED,
    STATUS_LSQ_LINEAR,
    STATUS_LSTSQ,
    STATUS_NNLS,
    STATUS_NORMAL,
    STATUS_NOT_CONVERGED,
    DimensionMismatch,
    NonConvergenceWarning,
    SingularSystemWarning,
)
from pymmdist.core.grid import GridLike
from pymmdist.core.regularization import DEFAULT_TRUNCATION, exp_dist_lpr, tikhonov_lpr

log = logging.getLogger(__name__)

# Smallest Cholesky pivot (relative to the largest) accepted as non-singular.
_SINGULAR_RTOL = 1e-7


# ── Input checking ────────────────────────────────────────────────────────────

def _as_vector(v) -> np.ndarray:
    if sp.issparse(v):
        v = v.toarray()
    return np.asarray(v, dtype=float).ravel()


def _prepare(A, b, grid: Optional[GridLike] = None, x0=None) -> Tuple[sp.csr_matrix, np.ndarray]:
    """Validate shapes and return ``A`` as a private CSR copy and ``b`` as a vector."""
    if sp.issparse(A):
        A = sp.csr_matrix(A, dtype=float, copy=True)
    else:
        A = np.asarray(A, dtype=float)
        if A.ndim != 2:
            raise DimensionMismatch(f"A must be a 2-D matrix, got {A.ndim} dimension(s).")
        A = sp.csr_matrix(A)
    A.sum_duplicates()

    b = _as_vector(b)
    if b.size != A.shape[0]:
        raise DimensionMismatch(f"b has {b.size} entries but A has {A.shape[0]} rows.")
    if grid is not None and grid.Ne != A.shape[1]:
        raise DimensionMismatch(f"A has {A.shape[1]} columns but the grid has Ne={grid.Ne}.")
    if x0 is not None and _as_vector(x0).size != A.shape[1]:
        raise DimensionMismatch(f"x0 has {_as_vector(x0).size} entries but A has {A.shape[1]} columns.")
    return A, b


def _weight_rows(A: sp.csr_matrix, b: np.ndarray, sigma) -> Tuple[sp.csr_matrix, np.ndarray]:
    """Scale each data row by ``1 / sigma_i`` (``Lb A``, ``Lb b`` with ``Lb = diag(1/sigma)``)."""
    if sigma is None:
        return A, b
    sigma = _as_vector(sigma)
    if sigma.size == 1:
        sigma = np.full(b.size, sigma[0])
    if sigma.size != b.size:
        raise DimensionMismatch(f"sigma has {sigma.size} entries but b has {b.size}.")
    if not np.all(np.isfinite(sigma)) or np.any(sigma <= 0):
        raise ValueError("Data uncertainties sigma must be positive and finite.")
    Lb = sp.diags(1.0 / sigma)
    return sp.csr_matrix(Lb @ A), b / sigma


def _check_operator(L, A) -> sp.csr_matrix:
    L = sp.csr_matrix(L, dtype=float)
    if L.shape[1] != A.shape[1]:
        raise DimensionMismatch(f"L has {L.shape[1]} columns but A has {A.shape[1]}.")
    return L


def _result(method: str, x, A, b, status: str, Lpr=None, **extra) -> dict:
    """Package a solution with its diagnostics."""
    x = np.array(x, dtype=float)
    x.flags.writeable = False

    resid = A @ x - b
    r2 = float(resid @ resid)
    p2 = 0.0
    if Lpr is not None:
        prior = Lpr @ x
        p2 = float(prior @ prior)

    out = {
        'method':        method,
        'x':             x,
        'status':        status,
        'fallback':      status in FALLBACK_STATUSES,
        'x_norm':        float(np.linalg.norm(x)),
        'residual_norm': float(np.sqrt(r2)),
        'prior_norm':    float(np.sqrt(p2)),
        'information':   -0.5 * (r2 + p2),
    }
    out.update(extra)
    return out


# ── Regularized least squares ─────────────────────────────────────────────────

def _cholesky(N: np.ndarray) -> Optional[tuple]:
    """``cho_factor`` of a symmetric positive-definite N; None if N is not."""
    try:
        c_and_lower = linalg.cho_factor(N, lower=False)
    except linalg.LinAlgError:
        return None
    pivots = np.abs(np.diag(c_and_lower[0]))
    if pivots.min() <= _SINGULAR_RTOL * pivots.max():
        return None
    return c_and_lower


def _cholesky_solve(N: np.ndarray, rhs: np.ndarray) -> Optional[np.ndarray]:
    """Solve ``N x = rhs`` for symmetric positive-definite N; None if N is not."""
    c_and_lower = _cholesky(N)
    if c_and_lower is None:
        return None
    x = linalg.cho_solve(c_and_lower, rhs)
    return x if np.all(np.isfinite(x)) else None


def _posterior_std(A: sp.csr_matrix, Lpr: sp.csr_matrix) -> Optional[np.ndarray]:
    """
    Posterior standard deviation of each element.

    Square root of the diagonal of ``Gpo = inv(A'A + Lpr'Lpr)``, with A
    already noise-weighted.  None when the system is singular.
    """
    N = (A.T @ A + Lpr.T @ Lpr).toarray()
    c_and_lower = _cholesky(N)
    if c_and_lower is None:
        log.warning("Posterior covariance not available: normal equations are singular.")
        return None
    Gpo = linalg.cho_solve(c_and_lower, np.eye(N.shape[0]))
    spo = np.sqrt(np.maximum(np.diag(Gpo), 0.0))
    spo.flags.writeable = False
    return spo


def _regularized_solve(A: sp.csr_matrix, b: np.ndarray, Lpr: sp.csr_matrix,
                       nonneg: bool) -> Tuple[np.ndarray, str]:
    """
    Minimise ``||A x - b||^2 + ||Lpr x||^2``.

    Returns:
        ``(x, status)``
    """
    n = A.shape[1]

    if nonneg:
        A_aug = sp.vstack([A, Lpr]).toarray()
        b_aug = np.concatenate([b, np.zeros(Lpr.shape[0])])
        try:
            x, _ = nnls(A_aug, b_aug, maxiter=10 * n)
            return x, STATUS_NNLS
        except RuntimeError as exc:
            log.warning(f"NNLS failed ({exc}); falling back to bounded lsq_linear.")
            warnings.warn(
                f"NNLS did not complete ({exc}); result from bounded lsq_linear.",
                SingularSystemWarning,
                stacklevel=3,
            )
            res = lsq_linear(A_aug, b_aug, bounds=(0.0, np.inf))
            return res.x, STATUS_LSQ_LINEAR

    N = (A.T @ A + Lpr.T @ Lpr).toarray()
    rhs = A.T @ b
    x = _cholesky_solve(N, rhs)
    if x is not None:
        return x, STATUS_NORMAL

    log.warning("Normal equations singular or not positive definite; using minimum-norm lstsq.")
    warnings.warn(
        "Normal equations are singular; result from minimum-norm least squares.",
        SingularSystemWarning,
        stacklevel=3,
    )
    A_aug = sp.vstack([A, Lpr]).toarray()
    b_aug = np.concatenate([b, np.zeros(Lpr.shape[0])])
    x = np.linalg.lstsq(A_aug, b_aug, rcond=None)[0]
    return x, STATUS_LSTSQ


def tikhonov(
    A,
    b,
    lam: float,
    order=1,
    grid: Optional[GridLike] = None,
    nonneg: bool = False,
    weight=None,
    sigma=None,
    posterior: bool = False,
) -> dict:
    """
    Tikhonov-regularized inversion.

    Args:
        A:         Kernel, ``(n_b, Ne)``, dense or sparse.
        b:         Data, ``(n_b,)``, dense or sparse.
        lam:       Regularization parameter lambda >= 0.
        order:     0, 1 or 2 (operator from ``tikhonov_lpr``) or a ready
                   ``(m, Ne)`` operator.
        grid:      Reconstruction grid; required for orders 1 and 2.
        nonneg:    Enforce x >= 0 (NNLS on the augmented system).
        weight:    Order-0 weights (scalar or per element).
        sigma:     Data uncertainties (scalar or ``(n_b,)``).  Rows of A and b
                   are divided by sigma before solving, so the residual
                   diagnostics are noise-weighted.
        posterior: Also compute ``posterior_std``, the square root of the
                   diagonal of ``inv(A'A + lambda^2 L'L)`` (dense inverse).

    Returns:
        Result dict (see module docstring) with ``lambda``, ``order`` and
        ``posterior_std`` (None unless requested).
    """
    A, b = _prepare(A, b, grid)
    A, b = _weight_rows(A, b, sigma)
    if lam < 0:
        raise ValueError(f"lambda must be non-negative, got {lam}.")

    if sp.issparse(order) or isinstance(order, np.ndarray):
        L = _check_operator(order, A)
        order_label = 'custom'
    else:
        order_label = int(order)
        L = _check_operator(tikhonov_lpr(order_label, grid=grid, n=A.shape[1], weight=weight), A)

    Lpr = float(lam) * L
    x, status = _regularized_solve(A, b, Lpr, nonneg)
    log.debug(f"Tikhonov (order {order_label}, lambda={lam:.4g}) solved via {status}")
    spo = _posterior_std(A, Lpr) if posterior else None
    return _result('tikhonov', x, A, b, status, Lpr=Lpr, posterior_std=spo,
                   **{'lambda': float(lam), 'order': order_label})


def exp_dist(
    A,
    b,
    lam: float,
    Gd,
    grid: GridLike,
    nonneg: bool = False,
    truncation: float = DEFAULT_TRUNCATION,
    L=None,
    sigma=None,
    posterior: bool = False,
) -> dict:
    """
    Inversion with the exponential-distance prior.

    Args:
        A, b, lam, nonneg, sigma, posterior: As for ``tikhonov``.
        Gd:         2x2 correlation covariance in axis space.
        grid:       Reconstruction grid.
        truncation: Sparsification level passed to ``exp_dist_lpr``.
        L:          Pre-computed operator for this ``Gd`` and grid (skips
                    rebuilding it, e.g. inside a lambda sweep).

    Returns:
        Result dict with ``lambda``, ``Gd`` and ``posterior_std``.
    """
    A, b = _prepare(A, b, grid)
    A, b = _weight_rows(A, b, sigma)
    if lam < 0:
        raise ValueError(f"lambda must be non-negative, got {lam}.")
    if L is None:
        L = exp_dist_lpr(Gd, grid, truncation=truncation)
    L = _check_operator(L, A)

    Lpr = float(lam) * L
    x, status = _regularized_solve(A, b, Lpr, nonneg)
    log.debug(f"Exponential-distance (lambda={lam:.4g}) solved via {status}")
    spo = _posterior_std(A, Lpr) if posterior else None
    return _result('exp_dist', x, A, b, status, Lpr=Lpr, posterior_std=spo,
                   **{'lambda': float(lam), 'Gd': np.array(Gd, dtype=float)})


# ── Multiplicative iterative schemes ──────────────────────────────────────────

def _start_vector(A: sp.csr_matrix, b: np.ndarray, x0) -> np.ndarray:
    """Working copy of x0, or a uniform vector matching the total signal."""
    if x0 is not None:
        x = _as_vector(x0).copy()
        if np.any(x < 0):
            raise ValueError("Initial guess for multiplicative solvers must be non-negative.")
        return x
    total = float((A @ np.ones(A.shape[1])).sum())
    scale = float(b[b > 0].sum()) / total if total > 0 else 1.0
    return np.full(A.shape[1], scale if scale > 0 else 1.0)


def _smooth(x: np.ndarray, grid: GridLike) -> np.ndarray:
    """Average each element half-and-half with the mean of its grid neighbours."""
    adj = sp.csr_matrix(grid.adj, dtype=float, copy=True)
    adj.data[:] = 1.0
    degree = np.asarray(adj.sum(axis=1)).ravel()
    neighbours = (adj @ x) / np.maximum(degree, 1.0)
    return np.where(degree > 0, 0.5 * x + 0.5 * neighbours, x)


def _row_action(
    method: str,
    A: sp.csr_matrix,
    b: np.ndarray,
    x: np.ndarray,
    iterations: int,
    update: Callable,
    tol: Optional[float],
    post: Optional[Callable] = None,
) -> Tuple[np.ndarray, int, str, np.ndarray]:
    """
    Sweep the rows of A ``iterations`` times applying ``update`` per data point.

    ``update(x, cols, a, ratio)`` rescales ``x[cols]`` in place from the row
    entries ``a`` and the ratio measured/predicted.  Rows with ``b_i <= 0`` or
    a non-positive prediction are skipped.
    """
    indptr, indices, data = A.indptr, A.indices, A.data
    history = []
    status = STATUS_COMPLETE
    n_iter = 0

    for n_iter in range(1, iterations + 1):
        x_prev = x.copy()
        for i in range(A.shape[0]):
            lo, hi = indptr[i], indptr[i + 1]
            if b[i] <= 0 or lo == hi:
                continue
            cols = indices[lo:hi]
            a = data[lo:hi]
            y = float(a @ x[cols])
            if y <= 0:
                continue
            update(x, cols, a, b[i] / y)

        if post is not None:
            x = post(x)

        history.append(float(np.linalg.norm(A @ x - b)))
        if tol is not None and np.linalg.norm(x - x_prev) <= tol * np.linalg.norm(x_prev):
            status = STATUS_CONVERGED
            log.debug(f"{method} converged at iteration {n_iter}")
            break
    else:
        if tol is not None:
            status = STATUS_NOT_CONVERGED
            log.warning(f"{method} did not reach tol={tol:g} in {iterations} iterations.")
            warnings.warn(
                f"{method} did not reach tol={tol:g} in {iterations} iterations; "
                "returning the last iterate.",
                NonConvergenceWarning,
                stacklevel=3,
            )

    return x, n_iter, status, np.asarray(history)


def twomey(
    A,
    b,
    x0=None,
    iterations: int = 100,
    grid: Optional[GridLike] = None,
    smooth: bool = False,
    tol: Optional[float] = None,
) -> dict:
    """
    Twomey's multiplicative iterative inversion.

    For each data point i, every element j seen by that measurement is
    scaled by ``1 + (b_i / y_i - 1) * A_ij / max_j A_ij``, where ``y_i`` is
    the current prediction.  One iteration sweeps all data points.

    Args:
        A, b:       Kernel and data.
        x0:         Non-negative initial guess (see ``initial_guess``);
                    a uniform vector scaled to the data when None.
        iterations: Iteration budget.
        grid:       Reconstruction grid (required when ``smooth``).
        smooth:     Apply neighbour smoothing after each sweep
                    (Twomey-Markowski variant).
        tol:        Optional early exit when the relative change of x over a
                    sweep drops below ``tol``.  Without it the full budget
                    runs.

    Returns:
        Result dict with ``n_iterations``, ``converged`` and
        ``residual_history`` (``||A x - b||`` after each sweep).
    """
    A, b = _prepare(A, b, grid, x0=x0)
    if smooth and grid is None:
        raise ValueError("Twomey smoothing needs the reconstruction grid.")
    x = _start_vector(A, b, x0)

    def update(x, cols, a, ratio):
        x[cols] *= 1.0 + (ratio - 1.0) * a / a.max()

    post = (lambda v: _smooth(v, grid)) if smooth else None
    x, n_iter, status, history = _row_action('Twomey', A, b, x, int(iterations), update, tol, post)
    return _result(
        'twomey', x, A, b, status,
        n_iterations=n_iter,
        converged=status != STATUS_NOT_CONVERGED,
        residual_history=history,
    )


def mart(
    A,
    b,
    x0=None,
    iterations: int = 100,
    relaxation: float = 1.0,
    tol: Optional[float] = None,
) -> dict:
    """
    Multiplicative algebraic reconstruction technique.

    For each data point i: ``x_j *= (b_i / y_i) ** (relaxation * A_ij / max|A|)``.
    Unlike ``twomey`` the exponent is normalised by the global kernel
    maximum, so ``relaxation`` acts as a single step size for all rows.

    Returns:
        Result dict with ``n_iterations``, ``converged``, ``relaxation`` and
        ``residual_history``.
    """
    A, b = _prepare(A, b, x0=x0)
    if relaxation <= 0:
        raise ValueError(f"relaxation must be positive, got {relaxation}.")
    x = _start_vector(A, b, x0)
    a_max = float(np.abs(A.data).max()) if A.nnz else 1.0

    def update(x, cols, a, ratio):
        x[cols] *= ratio ** (relaxation * a / a_max)

    x, n_iter, status, history = _row_action('MART', A, b, x, int(iterations), update, tol)
    return _result(
        'mart', x, A, b, status,
        n_iterations=n_iter,
        converged=status != STATUS_NOT_CONVERGED,
        relaxation=float(relaxation),
        residual_history=history,
    )


def initial_guess(A, b, grid_b: GridLike, grid_x: GridLike) -> np.ndarray:
    """
    Initial guess for the iterative schemes.

    The data are divided by the kernel's total response per setpoint
    (``A @ 1``), laid out on the data grid and linearly interpolated onto
    the reconstruction grid.  Non-finite and negative values become 0.
    """
    A, b = _prepare(A, b, grid_x)
    if grid_b.Ne != b.size:
        raise DimensionMismatch(f"b has {b.size} entries but the data grid has Ne={grid_b.Ne}.")

    with np.errstate(divide='ignore', invalid='ignore'):
        ratio = b / (A @ np.ones(A.shape[1]))
    ratio[~np.isfinite(ratio)] = 0.0

    x = grid_x.project(grid_b, ratio)
    x[~np.isfinite(x)] = 0.0
    return np.maximum(x, 0.0)
