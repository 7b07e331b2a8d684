"""
Regularization (prior) operators L for the inversion objective

    min ||A x - b||^2 + lambda^2 ||L x||^2

All operators are square ``(Ne, Ne)`` sparse matrices built from the grid,
so they share the element ordering (and, on a ``PartialGrid``, the removed
elements) of the kernel.

  * Tikhonov order 0 - weighted identity; penalises magnitude.
  * Tikhonov order 1 - forward differences to the upper neighbours along
    both axes (one row per element, boundary rows with fewer terms).
  * Tikhonov order 2 - five-point Laplacian ``adj - diag(degree)``.
  * Exponential distance - Cholesky factor of the inverse of the prior
    covariance ``Gpr = exp(-D)``, with ``D`` the Mahalanobis distance
    between element centres for a 2x2 correlation covariance ``Gd``.

Differences are taken only between elements joined in ``grid.adj``, so the
edges created by a partial-grid cut behave as zero-flux boundaries.
"""

from __future__ import annotations

import logging
import warnings
from typing import Optional

import numpy as np
import scipy.sparse as sp
from scipy import linalg

from pymmdist.core.errors import DimensionMismatch, SingularSystemWarning
from pymmdist.core.grid import GridLike

log = logging.getLogger(__name__)

DEFAULT_TRUNCATION = 0.01


def tikhonov_lpr(
    order: int,
    grid: Optional[GridLike] = None,
    n: Optional[int] = None,
    weight=None,
) -> sp.csr_matrix:
    """
    Tikhonov prior operator of the given order.

    Args:
        order:  0, 1 or 2.
        grid:   Grid supplying the adjacency (required for orders 1 and 2).
        n:      Vector length for order 0 when no grid is given.
        weight: Order 0 only: scalar or per-element weights (default 1).

    Returns:
        ``(Ne, Ne)`` CSR matrix.
    """
    if order == 0:
        if grid is not None:
            n = grid.Ne
        if n is None:
            raise ValueError("Order-0 operator needs a grid or a length n.")
        w = np.ones(n) if weight is None else np.broadcast_to(np.asarray(weight, dtype=float), (n,))
        return sp.diags(w).tocsr()

    if order not in (1, 2):
        raise ValueError(f"Tikhonov order must be 0, 1 or 2, got {order!r}.")
    if grid is None:
        raise ValueError(f"Order-{order} operator needs a grid.")

    adj = sp.csr_matrix(grid.adj, dtype=float, copy=True)
    adj.data[:] = 1.0   # unweighted stencil

    if order == 1:
        upper = sp.triu(adj, k=1).tocsr()
        n_upper = np.asarray(upper.sum(axis=1)).ravel()
        L = upper - sp.diags(n_upper)
    else:
        degree = np.asarray(adj.sum(axis=1)).ravel()
        L = adj - sp.diags(degree)

    return sp.csr_matrix(L)


def _check_gd(Gd) -> np.ndarray:
    Gd = np.asarray(Gd, dtype=float)
    if Gd.shape != (2, 2):
        raise DimensionMismatch(f"Gd must be a 2x2 covariance matrix, got shape {Gd.shape}.")
    if not np.allclose(Gd, Gd.T):
        raise ValueError("Gd must be symmetric.")
    if np.any(np.linalg.eigvalsh(Gd) <= 0):
        raise ValueError("Gd must be positive definite.")
    return Gd


def exp_dist_gpr(Gd, grid: GridLike) -> np.ndarray:
    """
    Exponential-distance prior covariance ``exp(-D)`` between grid elements.

    ``D[i, j] = sqrt(dr_ij^T Gd^-1 dr_ij)`` with ``dr_ij`` the difference of
    element centres in axis space.
    """
    Gd_inv = np.linalg.inv(_check_gd(Gd))
    v0 = grid.to_space(grid.elements[:, 0], 0)
    v1 = grid.to_space(grid.elements[:, 1], 1)
    dr0 = v0[:, np.newaxis] - v0[np.newaxis, :]
    dr1 = v1[:, np.newaxis] - v1[np.newaxis, :]

    D2 = dr0 ** 2 * Gd_inv[0, 0] + 2.0 * dr0 * dr1 * Gd_inv[0, 1] + dr1 ** 2 * Gd_inv[1, 1]
    return np.exp(-np.sqrt(np.maximum(D2, 0.0)))


def exp_dist_lpr(
    Gd,
    grid: GridLike,
    truncation: float = DEFAULT_TRUNCATION,
) -> sp.csr_matrix:
    """
    Exponential-distance prior operator.

    ``L`` satisfies ``L.T @ L = pinv(Gpr)``.  Entries smaller than
    ``truncation`` times the mean absolute entry are dropped to give a sparse
    operator (``truncation=0`` keeps the exact factor).

    Args:
        Gd:         2x2 symmetric positive-definite covariance describing the
                    expected correlation length and orientation in axis space.
        grid:       Reconstruction grid.
        truncation: Relative sparsification level.

    Returns:
        ``(Ne, Ne)`` CSR matrix.
    """
    Gpr = exp_dist_gpr(Gd, grid)
    Gpr_inv = np.linalg.pinv(Gpr, hermitian=True)
    Gpr_inv = 0.5 * (Gpr_inv + Gpr_inv.T)

    try:
        L = linalg.cholesky(Gpr_inv, lower=False)
    except linalg.LinAlgError:
        log.warning("Exponential-distance prior: Cholesky failed, using eigen-decomposition square root.")
        warnings.warn(
            "Exponential-distance prior is not positive definite; "
            "using an eigen-decomposition square root.",
            SingularSystemWarning,
            stacklevel=2,
        )
        w, V = np.linalg.eigh(Gpr_inv)
        L = np.sqrt(np.clip(w, 0.0, None))[:, np.newaxis] * V.T

    if truncation > 0:
        L[np.abs(L) < truncation * np.mean(np.abs(L))] = 0.0
    return sp.csr_matrix(L)
