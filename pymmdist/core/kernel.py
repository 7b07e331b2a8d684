"""
Kernel (A matrix) assembly from instrument transfer functions.

For data ``b`` measured at ``n_b`` setpoints and a distribution ``x`` on a
grid of ``Ne`` elements, the discrete forward model is ``b = A @ x`` with

    A[i, j] = dr[j] * sum_z f_z(s_j) * prod_devices T_dev(setpoint_i, r_j, z)

where ``T_dev`` is a device transfer function evaluated at element centre
``r_j``, ``f_z`` the fraction of particles of size ``s_j`` carrying ``z``
charges and ``dr`` the element area from the grid.

The physics of each device (mass analyser, mobility analyser, charger) is
supplied by the caller as plain callables; this module only evaluates and
combines them:

    tfer(setpoints, values, z)         -> (n_b, n_values) array
    charge_fraction(sizes, charges)    -> (n_charges, n_sizes) array

Devices depending on a single axis (e.g. a DMA, mobility only) are declared
with ``axis=...`` and evaluated once per distinct size value on that axis.

Usage example
-------------
>>> dma = TransferDevice(tfer_dma, d_star, axis=1, name='dma')
>>> pma = TransferDevice(tfer_pma, sp, name='pma')
>>> A = gen_kernel([pma, dma], grid, tfer_charge, n_data=b.size)
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional, Sequence

import numpy as np
import scipy.sparse as sp

from pymmdist.core.errors import DimensionMismatch, SetpointMismatch
from pymmdist.core.grid import GridLike

log = logging.getLogger(__name__)

DEFAULT_CHARGE_STATES = (1, 2, 3)

# Relative level below which transfer-function values are treated as noise.
DEFAULT_THRESHOLD = 1e-7


class TransferDevice:
    """
    One stage of the measurement chain.

    Attributes
    ----------
    tfer : callable
        ``tfer(setpoints, values, z)`` returning an ``(n_b, n_values)`` array.
    setpoints : sequence
        Device setpoints, one per data point; passed to ``tfer`` unchanged.
    axis : int or None
        None for a 2-D device evaluated on ``grid.elements`` (``(Ne, 2)``);
        0 or 1 for a device depending only on that axis, evaluated on
        ``grid.centers[axis]``.
    name : str
        Label used in log messages.
    """

    def __init__(
        self,
        tfer: Callable,
        setpoints,
        axis: Optional[int] = None,
        name: Optional[str] = None,
    ):
        if axis not in (None, 0, 1):
            raise ValueError(f"axis must be None, 0 or 1, got {axis!r}.")
        self.tfer = tfer
        self.setpoints = setpoints
        self.axis = axis
        self.name = name or getattr(tfer, '__name__', 'device')

    def __len__(self) -> int:
        return len(self.setpoints)

    def __repr__(self) -> str:
        return f"TransferDevice(name={self.name!r}, n_setpoints={len(self)}, axis={self.axis})"

    def evaluate(self, grid: GridLike, z: int) -> np.ndarray:
        """
        Transfer function over setpoints x grid elements for charge state ``z``.

        Returns:
            Dense ``(n_b, grid.Ne)`` array.
        """
        if self.axis is None:
            values = grid.elements
            n_values = grid.Ne
        else:
            values = grid.centers[self.axis]
            n_values = grid.ne[self.axis]

        T = self.tfer(self.setpoints, values, z)
        T = T.toarray() if sp.issparse(T) else np.array(T, dtype=float)
        if T.ndim != 2 or T.shape[0] != len(self):
            raise SetpointMismatch(
                f"Device '{self.name}' returned {T.shape[0] if T.ndim else 0} rows "
                f"for {len(self)} setpoints."
            )
        if T.shape[1] != n_values:
            raise DimensionMismatch(
                f"Device '{self.name}' returned {T.shape[1]} columns, expected {n_values}."
            )

        if self.axis is not None:
            # repeat the 1-D response for every element sharing that size value
            T = T[:, grid.axis_index(self.axis)]
        return T


def _check_setpoints(devices: Sequence[TransferDevice], n_data: Optional[int]) -> int:
    if not devices:
        raise ValueError("At least one transfer device is required.")
    counts = [len(dev) for dev in devices]
    if len(set(counts)) != 1:
        detail = ', '.join(f"{dev.name}={len(dev)}" for dev in devices)
        raise SetpointMismatch(f"Setpoint count mismatch between devices: {detail}.")
    n_b = counts[0]
    if n_data is not None and n_b != int(n_data):
        raise SetpointMismatch(f"{n_b} setpoints cannot be paired with {n_data} data points.")
    return n_b


def charge_contributions(
    devices: Iterable[TransferDevice],
    grid: GridLike,
    charge_fraction: Callable,
    charge_states: Sequence[int] = DEFAULT_CHARGE_STATES,
    threshold: float = DEFAULT_THRESHOLD,
    charge_axis: int = 1,
    n_data: Optional[int] = None,
) -> List[sp.csr_matrix]:
    """
    Per-charge-state kernel contributions, in the order of ``charge_states``.

    For each charge state the device responses are multiplied element-wise
    and weighted by the charging fraction of each grid element.  Values of a
    device response below ``threshold`` times its maximum for that charge
    state are zeroed to keep the matrices sparse.

    Args:
        devices:         Transfer devices in the measurement chain.
        grid:            Distribution grid (``Grid`` or ``PartialGrid``).
        charge_fraction: ``f(sizes, charge_states) -> (n_z, n_sizes)``.
        charge_states:   Charge states to sum over.
        threshold:       Relative sparsification level (0 disables it).
        charge_axis:     Grid axis holding the size passed to ``charge_fraction``.
        n_data:          Length of the data vector the kernel will be paired with.

    Returns:
        List of ``(n_b, Ne)`` CSR matrices, one per charge state (not area weighted).

    Raises:
        SetpointMismatch:  inconsistent setpoint counts.
        DimensionMismatch: a callable returned an array of the wrong shape.
    """
    devices = list(devices)
    n_b = _check_setpoints(devices, n_data)
    z_vec = np.asarray(charge_states, dtype=int).ravel()

    f_z = np.asarray(charge_fraction(grid.elements[:, charge_axis], z_vec), dtype=float)
    if f_z.shape != (z_vec.size, grid.Ne):
        raise DimensionMismatch(
            f"Charge fractions have shape {f_z.shape}, expected {(z_vec.size, grid.Ne)}."
        )

    contributions = []
    for kk, z in enumerate(z_vec):
        K = None
        for dev in devices:
            T = dev.evaluate(grid, int(z))
            t_max = T.max() if T.size else 0.0
            if threshold > 0 and t_max > 0:
                T[T < threshold * t_max] = 0.0   # remove numerical noise
            T = sp.csr_matrix(T)
            K = T if K is None else K.multiply(T).tocsr()
        K = (K @ sp.diags(f_z[kk])).tocsr()
        K.eliminate_zeros()
        log.debug(f"Charge state z={z}: {K.nnz} non-zero kernel entries")
        contributions.append(K)

    return contributions


def gen_kernel(
    devices: Iterable[TransferDevice],
    grid: GridLike,
    charge_fraction: Callable,
    charge_states: Sequence[int] = DEFAULT_CHARGE_STATES,
    threshold: float = DEFAULT_THRESHOLD,
    charge_axis: int = 1,
    n_data: Optional[int] = None,
) -> sp.csr_matrix:
    """
    Assemble the kernel matrix A for ``devices`` on ``grid``.

    Charge-state contributions from ``charge_contributions`` are summed in
    the order given and each column is multiplied by the element area, which
    turns transfer-function values into integration weights.

    Returns:
        ``(n_b, Ne)`` CSR matrix.
    """
    devices = list(devices)
    log.info(
        f"Computing kernel: {len(devices)} device(s), grid Ne={grid.Ne}, "
        f"charge states {list(charge_states)}"
    )
    contributions = charge_contributions(
        devices, grid, charge_fraction,
        charge_states=charge_states, threshold=threshold,
        charge_axis=charge_axis, n_data=n_data,
    )

    n_b = contributions[0].shape[0] if contributions else len(devices[0])
    K = sp.csr_matrix((n_b, grid.Ne))
    for K_z in contributions:
        K = K + K_z

    A = (K @ sp.diags(grid.element_area())).tocsr()
    A.eliminate_zeros()
    log.info(f"Kernel complete: shape {A.shape}, {A.nnz} non-zero entries")
    return A


def rebase_kernel(A, grid_new: GridLike, grid_old: GridLike) -> sp.csr_matrix:
    """
    Rebase a kernel built on ``grid_old`` onto ``grid_new``.

    Equivalent to integrating the fine kernel over the new elements; used to
    move a kernel evaluated on a high-resolution phantom grid to a coarser
    reconstruction grid.
    """
    B = grid_new.transform(grid_old)
    if A.shape[1] != B.shape[0]:
        raise DimensionMismatch(
            f"Kernel has {A.shape[1]} columns but grid_old has {B.shape[0]} elements."
        )
    log.info(f"Rebasing kernel from Ne={B.shape[0]} to Ne={B.shape[1]}")
    return sp.csr_matrix(A @ B)
