"""
Grids with a triangular region of elements removed.

A ``PartialGrid`` removes every element lying entirely above a line (and,
optionally, entirely below a second line) in axis space::

    axis0 = b + slope * axis1

For logarithmic grids the lines are power laws in the original coordinates,
e.g. ``PartialGrid(span, ne, 'log', r0=[2, 0], slope0=3)`` removes all
elements above the curve through (1, 100) growing with exponent 3 (particles
denser than a chosen effective density).  Removing the 1:1 line,

>>> grid = Grid([[0.01, 100], [10, 1000]], [10, 12], 'log').partial(0, 1)

is the usual choice for PMA-SP2 inversion.

The partial grid keeps a private full ``Grid`` (``.full``) for all geometry
and maps full-grid (global) indices to the retained subset through a
compaction map built once at construction:

  * ``missing``  - sorted global indices of removed elements
  * ``retained`` - sorted global indices of kept elements
  * ``cut``      - ``[b0, slope0]`` or ``[b0, slope0, b1, slope1]``

Elements crossed by a cut line contribute only their retained area to
``element_area``, and therefore to kernels, marginals and the rebasing
operator.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import scipy.sparse as sp

from pymmdist.core.errors import DimensionMismatch, InvalidGridSpec
from pymmdist.core.grid import (
    LOGARITHMIC,
    Grid,
    GridLike,
    marginalize_operator,
)

log = logging.getLogger(__name__)

# Offset applied to the corner test, as a fraction of the mean axis-0 width.
_CUT_EPS = 1e-3


def _intercept(r, slope: float) -> float:
    """Y-intercept from a scalar intercept or a ``[y, x]`` point on the line."""
    r = np.atleast_1d(np.asarray(r, dtype=float)).ravel()
    if r.size == 1:
        return float(r[0])
    if r.size == 2:
        return float(r[0] - slope * r[1])
    raise InvalidGridSpec(f"Cut must be an intercept or a [y, x] point, got {r.tolist()}.")


def _area_below(u0, u1, v0, v1, b: float, m: float) -> np.ndarray:
    """
    Area of each rectangle ``[u0, u1] x [v0, v1]`` lying below ``u = b + m v``.

    Integrates ``clip(b + m v, u0, u1) - u0`` over ``[v0, v1]``.  The clipped
    line is linear between its breakpoints (where it meets ``u0`` and
    ``u1``), so the trapezoid rule on the sorted breakpoints is exact; this is
    the rectangle plus triangle split of a cut element.
    """
    if m == 0.0:
        va = vb = v0
    else:
        va = (u0 - b) / m
        vb = (u1 - b) / m
    pts = np.sort(np.column_stack([
        v0,
        np.clip(va, v0, v1),
        np.clip(vb, v0, v1),
        v1,
    ]), axis=1)
    f = np.clip(b + m * pts, u0[:, np.newaxis], u1[:, np.newaxis]) - u0[:, np.newaxis]
    return np.sum(0.5 * (f[:, 1:] + f[:, :-1]) * np.diff(pts, axis=1), axis=1)


class PartialGrid:
    """
    Index-compacted view of a ``Grid`` with elements beyond one or two cuts removed.

    Args:
        span, ne, discrete, edges: As for ``Grid``.
        r0:     Upper cut: y-intercept, or a ``[y, x]`` point on the line, in
                axis space (log10 on logarithmic axes).  Default 0.
        slope0: Slope of the upper cut.  Default 1.
        r1:     Lower cut, same convention.  No lower cut when None.
        slope1: Slope of the lower cut.  Default 0.

    Raises:
        InvalidGridSpec: for a malformed grid or a cut removing every element.
    """

    def __init__(
        self,
        span=None,
        ne=None,
        discrete: Union[str, Sequence[str]] = LOGARITHMIC,
        r0=None,
        slope0: float = 1.0,
        r1=None,
        slope1: float = 0.0,
        edges=None,
    ):
        self.full = Grid(span, ne, discrete, edges=edges)
        full = self.full

        slope0 = 1.0 if slope0 is None else float(slope0)
        b0 = 0.0 if r0 is None else _intercept(r0, slope0)

        lo0 = full.to_space(full.nelements[:, 0], 0)
        hi0 = full.to_space(full.nelements[:, 1], 0)
        lo1 = full.to_space(full.nelements[:, 2], 1)
        hi1 = full.to_space(full.nelements[:, 3], 1)
        eps = _CUT_EPS * float(np.mean(hi0 - lo0))

        # Upper cut: top-left corner [lo0, hi1] above the line.
        f_missing = (lo0 + eps) > (hi1 * slope0 + b0)
        cut = [b0, slope0]

        if r1 is not None:
            slope1 = 0.0 if slope1 is None else float(slope1)
            b1 = _intercept(r1, slope1)
            # Lower cut: bottom-right corner [hi0, lo1] below the line.
            f_missing |= (hi0 - eps) < (lo1 * slope1 + b1)
            cut += [b1, slope1]

        if np.all(f_missing):
            raise InvalidGridSpec(f"Cut {cut} removes every element of the grid.")

        self.cut = tuple(cut)
        self.missing = np.flatnonzero(f_missing)
        self.retained = np.flatnonzero(~f_missing)
        self._compact = np.full(full.Ne, -1, dtype=int)
        self._compact[self.retained] = np.arange(self.retained.size)
        for arr in (self.missing, self.retained, self._compact):
            arr.flags.writeable = False

        self.discrete = full.discrete
        self.ne = full.ne
        self.span = full.span
        self.edges = full.edges
        self.centers = full.centers
        self.Ne = int(self.retained.size)
        self.elements = full.elements[self.retained]
        self.nelements = full.nelements[self.retained]
        self.elements.flags.writeable = False
        self.nelements.flags.writeable = False
        self.adj = self.adjacency()

        log.debug(f"Partial grid: cut={self.cut}, {self.missing.size} of {full.Ne} elements removed")

    def __repr__(self) -> str:
        return (
            f"PartialGrid(ne={self.ne}, discrete={self.discrete}, cut={list(self.cut)}, "
            f"Ne={self.Ne}/{self.full.Ne})"
        )

    # ── Index translation ─────────────────────────────────────────────────────

    def global_index(self, i, j):
        """
        Compacted index of element ``(i, j)``.

        Returns:
            ``int`` or ``None`` (element removed) for scalar input; a masked
            integer array with removed elements masked for array input.
        """
        k = self.full.global_index(i, j)
        c = self._compact[k]
        if np.ndim(c) == 0:
            return None if c < 0 else int(c)
        return np.ma.masked_less(c, 0)

    def axis_index(self, axis: int) -> np.ndarray:
        return self.full.axis_index(axis)[self.retained]

    def to_space(self, values, axis: int) -> np.ndarray:
        return self.full.to_space(values, axis)

    def full2partial(self, x):
        """
        Restrict x from the full grid to the retained elements.

        Works on vectors and on matrices with one row per full-grid element
        (dense or sparse).
        """
        if not sp.issparse(x):
            x = np.asarray(x, dtype=float)
        if x.shape[0] != self.full.Ne:
            raise DimensionMismatch(
                f"Leading dimension {x.shape[0]} does not match full grid with Ne={self.full.Ne}."
            )
        if sp.issparse(x):
            return x.tocsr()[self.retained]
        return x[self.retained]

    def partial2full(self, x) -> np.ndarray:
        """Expand x from the retained elements to the full grid, zero-filling removed ones."""
        if sp.issparse(x):
            x = x.toarray()
        x = np.asarray(x, dtype=float)
        if x.shape[0] != self.Ne:
            raise DimensionMismatch(f"Leading dimension {x.shape[0]} does not match partial grid with Ne={self.Ne}.")
        out = np.zeros((self.full.Ne,) + x.shape[1:], dtype=float)
        out[self.retained] = x
        return out

    # ── Vector layout ─────────────────────────────────────────────────────────

    def reshape(self, x) -> np.ndarray:
        """Reshape to ``(ne[0], ne[1])``, with zeros at removed elements."""
        if sp.issparse(x):
            x = x.toarray()
        x = np.asarray(x, dtype=float).ravel()
        return self.full.reshape(self.partial2full(x))

    def vectorize(self, X) -> np.ndarray:
        """Flatten a full ``(ne[0], ne[1])`` array to the retained elements."""
        return self.full2partial(self.full.vectorize(X))

    # ── Geometry ──────────────────────────────────────────────────────────────

    def element_widths(self) -> Tuple[np.ndarray, np.ndarray]:
        """Full (uncut) element widths of the retained elements."""
        dr0, dr1 = self.full.element_widths()
        return dr0[self.retained], dr1[self.retained]

    def element_area(self) -> np.ndarray:
        """
        Retained area of each element in axis space.

        Elements crossed by the upper cut keep only the part below it;
        elements crossed by the lower cut keep only the part above it.  When
        both lines cross an element the two retained fractions are applied
        multiplicatively.
        """
        full = self.full
        ne = full.nelements[self.retained]
        lo0, hi0 = full.to_space(ne[:, 0], 0), full.to_space(ne[:, 1], 0)
        lo1, hi1 = full.to_space(ne[:, 2], 1), full.to_space(ne[:, 3], 1)
        a_full = (hi0 - lo0) * (hi1 - lo1)

        b0, s0 = self.cut[:2]
        area = _area_below(lo0, hi0, lo1, hi1, b0, s0)

        if len(self.cut) == 4:
            b1, s1 = self.cut[2:]
            area_low = a_full - _area_below(lo0, hi0, lo1, hi1, b1, s1)
            area = area * area_low / a_full

        return area

    def adjacency(self, w: Optional[float] = None) -> sp.csr_matrix:
        """Full-grid adjacency restricted to retained elements."""
        adj = self.full.adjacency(w)
        return adj[self.retained][:, self.retained].tocsr()

    # ── Marginals ─────────────────────────────────────────────────────────────

    def marginalize_op(self, axis: int) -> sp.csr_matrix:
        """Marginalising operator; cut elements are weighted by their retained width."""
        return marginalize_operator(self, axis)

    def marginalize(self, x, axis: int) -> np.ndarray:
        x = np.asarray(x, dtype=float).ravel()
        if x.size != self.Ne:
            raise DimensionMismatch(f"Vector of length {x.size} does not match partial grid with Ne={self.Ne}.")
        return self.marginalize_op(axis) @ x

    # ── Changes of basis ──────────────────────────────────────────────────────

    def project(self, grid_old: GridLike, x) -> np.ndarray:
        """Interpolate x from ``grid_old`` onto the retained elements."""
        return self.full2partial(self.full.project(grid_old, x))

    def transform(self, grid_old: GridLike) -> sp.csr_matrix:
        """Kernel rebasing operator with removed columns (and old removed rows) stripped."""
        B = self.full.transform(grid_old)
        return B[:, self.retained].tocsr()
