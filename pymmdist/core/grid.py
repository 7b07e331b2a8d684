"""
Rectangular discretisation of a two-dimensional size-parameter space.

A ``Grid`` covers ``span`` (one ``[min, max]`` row per axis) with
``ne[0] x ne[1]`` rectangular elements, each axis spaced either linearly or
logarithmically.  Distributions on the grid are vectors of length
``Ne = ne[0] * ne[1]`` with axis 0 varying fastest::

    k = i + j * ne[0]        (i along axis 0, j along axis 1)

For mass-mobility work axis 0 is particle mass and axis 1 is mobility
diameter, so a ``[y-intercept, slope]`` cut of a ``PartialGrid`` reads as
``log10(m) = b + slope * log10(d)``.

Geometry (areas, widths, cut lines, interpolation) is evaluated in *axis
space*: log10 of the coordinate on logarithmic axes, the coordinate itself on
linear axes.  The element area is therefore ``dlog10(a) * dlog10(b)`` on a
log-log grid, which is the integration weight that turns a kernel integral
into the discrete product ``A @ x``.

Usage example
-------------
>>> from pymmdist.core.grid import Grid
>>> grid = Grid([[0.01, 100], [10, 1000]], [10, 12], 'logarithmic')
>>> grid.Ne
120
>>> X = grid.reshape(x)            # (10, 12) array
>>> m_marg = grid.marginalize(x, axis=0)
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Sequence, Tuple, Union

import numpy as np
import scipy.sparse as sp
from scipy.interpolate import RegularGridInterpolator

from pymmdist.core.errors import DimensionMismatch, InvalidGridSpec

log = logging.getLogger(__name__)

LINEAR = 'linear'
LOGARITHMIC = 'logarithmic'

_MODE_ALIASES = {
    'linear': LINEAR,
    'lin': LINEAR,
    'logarithmic': LOGARITHMIC,
    'log': LOGARITHMIC,
}


class GridLike(Protocol):
    """Capabilities shared by ``Grid`` and ``PartialGrid``."""

    ne: Tuple[int, int]
    Ne: int
    discrete: Tuple[str, str]
    edges: list
    centers: list
    elements: np.ndarray
    nelements: np.ndarray
    adj: sp.csr_matrix

    @property
    def full(self) -> 'Grid': ...

    def to_space(self, values, axis: int) -> np.ndarray: ...

    def element_area(self) -> np.ndarray: ...

    def element_widths(self) -> Tuple[np.ndarray, np.ndarray]: ...

    def adjacency(self, w: Optional[float] = None) -> sp.csr_matrix: ...

    def axis_index(self, axis: int) -> np.ndarray: ...

    def reshape(self, x) -> np.ndarray: ...

    def vectorize(self, X) -> np.ndarray: ...

    def marginalize(self, x, axis: int) -> np.ndarray: ...

    def marginalize_op(self, axis: int) -> sp.csr_matrix: ...

    def project(self, grid_old: 'GridLike', x) -> np.ndarray: ...

    def transform(self, grid_old: 'GridLike') -> sp.csr_matrix: ...

    def full2partial(self, x): ...

    def partial2full(self, x) -> np.ndarray: ...


# ──────────────────────────────────────────────────────────────────────────────
# Input parsing
# ──────────────────────────────────────────────────────────────────────────────

def parse_discrete(discrete: Union[str, Sequence[str]]) -> Tuple[str, str]:
    """
    Normalise a spacing specification to a pair of canonical modes.

    Args:
        discrete: ``'linear'``/``'lin'`` or ``'logarithmic'``/``'log'``,
                  either once for both axes or as a two-element sequence.

    Returns:
        Tuple ``(mode_axis0, mode_axis1)``.

    Raises:
        InvalidGridSpec: for unknown modes or a wrong number of entries.
    """
    if isinstance(discrete, str):
        discrete = (discrete, discrete)
    if discrete is None or len(discrete) != 2:
        raise InvalidGridSpec(
            f"Spacing mode must be a string or a pair of strings, got {discrete!r}."
        )
    modes = []
    for mode in discrete:
        key = str(mode).lower()
        if key not in _MODE_ALIASES:
            raise InvalidGridSpec(
                f"Unknown spacing mode '{mode}'. Supported: {sorted(_MODE_ALIASES)}"
            )
        modes.append(_MODE_ALIASES[key])
    return modes[0], modes[1]


def _edges_from_span(span, ne, discrete: Tuple[str, str]) -> list:
    span = np.asarray(span, dtype=float)
    if span.shape != (2, 2):
        raise InvalidGridSpec(f"span must be a 2x2 [min, max] matrix, got shape {span.shape}.")

    counts = np.asarray(ne).ravel()
    if counts.size != 2:
        raise InvalidGridSpec(f"ne must hold two element counts, got {ne!r}.")
    try:
        counts_f = counts.astype(float)
    except (TypeError, ValueError):
        raise InvalidGridSpec(f"ne must be numeric, got {ne!r}.") from None
    if np.any(counts_f <= 0) or np.any(counts_f != np.round(counts_f)):
        raise InvalidGridSpec(f"Element counts must be positive integers, got {ne!r}.")

    edges = []
    for a in range(2):
        lo, hi = span[a]
        n = int(counts_f[a])
        if not (np.isfinite(lo) and np.isfinite(hi)) or lo >= hi:
            raise InvalidGridSpec(f"Axis {a} span must satisfy min < max, got [{lo}, {hi}].")
        if discrete[a] == LOGARITHMIC:
            if lo <= 0:
                raise InvalidGridSpec(f"Logarithmic axis {a} requires a positive span, got [{lo}, {hi}].")
            e = np.logspace(np.log10(lo), np.log10(hi), n + 1)
        else:
            e = np.linspace(lo, hi, n + 1)
        e[0], e[-1] = lo, hi   # keep the span exact despite logspace rounding
        edges.append(e)
    return edges


def _check_edges(edges, discrete: Tuple[str, str]) -> list:
    try:
        edges = list(edges)
    except TypeError:
        raise InvalidGridSpec("edges must be a pair of node sequences.") from None
    if len(edges) != 2:
        raise InvalidGridSpec(f"edges must hold one node vector per axis, got {len(edges)}.")

    out = []
    for a, e in enumerate(edges):
        e = np.array(e, dtype=float).ravel()
        if e.size < 2:
            raise InvalidGridSpec(f"Axis {a} needs at least two edges, got {e.size}.")
        if not np.all(np.isfinite(e)):
            raise InvalidGridSpec(f"Axis {a} edges must be finite.")
        if np.any(np.diff(e) <= 0):
            raise InvalidGridSpec(f"Axis {a} edges must be strictly increasing.")
        if discrete[a] == LOGARITHMIC and e[0] <= 0:
            raise InvalidGridSpec(f"Logarithmic axis {a} requires positive edges.")
        out.append(e)
    return out


def _check_axis(axis: int) -> int:
    if axis not in (0, 1):
        raise ValueError(f"axis must be 0 or 1, got {axis!r}.")
    return axis


def _overlap_matrix(e_old: np.ndarray, e_new: np.ndarray) -> sp.csr_matrix:
    """
    Fraction of each old 1-D element covered by each new element.

    Returns an ``(n_old, n_new)`` sparse matrix; rows sum to 1 where the new
    edges cover the old element completely.
    """
    lo = np.maximum(e_old[:-1, np.newaxis], e_new[np.newaxis, :-1])
    hi = np.minimum(e_old[1:, np.newaxis], e_new[np.newaxis, 1:])
    overlap = np.clip(hi - lo, 0.0, None) / np.diff(e_old)[:, np.newaxis]
    return sp.csr_matrix(overlap)


def marginalize_operator(grid: GridLike, axis: int) -> sp.csr_matrix:
    """
    Sparse ``(ne[axis], Ne)`` operator summing over the other axis.

    Each element is weighted by its width along the summed axis, taken as
    ``element_area / width_along_axis`` so that elements trimmed by a cut
    contribute only their retained share.
    """
    _check_axis(axis)
    dr = grid.element_area()
    widths = grid.element_widths()
    weight = dr / widths[axis]
    idx = grid.axis_index(axis)
    return sp.csr_matrix(
        (weight, (idx, np.arange(grid.Ne))),
        shape=(grid.ne[axis], grid.Ne),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Grid
# ──────────────────────────────────────────────────────────────────────────────

class Grid:
    """
    Rectangular grid over a 2-D size-parameter space.

    Attributes
    ----------
    span : np.ndarray
        ``(2, 2)`` array, row ``a`` is ``[min, max]`` of axis ``a``.
    ne : tuple of int
        Element count per axis.
    Ne : int
        Total number of elements.
    discrete : tuple of str
        Spacing mode per axis, ``'linear'`` or ``'logarithmic'``.
    edges : list of np.ndarray
        Node coordinates per axis (``ne[a] + 1`` values).
    centers : list of np.ndarray
        Element centre per axis (geometric mean on logarithmic axes).
    elements : np.ndarray
        ``(Ne, 2)`` element centres, axis 0 varying fastest.
    nelements : np.ndarray
        ``(Ne, 4)`` element edges ``[lo0, hi0, lo1, hi1]``.
    adj : scipy.sparse.csr_matrix
        ``(Ne, Ne)`` four-point-stencil adjacency.
    """

    def __init__(
        self,
        span=None,
        ne=None,
        discrete: Union[str, Sequence[str]] = LOGARITHMIC,
        edges=None,
    ):
        self.discrete = parse_discrete(discrete)

        if edges is not None:
            edges = _check_edges(edges, self.discrete)
        elif span is not None and ne is not None:
            edges = _edges_from_span(span, ne, self.discrete)
        else:
            raise InvalidGridSpec("Grid needs either (span, ne) or edges.")

        for e in edges:
            e.flags.writeable = False
        self.edges = edges
        self.ne = (edges[0].size - 1, edges[1].size - 1)
        self.Ne = self.ne[0] * self.ne[1]
        self.span = np.array([[e[0], e[-1]] for e in edges])

        self.centers = []
        for a, e in enumerate(edges):
            if self.discrete[a] == LOGARITHMIC:
                c = np.sqrt(e[:-1] * e[1:])
            else:
                c = 0.5 * (e[:-1] + e[1:])
            c.flags.writeable = False
            self.centers.append(c)

        n0, n1 = self.ne
        self.elements = np.column_stack([
            np.tile(self.centers[0], n1),
            np.repeat(self.centers[1], n0),
        ])
        self.nelements = np.column_stack([
            np.tile(edges[0][:-1], n1),
            np.tile(edges[0][1:], n1),
            np.repeat(edges[1][:-1], n0),
            np.repeat(edges[1][1:], n0),
        ])
        self.elements.flags.writeable = False
        self.nelements.flags.writeable = False

        self.adj = self.adjacency()

    def __repr__(self) -> str:
        return f"Grid(ne={self.ne}, discrete={self.discrete}, span={self.span.tolist()})"

    @property
    def full(self) -> 'Grid':
        """The underlying full grid; a ``Grid`` is its own full grid."""
        return self

    # ── Coordinates ───────────────────────────────────────────────────────────

    def to_space(self, values, axis: int) -> np.ndarray:
        """Map coordinates on ``axis`` to axis space (log10 on logarithmic axes)."""
        values = np.asarray(values, dtype=float)
        if self.discrete[_check_axis(axis)] == LOGARITHMIC:
            return np.log10(values)
        return values.copy()

    def axis_index(self, axis: int) -> np.ndarray:
        """Per-element index along ``axis`` (length Ne)."""
        n0, n1 = self.ne
        if _check_axis(axis) == 0:
            return np.tile(np.arange(n0), n1)
        return np.repeat(np.arange(n1), n0)

    def global_index(self, i, j):
        """
        Convert 2-D element coordinates to the global (linear) index.

        Args:
            i: Index along axis 0 (scalar or array).
            j: Index along axis 1 (scalar or array).

        Returns:
            ``int`` for scalar input, integer array otherwise.
        """
        i = np.asarray(i)
        j = np.asarray(j)
        if np.any((i < 0) | (i >= self.ne[0]) | (j < 0) | (j >= self.ne[1])):
            raise IndexError(f"Element coordinates out of range for grid of shape {self.ne}.")
        k = i + j * self.ne[0]
        return int(k) if k.ndim == 0 else k

    # ── Vector layout ─────────────────────────────────────────────────────────

    def reshape(self, x) -> np.ndarray:
        """Reshape an Ne-vector into an ``(ne[0], ne[1])`` array."""
        if sp.issparse(x):
            x = x.toarray()
        x = np.asarray(x, dtype=float).ravel()
        if x.size != self.Ne:
            raise DimensionMismatch(f"Vector of length {x.size} does not match grid with Ne={self.Ne}.")
        return x.reshape(self.ne, order='F')

    def vectorize(self, X) -> np.ndarray:
        """Flatten an ``(ne[0], ne[1])`` array into an Ne-vector (inverse of ``reshape``)."""
        X = np.asarray(X, dtype=float)
        if X.shape != self.ne:
            raise DimensionMismatch(f"Array of shape {X.shape} does not match grid shape {self.ne}.")
        return X.flatten(order='F')

    def full2partial(self, x):
        """Identity on a full grid (kept so both grid variants share one interface)."""
        return self._check_rows(x).copy()

    def partial2full(self, x) -> np.ndarray:
        """Identity on a full grid, returned as a dense array."""
        x = self._check_rows(x)
        if sp.issparse(x):
            x = x.toarray()
        return np.array(x, dtype=float)

    def _check_rows(self, x):
        if not sp.issparse(x):
            x = np.asarray(x, dtype=float)
        if x.shape[0] != self.Ne:
            raise DimensionMismatch(f"Leading dimension {x.shape[0]} does not match grid with Ne={self.Ne}.")
        return x

    # ── Geometry ──────────────────────────────────────────────────────────────

    def element_widths(self) -> Tuple[np.ndarray, np.ndarray]:
        """Per-element widths in axis space along axis 0 and axis 1."""
        n0, n1 = self.ne
        w0 = np.diff(self.to_space(self.edges[0], 0))
        w1 = np.diff(self.to_space(self.edges[1], 1))
        return np.tile(w0, n1), np.repeat(w1, n0)

    def element_area(self) -> np.ndarray:
        """
        Per-element area in axis space.

        On a log-log grid this is ``dlog10(a) * dlog10(b)``; the values sum to
        the area of ``span`` in the same space.
        """
        dr0, dr1 = self.element_widths()
        return dr0 * dr1

    def adjacency(self, w: Optional[float] = None) -> sp.csr_matrix:
        """
        Four-point-stencil adjacency matrix.

        Args:
            w: Optional weight for neighbours along axis 0 (vertical pixels in
               a mass-mobility plot).  Neighbours along axis 1 weigh 1.

        Returns:
            Symmetric ``(Ne, Ne)`` CSR matrix, no diagonal entries.
        """
        k = np.arange(self.Ne).reshape(self.ne, order='F')
        r0, c0 = k[:-1, :].ravel(), k[1:, :].ravel()
        r1, c1 = k[:, :-1].ravel(), k[:, 1:].ravel()
        w0 = 1.0 if w is None else float(w)

        rows = np.concatenate([r0, c0, r1, c1])
        cols = np.concatenate([c0, r0, c1, r1])
        vals = np.concatenate([
            np.full(2 * r0.size, w0),
            np.ones(2 * r1.size),
        ])
        return sp.csr_matrix((vals, (rows, cols)), shape=(self.Ne, self.Ne))

    # ── Marginals ─────────────────────────────────────────────────────────────

    def marginalize_op(self, axis: int) -> sp.csr_matrix:
        """Sparse operator whose product with x gives the marginal along ``axis``."""
        return marginalize_operator(self, axis)

    def marginalize(self, x, axis: int) -> np.ndarray:
        """
        Marginal distribution along ``axis``.

        Sums x over the other axis, weighting each element by its width along
        the summed axis so that the result approximates the continuous
        marginal density.
        """
        x = np.asarray(x, dtype=float).ravel()
        if x.size != self.Ne:
            raise DimensionMismatch(f"Vector of length {x.size} does not match grid with Ne={self.Ne}.")
        return self.marginalize_op(axis) @ x

    # ── Changes of basis ──────────────────────────────────────────────────────

    def project(self, grid_old: GridLike, x) -> np.ndarray:
        """
        Linearly interpolate x, defined on ``grid_old``, onto this grid.

        Interpolation runs in the axis space of ``grid_old`` between its
        element centres; points outside that range are set to 0.
        """
        old = grid_old.full
        X = old.reshape(grid_old.partial2full(x))
        points = tuple(old.to_space(old.centers[a], a) for a in (0, 1))
        interp = RegularGridInterpolator(
            points, X, method='linear', bounds_error=False, fill_value=0.0,
        )
        full = self.full
        query = np.column_stack([
            old.to_space(full.elements[:, 0], 0),
            old.to_space(full.elements[:, 1], 1),
        ])
        return self.full2partial(interp(query))

    def transform(self, grid_old: GridLike) -> sp.csr_matrix:
        """
        Operator rebasing a kernel computed on ``grid_old`` onto this grid.

        ``B[k_old, k_new]`` is the fraction of old element ``k_old`` (in axis
        space) lying inside new element ``k_new``.  With ``A_old`` built on
        ``grid_old``, ``A_old @ B`` integrates the kernel over the new
        elements, so rebasing is a matrix product rather than a new kernel
        evaluation.  Rows of elements missing from a partial ``grid_old`` are
        removed.

        Returns:
            ``(grid_old.Ne, self.Ne)`` CSR matrix.
        """
        old = grid_old.full
        overlaps = [
            _overlap_matrix(old.to_space(old.edges[a], a), old.to_space(self.edges[a], a))
            for a in (0, 1)
        ]
        B = sp.kron(overlaps[1], overlaps[0], format='csr')
        return grid_old.full2partial(B).tocsr()

    # ── Partial grids ─────────────────────────────────────────────────────────

    def partial(self, r0=None, slope0: float = 1.0, r1=None, slope1: float = 0.0):
        """
        Derive a ``PartialGrid`` cut about one or two lines.

        See ``pymmdist.core.partial_grid.PartialGrid`` for the arguments.
        """
        from pymmdist.core.partial_grid import PartialGrid

        return PartialGrid(
            discrete=self.discrete, edges=self.edges,
            r0=r0, slope0=slope0, r1=r1, slope1=slope1,
        )
