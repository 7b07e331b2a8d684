"""
Unit tests for the Grid module.

Tests cover:
  - Construction from span/ne and from explicit edges
  - Invalid specifications raise InvalidGridSpec
  - reshape / vectorize round trip and element ordering
  - Element areas sum to the (log-)span area
  - Four-point adjacency stencil
  - Marginals, projection between grids and the rebasing operator
"""

import numpy as np
import pytest
import scipy.sparse as sp

from pymmdist.core.errors import DimensionMismatch, InvalidGridSpec
from pymmdist.core.grid import Grid, parse_discrete


SPAN = [[0.01, 100.0], [10.0, 1000.0]]


def _mm_grid(ne=(10, 12)):
    """Mass-mobility grid used throughout: 4 decades x 2 decades."""
    return Grid(SPAN, ne, 'logarithmic')


# ──────────────────────────────────────────────────────────────────────────────
# Construction
# ──────────────────────────────────────────────────────────────────────────────

class TestConstruction:
    def test_counts(self):
        grid = _mm_grid()
        assert grid.ne == (10, 12)
        assert grid.Ne == 120
        assert grid.elements.shape == (120, 2)
        assert grid.nelements.shape == (120, 4)
        assert grid.adj.shape == (120, 120)

    def test_edges_span(self):
        grid = _mm_grid()
        assert grid.edges[0].size == 11
        assert grid.edges[1].size == 13
        assert grid.edges[0][0] == 0.01
        assert grid.edges[1][-1] == 1000.0
        np.testing.assert_allclose(np.diff(np.log10(grid.edges[0])), 0.4)

    def test_log_centers_are_geometric_means(self):
        grid = _mm_grid()
        np.testing.assert_allclose(
            grid.centers[1], np.sqrt(grid.edges[1][:-1] * grid.edges[1][1:])
        )

    def test_linear_centers(self):
        grid = Grid([[0, 2], [1, 4]], [4, 3], 'linear')
        np.testing.assert_allclose(grid.centers[0], [0.25, 0.75, 1.25, 1.75])
        np.testing.assert_allclose(grid.centers[1], [1.5, 2.5, 3.5])

    def test_from_edges(self):
        grid = Grid(edges=[[1, 2, 4, 8], [10, 100]], discrete='log')
        assert grid.ne == (3, 1)
        np.testing.assert_allclose(grid.span, [[1, 8], [10, 100]])

    def test_mixed_spacing(self):
        grid = Grid([[0, 1], [1, 100]], [2, 2], ['lin', 'log'])
        assert grid.discrete == ('linear', 'logarithmic')
        np.testing.assert_allclose(grid.centers[1], [np.sqrt(10), np.sqrt(1000)])

    def test_arrays_read_only(self):
        grid = _mm_grid()
        with pytest.raises(ValueError):
            grid.elements[0, 0] = 1.0
        with pytest.raises(ValueError):
            grid.edges[0][0] = 1.0

    def test_parse_discrete(self):
        assert parse_discrete('log') == ('logarithmic', 'logarithmic')
        assert parse_discrete(['linear', 'LOG']) == ('linear', 'logarithmic')


class TestInvalidSpec:
    def test_zero_count(self):
        with pytest.raises(InvalidGridSpec):
            Grid(SPAN, [0, 5])

    def test_non_integer_count(self):
        with pytest.raises(InvalidGridSpec):
            Grid(SPAN, [2.5, 5])

    def test_reversed_span(self):
        with pytest.raises(InvalidGridSpec):
            Grid([[100, 0.01], [10, 1000]], [5, 5])

    def test_non_positive_log_span(self):
        with pytest.raises(InvalidGridSpec):
            Grid([[0, 100], [10, 1000]], [5, 5], 'log')

    def test_non_monotonic_edges(self):
        with pytest.raises(InvalidGridSpec):
            Grid(edges=[[1, 3, 2], [1, 2]], discrete='linear')

    def test_unknown_mode(self):
        with pytest.raises(InvalidGridSpec):
            Grid(SPAN, [5, 5], 'cubic')

    def test_missing_inputs(self):
        with pytest.raises(InvalidGridSpec):
            Grid()

    def test_is_value_error(self):
        with pytest.raises(ValueError):
            Grid(SPAN, [-1, 5])


# ──────────────────────────────────────────────────────────────────────────────
# Layout
# ──────────────────────────────────────────────────────────────────────────────

class TestLayout:
    def test_round_trip(self):
        grid = _mm_grid()
        X = np.random.default_rng(0).random((10, 12))
        np.testing.assert_array_equal(grid.reshape(grid.vectorize(X)), X)

    def test_axis0_fastest(self):
        grid = _mm_grid()
        x = np.arange(grid.Ne, dtype=float)
        X = grid.reshape(x)
        assert X[1, 0] == 1.0
        assert X[0, 1] == 10.0
        assert grid.global_index(3, 2) == 23
        np.testing.assert_allclose(grid.elements[23], [grid.centers[0][3], grid.centers[1][2]])

    def test_global_index_array(self):
        grid = _mm_grid()
        k = grid.global_index(np.array([0, 9]), np.array([0, 11]))
        np.testing.assert_array_equal(k, [0, 119])

    def test_global_index_out_of_range(self):
        with pytest.raises(IndexError):
            _mm_grid().global_index(10, 0)

    def test_reshape_sparse_column(self):
        grid = _mm_grid()
        x = np.arange(grid.Ne, dtype=float)
        X = grid.reshape(sp.csr_matrix(x[:, np.newaxis]))
        np.testing.assert_array_equal(X, grid.reshape(x))

    def test_reshape_wrong_length(self):
        with pytest.raises(DimensionMismatch):
            _mm_grid().reshape(np.ones(119))

    def test_vectorize_wrong_shape(self):
        with pytest.raises(DimensionMismatch):
            _mm_grid().vectorize(np.ones((12, 10)))

    def test_axis_index(self):
        grid = Grid(SPAN, [3, 2])
        np.testing.assert_array_equal(grid.axis_index(0), [0, 1, 2, 0, 1, 2])
        np.testing.assert_array_equal(grid.axis_index(1), [0, 0, 0, 1, 1, 1])

    def test_full_is_self(self):
        grid = _mm_grid()
        assert grid.full is grid
        x = np.arange(grid.Ne, dtype=float)
        np.testing.assert_array_equal(grid.partial2full(grid.full2partial(x)), x)


# ──────────────────────────────────────────────────────────────────────────────
# Geometry
# ──────────────────────────────────────────────────────────────────────────────

class TestGeometry:
    def test_log_area_sum(self):
        grid = _mm_grid()
        # 4 decades of mass x 2 decades of mobility
        assert grid.element_area().sum() == pytest.approx(8.0)

    def test_linear_area_sum(self):
        grid = Grid([[0, 2], [1, 4]], [4, 3], 'linear')
        assert grid.element_area().sum() == pytest.approx(6.0)

    def test_areas_positive(self):
        assert np.all(_mm_grid().element_area() > 0)

    def test_widths(self):
        dr0, dr1 = _mm_grid().element_widths()
        np.testing.assert_allclose(dr0, 0.4)
        np.testing.assert_allclose(dr1, 2.0 / 12)


class TestAdjacency:
    def test_stencil(self):
        grid = Grid(SPAN, [3, 3])
        adj = grid.adj.toarray()
        degree = adj.sum(axis=1)
        assert degree[grid.global_index(1, 1)] == 4
        assert degree[grid.global_index(0, 0)] == 2
        assert degree[grid.global_index(1, 0)] == 3
        assert grid.adj.nnz == 24

    def test_symmetric_no_diagonal(self):
        adj = _mm_grid().adj.toarray()
        np.testing.assert_array_equal(adj, adj.T)
        assert np.all(np.diag(adj) == 0)

    def test_no_diagonal_neighbours(self):
        grid = Grid(SPAN, [3, 3])
        assert grid.adj[grid.global_index(0, 0), grid.global_index(1, 1)] == 0

    def test_weighted(self):
        grid = Grid(SPAN, [3, 3])
        adj = grid.adjacency(w=2.0)
        assert adj[0, grid.global_index(1, 0)] == 2.0
        assert adj[0, grid.global_index(0, 1)] == 1.0


# ──────────────────────────────────────────────────────────────────────────────
# Marginals and changes of basis
# ──────────────────────────────────────────────────────────────────────────────

class TestMarginalize:
    def test_uniform(self):
        grid = _mm_grid()
        x = np.ones(grid.Ne)
        # integrating 1 over 2 decades of mobility
        np.testing.assert_allclose(grid.marginalize(x, axis=0), 2.0)
        np.testing.assert_allclose(grid.marginalize(x, axis=1), 4.0)

    def test_operator_matches(self):
        grid = _mm_grid()
        x = np.random.default_rng(1).random(grid.Ne)
        op = grid.marginalize_op(1)
        assert op.shape == (12, grid.Ne)
        np.testing.assert_allclose(op @ x, grid.marginalize(x, 1))

    def test_bad_axis(self):
        with pytest.raises(ValueError):
            _mm_grid().marginalize(np.ones(120), axis=2)


class TestProject:
    def test_same_grid_identity(self):
        grid = _mm_grid()
        x = np.random.default_rng(2).random(grid.Ne)
        np.testing.assert_allclose(grid.project(grid, x), x)

    def test_linear_in_log_space_is_exact_inside(self):
        coarse = _mm_grid((10, 12))
        fine = _mm_grid((20, 24))
        lm = np.log10(coarse.elements[:, 0])
        ld = np.log10(coarse.elements[:, 1])
        x = 5.0 + lm + 2.0 * ld

        y = fine.project(coarse, x)
        fm = np.log10(fine.elements[:, 0])
        fd = np.log10(fine.elements[:, 1])
        inside = (
            (fm >= lm.min()) & (fm <= lm.max())
            & (fd >= ld.min()) & (fd <= ld.max())
        )
        np.testing.assert_allclose(y[inside], (5.0 + fm + 2.0 * fd)[inside])
        np.testing.assert_array_equal(y[~inside], 0.0)
        assert np.any(~inside)


class TestTransform:
    def test_nested_rows_sum_to_one(self):
        fine = _mm_grid((20, 24))
        coarse = _mm_grid((10, 12))
        B = coarse.transform(fine)
        assert B.shape == (fine.Ne, coarse.Ne)
        np.testing.assert_allclose(np.asarray(B.sum(axis=1)).ravel(), 1.0)
        # each coarse element holds four fine elements
        np.testing.assert_allclose(np.asarray(B.sum(axis=0)).ravel(), 4.0)

    def test_identity(self):
        grid = _mm_grid()
        np.testing.assert_allclose(grid.transform(grid).toarray(), np.eye(grid.Ne), atol=1e-12)

    def test_preserves_integrals(self):
        fine = _mm_grid((20, 24))
        coarse = _mm_grid((10, 12))
        B = coarse.transform(fine)
        np.testing.assert_allclose(B.T @ fine.element_area(), coarse.element_area())
