"""
Unit tests for kernel assembly.

Transfer functions here are simple synthetic stand-ins: a delta response
(each setpoint sees exactly one element) and a Gaussian mobility response
whose peak shifts with charge state.
"""

import numpy as np
import pytest
import scipy.sparse as sp

from pymmdist.core.errors import DimensionMismatch, SetpointMismatch
from pymmdist.core.grid import Grid
from pymmdist.core.kernel import (
    TransferDevice,
    charge_contributions,
    gen_kernel,
    rebase_kernel,
)


SPAN = [[0.01, 100.0], [10.0, 1000.0]]


# ──────────────────────────────────────────────────────────────────────────────
# Synthetic transfer functions
# ──────────────────────────────────────────────────────────────────────────────

def _delta(setpoints, values, z):
    """Setpoint k transmits element k only."""
    return np.eye(len(setpoints), np.shape(values)[0])


def _single_charge(sizes, charges):
    """All particles carry exactly one charge."""
    return np.array([np.full(len(sizes), 1.0 if z == 1 else 0.0) for z in charges])


def _decaying_charge(sizes, charges):
    return np.array([np.full(len(sizes), 0.3 / z) for z in charges])


def _mobility_response(setpoints, d, z):
    """Gaussian in log10(d) around the setpoint diameter, shifted by charge."""
    ls = np.log10(np.asarray(setpoints, dtype=float))[:, np.newaxis]
    ld = np.log10(np.asarray(d, dtype=float) / z)[np.newaxis, :]
    return np.exp(-0.5 * ((ls - ld) / 0.05) ** 2)


def _mobility_1d(setpoints, d, z):
    return _mobility_response(setpoints, d, z)


def _mobility_2d(setpoints, elements, z):
    return _mobility_response(setpoints, elements[:, 1], z)


def _grid():
    return Grid(SPAN, [4, 6], 'log')


# ──────────────────────────────────────────────────────────────────────────────
# Tests
# ──────────────────────────────────────────────────────────────────────────────

class TestDeltaKernel:
    def test_reduces_to_area_diagonal(self):
        grid = _grid()
        dev = TransferDevice(_delta, np.arange(grid.Ne))
        A = gen_kernel([dev], grid, _single_charge, charge_states=(1,), n_data=grid.Ne)
        assert sp.issparse(A)
        assert A.shape == (grid.Ne, grid.Ne)
        np.testing.assert_allclose(A.toarray(), np.diag(grid.element_area()))

    def test_extra_charge_states_without_fraction(self):
        grid = _grid()
        dev = TransferDevice(_delta, np.arange(grid.Ne))
        A = gen_kernel([dev], grid, _single_charge)
        np.testing.assert_allclose(A.toarray(), np.diag(grid.element_area()))

    def test_partial_grid_area(self):
        pg = Grid([[1, 1e4], [1, 1e4]], [6, 6], 'log').partial(0, 1)
        dev = TransferDevice(_delta, np.arange(pg.Ne))
        A = gen_kernel([dev], pg, _single_charge, charge_states=(1,))
        np.testing.assert_allclose(A.diagonal(), pg.element_area())


class TestDevices:
    def test_1d_device_matches_2d(self):
        grid = _grid()
        setpoints = np.logspace(1.2, 2.8, 15)
        A1 = gen_kernel([TransferDevice(_mobility_1d, setpoints, axis=1)], grid, _decaying_charge)
        A2 = gen_kernel([TransferDevice(_mobility_2d, setpoints)], grid, _decaying_charge)
        np.testing.assert_allclose(A1.toarray(), A2.toarray())

    def test_devices_multiply(self):
        grid = _grid()
        setpoints = np.arange(grid.Ne)
        dma = TransferDevice(_mobility_2d, np.full(grid.Ne, 100.0))
        delta = TransferDevice(_delta, setpoints)
        A = gen_kernel([delta, dma], grid, _single_charge, charge_states=(1,), threshold=0)
        expected = np.diag(
            _mobility_2d(np.array([100.0]), grid.elements, 1)[0] * grid.element_area()
        )
        np.testing.assert_allclose(A.toarray(), expected)

    def test_contributions_per_charge(self):
        grid = _grid()
        setpoints = np.logspace(1.2, 2.8, 15)
        devs = [TransferDevice(_mobility_1d, setpoints, axis=1)]
        parts = charge_contributions(devs, grid, _decaying_charge, charge_states=(1, 2, 3))
        assert len(parts) == 3
        assert all(p.shape == (15, grid.Ne) for p in parts)

        total = parts[0] + parts[1] + parts[2]
        A = gen_kernel(devs, grid, _decaying_charge, charge_states=(1, 2, 3))
        np.testing.assert_allclose(
            A.toarray(), (total @ sp.diags(grid.element_area())).toarray()
        )

    def test_threshold_sparsifies(self):
        grid = Grid(SPAN, [10, 30], 'log')
        setpoints = np.logspace(1.2, 2.8, 15)
        devs = [TransferDevice(_mobility_1d, setpoints, axis=1)]
        dense = gen_kernel(devs, grid, _decaying_charge, charge_states=(1,), threshold=0)
        sparse = gen_kernel(devs, grid, _decaying_charge, charge_states=(1,), threshold=0.1)
        assert sparse.nnz < dense.nnz
        # surviving entries are unchanged
        mask = sparse.toarray() != 0
        np.testing.assert_allclose(sparse.toarray()[mask], dense.toarray()[mask])

    def test_device_repr_and_len(self):
        dev = TransferDevice(_delta, np.arange(5), name='delta')
        assert len(dev) == 5
        assert 'delta' in repr(dev)

    def test_bad_axis(self):
        with pytest.raises(ValueError):
            TransferDevice(_delta, np.arange(5), axis=2)


class TestErrors:
    def test_device_setpoint_counts_disagree(self):
        grid = _grid()
        d1 = TransferDevice(_delta, np.arange(grid.Ne))
        d2 = TransferDevice(_delta, np.arange(grid.Ne - 1))
        with pytest.raises(SetpointMismatch):
            gen_kernel([d1, d2], grid, _single_charge)

    def test_data_length_mismatch(self):
        grid = _grid()
        dev = TransferDevice(_delta, np.arange(grid.Ne))
        with pytest.raises(SetpointMismatch):
            gen_kernel([dev], grid, _single_charge, n_data=grid.Ne + 1)

    def test_wrong_rows(self):
        grid = _grid()
        dev = TransferDevice(lambda s, v, z: np.ones((3, grid.Ne)), np.arange(5))
        with pytest.raises(SetpointMismatch):
            gen_kernel([dev], grid, _single_charge)

    def test_wrong_columns(self):
        grid = _grid()
        dev = TransferDevice(lambda s, v, z: np.ones((5, 3)), np.arange(5))
        with pytest.raises(DimensionMismatch):
            gen_kernel([dev], grid, _single_charge)

    def test_wrong_charge_fraction_shape(self):
        grid = _grid()
        dev = TransferDevice(_delta, np.arange(grid.Ne))
        with pytest.raises(DimensionMismatch):
            gen_kernel([dev], grid, lambda d, z: np.ones((1, 2)))

    def test_no_devices(self):
        with pytest.raises(ValueError):
            gen_kernel([], _grid(), _single_charge)

    def test_is_value_error(self):
        grid = _grid()
        dev = TransferDevice(_delta, np.arange(grid.Ne))
        with pytest.raises(ValueError):
            gen_kernel([dev], grid, _single_charge, n_data=1)


class TestRebase:
    def test_integrates_over_new_elements(self):
        fine = Grid(SPAN, [8, 12], 'log')
        coarse = Grid(SPAN, [4, 6], 'log')
        A_fine = sp.csr_matrix(np.tile(fine.element_area(), (3, 1)))
        A = rebase_kernel(A_fine, coarse, fine)
        assert A.shape == (3, coarse.Ne)
        np.testing.assert_allclose(A.toarray(), np.tile(coarse.element_area(), (3, 1)))

    def test_column_mismatch(self):
        fine = Grid(SPAN, [8, 12], 'log')
        coarse = Grid(SPAN, [4, 6], 'log')
        with pytest.raises(DimensionMismatch):
            rebase_kernel(sp.csr_matrix(np.ones((3, 10))), coarse, fine)
