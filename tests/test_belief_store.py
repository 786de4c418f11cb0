import pytest
import torch

from structure import BeliefStore


def test_matrices_start_at_zero_with_the_same_shape():
    store = BeliefStore(3, 5)
    assert store.shape == (3, 5)
    for matrix in (store.current, store.previous, store.momentum):
        assert matrix.shape == (3, 5)
        assert torch.count_nonzero(matrix) == 0
    assert store.alpha == 1.0


def test_default_hyperparameters():
    store = BeliefStore(2, 2)
    assert store.step_size == 1.0
    assert store.regularization == 0.04
    assert store.temperature == 1.0


@pytest.mark.parametrize("users, items", [(0, 3), (3, 0), (-1, 2), (2.5, 2)])
def test_invalid_shape_is_rejected(users, items):
    with pytest.raises(ValueError):
        BeliefStore(users, items)


def test_cell_read_write():
    store = BeliefStore(2, 3)
    store.set_cell(1, 2, 0.5)
    assert store.get_cell(1, 2) == 0.5
    assert store.current[1, 2].item() == 0.5

    store.set_cell(0, 1, -2.0, matrix="momentum")
    assert store.get_cell(0, 1, matrix="momentum") == -2.0
    assert store.get_cell(0, 1) == 0.0


@pytest.mark.parametrize("u, i", [(-1, 0), (2, 0), (0, -1), (0, 3), (True, 0)])
def test_out_of_bounds_cells_raise_index_error(u, i):
    store = BeliefStore(2, 3)
    with pytest.raises(IndexError):
        store.get_cell(u, i)
    with pytest.raises(IndexError):
        store.set_cell(u, i, 1.0)


def test_unknown_matrix_name():
    store = BeliefStore(2, 2)
    with pytest.raises(ValueError):
        store.get_cell(0, 0, matrix="gradient")


def test_perturb_restores_the_cell():
    store = BeliefStore(2, 2)
    store.set_cell(0, 1, 0.25)
    with store.perturb(0, 1, 1e-4):
        assert store.get_cell(0, 1) == pytest.approx(0.2501)
    assert store.get_cell(0, 1) == 0.25


def test_perturb_restores_on_exception():
    store = BeliefStore(2, 2)
    with pytest.raises(RuntimeError):
        with store.perturb(1, 1, 3.0):
            raise RuntimeError("boom")
    assert store.get_cell(1, 1) == 0.0


def test_perturb_is_bounds_checked():
    store = BeliefStore(2, 2)
    with pytest.raises(IndexError):
        with store.perturb(2, 0, 1e-4):
            pass
