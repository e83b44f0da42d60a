import numpy as np
import pytest

from damp_grid.layout.batch import BatchSwapSelector


def test_budget_floors_and_keeps_at_least_one():
    selector = BatchSwapSelector(0.3)
    assert selector.budget(10) == 3
    assert selector.budget(2) == 1
    assert BatchSwapSelector(0.25).budget(4) == 1


def test_invalid_fraction_rejected():
    with pytest.raises(ValueError):
        BatchSwapSelector(0.0)
    with pytest.raises(ValueError):
        BatchSwapSelector(1.5)


def test_select_takes_steepest_disjoint_pairs():
    best_cell = np.array([1, 0, 3, 2, 0, -1])
    best_delta = np.array([-1.0, -1.0, -5.0, -5.0, -3.0, 0.0])
    batch = BatchSwapSelector(1.0).select(best_cell, best_delta, occupied_count=6)
    assert batch.cell_pairs() == [(2, 3), (4, 0)]
    assert batch.candidates == 5


def test_select_ignores_non_negative_deltas():
    best_cell = np.array([1, 0])
    best_delta = np.array([0.0, 0.5])
    batch = BatchSwapSelector(1.0).select(best_cell, best_delta, occupied_count=2)
    assert not batch
    assert batch.as_array().shape == (0, 2)


def test_ties_keep_cell_order_and_budget_stops_early():
    best_cell = np.array([1, 0, 0, 1])
    best_delta = np.full(4, -2.0 / 3.0)
    batch = BatchSwapSelector(0.25).select(best_cell, best_delta, occupied_count=4)
    assert batch.cell_pairs() == [(0, 1)]
    assert batch.budget == 1


def test_batch_cells_are_disjoint():
    rng = np.random.default_rng(0)
    best_cell = rng.integers(0, 50, size=50)
    best_delta = -rng.random(50)
    batch = BatchSwapSelector(1.0).select(best_cell, best_delta, occupied_count=50)
    cells = [cell for pair in batch.cell_pairs() for cell in pair]
    assert len(cells) == len(set(cells))
    assert all(pair.delta < 0 for pair in batch.pairs)
