import random

import numpy as np
import pytest

from damp_grid.layout.grid import EMPTY, GridState, grid_side


def test_grid_side_uses_margin():
    assert grid_side(4) == 2
    assert grid_side(5) == 3
    assert grid_side(100, 0.15) == 11


def test_create_without_rng_fills_leading_cells():
    grid = GridState.create(5)
    assert grid.size == 3
    assert grid.as_array().tolist() == [0, 1, 2, 3, 4, EMPTY, EMPTY, EMPTY, EMPTY]


def test_create_with_rng_is_reproducible():
    a = GridState.create(20, margin=0.5, rng=random.Random(7))
    b = GridState.create(20, margin=0.5, rng=random.Random(7))
    assert a == b
    a.verify(20)


def test_neighbors_are_ascending_and_within_radius():
    grid = GridState.create(25)
    cells = grid.neighbors(12, 1)
    assert cells.tolist() == [7, 11, 13, 17]
    corner = grid.neighbors(0, 2)
    assert corner.tolist() == sorted(corner.tolist())
    for cell in corner:
        assert GridState.dist2(5, 0, int(cell)) <= 4


def test_neighbors_skip_empty_cells_when_asked():
    grid = GridState.from_cells([0, EMPTY, 1, EMPTY])
    assert grid.neighbors(0, 1, occupied_only=True).tolist() == [2]
    assert grid.neighbors(0, 1).tolist() == [1, 2]


def test_verify_detects_duplicates():
    grid = GridState.from_cells([0, 0, 1, EMPTY])
    with pytest.raises(RuntimeError):
        grid.verify(2)


def test_apply_pairs_rejects_overlapping_pairs():
    grid = GridState.create(4)
    with pytest.raises(RuntimeError):
        grid.apply_pairs([(0, 1), (1, 2)])


def test_row_major_readout_skips_empty():
    grid = GridState.from_cells([[EMPTY, 2], [0, 1]])
    assert list(grid.row_major()) == [(2, 0, 1), (0, 1, 0), (1, 1, 1)]


def test_load_checks_size():
    grid = GridState.create(4)
    with pytest.raises(RuntimeError):
        grid.load(np.zeros(3, dtype=np.int32))
