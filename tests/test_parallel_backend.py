import random
import warnings

import numpy as np
import pytest

from conftest import make_ring_codes
from damp_grid.layout.backends.base import DeviceInitError
from damp_grid.layout.backends.parallel import ParallelBackend
from damp_grid.layout.backends.sequential import SequentialBackend
from damp_grid.layout.batch import BatchSwapSelector
from damp_grid.layout.config import AdaptiveConfig, EpochParams, LayoutConfig
from damp_grid.layout.energy import EnergyEvaluator
from damp_grid.layout.engine import LayoutEngine
from damp_grid.layout.grid import GridState
from damp_grid.layout.similarity import SimilarityCache

torch = pytest.importorskip("torch")


def _state(count=40, seed=9):
    codes = [code for _, code in make_ring_codes(count, length=40, width=7)]
    similarity = SimilarityCache(codes)
    grid = GridState.create(count, margin=0.3, rng=random.Random(seed))
    return grid, similarity


def _tensor_backend():
    return ParallelBackend(device="tensor", torch_device="cpu", dtype=torch.float64)


@pytest.mark.parametrize(
    "params",
    [
        EpochParams(epoch=0, lambda_threshold=0.3, eta=10.0, radius=3, min_sim=0.1),
        EpochParams(epoch=0, lambda_threshold=0.2, eta=None, radius=2, min_sim=0.0),
        EpochParams(
            epoch=0,
            lambda_threshold=0.5,
            eta=6.0,
            radius=2,
            min_sim=0.0,
            delta_radius=3,
            objective="inverse",
        ),
    ],
)
def test_tensor_candidates_match_sequential(params):
    grid, similarity = _state()
    sequential = SequentialBackend()
    sequential.upload_state(grid, similarity)
    expected = sequential.find_best_candidates(params)

    with _tensor_backend() as backend:
        backend.upload_state(grid, similarity)
        assert np.allclose(backend.similarity_matrix(), similarity.matrix())
        actual = backend.find_best_candidates(params)

    assert np.array_equal(expected.best_cell >= 0, actual.best_cell >= 0)
    assert np.allclose(expected.best_delta, actual.best_delta, atol=1e-9)
    # near ties may pick a different neighbor, but its delta must be the same
    evaluator = EnergyEvaluator(grid, similarity, params)
    for cell in np.flatnonzero(actual.best_cell >= 0):
        chosen = evaluator.delta(int(cell), int(actual.best_cell[cell]))
        assert chosen == pytest.approx(actual.best_delta[cell], abs=1e-9)


def test_tensor_backend_applies_batches():
    grid, similarity = _state()
    params = EpochParams(epoch=0, lambda_threshold=0.3, eta=10.0, radius=3, min_sim=0.0)
    with _tensor_backend() as backend:
        backend.upload_state(grid, similarity)
        candidates = backend.find_best_candidates(params)
        batch = BatchSwapSelector(0.3).select(
            candidates.best_cell, candidates.best_delta, grid.occupied_count
        )
        assert batch
        backend.apply_batch(batch)
        expected = grid.copy()
        expected.apply_pairs(batch.cell_pairs())
        assert backend.download_state() == expected


def test_engine_runs_on_tensor_device(ring_codes):
    config = LayoutConfig(far_radius=3, epochs=10, margin=0.2, seed=4)
    with LayoutEngine(ring_codes, config, backend=_tensor_backend()) as engine:
        result = engine.run()
    assert result.backend == "parallel"
    assert result.device == "tensor:cpu"
    assert sorted(placed.label for placed in result.placements) == list(range(len(ring_codes)))


def test_adaptive_radius_reaches_tensor_device(ring_codes):
    config = LayoutConfig(
        far_radius=4,
        epochs=60,
        seed=4,
        margin=0.2,
        adaptive=AdaptiveConfig(end_radius=1, swap_ratio_trigger=0.5),
    )
    with LayoutEngine(ring_codes, config, backend=_tensor_backend()) as engine:
        actual = engine.run()
    radii = [report.radius for report in actual.history]
    assert radii == sorted(radii, reverse=True)
    assert radii[0] == 4
    assert sorted(placed.label for placed in actual.placements) == list(range(len(ring_codes)))


def test_tensor_scan_emits_no_warnings():
    grid, similarity = _state()
    params = EpochParams(epoch=0, lambda_threshold=0.3, eta=10.0, radius=2, min_sim=0.0)
    with _tensor_backend() as backend:
        backend.upload_state(grid, similarity)
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            backend.find_best_candidates(params)
            backend.find_best_candidates(params)


def test_unknown_device_rejected():
    with pytest.raises(ValueError):
        ParallelBackend(device="fpga")


def test_gl_device_matches_sequential():
    pytest.importorskip("moderngl")
    grid, similarity = _state(count=24)
    params = EpochParams(epoch=0, lambda_threshold=0.3, eta=10.0, radius=2, min_sim=0.0)
    backend = ParallelBackend(device="gl")
    try:
        backend.upload_state(grid, similarity)
    except DeviceInitError as exc:
        pytest.skip(f"no OpenGL compute context: {exc}")
    with backend:
        assert np.allclose(backend.similarity_matrix(), similarity.matrix(), atol=1e-6)
        actual = backend.find_best_candidates(params)
    sequential = SequentialBackend()
    sequential.upload_state(grid, similarity)
    expected = sequential.find_best_candidates(params)
    assert np.array_equal(expected.best_cell >= 0, actual.best_cell >= 0)
    assert np.allclose(expected.best_delta, actual.best_delta, atol=1e-3)
