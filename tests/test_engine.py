import numpy as np
import pytest

from conftest import make_ring_codes
from damp_grid.encoding.bitarray import BitArray
from damp_grid.layout.backends.sequential import SequentialBackend
from damp_grid.layout.config import AdaptiveConfig, EpochParams, LayoutConfig, PolishConfig, ThresholdSchedule
from damp_grid.layout.engine import AdaptiveState, LayoutEngine, LayoutState
from damp_grid.layout.grid import GridState
from damp_grid.layout.similarity import SimilarityCache


def _square_codes():
    return [
        ("A", BitArray.from01("1100")),
        ("B", BitArray.from01("1010")),
        ("C", BitArray.from01("1100")),
        ("D", BitArray.from01("0000")),
    ]


def _square_config(**overrides):
    values = dict(
        far_radius=1,
        epochs=1,
        min_sim=0.0,
        lambda_start=0.0,
        lambda_end=0.0,
        eta=None,
        max_batch_frac=0.25,
    )
    values.update(overrides)
    return LayoutConfig(**values)


def test_square_example_brings_twins_together():
    grid = GridState.from_cells([[0, 1], [3, 2]])
    with LayoutEngine(_square_codes(), _square_config(), grid=grid) as engine:
        result = engine.run()
    positions = {placed.label: (placed.y, placed.x) for placed in result.placements}
    (ay, ax), (cy, cx) = positions["A"], positions["C"]
    assert abs(ay - cy) + abs(ax - cx) == 1
    assert result.initial_energy == pytest.approx(8 / 3)
    assert result.final_energy == pytest.approx(2.0)
    assert result.total_swaps == 1
    assert result.state is LayoutState.EXHAUSTED_BUDGET


def test_single_code_converges_in_first_epoch():
    codes = [("only", BitArray.from01("1010"))]
    with LayoutEngine(codes, LayoutConfig(epochs=5)) as engine:
        result = engine.run()
    assert result.state is LayoutState.CONVERGED
    assert result.total_swaps == 0
    assert len(result.history) == 1
    assert [(p.label, p.y, p.x) for p in result.placements] == [("only", 0, 0)]


def test_layout_conserves_codes(ring_codes):
    config = LayoutConfig(far_radius=3, epochs=15, margin=0.3, seed=11)
    with LayoutEngine(ring_codes, config) as engine:
        result = engine.run()
    labels = sorted(placed.label for placed in result.placements)
    assert labels == list(range(len(ring_codes)))
    cells = {(placed.y, placed.x) for placed in result.placements}
    assert len(cells) == len(ring_codes)
    order = [(placed.y, placed.x) for placed in result.placements]
    assert order == sorted(order)


def test_layout_lowers_energy(ring_codes):
    config = LayoutConfig(
        far_radius=3,
        epochs=30,
        lambda_start=0.3,
        lambda_end=0.3,
        margin=0.2,
        seed=5,
    )
    with LayoutEngine(ring_codes, config) as engine:
        result = engine.run()
    assert result.final_energy < result.initial_energy
    assert all(report.swaps <= report.candidates for report in result.history)


def test_same_seed_gives_same_layout(ring_codes):
    config = LayoutConfig(far_radius=2, epochs=8, seed=3, radius_sampling="random")

    def run_once():
        with LayoutEngine(ring_codes, config) as engine:
            return engine.run()

    first, second = run_once(), run_once()
    assert [(p.label, p.y, p.x) for p in first.placements] == [
        (p.label, p.y, p.x) for p in second.placements
    ]
    assert [r.radius for r in first.history] == [r.radius for r in second.history]
    assert all(1 <= r.radius <= 2 for r in first.history)


def test_polish_phase_runs_after_long_phase(ring_codes):
    config = LayoutConfig(
        far_radius=3,
        epochs=5,
        seed=2,
        polish=PolishConfig(epochs=4, far_radius=1, delta_radius=3),
    )
    with LayoutEngine(ring_codes, config) as engine:
        result = engine.run()
    assert [phase.name for phase in result.phases] == ["long", "polish"]
    assert {report.phase for report in result.history} <= {"long", "polish"}
    assert all(r.lambda_threshold == config.lambda_end for r in result.history if r.phase == "polish")
    assert result.final_energy is not None
    assert len(result.placements) == len(ring_codes)


def test_threaded_scan_matches_single_thread():
    codes = [code for _, code in make_ring_codes(200, length=64, width=10)]
    similarity = SimilarityCache(codes)
    grid = GridState.create(200, margin=0.2)
    params = EpochParams(epoch=0, lambda_threshold=0.3, eta=10.0, radius=3, min_sim=0.1)

    single = SequentialBackend()
    single.upload_state(grid, similarity)
    threaded = SequentialBackend(workers=2)
    threaded.upload_state(grid, similarity)
    expected = single.find_best_candidates(params)
    actual = threaded.find_best_candidates(params)
    assert np.array_equal(expected.best_cell, actual.best_cell)
    assert np.allclose(expected.best_delta, actual.best_delta)


def test_empty_input_rejected():
    with pytest.raises(ValueError):
        LayoutEngine([], LayoutConfig())


def test_mismatched_code_lengths_rejected():
    codes = [("a", BitArray(4)), ("b", BitArray(5))]
    with pytest.raises(ValueError):
        LayoutEngine(codes, LayoutConfig())


def test_zero_length_code_rejected():
    with pytest.raises(ValueError):
        LayoutEngine([("a", [])], LayoutConfig())


def test_unknown_backend_rejected():
    with pytest.raises(ValueError):
        LayoutEngine(_square_codes(), LayoutConfig(), backend="quantum")


def test_run_only_once():
    engine = LayoutEngine(_square_codes(), _square_config())
    engine.run()
    with pytest.raises(RuntimeError):
        engine.run()
    engine.close()
    engine.close()


def test_plain_bit_sequences_are_accepted():
    codes = [("x", [1, 1, 0, 0]), ("y", (0, 1, 1, 0))]
    with LayoutEngine(codes, LayoutConfig(epochs=2)) as engine:
        result = engine.run()
    assert {p.label for p in result.placements} == {"x", "y"}


def test_polish_params_require_polish_config():
    with LayoutEngine(_square_codes(), _square_config()) as engine:
        with pytest.raises(RuntimeError):
            engine._polish_params(0)


def test_adaptive_radius_decays_on_stalls():
    config = AdaptiveConfig(
        start_radius=8,
        end_radius=1,
        swap_ratio_trigger=0.25,
        radius_decay=0.5,
        lambda_step=0.2,
    )
    state = AdaptiveState(config, far_radius=8, schedule=ThresholdSchedule(0.3, 0.9, epochs=10))
    radii, lambdas, stalls = [], [], []
    for epoch, swaps in enumerate([20, 5, 6, 2, 0, 3]):
        stalls.append(state.update(swaps))
        radii.append(state.radius)
        lambdas.append(state.lambda_for_epoch(epoch + 1))
    assert state.baseline == 20
    assert stalls == [False, True, False, True, True, True]
    assert radii == [8, 4, 4, 2, 1, 1]
    assert lambdas == pytest.approx([0.3, 0.5, 0.5, 0.7, 0.9, 0.9])
    assert state.at_end


def test_adaptive_without_lambda_step_follows_schedule():
    schedule = ThresholdSchedule(0.3, 0.9, epochs=4)
    state = AdaptiveState(AdaptiveConfig(end_radius=2), far_radius=6, schedule=schedule)
    assert state.radius == 6
    assert not state.at_end
    state.update(0)
    assert state.radius == 3
    assert state.lambda_for_epoch(1) == pytest.approx(schedule.value(1))
    state.update(0)
    assert state.radius == 2
    assert state.at_end


def test_adaptive_stall_at_final_radius_converges():
    codes = [("only", BitArray.from01("1010"))]
    config = LayoutConfig(far_radius=4, epochs=10, adaptive=AdaptiveConfig(end_radius=1))
    with LayoutEngine(codes, config) as engine:
        result = engine.run()
    assert result.state is LayoutState.CONVERGED
    assert [report.radius for report in result.history] == [4, 2, 1]


def test_adaptive_long_phase_shrinks_radius(ring_codes):
    config = LayoutConfig(
        far_radius=4,
        epochs=400,
        seed=7,
        margin=0.2,
        adaptive=AdaptiveConfig(end_radius=1, swap_ratio_trigger=0.3, lambda_step=0.2),
    )
    with LayoutEngine(ring_codes, config) as engine:
        result = engine.run()
    radii = [report.radius for report in result.history]
    assert radii[0] == 4
    assert radii == sorted(radii, reverse=True)
    assert radii[-1] == 1
    assert result.state is LayoutState.CONVERGED
    assert len(result.history) < 400
    assert sorted(placed.label for placed in result.placements) == list(range(len(ring_codes)))
