import math

import pytest

from damp_grid.layout.config import AdaptiveConfig, LayoutConfig, PolishConfig, ThresholdSchedule


def test_schedule_is_linear_between_endpoints():
    schedule = ThresholdSchedule(0.3, 0.9, epochs=4)
    assert schedule.value(0) == pytest.approx(0.3)
    assert schedule.value(1) == pytest.approx(0.5)
    assert schedule.value(3) == pytest.approx(0.9)
    assert schedule.value(10) == pytest.approx(0.9)


def test_single_epoch_schedule_uses_end_value():
    assert ThresholdSchedule(0.3, 0.9, epochs=1).value(0) == pytest.approx(0.9)
    assert ThresholdSchedule(0.3, 0.9, epochs=0).value(0) == pytest.approx(0.9)


def test_defaults_are_valid():
    config = LayoutConfig()
    assert config.min_sim == 0.25
    assert config.schedule.value(0) == pytest.approx(config.lambda_start)


@pytest.mark.parametrize(
    "overrides",
    [
        {"far_radius": 0},
        {"epochs": -1},
        {"min_sim": 1.5},
        {"lambda_start": -0.1},
        {"lambda_end": 2.0},
        {"eta": -1.0},
        {"eta": math.nan},
        {"max_batch_frac": 0.0},
        {"max_batch_frac": 1.1},
        {"delta_radius": 0},
        {"margin": -0.5},
        {"radius_sampling": "spiral"},
        {"distance_eps": 0.0},
    ],
)
def test_invalid_values_raise(overrides):
    with pytest.raises(ValueError):
        LayoutConfig(**overrides)


def test_hard_gate_eta_values_accepted():
    assert LayoutConfig(eta=None).eta is None
    assert LayoutConfig(eta=math.inf).eta == math.inf


def test_polish_validation():
    with pytest.raises(ValueError):
        PolishConfig(epochs=5, objective="closer")
    with pytest.raises(ValueError):
        PolishConfig(epochs=5, delta_radius=0)


@pytest.mark.parametrize(
    "overrides",
    [
        {"start_radius": 0},
        {"end_radius": 0},
        {"start_radius": 2, "end_radius": 3},
        {"swap_ratio_trigger": 1.5},
        {"radius_decay": 1.0},
        {"radius_decay": 0.0},
        {"lambda_step": 0.0},
    ],
)
def test_adaptive_validation(overrides):
    with pytest.raises(ValueError):
        AdaptiveConfig(**overrides)


def test_adaptive_end_radius_checked_against_far_radius():
    with pytest.raises(ValueError):
        LayoutConfig(far_radius=2, adaptive=AdaptiveConfig(end_radius=3))
    with pytest.raises(ValueError):
        LayoutConfig(radius_sampling="random", adaptive=AdaptiveConfig())
    assert LayoutConfig(far_radius=3, adaptive=AdaptiveConfig(end_radius=3)).adaptive.end_radius == 3
