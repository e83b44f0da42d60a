from __future__ import annotations

import math
from dataclasses import dataclass

OBJECTIVES = ("distance", "inverse")
RADIUS_SAMPLING = ("fixed", "random")


@dataclass(frozen=True)
class PolishConfig:
    """Local refinement run after the long-range phase.

    ``objective="inverse"`` maximizes ``sum gate(sim) / (dist2 + eps)`` inside
    ``delta_radius``; ``"distance"`` repeats the long-range minimization with
    the neighbor sum restricted to ``delta_radius``.
    """

    epochs: int
    far_radius: int = 2
    delta_radius: int = 4
    objective: str = "inverse"

    def __post_init__(self) -> None:
        if self.epochs < 0:
            raise ValueError("polish epochs must be >= 0")
        if self.far_radius <= 0:
            raise ValueError("polish far_radius must be positive")
        if self.delta_radius <= 0:
            raise ValueError("polish delta_radius must be positive")
        if self.objective not in OBJECTIVES:
            raise ValueError("polish objective must be 'distance' or 'inverse'")


@dataclass(frozen=True)
class AdaptiveConfig:
    """Stall-driven control of the long-range phase.

    The first epoch's swap count is the baseline. Whenever an epoch commits
    at most ``swap_ratio_trigger * baseline`` swaps, the search radius is
    multiplied by ``radius_decay`` (floored at ``end_radius``) and lambda moves
    ``lambda_step`` toward ``lambda_end``. A stall with both already at their
    ends converges the phase. ``start_radius=None`` starts at ``far_radius``;
    ``lambda_step=None`` keeps the linear lambda schedule.
    """

    start_radius: int | None = None
    end_radius: int = 1
    swap_ratio_trigger: float = 0.01
    radius_decay: float = 0.5
    lambda_step: float | None = None

    def __post_init__(self) -> None:
        if self.start_radius is not None and self.start_radius <= 0:
            raise ValueError("adaptive start_radius must be positive")
        if self.end_radius <= 0:
            raise ValueError("adaptive end_radius must be positive")
        if self.start_radius is not None and self.start_radius < self.end_radius:
            raise ValueError("adaptive start_radius must be >= end_radius")
        if not 0 <= self.swap_ratio_trigger <= 1:
            raise ValueError("adaptive swap_ratio_trigger must be in [0, 1]")
        if not 0 < self.radius_decay < 1:
            raise ValueError("adaptive radius_decay must be in (0, 1)")
        if self.lambda_step is not None and self.lambda_step <= 0:
            raise ValueError("adaptive lambda_step must be positive when set")


@dataclass(frozen=True)
class LayoutConfig:
    far_radius: int = 8
    epochs: int = 50
    min_sim: float = 0.25
    lambda_start: float = 0.30
    lambda_end: float = 0.90
    eta: float | None = 10.0
    max_batch_frac: float = 0.30
    delta_radius: int | None = None
    margin: float = 0.0
    randomize_start: bool = True
    seed: int = 42
    radius_sampling: str = "fixed"
    distance_eps: float = 1e-6
    workers: int | None = None
    precompute_similarity: bool = True
    max_precompute: int = 4000
    track_energy: bool = True
    polish: PolishConfig | None = None
    adaptive: AdaptiveConfig | None = None

    def __post_init__(self) -> None:
        if self.far_radius <= 0:
            raise ValueError("far_radius must be positive")
        if self.epochs < 0:
            raise ValueError("epochs must be >= 0")
        if not 0 <= self.min_sim <= 1:
            raise ValueError("min_sim must be in [0, 1]")
        if not 0 <= self.lambda_start <= 1:
            raise ValueError("lambda_start must be in [0, 1]")
        if not 0 <= self.lambda_end <= 1:
            raise ValueError("lambda_end must be in [0, 1]")
        if self.eta is not None and (math.isnan(self.eta) or self.eta < 0):
            raise ValueError("eta must be >= 0 or None")
        if not 0 < self.max_batch_frac <= 1:
            raise ValueError("max_batch_frac must be in (0, 1]")
        if self.delta_radius is not None and self.delta_radius <= 0:
            raise ValueError("delta_radius must be positive when set")
        if self.margin < 0:
            raise ValueError("margin must be >= 0")
        if self.radius_sampling not in RADIUS_SAMPLING:
            raise ValueError("radius_sampling must be 'fixed' or 'random'")
        if self.distance_eps <= 0:
            raise ValueError("distance_eps must be positive")
        if self.workers is not None and self.workers < 0:
            raise ValueError("workers must be >= 0")
        if self.max_precompute <= 0:
            raise ValueError("max_precompute must be positive")
        if self.adaptive is not None:
            if self.radius_sampling != "fixed":
                raise ValueError("adaptive control requires radius_sampling='fixed'")
            start = self.adaptive.start_radius or self.far_radius
            if start < self.adaptive.end_radius:
                raise ValueError("adaptive end_radius must not exceed the start radius")

    @property
    def schedule(self) -> "ThresholdSchedule":
        return ThresholdSchedule(self.lambda_start, self.lambda_end, self.epochs)


@dataclass(frozen=True)
class ThresholdSchedule:
    start: float
    end: float
    epochs: int

    def value(self, epoch: int) -> float:
        if self.epochs <= 1:
            t = 1.0
        else:
            t = min(1.0, max(0.0, epoch / (self.epochs - 1)))
        return min(1.0, max(0.0, self.start + (self.end - self.start) * t))


@dataclass(frozen=True)
class EpochParams:
    """Everything a backend needs to score candidates for one epoch."""

    epoch: int
    lambda_threshold: float
    eta: float | None
    radius: int
    min_sim: float
    delta_radius: int | None = None
    objective: str = "distance"
    distance_eps: float = 1e-6

    @property
    def delta_radius2(self) -> int | None:
        return None if self.delta_radius is None else self.delta_radius * self.delta_radius
