from __future__ import annotations

import enum
import math
import random
import time
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import numpy as np

from damp_grid.article_refs import (
    ENERGIES,
    ENERGY_LONG,
    ENERGY_SHORT,
    GPU_IMPLEMENTATION,
    LAID_OUT_STRUCTURE,
    LAYOUT_ALGORITHM,
    LAYOUT_COMPACTNESS,
    LAYOUT_PARAMETERS,
    PAIR_SELECTION,
    SIMILARITY_MEASURES,
    SPARSE_BIT_VECTORS,
)
from damp_grid.encoding.bitarray import BitArray
from damp_grid.layout.backends.base import LayoutBackend
from damp_grid.layout.backends.parallel import ParallelBackend
from damp_grid.layout.backends.sequential import SequentialBackend
from damp_grid.layout.batch import BatchSwapSelector
from damp_grid.layout.config import AdaptiveConfig, EpochParams, LayoutConfig, ThresholdSchedule
from damp_grid.layout.energy import EnergyEvaluator
from damp_grid.layout.grid import GridState
from damp_grid.layout.similarity import SimilarityCache
from damp_grid.logging import LOGGER

_LAYOUT_EPOCH_TIMELINE = "layout/epoch"
_VISUAL_GRID_LIMIT = 1024


class LayoutState(enum.Enum):
    INITIALIZING = "initializing"
    RUNNING_EPOCH = "running_epoch"
    CONVERGED = "converged"
    EXHAUSTED_BUDGET = "exhausted_budget"

    @property
    def terminal(self) -> bool:
        return self in (LayoutState.CONVERGED, LayoutState.EXHAUSTED_BUDGET)


@dataclass(frozen=True)
class EpochReport:
    phase: str
    epoch: int
    lambda_threshold: float
    radius: int
    candidates: int
    swaps: int
    energy: float | None
    duration: float


@dataclass(frozen=True)
class PlacedCode:
    label: Any
    code: BitArray
    y: int
    x: int


@dataclass(frozen=True)
class PhaseResult:
    name: str
    state: LayoutState
    epochs: int
    swaps: int
    energy_before: float | None
    energy_after: float | None


@dataclass(frozen=True)
class LayoutResult:
    placements: tuple[PlacedCode, ...]
    grid_size: int
    state: LayoutState
    phases: tuple[PhaseResult, ...]
    history: tuple[EpochReport, ...]
    initial_energy: float | None
    final_energy: float | None
    backend: str
    device: str | None

    @property
    def total_swaps(self) -> int:
        return sum(phase.swaps for phase in self.phases)

    def label_grid(self) -> list[list[Any]]:
        grid: list[list[Any]] = [[None] * self.grid_size for _ in range(self.grid_size)]
        for placed in self.placements:
            grid[placed.y][placed.x] = placed.label
        return grid


class AdaptiveState:
    """Radius and lambda of an adaptive long-range phase."""

    def __init__(self, config: AdaptiveConfig, *, far_radius: int, schedule: ThresholdSchedule) -> None:
        self._config = config
        self._schedule = schedule
        self.radius = config.start_radius or far_radius
        self._lambda = schedule.start
        self.baseline: int | None = None

    def lambda_for_epoch(self, epoch: int) -> float:
        if self._config.lambda_step is None:
            return self._schedule.value(epoch)
        return self._lambda

    @property
    def at_end(self) -> bool:
        lambda_done = self._config.lambda_step is None or self._lambda == self._schedule.end
        return self.radius <= self._config.end_radius and lambda_done

    def update(self, swaps: int) -> bool:
        """Record one epoch's swap count; ``True`` when it stalled."""
        if self.baseline is None:
            self.baseline = max(1, swaps)
        if swaps > self._config.swap_ratio_trigger * self.baseline:
            return False
        self.radius = max(self._config.end_radius, int(self.radius * self._config.radius_decay))
        step = self._config.lambda_step
        if step is not None:
            end = self._schedule.end
            if self._lambda < end:
                self._lambda = min(end, self._lambda + step)
            else:
                self._lambda = max(end, self._lambda - step)
            if math.isclose(self._lambda, end):
                self._lambda = end
        return True


class LayoutEngine:
    """Energy-minimizing placement of sparse codes on a square grid."""

    def __init__(
        self,
        codes: Iterable[tuple[Any, BitArray | Iterable[int]]],
        config: LayoutConfig | None = None,
        *,
        backend: str | LayoutBackend = "sequential",
        device: str = "auto",
        rng: random.Random | None = None,
        grid: GridState | None = None,
    ) -> None:
        self.config = config or LayoutConfig()
        self._labels: list[Any] = []
        self._codes: list[BitArray] = []
        for label, code in codes:
            self._labels.append(label)
            self._codes.append(self._coerce_code(code))
        if not self._codes:
            raise ValueError("codes must be non-empty")
        code_length = len(self._codes[0])
        if code_length == 0:
            raise ValueError("codes must have a positive bit length")
        if any(len(code) != code_length for code in self._codes):
            raise ValueError("codes must share one bit length")
        self._count = len(self._codes)
        self._rng = rng if rng is not None else random.Random(self.config.seed)
        self._selector = BatchSwapSelector(self.config.max_batch_frac)
        self._state = LayoutState.INITIALIZING
        self._history: list[EpochReport] = []
        self._closed = False
        self._adaptive: AdaptiveState | None = None

        if grid is not None:
            grid.verify(self._count)
            self._grid = grid.copy()
        else:
            self._grid = GridState.create(
                self._count,
                margin=self.config.margin,
                rng=self._rng if self.config.randomize_start else None,
            )

        ones = [code.count() for code in self._codes]
        LOGGER.event(
            "layout.init",
            section=LAYOUT_ALGORITHM,
            data={"codes": self._count, "seed": self.config.seed},
        )
        LOGGER.event(
            "layout.codes",
            section=SPARSE_BIT_VECTORS,
            data={
                "code_length": code_length,
                "ones_min": min(ones),
                "ones_max": max(ones),
                "ones_avg": sum(ones) / len(ones),
            },
        )
        LOGGER.event(
            "layout.grid",
            section=LAYOUT_COMPACTNESS,
            data={
                "grid_size": self._grid.size,
                "margin": self.config.margin,
                "randomize_start": self.config.randomize_start,
            },
        )
        LOGGER.event(
            "layout.similarity",
            section=SIMILARITY_MEASURES,
            data={"similarity": "jaccard", "min_sim": self.config.min_sim},
        )
        LOGGER.event(
            "layout.thresholds",
            section=ENERGIES,
            data={
                "lambda_start": self.config.lambda_start,
                "lambda_end": self.config.lambda_end,
                "eta": self.config.eta,
            },
        )
        if self.config.eta == 0:
            LOGGER.event(
                "layout.thresholds.flat",
                section=ENERGIES,
                data={"eta": 0.0, "gate": "sim / 2"},
            )

        self._similarity = SimilarityCache(
            self._codes,
            precompute=self.config.precompute_similarity,
            max_precompute=self.config.max_precompute,
            workers=self.config.workers,
        )
        self._backend = self._resolve_backend(backend, device)
        try:
            self._backend.upload_state(self._grid, self._similarity)
        except Exception:
            self._backend.close()
            raise
        LOGGER.event(
            "layout.backend",
            section=GPU_IMPLEMENTATION,
            data={
                "backend": self._backend.name,
                "uses_gpu": self._backend.uses_gpu,
                "device": self._backend.device,
            },
        )

    def _resolve_backend(self, backend: str | LayoutBackend, device: str) -> LayoutBackend:
        if isinstance(backend, LayoutBackend):
            return backend
        if backend == "sequential":
            return SequentialBackend(workers=self.config.workers)
        if backend == "parallel":
            return ParallelBackend(device=device)
        raise ValueError("backend must be 'sequential', 'parallel' or a LayoutBackend")

    @staticmethod
    def _coerce_code(code: BitArray | Iterable[int]) -> BitArray:
        if isinstance(code, BitArray):
            return code
        return BitArray.from_bits(list(code))

    @property
    def state(self) -> LayoutState:
        return self._state

    @property
    def grid(self) -> GridState:
        return self._grid.copy()

    @property
    def similarity(self) -> SimilarityCache:
        return self._similarity

    @property
    def backend(self) -> LayoutBackend:
        return self._backend

    def _long_params(self, epoch: int) -> EpochParams:
        config = self.config
        radius = config.far_radius
        lambda_threshold = config.schedule.value(epoch)
        if self._adaptive is not None:
            radius = self._adaptive.radius
            lambda_threshold = self._adaptive.lambda_for_epoch(epoch)
        elif config.radius_sampling == "random":
            radius = self._rng.randint(1, config.far_radius)
        return EpochParams(
            epoch=epoch,
            lambda_threshold=lambda_threshold,
            eta=config.eta,
            radius=radius,
            min_sim=config.min_sim,
            delta_radius=config.delta_radius,
            objective="distance",
            distance_eps=config.distance_eps,
        )

    def _long_reference(self) -> EpochParams:
        """Fixed parameters the long-range energy is reported under."""
        config = self.config
        return EpochParams(
            epoch=0,
            lambda_threshold=config.lambda_end,
            eta=config.eta,
            radius=config.far_radius,
            min_sim=config.min_sim,
            objective="distance",
            distance_eps=config.distance_eps,
        )

    def _polish_params(self, epoch: int) -> EpochParams:
        config = self.config
        polish = config.polish
        if polish is None:
            raise RuntimeError("layout config has no polish phase")
        return EpochParams(
            epoch=epoch,
            lambda_threshold=config.lambda_end,
            eta=config.eta,
            radius=polish.far_radius,
            min_sim=config.min_sim,
            delta_radius=polish.delta_radius,
            objective=polish.objective,
            distance_eps=config.distance_eps,
        )

    def energy(self, params: EpochParams) -> float:
        return EnergyEvaluator(self._grid, self._similarity, params).total_energy()

    def run(self) -> LayoutResult:
        if self._closed:
            raise RuntimeError("layout engine is closed")
        if self._state is not LayoutState.INITIALIZING:
            raise RuntimeError("layout engine can run only once")
        started = time.perf_counter()
        long_reference = self._long_reference()
        adaptive = self.config.adaptive
        if adaptive is not None:
            self._adaptive = AdaptiveState(
                adaptive,
                far_radius=self.config.far_radius,
                schedule=self.config.schedule,
            )
            LOGGER.event(
                "layout.adaptive.config",
                section=LAYOUT_PARAMETERS,
                data={
                    "start_radius": self._adaptive.radius,
                    "end_radius": adaptive.end_radius,
                    "swap_ratio_trigger": adaptive.swap_ratio_trigger,
                    "radius_decay": adaptive.radius_decay,
                    "lambda_step": adaptive.lambda_step,
                },
            )
        phases = [
            self._run_phase(
                "long",
                self.config.epochs,
                self._long_params,
                long_reference,
                section=ENERGY_LONG,
                adaptive=self._adaptive,
            )
        ]
        polish = self.config.polish
        if polish is not None and polish.epochs > 0:
            self._state = LayoutState.INITIALIZING
            phases.append(
                self._run_phase(
                    "polish",
                    polish.epochs,
                    self._polish_params,
                    self._polish_params(0),
                    section=ENERGY_SHORT,
                )
            )
        final_energy = phases[-1].energy_after if len(phases) == 1 else None
        if self.config.track_energy and len(phases) > 1:
            final_energy = self.energy(long_reference)

        final_grid = self._backend.download_state()
        final_grid.verify(self._count)
        if final_grid != self._grid:
            raise RuntimeError("backend grid diverged from host grid")
        placements = tuple(
            PlacedCode(label=self._labels[index], code=self._codes[index], y=y, x=x)
            for index, y, x in final_grid.row_major()
        )
        LOGGER.event(
            "layout.run.done",
            section=LAID_OUT_STRUCTURE,
            data={
                "state": self._state.value,
                "phases": len(phases),
                "total_swaps": sum(phase.swaps for phase in phases),
                "duration": time.perf_counter() - started,
            },
        )
        return LayoutResult(
            placements=placements,
            grid_size=final_grid.size,
            state=self._state,
            phases=tuple(phases),
            history=tuple(self._history),
            initial_energy=phases[0].energy_before,
            final_energy=final_energy,
            backend=self._backend.name,
            device=self._backend.device,
        )

    def _run_phase(
        self,
        name: str,
        epochs: int,
        params_for,
        reference: EpochParams,
        *,
        section: str,
        adaptive: AdaptiveState | None = None,
    ) -> PhaseResult:
        track = self.config.track_energy
        energy_before = self.energy(reference) if track else None
        LOGGER.event(
            "layout.phase.start",
            section=section,
            data={"phase": name, "epochs": epochs, "energy": energy_before},
        )
        swaps_total = 0
        epochs_run = 0
        energy_after = energy_before
        for epoch in range(epochs):
            self._state = LayoutState.RUNNING_EPOCH
            epoch_started = time.perf_counter()
            params = params_for(epoch)
            candidates = self._backend.find_best_candidates(params)
            batch = self._selector.select(
                candidates.best_cell,
                candidates.best_delta,
                self._grid.occupied_count,
            )
            epochs_run = epoch + 1
            if not batch:
                self._record_epoch(name, params, batch.candidates, 0, energy_after, epoch_started)
                if adaptive is not None and not adaptive.at_end:
                    self._adapt(name, epoch, adaptive, 0)
                    continue
                self._state = LayoutState.CONVERGED
                LOGGER.event(
                    "layout.phase.converged",
                    section=PAIR_SELECTION,
                    data={"phase": name, "epoch": epoch},
                )
                break
            self._backend.apply_batch(batch)
            self._grid.apply_pairs(batch.cell_pairs())
            swaps_total += len(batch)
            if track:
                energy_after = self.energy(reference)
            self._record_epoch(name, params, batch.candidates, len(batch), energy_after, epoch_started)
            if adaptive is not None:
                at_end = adaptive.at_end
                if self._adapt(name, epoch, adaptive, len(batch)) and at_end:
                    self._state = LayoutState.CONVERGED
                    LOGGER.event(
                        "layout.adaptive.stalled",
                        section=PAIR_SELECTION,
                        data={"phase": name, "epoch": epoch, "swaps": len(batch)},
                    )
                    break
        else:
            self._state = LayoutState.EXHAUSTED_BUDGET
        LOGGER.event(
            "layout.phase.done",
            section=section,
            data={
                "phase": name,
                "state": self._state.value,
                "epochs": epochs_run,
                "swaps": swaps_total,
                "energy_before": energy_before,
                "energy_after": energy_after,
            },
        )
        self._log_grid(name, epochs_run)
        return PhaseResult(
            name=name,
            state=self._state,
            epochs=epochs_run,
            swaps=swaps_total,
            energy_before=energy_before,
            energy_after=energy_after,
        )

    def _adapt(self, phase: str, epoch: int, adaptive: AdaptiveState, swaps: int) -> bool:
        stalled = adaptive.update(swaps)
        if stalled:
            LOGGER.event(
                "layout.adaptive.radius",
                section=LAYOUT_PARAMETERS,
                data={
                    "phase": phase,
                    "epoch": epoch,
                    "swaps": swaps,
                    "baseline": adaptive.baseline,
                    "radius": adaptive.radius,
                    "lambda": adaptive.lambda_for_epoch(epoch + 1),
                },
            )
        return stalled

    def _record_epoch(
        self,
        phase: str,
        params: EpochParams,
        candidates: int,
        swaps: int,
        energy: float | None,
        started: float,
    ) -> None:
        report = EpochReport(
            phase=phase,
            epoch=params.epoch,
            lambda_threshold=params.lambda_threshold,
            radius=params.radius,
            candidates=candidates,
            swaps=swaps,
            energy=energy,
            duration=time.perf_counter() - started,
        )
        self._history.append(report)
        if not LOGGER.should_log("layout.epoch"):
            return
        visuals = None
        if LOGGER.rerun_enabled:
            values = {"swaps": swaps, "lambda": params.lambda_threshold}
            if energy is not None:
                values["energy"] = energy
            visuals = LOGGER.visual_scalars(
                f"layout/{phase}",
                values,
                step=len(self._history),
                timeline=_LAYOUT_EPOCH_TIMELINE,
            )
        LOGGER.event(
            "layout.epoch",
            section=LAYOUT_PARAMETERS,
            data={
                "phase": phase,
                "epoch": params.epoch,
                "lambda": params.lambda_threshold,
                "radius": params.radius,
                "candidates": candidates,
                "swaps": swaps,
                "energy": energy,
                "duration_ms": report.duration * 1000.0,
            },
            visuals=visuals,
            force=True,
        )

    def _log_grid(self, phase: str, epoch: int) -> None:
        if not LOGGER.rerun_enabled or self._grid.size > _VISUAL_GRID_LIMIT:
            return
        matrix = self._grid.as_matrix()
        image = np.zeros(matrix.shape, dtype=np.uint8)
        occupied = matrix >= 0
        scale = 255.0 / max(1, self._count - 1)
        image[occupied] = (matrix[occupied] * scale).astype(np.uint8)
        LOGGER.event(
            "layout.visual",
            section=LAID_OUT_STRUCTURE,
            data={"phase": phase, "epoch": epoch, "grid_size": self._grid.size},
            visuals=[LOGGER.visual_image(f"layout/{phase}/grid", image)],
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._backend.close()

    def __enter__(self) -> "LayoutEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
