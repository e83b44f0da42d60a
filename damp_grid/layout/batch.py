from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from damp_grid.article_refs import OPTIM_PAIR_SELECTION
from damp_grid.logging import LOGGER


@dataclass(frozen=True)
class SwapCandidate:
    cell_a: int
    cell_b: int
    delta: float


@dataclass(frozen=True)
class SwapBatch:
    pairs: tuple[SwapCandidate, ...]
    budget: int
    candidates: int

    def __len__(self) -> int:
        return len(self.pairs)

    def __bool__(self) -> bool:
        return bool(self.pairs)

    def cell_pairs(self) -> list[tuple[int, int]]:
        return [(pair.cell_a, pair.cell_b) for pair in self.pairs]

    def as_array(self) -> "np.ndarray":
        """``(k, 2)`` int32 array of cell pairs for device upload."""
        if not self.pairs:
            return np.empty((0, 2), dtype=np.int32)
        return np.array(self.cell_pairs(), dtype=np.int32)


class BatchSwapSelector:
    """Turns per-cell best candidates into a disjoint, budgeted swap batch.

    Candidates with a negative delta are taken steepest first; a pair is
    accepted only when neither of its cells is already claimed.
    """

    def __init__(self, max_batch_frac: float) -> None:
        if not 0 < max_batch_frac <= 1:
            raise ValueError("max_batch_frac must be in (0, 1]")
        self.max_batch_frac = max_batch_frac

    def budget(self, occupied_count: int) -> int:
        return max(1, int(occupied_count * self.max_batch_frac))

    @staticmethod
    def collect(best_cell: Sequence[int], best_delta: Sequence[float]) -> list[SwapCandidate]:
        best_cell = np.asarray(best_cell)
        best_delta = np.asarray(best_delta, dtype=np.float64)
        if best_cell.shape != best_delta.shape:
            raise ValueError("best_cell and best_delta must have the same shape")
        cells = np.arange(best_cell.shape[0])
        improving = np.flatnonzero((best_cell >= 0) & (best_cell != cells) & (best_delta < 0.0))
        return [
            SwapCandidate(int(cell), int(best_cell[cell]), float(best_delta[cell]))
            for cell in improving
        ]

    def select(
        self,
        best_cell: Sequence[int],
        best_delta: Sequence[float],
        occupied_count: int,
    ) -> SwapBatch:
        candidates = self.collect(best_cell, best_delta)
        budget = self.budget(occupied_count)
        used: set[int] = set()
        accepted: list[SwapCandidate] = []
        for candidate in sorted(candidates, key=lambda item: item.delta):
            if len(accepted) >= budget:
                break
            if candidate.cell_a in used or candidate.cell_b in used:
                continue
            accepted.append(candidate)
            used.add(candidate.cell_a)
            used.add(candidate.cell_b)
        if LOGGER.should_log("layout.batch.select"):
            LOGGER.event(
                "layout.batch.select",
                section=OPTIM_PAIR_SELECTION,
                data={
                    "candidates": len(candidates),
                    "accepted": len(accepted),
                    "budget": budget,
                },
                force=True,
            )
        return SwapBatch(pairs=tuple(accepted), budget=budget, candidates=len(candidates))
