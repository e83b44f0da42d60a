from __future__ import annotations

import concurrent.futures

import numpy as np

from damp_grid.article_refs import LAYOUT_ALGORITHM, PARALLEL_PROCESSING
from damp_grid.layout.backends.base import CandidateSet, LayoutBackend
from damp_grid.layout.batch import SwapBatch
from damp_grid.layout.config import EpochParams
from damp_grid.layout.energy import EnergyEvaluator
from damp_grid.layout.grid import GridState
from damp_grid.layout.similarity import SimilarityCache
from damp_grid.logging import LOGGER

_MIN_CELLS_PER_WORKER = 64


class SequentialBackend(LayoutBackend):
    """Host backend: scans occupied cells in order with numpy inner loops.

    With ``workers > 1`` the read-only scan is split across threads, each
    writing a disjoint range of the output slots.
    """

    name = "sequential"
    uses_gpu = False
    device = "cpu"

    def __init__(self, *, workers: int | None = None) -> None:
        if workers is not None and workers < 0:
            raise ValueError("workers must be >= 0")
        self._workers = workers or 1
        self._grid: GridState | None = None
        self._similarity: SimilarityCache | None = None

    def upload_state(self, grid: GridState, similarity: SimilarityCache) -> None:
        self._grid = grid.copy()
        self._similarity = similarity
        similarity.build()
        LOGGER.event(
            "layout.backend.upload",
            section=LAYOUT_ALGORITHM,
            data={
                "backend": self.name,
                "grid_size": grid.size,
                "codes": similarity.count,
                "precomputed": similarity.is_precomputed,
            },
        )

    def _require_state(self) -> tuple[GridState, SimilarityCache]:
        if self._grid is None or self._similarity is None:
            raise RuntimeError("backend state has not been uploaded")
        return self._grid, self._similarity

    def find_best_candidates(self, params: EpochParams) -> CandidateSet:
        grid, similarity = self._require_state()
        result = CandidateSet.empty(grid.cell_count)
        evaluator = EnergyEvaluator(grid, similarity, params)
        sources = grid.occupied_cells()
        workers = min(self._workers, max(1, len(sources) // _MIN_CELLS_PER_WORKER))
        if workers < 2:
            self._scan(sources, evaluator, result)
            return result
        chunks = np.array_split(sources, workers)
        if LOGGER.should_log("layout.backend.sequential.threads"):
            LOGGER.event(
                "layout.backend.sequential.threads",
                section=PARALLEL_PROCESSING,
                data={"workers": workers, "cells": len(sources)},
                force=True,
            )
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(self._scan, chunk, evaluator, result) for chunk in chunks
            ]
            for future in futures:
                future.result()
        return result

    @staticmethod
    def _scan(sources: "np.ndarray", evaluator: EnergyEvaluator, out: CandidateSet) -> None:
        grid = evaluator.grid
        similarity = evaluator.similarity
        params = evaluator.params
        cells = grid.cells
        for cell in sources:
            cell = int(cell)
            candidates = grid.neighbors(cell, params.radius, occupied_only=True)
            if candidates.size == 0:
                continue
            raw = similarity.row(int(cells[cell]))[cells[candidates]]
            candidates = candidates[raw >= params.min_sim]
            if candidates.size == 0:
                continue
            deltas = evaluator.deltas(cell, candidates)
            best = int(np.argmin(deltas))
            out.best_cell[cell] = candidates[best]
            out.best_delta[cell] = deltas[best]

    def apply_batch(self, batch: SwapBatch) -> None:
        grid, _ = self._require_state()
        grid.apply_pairs(batch.cell_pairs())

    def download_state(self) -> GridState:
        grid, _ = self._require_state()
        return grid.copy()

    def close(self) -> None:
        self._grid = None
        self._similarity = None
