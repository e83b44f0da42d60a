from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from damp_grid.layout.batch import SwapBatch
from damp_grid.layout.config import EpochParams
from damp_grid.layout.grid import GridState
from damp_grid.layout.similarity import SimilarityCache


class DeviceInitError(RuntimeError):
    """Compute device could not be created; carries the driver diagnostic."""


@dataclass(frozen=True)
class CandidateSet:
    """Per-cell best swap partner: ``best_cell[c] == -1`` when ``c`` has none."""

    best_cell: "np.ndarray"
    best_delta: "np.ndarray"

    def __post_init__(self) -> None:
        if self.best_cell.shape != self.best_delta.shape:
            raise RuntimeError("best_cell and best_delta readback sizes differ")

    @classmethod
    def empty(cls, cell_count: int) -> "CandidateSet":
        return cls(
            best_cell=np.full(cell_count, -1, dtype=np.int32),
            best_delta=np.zeros(cell_count, dtype=np.float64),
        )


class LayoutBackend:
    name: str = "base"
    uses_gpu: bool = False
    device: str | None = None

    def upload_state(self, grid: GridState, similarity: SimilarityCache) -> None:
        raise NotImplementedError

    def find_best_candidates(self, params: EpochParams) -> CandidateSet:
        raise NotImplementedError

    def apply_batch(self, batch: SwapBatch) -> None:
        raise NotImplementedError

    def download_state(self) -> GridState:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self) -> "LayoutBackend":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
