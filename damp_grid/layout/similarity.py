from __future__ import annotations

import concurrent.futures
import math
import os
from typing import Sequence

import numpy as np

from damp_grid.article_refs import (
    ENERGIES,
    OPTIM_SIM_MATRIX,
    PARALLEL_PROCESSING,
    SIMILARITY_MEASURES,
)
from damp_grid.encoding.bitarray import BitArray
from damp_grid.logging import LOGGER

_PARALLEL_SIM_MIN_PAIRS = 50_000
_SIM_CODES: "np.ndarray | None" = None
_SIM_ONES: "np.ndarray | None" = None


def is_hard_gate(eta: float | None) -> bool:
    return eta is None or math.isinf(eta)


def raw_similarity(a: BitArray, b: BitArray) -> float:
    """Jaccard similarity of two codes; two empty codes score 0."""
    common = a.common(b)
    union = a.count() + b.count() - common
    return 0.0 if union == 0 else common / union


def _sigmoid(z: float) -> float:
    if z >= 0.0:
        return 1.0 / (1.0 + math.exp(-z))
    e = math.exp(z)
    return e / (1.0 + e)


def gate(x: float, lambda_threshold: float, eta: float | None) -> float:
    """Soft threshold ``x * sigmoid(eta * (x - lambda))``.

    ``eta`` of ``None`` or infinity is the hard cutoff. ``eta == 0`` passes
    every similarity at half weight.
    """
    if is_hard_gate(eta):
        return x if x >= lambda_threshold else 0.0
    return x * _sigmoid(eta * (x - lambda_threshold))


def gate_array(sim: "np.ndarray", lambda_threshold: float, eta: float | None) -> "np.ndarray":
    sim = np.asarray(sim, dtype=np.float64)
    if sim.size == 0:
        return sim
    if is_hard_gate(eta):
        return np.where(sim >= lambda_threshold, sim, 0.0)
    z = eta * (sim - lambda_threshold)
    e = np.exp(-np.abs(z))
    scaled = np.where(z >= 0.0, 1.0 / (1.0 + e), e / (1.0 + e))
    return sim * scaled


def code_matrix(codes: Sequence[BitArray]) -> tuple["np.ndarray", "np.ndarray"]:
    if not codes:
        raise ValueError("codes must be non-empty")
    matrix = np.stack([code.to_numpy() for code in codes]).astype(np.float64)
    ones = matrix.sum(axis=1)
    return matrix, ones


def _similarity_block(
    rows: "np.ndarray", ones_rows: "np.ndarray", cols: "np.ndarray", ones_cols: "np.ndarray"
) -> "np.ndarray":
    common = rows @ cols.T
    union = ones_rows[:, None] + ones_cols[None, :] - common
    return np.divide(common, union, out=np.zeros_like(common), where=union != 0)


def _init_similarity_worker(codes: "np.ndarray", ones: "np.ndarray") -> None:
    global _SIM_CODES, _SIM_ONES
    _SIM_CODES = codes
    _SIM_ONES = ones


def _compute_similarity_stride(args: tuple[int, int, int]) -> list[tuple[int, "np.ndarray"]]:
    start, step, count = args
    codes = _SIM_CODES
    ones = _SIM_ONES
    if codes is None or ones is None:
        raise RuntimeError("Similarity worker not initialized")
    results: list[tuple[int, "np.ndarray"]] = []
    for i in range(start, count, step):
        block = _similarity_block(codes[i : i + 1], ones[i : i + 1], codes[i + 1 :], ones[i + 1 :])
        results.append((i, block[0]))
    return results


class SimilarityCache:
    """Raw pairwise similarities of the input codes.

    Holds the full ``n x n`` matrix when it is small enough to precompute,
    otherwise memoizes rows on demand. The diagonal is always 1.
    """

    def __init__(
        self,
        codes: Sequence[BitArray],
        *,
        precompute: bool = True,
        max_precompute: int = 2000,
        workers: int | None = None,
    ) -> None:
        if max_precompute <= 0:
            raise ValueError("max_precompute must be positive")
        if workers is not None and workers < 0:
            raise ValueError("workers must be >= 0")
        self._codes, self._ones = code_matrix(codes)
        self._count = self._codes.shape[0]
        self._workers = workers
        self._precompute = precompute and self._count <= max_precompute
        self._matrix: "np.ndarray | None" = None
        self._rows: dict[int, "np.ndarray"] = {}
        self._gated_key: tuple[float, float | None] | None = None
        self._gated: "np.ndarray | None" = None
        LOGGER.event(
            "layout.sim_cache.config",
            section=OPTIM_SIM_MATRIX,
            data={
                "codes": self._count,
                "precompute": self._precompute,
                "max_precompute": max_precompute,
            },
        )

    @property
    def count(self) -> int:
        return self._count

    @property
    def is_precomputed(self) -> bool:
        return self._matrix is not None

    @property
    def code_bits(self) -> "np.ndarray":
        return self._codes

    def build(self) -> None:
        if self._matrix is not None or not self._precompute:
            return
        count = self._count
        workers = self._worker_count()
        LOGGER.event(
            "layout.sim_cache.start",
            section=OPTIM_SIM_MATRIX,
            data={"codes": count},
        )
        LOGGER.event(
            "layout.sim_cache.similarity",
            section=SIMILARITY_MEASURES,
            data={"similarity": "jaccard"},
        )
        LOGGER.event(
            "layout.sim_cache.parallel",
            section=PARALLEL_PROCESSING,
            data={"workers": workers},
        )
        if workers < 2:
            matrix = _similarity_block(self._codes, self._ones, self._codes, self._ones)
        else:
            matrix = np.zeros((count, count), dtype=np.float64)
            tasks = [(offset, workers, count) for offset in range(workers)]
            with concurrent.futures.ProcessPoolExecutor(
                max_workers=workers,
                initializer=_init_similarity_worker,
                initargs=(self._codes, self._ones),
            ) as executor:
                for chunk in executor.map(_compute_similarity_stride, tasks):
                    for i, sims in chunk:
                        matrix[i, i + 1 :] = sims
                        matrix[i + 1 :, i] = sims
        np.fill_diagonal(matrix, 1.0)
        self._matrix = matrix
        self._rows.clear()
        LOGGER.event(
            "layout.sim_cache.done",
            section=OPTIM_SIM_MATRIX,
            data={"mode": "cpu", "workers": workers},
        )

    def _worker_count(self) -> int:
        if self._workers is not None:
            if self._workers <= 1:
                return 1
            return min(self._workers, self._count)
        cpu_count = os.cpu_count() or 1
        total_pairs = self._count * (self._count - 1) // 2
        if cpu_count < 2 or total_pairs < _PARALLEL_SIM_MIN_PAIRS:
            return 1
        return min(cpu_count, self._count)

    def row(self, index: int) -> "np.ndarray":
        if self._matrix is not None:
            return self._matrix[index]
        cached = self._rows.get(index)
        if cached is not None:
            return cached
        row = _similarity_block(
            self._codes[index : index + 1], self._ones[index : index + 1], self._codes, self._ones
        )[0]
        row[index] = 1.0
        self._rows[index] = row
        return row

    def value(self, idx_a: int, idx_b: int) -> float:
        if idx_a == idx_b:
            return 1.0
        return float(self.row(idx_a)[idx_b])

    def matrix(self) -> "np.ndarray":
        if self._matrix is not None:
            return self._matrix
        return np.stack([self.row(i) for i in range(self._count)])

    def prepare_gate(self, lambda_threshold: float, eta: float | None) -> "np.ndarray | None":
        """Gate the full matrix once per threshold; ``None`` in lazy-row mode."""
        if self._matrix is None:
            return None
        key = (float(lambda_threshold), eta)
        if self._gated_key != key or self._gated is None:
            self._gated = gate_array(self._matrix, lambda_threshold, eta)
            self._gated_key = key
            LOGGER.event(
                "layout.sim_cache.gated",
                section=ENERGIES,
                data={"lambda_threshold": lambda_threshold, "eta": eta},
            )
        return self._gated

    def gated_rows(
        self, indices: "np.ndarray", lambda_threshold: float, eta: float | None
    ) -> "np.ndarray":
        """Gated similarity rows for ``indices`` against every code."""
        gated_matrix = self.prepare_gate(lambda_threshold, eta)
        if gated_matrix is not None:
            return gated_matrix[indices]
        rows = np.stack([self.row(int(i)) for i in np.atleast_1d(indices)])
        gated = gate_array(rows, lambda_threshold, eta)
        return gated if np.ndim(indices) else gated[0]
