from __future__ import annotations

import numpy as np

from damp_grid.layout.config import EpochParams
from damp_grid.layout.grid import GridState
from damp_grid.layout.similarity import SimilarityCache

_ENERGY_BLOCK = 512


class EnergyEvaluator:
    """Swap deltas and total energy of a grid under one epoch's parameters.

    For a swap of occupied cells ``i`` and ``j`` the delta over every other
    occupied cell ``r`` is::

        sum_r (g(Cj, Cr) - g(Ci, Cr)) * w(i, j, r)

    with ``w = dist2(i, r) - dist2(j, r)`` for the ``"distance"`` objective and
    ``w = 1 / (dist2(j, r) + eps) - 1 / (dist2(i, r) + eps)`` for
    ``"inverse"``. Negative deltas are improvements in both cases.
    """

    def __init__(self, grid: GridState, similarity: SimilarityCache, params: EpochParams) -> None:
        self.grid = grid
        self.similarity = similarity
        self.params = params
        similarity.prepare_gate(params.lambda_threshold, params.eta)
        self.refresh()

    def refresh(self) -> None:
        """Re-read occupancy after the grid changed."""
        occupied = self.grid.occupied_cells()
        self._r_cells = occupied
        self._r_codes = self.grid.cells[occupied].astype(np.int64)
        self._r_y = occupied // self.grid.size
        self._r_x = occupied % self.grid.size

    def _weights(self, d1: "np.ndarray", d2: "np.ndarray") -> "np.ndarray":
        if self.params.objective == "inverse":
            eps = self.params.distance_eps
            return 1.0 / (d2 + eps) - 1.0 / (d1 + eps)
        return d1 - d2

    def deltas(self, cell: int, candidates: "np.ndarray") -> "np.ndarray":
        """Swap deltas of ``cell`` against each occupied cell in ``candidates``."""
        candidates = np.asarray(candidates, dtype=np.int64)
        if candidates.size == 0:
            return np.empty(0, dtype=np.float64)
        params = self.params
        size = self.grid.size
        cells = self.grid.cells
        code_i = int(cells[cell])
        codes_j = cells[candidates].astype(np.int64)
        if code_i < 0 or np.any(codes_j < 0):
            raise ValueError("swap deltas are defined for occupied cells only")

        iy, ix = divmod(int(cell), size)
        jy = (candidates // size)[:, None]
        jx = (candidates % size)[:, None]
        d1 = ((self._r_y - iy) ** 2 + (self._r_x - ix) ** 2).astype(np.float64)
        d2 = ((self._r_y[None, :] - jy) ** 2 + (self._r_x[None, :] - jx) ** 2).astype(np.float64)

        g_i = self.similarity.gated_rows(np.array([code_i]), params.lambda_threshold, params.eta)[0]
        g_i = g_i[self._r_codes]
        g_j = self.similarity.gated_rows(codes_j, params.lambda_threshold, params.eta)[:, self._r_codes]

        # r == i and r == j are the only cells at distance zero
        mask = (d1[None, :] > 0) & (d2 > 0)
        radius2 = params.delta_radius2
        if radius2 is not None:
            mask &= (d1[None, :] <= radius2) | (d2 <= radius2)
        weights = self._weights(d1[None, :], d2)
        return np.where(mask, (g_j - g_i[None, :]) * weights, 0.0).sum(axis=1)

    def delta(self, cell_i: int, cell_j: int) -> float:
        return float(self.deltas(cell_i, np.array([cell_j]))[0])

    def total_energy(self) -> float:
        """``sum gate(sim) * dist2`` over occupied pairs, or the local inverse sum."""
        params = self.params
        count = self._r_cells.shape[0]
        if count < 2:
            return 0.0
        radius2 = params.delta_radius2
        total = 0.0
        for start in range(0, count, _ENERGY_BLOCK):
            stop = min(count, start + _ENERGY_BLOCK)
            gated = self.similarity.gated_rows(
                self._r_codes[start:stop], params.lambda_threshold, params.eta
            )[:, self._r_codes]
            dy = self._r_y[start:stop, None] - self._r_y[None, :]
            dx = self._r_x[start:stop, None] - self._r_x[None, :]
            d = (dy * dy + dx * dx).astype(np.float64)
            upper = np.arange(start, stop)[:, None] < np.arange(count)[None, :]
            if params.objective == "inverse":
                mask = upper if radius2 is None else upper & (d <= radius2)
                total += float(np.where(mask, gated / (d + params.distance_eps), 0.0).sum())
            else:
                total += float(np.where(upper, gated * d, 0.0).sum())
        return total
