from __future__ import annotations

from typing import Any

import numpy as np
import torch

from damp_grid.article_refs import GPU_IMPLEMENTATION, OPTIM_SIM_MATRIX
from damp_grid.layout.backends.base import DeviceInitError
from damp_grid.layout.config import EpochParams
from damp_grid.layout.grid import disc_offsets
from damp_grid.layout.similarity import is_hard_gate
from damp_grid.logging import LOGGER

_CHUNK_ELEMENTS = 1 << 24


def select_torch_device(preferred: str | None = None) -> "torch.device":
    if preferred is not None:
        return torch.device(preferred)
    if torch.cuda.is_available():
        return torch.device("cuda")
    if getattr(torch.backends, "mps", None) and torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


class TensorComputeDevice:
    """Torch implementation of the two-pass epoch.

    Pass 1 is vectorized over chunks of source cells times candidate offsets
    times occupied cells; pass 2 is an indexed exchange on the grid tensor.
    """

    name = "tensor"

    def __init__(
        self,
        *,
        code_bits: "np.ndarray",
        grid_size: int,
        device: "torch.device",
        dtype: "torch.dtype",
    ) -> None:
        if device.type == "mps" and dtype == torch.float64:
            raise ValueError("mps does not support float64")
        self._device = device
        self._dtype = dtype
        self._bits = torch.as_tensor(np.asarray(code_bits), dtype=dtype, device=device)
        self._count = int(self._bits.shape[0])
        self._grid_size = grid_size
        self._total = grid_size * grid_size
        self._cells = torch.full((self._total,), -1, dtype=torch.int64, device=device)
        self._sim: "Any | None" = None

    @classmethod
    def create(
        cls,
        code_bits: "np.ndarray",
        grid_size: int,
        *,
        device: str | None = None,
        dtype: "torch.dtype | None" = None,
    ) -> "TensorComputeDevice":
        try:
            torch_device = select_torch_device(device)
            engine = cls(
                code_bits=code_bits,
                grid_size=grid_size,
                device=torch_device,
                dtype=dtype or torch.float32,
            )
        except Exception as exc:
            LOGGER.event(
                "layout.gpu.tensor.unavailable",
                section=GPU_IMPLEMENTATION,
                data={"error": str(exc)},
            )
            raise DeviceInitError(f"tensor device unavailable: {exc}") from exc
        LOGGER.event(
            "layout.gpu.tensor.enabled",
            section=GPU_IMPLEMENTATION,
            data={"device": str(torch_device), "dtype": str(engine._dtype)},
        )
        return engine

    @property
    def description(self) -> str:
        return f"tensor:{self._device}"

    def _synchronize(self) -> None:
        if self._device.type == "cuda":
            torch.cuda.synchronize(self._device)
        elif self._device.type == "mps":
            torch.mps.synchronize()

    def _require_sim(self) -> "Any":
        if self._sim is None:
            raise RuntimeError("similarity matrix has not been built")
        return self._sim

    def build_similarity(self) -> None:
        bits = self._bits
        common = bits @ bits.T
        ones = bits.sum(dim=1)
        union = ones[:, None] + ones[None, :] - common
        sim = torch.where(union > 0, common / union.clamp(min=1), torch.zeros_like(common))
        sim.fill_diagonal_(1.0)
        self._sim = sim
        self._synchronize()
        LOGGER.event(
            "layout.sim_cache.done",
            section=OPTIM_SIM_MATRIX,
            data={"mode": "tensor", "codes": self._count},
        )

    def similarity_matrix(self) -> "np.ndarray":
        return self._require_sim().to("cpu").numpy().copy()

    def upload_grid(self, cells: "np.ndarray") -> None:
        data = np.asarray(cells, dtype=np.int64)
        if data.shape[0] != self._total:
            raise ValueError("grid upload size mismatch")
        self._cells = torch.as_tensor(data, dtype=torch.int64, device=self._device).clone()
        self._synchronize()

    def _gate(self, sim: "Any", params: EpochParams) -> "Any":
        if is_hard_gate(params.eta):
            return torch.where(sim >= params.lambda_threshold, sim, torch.zeros_like(sim))
        return sim * torch.sigmoid(params.eta * (sim - params.lambda_threshold))

    def _weights(self, d1: "Any", d2: "Any", params: EpochParams) -> "Any":
        if params.objective == "inverse":
            eps = params.distance_eps
            return 1.0 / (d2 + eps) - 1.0 / (d1 + eps)
        return d1 - d2

    def find_best(self, params: EpochParams) -> tuple["np.ndarray", "np.ndarray"]:
        sim = self._require_sim()
        size = self._grid_size
        cells = self._cells
        best_cell = torch.full((self._total,), -1, dtype=torch.int64, device=self._device)
        best_delta = torch.zeros((self._total,), dtype=self._dtype, device=self._device)

        occupied = torch.nonzero(cells >= 0).flatten()
        offsets_np = disc_offsets(int(params.radius))
        if occupied.numel() > 0 and offsets_np.shape[0] > 0:
            offsets = torch.tensor(offsets_np, dtype=torch.int64, device=self._device)
            r_codes = cells[occupied]
            r_y = occupied // size
            r_x = occupied % size
            gated_r = self._gate(sim, params)[:, r_codes]
            radius2 = params.delta_radius2
            count = occupied.numel()
            k = offsets.shape[0]
            chunk = max(1, _CHUNK_ELEMENTS // (k * count))
            for start in range(0, count, chunk):
                src = occupied[start : start + chunk]
                sy = src // size
                sx = src % size
                cy = sy[:, None] + offsets[None, :, 0]
                cx = sx[:, None] + offsets[None, :, 1]
                inside = (cy >= 0) & (cy < size) & (cx >= 0) & (cx < size)
                cand = torch.where(inside, cy * size + cx, torch.zeros_like(cy))
                cand_code = torch.where(inside, cells[cand], torch.full_like(cand, -1))
                valid = cand_code >= 0
                safe_code = cand_code.clamp(min=0)
                codes_i = cells[src]
                valid &= sim[codes_i[:, None], safe_code] >= params.min_sim

                d1 = ((r_y[None, :] - sy[:, None]) ** 2 + (r_x[None, :] - sx[:, None]) ** 2).to(self._dtype)
                d2 = (
                    (r_y[None, None, :] - cy[:, :, None]) ** 2
                    + (r_x[None, None, :] - cx[:, :, None]) ** 2
                ).to(self._dtype)
                d1 = d1[:, None, :]
                # zero distance marks r == i or r == j
                mask = (d1 > 0) & (d2 > 0)
                if radius2 is not None:
                    mask &= (d1 <= radius2) | (d2 <= radius2)
                g_i = gated_r[codes_i][:, None, :]
                g_j = gated_r[safe_code]
                terms = (g_j - g_i) * self._weights(d1, d2, params)
                delta = torch.where(mask, terms, torch.zeros_like(terms)).sum(dim=-1)
                delta = torch.where(valid, delta, torch.full_like(delta, float("inf")))

                idx = torch.argmin(delta, dim=1)
                value = delta.gather(1, idx[:, None]).squeeze(1)
                chosen = cand.gather(1, idx[:, None]).squeeze(1)
                found = torch.isfinite(value)
                best_cell[src] = torch.where(found, chosen, torch.full_like(chosen, -1))
                best_delta[src] = torch.where(found, value, torch.zeros_like(value))
        self._synchronize()
        cell_out = best_cell.to("cpu").numpy().astype(np.int32)
        delta_out = best_delta.to("cpu").numpy().astype(np.float64)
        if cell_out.shape[0] != self._total or delta_out.shape[0] != self._total:
            raise RuntimeError("device readback size mismatch")
        return cell_out, delta_out

    def apply_pairs(self, pairs: "np.ndarray") -> None:
        data = np.asarray(pairs, dtype=np.int64).reshape(-1, 2)
        if data.shape[0] == 0:
            return
        pair_tensor = torch.as_tensor(data, dtype=torch.int64, device=self._device)
        self._synchronize()
        cells_a = pair_tensor[:, 0]
        cells_b = pair_tensor[:, 1]
        codes_a = self._cells[cells_a].clone()
        codes_b = self._cells[cells_b].clone()
        self._cells[cells_a] = codes_b
        self._cells[cells_b] = codes_a
        self._synchronize()

    def download_grid(self) -> "np.ndarray":
        self._synchronize()
        data = self._cells.to("cpu").numpy().astype(np.int32)
        if data.shape[0] != self._total:
            raise RuntimeError(
                f"device readback size mismatch: expected {self._total}, got {data.shape[0]}"
            )
        return data

    def release(self) -> None:
        self._sim = None
        self._bits = None
        if self._device.type == "cuda":
            torch.cuda.empty_cache()
        elif self._device.type == "mps":
            torch.mps.empty_cache()
