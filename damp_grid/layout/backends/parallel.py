from __future__ import annotations

from typing import TYPE_CHECKING, Any, Union

import numpy as np

from damp_grid.article_refs import GPU_IMPLEMENTATION
from damp_grid.encoding.bitarray import pack_bit_matrix
from damp_grid.layout.backends.base import CandidateSet, DeviceInitError, LayoutBackend
from damp_grid.layout.batch import SwapBatch
from damp_grid.layout.config import EpochParams
from damp_grid.layout.grid import GridState
from damp_grid.layout.similarity import SimilarityCache
from damp_grid.logging import LOGGER

if TYPE_CHECKING:
    from damp_grid.layout.backends.gl_device import GlComputeDevice
    from damp_grid.layout.backends.tensor_device import TensorComputeDevice

    ComputeDevice = Union[GlComputeDevice, TensorComputeDevice]

DEVICES = ("auto", "gl", "tensor")


class ParallelBackend(LayoutBackend):
    """Data-parallel backend: one pass-1 unit per cell, one pass-2 unit per pair.

    ``device="auto"`` tries the OpenGL compute device first and falls back to
    the torch tensor device. An explicitly requested device that cannot be
    created raises :class:`DeviceInitError`.
    """

    name = "parallel"
    uses_gpu = True

    def __init__(
        self,
        *,
        device: str = "auto",
        torch_device: str | None = None,
        dtype: "Any | None" = None,
    ) -> None:
        if device not in DEVICES:
            raise ValueError("device must be 'auto', 'gl' or 'tensor'")
        self._requested = device
        self._torch_device = torch_device
        self._dtype = dtype
        self._compute: "ComputeDevice | None" = None
        self._grid_size = 0
        self.device = None

    @staticmethod
    def _import_failed(device: str, exc: Exception) -> DeviceInitError:
        LOGGER.event(
            "layout.gpu.import_failed",
            section=GPU_IMPLEMENTATION,
            data={"device": device, "error": str(exc)},
        )
        return DeviceInitError(f"{device} device support is not importable: {exc}")

    def _create_gl(self, similarity: SimilarityCache, grid_size: int) -> "ComputeDevice":
        try:
            from damp_grid.layout.backends.gl_device import GlComputeDevice
        except ImportError as exc:
            raise self._import_failed("gl", exc) from exc
        return GlComputeDevice.create(pack_bit_matrix(similarity.code_bits), grid_size)

    def _create_tensor(self, similarity: SimilarityCache, grid_size: int) -> "ComputeDevice":
        try:
            from damp_grid.layout.backends.tensor_device import TensorComputeDevice
        except ImportError as exc:
            raise self._import_failed("tensor", exc) from exc
        return TensorComputeDevice.create(
            similarity.code_bits,
            grid_size,
            device=self._torch_device,
            dtype=self._dtype,
        )

    def _create_compute(
        self, similarity: SimilarityCache, grid_size: int
    ) -> "ComputeDevice":
        if self._requested == "gl":
            return self._create_gl(similarity, grid_size)
        if self._requested == "tensor":
            return self._create_tensor(similarity, grid_size)
        try:
            return self._create_gl(similarity, grid_size)
        except DeviceInitError as gl_exc:
            LOGGER.event(
                "layout.gpu.fallback",
                section=GPU_IMPLEMENTATION,
                data={"from": "gl", "to": "tensor", "error": str(gl_exc)},
            )
            try:
                return self._create_tensor(similarity, grid_size)
            except DeviceInitError as tensor_exc:
                raise DeviceInitError(
                    f"no compute device available (gl: {gl_exc}; tensor: {tensor_exc})"
                ) from tensor_exc

    def upload_state(self, grid: GridState, similarity: SimilarityCache) -> None:
        if self._compute is not None:
            raise RuntimeError("backend state already uploaded")
        compute = self._create_compute(similarity, grid.size)
        self._compute = compute
        self._grid_size = grid.size
        self.device = compute.description
        compute.build_similarity()
        compute.upload_grid(grid.as_array())
        LOGGER.event(
            "layout.backend.upload",
            section=GPU_IMPLEMENTATION,
            data={
                "backend": self.name,
                "device": self.device,
                "grid_size": grid.size,
                "codes": similarity.count,
            },
        )

    def _require_compute(self) -> "ComputeDevice":
        if self._compute is None:
            raise RuntimeError("backend state has not been uploaded")
        return self._compute

    def similarity_matrix(self) -> "np.ndarray":
        return self._require_compute().similarity_matrix()

    def find_best_candidates(self, params: EpochParams) -> CandidateSet:
        best_cell, best_delta = self._require_compute().find_best(params)
        expected = self._grid_size * self._grid_size
        if best_cell.shape[0] != expected or best_delta.shape[0] != expected:
            raise RuntimeError("device readback size mismatch")
        return CandidateSet(best_cell=best_cell, best_delta=best_delta)

    def apply_batch(self, batch: SwapBatch) -> None:
        if not batch:
            return
        self._require_compute().apply_pairs(batch.as_array())

    def download_state(self) -> GridState:
        cells = self._require_compute().download_grid()
        grid = GridState(self._grid_size, np.full(self._grid_size * self._grid_size, -1))
        grid.load(cells)
        return grid

    def close(self) -> None:
        if self._compute is None:
            return
        compute = self._compute
        self._compute = None
        compute.release()
        LOGGER.event(
            "layout.gpu.released",
            section=GPU_IMPLEMENTATION,
            data={"device": self.device},
        )
