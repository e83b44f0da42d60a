from __future__ import annotations

import moderngl
import numpy as np

from damp_grid.article_refs import GPU_IMPLEMENTATION, OPTIM_SIM_MATRIX
from damp_grid.layout.backends.base import DeviceInitError
from damp_grid.layout.config import EpochParams
from damp_grid.layout.similarity import is_hard_gate
from damp_grid.logging import LOGGER

_LOCAL_SIZE = 256
_SIM_LOCAL_SIZE = 16

_BIND_CODES = 0
_BIND_GRID = 1
_BIND_BEST_CELL = 2
_BIND_BEST_DELTA = 3
_BIND_PAIRS = 4
_BIND_SIM = 5


class GlComputeDevice:
    """OpenGL 4.3 compute pipeline over long-lived storage buffers."""

    name = "gl"

    _SIM_SHADER = """
        #version 430
        layout(local_size_x = 16, local_size_y = 16) in;

        layout(std430, binding = 0) readonly buffer Codes { uint codes[]; };
        layout(std430, binding = 5) writeonly buffer Sim { float S[]; };

        uniform int uNumCodes;
        uniform int uWords;

        void main() {
            int i = int(gl_GlobalInvocationID.y);
            int j = int(gl_GlobalInvocationID.x);
            if (i >= uNumCodes || j >= uNumCodes) {
                return;
            }
            if (i == j) {
                S[i * uNumCodes + j] = 1.0;
                return;
            }
            int common_bits = 0;
            int union_bits = 0;
            for (int w = 0; w < uWords; ++w) {
                uint a = codes[i * uWords + w];
                uint b = codes[j * uWords + w];
                common_bits += bitCount(a & b);
                union_bits += bitCount(a | b);
            }
            S[i * uNumCodes + j] = union_bits == 0 ? 0.0 : float(common_bits) / float(union_bits);
        }
    """

    _BEST_SHADER = """
        #version 430
        layout(local_size_x = 256) in;

        layout(std430, binding = 1) readonly buffer Grid { int cells[]; };
        layout(std430, binding = 2) writeonly buffer BestCell { int bestCell[]; };
        layout(std430, binding = 3) writeonly buffer BestDelta { float bestDelta[]; };
        layout(std430, binding = 5) readonly buffer Sim { float S[]; };

        uniform int uGridSize;
        uniform int uNumCodes;
        uniform int uRadius;
        uniform int uDeltaRadius;
        uniform float uLambda;
        uniform float uEta;
        uniform int uHardGate;
        uniform float uMinSim;
        uniform int uObjective;
        uniform float uDistanceEps;

        float gate(float x) {
            if (uHardGate == 1) {
                return x >= uLambda ? x : 0.0;
            }
            float z = uEta * (x - uLambda);
            float s = z >= 0.0 ? 1.0 / (1.0 + exp(-z)) : exp(z) / (1.0 + exp(z));
            return x * s;
        }

        float weight(int d1, int d2) {
            if (uObjective == 1) {
                return 1.0 / (float(d2) + uDistanceEps) - 1.0 / (float(d1) + uDistanceEps);
            }
            return float(d1 - d2);
        }

        void main() {
            int cell = int(gl_GlobalInvocationID.x);
            int total = uGridSize * uGridSize;
            if (cell >= total) {
                return;
            }
            int iCode = cells[cell];
            if (iCode < 0) {
                bestCell[cell] = -1;
                bestDelta[cell] = 0.0;
                return;
            }
            int iy = cell / uGridSize;
            int ix = cell % uGridSize;
            int radius2 = uRadius * uRadius;
            int deltaRadius2 = uDeltaRadius * uDeltaRadius;

            int best = -1;
            float bestD = 0.0;
            for (int dy = -uRadius; dy <= uRadius; ++dy) {
                int jy = iy + dy;
                if (jy < 0 || jy >= uGridSize) {
                    continue;
                }
                for (int dx = -uRadius; dx <= uRadius; ++dx) {
                    int jx = ix + dx;
                    if (jx < 0 || jx >= uGridSize) {
                        continue;
                    }
                    if ((dy == 0 && dx == 0) || dy * dy + dx * dx > radius2) {
                        continue;
                    }
                    int jCell = jy * uGridSize + jx;
                    int jCode = cells[jCell];
                    if (jCode < 0) {
                        continue;
                    }
                    if (S[iCode * uNumCodes + jCode] < uMinSim) {
                        continue;
                    }

                    int y0 = 0;
                    int y1 = uGridSize - 1;
                    int x0 = 0;
                    int x1 = uGridSize - 1;
                    if (uDeltaRadius >= 0) {
                        y0 = max(0, min(iy, jy) - uDeltaRadius);
                        y1 = min(uGridSize - 1, max(iy, jy) + uDeltaRadius);
                        x0 = max(0, min(ix, jx) - uDeltaRadius);
                        x1 = min(uGridSize - 1, max(ix, jx) + uDeltaRadius);
                    }

                    float delta = 0.0;
                    for (int ry = y0; ry <= y1; ++ry) {
                        for (int rx = x0; rx <= x1; ++rx) {
                            int rCell = ry * uGridSize + rx;
                            if (rCell == cell || rCell == jCell) {
                                continue;
                            }
                            int rCode = cells[rCell];
                            if (rCode < 0) {
                                continue;
                            }
                            int d1 = (ry - iy) * (ry - iy) + (rx - ix) * (rx - ix);
                            int d2 = (ry - jy) * (ry - jy) + (rx - jx) * (rx - jx);
                            if (uDeltaRadius >= 0 && d1 > deltaRadius2 && d2 > deltaRadius2) {
                                continue;
                            }
                            float s1 = gate(S[iCode * uNumCodes + rCode]);
                            float s2 = gate(S[jCode * uNumCodes + rCode]);
                            delta += (s2 - s1) * weight(d1, d2);
                        }
                    }
                    if (best == -1 || delta < bestD) {
                        best = jCell;
                        bestD = delta;
                    }
                }
            }
            bestCell[cell] = best;
            bestDelta[cell] = bestD;
        }
    """

    _SWAP_SHADER = """
        #version 430
        layout(local_size_x = 256) in;

        layout(std430, binding = 1) buffer Grid { int cells[]; };
        layout(std430, binding = 4) readonly buffer Pairs { int pairs[]; };

        uniform int uNumPairs;

        void main() {
            int gid = int(gl_GlobalInvocationID.x);
            if (gid >= uNumPairs) {
                return;
            }
            int a = pairs[2 * gid];
            int b = pairs[2 * gid + 1];
            int codeA = cells[a];
            cells[a] = cells[b];
            cells[b] = codeA;
        }
    """

    def __init__(self, ctx: "moderngl.Context", code_words: "np.ndarray", grid_size: int) -> None:
        self._ctx = ctx
        words = np.ascontiguousarray(code_words, dtype=np.uint32)
        if words.ndim != 2 or words.shape[0] <= 0:
            raise ValueError("code_words must be a non-empty (codes, words) matrix")
        self._count, self._words = words.shape
        self._grid_size = grid_size
        self._total = grid_size * grid_size

        self._sim_prog = ctx.compute_shader(self._SIM_SHADER)
        self._best_prog = ctx.compute_shader(self._BEST_SHADER)
        self._swap_prog = ctx.compute_shader(self._SWAP_SHADER)

        self._codes_buf = ctx.buffer(words.tobytes())
        self._grid_buf = ctx.buffer(reserve=self._total * 4)
        self._best_cell_buf = ctx.buffer(reserve=self._total * 4)
        self._best_delta_buf = ctx.buffer(reserve=self._total * 4)
        self._sim_buf = ctx.buffer(reserve=self._count * self._count * 4)
        self._pair_buf: "moderngl.Buffer | None" = None
        self._pair_capacity = 0
        self._released = False

    @classmethod
    def create(cls, code_words: "np.ndarray", grid_size: int) -> "GlComputeDevice":
        try:
            ctx = moderngl.create_standalone_context(require=430)
        except Exception as exc:
            LOGGER.event(
                "layout.gpu.context_failed",
                section=GPU_IMPLEMENTATION,
                data={"error": str(exc)},
            )
            raise DeviceInitError(f"OpenGL 4.3 context unavailable: {exc}") from exc
        try:
            device = cls(ctx, code_words, grid_size)
        except Exception as exc:
            ctx.release()
            LOGGER.event(
                "layout.gpu.init_failed",
                section=GPU_IMPLEMENTATION,
                data={"error": str(exc)},
            )
            raise DeviceInitError(f"OpenGL compute setup failed: {exc}") from exc
        LOGGER.event(
            "layout.gpu.enabled",
            section=GPU_IMPLEMENTATION,
            data={
                "status": "OpenGL 4.3",
                "renderer": ctx.info.get("GL_RENDERER", "unknown"),
                "grid_size": grid_size,
                "codes": device._count,
            },
        )
        return device

    @property
    def description(self) -> str:
        return "gl:430"

    @staticmethod
    def _set_uniform(prog: "moderngl.ComputeShader", name: str, value) -> None:
        member = prog.get(name, None)
        if member is not None:
            member.value = value

    @staticmethod
    def _groups(count: int, local_size: int) -> int:
        return max(1, -(-count // local_size))

    def _read(self, buf: "moderngl.Buffer", nbytes: int, dtype) -> "np.ndarray":
        data = buf.read(size=nbytes)
        if len(data) != nbytes:
            raise RuntimeError(f"device readback size mismatch: expected {nbytes}, got {len(data)}")
        return np.frombuffer(data, dtype=dtype).copy()

    def build_similarity(self) -> None:
        self._codes_buf.bind_to_storage_buffer(_BIND_CODES)
        self._sim_buf.bind_to_storage_buffer(_BIND_SIM)
        self._set_uniform(self._sim_prog, "uNumCodes", self._count)
        self._set_uniform(self._sim_prog, "uWords", self._words)
        groups = self._groups(self._count, _SIM_LOCAL_SIZE)
        self._sim_prog.run(groups, groups, 1)
        self._ctx.memory_barrier()
        LOGGER.event(
            "layout.sim_cache.done",
            section=OPTIM_SIM_MATRIX,
            data={"mode": "gpu", "codes": self._count, "words": self._words},
        )

    def similarity_matrix(self) -> "np.ndarray":
        size = self._count * self._count * 4
        return self._read(self._sim_buf, size, np.float32).reshape(self._count, self._count)

    def upload_grid(self, cells: "np.ndarray") -> None:
        data = np.ascontiguousarray(cells, dtype=np.int32)
        if data.shape[0] != self._total:
            raise ValueError("grid upload size mismatch")
        self._grid_buf.write(data.tobytes())
        self._ctx.memory_barrier()

    def find_best(self, params: EpochParams) -> tuple["np.ndarray", "np.ndarray"]:
        prog = self._best_prog
        self._grid_buf.bind_to_storage_buffer(_BIND_GRID)
        self._best_cell_buf.bind_to_storage_buffer(_BIND_BEST_CELL)
        self._best_delta_buf.bind_to_storage_buffer(_BIND_BEST_DELTA)
        self._sim_buf.bind_to_storage_buffer(_BIND_SIM)
        hard = is_hard_gate(params.eta)
        self._set_uniform(prog, "uGridSize", self._grid_size)
        self._set_uniform(prog, "uNumCodes", self._count)
        self._set_uniform(prog, "uRadius", int(params.radius))
        self._set_uniform(
            prog, "uDeltaRadius", -1 if params.delta_radius is None else int(params.delta_radius)
        )
        self._set_uniform(prog, "uLambda", float(params.lambda_threshold))
        self._set_uniform(prog, "uEta", 0.0 if hard else float(params.eta))
        self._set_uniform(prog, "uHardGate", 1 if hard else 0)
        self._set_uniform(prog, "uMinSim", float(params.min_sim))
        self._set_uniform(prog, "uObjective", 1 if params.objective == "inverse" else 0)
        self._set_uniform(prog, "uDistanceEps", float(params.distance_eps))
        prog.run(self._groups(self._total, _LOCAL_SIZE), 1, 1)
        self._ctx.memory_barrier()
        best_cell = self._read(self._best_cell_buf, self._total * 4, np.int32)
        best_delta = self._read(self._best_delta_buf, self._total * 4, np.float32)
        return best_cell, best_delta.astype(np.float64)

    def _ensure_pair_buffer(self, pair_count: int) -> "moderngl.Buffer":
        if self._pair_buf is None or pair_count > self._pair_capacity:
            capacity = max(pair_count, self._pair_capacity * 2 or 1)
            if self._pair_buf is not None:
                self._pair_buf.release()
            self._pair_buf = self._ctx.buffer(reserve=capacity * 8)
            self._pair_capacity = capacity
        return self._pair_buf

    def apply_pairs(self, pairs: "np.ndarray") -> None:
        data = np.ascontiguousarray(pairs, dtype=np.int32).reshape(-1, 2)
        count = data.shape[0]
        if count == 0:
            return
        pair_buf = self._ensure_pair_buffer(count)
        pair_buf.write(data.tobytes())
        self._ctx.memory_barrier()
        self._grid_buf.bind_to_storage_buffer(_BIND_GRID)
        pair_buf.bind_to_storage_buffer(_BIND_PAIRS)
        self._set_uniform(self._swap_prog, "uNumPairs", count)
        self._swap_prog.run(self._groups(count, _LOCAL_SIZE), 1, 1)
        self._ctx.memory_barrier()

    def download_grid(self) -> "np.ndarray":
        return self._read(self._grid_buf, self._total * 4, np.int32)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        for resource in (
            self._pair_buf,
            self._sim_buf,
            self._best_delta_buf,
            self._best_cell_buf,
            self._grid_buf,
            self._codes_buf,
            self._swap_prog,
            self._best_prog,
            self._sim_prog,
        ):
            if resource is not None:
                resource.release()
        self._ctx.release()
