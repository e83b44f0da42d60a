from __future__ import annotations

import functools
import math
import random
from typing import Iterable, Iterator, Sequence

import numpy as np

EMPTY = -1


def grid_side(count: int, margin: float = 0.0) -> int:
    if count <= 0:
        raise ValueError("count must be positive")
    if margin < 0:
        raise ValueError("margin must be >= 0")
    target = math.ceil(count * (1.0 + margin))
    side = math.isqrt(target)
    if side * side < target:
        side += 1
    return side


@functools.lru_cache(maxsize=32)
def disc_offsets(radius: int) -> "np.ndarray":
    """``(dy, dx)`` offsets inside the disc, excluding the origin, sorted row-major."""
    if radius <= 0:
        return np.empty((0, 2), dtype=np.int64)
    span = np.arange(-radius, radius + 1)
    dy, dx = np.meshgrid(span, span, indexing="ij")
    mask = (dy * dy + dx * dx <= radius * radius) & ~((dy == 0) & (dx == 0))
    offsets = np.stack([dy[mask], dx[mask]], axis=1).astype(np.int64)
    offsets.flags.writeable = False
    return offsets


class GridState:
    """Square grid of cells holding code indices or ``EMPTY``.

    Cells are numbered row-major, ``cell = y * size + x``. Distances are
    squared Euclidean.
    """

    def __init__(self, size: int, cells: Sequence[int] | "np.ndarray") -> None:
        if size <= 0:
            raise ValueError("grid size must be positive")
        data = np.asarray(cells, dtype=np.int32).reshape(-1).copy()
        if data.shape[0] != size * size:
            raise ValueError("cells must have size * size entries")
        if np.any(data < EMPTY):
            raise ValueError("cell values must be code indices or EMPTY")
        self.size = size
        self._cells = data

    @classmethod
    def create(
        cls,
        count: int,
        *,
        margin: float = 0.0,
        rng: random.Random | None = None,
    ) -> "GridState":
        """Place codes ``0..count-1`` into the first ``count`` slots of a slot order.

        The order is shuffled with ``rng`` when one is given, otherwise it is
        the identity order.
        """
        size = grid_side(count, margin)
        slots = list(range(size * size))
        if rng is not None:
            rng.shuffle(slots)
        cells = [EMPTY] * (size * size)
        for index in range(count):
            cells[slots[index]] = index
        return cls(size, cells)

    @classmethod
    def from_cells(cls, cells: Sequence[int] | Sequence[Sequence[int]]) -> "GridState":
        data = np.asarray(cells, dtype=np.int32)
        if data.ndim == 2:
            if data.shape[0] != data.shape[1]:
                raise ValueError("grid must be square")
            return cls(data.shape[0], data)
        size = math.isqrt(data.shape[0])
        if size * size != data.shape[0]:
            raise ValueError("cell count must be a perfect square")
        return cls(size, data)

    @property
    def cell_count(self) -> int:
        return self.size * self.size

    @property
    def cells(self) -> "np.ndarray":
        view = self._cells.view()
        view.flags.writeable = False
        return view

    def as_array(self) -> "np.ndarray":
        return self._cells.copy()

    def as_matrix(self) -> "np.ndarray":
        return self._cells.reshape(self.size, self.size).copy()

    def copy(self) -> "GridState":
        return GridState(self.size, self._cells)

    def coords(self, cell: int) -> tuple[int, int]:
        return divmod(int(cell), self.size)

    def cell_index(self, y: int, x: int) -> int:
        if not (0 <= y < self.size and 0 <= x < self.size):
            raise IndexError("grid coordinates out of range")
        return y * self.size + x

    def occupant(self, cell: int) -> int:
        return int(self._cells[cell])

    def is_occupied(self, cell: int) -> bool:
        return self._cells[cell] != EMPTY

    def occupied_cells(self) -> "np.ndarray":
        return np.flatnonzero(self._cells != EMPTY)

    @property
    def occupied_count(self) -> int:
        return int(np.count_nonzero(self._cells != EMPTY))

    def positions(self, count: int) -> "np.ndarray":
        """Cell of every code index ``0..count-1``."""
        positions = np.full(count, -1, dtype=np.int64)
        occupied = self.occupied_cells()
        positions[self._cells[occupied]] = occupied
        return positions

    @staticmethod
    def dist2(size: int, cell_a: int, cell_b: int) -> int:
        ay, ax = divmod(int(cell_a), size)
        by, bx = divmod(int(cell_b), size)
        return (ay - by) ** 2 + (ax - bx) ** 2

    def radius_offsets(self, radius: int) -> "np.ndarray":
        return disc_offsets(int(radius))

    def neighbors(self, cell: int, radius: int, *, occupied_only: bool = False) -> "np.ndarray":
        """Cells within ``radius`` of ``cell`` in ascending order."""
        if radius <= 0:
            return np.empty(0, dtype=np.int64)
        y, x = self.coords(cell)
        offsets = self.radius_offsets(radius)
        ys = y + offsets[:, 0]
        xs = x + offsets[:, 1]
        inside = (ys >= 0) & (ys < self.size) & (xs >= 0) & (xs < self.size)
        result = ys[inside] * self.size + xs[inside]
        if occupied_only:
            result = result[self._cells[result] != EMPTY]
        return result

    def swap(self, cell_a: int, cell_b: int) -> None:
        self._cells[cell_a], self._cells[cell_b] = self._cells[cell_b], self._cells[cell_a]

    def apply_pairs(self, pairs: Iterable[tuple[int, int]]) -> int:
        used: set[int] = set()
        applied = 0
        for cell_a, cell_b in pairs:
            if cell_a in used or cell_b in used:
                raise RuntimeError("swap pairs must be disjoint")
            self.swap(cell_a, cell_b)
            used.add(cell_a)
            used.add(cell_b)
            applied += 1
        return applied

    def load(self, cells: Sequence[int] | "np.ndarray") -> None:
        data = np.asarray(cells, dtype=np.int32).reshape(-1)
        if data.shape[0] != self.cell_count:
            raise RuntimeError(
                f"grid readback size mismatch: expected {self.cell_count}, got {data.shape[0]}"
            )
        self._cells[:] = data

    def verify(self, count: int) -> None:
        """Raise when codes were lost or duplicated."""
        occupied = np.sort(self._cells[self._cells != EMPTY])
        if occupied.shape[0] != count or not np.array_equal(occupied, np.arange(count)):
            raise RuntimeError("grid does not hold every code exactly once")

    def row_major(self) -> Iterator[tuple[int, int, int]]:
        """Yield ``(index, y, x)`` for occupied cells, row by row."""
        for cell in self.occupied_cells():
            y, x = self.coords(int(cell))
            yield int(self._cells[cell]), y, x

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GridState):
            return NotImplemented
        return self.size == other.size and np.array_equal(self._cells, other._cells)

    def __repr__(self) -> str:
        return f"GridState(size={self.size}, occupied={self.occupied_count})"
