from __future__ import annotations

from typing import Iterable, Sequence

import numpy as np

WORD_BITS = 32


def pack_bit_matrix(bits: "np.ndarray") -> "np.ndarray":
    """Pack rows of 0/1 values into little-endian uint32 words.

    Bit ``k`` of a row lands in word ``k // 32`` at position ``k % 32``.
    """
    matrix = np.asarray(bits, dtype=np.uint8)
    if matrix.ndim != 2:
        raise ValueError("bit matrix must be two-dimensional")
    rows, length = matrix.shape
    words = max(1, -(-length // WORD_BITS))
    padded = np.zeros((rows, words * WORD_BITS), dtype=np.uint8)
    padded[:, :length] = matrix != 0
    packed = np.packbits(padded, axis=1, bitorder="little")
    return np.ascontiguousarray(packed).view("<u4").astype(np.uint32, copy=False)


class BitArray:
    def __init__(self, length: int, fill: int = 0) -> None:
        if length <= 0:
            raise ValueError("bit array length must be positive")
        if fill not in (0, 1):
            raise ValueError("fill must be 0 or 1")
        self._bits = bytearray([fill] * length)

    @classmethod
    def from_indices(cls, length: int, indices: Iterable[int]) -> "BitArray":
        code = cls(length)
        for index in indices:
            if not 0 <= index < length:
                raise ValueError("bit index out of range")
            code.set(index, 1)
        return code

    @classmethod
    def from_bits(cls, bits: Sequence[int]) -> "BitArray":
        code = cls(len(bits))
        for index, bit in enumerate(bits):
            if bit:
                code.set(index, 1)
        return code

    @classmethod
    def from01(cls, text: str) -> "BitArray":
        if any(ch not in "01" for ch in text):
            raise ValueError("bit string must contain only 0 and 1")
        return cls.from_bits([1 if ch == "1" else 0 for ch in text])

    def set(self, index: int, value: int = 1) -> None:
        self._bits[index] = 1 if value else 0

    def count(self) -> int:
        return sum(self._bits)

    def common(self, other: "BitArray") -> int:
        if len(self) != len(other):
            raise ValueError("BitArray sizes must match")
        return sum(a & b for a, b in zip(self._bits, other._bits))

    def union_count(self, other: "BitArray") -> int:
        if len(self) != len(other):
            raise ValueError("BitArray sizes must match")
        return sum(a | b for a, b in zip(self._bits, other._bits))

    def active_indices(self) -> list[int]:
        return [idx for idx, bit in enumerate(self._bits) if bit]

    def to_numpy(self) -> "np.ndarray":
        return np.frombuffer(bytes(self._bits), dtype=np.uint8).copy()

    def pack_words(self) -> "np.ndarray":
        return pack_bit_matrix(self.to_numpy()[None, :])[0]

    def to01(self) -> str:
        return "".join("1" if bit else "0" for bit in self._bits)

    def __len__(self) -> int:
        return len(self._bits)

    def __getitem__(self, index: int) -> int:
        return self._bits[index]

    def __iter__(self):
        return iter(self._bits)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BitArray):
            return NotImplemented
        return self._bits == other._bits

    def __repr__(self) -> str:
        return f"BitArray(len={len(self._bits)}, ones={self.count()})"
