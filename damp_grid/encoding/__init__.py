from .bitarray import BitArray, pack_bit_matrix

__all__ = [
    "BitArray",
    "pack_bit_matrix",
]
