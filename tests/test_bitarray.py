import numpy as np
import pytest

from damp_grid.encoding.bitarray import BitArray, pack_bit_matrix


def test_rejects_empty_length():
    with pytest.raises(ValueError):
        BitArray(0)


def test_counts_and_overlap():
    a = BitArray.from01("1100")
    b = BitArray.from01("1010")
    assert a.count() == 2
    assert a.common(b) == 1
    assert a.union_count(b) == 3
    assert a.active_indices() == [0, 1]


def test_size_mismatch_raises():
    with pytest.raises(ValueError):
        BitArray(4).common(BitArray(5))


def test_from_indices_validates_range():
    with pytest.raises(ValueError):
        BitArray.from_indices(4, [4])


def test_equality_by_bits():
    a = BitArray.from_indices(8, [1, 5])
    b = BitArray.from_bits([0, 1, 0, 0, 0, 1, 0, 0])
    assert a == b
    assert a != BitArray.from_indices(8, [1])


def test_pack_words_places_bits_little_endian():
    code = BitArray.from_indices(40, [0, 3, 31, 32, 39])
    words = code.pack_words()
    assert words.dtype == np.uint32
    assert words.tolist() == [(1 << 0) | (1 << 3) | (1 << 31), (1 << 0) | (1 << 7)]


def test_pack_bit_matrix_pads_short_rows():
    packed = pack_bit_matrix(np.array([[1, 0, 1], [0, 0, 0]], dtype=np.uint8))
    assert packed.shape == (2, 1)
    assert packed[:, 0].tolist() == [5, 0]


def test_mutable_codes_are_unhashable():
    code = BitArray.from_indices(8, [2])
    with pytest.raises(TypeError):
        hash(code)
    with pytest.raises(TypeError):
        {code}
