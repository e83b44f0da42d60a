import math

import numpy as np
import pytest

from damp_grid.encoding.bitarray import BitArray
from damp_grid.layout.similarity import SimilarityCache, gate, gate_array, raw_similarity


def test_jaccard_values():
    a = BitArray.from01("1100")
    b = BitArray.from01("1010")
    assert raw_similarity(a, b) == pytest.approx(1 / 3)
    assert raw_similarity(a, BitArray.from01("1100")) == 1.0


def test_two_empty_codes_score_zero():
    assert raw_similarity(BitArray(4), BitArray(4)) == 0.0


def test_empty_code_against_itself_scores_zero():
    empty = BitArray(4)
    assert raw_similarity(empty, empty) == 0.0
    assert raw_similarity(BitArray.from01("0110"), BitArray.from01("0110")) == 1.0
    cache = SimilarityCache([empty, BitArray.from01("0110")])
    assert cache.matrix()[0, 0] == 1.0


def test_hard_gate_cuts_below_threshold():
    assert gate(0.4, 0.5, None) == 0.0
    assert gate(0.5, 0.5, None) == 0.5
    assert gate(0.7, 0.5, math.inf) == 0.7


def test_zero_eta_halves_similarity():
    assert gate(0.8, 0.3, 0.0) == pytest.approx(0.4)


def test_soft_gate_is_stable_for_large_eta():
    assert gate(0.9, 0.1, 1e6) == pytest.approx(0.9)
    assert gate(0.05, 0.9, 1e6) == pytest.approx(0.0)


def test_gate_array_matches_scalar_gate():
    values = np.linspace(0.0, 1.0, 11)
    for eta in (None, 0.0, 10.0):
        expected = [gate(float(v), 0.4, eta) for v in values]
        assert np.allclose(gate_array(values, 0.4, eta), expected)


def test_cache_matrix_is_symmetric_with_unit_diagonal():
    codes = [
        BitArray.from01("110000"),
        BitArray.from01("011000"),
        BitArray(6),
        BitArray.from01("000111"),
    ]
    cache = SimilarityCache(codes)
    cache.build()
    matrix = cache.matrix()
    assert np.allclose(matrix, matrix.T)
    assert np.allclose(np.diag(matrix), 1.0)
    assert matrix[0, 1] == pytest.approx(1 / 3)
    assert matrix[0, 2] == 0.0


def test_lazy_rows_match_precomputed():
    codes = [BitArray.from_indices(16, range(k, k + 4)) for k in range(10)]
    full = SimilarityCache(codes)
    full.build()
    lazy = SimilarityCache(codes, max_precompute=2)
    lazy.build()
    assert not lazy.is_precomputed
    for i in range(10):
        assert np.allclose(lazy.row(i), full.row(i))
    rows = lazy.gated_rows(np.array([1, 3]), 0.2, 5.0)
    assert np.allclose(rows, full.gated_rows(np.array([1, 3]), 0.2, 5.0))
