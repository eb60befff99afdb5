"""Tests for vector utilities."""

import numpy as np
import pytest

from hypnos.core.vector_math import (
    as_vector,
    blob_to_embedding,
    cosine,
    dot_products,
    dot_products_loop,
    embedding_to_blob,
    l2_norm,
    normalize,
    to_matrix,
)


class TestNormalize:
    """Test in-place normalization."""

    def test_unit_norm(self):
        vector = as_vector([3.0, 4.0, 12.0])
        result = normalize(vector)
        assert result is vector
        assert l2_norm(vector) == pytest.approx(1.0, abs=1e-5)

    def test_zero_vector_untouched(self):
        vector = np.zeros(8, dtype=np.float32)
        normalize(vector)
        assert not vector.any()

    def test_tiny_vector_untouched(self):
        vector = np.full(4, 1e-20, dtype=np.float32)
        normalize(vector)
        assert vector[0] == pytest.approx(1e-20)

    def test_random_vectors(self):
        rng = np.random.default_rng(0)
        for _ in range(20):
            vector = rng.normal(size=384).astype(np.float32)
            normalize(vector)
            assert l2_norm(vector) == pytest.approx(1.0, abs=1e-5)


class TestDotProducts:
    """Test batched and looped dot products."""

    def test_blas_matches_loop(self):
        rng = np.random.default_rng(1)
        matrix = rng.normal(size=(50, 32)).astype(np.float32)
        query = rng.normal(size=32).astype(np.float32)

        fast = dot_products(query, matrix)
        slow = dot_products_loop(query, matrix)

        assert fast.shape == (50,)
        np.testing.assert_allclose(fast, slow, atol=1e-4, rtol=1e-5)

    def test_unit_vectors_agree_within_tolerance(self):
        rng = np.random.default_rng(2)
        rows = [normalize(rng.normal(size=64).astype(np.float32)) for _ in range(30)]
        query = normalize(rng.normal(size=64).astype(np.float32))

        fast = dot_products(query, rows)
        slow = dot_products_loop(query, rows)

        assert np.max(np.abs(fast - slow)) < 1e-5

    def test_empty_matrix(self):
        result = dot_products(np.ones(4, dtype=np.float32), [])
        assert result.shape == (0,)

    def test_cosine_of_identical_unit_vectors(self):
        vector = normalize(as_vector([1.0, 2.0, 2.0]))
        assert cosine(vector, vector) == pytest.approx(1.0, abs=1e-6)


class TestConversions:
    """Test matrix stacking and BLOB serialization."""

    def test_to_matrix_shape(self):
        matrix = to_matrix([[1, 2, 3], [4, 5, 6]])
        assert matrix.shape == (2, 3)
        assert matrix.dtype == np.float32

    def test_to_matrix_empty_keeps_dimension(self):
        assert to_matrix([], dimension=5).shape == (0, 5)

    def test_blob_round_trip_is_writable(self):
        original = as_vector([0.5, -0.25, 1.0])
        restored = blob_to_embedding(embedding_to_blob(original))
        np.testing.assert_array_equal(restored, original)
        restored *= 2  # must not raise on a read-only buffer

    def test_missing_blob(self):
        assert embedding_to_blob(None) is None
        assert blob_to_embedding(None) is None
        assert blob_to_embedding(b"") is None

    def test_truncated_blob(self):
        assert blob_to_embedding(b"\x00\x00\x80\x3f\x00") is None
