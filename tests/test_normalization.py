# tests/test_normalization.py

import numpy as np
import pytest

from embedcache.core.errors import DegenerateVectorError, InvalidOptionsError
from embedcache.core.normalization import VectorNormalizer, l2_normalize, normalize, range_normalize


@pytest.fixture
def random_vectors():
    rng = np.random.default_rng(7)
    return [rng.normal(size=dim) for dim in (3, 64, 512)]


def test_l2_normalize_unit_norm(random_vectors):
    for vector in random_vectors:
        result = l2_normalize(vector)
        assert result.dtype == np.float32
        assert np.linalg.norm(result) == pytest.approx(1.0, abs=1e-5)


def test_normalize_is_idempotent(random_vectors):
    for vector in random_vectors:
        once = normalize(vector)
        twice = normalize(once)
        np.testing.assert_allclose(once, twice, atol=1e-6)


def test_normalize_preserves_direction():
    result = normalize([3.0, 4.0])
    np.testing.assert_allclose(result, [0.6, 0.8], atol=1e-6)


@pytest.mark.parametrize("vector", [[], [0.0, 0.0, 0.0], [1.0, np.nan], [np.inf, 1.0]])
def test_degenerate_vectors_rejected(vector):
    with pytest.raises(DegenerateVectorError):
        normalize(vector)


def test_range_normalize_bounds():
    result = range_normalize([2.0, 4.0, 6.0])
    np.testing.assert_allclose(result, [-1.0, 0.0, 1.0], atol=1e-6)

    with pytest.raises(DegenerateVectorError):
        range_normalize([5.0, 5.0])


def test_vector_normalizer_methods():
    assert np.linalg.norm(VectorNormalizer()([1.0, 1.0])) == pytest.approx(1.0, abs=1e-6)
    np.testing.assert_allclose(VectorNormalizer('range').normalize([0.0, 10.0]), [-1.0, 1.0])

    with pytest.raises(InvalidOptionsError):
        VectorNormalizer('zscore')
