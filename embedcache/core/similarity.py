# core/similarity.py

from enum import Enum
from typing import List

import numpy as np

from embedcache.core.errors import (DegenerateVectorError, DimensionMismatchError,
                                    InvalidOptionsError)
from embedcache.core.normalization import as_vector


class SimilarityMetric(str, Enum):
    COSINE = 'cosine'
    EUCLIDEAN = 'euclidean'
    MANHATTAN = 'manhattan'
    CORRELATION = 'correlation'  # experimental

    @classmethod
    def parse(cls, value) -> 'SimilarityMetric':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidOptionsError(
                f"Unsupported similarity metric: {value}",
                details={'recognized': available_metrics()}
            ) from None


def available_metrics() -> List[str]:
    return [m.value for m in SimilarityMetric]


def _clamp(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


class SimilarityEngine:
    """
    Scores a pair of same-length embeddings under a selectable metric

    Every score lies in [0, 1], higher meaning more similar.
    """

    def __init__(self):
        self._methods = {
            SimilarityMetric.COSINE: self.cosine_similarity,
            SimilarityMetric.EUCLIDEAN: self.euclidean_similarity,
            SimilarityMetric.MANHATTAN: self.manhattan_similarity,
            SimilarityMetric.CORRELATION: self.correlation_similarity,
        }

    def score(self, a, b, metric='cosine') -> float:
        """
        Compute similarity between two vectors

        Args:
            a, b: Vectors of identical length
            metric: 'cosine', 'euclidean', 'manhattan' or 'correlation'

        Returns:
            Similarity score clamped to [0, 1]

        Raises:
            DimensionMismatchError: if the vectors differ in length
        """
        method = self._methods[SimilarityMetric.parse(metric)]

        vec_a = as_vector(a)
        vec_b = as_vector(b)
        if vec_a.size != vec_b.size:
            raise DimensionMismatchError(vec_a.size, vec_b.size, context="candidate vector")

        if not (np.all(np.isfinite(vec_a)) and np.all(np.isfinite(vec_b))):
            raise DegenerateVectorError("Cannot score vectors with NaN or infinite components")

        return _clamp(method(vec_a, vec_b))

    @staticmethod
    def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
        norm_product = np.linalg.norm(a) * np.linalg.norm(b)
        if norm_product == 0.0:
            raise DegenerateVectorError("Cosine similarity is undefined for zero-norm vectors")
        # Negative affinity truncates to 0 in score()
        return float(np.dot(a, b) / norm_product)

    @staticmethod
    def euclidean_similarity(a: np.ndarray, b: np.ndarray) -> float:
        distance = np.linalg.norm(a - b)
        return float(1.0 / (1.0 + distance))

    @staticmethod
    def manhattan_similarity(a: np.ndarray, b: np.ndarray) -> float:
        distance = np.sum(np.abs(a - b))
        return float(1.0 / (1.0 + distance))

    @staticmethod
    def correlation_similarity(a: np.ndarray, b: np.ndarray) -> float:
        """
        Absolute Pearson correlation; approximate, constant vectors score 0
        """
        centered_a = a - a.mean() if a.size else a
        centered_b = b - b.mean() if b.size else b
        denominator = np.linalg.norm(centered_a) * np.linalg.norm(centered_b)
        if denominator == 0.0:
            return 0.0
        return float(abs(np.dot(centered_a, centered_b) / denominator))
