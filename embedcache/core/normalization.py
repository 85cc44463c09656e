# core/normalization.py

import numpy as np

from embedcache.core.errors import DegenerateVectorError, InvalidOptionsError


def as_vector(vector) -> np.ndarray:
    """Coerce a sequence / array into a flat float64 vector"""
    arr = np.asarray(vector, dtype=np.float64)
    if arr.ndim != 1:
        arr = arr.ravel()
    return arr


def l2_normalize(vector) -> np.ndarray:
    """
    Rescale a vector to unit Euclidean norm

    Raises:
        DegenerateVectorError: for empty, all-zero or non-finite vectors
    """
    arr = as_vector(vector)

    if arr.size == 0:
        raise DegenerateVectorError("Cannot normalize an empty vector")

    if not np.all(np.isfinite(arr)):
        raise DegenerateVectorError("Vector contains NaN or infinite components")

    norm = np.linalg.norm(arr)
    if norm == 0.0 or not np.isfinite(norm):
        raise DegenerateVectorError("Cannot normalize a zero-norm vector",
                                    details={'dimension': int(arr.size)})

    return (arr / norm).astype(np.float32)


def range_normalize(vector, low: float = -1.0, high: float = 1.0) -> np.ndarray:
    """Min-max rescale a vector into [low, high]"""
    if not low < high:
        raise InvalidOptionsError(f"Invalid range [{low}, {high}]")

    arr = as_vector(vector)

    if arr.size == 0 or not np.all(np.isfinite(arr)):
        raise DegenerateVectorError("Cannot rescale an empty or non-finite vector")

    v_min, v_max = arr.min(), arr.max()
    if v_max == v_min:
        raise DegenerateVectorError("Cannot rescale a constant vector")

    scaled = (arr - v_min) / (v_max - v_min)
    return (low + scaled * (high - low)).astype(np.float32)


class VectorNormalizer:
    """
    Normalizes raw embeddings before they are cached or queried
    """

    METHODS = ('l2', 'range')

    def __init__(self, method: str = 'l2'):
        if method not in self.METHODS:
            raise InvalidOptionsError(
                f"Unknown normalization method: {method}",
                details={'recognized': list(self.METHODS)}
            )
        self.method = method

    def normalize(self, vector) -> np.ndarray:
        if self.method == 'range':
            return range_normalize(vector)
        return l2_normalize(vector)

    __call__ = normalize


# The l2 contract is the default everywhere
normalize = l2_normalize
