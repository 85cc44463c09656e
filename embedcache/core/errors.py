# core/errors.py

from typing import Any, Optional


class EmbeddingCacheError(Exception):
    """
    Base class for every error raised by the cache and search engine
    """
    code = "EMBEDDING_CACHE_ERROR"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            'error': self.__class__.__name__,
            'code': self.code,
            'message': self.message,
            'details': self.details
        }


class DimensionMismatchError(EmbeddingCacheError, ValueError):
    """Vectors of unequal length were compared or stored together"""
    code = "DIMENSION_MISMATCH"

    def __init__(self, expected: int, actual: int, context: str = "vector"):
        super().__init__(
            f"{context} has dimension {actual}, expected {expected}",
            details={'expected': expected, 'actual': actual}
        )
        self.expected = expected
        self.actual = actual


class DegenerateVectorError(EmbeddingCacheError, ValueError):
    """Zero-norm, empty or non-finite vector that cannot be normalized"""
    code = "DEGENERATE_VECTOR"


class InvalidOptionsError(EmbeddingCacheError, ValueError):
    """Unknown or out-of-range configuration / query options"""
    code = "INVALID_OPTIONS"


class ExtractionError(EmbeddingCacheError):
    """The embedding function could not produce a vector for an image"""
    code = "FEATURE_EXTRACTION_FAILED"


class InvalidSnapshotError(EmbeddingCacheError):
    """Malformed or dimension-incompatible cache snapshot"""
    code = "INVALID_SNAPSHOT"


class CapacityExceededError(EmbeddingCacheError):
    """Insert rejected because the cache is configured to report, not evict"""
    code = "CAPACITY_EXCEEDED"


class ServiceNotOpenError(EmbeddingCacheError, RuntimeError):
    code = "SERVICE_NOT_OPEN"
