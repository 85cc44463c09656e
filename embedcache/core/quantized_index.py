# core/quantized_index.py

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Optional, Set

import numpy as np

from embedcache.core.embedding_cache import EmbeddingCache
from embedcache.core.errors import DimensionMismatchError, InvalidOptionsError
from embedcache.core.normalization import as_vector

logger = logging.getLogger(__name__)

VALUE_RANGE = (-1.0, 1.0)
MAX_QUANTIZATION_LEVELS = 16
# Check the deadline every this many vectors during a build
DEADLINE_CHECK_INTERVAL = 256


@dataclass
class _IndexState:
    levels: int
    dimension: Optional[int]
    buckets: Dict[str, Set[str]] = field(default_factory=dict)
    codes: Dict[str, np.ndarray] = field(default_factory=dict)
    key_to_bucket: Dict[str, str] = field(default_factory=dict)
    source_version: int = 0
    built_at: float = 0.0


class QuantizedIndex:
    """
    Coarse bucket index over cached embeddings

    Each coordinate is mapped to one of ``2 ** quantization_levels`` evenly
    spaced buckets over [-1, 1]; vectors sharing every coordinate bucket share
    a bucket key. The index stores cache keys only, never vectors, and is
    rebuilt from scratch rather than repaired incrementally.
    """

    def __init__(self):
        self._state: Optional[_IndexState] = None

    @property
    def is_built(self) -> bool:
        return self._state is not None

    @property
    def quantization_levels(self) -> Optional[int]:
        return self._state.levels if self._state else None

    @property
    def dimension(self) -> Optional[int]:
        return self._state.dimension if self._state else None

    @staticmethod
    def quantize(vector, quantization_levels: int) -> np.ndarray:
        """Per-coordinate bucket indices in [0, 2 ** quantization_levels)"""
        n_buckets = 2 ** quantization_levels
        low, high = VALUE_RANGE

        arr = np.clip(as_vector(vector), low, high)
        scaled = (arr - low) / (high - low) * n_buckets
        # The top edge (x == high) belongs to the last bucket
        return np.minimum(np.floor(scaled), n_buckets - 1).astype(np.int32)

    @staticmethod
    def codes_to_key(codes: np.ndarray) -> str:
        return ','.join(str(int(c)) for c in codes)

    def bucket_key(self, vector, quantization_levels: Optional[int] = None) -> str:
        levels = quantization_levels or self.quantization_levels
        if levels is None:
            raise InvalidOptionsError("Index has not been built; quantization levels unknown")
        return self.codes_to_key(self.quantize(vector, levels))

    def build(self, cache: EmbeddingCache,
              quantization_levels: int = 8,
              deadline: Optional[float] = None) -> bool:
        """
        Rebuild the index over every vector currently in the cache

        Args:
            cache: Source of vectors
            quantization_levels: Bits per coordinate (2 ** levels buckets)
            deadline: time.monotonic() instant after which the build is abandoned

        Returns:
            True if the new index was published, False if the deadline passed
            (the previous index is kept untouched)
        """
        if not isinstance(quantization_levels, int) or not \
                1 <= quantization_levels <= MAX_QUANTIZATION_LEVELS:
            raise InvalidOptionsError(
                f"quantization_levels must be an integer in [1, {MAX_QUANTIZATION_LEVELS}]"
            )

        start = time.time()
        source_version = cache.version
        buckets = defaultdict(set)
        codes_by_bucket = {}
        key_to_bucket = {}

        for position, (key, entry) in enumerate(cache.items()):
            if deadline is not None and position % DEADLINE_CHECK_INTERVAL == 0 \
                    and time.monotonic() >= deadline:
                logger.warning(f"Index rebuild abandoned after {position} vectors; keeping previous index")
                return False

            codes = self.quantize(entry.vector, quantization_levels)
            bucket = self.codes_to_key(codes)

            buckets[bucket].add(key)
            codes_by_bucket.setdefault(bucket, codes)
            key_to_bucket[key] = bucket

        if deadline is not None and time.monotonic() >= deadline:
            logger.warning("Index rebuild finished past its deadline; keeping previous index")
            return False

        # Single assignment publishes the whole index at once
        self._state = _IndexState(
            levels=quantization_levels,
            dimension=cache.dimension,
            buckets=dict(buckets),
            codes=codes_by_bucket,
            key_to_bucket=key_to_bucket,
            source_version=source_version,
            built_at=time.time()
        )

        logger.info(f"Search index built with {len(buckets)} buckets over "
                    f"{len(key_to_bucket)} embeddings in {time.time() - start:.3f}s")
        return True

    def lookup_candidates(self, query_vector, expand_adjacent: bool = False) -> Set[str]:
        """
        Cache keys sharing the query's bucket

        With ``expand_adjacent`` the keys of every bucket whose coordinates
        are all within one step of the query's are included too.
        """
        state = self._state
        if state is None:
            return set()

        query = as_vector(query_vector)
        if state.dimension is not None and query.size != state.dimension:
            raise DimensionMismatchError(state.dimension, query.size, context="query vector")

        codes = self.quantize(query, state.levels)

        if not expand_adjacent:
            return set(state.buckets.get(self.codes_to_key(codes), ()))

        candidates = set()
        for bucket, bucket_codes in state.codes.items():
            if np.max(np.abs(bucket_codes - codes), initial=0) <= 1:
                candidates.update(state.buckets[bucket])
        return candidates

    def is_stale(self, cache: EmbeddingCache) -> bool:
        """True when the cache changed since the last build (or none happened)"""
        state = self._state
        return state is None or state.source_version != cache.version

    def bucket_of(self, key: str) -> Optional[str]:
        state = self._state
        return state.key_to_bucket.get(key) if state else None

    def size(self) -> int:
        """Number of distinct buckets"""
        state = self._state
        return len(state.buckets) if state else 0

    __len__ = size

    def reset(self):
        self._state = None

    def stats(self) -> dict:
        state = self._state
        if state is None:
            return {'built': False, 'buckets': 0, 'indexed_keys': 0}

        sizes = [len(keys) for keys in state.buckets.values()]
        return {
            'built': True,
            'buckets': len(state.buckets),
            'indexed_keys': len(state.key_to_bucket),
            'quantization_levels': state.levels,
            'largest_bucket': max(sizes) if sizes else 0,
            'mean_bucket_size': float(np.mean(sizes)) if sizes else 0.0,
            'built_at': state.built_at
        }
