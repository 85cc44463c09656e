# components/search_coordinator.py

import logging
import time
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Optional

import numpy as np

from embedcache.core.embedding_cache import EmbeddingCache
from embedcache.core.errors import (DegenerateVectorError, DimensionMismatchError,
                                    InvalidOptionsError)
from embedcache.core.normalization import VectorNormalizer, as_vector
from embedcache.core.quantized_index import QuantizedIndex
from embedcache.core.similarity import SimilarityEngine, SimilarityMetric

logger = logging.getLogger(__name__)


@dataclass
class SearchOptions:
    """Per-call search options; unknown keys are rejected"""
    metric: str = 'cosine'
    threshold: float = 0.7
    max_results: int = 20
    use_index: bool = False
    batch_size: int = 10

    def __post_init__(self):
        self.metric = SimilarityMetric.parse(self.metric).value
        if isinstance(self.threshold, bool) or not isinstance(self.threshold, (int, float)) \
                or not 0.0 <= self.threshold <= 1.0:
            raise InvalidOptionsError(f"threshold must be a number in [0, 1], got {self.threshold!r}")
        if isinstance(self.max_results, bool) or not isinstance(self.max_results, int) \
                or self.max_results <= 0:
            raise InvalidOptionsError(f"max_results must be a positive integer, got {self.max_results!r}")
        if isinstance(self.batch_size, bool) or not isinstance(self.batch_size, int) \
                or self.batch_size <= 0:
            raise InvalidOptionsError(f"batch_size must be a positive integer, got {self.batch_size!r}")
        self.threshold = float(self.threshold)
        self.use_index = bool(self.use_index)

    @classmethod
    def from_dict(cls, options: Optional[Dict[str, Any]], defaults=None) -> 'SearchOptions':
        """
        Validate a loose options mapping

        Args:
            options: Caller options
            defaults: SimilaritySearchConfig supplying values the caller omits
        """
        options = dict(options or {})
        recognized = {f.name for f in fields(cls)}
        unknown = set(options) - recognized
        if unknown:
            raise InvalidOptionsError(
                f"Unknown search option(s): {', '.join(sorted(unknown))}",
                details={'recognized': sorted(recognized)}
            )

        if defaults is not None:
            options.setdefault('metric', defaults.metric)
            options.setdefault('threshold', defaults.similarity_threshold)
            options.setdefault('max_results', defaults.max_results)
            options.setdefault('use_index', defaults.use_index)
            options.setdefault('batch_size', defaults.batch_size)

        return cls(**options)


@dataclass
class SimilarityQuery:
    query_vector: np.ndarray
    metric: str = 'cosine'
    threshold: float = 0.7
    max_results: int = 20

    def __post_init__(self):
        self.query_vector = as_vector(self.query_vector)
        # Reuse the option checks
        checked = SearchOptions(metric=self.metric, threshold=self.threshold,
                                max_results=self.max_results)
        self.metric = checked.metric
        self.threshold = checked.threshold

    @classmethod
    def from_options(cls, query_vector, options: SearchOptions) -> 'SimilarityQuery':
        return cls(query_vector=query_vector, metric=options.metric,
                   threshold=options.threshold, max_results=options.max_results)


@dataclass
class SimilarityMatch:
    """Container for a ranked match"""
    key: str
    score: float
    rank: int
    confidence: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'key': self.key,
            'score': self.score,
            'rank': self.rank,
            'confidence': self.confidence,
            'metadata': self.metadata
        }


@dataclass
class SearchResult:
    matches: List[SimilarityMatch] = field(default_factory=list)
    success: bool = True
    error: Optional[str] = None
    total_candidates: int = 0
    scored: int = 0
    skipped: int = 0
    timed_out: bool = False
    search_time: float = 0.0

    @property
    def total_matches(self) -> int:
        return len(self.matches)

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'error': self.error,
            'matches': [m.to_dict() for m in self.matches],
            'total_matches': self.total_matches,
            'total_candidates': self.total_candidates,
            'scored': self.scored,
            'skipped': self.skipped,
            'timed_out': self.timed_out,
            'search_time': self.search_time
        }


class SimilaritySearchCoordinator:
    """
    Scores cached embeddings against a query and ranks them

    Reads from the cache only. Candidates that vanish or fail to score are
    skipped; a search never raises for a single bad candidate.
    """

    def __init__(self,
                 cache: EmbeddingCache,
                 engine: Optional[SimilarityEngine] = None,
                 normalizer: Optional[VectorNormalizer] = None,
                 index: Optional[QuantizedIndex] = None,
                 expand_adjacent_buckets: bool = False):
        self.cache = cache
        self.engine = engine or SimilarityEngine()
        self.normalizer = normalizer or VectorNormalizer()
        self.index = index
        self.expand_adjacent_buckets = expand_adjacent_buckets

    def attach_index(self, index: Optional[QuantizedIndex]):
        self.index = index

    def search(self, query: SimilarityQuery,
               candidate_keys: Optional[Iterable[str]] = None,
               use_index: bool = False,
               deadline: Optional[float] = None,
               confidences: Optional[Dict[str, float]] = None) -> List[SimilarityMatch]:
        """Ranked matches for ``query``; see ``execute`` for the full result"""
        return self.execute(query, candidate_keys, use_index, deadline, confidences).matches

    def execute(self, query: SimilarityQuery,
                candidate_keys: Optional[Iterable[str]] = None,
                use_index: bool = False,
                deadline: Optional[float] = None,
                confidences: Optional[Dict[str, float]] = None) -> SearchResult:
        """
        Run a similarity query

        Args:
            query: Vector, metric, threshold and result limit
            candidate_keys: Restrict scoring to these keys
            use_index: Narrow candidates through the attached QuantizedIndex
            deadline: time.monotonic() instant; once passed, scoring stops and
                the partial ranking is returned with ``timed_out`` set
            confidences: Optional secondary figure used to break score ties

        Returns:
            SearchResult whose matches are sorted, thresholded and ranked
        """
        start = time.time()
        result = SearchResult()

        try:
            query_vector = self.normalizer.normalize(query.query_vector)
        except DegenerateVectorError as e:
            logger.warning(f"Query vector rejected: {e}")
            result.success = False
            result.error = str(e)
            result.search_time = time.time() - start
            return result

        candidates = self._select_candidates(query_vector, candidate_keys, use_index)
        result.total_candidates = len(candidates)

        scored = []
        for key, entry in candidates:
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(f"Search deadline reached after {result.scored} of "
                               f"{len(candidates)} candidates")
                result.timed_out = True
                break

            try:
                score = self.engine.score(query_vector, entry.vector, query.metric)
            except (DimensionMismatchError, DegenerateVectorError) as e:
                logger.debug(f"Skipping candidate '{key}': {e}")
                result.skipped += 1
                continue

            result.scored += 1
            if score >= query.threshold:
                scored.append((score, entry))

        if result.skipped and not result.scored:
            logger.warning(f"All {result.skipped} candidates failed to score")

        result.matches = self._rank(scored, query.max_results, confidences)
        result.search_time = time.time() - start

        logger.debug(f"Search scored {result.scored} candidates, {len(result.matches)} matches "
                     f"in {result.search_time * 1000:.2f}ms")
        return result

    def _select_candidates(self, query_vector, candidate_keys, use_index) -> list:
        """(key, entry) pairs in cache insertion order; missing keys dropped"""
        if candidate_keys is None and use_index and self.index is not None and self.index.is_built:
            try:
                candidate_keys = self.index.lookup_candidates(
                    query_vector, expand_adjacent=self.expand_adjacent_buckets)
            except DimensionMismatchError as e:
                logger.warning(f"Index lookup skipped: {e}")
                candidate_keys = set()

        if candidate_keys is None:
            return self.cache.items()

        pairs = []
        for key in set(candidate_keys):
            entry = self.cache.get_entry(key)
            if entry is not None:
                pairs.append((key, entry))

        pairs.sort(key=lambda pair: pair[1].sequence)
        return pairs

    @staticmethod
    def _rank(scored, max_results: int, confidences: Optional[Dict[str, float]]) -> List[SimilarityMatch]:
        # Candidates arrive in insertion order and sorted() is stable, so
        # equal scores (and confidences) keep insertion order
        if confidences:
            ordered = sorted(scored, key=lambda pair: (-pair[0], -confidences.get(pair[1].key, 0.0)))
        else:
            ordered = sorted(scored, key=lambda pair: -pair[0])

        return [
            SimilarityMatch(
                key=entry.key,
                score=score,
                rank=rank,
                confidence=confidences.get(entry.key) if confidences else None,
                metadata=dict(entry.metadata)
            )
            for rank, (score, entry) in enumerate(ordered[:max_results], start=1)
        ]
