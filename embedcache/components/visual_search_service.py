# components/visual_search_service.py

import logging
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import numpy as np

from embedcache.components.search_coordinator import (SearchOptions, SearchResult,
                                                      SimilarityQuery,
                                                      SimilaritySearchCoordinator)
from embedcache.config import SystemConfig
from embedcache.core.batch_processor import BatchProcessor, BatchReport
from embedcache.core.cache_sweeper import CacheSweeper
from embedcache.core.embedding_cache import CacheEntry, EmbeddingCache, content_key
from embedcache.core.errors import (DegenerateVectorError, EmbeddingCacheError,
                                    ExtractionError, ServiceNotOpenError)
from embedcache.core.feature_extractors import FeatureExtractor, create_feature_extractor
from embedcache.core.normalization import VectorNormalizer
from embedcache.core.quantized_index import QuantizedIndex
from embedcache.utils.logging_config import PerformanceLogger
from embedcache.utils.performance_monitor import get_system_info

logger = logging.getLogger(__name__)

# Catalog fields that identify the image rather than describe the product
_REFERENCE_FIELDS = ('id', 'uri', 'path', 'image')


def _catalog_reference(item):
    """What the embedding function should read for a catalog item"""
    if isinstance(item, dict) and item.get('image') is not None:
        return item['image']
    return item


def _catalog_metadata(item) -> Dict[str, Any]:
    if isinstance(item, dict):
        metadata = {k: v for k, v in item.items() if k not in _REFERENCE_FIELDS}
        if item.get('uri') or item.get('path'):
            metadata['source'] = str(item.get('uri') or item.get('path'))
        return metadata
    if isinstance(item, (str, Path)):
        return {'source': str(item)}
    return {}


class VisualSearchService:
    """
    Embedding cache + similarity search with an explicit lifetime

    Owns the cache, the quantized index, the search coordinator, the
    embedding function and the background sweeper. Nothing is global:
    construct one per application and ``open()`` / ``close()`` it (or use it
    as a context manager).
    """

    def __init__(self, config: Optional[SystemConfig] = None,
                 embedding_function: Optional[FeatureExtractor] = None):
        self.config = config or SystemConfig()
        self._injected_embedding_function = embedding_function

        self.embedding_function: Optional[FeatureExtractor] = None
        self.normalizer = VectorNormalizer()
        self.cache: Optional[EmbeddingCache] = None
        self.index: Optional[QuantizedIndex] = None
        self.coordinator: Optional[SimilaritySearchCoordinator] = None
        self.batch_processor: Optional[BatchProcessor] = None
        self.sweeper: Optional[CacheSweeper] = None
        self.performance = PerformanceLogger()
        self._open = False

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> 'VisualSearchService':
        """Initialize all components"""
        if self._open:
            return self

        cache_config = self.config.cache
        search_config = self.config.similarity_search

        self.cache = EmbeddingCache(
            dimension=cache_config.dimension,
            max_bytes=cache_config.max_bytes,
            max_entries=cache_config.max_entries,
            max_age_seconds=cache_config.max_age_seconds,
            eviction_policy=cache_config.eviction_policy
        )
        if cache_config.load_snapshot_on_open and Path(cache_config.snapshot_path).exists():
            self.cache.load_snapshot(cache_config.snapshot_path)

        self.index = QuantizedIndex()
        self.coordinator = SimilaritySearchCoordinator(
            self.cache,
            normalizer=self.normalizer,
            index=self.index,
            expand_adjacent_buckets=search_config.expand_adjacent_buckets
        )
        self.batch_processor = BatchProcessor(batch_size=search_config.batch_size,
                                              n_workers=search_config.n_workers)
        self.embedding_function = (self._injected_embedding_function or
                                   create_feature_extractor(self.config.feature_extraction))

        self.sweeper = CacheSweeper(
            self.cache,
            interval_seconds=cache_config.sweep_interval_seconds,
            memory_pressure_percent=cache_config.memory_pressure_percent,
            trim_fraction=cache_config.memory_pressure_trim_fraction
        )
        self.sweeper.start()

        self._open = True
        logger.info(f"Visual search service opened (embedding function: {self.embedding_function.name})")
        return self

    def close(self):
        if not self._open:
            return

        self.sweeper.stop()
        if self.config.cache.save_snapshot_on_close:
            self.cache.save_snapshot(self.config.cache.snapshot_path)

        self._open = False
        logger.info("Visual search service closed")

    def __enter__(self) -> 'VisualSearchService':
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _require_open(self):
        if not self._open:
            raise ServiceNotOpenError("VisualSearchService is not open; call open() first")

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def extract_embedding(self, image_reference, options: Optional[dict] = None) -> np.ndarray:
        """Run the embedding function and normalize its output"""
        self._require_open()

        start = time.time()
        try:
            raw = self.embedding_function.extract(image_reference, options)
        except EmbeddingCacheError:
            raise
        except Exception as e:
            raise ExtractionError(f"{self.embedding_function.name} extraction failed: {e}") from e
        self.performance.log_metric('extract', time.time() - start,
                                    extractor=self.embedding_function.name)

        try:
            return self.normalizer.normalize(raw)
        except DegenerateVectorError as e:
            raise ExtractionError(f"Embedding function returned a degenerate vector: {e}") from e

    def index_image(self, image_reference, metadata: Optional[dict] = None,
                    key: Optional[str] = None, force: bool = False) -> str:
        """
        Extract, normalize and cache one image

        Already-cached keys are not re-extracted unless ``force`` is set or
        feature caching is disabled.

        Returns:
            The cache key
        """
        self._require_open()
        key = key or content_key(image_reference)

        if key in self.cache and not force and self.config.feature_extraction.cache_features:
            return key

        vector = self.extract_embedding(_catalog_reference(image_reference))
        if metadata is None:
            metadata = _catalog_metadata(image_reference)
        self.cache.put(key, vector, metadata)
        return key

    def index_images(self, image_references: Iterable,
                     deadline: Optional[float] = None,
                     show_progress: bool = False) -> BatchReport:
        """Batch-ingest images; failures are reported, not raised"""
        self._require_open()

        processor = self.batch_processor
        if show_progress:
            processor = BatchProcessor(batch_size=processor.batch_size,
                                       n_workers=processor.n_workers,
                                       show_progress=True)

        report = processor.process_in_batches(list(image_references), self.index_image,
                                              deadline=deadline)
        logger.info(f"Indexed {len(report.succeeded)} images "
                    f"({len(report.failed)} failed) in {report.elapsed:.2f}s")
        return report

    def add_embedding(self, key: str, vector, metadata: Optional[dict] = None) -> CacheEntry:
        """Normalize and cache a precomputed embedding"""
        self._require_open()
        return self.cache.put(key, self.normalizer.normalize(vector), metadata)

    def get_embedding(self, key: str) -> Optional[CacheEntry]:
        self._require_open()
        return self.cache.get_entry(key)

    def remove(self, key: str) -> bool:
        self._require_open()
        return self.cache.delete(key)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query_vector,
               options: Optional[dict] = None,
               candidate_keys: Optional[Iterable[str]] = None,
               deadline: Optional[float] = None,
               confidences: Optional[Dict[str, float]] = None) -> SearchResult:
        """
        Rank cached embeddings against a query vector

        Args:
            query_vector: Raw or normalized query embedding
            options: metric / threshold / max_results / use_index overrides
            candidate_keys: Restrict the search to these keys
            deadline: time.monotonic() instant bounding the whole search
            confidences: Secondary tie-break figures per key
        """
        self._require_open()
        search_options = SearchOptions.from_dict(options, self.config.similarity_search)
        query = SimilarityQuery.from_options(query_vector, search_options)

        if search_options.use_index and candidate_keys is None and self.index.is_stale(self.cache):
            self.rebuild_index(deadline=deadline)

        result = self.coordinator.execute(query, candidate_keys=candidate_keys,
                                          use_index=search_options.use_index,
                                          deadline=deadline, confidences=confidences)
        self.performance.log_metric('search', result.search_time,
                                    candidates=result.total_candidates,
                                    matches=result.total_matches)
        return result

    def find_similar(self, query_image, catalog: List,
                     options: Optional[dict] = None,
                     deadline: Optional[float] = None) -> SearchResult:
        """
        Find catalog images visually similar to a query image

        Uncached catalog images are extracted in fixed-size batches first;
        images that fail to extract are skipped. Catalog items may be paths,
        URIs, or dicts with ``id`` / ``uri`` / ``image`` plus any product
        metadata (and an optional ``confidence`` used to break ties).
        """
        self._require_open()
        start = time.time()
        search_options = SearchOptions.from_dict(options, self.config.similarity_search)

        query_key = content_key(query_image)
        cached_query = self.cache.get(query_key)
        try:
            query_vector = (cached_query if cached_query is not None
                            else self.extract_embedding(_catalog_reference(query_image)))
        except ExtractionError as e:
            logger.warning(f"Query image unavailable: {e}")
            return SearchResult(success=False, error=str(e), search_time=time.time() - start)

        processor = BatchProcessor(batch_size=search_options.batch_size,
                                   n_workers=self.batch_processor.n_workers)
        report = processor.process_in_batches(catalog, self.index_image, deadline=deadline)

        keys = [r.value for r in report.succeeded]
        confidences = {
            r.value: float(r.item['confidence'])
            for r in report.succeeded
            if isinstance(r.item, dict) and r.item.get('confidence') is not None
        }

        query = SimilarityQuery.from_options(query_vector, search_options)
        result = self.coordinator.execute(query, candidate_keys=keys, deadline=deadline,
                                          confidences=confidences or None)

        result.total_candidates += len(report.failed)
        result.skipped += len(report.failed)
        result.timed_out = result.timed_out or report.timed_out
        result.search_time = time.time() - start

        self.performance.log_metric('find_similar', result.search_time,
                                    catalog_size=len(catalog), matches=result.total_matches)
        logger.info(f"Found {result.total_matches} similar products in "
                    f"{result.search_time * 1000:.2f}ms")
        return result

    # ------------------------------------------------------------------
    # Index and cache management
    # ------------------------------------------------------------------

    def rebuild_index(self, quantization_levels: Optional[int] = None,
                      deadline: Optional[float] = None) -> bool:
        self._require_open()
        levels = quantization_levels or self.config.similarity_search.quantization_levels

        start = time.time()
        published = self.index.build(self.cache, levels, deadline=deadline)
        self.performance.log_metric('index_build', time.time() - start,
                                    published=published, buckets=self.index.size())
        return published

    def export_snapshot(self) -> dict:
        self._require_open()
        return self.cache.export_snapshot()

    def import_snapshot(self, data) -> int:
        self._require_open()
        count = self.cache.import_snapshot(data)
        self.index.reset()
        return count

    def save_snapshot(self, path: Optional[str] = None) -> Path:
        self._require_open()
        return self.cache.save_snapshot(path or self.config.cache.snapshot_path)

    def load_snapshot(self, path: Optional[str] = None) -> int:
        self._require_open()
        count = self.cache.load_snapshot(path or self.config.cache.snapshot_path)
        self.index.reset()
        return count

    def sweep(self) -> dict:
        self._require_open()
        return self.sweeper.sweep_once()

    def clear_database(self):
        """Drop every cached embedding and the index"""
        self._require_open()
        self.cache.clear()
        self.index.reset()
        logger.info("Similarity database cleared")

    def stats(self) -> dict:
        self._require_open()
        return {
            'cache': self.cache.stats(),
            'index': self.index.stats(),
            'embedding_function': {
                'name': self.embedding_function.name,
                'dimension': self.embedding_function.dimension
            },
            'performance': self.performance.summary(),
            'system': get_system_info(),
            'config': self.config.to_dict()
        }
