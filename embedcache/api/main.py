"""FastAPI application exposing the embedding cache and similarity search."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from embedcache.api.schemas import (CacheEntryResponse, CachePutRequest, HealthResponse,
                                    IndexRebuildRequest, IndexRebuildResponse, MatchResponse,
                                    SearchRequest, SearchResponse, SnapshotImportResponse)
from embedcache.components.visual_search_service import VisualSearchService
from embedcache.config import VERSION, SystemConfig
from embedcache.core.errors import (CapacityExceededError, DegenerateVectorError,
                                    DimensionMismatchError, EmbeddingCacheError,
                                    InvalidOptionsError, InvalidSnapshotError,
                                    ServiceNotOpenError)

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS_CODES = (
    (InvalidSnapshotError, 400),
    (CapacityExceededError, 409),
    (DimensionMismatchError, 422),
    (DegenerateVectorError, 422),
    (InvalidOptionsError, 422),
    (ServiceNotOpenError, 503),
)


def status_code_for(error: EmbeddingCacheError) -> int:
    for error_cls, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_cls):
            return status_code
    return 500


def create_app(service: Optional[VisualSearchService] = None,
               config: Optional[SystemConfig] = None) -> FastAPI:
    """
    Build the API around a service instance

    The service is opened when the application starts and closed when it
    shuts down.
    """
    service = service or VisualSearchService(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service.open()
        logger.info("Embedding cache API started")
        yield
        service.close()
        logger.info("Embedding cache API stopped")

    app = FastAPI(
        title="Embedding Cache",
        description="Image embedding cache with similarity search",
        version=VERSION,
        lifespan=lifespan
    )
    app.state.service = service

    @app.exception_handler(EmbeddingCacheError)
    async def embedding_cache_error_handler(request: Request, exc: EmbeddingCacheError):
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.get("/health", response_model=HealthResponse)
    def health_check():
        """Health check endpoint."""
        if not service.is_open:
            raise ServiceNotOpenError("Service is not open")

        return HealthResponse(
            status="ok",
            version=VERSION,
            entries=service.cache.entry_count,
            estimated_bytes=service.cache.estimated_bytes,
            index_built=service.index.is_built,
            timestamp=datetime.now(timezone.utc).isoformat()
        )

    @app.post("/search", response_model=SearchResponse)
    def search(request: SearchRequest):
        """Rank cached embeddings against a query vector."""
        result = service.search(request.query_vector, request.options())
        if not result.success:
            # Unusable query vector
            raise HTTPException(status_code=422, detail=result.error)

        return SearchResponse(
            success=result.success,
            error=result.error,
            matches=[MatchResponse(**m.to_dict()) for m in result.matches],
            total_matches=result.total_matches,
            total_candidates=result.total_candidates,
            search_time_ms=result.search_time * 1000,
            timed_out=result.timed_out
        )

    @app.post("/cache/{key}", status_code=204)
    def put_embedding(key: str, request: CachePutRequest):
        """Store a precomputed embedding under ``key``."""
        service.add_embedding(key, request.vector, request.metadata)
        return Response(status_code=204)

    @app.get("/cache/{key}", response_model=CacheEntryResponse)
    def get_embedding(key: str):
        entry = service.get_embedding(key)
        if entry is None:
            raise HTTPException(status_code=404, detail=f"Key '{key}' not found")

        return CacheEntryResponse(
            key=entry.key,
            vector=entry.vector.tolist(),
            metadata=entry.metadata,
            inserted_at=entry.inserted_at
        )

    @app.delete("/cache/{key}", status_code=204)
    def delete_embedding(key: str):
        if not service.remove(key):
            raise HTTPException(status_code=404, detail=f"Key '{key}' not found")
        return Response(status_code=204)

    @app.post("/index/rebuild", response_model=IndexRebuildResponse)
    def rebuild_index(request: Optional[IndexRebuildRequest] = None):
        """Rebuild the quantized index over the current cache contents."""
        levels = request.quantization_levels if request is not None else None
        published = service.rebuild_index(levels)
        index_stats = service.index.stats()

        return IndexRebuildResponse(
            published=published,
            buckets=index_stats['buckets'],
            indexed_keys=index_stats['indexed_keys']
        )

    @app.get("/snapshot")
    def export_snapshot() -> Dict[str, Any]:
        return service.export_snapshot()

    @app.post("/snapshot", response_model=SnapshotImportResponse)
    def import_snapshot(snapshot: Dict[str, Any] = Body(...)):
        """Replace the cache contents with a previously exported snapshot."""
        return SnapshotImportResponse(imported=service.import_snapshot(snapshot))

    @app.get("/stats")
    def stats() -> Dict[str, Any]:
        return service.stats()

    return app
