"""Pydantic schemas for the embedding cache HTTP API (camelCase on the wire)."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='forbid')


class SearchRequest(ApiModel):
    query_vector: List[float] = Field(..., description="Query embedding")
    metric: Optional[str] = None
    threshold: Optional[float] = None
    max_results: Optional[int] = None
    use_index: Optional[bool] = None

    @field_validator('query_vector')
    @classmethod
    def query_vector_must_not_be_empty(cls, v):
        if not v:
            raise ValueError('queryVector cannot be empty')
        return v

    def options(self) -> Dict[str, Any]:
        """Only the options the caller actually set"""
        return self.model_dump(exclude={'query_vector'}, exclude_none=True)


class MatchResponse(ApiModel):
    key: str
    score: float
    rank: int
    confidence: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchResponse(ApiModel):
    success: bool
    error: Optional[str] = None
    matches: List[MatchResponse]
    total_matches: int
    total_candidates: int
    search_time_ms: float
    timed_out: bool


class CachePutRequest(ApiModel):
    vector: List[float]
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CacheEntryResponse(ApiModel):
    key: str
    vector: List[float]
    metadata: Dict[str, Any]
    inserted_at: float


class IndexRebuildRequest(ApiModel):
    quantization_levels: Optional[int] = Field(None, ge=1, le=16)


class IndexRebuildResponse(ApiModel):
    published: bool
    buckets: int
    indexed_keys: int


class SnapshotImportResponse(ApiModel):
    imported: int


class HealthResponse(ApiModel):
    status: str
    version: str
    entries: int
    estimated_bytes: int
    index_built: bool
    timestamp: str
