"""Pydantic models for retrieval options, results and RAG responses."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RetrievalOptions(BaseModel):
    """Tunable parameters of one retrieval.

    Every field takes part in the query cache key, so changing any of them
    yields a different cache entry.
    """

    match_count: int = Field(default=5, ge=0, le=100)
    similarity_threshold: float = Field(default=0.7, ge=-1.0, le=1.0)
    filter_tags: list[str] | None = None
    include_company_research: bool = True
    company_match_count: int = Field(default=3, ge=0, le=100)
    company_similarity_threshold: float = Field(default=0.6, ge=-1.0, le=1.0)


class ChunkMatch(BaseModel):
    id: str
    document_id: str
    chunk_index: int
    text: str
    similarity: float
    document_title: str
    document_tags: list[str] = []
    source_url: str | None = None
    created_at: datetime
    metadata: dict[str, Any] = {}


class CompanyMatch(BaseModel):
    id: str
    normalized_key: str
    company_name: str
    description: str | None = None
    industry: str | None = None
    location: str | None = None
    confidence: float
    similarity: float
    research_data: dict[str, Any] = {}
    created_at: datetime
    expires_at: datetime


class RetrievalResult(BaseModel):
    """Both pools, each ranked and truncated independently."""

    chunks: list[ChunkMatch] = []
    company_matches: list[CompanyMatch] = []

    @property
    def total_retrieved(self) -> int:
        return len(self.chunks) + len(self.company_matches)

    @property
    def top_similarity(self) -> float | None:
        scores = [c.similarity for c in self.chunks] + [c.similarity for c in self.company_matches]
        return max(scores) if scores else None


class SourceType(str, Enum):
    COMPANY = "company"
    KNOWLEDGE = "knowledge"


class ContextItem(BaseModel):
    """One citable item of the merged context handed to generation."""

    position: int
    source_type: SourceType
    id: str
    title: str
    content: str
    similarity: float
    metadata: dict[str, Any] = {}


class RAGResponse(BaseModel):
    query: str
    answer: str | None = None
    sources: list[ContextItem] = []
    context: str = ""
    retrieval: RetrievalResult
    generation_skipped: bool = False
    generation_error: str | None = None
    cache_hit: bool = False
    response_time_ms: int = 0
    usage_id: str | None = None


class SimilarDocument(BaseModel):
    id: str
    title: str
    tags: list[str] = []
    similarity: float
