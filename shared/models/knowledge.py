"""Pydantic models for the persisted knowledge engine records.

Hierarchy:
  KnowledgeDocument    : a user's document and its processing lifecycle.
  KnowledgeChunk       : one embedded, overlapping segment of a document.
  CompanyResearchEntry : a cached company profile with confidence and expiry.
  SearchCacheEntry     : a memoised retrieval for (query, owner, options).
  UsageLogEntry        : one append-only retrieval event.
  UsageFeedback        : an append-only satisfaction rating for a usage event.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DocumentMetadata(BaseModel):
    """Caller-supplied metadata for a document to ingest.

    ``document_id`` is optional. When set, ingestion is idempotent for that id:
    a retry of a completed document returns it unchanged.
    """

    title: str
    owner_id: str
    source_url: str | None = None
    file_type: str = "txt"
    file_size: int | None = None
    tags: list[str] = []
    document_id: str | None = None

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, tags: list[str]) -> list[str]:
        seen: list[str] = []
        for tag in tags:
            tag = tag.strip()
            if tag and tag not in seen:
                seen.append(tag)
        return seen


class KnowledgeDocument(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    title: str
    source_url: str | None = None
    file_type: str = "txt"
    file_size: int | None = None
    tags: list[str] = []
    content: str = ""
    status: DocumentStatus = DocumentStatus.PENDING
    error_message: str | None = None
    chunk_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None


class KnowledgeChunk(BaseModel):
    """A single embedded chunk. Never mutated after creation."""

    id: str = Field(default_factory=new_id)
    document_id: str
    owner_id: str
    chunk_index: int
    text: str
    embedding: list[float]
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utc_now)


class ChunkCandidate(BaseModel):
    """A searchable chunk joined with the metadata of its (completed) document."""

    chunk: KnowledgeChunk
    document_title: str
    document_tags: list[str] = []
    source_url: str | None = None


class CompanyResearchEntry(BaseModel):
    """Cached company profile, keyed by a normalized company identity.

    An entry whose ``expires_at`` has passed is treated as absent, whether or
    not it has been physically purged.
    """

    id: str = Field(default_factory=new_id)
    normalized_key: str
    company_name: str
    industry: str | None = None
    location: str | None = None
    description: str | None = None
    website: str | None = None
    founded_year: int | None = None
    employee_count: str | None = None
    revenue: str | None = None
    key_executives: list[Any] = []
    competitors: list[Any] = []
    recent_news: list[Any] = []
    research_data: dict[str, Any] = {}
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    embedding: list[float]
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at


class SearchCacheEntry(BaseModel):
    cache_key: str
    owner_id: str
    query: str
    options: dict[str, Any] = {}
    result: dict[str, Any]
    hit_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    last_accessed: datetime = Field(default_factory=utc_now)
    expires_at: datetime


class QueryType(str, Enum):
    KNOWLEDGE = "knowledge"
    COMPANY = "company"
    HYBRID = "hybrid"


class UsageLogEntry(BaseModel):
    """One retrieval event. Append-only."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    query: str
    query_type: QueryType = QueryType.KNOWLEDGE
    search_params: dict[str, Any] = {}
    results_count: int = 0
    top_similarity: float | None = None
    response_time_ms: int = 0
    cache_hit: bool = False
    generation_skipped: bool = False
    user_satisfaction: int | None = Field(default=None, ge=1, le=5)
    created_at: datetime = Field(default_factory=utc_now)


class UsageFeedback(BaseModel):
    id: str = Field(default_factory=new_id)
    usage_id: str
    owner_id: str
    rating: int = Field(ge=1, le=5)
    comment: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class DocumentListResult(BaseModel):
    documents: list[KnowledgeDocument]
    total: int


class RecentUpload(BaseModel):
    id: str
    title: str
    created_at: datetime


class TagCount(BaseModel):
    tag: str
    count: int


class KnowledgeBaseStats(BaseModel):
    """Aggregates over an owner's documents, recomputed on every call."""

    total_documents: int = 0
    total_chunks: int = 0
    total_size_bytes: int = 0
    avg_chunks_per_document: float = 0.0
    documents_by_status: dict[str, int] = {}
    tag_counts: dict[str, int] = {}
    most_common_tags: list[TagCount] = []
    recent_uploads: list[RecentUpload] = []


class ProcessingStatus(BaseModel):
    document_id: str
    status: DocumentStatus
    error_message: str | None = None
    chunk_count: int = 0
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None


class CompanyProfile(BaseModel):
    """Researched company data submitted for caching."""

    company_name: str
    industry: str | None = None
    location: str | None = None
    description: str | None = None
    website: str | None = None
    founded_year: int | None = None
    employee_count: str | None = None
    revenue: str | None = None
    key_executives: list[Any] = []
    competitors: list[Any] = []
    recent_news: list[Any] = []
    research_data: dict[str, Any] = {}
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    expires_at: datetime | None = None


class ProcessedFile(BaseModel):
    """Text extracted from an uploaded file, ready for ingestion."""

    title: str
    content: str
    file_type: str
    file_size: int
