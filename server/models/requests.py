from pydantic import BaseModel, Field

from shared.models.retrieval import RetrievalOptions


class IngestDocumentRequest(BaseModel):
    content: str
    title: str
    owner_id: str
    source_url: str | None = None
    file_type: str = "txt"
    tags: list[str] = []
    document_id: str | None = None


class UpdateDocumentRequest(BaseModel):
    owner_id: str
    title: str | None = None
    tags: list[str] | None = None


class ReprocessRequest(BaseModel):
    owner_id: str


class QueryRequest(BaseModel):
    query: str
    owner_id: str
    options: RetrievalOptions | None = None


class FeedbackRequest(BaseModel):
    usage_id: str
    owner_id: str
    rating: int = Field(ge=1, le=5)
    comment: str | None = None


class CleanupRequest(BaseModel):
    days_to_keep: int | None = Field(default=None, ge=0)
