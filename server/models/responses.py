from pydantic import BaseModel

from shared.models.knowledge import DocumentStatus
from shared.models.retrieval import SimilarDocument


class IngestResponse(BaseModel):
    document_id: str
    status: DocumentStatus
    chunk_count: int


class DeleteResponse(BaseModel):
    document_id: str
    deleted: bool


class SimilarDocumentsResponse(BaseModel):
    document_id: str
    documents: list[SimilarDocument]


class CompanyIngestResponse(BaseModel):
    id: str
    normalized_key: str


class ErrorResponse(BaseModel):
    detail: str
    error: str
    retryable: bool


class HealthResponse(BaseModel):
    status: str
    version: str
    backends: dict[str, str]
