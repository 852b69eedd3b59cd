from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile

from server.dependencies.auth import verify_api_key
from server.models.requests import IngestDocumentRequest, ReprocessRequest, UpdateDocumentRequest
from server.models.responses import DeleteResponse, IngestResponse, SimilarDocumentsResponse
from shared.models.knowledge import DocumentListResult, DocumentMetadata, KnowledgeDocument, ProcessingStatus

router = APIRouter(prefix="/documents", tags=["documents"], dependencies=[Depends(verify_api_key)])


async def _ingest_response(request: Request, document_id: str, owner_id: str) -> IngestResponse:
    status = await request.app.state.ingestion_service.get_processing_status(document_id, owner_id)
    return IngestResponse(document_id=document_id, status=status.status, chunk_count=status.chunk_count)


@router.post("", status_code=201)
async def ingest_document(request: Request, body: IngestDocumentRequest) -> IngestResponse:
    """Chunk, embed and store a text document.

    Args:
        request (Request): FastAPI request (provides app.state.ingestion_service).
        body (IngestDocumentRequest): Content and metadata of the document.

    Returns:
        IngestResponse: The document id with its final processing status.
    """
    metadata = DocumentMetadata(
        title=body.title,
        owner_id=body.owner_id,
        source_url=body.source_url,
        file_type=body.file_type,
        file_size=len(body.content.encode("utf-8")),
        tags=body.tags,
        document_id=body.document_id,
    )
    document_id = await request.app.state.ingestion_service.ingest_document(body.content, metadata)
    return await _ingest_response(request, document_id, body.owner_id)


@router.post("/upload", status_code=201)
async def upload_document(
    request: Request,
    file: UploadFile = File(...),
    owner_id: str = Form(...),
    tags: str = Form(""),
    source_url: str | None = Form(None),
    document_id: str | None = Form(None),
) -> IngestResponse:
    """Ingest an uploaded txt or md file. ``tags`` is a comma separated list."""
    data = await file.read()
    processed = request.app.state.file_processor.process_file(file.filename or "", data)
    metadata = DocumentMetadata(
        title=processed.title,
        owner_id=owner_id,
        source_url=source_url,
        file_type=processed.file_type,
        file_size=processed.file_size,
        tags=[tag for tag in tags.split(",") if tag.strip()],
        document_id=document_id,
    )
    new_id = await request.app.state.ingestion_service.ingest_document(processed.content, metadata)
    return await _ingest_response(request, new_id, owner_id)


@router.get("")
async def list_documents(
    request: Request,
    owner_id: str,
    limit: int = Query(50, ge=0, le=500),
    offset: int = Query(0, ge=0),
    tags: list[str] | None = Query(None),
    search: str | None = None,
) -> DocumentListResult:
    return await request.app.state.ingestion_service.list_documents(
        owner_id, limit=limit, offset=offset, tags=tags, search=search
    )


@router.get("/search")
async def search_documents(
    request: Request,
    owner_id: str,
    q: str = "",
    limit: int = Query(10, ge=1, le=100),
    tags: list[str] | None = Query(None),
) -> list[KnowledgeDocument]:
    return await request.app.state.ingestion_service.search_documents_by_text(owner_id, q, limit=limit, tags=tags)


@router.get("/{document_id}")
async def get_document(request: Request, document_id: str, owner_id: str) -> KnowledgeDocument:
    return await request.app.state.ingestion_service.get_document(document_id, owner_id)


@router.get("/{document_id}/status")
async def get_processing_status(request: Request, document_id: str, owner_id: str) -> ProcessingStatus:
    return await request.app.state.ingestion_service.get_processing_status(document_id, owner_id)


@router.put("/{document_id}")
async def update_document(request: Request, document_id: str, body: UpdateDocumentRequest) -> KnowledgeDocument:
    return await request.app.state.ingestion_service.update_document(
        document_id, body.owner_id, title=body.title, tags=body.tags
    )


@router.post("/{document_id}/reprocess")
async def reprocess_document(request: Request, document_id: str, body: ReprocessRequest) -> IngestResponse:
    await request.app.state.ingestion_service.reprocess_document(document_id, body.owner_id)
    return await _ingest_response(request, document_id, body.owner_id)


@router.delete("/{document_id}")
async def delete_document(request: Request, document_id: str, owner_id: str) -> DeleteResponse:
    await request.app.state.ingestion_service.delete_document(document_id, owner_id)
    return DeleteResponse(document_id=document_id, deleted=True)


@router.get("/{document_id}/similar")
async def similar_documents(
    request: Request,
    document_id: str,
    owner_id: str,
    limit: int = Query(5, ge=1, le=50),
) -> SimilarDocumentsResponse:
    """List the owner's documents most similar to the given one."""
    documents = await request.app.state.retriever.find_similar_documents(document_id, owner_id, limit=limit)
    return SimilarDocumentsResponse(document_id=document_id, documents=documents)
