from fastapi import APIRouter, Depends, Request

from server.dependencies.auth import verify_api_key
from server.models.requests import FeedbackRequest, QueryRequest
from shared.models.knowledge import UsageFeedback
from shared.models.retrieval import RAGResponse

router = APIRouter(prefix="/query", tags=["query"])


@router.post("")
async def query_knowledge(
    request: Request,
    body: QueryRequest,
    _: None = Depends(verify_api_key),
) -> RAGResponse:
    """Answer a question from the owner's knowledge base and the company research cache.

    Args:
        request (Request): FastAPI request (provides app.state.orchestrator).
        body (QueryRequest): JSON body with query string, owner_id and optional retrieval options.
        _ (None): Auth dependency result (unused).

    Returns:
        RAGResponse: The answer with its cited sources and the raw retrieval.
    """
    orchestrator = request.app.state.orchestrator
    return await orchestrator.generate_rag_response(body.query, body.owner_id, body.options)


@router.post("/retrieve")
async def retrieve_context(
    request: Request,
    body: QueryRequest,
    _: None = Depends(verify_api_key),
) -> RAGResponse:
    """Return the ranked context for a query without generating an answer."""
    orchestrator = request.app.state.orchestrator
    return await orchestrator.retrieve_only(body.query, body.owner_id, body.options)


@router.post("/feedback", status_code=201)
async def submit_feedback(
    request: Request,
    body: FeedbackRequest,
    _: None = Depends(verify_api_key),
) -> UsageFeedback:
    orchestrator = request.app.state.orchestrator
    return await orchestrator.record_feedback(body.usage_id, body.owner_id, body.rating, body.comment)
