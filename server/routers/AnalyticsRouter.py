from fastapi import APIRouter, Depends, Query, Request

from server.dependencies.auth import verify_api_key
from server.models.requests import CleanupRequest
from shared.models.analytics import CleanupResult, QueryCacheStats, UsageAnalytics
from shared.models.knowledge import KnowledgeBaseStats

router = APIRouter(prefix="/analytics", tags=["analytics"], dependencies=[Depends(verify_api_key)])


@router.get("/stats")
async def knowledge_base_stats(request: Request, owner_id: str) -> KnowledgeBaseStats:
    return await request.app.state.ingestion_service.get_knowledge_base_stats(owner_id)


@router.get("/usage")
async def usage_analytics(
    request: Request,
    owner_id: str,
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(100, ge=1, le=10000),
) -> UsageAnalytics:
    return await request.app.state.usage_recorder.get_usage_analytics(owner_id, days=days, limit=limit)


@router.get("/cache")
async def query_cache_stats(request: Request) -> QueryCacheStats:
    """Hit and miss counters of the query cache since process start."""
    return request.app.state.query_cache.get_stats()


@router.post("/cleanup")
async def cleanup(request: Request, body: CleanupRequest | None = None) -> CleanupResult:
    """Purge expired query cache entries and old usage logs.

    Args:
        request (Request): FastAPI request (provides the services on app.state).
        body (CleanupRequest | None): Optional retention override in days.

    Returns:
        CleanupResult: Number of removed records per kind.
    """
    days_to_keep = body.days_to_keep if body else None
    deleted_cache = await request.app.state.query_cache.cleanup_expired()
    deleted_logs = await request.app.state.ingestion_service.cleanup_old_usage_logs(days_to_keep)
    return CleanupResult(deleted_usage_logs=deleted_logs, deleted_cache_entries=deleted_cache)
