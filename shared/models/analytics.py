"""Pydantic models for usage analytics and query cache statistics."""

from datetime import datetime

from pydantic import BaseModel


class DailyUsage(BaseModel):
    date: str
    count: int


class RecentQuery(BaseModel):
    id: str
    query: str
    query_type: str
    results_count: int
    top_similarity: float | None = None
    response_time_ms: int
    cache_hit: bool
    created_at: datetime


class UsageAnalytics(BaseModel):
    """Aggregate over an owner's usage logs in a trailing window."""

    days: int
    total_queries: int = 0
    cache_hits: int = 0
    cache_hit_rate: float = 0.0
    avg_response_time_ms: float = 0.0
    avg_top_similarity: float = 0.0
    avg_results_count: float = 0.0
    query_types: dict[str, int] = {}
    daily_usage: list[DailyUsage] = []
    recent_queries: list[RecentQuery] = []
    avg_satisfaction: float | None = None
    feedback_count: int = 0


class QueryCacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    writes: int = 0
    errors: int = 0
    hit_rate: float = 0.0


class CleanupResult(BaseModel):
    deleted_usage_logs: int = 0
    deleted_cache_entries: int = 0
