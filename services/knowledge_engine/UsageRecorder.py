"""Usage log recording and aggregation."""

from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta

from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.errors.engine_errors import InvalidInputError
from shared.helper.HelperConfig import HelperConfig
from shared.models.analytics import DailyUsage, RecentQuery, UsageAnalytics
from shared.models.knowledge import UsageFeedback, UsageLogEntry, utc_now

RECENT_QUERY_COUNT = 10


def _avg(values: list[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


class UsageRecorder:
    def __init__(
        self,
        helper_config: HelperConfig,
        store_client: StoreClientInterface,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._store = store_client
        self._clock = clock

    ##########################################
    ############### RECORDING ################
    ##########################################

    async def record(self, entry: UsageLogEntry) -> None:
        await self._store.do_insert_usage_log(entry)

    async def record_feedback(self, usage_id: str, owner_id: str, rating: int, comment: str | None = None) -> UsageFeedback:
        """Attach a 1-5 satisfaction rating to a past retrieval.

        Raises:
            InvalidInputError: If the rating is out of range or the usage event is unknown to the owner.
        """
        if not 1 <= rating <= 5:
            raise InvalidInputError("Rating must be between 1 and 5.")
        entry = await self._store.do_get_usage_log(usage_id)
        if entry is None or entry.owner_id != owner_id:
            raise InvalidInputError(f"Unknown usage id '{usage_id}'.")
        feedback = UsageFeedback(usage_id=usage_id, owner_id=owner_id, rating=rating, comment=comment, created_at=self._clock())
        await self._store.do_insert_feedback(feedback)
        return feedback

    ##########################################
    ############### AGGREGATION ##############
    ##########################################

    async def get_usage_analytics(self, owner_id: str, days: int = 30, limit: int = 100) -> UsageAnalytics:
        """Aggregate the owner's newest ``limit`` usage logs of the last ``days`` days."""
        if days <= 0 or limit <= 0:
            raise InvalidInputError("days and limit must be positive.")
        since = self._clock() - timedelta(days=days)
        logs = (await self._store.do_list_usage_logs(owner_id, since=since))[:limit]
        feedback = await self._store.do_list_feedback(owner_id, since=since)

        ratings = [f.rating for f in feedback] + [e.user_satisfaction for e in logs if e.user_satisfaction is not None]
        if not logs:
            return UsageAnalytics(
                days=days,
                avg_satisfaction=_avg(ratings) if ratings else None,
                feedback_count=len(feedback),
            )

        cache_hits = sum(1 for e in logs if e.cache_hit)
        daily = Counter(e.created_at.date().isoformat() for e in logs)
        return UsageAnalytics(
            days=days,
            total_queries=len(logs),
            cache_hits=cache_hits,
            cache_hit_rate=round(cache_hits / len(logs), 4),
            avg_response_time_ms=_avg([e.response_time_ms for e in logs]),
            avg_top_similarity=_avg([e.top_similarity for e in logs if e.top_similarity is not None]),
            avg_results_count=_avg([e.results_count for e in logs]),
            query_types=dict(Counter(e.query_type.value for e in logs)),
            daily_usage=[DailyUsage(date=date, count=count) for date, count in sorted(daily.items())],
            recent_queries=[
                RecentQuery(
                    id=e.id,
                    query=e.query,
                    query_type=e.query_type.value,
                    results_count=e.results_count,
                    top_similarity=e.top_similarity,
                    response_time_ms=e.response_time_ms,
                    cache_hit=e.cache_hit,
                    created_at=e.created_at,
                )
                for e in logs[:RECENT_QUERY_COUNT]
            ],
            avg_satisfaction=_avg(ratings) if ratings else None,
            feedback_count=len(feedback),
        )
