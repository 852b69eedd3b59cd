"""TTL cache of retrieval results keyed by (query, owner, options)."""

import hashlib
import json
import re
from collections.abc import Callable
from datetime import datetime, timedelta

from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.errors.engine_errors import StorageError
from shared.helper.HelperConfig import HelperConfig
from shared.models.analytics import QueryCacheStats
from shared.models.knowledge import SearchCacheEntry, utc_now
from shared.models.retrieval import RetrievalOptions

_WHITESPACE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    return _WHITESPACE.sub(" ", query.strip()).casefold()


def build_cache_key(query: str, owner_id: str, options: RetrievalOptions) -> str:
    """SHA-256 over the canonical JSON of the normalized query, the owner and every option."""
    canonical = json.dumps(
        {
            "query": normalize_query(query),
            "owner_id": owner_id,
            "options": options.model_dump(mode="json"),
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class QueryCache:
    def __init__(
        self,
        helper_config: HelperConfig,
        store_client: StoreClientInterface,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._store = store_client
        self._clock = clock
        self.ttl = timedelta(seconds=helper_config.get_number_val("QUERY_CACHE_TTL_SECONDS", default=300))
        self._stats = QueryCacheStats()

    ##########################################
    ################ CORE ####################
    ##########################################

    async def get(self, query: str, owner_id: str, options: RetrievalOptions) -> SearchCacheEntry | None:
        """Return the live entry for the key, or None. Expired entries count as misses.

        Raises:
            StorageError: If the store cannot be read.
        """
        key = build_cache_key(query, owner_id, options)
        try:
            entry = await self._store.do_get_search_cache(key)
        except StorageError:
            self._stats.errors += 1
            raise
        now = self._clock()
        if entry is None or entry.expires_at <= now:
            self._stats.misses += 1
            return None

        self._stats.hits += 1
        entry.hit_count += 1
        entry.last_accessed = now
        try:
            await self._store.do_put_search_cache(entry)
        except StorageError as exc:
            self._stats.errors += 1
            self.logging.warning("Failed to update cache hit count for key %s: %s", key[:12], exc)
        return entry

    async def put(self, query: str, owner_id: str, options: RetrievalOptions, result: dict) -> SearchCacheEntry:
        """Store a result under the key, replacing any previous entry.

        Raises:
            StorageError: If the store cannot be written.
        """
        now = self._clock()
        entry = SearchCacheEntry(
            cache_key=build_cache_key(query, owner_id, options),
            owner_id=owner_id,
            query=query,
            options=options.model_dump(mode="json"),
            result=result,
            created_at=now,
            last_accessed=now,
            expires_at=now + self.ttl,
        )
        try:
            await self._store.do_put_search_cache(entry)
        except StorageError:
            self._stats.errors += 1
            raise
        self._stats.writes += 1
        return entry

    ##########################################
    ############## MAINTENANCE ###############
    ##########################################

    async def cleanup_expired(self) -> int:
        deleted = await self._store.do_delete_search_cache_expired(self._clock())
        self.logging.info("Purged %d expired query cache entries", deleted)
        return deleted

    async def invalidate_owner(self, owner_id: str) -> int:
        deleted = await self._store.do_delete_search_cache_for_owner(owner_id)
        self.logging.debug("Invalidated %d query cache entries of owner %s", deleted, owner_id)
        return deleted

    def get_stats(self) -> QueryCacheStats:
        total = self._stats.hits + self._stats.misses
        hit_rate = self._stats.hits / total if total else 0.0
        return self._stats.model_copy(update={"hit_rate": round(hit_rate, 4)})
