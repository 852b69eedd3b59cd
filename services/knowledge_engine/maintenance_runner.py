"""Maintenance runner entry point.

Purges expired query cache entries and usage logs older than
USAGE_RETENTION_DAYS. Meant to be run periodically (cron, k8s CronJob).

Usage:
    python -m services.knowledge_engine.maintenance_runner
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta

from services.knowledge_engine.QueryCache import QueryCache
from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.clients.store.StoreClientManager import StoreClientManager
from shared.errors.engine_errors import KnowledgeEngineError
from shared.helper.HelperConfig import HelperConfig
from shared.logging.logging_setup import setup_logging
from shared.models.analytics import CleanupResult
from shared.models.knowledge import utc_now


async def run_maintenance(
    helper_config: HelperConfig,
    store_client: StoreClientInterface,
    query_cache: QueryCache,
    clock: Callable[[], datetime] = utc_now,
) -> CleanupResult:
    """Run one cleanup pass against an already booted store."""
    retention_days = int(helper_config.get_number_val("USAGE_RETENTION_DAYS", default=90))
    deleted_cache = await query_cache.cleanup_expired()
    deleted_logs = await store_client.do_delete_usage_logs_before(clock() - timedelta(days=retention_days))
    return CleanupResult(deleted_usage_logs=deleted_logs, deleted_cache_entries=deleted_cache)


async def main() -> None:
    """Run the maintenance pass."""
    logger = setup_logging()
    config = HelperConfig(logger=logger)
    store_client = StoreClientManager(helper_config=config).get_client()

    try:
        try:
            await store_client.boot()
            await store_client.do_healthcheck()
            await store_client.do_prepare()
        except KnowledgeEngineError as e:
            logger.error("Error booting store client %s: %s. Aborting.", store_client.get_engine_name(), e)
            return

        result = await run_maintenance(config, store_client, QueryCache(helper_config=config, store_client=store_client))
        logger.info(
            "Maintenance complete: %d expired cache entries, %d old usage logs removed.",
            result.deleted_cache_entries, result.deleted_usage_logs,
        )
    finally:
        await store_client.close()


if __name__ == "__main__":
    asyncio.run(main())
