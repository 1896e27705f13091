import asyncio
import logging
from typing import NoReturn

from aiohttp import web
import sentry_sdk

from edu.canvasmcp.bridge.app.config import (
    CredentialStoreAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    ResponseCacheAppKey,
    SettingsAppKey,
    VerificationCacheAppKey,
)

logger = logging.getLogger(__name__)


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Tick the health gauge every 30 seconds, releasing one unit of failure pressure each time.
    """

    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    while True:
        await health_gauge.tick()
        await asyncio.sleep(30)


async def cache_sweep_task(app: web.Application) -> NoReturn:
    """
    Drop expired entries from the API key verification cache and the Canvas response
    cache. Both caches also treat stale entries as misses on read, so the sweep only
    bounds memory.
    """
    logger.info("Starting cache sweep task")

    settings = app[SettingsAppKey]
    verification_cache = app[VerificationCacheAppKey]
    response_cache = app[ResponseCacheAppKey]
    metrics_client = app[MetricsClientAppKey]

    while True:
        try:
            await asyncio.sleep(settings.cache_sweep_interval)

            verifications_removed = verification_cache.sweep()
            responses_removed = response_cache.cleanup()

            if verifications_removed > 0 or responses_removed > 0:
                logger.debug(
                    "Swept %d cached verifications and %d cached Canvas responses",
                    verifications_removed,
                    responses_removed,
                )

            metrics_client.increment(
                "canvasmcp.task.cache_sweep.verifications_removed", verifications_removed
            )
            metrics_client.increment(
                "canvasmcp.task.cache_sweep.responses_removed", responses_removed
            )
            metrics_client.gauge("canvasmcp.cache.verification.size", len(verification_cache))
            metrics_client.gauge("canvasmcp.cache.response.size", len(response_cache))

        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Cache sweep task failed")
            await app[HealthGaugeAppKey].record_failure()


async def record_sweep_task(app: web.Application) -> NoReturn:
    """
    Background task that deletes expired records.

    Every ``sweep_interval`` seconds this removes expired browser sessions, authorization
    codes, access tokens and magic links, and usage log rows older than the retention
    period. Lookups already ignore expired rows; this keeps the tables from growing.
    """
    logger.info("Starting expired record sweep task")

    settings = app[SettingsAppKey]
    store = app[CredentialStoreAppKey]
    metrics_client = app[MetricsClientAppKey]

    while True:
        try:
            await asyncio.sleep(settings.sweep_interval)

            result = await store.sweep_expired()
            usage_logs_removed = await store.prune_usage_logs(
                settings.usage_log_retention_days
            )

            if result.total > 0 or usage_logs_removed > 0:
                logger.info(
                    "Removed %d sessions, %d authorization codes, %d access tokens, "
                    "%d magic links and %d usage log rows",
                    result.sessions,
                    result.authorization_codes,
                    result.access_tokens,
                    result.magic_links,
                    usage_logs_removed,
                )

            for record, count in (
                ("sessions", result.sessions),
                ("authorization_codes", result.authorization_codes),
                ("access_tokens", result.access_tokens),
                ("magic_links", result.magic_links),
                ("usage_logs", usage_logs_removed),
            ):
                metrics_client.increment(
                    "canvasmcp.task.record_sweep.removed", count, tag_dict={"record": record}
                )

        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Expired record sweep task failed")
            await app[HealthGaugeAppKey].record_failure()
