"""arq worker for the reward engine.

Runs as a separate process: consumes the activity stream in a background
task and runs the hourly mission-expiry sweep as a cron job.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

import redis.asyncio as aioredis
from arq import cron
from arq.connections import RedisSettings

from reloop.config import get_settings
from reloop.database import close_db, create_tables, get_session_factory, init_db
from reloop.logging_config import setup_logging
from reloop.rewards.engine import RewardEngine
from reloop.rewards.notifications import RedisNotifier
from reloop.rewards.sql_ledger import SqlLedgerStore
from reloop.workers.activity_consumer import ActivityStreamConsumer

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize database, Redis, the engine and the stream consumer."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    await create_tables()

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    engine = RewardEngine.from_settings(
        SqlLedgerStore(get_session_factory()),
        settings,
        notifier=RedisNotifier(redis_client),
    )
    consumer = ActivityStreamConsumer(
        redis_client=redis_client,
        engine=engine,
        consumer_name=settings.activity_consumer_name,
        stream=settings.activity_stream,
        group=settings.activity_consumer_group,
        min_idle_ms=settings.activity_reclaim_idle_ms,
        max_deliveries=settings.activity_max_deliveries,
    )

    ctx["redis"] = redis_client
    ctx["engine"] = engine
    ctx["consumer"] = consumer
    ctx["consumer_task"] = asyncio.create_task(consumer.run())
    logger.info("Reward worker started (consumer=%s)", settings.activity_consumer_name)


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Stop the consumer and release connections."""
    consumer: ActivityStreamConsumer | None = ctx.get("consumer")
    if consumer:
        consumer.stop()

    task: asyncio.Task[None] | None = ctx.get("consumer_task")
    if task:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()

    await close_db()
    logger.info("Reward worker shut down")


async def sweep_missions(ctx: dict) -> int:  # type: ignore[type-arg]
    """Hourly task: expire ACTIVE missions whose end date has passed."""
    engine: RewardEngine = ctx["engine"]
    expired = await engine.sweep_expired_missions()
    if expired > 0:
        logger.info("Expired %d mission enrollments", expired)
    return expired


class WorkerSettings:
    """arq worker settings for the reward engine."""

    functions = [sweep_missions]
    cron_jobs = [
        cron(sweep_missions, minute=0, timeout=get_settings().sweep_job_timeout_seconds),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    max_jobs = 4
    allow_abort_jobs = True
