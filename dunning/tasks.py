"""Enqueue helpers for the dunning arq worker."""

from typing import Any

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.jobs import Job

from dunning.core.config import settings

redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)


async def get_redis_pool() -> ArqRedis:
    return await create_pool(redis_settings)


async def enqueue_task(task_name: str, *args: Any, **kwargs: Any) -> Job:
    """Put ``task_name`` on the worker queue; the pool is closed afterwards."""
    pool = await get_redis_pool()
    try:
        return await pool.enqueue_job(task_name, *args, **kwargs)  # type: ignore[return-value]
    finally:
        await pool.close()


async def enqueue_dunning_tick() -> Job:
    """Run an orchestrator tick now instead of waiting for the cron."""
    return await enqueue_task("run_dunning_tick_task")


async def enqueue_due_sequence(sequence_id: str) -> Job:
    """Process a single sequence on the worker, e.g. right after it is resumed."""
    return await enqueue_task("process_due_sequence_task", sequence_id)
