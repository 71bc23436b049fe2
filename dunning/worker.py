import asyncio
import logging
from typing import Any
from uuid import UUID

from arq import cron

from dunning.core.config import settings
from dunning.services.dunning_orchestrator import DunningOrchestrator, TickReport
from dunning.tasks import redis_settings

logger = logging.getLogger(__name__)


def tick_minutes(interval_minutes: int) -> set[int]:
    """Minutes of the hour at which the tick cron fires.

    The interval must divide 60 so the gap across the top of the hour matches
    every other gap.
    """
    if not 1 <= interval_minutes <= 60 or 60 % interval_minutes:
        raise ValueError(f"Tick interval must be a divisor of 60, got {interval_minutes}")
    return set(range(0, 60, interval_minutes))


def _summary(report: TickReport) -> dict[str, int]:
    return {
        "due": report.due,
        "recovered": report.recovered,
        "failed": report.failed,
        "escalated": report.escalated,
        "exhausted": report.exhausted,
        "skipped": report.skipped,
        "transient": report.transient,
        "conflicts": report.conflicts,
        "notifications_sent": report.notifications_sent,
        "notifications_failed": report.notifications_failed,
        "errors": len(report.errors),
    }


async def run_dunning_tick_task(ctx: dict[str, Any]) -> dict[str, int]:
    """Background task: retry every dunning sequence whose next retry is due.

    Runs every DUNNING_TICK_INTERVAL_MINUTES. Per-sequence failures are
    reported in the result and never fail the job.
    """
    orchestrator = DunningOrchestrator()
    # Gateway calls are blocking; keep them off the worker's event loop.
    report = await asyncio.to_thread(orchestrator.tick)
    if report.due > 0:
        logger.info(
            "Dunning tick processed %d due sequences (%d errors)",
            report.due,
            len(report.errors),
        )
    return _summary(report)


async def process_due_sequence_task(ctx: dict[str, Any], sequence_id: str) -> dict[str, int]:
    """Background task: process one sequence right away instead of waiting for the tick."""
    orchestrator = DunningOrchestrator(max_workers=1)
    report = await asyncio.to_thread(orchestrator.run, [UUID(sequence_id)])
    return _summary(report)


class WorkerSettings:
    functions = [
        run_dunning_tick_task,
        process_due_sequence_task,
    ]
    cron_jobs = [
        cron(
            run_dunning_tick_task,
            minute=tick_minutes(settings.DUNNING_TICK_INTERVAL_MINUTES),
            unique=True,
        ),
    ]
    redis_settings = redis_settings
