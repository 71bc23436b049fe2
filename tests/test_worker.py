"""Tests for the dunning worker tasks and cron registration."""

import uuid
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from pydantic import ValidationError as PydanticValidationError

from dunning.core.config import Settings
from dunning.models.shared import utc_now
from dunning.services.dunning_orchestrator import TickReport
from dunning.worker import (
    WorkerSettings,
    process_due_sequence_task,
    run_dunning_tick_task,
    tick_minutes,
)
from tests.conftest import FakeGateway, FakeNotifier, create_sequence


def _report(**counts) -> TickReport:
    report = TickReport(started_at=utc_now())
    for key, value in counts.items():
        setattr(report, key, value)
    return report


class TestTickMinutes:
    def test_default_interval(self):
        assert tick_minutes(15) == {0, 15, 30, 45}

    def test_every_minute(self):
        assert tick_minutes(1) == set(range(60))

    @pytest.mark.parametrize("interval", [0, -5, 7, 45, 90])
    def test_interval_must_divide_the_hour(self, interval):
        with pytest.raises(ValueError, match="divisor of 60"):
            tick_minutes(interval)

    def test_hourly(self):
        assert tick_minutes(60) == {0}

    def test_settings_reject_uneven_interval(self):
        with pytest.raises(PydanticValidationError, match="divisor of 60"):
            Settings(DUNNING_TICK_INTERVAL_MINUTES=7)
        assert Settings(DUNNING_TICK_INTERVAL_MINUTES=20).DUNNING_TICK_INTERVAL_MINUTES == 20


class TestRunDunningTickTask:
    @pytest.mark.asyncio
    async def test_returns_summary(self):
        mock_orchestrator = MagicMock()
        mock_orchestrator.tick.return_value = _report(due=3, recovered=1, failed=2, notifications_sent=2)

        with patch("dunning.worker.DunningOrchestrator", return_value=mock_orchestrator):
            result = await run_dunning_tick_task({})

        mock_orchestrator.tick.assert_called_once_with()
        assert result["due"] == 3
        assert result["recovered"] == 1
        assert result["failed"] == 2
        assert result["notifications_sent"] == 2
        assert result["errors"] == 0

    @pytest.mark.asyncio
    async def test_idle_tick(self):
        mock_orchestrator = MagicMock()
        mock_orchestrator.tick.return_value = _report()

        with patch("dunning.worker.DunningOrchestrator", return_value=mock_orchestrator):
            result = await run_dunning_tick_task({})

        assert result["due"] == 0

    @pytest.mark.asyncio
    async def test_runs_against_database(self, db_session):
        sequence = create_sequence(db_session, now=utc_now() - timedelta(days=2))
        gateway = FakeGateway()

        with (
            patch("dunning.services.dunning_orchestrator.get_payment_gateway", return_value=gateway),
            patch(
                "dunning.services.dunning_orchestrator.get_notification_sender",
                return_value=FakeNotifier(),
            ),
            patch("dunning.services.dunning_orchestrator.settings.DUNNING_TICK_MAX_WORKERS", 1),
        ):
            result = await run_dunning_tick_task({})

        assert result["due"] == 1
        assert result["failed"] == 1
        assert gateway.calls == [(sequence.invoice_id, f"{sequence.id}:1")]


class TestProcessDueSequenceTask:
    @pytest.mark.asyncio
    async def test_runs_single_sequence(self):
        sequence_id = uuid.uuid4()
        mock_orchestrator = MagicMock()
        mock_orchestrator.run.return_value = _report(due=1, recovered=1)

        with patch("dunning.worker.DunningOrchestrator", return_value=mock_orchestrator) as cls:
            result = await process_due_sequence_task({}, str(sequence_id))

        cls.assert_called_once_with(max_workers=1)
        mock_orchestrator.run.assert_called_once_with([sequence_id])
        assert result["recovered"] == 1


class TestWorkerSettings:
    def test_functions_registered(self):
        names = [f.__name__ for f in WorkerSettings.functions]
        assert names == ["run_dunning_tick_task", "process_due_sequence_task"]

    def test_tick_cron_job(self):
        [job] = WorkerSettings.cron_jobs
        assert job.coroutine.__name__ == "run_dunning_tick_task"
        assert job.minute == {0, 15, 30, 45}
        assert job.unique is True
