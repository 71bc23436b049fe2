"""Tick-driven coordinator for automated dunning retries and customer notices.

Each tick queries the sequences that are due, then processes them on a
bounded thread pool. Notices go out after the retries, so a sequence recovered
in the same tick is not reminded. Every sequence runs in its own session and transaction;
a failure on one sequence is logged and recorded in the tick report but never
stops the others.
"""

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from dunning.core.config import settings
from dunning.core.database import get_session_factory
from dunning.core.errors import ConcurrentModification, DunningError, GatewayError
from dunning.models.dunning_sequence import DunningStatus
from dunning.models.shared import utc_now
from dunning.repositories.dunning_sequence_repository import DunningSequenceRepository
from dunning.services.csm_assignment import CsmAssignerBase, get_csm_assigner
from dunning.services.dunning_service import DunningService, NoticeOutcome, RetryOutcome
from dunning.services.notification_sender import NotificationSenderBase, get_notification_sender
from dunning.services.payment_gateway import PaymentGatewayBase, get_payment_gateway

logger = logging.getLogger(__name__)


@dataclass
class SequenceError:
    """A per-sequence failure collected during a tick."""

    sequence_id: UUID
    kind: str
    message: str
    transient: bool = False


@dataclass
class TickReport:
    """Summary of a single orchestrator tick."""

    started_at: datetime
    finished_at: datetime | None = None
    due: int = 0
    recovered: int = 0
    failed: int = 0
    escalated: int = 0
    exhausted: int = 0
    skipped: int = 0
    transient: int = 0
    conflicts: int = 0
    notifications_due: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    errors: list[SequenceError] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.recovered + self.failed + self.exhausted

    def record(self, outcome: RetryOutcome) -> None:
        transition = outcome.transition
        if outcome.skipped or transition is None:
            self.skipped += 1
            return
        if transition.to_status == DunningStatus.RECOVERED:
            self.recovered += 1
        elif transition.to_status == DunningStatus.EXHAUSTED:
            self.exhausted += 1
        else:
            self.failed += 1
            if transition.entered_escalation:
                self.escalated += 1

    def record_notice(self, outcome: NoticeOutcome) -> None:
        if outcome.notice is None:
            return
        if outcome.delivered:
            self.notifications_sent += 1
        else:
            self.notifications_failed += 1

    def record_error(self, sequence_id: UUID, exc: Exception) -> None:
        if isinstance(exc, ConcurrentModification):
            self.conflicts += 1
        elif isinstance(exc, GatewayError) and exc.transient:
            self.transient += 1
        if isinstance(exc, DunningError):
            self.errors.append(
                SequenceError(
                    sequence_id=sequence_id,
                    kind=exc.kind,
                    message=exc.message,
                    transient=isinstance(exc, GatewayError) and exc.transient,
                )
            )
        else:
            self.errors.append(
                SequenceError(sequence_id=sequence_id, kind="unexpected_error", message=str(exc))
            )


class DunningOrchestrator:
    """Finds due sequences and drives their automated retries."""

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        gateway: PaymentGatewayBase | None = None,
        notifier: NotificationSenderBase | None = None,
        csm_assigner: CsmAssignerBase | None = None,
        max_workers: int | None = None,
        batch_size: int | None = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.gateway = gateway or get_payment_gateway()
        self.notifier = notifier or get_notification_sender()
        self.csm_assigner = csm_assigner or get_csm_assigner()
        self.max_workers = max_workers or settings.DUNNING_TICK_MAX_WORKERS
        self.batch_size = batch_size or settings.DUNNING_TICK_BATCH_SIZE

    def find_due(self, now: datetime) -> list[UUID]:
        db = self.session_factory()
        try:
            repo = DunningSequenceRepository(db)
            due = repo.list_due_for_retry(
                now,
                limit=self.batch_size,
                include_escalated=settings.DUNNING_RETRY_WHILE_ESCALATED,
            )
            return [UUID(str(sequence.id)) for sequence in due]
        finally:
            db.close()

    def process_one(self, sequence_id: UUID, now: datetime) -> RetryOutcome:
        """Process a single sequence in its own session."""
        db = self.session_factory()
        try:
            service = DunningService(
                db,
                gateway=self.gateway,
                notifier=self.notifier,
                csm_assigner=self.csm_assigner,
            )
            return service.process_due_sequence(sequence_id, now)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def find_due_notifications(self, now: datetime) -> list[UUID]:
        db = self.session_factory()
        try:
            repo = DunningSequenceRepository(db)
            due = repo.list_due_for_notification(now, limit=self.batch_size)
            return [UUID(str(sequence.id)) for sequence in due]
        finally:
            db.close()

    def notify_one(self, sequence_id: UUID, now: datetime) -> NoticeOutcome:
        """Send a single sequence's due notice in its own session."""
        db = self.session_factory()
        try:
            service = DunningService(
                db,
                gateway=self.gateway,
                notifier=self.notifier,
                csm_assigner=self.csm_assigner,
            )
            return service.send_due_notification(sequence_id, now)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def tick(self, now: datetime | None = None) -> TickReport:
        """Run one pass over every due sequence, then send the due notices."""
        now = now or utc_now()
        report = self.run(self.find_due(now), now)
        self.send_notices(self.find_due_notifications(now), now, report)
        return report

    def send_notices(
        self,
        sequence_ids: list[UUID],
        now: datetime,
        report: TickReport,
    ) -> TickReport:
        """Send the due notice of each sequence; failures are recorded in ``report``."""
        report.notifications_due = len(sequence_ids)
        if not sequence_ids:
            return report

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="dunning-notice"
        ) as pool:
            futures = {
                sequence_id: pool.submit(self.notify_one, sequence_id, now)
                for sequence_id in sequence_ids
            }
            for sequence_id, future in futures.items():
                try:
                    report.record_notice(future.result())
                except ConcurrentModification as exc:
                    logger.info(
                        "Sequence %s changed before its notice was recorded (%s)",
                        sequence_id,
                        exc.message,
                    )
                    report.record_error(sequence_id, exc)
                except DunningError as exc:
                    logger.warning(
                        "Notice for sequence %s could not be recorded: %s",
                        sequence_id,
                        exc.message,
                    )
                    report.record_error(sequence_id, exc)
                except Exception as exc:
                    logger.exception("Unexpected error sending notice for sequence %s", sequence_id)
                    report.record_error(sequence_id, exc)

        report.finished_at = utc_now()
        logger.info(
            "Dunning notices: %d due, %d sent, %d failed",
            report.notifications_due,
            report.notifications_sent,
            report.notifications_failed,
        )
        return report

    def run(self, sequence_ids: list[UUID], now: datetime | None = None) -> TickReport:
        """Process the given sequences concurrently and report the outcomes."""
        now = now or utc_now()
        report = TickReport(started_at=utc_now(), due=len(sequence_ids))
        if not sequence_ids:
            report.finished_at = utc_now()
            return report

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="dunning-tick"
        ) as pool:
            futures = {
                sequence_id: pool.submit(self.process_one, sequence_id, now)
                for sequence_id in sequence_ids
            }
            for sequence_id, future in futures.items():
                try:
                    report.record(future.result())
                except ConcurrentModification as exc:
                    logger.info(
                        "Sequence %s changed during the tick; retrying next tick (%s)",
                        sequence_id,
                        exc.message,
                    )
                    report.record_error(sequence_id, exc)
                except GatewayError as exc:
                    logger.warning("Gateway error for sequence %s: %s", sequence_id, exc.message)
                    report.record_error(sequence_id, exc)
                except DunningError as exc:
                    logger.warning(
                        "Sequence %s could not be processed: %s", sequence_id, exc.message
                    )
                    report.record_error(sequence_id, exc)
                except Exception as exc:
                    logger.exception("Unexpected error processing sequence %s", sequence_id)
                    report.record_error(sequence_id, exc)

        report.finished_at = utc_now()
        logger.info(
            "Dunning run: %d due, %d recovered, %d failed, %d escalated, %d exhausted, "
            "%d skipped, %d transient, %d conflicts, %d errors",
            report.due,
            report.recovered,
            report.failed,
            report.escalated,
            report.exhausted,
            report.skipped,
            report.transient,
            report.conflicts,
            len(report.errors),
        )
        return report
