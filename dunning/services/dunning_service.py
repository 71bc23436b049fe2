"""Dunning service: operator operations and per-sequence retry processing."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from dunning.core.config import settings
from dunning.core.errors import (
    ConcurrentModification,
    GatewayError,
    InvalidTransition,
    NotFound,
    TooEarlyForRetry,
    ValidationError,
)
from dunning.models.dunning_attempt import AttemptOutcome, AttemptTrigger
from dunning.models.dunning_sequence import (
    OPEN_STATUSES,
    DunningSequence,
    DunningStatus,
    NotificationStepStatus,
)
from dunning.models.shared import utc_now
from dunning.repositories.dunning_retry_policy_repository import DunningRetryPolicyRepository
from dunning.repositories.dunning_sequence_repository import DunningSequenceRepository
from dunning.schemas.dunning_sequence import DunningSequenceCreate, TimelineEvent
from dunning.services.csm_assignment import CsmAssignerBase, get_csm_assigner
from dunning.services.dunning_state_machine import (
    SYSTEM_AUTHOR,
    DunningEvent,
    DunningStateMachine,
    Transition,
    charge_idempotency_key,
    open_sequence,
)
from dunning.services.notification_sender import NotificationSenderBase, get_notification_sender
from dunning.services.payment_gateway import ChargeResult, PaymentGatewayBase, get_payment_gateway
from dunning.services.retry_scheduler import RetryScheduler

logger = logging.getLogger(__name__)


@dataclass
class RetryOutcome:
    """What happened when a due sequence was processed."""

    sequence: DunningSequence
    transition: Transition | None
    charge_result: ChargeResult | None = None
    skipped: bool = False


@dataclass
class NoticeOutcome:
    """What happened when a sequence's due notice was processed."""

    sequence: DunningSequence
    notice: dict[str, Any] | None
    delivered: bool = False


class DunningService:
    """Service for dunning sequence lifecycle operations."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGatewayBase | None = None,
        notifier: NotificationSenderBase | None = None,
        csm_assigner: CsmAssignerBase | None = None,
    ):
        self.db = db
        self.repo = DunningSequenceRepository(db)
        self.policy_repo = DunningRetryPolicyRepository(db)
        self.gateway = gateway or get_payment_gateway()
        self.notifier = notifier or get_notification_sender()
        self.csm_assigner = csm_assigner or get_csm_assigner()

    # --- Queries ---

    def get_sequence(self, sequence_id: UUID) -> DunningSequence:
        sequence = self.repo.get_by_id(sequence_id)
        if sequence is None:
            raise NotFound(sequence_id)
        return sequence

    def get_open_for_organization(self, organization_id: UUID) -> list[DunningSequence]:
        return self.repo.list_open_by_organization(organization_id)

    # --- Creation ---

    def open_sequence(
        self,
        data: DunningSequenceCreate,
        now: datetime | None = None,
    ) -> DunningSequence:
        """Open a sequence for an invoice whose recurring payment failed."""
        now = now or utc_now()
        for existing in self.repo.get_by_invoice(data.invoice_id):
            if DunningStatus(existing.status) in OPEN_STATUSES:
                raise ValidationError(
                    f"Invoice {data.invoice_id} already has an open dunning sequence",
                    invoice_id=data.invoice_id,
                    dunning_sequence_id=existing.id,
                )

        policy = self.policy_repo.resolve(data.organization_id, data.plan_code)
        sequence = open_sequence(
            organization_id=data.organization_id,
            invoice_id=data.invoice_id,
            subscription_id=data.subscription_id,
            amount_at_risk_cents=data.amount_cents,
            currency=data.currency,
            policy=policy,
            now=now,
            failure_reason=data.failure_reason,
        )
        self.repo.add(sequence)
        logger.info(
            "Opened dunning sequence %s for invoice %s (%s %s, %d attempts)",
            sequence.id,
            data.invoice_id,
            data.amount_cents,
            sequence.currency,
            policy.max_attempts,
        )
        return sequence

    # --- Mutations ---

    def _apply(
        self,
        sequence_id: UUID,
        expected_version: int | None,
        mutate: Callable[[DunningStateMachine], Transition],
    ) -> DunningSequence:
        sequence = self.get_sequence(sequence_id)
        loaded_version: int = sequence.version  # type: ignore[assignment]
        if expected_version is not None and expected_version != loaded_version:
            raise ConcurrentModification(expected_version, loaded_version)

        transition = mutate(DunningStateMachine(sequence))
        self.repo.save(sequence, loaded_version, transition.records)
        self._log_transition(sequence, transition)
        return sequence

    @staticmethod
    def _log_transition(sequence: DunningSequence, transition: Transition) -> None:
        logger.info(
            "Dunning sequence %s: %s (%s -> %s)",
            sequence.id,
            transition.event.value,
            transition.from_status.value,
            transition.to_status.value,
        )

    def _assign_csm_if_missing(self, sequence: DunningSequence) -> None:
        if sequence.assigned_csm_id is not None:
            return
        try:
            sequence.assigned_csm_id = self.csm_assigner.assign()  # type: ignore[assignment]
        except Exception:
            # The charge outcome must still be persisted; assignment is retried
            # by an operator escalating or assigning manually.
            logger.exception("CSM assignment for sequence %s failed", sequence.id)

    def _notify_recovered(self, sequence: DunningSequence) -> None:
        try:
            self.notifier.send_recovery_confirmation(sequence)
        except Exception:
            logger.exception("Recovery confirmation for sequence %s failed", sequence.id)

    def _charge_and_apply(
        self,
        sequence: DunningSequence,
        now: datetime,
        triggered_by: AttemptTrigger,
    ) -> RetryOutcome:
        machine = DunningStateMachine(sequence)
        if not machine.can_apply(DunningEvent.RETRY_PAYMENT):
            raise InvalidTransition(machine.status.value, DunningEvent.RETRY_PAYMENT.value)
        next_retry_at: datetime | None = sequence.next_retry_at  # type: ignore[assignment]
        if next_retry_at is not None and next_retry_at > now:
            raise TooEarlyForRetry(next_retry_at)

        loaded_version: int = sequence.version  # type: ignore[assignment]
        idempotency_key = charge_idempotency_key(sequence)
        response = self.gateway.charge(sequence.invoice_id, idempotency_key)  # type: ignore[arg-type]
        if response.result == ChargeResult.TRANSIENT_ERROR:
            raise GatewayError(
                f"Gateway could not charge invoice {sequence.invoice_id}; try again later",
                transient=True,
                dunning_sequence_id=sequence.id,
                idempotency_key=idempotency_key,
            )

        outcome = (
            AttemptOutcome.SUCCESS
            if response.result == ChargeResult.APPROVED
            else AttemptOutcome.FAILURE
        )
        transition = machine.retry_payment(
            outcome,
            now,
            failure_reason=response.decline_reason,
            idempotency_key=idempotency_key,
            triggered_by=triggered_by,
        )
        if transition.entered_escalation:
            self._assign_csm_if_missing(sequence)

        self.repo.save(sequence, loaded_version, transition.records)
        self._log_transition(sequence, transition)

        if outcome == AttemptOutcome.SUCCESS:
            self._notify_recovered(sequence)
        return RetryOutcome(sequence, transition, response.result)

    def retry_payment(
        self,
        sequence_id: UUID,
        expected_version: int | None = None,
        now: datetime | None = None,
    ) -> DunningSequence:
        """Operator-triggered retry of a due sequence."""
        now = now or utc_now()
        sequence = self.get_sequence(sequence_id)
        if expected_version is not None and expected_version != sequence.version:
            raise ConcurrentModification(expected_version, sequence.version)  # type: ignore[arg-type]
        return self._charge_and_apply(sequence, now, AttemptTrigger.OPERATOR).sequence

    def process_due_sequence(
        self,
        sequence_id: UUID,
        now: datetime | None = None,
    ) -> RetryOutcome:
        """Automated retry used by the orchestrator tick.

        The sequence is re-read first; if it stopped being due since the tick
        queried it, nothing is charged. A sequence that was paused in the
        meantime gets a ``skipped_paused`` attempt record.
        """
        now = now or utc_now()
        sequence = self.get_sequence(sequence_id)
        status = DunningStatus(sequence.status)

        if status == DunningStatus.PAUSED:
            loaded_version: int = sequence.version  # type: ignore[assignment]
            transition = DunningStateMachine(sequence).record_skipped_attempt(now)
            self.repo.save(sequence, loaded_version, transition.records)
            self._log_transition(sequence, transition)
            return RetryOutcome(sequence, transition, skipped=True)

        if status == DunningStatus.ESCALATED and not settings.DUNNING_RETRY_WHILE_ESCALATED:
            return RetryOutcome(sequence, None, skipped=True)

        next_retry_at: datetime | None = sequence.next_retry_at  # type: ignore[assignment]
        if (
            status not in (DunningStatus.ACTIVE, DunningStatus.ESCALATED)
            or next_retry_at is None
            or next_retry_at > now
        ):
            return RetryOutcome(sequence, None, skipped=True)

        return self._charge_and_apply(sequence, now, AttemptTrigger.ORCHESTRATOR)

    def _send_notice(self, sequence: DunningSequence, notice: dict[str, Any]) -> bool:
        try:
            self.notifier.send_dunning_notice(
                sequence, int(notice["day"]), bool(notice["include_payment_link"])
            )
        except Exception:
            logger.exception(
                "Day %s notice for sequence %s could not be delivered", notice["day"], sequence.id
            )
            return False
        return True

    def send_due_notification(
        self,
        sequence_id: UUID,
        now: datetime | None = None,
    ) -> NoticeOutcome:
        """Send the customer notice that is due, used by the orchestrator tick.

        The notice is recorded as sent before it is handed to the notifier, and
        delivery is fire-and-forget: a failed send is logged, never retried.
        Paused and closed sequences send nothing.
        """
        now = now or utc_now()
        sequence = self.get_sequence(sequence_id)
        machine = DunningStateMachine(sequence)
        if (
            not machine.can_apply(DunningEvent.RECORD_NOTIFICATION)
            or RetryScheduler.due_notification_index(sequence, now) is None
        ):
            return NoticeOutcome(sequence, None)

        loaded_version: int = sequence.version  # type: ignore[assignment]
        transition = machine.record_notification(now)
        self.repo.save(sequence, loaded_version, transition.records)
        self._log_transition(sequence, transition)
        notice: dict[str, Any] = transition.notice  # type: ignore[assignment]
        return NoticeOutcome(sequence, notice, delivered=self._send_notice(sequence, notice))

    def send_payment_link(self, sequence_id: UUID) -> DunningSequence:
        """Ask the notification service to send the customer a payment link."""
        sequence = self.get_sequence(sequence_id)
        status = DunningStatus(sequence.status)
        if status not in OPEN_STATUSES:
            raise InvalidTransition(status.value, "send_payment_link")
        self.notifier.send_payment_link(sequence)
        logger.info("Payment link requested for dunning sequence %s", sequence.id)
        return sequence

    def escalate_to_csm(
        self,
        sequence_id: UUID,
        csm_id: UUID | None = None,
        notes: str | None = None,
        expected_version: int | None = None,
        author: str = SYSTEM_AUTHOR,
        now: datetime | None = None,
    ) -> DunningSequence:
        now = now or utc_now()
        sequence = self.get_sequence(sequence_id)
        machine = DunningStateMachine(sequence)
        if not machine.can_apply(DunningEvent.ESCALATE_TO_CSM):
            raise InvalidTransition(machine.status.value, DunningEvent.ESCALATE_TO_CSM.value)
        if expected_version is not None and expected_version != sequence.version:
            raise ConcurrentModification(expected_version, sequence.version)  # type: ignore[arg-type]
        chosen = self.csm_assigner.assign(csm_id)
        return self._apply(
            sequence_id,
            expected_version,
            lambda m: m.escalate_to_csm(chosen, notes, now, author=author),
        )

    def assign_csm(
        self,
        sequence_id: UUID,
        csm_id: UUID,
        expected_version: int | None = None,
        now: datetime | None = None,
    ) -> DunningSequence:
        now = now or utc_now()
        return self._apply(sequence_id, expected_version, lambda m: m.assign_csm(csm_id, now))

    def pause(
        self,
        sequence_id: UUID,
        reason: str | None = None,
        expected_version: int | None = None,
        now: datetime | None = None,
    ) -> DunningSequence:
        now = now or utc_now()
        return self._apply(sequence_id, expected_version, lambda m: m.pause(reason, now))

    def resume(
        self,
        sequence_id: UUID,
        expected_version: int | None = None,
        now: datetime | None = None,
    ) -> DunningSequence:
        now = now or utc_now()
        return self._apply(sequence_id, expected_version, lambda m: m.resume(now))

    def cancel(
        self,
        sequence_id: UUID,
        reason: str | None = None,
        expected_version: int | None = None,
        now: datetime | None = None,
    ) -> DunningSequence:
        now = now or utc_now()
        return self._apply(sequence_id, expected_version, lambda m: m.cancel(reason, now))

    def mark_recovered(
        self,
        sequence_id: UUID,
        notes: str | None = None,
        method: str = "manual_payment",
        expected_version: int | None = None,
        author: str = SYSTEM_AUTHOR,
        now: datetime | None = None,
    ) -> DunningSequence:
        now = now or utc_now()
        return self._apply(
            sequence_id,
            expected_version,
            lambda m: m.mark_recovered(notes, now, method=method, author=author),
        )

    def add_note(
        self,
        sequence_id: UUID,
        text: str,
        author: str = SYSTEM_AUTHOR,
        expected_version: int | None = None,
        now: datetime | None = None,
    ) -> DunningSequence:
        now = now or utc_now()
        return self._apply(sequence_id, expected_version, lambda m: m.add_note(text, author, now))

    # --- Timeline ---

    def timeline(self, sequence_id: UUID) -> list[TimelineEvent]:
        """Chronological events for a sequence, rebuilt from its stored history."""
        sequence = self.get_sequence(sequence_id)
        events: list[TimelineEvent] = [
            TimelineEvent(
                event_type="sequence_opened",
                timestamp=sequence.created_at,  # type: ignore[arg-type]
                description=(
                    f"Dunning opened for {sequence.amount_at_risk_cents} {sequence.currency}"
                    + (f": {sequence.failure_reason}" if sequence.failure_reason else "")
                ),
            )
        ]

        for attempt in self.repo.get_attempts(sequence_id):
            description = f"Retry attempt #{attempt.attempt_number}: {attempt.outcome}"
            if attempt.failure_reason:
                description += f" ({attempt.failure_reason})"
            events.append(
                TimelineEvent(
                    event_type=f"retry_{attempt.outcome}",
                    timestamp=attempt.attempted_at,  # type: ignore[arg-type]
                    description=description,
                    attempt_number=attempt.attempt_number,  # type: ignore[arg-type]
                )
            )

        for note in self.repo.get_notes(sequence_id):
            events.append(
                TimelineEvent(
                    event_type="note_added",
                    timestamp=note.created_at,  # type: ignore[arg-type]
                    description=f"{note.author}: {note.text}",
                )
            )

        for step in sequence.notification_steps or ():
            if step["status"] == NotificationStepStatus.SENT.value and step["sent_at"]:
                events.append(
                    TimelineEvent(
                        event_type="notice_sent",
                        timestamp=datetime.fromisoformat(step["sent_at"]),
                        description=f"Day {step['day']} notice sent"
                        + (" with payment link" if step["include_payment_link"] else ""),
                    )
                )

        milestones = [
            ("escalated", sequence.escalated_at, "Escalated to customer success"),
            ("paused", sequence.paused_at, f"Paused: {sequence.pause_reason or 'no reason given'}"),
            ("recovered", sequence.recovered_at, f"Payment recovered via {sequence.recovery_method}"),
            ("cancelled", sequence.cancelled_at, f"Cancelled: {sequence.cancel_reason or 'no reason given'}"),
            ("exhausted", sequence.exhausted_at, "All retry attempts used"),
        ]
        for event_type, timestamp, description in milestones:
            if timestamp is not None:
                events.append(
                    TimelineEvent(
                        event_type=event_type,
                        timestamp=timestamp,  # type: ignore[arg-type]
                        description=description,
                    )
                )

        events.sort(key=lambda e: e.timestamp)
        return events
