"""Explicit state machine for dunning sequences.

Each event has a fixed set of source states (``ALLOWED_SOURCE_STATES``).
Applying an event from any other state raises ``InvalidTransition``; nothing is
ever a silent no-op. Events mutate the ORM object in place and return a
``Transition`` carrying any new child rows (attempt records, notes) for the
repository to persist alongside the sequence.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from dunning.core.errors import InvalidTransition, TooEarlyForRetry
from dunning.models.dunning_attempt import AttemptOutcome, AttemptTrigger, DunningAttempt
from dunning.models.dunning_note import DunningNote
from dunning.models.dunning_sequence import (
    DunningSequence,
    DunningStatus,
    NotificationStepStatus,
)
from dunning.models.shared import generate_uuid
from dunning.services.retry_scheduler import RetryPolicy, RetryScheduler

SYSTEM_AUTHOR = "system"


class DunningEvent(str, Enum):
    RETRY_PAYMENT = "retry_payment"
    PAUSE = "pause"
    RESUME = "resume"
    ESCALATE_TO_CSM = "escalate_to_csm"
    ASSIGN_CSM = "assign_csm"
    CANCEL = "cancel"
    MARK_RECOVERED = "mark_recovered"
    ADD_NOTE = "add_note"
    RECORD_SKIPPED_ATTEMPT = "record_skipped_attempt"
    RECORD_NOTIFICATION = "record_notification"


_NON_TERMINAL = frozenset({DunningStatus.ACTIVE, DunningStatus.PAUSED, DunningStatus.ESCALATED})

ALLOWED_SOURCE_STATES: dict[DunningEvent, frozenset[DunningStatus]] = {
    DunningEvent.RETRY_PAYMENT: frozenset({DunningStatus.ACTIVE, DunningStatus.ESCALATED}),
    DunningEvent.PAUSE: frozenset({DunningStatus.ACTIVE, DunningStatus.ESCALATED}),
    DunningEvent.RESUME: frozenset({DunningStatus.PAUSED}),
    DunningEvent.ESCALATE_TO_CSM: frozenset({DunningStatus.ACTIVE}),
    DunningEvent.ASSIGN_CSM: _NON_TERMINAL,
    DunningEvent.CANCEL: _NON_TERMINAL,
    DunningEvent.MARK_RECOVERED: _NON_TERMINAL,
    DunningEvent.ADD_NOTE: frozenset(DunningStatus),
    DunningEvent.RECORD_SKIPPED_ATTEMPT: frozenset({DunningStatus.PAUSED}),
    DunningEvent.RECORD_NOTIFICATION: frozenset({DunningStatus.ACTIVE, DunningStatus.ESCALATED}),
}


@dataclass
class Transition:
    """Result of applying an event to a sequence."""

    event: DunningEvent
    from_status: DunningStatus
    to_status: DunningStatus
    records: list[Any] = field(default_factory=list)
    notice: dict[str, Any] | None = None

    @property
    def entered_escalation(self) -> bool:
        return (
            self.to_status == DunningStatus.ESCALATED
            and self.from_status != DunningStatus.ESCALATED
        )

    @property
    def attempt(self) -> DunningAttempt | None:
        for record in self.records:
            if isinstance(record, DunningAttempt):
                return record
        return None


def open_sequence(
    *,
    organization_id: UUID,
    invoice_id: UUID,
    subscription_id: UUID,
    amount_at_risk_cents: Decimal,
    currency: str,
    policy: RetryPolicy,
    now: datetime,
    failure_reason: str | None = None,
) -> DunningSequence:
    """Build a new ACTIVE sequence with its first retry and notice scheduled."""
    scheduler = RetryScheduler(policy)
    sequence = DunningSequence(
        id=generate_uuid(),
        organization_id=organization_id,
        invoice_id=invoice_id,
        subscription_id=subscription_id,
        status=DunningStatus.ACTIVE.value,
        attempts_made=0,
        max_attempts=policy.max_attempts,
        consecutive_failures=0,
        retry_offsets_days=list(policy.offsets_days),
        escalation_threshold=policy.escalation_threshold,
        amount_at_risk_cents=amount_at_risk_cents,
        currency=currency.upper(),
        schedule_anchor_at=now,
        next_retry_at=scheduler.first_retry_at(now),
        notification_steps=[
            {
                "day": step.day,
                "include_payment_link": step.include_payment_link,
                "status": NotificationStepStatus.PENDING.value,
                "sent_at": None,
            }
            for step in policy.notification_steps
        ],
        failure_reason=failure_reason,
        notes_count=0,
        created_at=now,
        updated_at=now,
    )
    sequence.next_notification_at = RetryScheduler.next_notification_at(sequence)  # type: ignore[assignment]
    return sequence


def charge_idempotency_key(sequence: DunningSequence) -> str:
    """Gateway idempotency key for the sequence's next attempt."""
    return f"{sequence.id}:{int(sequence.attempts_made) + 1}"


class DunningStateMachine:
    """Applies dunning events to a single sequence."""

    def __init__(self, sequence: DunningSequence):
        self.sequence = sequence

    @property
    def status(self) -> DunningStatus:
        return DunningStatus(self.sequence.status)

    def can_apply(self, event: DunningEvent) -> bool:
        return self.status in ALLOWED_SOURCE_STATES[event]

    def _require(self, event: DunningEvent) -> DunningStatus:
        current = self.status
        if current not in ALLOWED_SOURCE_STATES[event]:
            raise InvalidTransition(current.value, event.value)
        return current

    def _set_status(self, status: DunningStatus, now: datetime) -> None:
        self.sequence.status = status.value  # type: ignore[assignment]
        self.sequence.updated_at = now  # type: ignore[assignment]

    def _new_note(self, text: str, author: str, now: datetime) -> DunningNote:
        position = int(self.sequence.notes_count or 0)
        self.sequence.notes_count = position + 1  # type: ignore[assignment]
        return DunningNote(
            id=generate_uuid(),
            dunning_sequence_id=self.sequence.id,
            position=position,
            author=author,
            text=text,
            created_at=now,
        )

    def _close_schedule(self) -> None:
        self.sequence.next_retry_at = None  # type: ignore[assignment]
        self.sequence.next_notification_at = None  # type: ignore[assignment]

    def _clear_pause_snapshot(self) -> None:
        self.sequence.paused_at = None  # type: ignore[assignment]
        self.sequence.paused_remaining_us = None  # type: ignore[assignment]
        self.sequence.paused_from_status = None  # type: ignore[assignment]

    # --- Automated recovery ---

    def retry_payment(
        self,
        outcome: AttemptOutcome,
        now: datetime,
        *,
        failure_reason: str | None = None,
        idempotency_key: str | None = None,
        triggered_by: AttemptTrigger = AttemptTrigger.ORCHESTRATOR,
    ) -> Transition:
        """Record the outcome of a charge attempt.

        SUCCESS recovers the sequence. FAILURE schedules the next retry,
        escalates once the consecutive-failure threshold is reached, or
        exhausts the sequence when no attempts remain.
        """
        current = self._require(DunningEvent.RETRY_PAYMENT)
        if outcome not in (AttemptOutcome.SUCCESS, AttemptOutcome.FAILURE):
            raise ValueError(f"retry_payment does not accept outcome '{outcome.value}'")

        seq = self.sequence
        next_retry_at: datetime | None = seq.next_retry_at  # type: ignore[assignment]
        if next_retry_at is not None and next_retry_at > now:
            raise TooEarlyForRetry(next_retry_at)

        attempt_number = int(seq.attempts_made) + 1
        seq.attempts_made = attempt_number  # type: ignore[assignment]
        seq.last_attempt_at = now  # type: ignore[assignment]
        attempt = DunningAttempt(
            id=generate_uuid(),
            dunning_sequence_id=seq.id,
            attempt_number=attempt_number,
            attempted_at=now,
            outcome=outcome.value,
            failure_reason=failure_reason if outcome == AttemptOutcome.FAILURE else None,
            idempotency_key=idempotency_key,
            triggered_by=triggered_by.value,
        )

        if outcome == AttemptOutcome.SUCCESS:
            seq.consecutive_failures = 0  # type: ignore[assignment]
            self._close_schedule()
            seq.recovered_at = now  # type: ignore[assignment]
            seq.recovery_method = (  # type: ignore[assignment]
                "automatic_retry" if triggered_by == AttemptTrigger.ORCHESTRATOR else "manual_retry"
            )
            self._set_status(DunningStatus.RECOVERED, now)
            return Transition(DunningEvent.RETRY_PAYMENT, current, DunningStatus.RECOVERED, [attempt])

        seq.consecutive_failures = int(seq.consecutive_failures or 0) + 1  # type: ignore[assignment]
        seq.last_failure_reason = failure_reason  # type: ignore[assignment]

        if attempt_number >= int(seq.max_attempts):
            self._close_schedule()
            seq.exhausted_at = now  # type: ignore[assignment]
            self._set_status(DunningStatus.EXHAUSTED, now)
            return Transition(DunningEvent.RETRY_PAYMENT, current, DunningStatus.EXHAUSTED, [attempt])

        scheduler = RetryScheduler.for_sequence(seq)
        seq.next_retry_at = scheduler.next_retry_at(  # type: ignore[assignment]
            seq.schedule_anchor_at, attempt_number  # type: ignore[arg-type]
        )
        target = current
        if current == DunningStatus.ACTIVE and scheduler.should_escalate(
            int(seq.consecutive_failures)
        ):
            target = DunningStatus.ESCALATED
            if seq.escalated_at is None:
                seq.escalated_at = now  # type: ignore[assignment]
        self._set_status(target, now)
        return Transition(DunningEvent.RETRY_PAYMENT, current, target, [attempt])

    def record_skipped_attempt(self, now: datetime) -> Transition:
        """Note that a due retry was skipped because the sequence is paused."""
        current = self._require(DunningEvent.RECORD_SKIPPED_ATTEMPT)
        seq = self.sequence
        attempt = DunningAttempt(
            id=generate_uuid(),
            dunning_sequence_id=seq.id,
            attempt_number=min(int(seq.attempts_made) + 1, int(seq.max_attempts)),
            attempted_at=now,
            outcome=AttemptOutcome.SKIPPED_PAUSED.value,
            triggered_by=AttemptTrigger.ORCHESTRATOR.value,
        )
        seq.updated_at = now  # type: ignore[assignment]
        return Transition(DunningEvent.RECORD_SKIPPED_ATTEMPT, current, current, [attempt])

    def record_notification(self, now: datetime) -> Transition:
        """Mark the notice due at ``now`` as sent.

        Earlier pending notices are marked skipped. The next pending notice,
        if any, becomes ``next_notification_at``.

        Raises:
            ValueError: if no notice is due at ``now``.
        """
        current = self._require(DunningEvent.RECORD_NOTIFICATION)
        seq = self.sequence
        index = RetryScheduler.due_notification_index(seq, now)
        if index is None:
            raise ValueError(f"No notice is due for sequence {seq.id}")

        steps = [dict(step) for step in seq.notification_steps or ()]
        for earlier in steps[:index]:
            if earlier["status"] == NotificationStepStatus.PENDING.value:
                earlier["status"] = NotificationStepStatus.SKIPPED.value
        steps[index]["status"] = NotificationStepStatus.SENT.value
        steps[index]["sent_at"] = now.isoformat()
        # JSON columns only detect reassignment
        seq.notification_steps = steps  # type: ignore[assignment]
        seq.next_notification_at = RetryScheduler.next_notification_at(seq)  # type: ignore[assignment]
        seq.updated_at = now  # type: ignore[assignment]
        return Transition(
            DunningEvent.RECORD_NOTIFICATION, current, current, notice=steps[index]
        )

    # --- Manual operations ---

    def pause(self, reason: str | None, now: datetime) -> Transition:
        current = self._require(DunningEvent.PAUSE)
        seq = self.sequence
        remaining = RetryScheduler.remaining_offset(seq, now)
        seq.paused_at = now  # type: ignore[assignment]
        seq.paused_remaining_us = remaining // timedelta(microseconds=1)  # type: ignore[assignment]
        seq.paused_from_status = current.value  # type: ignore[assignment]
        seq.pause_reason = reason  # type: ignore[assignment]
        self._close_schedule()
        self._set_status(DunningStatus.PAUSED, now)
        return Transition(DunningEvent.PAUSE, current, DunningStatus.PAUSED)

    def resume(self, now: datetime) -> Transition:
        current = self._require(DunningEvent.RESUME)
        seq = self.sequence
        target = DunningStatus(seq.paused_from_status or DunningStatus.ACTIVE.value)
        remaining = timedelta(microseconds=int(seq.paused_remaining_us or 0))
        paused_at: datetime = seq.paused_at or now  # type: ignore[assignment]
        paused_for = max(now - paused_at, timedelta(0))
        seq.schedule_anchor_at = seq.schedule_anchor_at + paused_for  # type: ignore[assignment]
        seq.next_retry_at = now + remaining  # type: ignore[assignment]
        seq.next_notification_at = RetryScheduler.next_notification_at(seq)  # type: ignore[assignment]
        seq.pause_reason = None  # type: ignore[assignment]
        self._clear_pause_snapshot()
        self._set_status(target, now)
        return Transition(DunningEvent.RESUME, current, target)

    def escalate_to_csm(
        self,
        csm_id: UUID,
        notes: str | None,
        now: datetime,
        author: str = SYSTEM_AUTHOR,
    ) -> Transition:
        current = self._require(DunningEvent.ESCALATE_TO_CSM)
        seq = self.sequence
        seq.assigned_csm_id = csm_id  # type: ignore[assignment]
        if seq.escalated_at is None:
            seq.escalated_at = now  # type: ignore[assignment]
        records: list[Any] = []
        if notes:
            records.append(self._new_note(notes, author, now))
        self._set_status(DunningStatus.ESCALATED, now)
        return Transition(DunningEvent.ESCALATE_TO_CSM, current, DunningStatus.ESCALATED, records)

    def assign_csm(self, csm_id: UUID, now: datetime) -> Transition:
        current = self._require(DunningEvent.ASSIGN_CSM)
        self.sequence.assigned_csm_id = csm_id  # type: ignore[assignment]
        self.sequence.updated_at = now  # type: ignore[assignment]
        return Transition(DunningEvent.ASSIGN_CSM, current, current)

    def cancel(self, reason: str | None, now: datetime) -> Transition:
        current = self._require(DunningEvent.CANCEL)
        seq = self.sequence
        seq.cancelled_at = now  # type: ignore[assignment]
        seq.cancel_reason = reason  # type: ignore[assignment]
        self._close_schedule()
        self._clear_pause_snapshot()
        self._set_status(DunningStatus.CANCELLED, now)
        return Transition(DunningEvent.CANCEL, current, DunningStatus.CANCELLED)

    def mark_recovered(
        self,
        notes: str | None,
        now: datetime,
        method: str = "manual_payment",
        author: str = SYSTEM_AUTHOR,
    ) -> Transition:
        current = self._require(DunningEvent.MARK_RECOVERED)
        seq = self.sequence
        seq.recovered_at = now  # type: ignore[assignment]
        seq.recovery_method = method  # type: ignore[assignment]
        self._close_schedule()
        self._clear_pause_snapshot()
        records: list[Any] = []
        if notes:
            records.append(self._new_note(notes, author, now))
        self._set_status(DunningStatus.RECOVERED, now)
        return Transition(DunningEvent.MARK_RECOVERED, current, DunningStatus.RECOVERED, records)

    def add_note(self, text: str, author: str, now: datetime) -> Transition:
        current = self._require(DunningEvent.ADD_NOTE)
        note = self._new_note(text, author, now)
        self.sequence.updated_at = now  # type: ignore[assignment]
        return Transition(DunningEvent.ADD_NOTE, current, current, [note])
