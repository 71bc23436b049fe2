"""Tests for DunningService operator operations and due-sequence processing."""

import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.orm import Session

from dunning.core.errors import (
    ConcurrentModification,
    GatewayError,
    InvalidTransition,
    NotFound,
    TooEarlyForRetry,
    ValidationError,
)
from dunning.models.dunning_attempt import AttemptOutcome, AttemptTrigger
from dunning.models.dunning_retry_policy import DunningRetryPolicy
from dunning.models.dunning_sequence import DunningStatus, NotificationStepStatus
from dunning.schemas.dunning_sequence import DunningSequenceCreate
from dunning.services.csm_assignment import RoundRobinCsmAssigner
from dunning.services.dunning_service import DunningService
from dunning.services.payment_gateway import ChargeResponse, ChargeResult
from dunning.services.retry_scheduler import NotificationStep
from tests.conftest import (
    CSM_ONE,
    CSM_TWO,
    DEFAULT_ORG_ID,
    T0,
    FakeGateway,
    FakeNotifier,
    create_sequence,
)

DAY = timedelta(days=1)


def _service(
    db: Session,
    gateway: FakeGateway | None = None,
    notifier: FakeNotifier | None = None,
    csm_assigner: RoundRobinCsmAssigner | None = None,
) -> DunningService:
    return DunningService(
        db,
        gateway=gateway or FakeGateway(),
        notifier=notifier or FakeNotifier(),
        csm_assigner=csm_assigner or RoundRobinCsmAssigner([CSM_ONE, CSM_TWO]),
    )


def _create_data(**overrides) -> DunningSequenceCreate:
    data = {
        "organization_id": DEFAULT_ORG_ID,
        "invoice_id": uuid.uuid4(),
        "subscription_id": uuid.uuid4(),
        "amount_cents": Decimal("500"),
        "currency": "sar",
        "failure_reason": "card_declined",
    }
    data.update(overrides)
    return DunningSequenceCreate(**data)


class TestOpenSequence:
    def test_uses_default_policy_from_settings(self, db_session: Session) -> None:
        sequence = _service(db_session).open_sequence(_create_data(), now=T0)
        assert sequence.status == DunningStatus.ACTIVE.value
        assert sequence.retry_offsets_days == [1, 3, 7, 14, 21]
        assert sequence.max_attempts == 5
        assert sequence.next_retry_at == T0 + DAY
        assert sequence.currency == "SAR"

    def test_plan_policy_overrides_org_default(self, db_session: Session) -> None:
        db_session.add_all(
            [
                DunningRetryPolicy(
                    organization_id=DEFAULT_ORG_ID,
                    name="Org default",
                    offsets_days=[2, 4],
                    escalation_threshold=1,
                ),
                DunningRetryPolicy(
                    organization_id=DEFAULT_ORG_ID,
                    plan_code="enterprise",
                    name="Enterprise",
                    offsets_days=[1, 5, 10],
                    escalation_threshold=3,
                ),
            ]
        )
        db_session.commit()
        service = _service(db_session)

        enterprise = service.open_sequence(_create_data(plan_code="enterprise"), now=T0)
        starter = service.open_sequence(_create_data(plan_code="starter"), now=T0)

        assert enterprise.retry_offsets_days == [1, 5, 10]
        assert enterprise.escalation_threshold == 3
        assert starter.retry_offsets_days == [2, 4]
        assert starter.next_retry_at == T0 + 2 * DAY

    def test_rejects_second_open_sequence_for_invoice(self, db_session: Session) -> None:
        service = _service(db_session)
        data = _create_data()
        service.open_sequence(data, now=T0)
        with pytest.raises(ValidationError):
            service.open_sequence(data, now=T0)

    def test_allows_new_sequence_after_previous_closed(self, db_session: Session) -> None:
        service = _service(db_session)
        data = _create_data()
        first = service.open_sequence(data, now=T0)
        service.cancel(first.id, now=T0)
        second = service.open_sequence(data, now=T0 + DAY)
        assert second.id != first.id


class TestRetryPayment:
    def test_declined_charge_records_failure(self, db_session: Session) -> None:
        gateway = FakeGateway(ChargeResult.DECLINED)
        sequence = create_sequence(db_session, now=T0 - 2 * DAY)
        service = _service(db_session, gateway=gateway)

        result = service.retry_payment(sequence.id, expected_version=1, now=T0)

        assert result.attempts_made == 1
        assert result.last_failure_reason == "card_declined"
        assert result.version == 2
        assert gateway.calls == [(sequence.invoice_id, f"{sequence.id}:1")]
        (attempt,) = service.repo.get_attempts(sequence.id)
        assert attempt.triggered_by == AttemptTrigger.OPERATOR.value
        assert attempt.idempotency_key == f"{sequence.id}:1"

    def test_approved_charge_recovers_and_notifies(self, db_session: Session) -> None:
        notifier = FakeNotifier()
        sequence = create_sequence(db_session, now=T0 - 2 * DAY)
        service = _service(db_session, gateway=FakeGateway(ChargeResult.APPROVED), notifier=notifier)

        result = service.retry_payment(sequence.id, now=T0)

        assert result.status == DunningStatus.RECOVERED.value
        assert result.recovery_method == "manual_retry"
        assert notifier.recoveries == [sequence.id]

    def test_notification_failure_does_not_undo_recovery(self, db_session: Session) -> None:
        notifier = FakeNotifier(fail=GatewayError("down", transient=True))
        sequence = create_sequence(db_session, now=T0 - 2 * DAY)
        service = _service(db_session, gateway=FakeGateway(ChargeResult.APPROVED), notifier=notifier)

        result = service.retry_payment(sequence.id, now=T0)

        assert result.status == DunningStatus.RECOVERED.value

    def test_too_early_does_not_charge(self, db_session: Session) -> None:
        gateway = FakeGateway()
        sequence = create_sequence(db_session, now=T0)
        with pytest.raises(TooEarlyForRetry):
            _service(db_session, gateway=gateway).retry_payment(sequence.id, now=T0)
        assert gateway.calls == []

    def test_transient_error_consumes_no_attempt(self, db_session: Session) -> None:
        sequence = create_sequence(db_session, now=T0 - 2 * DAY)
        service = _service(db_session, gateway=FakeGateway(ChargeResult.TRANSIENT_ERROR))

        with pytest.raises(GatewayError) as exc_info:
            service.retry_payment(sequence.id, now=T0)

        assert exc_info.value.transient
        assert exc_info.value.status_code == 503
        db_session.expire_all()
        stored = service.get_sequence(sequence.id)
        assert stored.attempts_made == 0
        assert stored.version == 1

    def test_version_mismatch_is_rejected_before_charging(self, db_session: Session) -> None:
        gateway = FakeGateway()
        sequence = create_sequence(db_session, now=T0 - 2 * DAY)
        with pytest.raises(ConcurrentModification):
            _service(db_session, gateway=gateway).retry_payment(
                sequence.id, expected_version=5, now=T0
            )
        assert gateway.calls == []

    def test_entering_escalation_assigns_csm(self, db_session: Session) -> None:
        sequence = create_sequence(db_session, now=T0 - 5 * DAY)
        gateway = FakeGateway(ChargeResult.DECLINED, ChargeResult.DECLINED)
        service = _service(db_session, gateway=gateway)

        service.retry_payment(sequence.id, now=T0 - 4 * DAY)
        result = service.retry_payment(sequence.id, now=T0)

        assert result.status == DunningStatus.ESCALATED.value
        assert result.assigned_csm_id == CSM_ONE

    def test_csm_assignment_failure_still_persists_outcome(self, db_session: Session) -> None:
        sequence = create_sequence(db_session, now=T0 - 5 * DAY, escalation_threshold=1)
        service = _service(
            db_session,
            gateway=FakeGateway(ChargeResult.DECLINED),
            csm_assigner=RoundRobinCsmAssigner([]),
        )

        result = service.retry_payment(sequence.id, now=T0)

        assert result.status == DunningStatus.ESCALATED.value
        assert result.assigned_csm_id is None
        assert result.attempts_made == 1

    def test_unexpected_assigner_error_still_persists_decline(self, db_session: Session) -> None:
        sequence = create_sequence(db_session, now=T0 - 5 * DAY, escalation_threshold=1)
        assigner = MagicMock(spec=RoundRobinCsmAssigner)
        assigner.assign.side_effect = RuntimeError("directory lookup crashed")
        service = _service(
            db_session, gateway=FakeGateway(ChargeResult.DECLINED), csm_assigner=assigner
        )

        result = service.retry_payment(sequence.id, now=T0)

        assert result.status == DunningStatus.ESCALATED.value
        assert result.assigned_csm_id is None
        db_session.expire_all()
        stored = service.get_sequence(sequence.id)
        assert stored.attempts_made == 1
        assert stored.version == 2
        [attempt] = service.repo.get_attempts(sequence.id)
        assert attempt.outcome == AttemptOutcome.FAILURE.value

    def test_missing_sequence(self, db_session: Session) -> None:
        with pytest.raises(NotFound):
            _service(db_session).retry_payment(uuid.uuid4())


class TestProcessDueSequence:
    def test_paused_sequence_gets_skipped_record(self, db_session: Session) -> None:
        gateway = FakeGateway()
        sequence = create_sequence(db_session, now=T0 - 2 * DAY)
        service = _service(db_session, gateway=gateway)
        service.pause(sequence.id, now=T0 - DAY)

        outcome = service.process_due_sequence(sequence.id, now=T0)

        assert outcome.skipped
        assert gateway.calls == []
        (attempt,) = service.repo.get_attempts(sequence.id)
        assert attempt.outcome == AttemptOutcome.SKIPPED_PAUSED.value
        assert outcome.sequence.attempts_made == 0

    def test_not_yet_due_is_skipped(self, db_session: Session) -> None:
        gateway = FakeGateway()
        sequence = create_sequence(db_session, now=T0)
        outcome = _service(db_session, gateway=gateway).process_due_sequence(sequence.id, now=T0)
        assert outcome.skipped
        assert outcome.transition is None
        assert gateway.calls == []

    def test_escalated_sequence_waits_when_retries_halted(self, db_session: Session) -> None:
        gateway = FakeGateway()
        sequence = create_sequence(db_session, now=T0 - 2 * DAY)
        service = _service(db_session, gateway=gateway)
        service.escalate_to_csm(sequence.id, now=T0 - DAY)

        with patch("dunning.services.dunning_service.settings.DUNNING_RETRY_WHILE_ESCALATED", False):
            outcome = service.process_due_sequence(sequence.id, now=T0)

        assert outcome.skipped
        assert gateway.calls == []

    def test_due_sequence_is_charged_as_orchestrator(self, db_session: Session) -> None:
        sequence = create_sequence(db_session, now=T0 - 2 * DAY)
        service = _service(db_session, gateway=FakeGateway(ChargeResult.APPROVED))

        outcome = service.process_due_sequence(sequence.id, now=T0)

        assert outcome.charge_result == ChargeResult.APPROVED
        assert outcome.sequence.recovery_method == "automatic_retry"
        assert outcome.transition.attempt.triggered_by == AttemptTrigger.ORCHESTRATOR.value


class TestManualOperations:
    def test_pause_resume_cycle(self, db_session: Session) -> None:
        sequence = create_sequence(db_session, now=T0)
        service = _service(db_session)

        paused = service.pause(sequence.id, reason="disputed", expected_version=1, now=T0)
        assert paused.status == DunningStatus.PAUSED.value
        assert paused.pause_reason == "disputed"

        resumed = service.resume(sequence.id, expected_version=2, now=T0 + 3 * DAY)
        assert resumed.status == DunningStatus.ACTIVE.value
        assert resumed.next_retry_at == T0 + 4 * DAY

    def test_stale_version_on_manual_operation(self, db_session: Session) -> None:
        sequence = create_sequence(db_session)
        service = _service(db_session)
        service.add_note(sequence.id, "called", now=T0)
        with pytest.raises(ConcurrentModification) as exc_info:
            service.cancel(sequence.id, expected_version=1, now=T0)
        assert exc_info.value.actual_version == 2

    def test_escalate_uses_preferred_csm_and_author(self, db_session: Session) -> None:
        sequence = create_sequence(db_session)
        service = _service(db_session)

        result = service.escalate_to_csm(
            sequence.id, csm_id=CSM_TWO, notes="key account", author="ops@example.com", now=T0
        )

        assert result.status == DunningStatus.ESCALATED.value
        assert result.assigned_csm_id == CSM_TWO
        (note,) = service.repo.get_notes(sequence.id)
        assert note.author == "ops@example.com"
        assert note.text == "key account"

    def test_escalate_twice_is_rejected_without_assigning(self, db_session: Session) -> None:
        sequence = create_sequence(db_session)
        assigner = MagicMock(spec=RoundRobinCsmAssigner)
        assigner.assign.return_value = CSM_ONE
        service = _service(db_session, csm_assigner=assigner)
        service.escalate_to_csm(sequence.id, now=T0)

        with pytest.raises(InvalidTransition):
            service.escalate_to_csm(sequence.id, now=T0)
        assert assigner.assign.call_count == 1

    def test_escalate_with_stale_version_does_not_assign(self, db_session: Session) -> None:
        sequence = create_sequence(db_session)
        assigner = MagicMock(spec=RoundRobinCsmAssigner)
        assigner.assign.return_value = CSM_ONE
        service = _service(db_session, csm_assigner=assigner)
        service.add_note(sequence.id, "called", now=T0)

        with pytest.raises(ConcurrentModification):
            service.escalate_to_csm(sequence.id, expected_version=1, now=T0)
        assigner.assign.assert_not_called()

    def test_pause_resume_keeps_sub_second_gap(self, db_session: Session) -> None:
        sequence = create_sequence(db_session, now=T0)
        service = _service(db_session)
        original_next = sequence.next_retry_at
        pause_time = T0 + timedelta(hours=12, milliseconds=250)

        service.pause(sequence.id, now=pause_time)
        db_session.expire_all()
        resume_time = pause_time + 5 * DAY
        resumed = service.resume(sequence.id, now=resume_time)

        assert resumed.next_retry_at - resume_time == original_next - pause_time

    def test_assign_csm_keeps_status(self, db_session: Session) -> None:
        sequence = create_sequence(db_session)
        result = _service(db_session).assign_csm(sequence.id, CSM_TWO, now=T0)
        assert result.status == DunningStatus.ACTIVE.value
        assert result.assigned_csm_id == CSM_TWO

    def test_mark_recovered_with_note(self, db_session: Session) -> None:
        sequence = create_sequence(db_session)
        service = _service(db_session)
        result = service.mark_recovered(
            sequence.id, notes="paid by wire", method="bank_transfer", now=T0 + DAY
        )
        assert result.status == DunningStatus.RECOVERED.value
        assert result.recovery_method == "bank_transfer"
        assert [n.text for n in service.repo.get_notes(sequence.id)] == ["paid by wire"]

    def test_send_payment_link(self, db_session: Session) -> None:
        notifier = FakeNotifier()
        sequence = create_sequence(db_session)
        _service(db_session, notifier=notifier).send_payment_link(sequence.id)
        assert notifier.payment_links == [sequence.id]

    def test_send_payment_link_rejected_for_closed_sequence(self, db_session: Session) -> None:
        sequence = create_sequence(db_session)
        service = _service(db_session)
        service.cancel(sequence.id, now=T0)
        with pytest.raises(InvalidTransition) as exc_info:
            service.send_payment_link(sequence.id)
        assert exc_info.value.event == "send_payment_link"

    def test_send_payment_link_propagates_delivery_errors(self, db_session: Session) -> None:
        sequence = create_sequence(db_session)
        notifier = FakeNotifier(fail=GatewayError("not configured", transient=False))
        with pytest.raises(GatewayError):
            _service(db_session, notifier=notifier).send_payment_link(sequence.id)


class TestSendDueNotification:
    STEPS = (NotificationStep(day=0, include_payment_link=False), NotificationStep(day=1))

    def test_sends_and_records_the_due_notice(self, db_session: Session) -> None:
        sequence = create_sequence(db_session, now=T0, notification_steps=self.STEPS)
        notifier = FakeNotifier()
        service = _service(db_session, notifier=notifier)

        outcome = service.send_due_notification(sequence.id, now=T0)

        assert outcome.delivered
        assert outcome.notice["day"] == 0
        assert notifier.notices == [(sequence.id, 0, False)]
        db_session.expire_all()
        stored = service.get_sequence(sequence.id)
        assert stored.notification_steps[0]["status"] == NotificationStepStatus.SENT.value
        assert stored.next_notification_at == T0 + DAY
        assert stored.version == 2

    def test_not_due_sends_nothing(self, db_session: Session) -> None:
        sequence = create_sequence(db_session, now=T0, notification_steps=self.STEPS)
        notifier = FakeNotifier()
        service = _service(db_session, notifier=notifier)
        service.send_due_notification(sequence.id, now=T0)

        outcome = service.send_due_notification(sequence.id, now=T0 + timedelta(hours=1))

        assert outcome.notice is None
        assert len(notifier.notices) == 1

    def test_paused_sequence_sends_nothing(self, db_session: Session) -> None:
        sequence = create_sequence(db_session, now=T0, notification_steps=self.STEPS)
        notifier = FakeNotifier()
        service = _service(db_session, notifier=notifier)
        service.pause(sequence.id, now=T0)

        outcome = service.send_due_notification(sequence.id, now=T0 + 2 * DAY)

        assert outcome.notice is None
        assert notifier.notices == []

    def test_failed_delivery_is_still_recorded(self, db_session: Session) -> None:
        sequence = create_sequence(db_session, now=T0, notification_steps=self.STEPS)
        notifier = FakeNotifier(fail=GatewayError("down", transient=True))
        service = _service(db_session, notifier=notifier)

        outcome = service.send_due_notification(sequence.id, now=T0 + DAY)

        assert outcome.notice["day"] == 1
        assert not outcome.delivered
        db_session.expire_all()
        stored = service.get_sequence(sequence.id)
        assert [step["status"] for step in stored.notification_steps] == [
            NotificationStepStatus.SKIPPED.value,
            NotificationStepStatus.SENT.value,
        ]
        assert stored.next_notification_at is None

    def test_sent_notices_appear_in_the_timeline(self, db_session: Session) -> None:
        sequence = create_sequence(db_session, now=T0, notification_steps=self.STEPS)
        service = _service(db_session)
        service.send_due_notification(sequence.id, now=T0 + timedelta(minutes=15))

        events = service.timeline(sequence.id)

        assert [e.event_type for e in events] == ["sequence_opened", "notice_sent"]
        assert events[1].timestamp == T0 + timedelta(minutes=15)
        assert events[1].description == "Day 0 notice sent"


class TestTimeline:
    def test_timeline_is_chronological(self, db_session: Session) -> None:
        sequence = create_sequence(db_session, now=T0)
        gateway = FakeGateway(ChargeResponse(ChargeResult.DECLINED, "insufficient_funds"))
        service = _service(db_session, gateway=gateway)
        service.retry_payment(sequence.id, now=T0 + DAY)
        service.add_note(sequence.id, "left voicemail", author="ops", now=T0 + 2 * DAY)
        service.cancel(sequence.id, reason="churned", now=T0 + 3 * DAY)

        events = service.timeline(sequence.id)

        assert [e.event_type for e in events] == [
            "sequence_opened",
            "retry_failure",
            "note_added",
            "cancelled",
        ]
        assert events[1].attempt_number == 1
        assert "insufficient_funds" in events[1].description
        assert events[2].description == "ops: left voicemail"
        assert [e.timestamp for e in events] == sorted(e.timestamp for e in events)
