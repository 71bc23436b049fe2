"""DunningSequence schemas."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from dunning.models.dunning_sequence import DunningStatus, NotificationStepStatus


class DunningSequenceCreate(BaseModel):
    """Schema for opening a dunning sequence after an invoice payment fails."""

    organization_id: UUID
    invoice_id: UUID
    subscription_id: UUID
    amount_cents: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    plan_code: str | None = None
    failure_reason: str | None = None


class DunningAttemptResponse(BaseModel):
    """Schema for a single retry attempt."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    attempt_number: int
    attempted_at: datetime
    outcome: str
    failure_reason: str | None = None
    idempotency_key: str | None = None
    triggered_by: str


class DunningNoteResponse(BaseModel):
    """Schema for an operator note."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    position: int
    author: str
    text: str
    created_at: datetime


class NotificationStepResponse(BaseModel):
    """A scheduled customer notice."""

    day: int
    include_payment_link: bool
    status: NotificationStepStatus
    sent_at: datetime | None = None


class DunningSequenceResponse(BaseModel):
    """Schema for dunning sequence response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    invoice_id: UUID
    subscription_id: UUID
    status: DunningStatus
    attempts_made: int
    max_attempts: int
    consecutive_failures: int
    retry_offsets_days: list[int]
    escalation_threshold: int
    amount_at_risk_cents: Decimal
    currency: str
    days_in_dunning: int = 0
    next_retry_at: datetime | None = None
    last_attempt_at: datetime | None = None
    next_notification_at: datetime | None = None
    notification_steps: list[NotificationStepResponse] = Field(default_factory=list)
    escalated_at: datetime | None = None
    recovered_at: datetime | None = None
    cancelled_at: datetime | None = None
    exhausted_at: datetime | None = None
    paused_at: datetime | None = None
    pause_reason: str | None = None
    assigned_csm_id: UUID | None = None
    failure_reason: str | None = None
    last_failure_reason: str | None = None
    recovery_method: str | None = None
    cancel_reason: str | None = None
    version: int
    created_at: datetime
    updated_at: datetime


class DunningSequenceDetailResponse(DunningSequenceResponse):
    """Sequence with its attempt history and notes."""

    attempts: list[DunningAttemptResponse] = Field(default_factory=list)
    notes: list[DunningNoteResponse] = Field(default_factory=list)


class VersionedRequest(BaseModel):
    """Base for mutations; ``expected_version`` enables the optimistic check."""

    expected_version: int | None = Field(default=None, ge=1)


class RetryPaymentRequest(VersionedRequest):
    pass


class PauseRequest(VersionedRequest):
    reason: str | None = None


class ResumeRequest(VersionedRequest):
    pass


class EscalateRequest(VersionedRequest):
    csm_id: UUID | None = None
    notes: str | None = None


class AssignCsmRequest(VersionedRequest):
    csm_id: UUID


class CancelRequest(VersionedRequest):
    reason: str | None = None


class RecoverRequest(VersionedRequest):
    notes: str | None = None
    method: str = Field(default="manual_payment", min_length=1, max_length=50)


class AddNoteRequest(VersionedRequest):
    text: str = Field(..., min_length=1)


class SendPaymentLinkResponse(BaseModel):
    success: bool
    message: str
    dunning_sequence_id: UUID


class TimelineEvent(BaseModel):
    """A single event in a sequence's timeline."""

    event_type: str
    timestamp: datetime
    description: str
    attempt_number: int | None = None


class TimelineResponse(BaseModel):
    dunning_sequence_id: UUID
    events: list[TimelineEvent] = Field(default_factory=list)
