"""DunningSequence model - the unit of recovery work for one overdue invoice."""

from enum import Enum

from sqlalchemy import JSON, BigInteger, Column, Index, Integer, Numeric, String, Text

from dunning.core.database import Base
from dunning.models.shared import UTCDateTime, UUIDType, generate_uuid, utc_now


class NotificationStepStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    SKIPPED = "skipped"


class DunningStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ESCALATED = "escalated"
    RECOVERED = "recovered"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"


TERMINAL_STATUSES = frozenset(
    {DunningStatus.RECOVERED, DunningStatus.CANCELLED, DunningStatus.EXHAUSTED}
)
# Statuses whose amount still counts as revenue at risk
OPEN_STATUSES = frozenset({DunningStatus.ACTIVE, DunningStatus.ESCALATED, DunningStatus.PAUSED})
# Statuses that carry a scheduled retry
SCHEDULED_STATUSES = frozenset({DunningStatus.ACTIVE, DunningStatus.ESCALATED})


class DunningSequence(Base):
    """DunningSequence model - tracks retries and interventions for a failed payment."""

    __tablename__ = "dunning_sequences"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    organization_id = Column(UUIDType, nullable=False, index=True)
    invoice_id = Column(UUIDType, nullable=False, index=True)
    subscription_id = Column(UUIDType, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=DunningStatus.ACTIVE.value)

    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    retry_offsets_days = Column(JSON, nullable=False)
    escalation_threshold = Column(Integer, nullable=False, default=2)

    # Frozen at creation from the invoice's outstanding balance
    amount_at_risk_cents = Column(Numeric(12, 4), nullable=False)
    currency = Column(String(3), nullable=False)

    # Retry offsets are measured from schedule_anchor_at, which starts at
    # created_at and moves forward by the time spent paused.
    schedule_anchor_at = Column(UTCDateTime, nullable=False)
    next_retry_at = Column(UTCDateTime, nullable=True, index=True)
    last_attempt_at = Column(UTCDateTime, nullable=True)

    # Customer notices, frozen from the policy as
    # [{"day", "include_payment_link", "status", "sent_at"}, ...]
    notification_steps = Column(JSON, nullable=False, default=list)
    next_notification_at = Column(UTCDateTime, nullable=True, index=True)

    escalated_at = Column(UTCDateTime, nullable=True)
    recovered_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    exhausted_at = Column(UTCDateTime, nullable=True)

    # Pause snapshot
    paused_at = Column(UTCDateTime, nullable=True)
    paused_remaining_us = Column(BigInteger, nullable=True)
    paused_from_status = Column(String(20), nullable=True)
    pause_reason = Column(Text, nullable=True)

    assigned_csm_id = Column(UUIDType, nullable=True, index=True)
    failure_reason = Column(Text, nullable=True)
    last_failure_reason = Column(Text, nullable=True)
    recovery_method = Column(String(50), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    notes_count = Column(Integer, nullable=False, default=0)

    version = Column(Integer, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (Index("ix_dunning_sequences_status_next_retry", "status", "next_retry_at"),)
