"""DunningAttempt model - one charge attempt within a dunning sequence."""

from enum import Enum

from sqlalchemy import Column, ForeignKey, Integer, String, Text

from dunning.core.database import Base
from dunning.models.shared import UTCDateTime, UUIDType, generate_uuid, utc_now


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED_PAUSED = "skipped_paused"


class AttemptTrigger(str, Enum):
    ORCHESTRATOR = "orchestrator"
    OPERATOR = "operator"


class DunningAttempt(Base):
    """DunningAttempt model - records the outcome of a retry for a sequence."""

    __tablename__ = "dunning_attempts"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    dunning_sequence_id = Column(
        UUIDType,
        ForeignKey("dunning_sequences.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt_number = Column(Integer, nullable=False)
    attempted_at = Column(UTCDateTime, nullable=False, default=utc_now)
    outcome = Column(String(20), nullable=False)
    failure_reason = Column(Text, nullable=True)
    idempotency_key = Column(String(100), nullable=True)
    triggered_by = Column(String(20), nullable=False, default=AttemptTrigger.ORCHESTRATOR.value)
