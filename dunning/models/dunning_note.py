"""DunningNote model - append-only operator notes on a dunning sequence."""

from sqlalchemy import Column, ForeignKey, Integer, String, Text

from dunning.core.database import Base
from dunning.models.shared import UTCDateTime, UUIDType, generate_uuid, utc_now


class DunningNote(Base):
    """DunningNote model - ordered by position within its sequence."""

    __tablename__ = "dunning_notes"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    dunning_sequence_id = Column(
        UUIDType,
        ForeignKey("dunning_sequences.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False)
    author = Column(String(255), nullable=False)
    text = Column(Text, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
