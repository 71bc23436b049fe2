"""DunningRetryPolicy model for tenant/plan configurable retry schedules."""

from sqlalchemy import JSON, Column, Integer, String, Text, UniqueConstraint

from dunning.core.database import Base
from dunning.models.shared import UTCDateTime, UUIDType, generate_uuid, utc_now


class DunningRetryPolicy(Base):
    """DunningRetryPolicy model - retry offsets and escalation threshold.

    A policy without a plan_code is the organization default; one with a
    plan_code overrides it for subscriptions on that plan.
    """

    __tablename__ = "dunning_retry_policies"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    organization_id = Column(UUIDType, nullable=False, index=True)
    plan_code = Column(String(255), nullable=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    offsets_days = Column(JSON, nullable=False)
    escalation_threshold = Column(Integer, nullable=False, default=2)
    status = Column(String(20), nullable=False, default="active")

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "plan_code", name="uq_dunning_retry_policies_org_plan"
        ),
    )
