"""DunningRetryPolicy repository for data access."""

from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from dunning.models.dunning_retry_policy import DunningRetryPolicy
from dunning.schemas.dunning_retry_policy import (
    DunningRetryPolicyCreate,
    DunningRetryPolicyUpdate,
)
from dunning.services.retry_scheduler import RetryPolicy, notification_steps_from_settings


class DunningRetryPolicyRepository:
    """Repository for DunningRetryPolicy model."""

    def __init__(self, db: Session):
        self.db = db

    def get_all(
        self,
        organization_id: UUID | None = None,
        skip: int = 0,
        limit: int = 100,
        status: str | None = None,
    ) -> list[DunningRetryPolicy]:
        """Get retry policies, optionally for one organization."""
        query = self.db.query(DunningRetryPolicy)
        if organization_id is not None:
            query = query.filter(DunningRetryPolicy.organization_id == organization_id)
        if status is not None:
            query = query.filter(DunningRetryPolicy.status == status)
        return (
            query.order_by(DunningRetryPolicy.created_at.desc()).offset(skip).limit(limit).all()
        )

    def count(self, organization_id: UUID | None = None) -> int:
        query = self.db.query(func.count(DunningRetryPolicy.id))
        if organization_id is not None:
            query = query.filter(DunningRetryPolicy.organization_id == organization_id)
        return query.scalar() or 0

    def get_by_id(self, policy_id: UUID) -> DunningRetryPolicy | None:
        """Get a retry policy by ID."""
        return (
            self.db.query(DunningRetryPolicy).filter(DunningRetryPolicy.id == policy_id).first()
        )

    def get_for_scope(
        self,
        organization_id: UUID,
        plan_code: str | None,
    ) -> DunningRetryPolicy | None:
        """Get the policy configured for exactly this organization/plan scope."""
        query = self.db.query(DunningRetryPolicy).filter(
            DunningRetryPolicy.organization_id == organization_id,
        )
        if plan_code is None:
            query = query.filter(DunningRetryPolicy.plan_code.is_(None))
        else:
            query = query.filter(DunningRetryPolicy.plan_code == plan_code)
        return query.first()

    def resolve(self, organization_id: UUID, plan_code: str | None = None) -> RetryPolicy:
        """Resolve the effective policy: plan override, then org default, then settings."""
        candidates: list[str | None] = [plan_code, None] if plan_code else [None]
        for code in candidates:
            row = self.get_for_scope(organization_id, code)
            if row is not None and row.status == "active":
                return RetryPolicy(
                    offsets_days=tuple(row.offsets_days),
                    escalation_threshold=int(row.escalation_threshold),
                    notification_steps=notification_steps_from_settings(),
                )
        return RetryPolicy.from_settings()

    def create(self, data: DunningRetryPolicyCreate) -> DunningRetryPolicy:
        """Create a new retry policy."""
        policy = DunningRetryPolicy(**data.model_dump())
        self.db.add(policy)
        self.db.commit()
        self.db.refresh(policy)
        return policy

    def update(
        self,
        policy_id: UUID,
        data: DunningRetryPolicyUpdate,
    ) -> DunningRetryPolicy | None:
        """Update a retry policy. Running sequences keep the offsets they started with."""
        policy = self.get_by_id(policy_id)
        if not policy:
            return None
        update_data = data.model_dump(exclude_unset=True)
        for key, value in update_data.items():
            setattr(policy, key, value)
        self.db.commit()
        self.db.refresh(policy)
        return policy

    def delete(self, policy_id: UUID) -> bool:
        """Delete a retry policy."""
        policy = self.get_by_id(policy_id)
        if not policy:
            return False
        self.db.delete(policy)
        self.db.commit()
        return True
