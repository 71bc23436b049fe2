"""DunningRetryPolicy schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dunning.core.errors import ValidationError
from dunning.services.retry_scheduler import validate_offsets


def _check_offsets(value: list[int] | None) -> list[int] | None:
    if value is None:
        return value
    try:
        return list(validate_offsets(value))
    except ValidationError as exc:
        raise ValueError(exc.message) from None


class DunningRetryPolicyCreate(BaseModel):
    """Schema for creating a retry policy."""

    organization_id: UUID
    plan_code: str | None = Field(default=None, min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    offsets_days: list[int] = Field(default_factory=lambda: [1, 3, 7, 14, 21], min_length=1)
    escalation_threshold: int = Field(default=2, ge=1)
    status: str = Field(default="active", pattern=r"^(active|inactive)$")

    _validate_offsets = field_validator("offsets_days")(_check_offsets)


class DunningRetryPolicyUpdate(BaseModel):
    """Schema for updating a retry policy."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    offsets_days: list[int] | None = Field(default=None, min_length=1)
    escalation_threshold: int | None = Field(default=None, ge=1)
    status: str | None = Field(default=None, pattern=r"^(active|inactive)$")

    _validate_offsets = field_validator("offsets_days")(_check_offsets)


class DunningRetryPolicyResponse(BaseModel):
    """Schema for retry policy response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    plan_code: str | None = None
    name: str
    description: str | None = None
    offsets_days: list[int]
    escalation_threshold: int
    max_attempts: int = 0
    status: str
    created_at: datetime
    updated_at: datetime
