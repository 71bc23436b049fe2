"""DunningRetryPolicy API endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from dunning.core.database import get_db
from dunning.models.dunning_retry_policy import DunningRetryPolicy
from dunning.repositories.dunning_retry_policy_repository import DunningRetryPolicyRepository
from dunning.schemas.dunning_retry_policy import (
    DunningRetryPolicyCreate,
    DunningRetryPolicyResponse,
    DunningRetryPolicyUpdate,
)

router = APIRouter()


def _policy_to_response(policy: DunningRetryPolicy) -> DunningRetryPolicyResponse:
    resp = DunningRetryPolicyResponse.model_validate(policy)
    resp.max_attempts = len(resp.offsets_days)
    return resp


@router.post(
    "/",
    response_model=DunningRetryPolicyResponse,
    status_code=201,
    summary="Create retry policy",
    responses={
        409: {"description": "A retry policy already exists for this organization and plan"},
        422: {"description": "Validation error"},
    },
)
async def create_retry_policy(
    data: DunningRetryPolicyCreate,
    db: Session = Depends(get_db),
) -> DunningRetryPolicyResponse:
    """Create a retry policy for an organization, optionally scoped to a plan."""
    repo = DunningRetryPolicyRepository(db)
    if repo.get_for_scope(data.organization_id, data.plan_code):
        raise HTTPException(
            status_code=409,
            detail="A retry policy already exists for this organization and plan",
        )
    return _policy_to_response(repo.create(data))


@router.get(
    "/",
    response_model=list[DunningRetryPolicyResponse],
    summary="List retry policies",
)
async def list_retry_policies(
    response: Response,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    organization_id: UUID | None = None,
    status: str | None = None,
    db: Session = Depends(get_db),
) -> list[DunningRetryPolicyResponse]:
    repo = DunningRetryPolicyRepository(db)
    response.headers["X-Total-Count"] = str(repo.count(organization_id))
    policies = repo.get_all(organization_id, skip=skip, limit=limit, status=status)
    return [_policy_to_response(p) for p in policies]


@router.get(
    "/{policy_id}",
    response_model=DunningRetryPolicyResponse,
    summary="Get retry policy",
    responses={404: {"description": "Retry policy not found"}},
)
async def get_retry_policy(
    policy_id: UUID,
    db: Session = Depends(get_db),
) -> DunningRetryPolicyResponse:
    repo = DunningRetryPolicyRepository(db)
    policy = repo.get_by_id(policy_id)
    if not policy:
        raise HTTPException(status_code=404, detail="Retry policy not found")
    return _policy_to_response(policy)


@router.put(
    "/{policy_id}",
    response_model=DunningRetryPolicyResponse,
    summary="Update retry policy",
    responses={
        404: {"description": "Retry policy not found"},
        422: {"description": "Validation error"},
    },
)
async def update_retry_policy(
    policy_id: UUID,
    data: DunningRetryPolicyUpdate,
    db: Session = Depends(get_db),
) -> DunningRetryPolicyResponse:
    """Update a retry policy. Sequences already open keep their original schedule."""
    repo = DunningRetryPolicyRepository(db)
    policy = repo.update(policy_id, data)
    if not policy:
        raise HTTPException(status_code=404, detail="Retry policy not found")
    return _policy_to_response(policy)


@router.delete(
    "/{policy_id}",
    status_code=204,
    summary="Delete retry policy",
    responses={404: {"description": "Retry policy not found"}},
)
async def delete_retry_policy(
    policy_id: UUID,
    db: Session = Depends(get_db),
) -> None:
    repo = DunningRetryPolicyRepository(db)
    if not repo.delete(policy_id):
        raise HTTPException(status_code=404, detail="Retry policy not found")
