"""DunningSequence API endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from dunning.core.auth import get_operator
from dunning.core.database import get_db
from dunning.models.dunning_sequence import DunningSequence, DunningStatus
from dunning.models.shared import utc_now
from dunning.repositories.dunning_sequence_repository import DunningSequenceRepository
from dunning.schemas.dunning_analytics import DunningStatisticsResponse, RevenueAtRiskResponse
from dunning.schemas.dunning_sequence import (
    AddNoteRequest,
    AssignCsmRequest,
    CancelRequest,
    DunningAttemptResponse,
    DunningNoteResponse,
    DunningSequenceCreate,
    DunningSequenceDetailResponse,
    DunningSequenceResponse,
    EscalateRequest,
    PauseRequest,
    RecoverRequest,
    ResumeRequest,
    RetryPaymentRequest,
    SendPaymentLinkResponse,
    TimelineResponse,
)
from dunning.services.dunning_analytics import (
    RevenueAtRiskAggregator,
    StatisticsAggregator,
    day_of_sequence,
)
from dunning.services.dunning_service import DunningService

router = APIRouter()

CONFLICT_RESPONSES = {
    404: {"description": "Dunning sequence not found"},
    409: {"description": "Invalid transition or concurrent modification"},
}


def get_dunning_service(db: Session = Depends(get_db)) -> DunningService:
    return DunningService(db)


def _sequence_to_response(sequence: DunningSequence) -> DunningSequenceResponse:
    """Build a DunningSequenceResponse with the sequence age filled in."""
    resp = DunningSequenceResponse.model_validate(sequence)
    ended_at = sequence.recovered_at or sequence.cancelled_at or sequence.exhausted_at
    resp.days_in_dunning = day_of_sequence(
        sequence.created_at,  # type: ignore[arg-type]
        ended_at or utc_now(),  # type: ignore[arg-type]
    )
    return resp


def _sequences_to_response(sequences: list[DunningSequence]) -> list[DunningSequenceResponse]:
    return [_sequence_to_response(s) for s in sequences]


@router.get(
    "/",
    response_model=list[DunningSequenceResponse],
    summary="List dunning sequences",
)
async def list_dunning_sequences(
    response: Response,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    status: DunningStatus | None = None,
    organization_id: UUID | None = None,
    escalated: bool | None = None,
    csm_id: UUID | None = None,
    currency: str | None = Query(default=None, min_length=3, max_length=3),
    order_by: str | None = Query(default=None, description="e.g. next_retry_at:asc"),
    db: Session = Depends(get_db),
) -> list[DunningSequenceResponse]:
    """List dunning sequences with optional filters."""
    repo = DunningSequenceRepository(db)
    filters = {
        "status": status,
        "organization_id": organization_id,
        "escalated": escalated,
        "csm_id": csm_id,
        "currency": currency,
    }
    response.headers["X-Total-Count"] = str(repo.count(**filters))  # type: ignore[arg-type]
    sequences = repo.get_all(skip=skip, limit=limit, order_by=order_by, **filters)  # type: ignore[arg-type]
    return _sequences_to_response(sequences)


@router.post(
    "/",
    response_model=DunningSequenceResponse,
    status_code=201,
    summary="Open dunning sequence",
    responses={422: {"description": "Validation error or invoice already in dunning"}},
)
async def open_dunning_sequence(
    data: DunningSequenceCreate,
    service: DunningService = Depends(get_dunning_service),
) -> DunningSequenceResponse:
    """Open a dunning sequence for an invoice whose recurring payment failed."""
    return _sequence_to_response(service.open_sequence(data))


@router.get(
    "/active",
    response_model=list[DunningSequenceResponse],
    summary="List active dunning sequences",
)
async def list_active_dunning_sequences(
    response: Response,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[DunningSequenceResponse]:
    """List sequences still being pursued (active, escalated or paused)."""
    repo = DunningSequenceRepository(db)
    response.headers["X-Total-Count"] = str(repo.count_active())
    return _sequences_to_response(repo.list_active(limit=limit, skip=skip))


@router.get(
    "/escalated",
    response_model=list[DunningSequenceResponse],
    summary="List escalated dunning sequences",
)
async def list_escalated_dunning_sequences(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[DunningSequenceResponse]:
    """List sequences currently escalated to customer success."""
    repo = DunningSequenceRepository(db)
    return _sequences_to_response(
        repo.list_by_status(DunningStatus.ESCALATED, limit=limit, skip=skip)
    )


@router.get(
    "/statistics",
    response_model=DunningStatisticsResponse,
    summary="Get dunning statistics",
    responses={422: {"description": "Invalid reporting window"}},
)
async def get_dunning_statistics(
    window_start: datetime | None = None,
    window_end: datetime | None = None,
    organization_id: UUID | None = None,
    db: Session = Depends(get_db),
) -> DunningStatisticsResponse:
    """Status counts and recovery rate over a reporting window (default: last 30 days)."""
    return StatisticsAggregator(db).compute(
        window_start=window_start,
        window_end=window_end,
        organization_id=organization_id,
    )


@router.get(
    "/revenue_at_risk",
    response_model=RevenueAtRiskResponse,
    summary="Get revenue at risk",
)
async def get_revenue_at_risk(
    organization_id: UUID | None = None,
    db: Session = Depends(get_db),
) -> RevenueAtRiskResponse:
    """Outstanding amounts of open sequences by currency and by sequence age."""
    return RevenueAtRiskAggregator(db).compute(organization_id=organization_id)


@router.get(
    "/by_status/{status}",
    response_model=list[DunningSequenceResponse],
    summary="List dunning sequences by status",
)
async def list_dunning_sequences_by_status(
    status: DunningStatus,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[DunningSequenceResponse]:
    repo = DunningSequenceRepository(db)
    return _sequences_to_response(repo.list_by_status(status, limit=limit, skip=skip))


@router.get(
    "/organization/{organization_id}",
    response_model=list[DunningSequenceResponse],
    summary="List dunning sequences for an organization",
)
async def list_dunning_sequences_for_organization(
    organization_id: UUID,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[DunningSequenceResponse]:
    repo = DunningSequenceRepository(db)
    return _sequences_to_response(
        repo.list_by_organization(organization_id, skip=skip, limit=limit)
    )


@router.get(
    "/organization/{organization_id}/active",
    response_model=list[DunningSequenceResponse],
    summary="List open dunning sequences for an organization",
)
async def list_open_dunning_sequences_for_organization(
    organization_id: UUID,
    service: DunningService = Depends(get_dunning_service),
) -> list[DunningSequenceResponse]:
    return _sequences_to_response(service.get_open_for_organization(organization_id))


@router.get(
    "/{sequence_id}",
    response_model=DunningSequenceDetailResponse,
    summary="Get dunning sequence",
    responses={404: {"description": "Dunning sequence not found"}},
)
async def get_dunning_sequence(
    sequence_id: UUID,
    service: DunningService = Depends(get_dunning_service),
) -> DunningSequenceDetailResponse:
    """Get a dunning sequence with its attempts and notes."""
    sequence = service.get_sequence(sequence_id)
    detail = DunningSequenceDetailResponse.model_validate(
        _sequence_to_response(sequence).model_dump()
    )
    detail.attempts = [
        DunningAttemptResponse.model_validate(a) for a in service.repo.get_attempts(sequence_id)
    ]
    detail.notes = [
        DunningNoteResponse.model_validate(n) for n in service.repo.get_notes(sequence_id)
    ]
    return detail


@router.get(
    "/{sequence_id}/timeline",
    response_model=TimelineResponse,
    summary="Get dunning sequence timeline",
    responses={404: {"description": "Dunning sequence not found"}},
)
async def get_dunning_sequence_timeline(
    sequence_id: UUID,
    service: DunningService = Depends(get_dunning_service),
) -> TimelineResponse:
    """Chronological history of attempts, notes and status milestones."""
    return TimelineResponse(dunning_sequence_id=sequence_id, events=service.timeline(sequence_id))


@router.post(
    "/{sequence_id}/retry",
    response_model=DunningSequenceResponse,
    summary="Retry payment",
    responses={
        **CONFLICT_RESPONSES,
        502: {"description": "Payment gateway rejected the request"},
        503: {"description": "Payment gateway temporarily unavailable"},
    },
)
def retry_payment(
    sequence_id: UUID,
    data: RetryPaymentRequest | None = None,
    service: DunningService = Depends(get_dunning_service),
) -> DunningSequenceResponse:
    """Charge the invoice now; only allowed once the scheduled retry is due."""
    expected_version = data.expected_version if data else None
    return _sequence_to_response(service.retry_payment(sequence_id, expected_version))


@router.post(
    "/{sequence_id}/send_payment_link",
    response_model=SendPaymentLinkResponse,
    summary="Send payment link",
    responses={
        **CONFLICT_RESPONSES,
        502: {"description": "Notification service rejected the request"},
        503: {"description": "Notification service temporarily unavailable"},
    },
)
def send_payment_link(
    sequence_id: UUID,
    service: DunningService = Depends(get_dunning_service),
) -> SendPaymentLinkResponse:
    """Ask the notification service to send the customer a payment link."""
    service.send_payment_link(sequence_id)
    return SendPaymentLinkResponse(
        success=True,
        message="Payment link sent",
        dunning_sequence_id=sequence_id,
    )


@router.post(
    "/{sequence_id}/escalate",
    response_model=DunningSequenceResponse,
    summary="Escalate to customer success",
    responses=CONFLICT_RESPONSES,
)
def escalate_dunning_sequence(
    sequence_id: UUID,
    data: EscalateRequest | None = None,
    service: DunningService = Depends(get_dunning_service),
    operator: str = Depends(get_operator),
) -> DunningSequenceResponse:
    data = data or EscalateRequest()
    sequence = service.escalate_to_csm(
        sequence_id,
        csm_id=data.csm_id,
        notes=data.notes,
        expected_version=data.expected_version,
        author=operator,
    )
    return _sequence_to_response(sequence)


@router.post(
    "/{sequence_id}/assign_csm",
    response_model=DunningSequenceResponse,
    summary="Assign customer success manager",
    responses=CONFLICT_RESPONSES,
)
async def assign_csm(
    sequence_id: UUID,
    data: AssignCsmRequest,
    service: DunningService = Depends(get_dunning_service),
) -> DunningSequenceResponse:
    sequence = service.assign_csm(sequence_id, data.csm_id, expected_version=data.expected_version)
    return _sequence_to_response(sequence)


@router.post(
    "/{sequence_id}/pause",
    response_model=DunningSequenceResponse,
    summary="Pause dunning sequence",
    responses=CONFLICT_RESPONSES,
)
async def pause_dunning_sequence(
    sequence_id: UUID,
    data: PauseRequest | None = None,
    service: DunningService = Depends(get_dunning_service),
) -> DunningSequenceResponse:
    data = data or PauseRequest()
    sequence = service.pause(sequence_id, reason=data.reason, expected_version=data.expected_version)
    return _sequence_to_response(sequence)


@router.post(
    "/{sequence_id}/resume",
    response_model=DunningSequenceResponse,
    summary="Resume dunning sequence",
    responses=CONFLICT_RESPONSES,
)
async def resume_dunning_sequence(
    sequence_id: UUID,
    data: ResumeRequest | None = None,
    service: DunningService = Depends(get_dunning_service),
) -> DunningSequenceResponse:
    expected_version = data.expected_version if data else None
    return _sequence_to_response(service.resume(sequence_id, expected_version=expected_version))


@router.post(
    "/{sequence_id}/cancel",
    response_model=DunningSequenceResponse,
    summary="Cancel dunning sequence",
    responses=CONFLICT_RESPONSES,
)
async def cancel_dunning_sequence(
    sequence_id: UUID,
    data: CancelRequest | None = None,
    service: DunningService = Depends(get_dunning_service),
) -> DunningSequenceResponse:
    data = data or CancelRequest()
    sequence = service.cancel(sequence_id, reason=data.reason, expected_version=data.expected_version)
    return _sequence_to_response(sequence)


@router.post(
    "/{sequence_id}/recover",
    response_model=DunningSequenceResponse,
    summary="Mark dunning sequence recovered",
    responses=CONFLICT_RESPONSES,
)
async def recover_dunning_sequence(
    sequence_id: UUID,
    data: RecoverRequest | None = None,
    service: DunningService = Depends(get_dunning_service),
    operator: str = Depends(get_operator),
) -> DunningSequenceResponse:
    """Record that the invoice was paid outside the automated retries."""
    data = data or RecoverRequest()
    sequence = service.mark_recovered(
        sequence_id,
        notes=data.notes,
        method=data.method,
        expected_version=data.expected_version,
        author=operator,
    )
    return _sequence_to_response(sequence)


@router.post(
    "/{sequence_id}/notes",
    response_model=DunningSequenceResponse,
    status_code=201,
    summary="Add note",
    responses=CONFLICT_RESPONSES,
)
async def add_note(
    sequence_id: UUID,
    data: AddNoteRequest,
    service: DunningService = Depends(get_dunning_service),
    operator: str = Depends(get_operator),
) -> DunningSequenceResponse:
    sequence = service.add_note(
        sequence_id,
        data.text,
        author=operator,
        expected_version=data.expected_version,
    )
    return _sequence_to_response(sequence)
