"""DunningSequence repository for data access."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Query, Session
from sqlalchemy.orm.exc import StaleDataError

from dunning.core.errors import ConcurrentModification
from dunning.core.sorting import apply_order_by
from dunning.models.dunning_attempt import DunningAttempt
from dunning.models.dunning_note import DunningNote
from dunning.models.dunning_sequence import (
    OPEN_STATUSES,
    SCHEDULED_STATUSES,
    DunningSequence,
    DunningStatus,
)


class DunningSequenceRepository:
    """Repository for DunningSequence model.

    Writes go through ``save`` (or ``add`` for new rows), which enforces
    optimistic concurrency on the ``version`` column.
    """

    def __init__(self, db: Session):
        self.db = db

    def _filtered(
        self,
        status: DunningStatus | str | None = None,
        organization_id: UUID | None = None,
        escalated: bool | None = None,
        csm_id: UUID | None = None,
        currency: str | None = None,
    ) -> Query:  # type: ignore[type-arg]
        query = self.db.query(DunningSequence)
        if status is not None:
            query = query.filter(DunningSequence.status == DunningStatus(status).value)
        if organization_id is not None:
            query = query.filter(DunningSequence.organization_id == organization_id)
        if escalated is True:
            query = query.filter(DunningSequence.escalated_at.isnot(None))
        elif escalated is False:
            query = query.filter(DunningSequence.escalated_at.is_(None))
        if csm_id is not None:
            query = query.filter(DunningSequence.assigned_csm_id == csm_id)
        if currency is not None:
            query = query.filter(DunningSequence.currency == currency.upper())
        return query

    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        status: DunningStatus | str | None = None,
        organization_id: UUID | None = None,
        escalated: bool | None = None,
        csm_id: UUID | None = None,
        currency: str | None = None,
        order_by: str | None = None,
    ) -> list[DunningSequence]:
        """Get sequences matching the given filters, paginated and sorted."""
        query = self._filtered(status, organization_id, escalated, csm_id, currency)
        query = apply_order_by(query, DunningSequence, order_by)
        return query.offset(skip).limit(limit).all()

    def count(
        self,
        status: DunningStatus | str | None = None,
        organization_id: UUID | None = None,
        escalated: bool | None = None,
        csm_id: UUID | None = None,
        currency: str | None = None,
    ) -> int:
        """Count sequences matching the given filters."""
        query = self._filtered(status, organization_id, escalated, csm_id, currency)
        return query.with_entities(func.count(DunningSequence.id)).scalar() or 0

    def get_by_id(self, sequence_id: UUID) -> DunningSequence | None:
        """Get a dunning sequence by ID."""
        return self.db.query(DunningSequence).filter(DunningSequence.id == sequence_id).first()

    def get_by_invoice(self, invoice_id: UUID) -> list[DunningSequence]:
        """Get all sequences opened for an invoice, newest first."""
        return (
            self.db.query(DunningSequence)
            .filter(DunningSequence.invoice_id == invoice_id)
            .order_by(DunningSequence.created_at.desc())
            .all()
        )

    def list_by_status(
        self,
        status: DunningStatus | str,
        limit: int = 100,
        skip: int = 0,
    ) -> list[DunningSequence]:
        return self.get_all(skip=skip, limit=limit, status=status)

    def list_by_organization(
        self,
        organization_id: UUID,
        skip: int = 0,
        limit: int = 100,
    ) -> list[DunningSequence]:
        return self.get_all(skip=skip, limit=limit, organization_id=organization_id)

    def list_open_by_organization(self, organization_id: UUID) -> list[DunningSequence]:
        """Sequences for an organization that are still being pursued."""
        return (
            self.db.query(DunningSequence)
            .filter(
                DunningSequence.organization_id == organization_id,
                DunningSequence.status.in_([s.value for s in OPEN_STATUSES]),
            )
            .order_by(DunningSequence.created_at.desc())
            .all()
        )

    def list_active(self, limit: int = 100, skip: int = 0) -> list[DunningSequence]:
        """Sequences still being pursued (active, escalated or paused)."""
        return (
            self.db.query(DunningSequence)
            .filter(DunningSequence.status.in_([s.value for s in OPEN_STATUSES]))
            .order_by(DunningSequence.created_at.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def count_active(self) -> int:
        return (
            self.db.query(func.count(DunningSequence.id))
            .filter(DunningSequence.status.in_([s.value for s in OPEN_STATUSES]))
            .scalar()
            or 0
        )

    def list_due_for_retry(
        self,
        now: datetime,
        limit: int | None = None,
        include_escalated: bool = True,
    ) -> list[DunningSequence]:
        """Sequences with a scheduled retry at or before ``now``, oldest first."""
        statuses = (
            [s.value for s in SCHEDULED_STATUSES]
            if include_escalated
            else [DunningStatus.ACTIVE.value]
        )
        query = (
            self.db.query(DunningSequence)
            .filter(
                DunningSequence.status.in_(statuses),
                DunningSequence.next_retry_at.isnot(None),
                DunningSequence.next_retry_at <= now,
            )
            .order_by(DunningSequence.next_retry_at.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def list_due_for_notification(
        self,
        now: datetime,
        limit: int | None = None,
    ) -> list[DunningSequence]:
        """Unpaused open sequences with a customer notice due, oldest first."""
        query = (
            self.db.query(DunningSequence)
            .filter(
                DunningSequence.status.in_([s.value for s in SCHEDULED_STATUSES]),
                DunningSequence.next_notification_at.isnot(None),
                DunningSequence.next_notification_at <= now,
            )
            .order_by(DunningSequence.next_notification_at.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def get_attempts(self, sequence_id: UUID) -> list[DunningAttempt]:
        """Get attempt records for a sequence in the order they happened."""
        return (
            self.db.query(DunningAttempt)
            .filter(DunningAttempt.dunning_sequence_id == sequence_id)
            .order_by(DunningAttempt.attempted_at.asc(), DunningAttempt.attempt_number.asc())
            .all()
        )

    def get_notes(self, sequence_id: UUID) -> list[DunningNote]:
        """Get notes for a sequence in insertion order."""
        return (
            self.db.query(DunningNote)
            .filter(DunningNote.dunning_sequence_id == sequence_id)
            .order_by(DunningNote.position.asc())
            .all()
        )

    def current_version(self, sequence_id: UUID) -> int | None:
        """Read the committed version straight from the database."""
        return (
            self.db.query(DunningSequence.version)
            .filter(DunningSequence.id == sequence_id)
            .scalar()
        )

    def add(self, sequence: DunningSequence) -> DunningSequence:
        """Insert a new sequence."""
        self.db.add(sequence)
        self.db.commit()
        self.db.refresh(sequence)
        return sequence

    def save(
        self,
        sequence: DunningSequence,
        expected_version: int | None,
        records: Iterable[Any] = (),
    ) -> DunningSequence:
        """Persist a mutated sequence and its new child rows.

        Raises:
            ConcurrentModification: if the stored version differs from
                ``expected_version`` or another writer committed first.
        """
        sequence_id: UUID = sequence.id  # type: ignore[assignment]
        if expected_version is not None:
            # Autoflush is off, so this sees the committed row, not our changes.
            actual = self.current_version(sequence_id)
            if actual != expected_version:
                self.db.rollback()
                raise ConcurrentModification(expected_version, actual)

        for record in records:
            self.db.add(record)
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise ConcurrentModification(
                expected_version, self.current_version(sequence_id)
            ) from None
        self.db.refresh(sequence)
        return sequence

    # --- Reporting projections (read-only) ---

    def open_amount_rows(
        self,
        organization_id: UUID | None = None,
    ) -> list[tuple[str, Any, datetime]]:
        """(currency, amount at risk, created_at) for every sequence still open."""
        query = self.db.query(
            DunningSequence.currency,
            DunningSequence.amount_at_risk_cents,
            DunningSequence.created_at,
        ).filter(DunningSequence.status.in_([s.value for s in OPEN_STATUSES]))
        if organization_id is not None:
            query = query.filter(DunningSequence.organization_id == organization_id)
        rows: list[Any] = query.all()
        return [(str(currency), amount, created_at) for currency, amount, created_at in rows]

    def terminal_in_window(
        self,
        window_start: datetime,
        window_end: datetime,
        organization_id: UUID | None = None,
    ) -> list[DunningSequence]:
        """Sequences that reached a terminal state within [window_start, window_end)."""

        def _within(column: Any) -> Any:
            return column.isnot(None) & (column >= window_start) & (column < window_end)

        query = self.db.query(DunningSequence).filter(
            (
                (DunningSequence.status == DunningStatus.RECOVERED.value)
                & _within(DunningSequence.recovered_at)
            )
            | (
                (DunningSequence.status == DunningStatus.CANCELLED.value)
                & _within(DunningSequence.cancelled_at)
            )
            | (
                (DunningSequence.status == DunningStatus.EXHAUSTED.value)
                & _within(DunningSequence.exhausted_at)
            )
        )
        if organization_id is not None:
            query = query.filter(DunningSequence.organization_id == organization_id)
        return query.all()

    def count_with_csm(self, organization_id: UUID | None = None) -> int:
        """Open sequences that have a CSM assigned."""
        query = self.db.query(func.count(DunningSequence.id)).filter(
            DunningSequence.assigned_csm_id.isnot(None),
            DunningSequence.status.in_([s.value for s in OPEN_STATUSES]),
        )
        if organization_id is not None:
            query = query.filter(DunningSequence.organization_id == organization_id)
        return query.scalar() or 0

    def count_by_status(self, organization_id: UUID | None = None) -> dict[str, int]:
        query = self.db.query(DunningSequence.status, func.count(DunningSequence.id))
        if organization_id is not None:
            query = query.filter(DunningSequence.organization_id == organization_id)
        rows: list[Any] = query.group_by(DunningSequence.status).all()
        return {str(status): int(count) for status, count in rows}
