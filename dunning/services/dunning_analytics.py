"""Read-only reporting projections over dunning sequences.

Both aggregators compute on demand from the repository and never mutate state.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from dunning.core.errors import ValidationError
from dunning.models.dunning_sequence import OPEN_STATUSES, DunningStatus
from dunning.models.shared import utc_now
from dunning.repositories.dunning_sequence_repository import DunningSequenceRepository
from dunning.schemas.dunning_analytics import (
    CurrencyAmount,
    DayBucket,
    DunningStatisticsResponse,
    RevenueAtRiskResponse,
)

DEFAULT_REPORTING_WINDOW = timedelta(days=30)


def day_of_sequence(created_at: datetime, now: datetime) -> int:
    """Whole days elapsed since the sequence was opened (never negative)."""
    return max((now - created_at) // timedelta(days=1), 0)


class RevenueAtRiskAggregator:
    """Outstanding amounts still being pursued, by currency and by sequence age."""

    def __init__(self, db: Session):
        self.repo = DunningSequenceRepository(db)

    def compute(
        self,
        now: datetime | None = None,
        organization_id: UUID | None = None,
    ) -> RevenueAtRiskResponse:
        now = now or utc_now()
        totals: dict[str, Decimal] = defaultdict(Decimal)
        counts: dict[str, int] = defaultdict(int)
        bucket_totals: dict[tuple[int, str], Decimal] = defaultdict(Decimal)
        bucket_counts: dict[tuple[int, str], int] = defaultdict(int)

        for currency, amount, created_at in self.repo.open_amount_rows(organization_id):
            value = Decimal(str(amount))
            totals[currency] += value
            counts[currency] += 1
            key = (day_of_sequence(created_at, now), currency)
            bucket_totals[key] += value
            bucket_counts[key] += 1

        return RevenueAtRiskResponse(
            as_of=now,
            totals=[
                CurrencyAmount(
                    currency=currency,
                    amount_cents=totals[currency],
                    sequence_count=counts[currency],
                )
                for currency in sorted(totals)
            ],
            daily_buckets=[
                DayBucket(
                    day=day,
                    currency=currency,
                    amount_cents=bucket_totals[(day, currency)],
                    sequence_count=bucket_counts[(day, currency)],
                )
                for day, currency in sorted(bucket_totals)
            ],
        )


class StatisticsAggregator:
    """Status counts, recovery rate and attempts-to-recovery."""

    def __init__(self, db: Session):
        self.repo = DunningSequenceRepository(db)

    def compute(
        self,
        window_start: datetime | None = None,
        window_end: datetime | None = None,
        now: datetime | None = None,
        organization_id: UUID | None = None,
    ) -> DunningStatisticsResponse:
        now = now or utc_now()
        window_end = window_end or now
        window_start = window_start or (window_end - DEFAULT_REPORTING_WINDOW)
        if window_start >= window_end:
            raise ValidationError(
                "Reporting window start must be before its end",
                window_start=window_start,
                window_end=window_end,
            )

        raw_counts = self.repo.count_by_status(organization_id)
        counts_by_status = {status.value: raw_counts.get(status.value, 0) for status in DunningStatus}
        open_sequences = sum(counts_by_status[status.value] for status in OPEN_STATUSES)

        terminal = self.repo.terminal_in_window(window_start, window_end, organization_id)
        recovered = [s for s in terminal if s.status == DunningStatus.RECOVERED.value]
        exhausted = sum(1 for s in terminal if s.status == DunningStatus.EXHAUSTED.value)
        cancelled = sum(1 for s in terminal if s.status == DunningStatus.CANCELLED.value)

        closed = len(recovered) + exhausted + cancelled
        recovery_rate = round(len(recovered) / closed, 4) if closed else 0.0
        average_attempts = (
            round(sum(int(s.attempts_made) for s in recovered) / len(recovered), 2)
            if recovered
            else None
        )

        recovered_totals: dict[str, Decimal] = defaultdict(Decimal)
        recovered_counts: dict[str, int] = defaultdict(int)
        for sequence in recovered:
            currency = str(sequence.currency)
            recovered_totals[currency] += Decimal(str(sequence.amount_at_risk_cents))
            recovered_counts[currency] += 1

        return DunningStatisticsResponse(
            as_of=now,
            window_start=window_start,
            window_end=window_end,
            counts_by_status=counts_by_status,
            total_sequences=sum(counts_by_status.values()),
            open_sequences=open_sequences,
            escalated_open_sequences=counts_by_status[DunningStatus.ESCALATED.value],
            csm_assigned_sequences=self.repo.count_with_csm(organization_id),
            recovered_in_window=len(recovered),
            exhausted_in_window=exhausted,
            cancelled_in_window=cancelled,
            recovery_rate=recovery_rate,
            average_attempts_to_recovery=average_attempts,
            recovered_amounts=[
                CurrencyAmount(
                    currency=currency,
                    amount_cents=recovered_totals[currency],
                    sequence_count=recovered_counts[currency],
                )
                for currency in sorted(recovered_totals)
            ],
        )
