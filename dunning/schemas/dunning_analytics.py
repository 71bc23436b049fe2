"""Reporting schemas: revenue at risk and dunning statistics."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class CurrencyAmount(BaseModel):
    currency: str
    amount_cents: Decimal
    sequence_count: int


class DayBucket(BaseModel):
    """Open amount for sequences that are ``day`` full days old."""

    day: int
    currency: str
    amount_cents: Decimal
    sequence_count: int


class RevenueAtRiskResponse(BaseModel):
    as_of: datetime
    totals: list[CurrencyAmount] = Field(default_factory=list)
    daily_buckets: list[DayBucket] = Field(default_factory=list)


class DunningStatisticsResponse(BaseModel):
    as_of: datetime
    window_start: datetime
    window_end: datetime
    counts_by_status: dict[str, int]
    total_sequences: int
    open_sequences: int
    escalated_open_sequences: int
    csm_assigned_sequences: int
    recovered_in_window: int
    exhausted_in_window: int
    cancelled_in_window: int
    recovery_rate: float
    average_attempts_to_recovery: float | None = None
    recovered_amounts: list[CurrencyAmount] = Field(default_factory=list)
