"""Retry policy and scheduler for dunning sequences.

A policy is an ordered list of day offsets. Attempt ``n`` (1-indexed) is
scheduled at ``anchor + offsets[n - 1]``, so after ``n`` attempts have been made
the next one is due at ``anchor + offsets[n]``. The anchor is the sequence's
creation time, moved forward by however long the sequence spent paused.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from dunning.core.config import settings
from dunning.core.errors import ValidationError
from dunning.models.dunning_sequence import NotificationStepStatus

DEFAULT_OFFSETS_DAYS: tuple[int, ...] = (1, 3, 7, 14, 21)
DEFAULT_ESCALATION_THRESHOLD = 2


def validate_offsets(offsets_days: Sequence[int]) -> tuple[int, ...]:
    """Validate a list of day offsets and return it as a tuple.

    Raises:
        ValidationError: if the list is empty, contains negative or
            non-integer values, or is not strictly increasing.
    """
    offsets = tuple(offsets_days)
    if not offsets:
        raise ValidationError("Retry policy needs at least one offset", offsets_days=list(offsets))
    for offset in offsets:
        if isinstance(offset, bool) or not isinstance(offset, int):
            raise ValidationError(
                "Retry offsets must be whole days", offsets_days=list(offsets)
            )
        if offset < 0:
            raise ValidationError(
                "Retry offsets must not be negative", offsets_days=list(offsets)
            )
    for previous, current in zip(offsets, offsets[1:], strict=False):
        if current <= previous:
            raise ValidationError(
                "Retry offsets must be strictly increasing", offsets_days=list(offsets)
            )
    return offsets


@dataclass(frozen=True)
class NotificationStep:
    """A customer notice sent ``day`` days after the payment failed."""

    day: int
    include_payment_link: bool = True


def validate_notification_steps(steps: Sequence[NotificationStep]) -> tuple[NotificationStep, ...]:
    """Validate a notice schedule; an empty schedule sends nothing.

    Raises:
        ValidationError: if a day is negative or the days are not strictly
            increasing.
    """
    validated = tuple(steps)
    days = [step.day for step in validated]
    if any(day < 0 for day in days):
        raise ValidationError("Notification days must not be negative", notification_days=days)
    for previous, current in zip(days, days[1:], strict=False):
        if current <= previous:
            raise ValidationError(
                "Notification days must be strictly increasing", notification_days=days
            )
    return validated


def notification_steps_from_settings() -> tuple[NotificationStep, ...]:
    return tuple(
        NotificationStep(
            day=day,
            include_payment_link=day >= settings.DUNNING_PAYMENT_LINK_FROM_DAY,
        )
        for day in settings.DUNNING_NOTIFICATION_DAYS
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Validated retry schedule, escalation threshold and notice schedule."""

    offsets_days: tuple[int, ...] = field(default=DEFAULT_OFFSETS_DAYS)
    escalation_threshold: int = DEFAULT_ESCALATION_THRESHOLD
    notification_steps: tuple[NotificationStep, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "offsets_days", validate_offsets(self.offsets_days))
        object.__setattr__(
            self, "notification_steps", validate_notification_steps(self.notification_steps)
        )
        if self.escalation_threshold < 1:
            raise ValidationError(
                "Escalation threshold must be at least 1",
                escalation_threshold=self.escalation_threshold,
            )

    @property
    def max_attempts(self) -> int:
        return len(self.offsets_days)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            offsets_days=tuple(settings.DUNNING_RETRY_OFFSETS_DAYS),
            escalation_threshold=settings.DUNNING_ESCALATION_THRESHOLD,
            notification_steps=notification_steps_from_settings(),
        )


class RetryScheduler:
    """Pure mapping from attempt number to the next retry time."""

    def __init__(self, policy: RetryPolicy):
        self.policy = policy

    @classmethod
    def for_sequence(cls, sequence: Any) -> "RetryScheduler":
        """Build a scheduler from the policy frozen on a sequence."""
        return cls(
            RetryPolicy(
                offsets_days=tuple(sequence.retry_offsets_days),
                escalation_threshold=int(sequence.escalation_threshold),
            )
        )

    @property
    def max_attempts(self) -> int:
        return self.policy.max_attempts

    def next_offset(self, attempts_made: int) -> timedelta | None:
        """Offset from the anchor for the retry after ``attempts_made`` attempts.

        Returns None once every attempt has been used.
        """
        if attempts_made < 0:
            raise ValueError("attempts_made must not be negative")
        if attempts_made >= self.max_attempts:
            return None
        return timedelta(days=self.policy.offsets_days[attempts_made])

    def first_retry_at(self, anchor: datetime) -> datetime:
        return anchor + timedelta(days=self.policy.offsets_days[0])

    def next_retry_at(self, anchor: datetime, attempts_made: int) -> datetime | None:
        offset = self.next_offset(attempts_made)
        if offset is None:
            return None
        return anchor + offset

    def should_escalate(self, consecutive_failures: int) -> bool:
        return consecutive_failures >= self.policy.escalation_threshold

    @staticmethod
    def remaining_offset(sequence: Any, now: datetime) -> timedelta:
        """Time left until the sequence's next retry, clamped at zero."""
        next_retry_at: datetime | None = sequence.next_retry_at
        if next_retry_at is None:
            return timedelta(0)
        return max(next_retry_at - now, timedelta(0))

    @staticmethod
    def next_notification_at(sequence: Any) -> datetime | None:
        """When the first pending notice falls due, measured from the anchor."""
        for step in sequence.notification_steps or ():
            if step["status"] == NotificationStepStatus.PENDING.value:
                return sequence.schedule_anchor_at + timedelta(days=step["day"])
        return None

    @staticmethod
    def due_notification_index(sequence: Any, now: datetime) -> int | None:
        """Index of the latest pending notice that is due at ``now``.

        Earlier pending notices are superseded by it, so a sequence that was
        paused across several notice days sends one notice on resume.
        """
        anchor: datetime = sequence.schedule_anchor_at
        due: int | None = None
        for index, step in enumerate(sequence.notification_steps or ()):
            if anchor + timedelta(days=step["day"]) > now:
                break
            if step["status"] == NotificationStepStatus.PENDING.value:
                due = index
        return due
