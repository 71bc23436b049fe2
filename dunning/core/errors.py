"""Error taxonomy for the dunning engine.

Every error carries a machine-readable ``kind`` and a ``details`` mapping so the
HTTP layer (and the orchestrator's tick report) can surface it without losing
structure.
"""

from datetime import datetime
from typing import Any
from uuid import UUID


class DunningError(Exception):
    """Base class for all dunning-level errors."""

    kind = "dunning_error"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "details": {key: _jsonable(value) for key, value in self.details.items()},
        }


class NotFound(DunningError):
    kind = "not_found"
    status_code = 404

    def __init__(self, sequence_id: UUID, resource: str = "Dunning sequence"):
        super().__init__(f"{resource} {sequence_id} not found", sequence_id=sequence_id)
        self.sequence_id = sequence_id


class InvalidTransition(DunningError):
    kind = "invalid_transition"
    status_code = 409

    def __init__(self, current_state: str, event: str):
        super().__init__(
            f"Cannot apply '{event}' to a sequence in state '{current_state}'",
            current_state=current_state,
            event=event,
        )
        self.current_state = current_state
        self.event = event


class TooEarlyForRetry(DunningError):
    kind = "too_early_for_retry"
    status_code = 409

    def __init__(self, next_retry_at: datetime):
        super().__init__(
            f"Next retry is not due until {next_retry_at.isoformat()}",
            next_retry_at=next_retry_at,
        )
        self.next_retry_at = next_retry_at


class ConcurrentModification(DunningError):
    kind = "concurrent_modification"
    status_code = 409

    def __init__(self, expected_version: int | None, actual_version: int | None):
        super().__init__(
            f"Sequence was modified concurrently (expected version {expected_version}, "
            f"found {actual_version})",
            expected_version=expected_version,
            actual_version=actual_version,
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


class GatewayError(DunningError):
    kind = "gateway_error"

    def __init__(self, message: str, transient: bool, **details: Any):
        super().__init__(message, transient=transient, **details)
        self.transient = transient

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return 503 if self.transient else 502


class ValidationError(DunningError):
    kind = "validation_error"
    status_code = 422


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value
