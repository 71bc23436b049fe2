"""Sorting for list endpoints (``?order_by=field:direction``)."""

from __future__ import annotations

from collections.abc import Collection

from sqlalchemy import asc, desc
from sqlalchemy.orm import Query

from dunning.core.database import Base

SEQUENCE_SORT_FIELDS = frozenset(
    {
        "created_at",
        "updated_at",
        "next_retry_at",
        "amount_at_risk_cents",
        "attempts_made",
        "status",
        "escalated_at",
    }
)


def parse_order_by(
    order_by: str | None,
    allowed_fields: Collection[str],
    default: tuple[str, str] = ("created_at", "desc"),
) -> tuple[str, str]:
    """Return ``(field, direction)``; unknown fields give the default.

    A missing direction means ascending, an invalid one keeps the default
    direction for the requested field.
    """
    if not order_by:
        return default
    field, _, direction = order_by.partition(":")
    if field not in allowed_fields:
        return default
    if not direction:
        return field, "asc"
    return field, direction if direction in ("asc", "desc") else default[1]


def apply_order_by(
    query: Query,  # type: ignore[type-arg]
    model: type[Base],
    order_by: str | None,
    allowed_fields: Collection[str] = SEQUENCE_SORT_FIELDS,
) -> Query:  # type: ignore[type-arg]
    field, direction = parse_order_by(
        order_by, [f for f in allowed_fields if hasattr(model, f)]
    )
    order_func = asc if direction == "asc" else desc
    return query.order_by(order_func(getattr(model, field)))
