"""Outbound notification port for dunning sequences.

Delivery (email, SMS, payment links) belongs to another system; this module
only hands it signed events. Content is never persisted here.
"""

import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

import httpx

from dunning.core.config import settings
from dunning.core.errors import GatewayError
from dunning.models.dunning_sequence import DunningSequence

logger = logging.getLogger(__name__)

PAYMENT_LINK_REQUESTED = "dunning.payment_link_requested"
PAYMENT_RECOVERED = "dunning.payment_recovered"
DUNNING_NOTICE = "dunning.notice_due"


def generate_hmac_signature(payload_bytes: bytes, secret: str) -> str:
    """Generate HMAC-SHA256 signature for a notification payload.

    Args:
        payload_bytes: The raw payload bytes to sign.
        secret: The secret key for HMAC generation.

    Returns:
        Hex-encoded HMAC-SHA256 signature.
    """
    return hmac.new(
        secret.encode("utf-8"),
        payload_bytes,
        hashlib.sha256,
    ).hexdigest()


def sequence_payload(sequence: DunningSequence) -> dict[str, Any]:
    return {
        "dunning_sequence_id": str(sequence.id),
        "organization_id": str(sequence.organization_id),
        "invoice_id": str(sequence.invoice_id),
        "subscription_id": str(sequence.subscription_id),
        "amount_cents": str(sequence.amount_at_risk_cents),
        "currency": sequence.currency,
        "status": sequence.status,
        "attempts_made": sequence.attempts_made,
    }


class NotificationSenderBase(ABC):
    """Abstract base class for notification delivery."""

    @abstractmethod
    def send_payment_link(self, sequence: DunningSequence) -> None:
        """Ask the customer to pay via a hosted payment link."""
        pass  # pragma: no cover

    @abstractmethod
    def send_dunning_notice(
        self, sequence: DunningSequence, day: int, include_payment_link: bool
    ) -> None:
        """Remind the customer of the overdue payment on a scheduled notice day."""
        pass  # pragma: no cover

    @abstractmethod
    def send_recovery_confirmation(self, sequence: DunningSequence) -> None:
        """Tell the customer their overdue payment was recovered."""
        pass  # pragma: no cover


class WebhookNotificationSender(NotificationSenderBase):
    """Posts HMAC-signed notification events to the messaging service."""

    def __init__(
        self,
        url: str | None = None,
        secret: str | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = url or settings.notification_webhook_url
        self.secret = secret or settings.webhook_secret
        self.timeout = timeout
        self._transport = transport

    def _post(
        self,
        event_type: str,
        sequence: DunningSequence,
        extra: dict[str, Any] | None = None,
    ) -> None:
        if not self.url:
            raise GatewayError("Notification webhook URL is not configured", transient=False)

        body = {
            "event_type": event_type,
            "sent_at": datetime.now(UTC).isoformat(),
            "data": {**sequence_payload(sequence), **(extra or {})},
        }
        payload_bytes = json.dumps(body, default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Dunning-Signature": generate_hmac_signature(payload_bytes, self.secret),
            "X-Dunning-Event": event_type,
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(self.url, content=payload_bytes, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Notification %s for %s failed: %s", event_type, sequence.id, exc)
            raise GatewayError(
                f"Notification delivery failed: {exc}", transient=True, event_type=event_type
            ) from exc

        if not 200 <= resp.status_code < 300:
            raise GatewayError(
                f"Notification service returned {resp.status_code}",
                transient=resp.status_code >= 500,
                event_type=event_type,
                http_status=resp.status_code,
            )

    def send_payment_link(self, sequence: DunningSequence) -> None:
        self._post(PAYMENT_LINK_REQUESTED, sequence)

    def send_dunning_notice(
        self, sequence: DunningSequence, day: int, include_payment_link: bool
    ) -> None:
        self._post(
            DUNNING_NOTICE,
            sequence,
            {"notice_day": day, "include_payment_link": include_payment_link},
        )

    def send_recovery_confirmation(self, sequence: DunningSequence) -> None:
        self._post(PAYMENT_RECOVERED, sequence)


def get_notification_sender() -> NotificationSenderBase:
    """Build the configured notification sender."""
    return WebhookNotificationSender()
