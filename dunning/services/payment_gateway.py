"""Payment gateway port and adapters.

The engine never processes payments itself; it asks a gateway to charge an
invoice under an idempotency key. Transient failures (timeouts, connection
errors, 5xx, rate limits) are retried inside the adapter and only reported as
``TRANSIENT_ERROR`` once its own retries are spent. A definitive approve or
decline is what consumes a dunning attempt.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import UUID

import httpx
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from dunning.core.config import settings

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30.0


class ChargeResult(str, Enum):
    APPROVED = "approved"
    DECLINED = "declined"
    TRANSIENT_ERROR = "transient_error"


@dataclass
class ChargeResponse:
    """Outcome of a charge request."""

    result: ChargeResult
    decline_reason: str | None = None
    provider_reference: str | None = None


class _RetryableResponse(Exception):
    """A 429 or 5xx reply; the charge may be tried again under the same key."""

    def __init__(self, status_code: int):
        super().__init__(f"Gateway returned {status_code}")
        self.status_code = status_code


class PaymentGatewayBase(ABC):
    """Abstract base class for payment gateways."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the gateway name."""
        pass  # pragma: no cover

    @abstractmethod
    def charge(self, invoice_id: UUID, idempotency_key: str) -> ChargeResponse:
        """Charge the outstanding balance of an invoice."""
        pass  # pragma: no cover


class HttpPaymentGateway(PaymentGatewayBase):
    """Charges invoices through a billing gateway's REST API.

    ``POST {base_url}/invoices/{invoice_id}/charge`` with an ``Idempotency-Key``
    header; a JSON body ``{"status": "approved" | "declined", ...}`` is expected.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = (base_url or settings.payment_gateway_url).rstrip("/")
        self.api_key = api_key or settings.payment_gateway_api_key
        self.timeout = timeout or settings.payment_gateway_timeout_seconds
        self.max_retries = (
            max_retries if max_retries is not None else settings.payment_gateway_max_retries
        )
        self.backoff_seconds = (
            backoff_seconds
            if backoff_seconds is not None
            else settings.payment_gateway_backoff_seconds
        )
        self._transport = transport
        self._sleep = sleep

    @property
    def name(self) -> str:
        return "http"

    def _post(self, invoice_id: UUID, idempotency_key: str) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Idempotency-Key": idempotency_key,
            "Content-Type": "application/json",
        }
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            return client.post(
                f"{self.base_url}/invoices/{invoice_id}/charge",
                json={"invoice_id": str(invoice_id)},
                headers=headers,
            )

    def _send(self, invoice_id: UUID, idempotency_key: str) -> httpx.Response:
        resp = self._post(invoice_id, idempotency_key)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise _RetryableResponse(resp.status_code)
        return resp

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Gateway request for invoice %s failed (try %d/%d): %s",
            retry_state.args[0],
            retry_state.attempt_number,
            self.max_retries + 1,
            exc,
        )

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=MAX_BACKOFF_SECONDS),
            retry=retry_if_exception_type((httpx.HTTPError, _RetryableResponse)),
            before_sleep=self._log_retry,
            sleep=self._sleep,
        )

    def charge(self, invoice_id: UUID, idempotency_key: str) -> ChargeResponse:
        try:
            resp = self._retrying()(self._send, invoice_id, idempotency_key)
        except RetryError as exc:
            logger.warning(
                "Gateway gave up on invoice %s after %d tries: %s",
                invoice_id,
                exc.last_attempt.attempt_number,
                exc.last_attempt.exception(),
            )
            return ChargeResponse(result=ChargeResult.TRANSIENT_ERROR)
        return self._parse(resp)

    @staticmethod
    def _parse(resp: httpx.Response) -> ChargeResponse:
        try:
            body: dict[str, Any] = resp.json()
        except ValueError:
            body = {}

        status = str(body.get("status", "")).lower()
        reference = body.get("id") or body.get("reference")
        if 200 <= resp.status_code < 300 and status in ("approved", "succeeded", "paid"):
            return ChargeResponse(
                result=ChargeResult.APPROVED,
                provider_reference=str(reference) if reference else None,
            )
        if status in ("declined", "failed") or resp.status_code in (402, 422):
            reason = body.get("decline_reason") or body.get("message") or f"HTTP {resp.status_code}"
            return ChargeResponse(
                result=ChargeResult.DECLINED,
                decline_reason=str(reason),
                provider_reference=str(reference) if reference else None,
            )
        # Anything else (auth errors, unknown bodies) cannot be classified as a decline
        logger.error("Unexpected gateway response %d: %s", resp.status_code, resp.text[:500])
        return ChargeResponse(result=ChargeResult.TRANSIENT_ERROR)


def get_payment_gateway(name: str | None = None) -> PaymentGatewayBase:
    """Build the configured payment gateway."""
    gateway_name = name or settings.payment_gateway
    if gateway_name == "http":
        return HttpPaymentGateway()
    raise ValueError(f"Unknown payment gateway: {gateway_name}")
