"""CSM assignment port and adapters."""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from uuid import UUID

import httpx

from dunning.core.config import settings
from dunning.core.errors import GatewayError

logger = logging.getLogger(__name__)


class CsmAssignerBase(ABC):
    """Abstract base class for CSM assignment."""

    @abstractmethod
    def assign(self, preferred_csm_id: UUID | None = None) -> UUID:
        """Pick the CSM who will own an escalated sequence."""
        pass  # pragma: no cover


class RoundRobinCsmAssigner(CsmAssignerBase):
    """Hands out CSMs from a fixed pool in turn; honours a preferred CSM."""

    def __init__(self, csm_ids: Iterable[UUID | str]):
        self.csm_ids = [UUID(str(csm_id)) for csm_id in csm_ids]
        self._cycle = itertools.cycle(self.csm_ids) if self.csm_ids else None
        self._lock = threading.Lock()

    def assign(self, preferred_csm_id: UUID | None = None) -> UUID:
        if preferred_csm_id is not None:
            return preferred_csm_id
        if self._cycle is None:
            raise GatewayError("No CSMs configured for assignment", transient=False)
        with self._lock:
            return next(self._cycle)


class HttpCsmAssigner(CsmAssignerBase):
    """Asks the customer-success service to pick (or confirm) an owner."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.csm_service_url).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def assign(self, preferred_csm_id: UUID | None = None) -> UUID:
        payload = {"preferred_csm_id": str(preferred_csm_id) if preferred_csm_id else None}
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(f"{self.base_url}/assignments", json=payload)
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise GatewayError(
                f"CSM service returned {exc.response.status_code}",
                transient=exc.response.status_code >= 500,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("CSM assignment request failed: %s", exc)
            raise GatewayError(f"CSM assignment failed: {exc}", transient=True) from exc

        try:
            return UUID(str(resp.json()["csm_id"]))
        except (KeyError, ValueError) as exc:
            raise GatewayError("CSM service returned no csm_id", transient=False) from exc


def get_csm_assigner() -> CsmAssignerBase:
    """Build the configured CSM assigner."""
    if settings.csm_service_url:
        return HttpCsmAssigner()
    return RoundRobinCsmAssigner(settings.csm_pool)
