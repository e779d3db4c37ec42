"""
mealmatch.notifications.gateway: Push delivery gateway implementations.

Design: every gateway implements the ``PushGateway`` ABC with a single async
``send(envelope)`` method that either returns (accepted) or raises
``NotificationDeliveryFailure``.  Gateways never retry.

Current implementations:
    ExpoPushGateway: Expo push service over HTTPS
    NullPushGateway: drops everything (push disabled / tests)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from mealmatch import config
from mealmatch.core.logging import mask_token
from mealmatch.domain.errors import NotificationDeliveryFailure
from mealmatch.domain.models import NotificationEnvelope

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------

class PushGateway(ABC):
    """Abstract push delivery channel."""

    @abstractmethod
    async def send(self, envelope: NotificationEnvelope) -> None:
        """Submit ``envelope`` once.  Raises ``NotificationDeliveryFailure``."""


# ---------------------------------------------------------------------------
# Expo push service
# ---------------------------------------------------------------------------

class ExpoPushGateway(PushGateway):
    """Posts one message to the Expo push API with a bounded timeout."""

    _HEADERS = {
        "Accept": "application/json",
        "Accept-Encoding": "gzip, deflate",
        "Content-Type": "application/json",
    }

    def __init__(
        self,
        url: str = config.PUSH_GATEWAY_URL,
        timeout: float = config.PUSH_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def send(self, envelope: NotificationEnvelope) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self._url, json=envelope.to_message(), headers=self._HEADERS)
        except httpx.TimeoutException as exc:
            raise NotificationDeliveryFailure(
                f"push gateway timed out after {self._timeout}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise NotificationDeliveryFailure(f"push gateway unreachable: {exc}") from exc

        if resp.status_code >= 400:
            raise NotificationDeliveryFailure(
                f"push gateway returned HTTP {resp.status_code}: {resp.text[:300]}"
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise NotificationDeliveryFailure("push gateway returned a non-JSON body") from exc

        self._raise_for_ticket(body)
        logger.debug("ExpoPushGateway: accepted for %s", mask_token(envelope.to))

    @staticmethod
    def _raise_for_ticket(body: object) -> None:
        """Expo answers 200 even for rejected tokens; the ticket says so."""
        if not isinstance(body, dict):
            raise NotificationDeliveryFailure("push gateway returned an unexpected body")

        errors = body.get("errors")
        if errors:
            raise NotificationDeliveryFailure(f"push gateway errors: {errors}")

        data = body.get("data")
        tickets = data if isinstance(data, list) else [data]
        for ticket in tickets:
            if isinstance(ticket, dict) and ticket.get("status") == "error":
                details = ticket.get("details") or {}
                reason = details.get("error") if isinstance(details, dict) else None
                raise NotificationDeliveryFailure(
                    f"push ticket error: {ticket.get('message', 'unknown')}"
                    + (f" ({reason})" if reason else "")
                )


# ---------------------------------------------------------------------------
# No-op
# ---------------------------------------------------------------------------

class NullPushGateway(PushGateway):
    """Swallows envelopes silently.  Used when push is disabled."""

    async def send(self, envelope: NotificationEnvelope) -> None:
        logger.debug("NullPushGateway: dropped envelope for %s", mask_token(envelope.to))


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_gateway_from_settings() -> PushGateway:
    """Expo gateway when push is enabled and a URL is configured, else null."""
    if config.PUSH_ENABLED and config.PUSH_GATEWAY_URL:
        return ExpoPushGateway(config.PUSH_GATEWAY_URL, config.PUSH_TIMEOUT_SECONDS)
    logger.info("Push notifications disabled; using NullPushGateway")
    return NullPushGateway()
