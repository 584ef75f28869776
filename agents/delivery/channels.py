"""
Push Delivery Channels
Channel implementation for Expo push notifications.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog

from agents.delivery.models import PushMessage, PushReceipt
from backend.core.config import settings
from backend.core.exceptions import PushDeliveryError

logger = structlog.get_logger(__name__)


class BaseChannel(ABC):
    """Abstract base class for delivery channels."""

    @abstractmethod
    async def send(self, message: PushMessage) -> PushReceipt:
        """Send one message; raise PushDeliveryError if not accepted."""
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if this channel is properly configured."""
        pass


class ExpoPushChannel(BaseChannel):
    """
    Expo push API channel.

    Sends exactly once per call. Retrying is left to whoever decides
    whether a member may be notified again.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        push_url: Optional[str] = None,
        access_token: Optional[str] = None,
    ):
        self.logger = structlog.get_logger().bind(channel="expo")
        self._http_client = http_client
        self.push_url = push_url or settings.expo_push_url
        self.access_token = access_token if access_token is not None else settings.expo_access_token

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-loaded HTTP client for the Expo API."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.push_timeout_seconds),
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
            )
        return self._http_client

    def is_configured(self) -> bool:
        return bool(self.push_url)

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    @staticmethod
    def _ticket(body: Any) -> dict[str, Any]:
        data = body.get("data") if isinstance(body, dict) else None
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            raise PushDeliveryError("Malformed Expo response", provider_error="malformed_response")
        return data

    async def send(self, message: PushMessage) -> PushReceipt:
        """
        Send a push notification via Expo.

        Raises:
            PushDeliveryError: On transport errors, non-2xx responses or an
                error ticket (e.g. DeviceNotRegistered).
        """
        try:
            response = await self.http_client.post(
                self.push_url,
                json=message.model_dump(exclude_none=True),
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            self.logger.warning("expo_request_failed", error=str(e))
            raise PushDeliveryError(f"Expo request failed: {e}") from e

        if response.status_code >= 400:
            self.logger.warning("expo_http_error", status_code=response.status_code)
            raise PushDeliveryError(
                f"Expo returned HTTP {response.status_code}",
                provider_error=response.text[:200],
            )

        try:
            body = response.json()
        except ValueError as e:
            raise PushDeliveryError("Expo response is not JSON") from e

        ticket = self._ticket(body)

        if ticket.get("status") != "ok":
            details = ticket.get("details") or {}
            provider_error = details.get("error") if isinstance(details, dict) else None
            self.logger.warning(
                "expo_ticket_error",
                provider_error=provider_error,
                message=ticket.get("message"),
            )
            raise PushDeliveryError(
                ticket.get("message") or "Expo rejected the message",
                provider_error=provider_error,
            )

        return PushReceipt(
            provider_message_id=ticket.get("id"),
            accepted_at=datetime.now(timezone.utc),
        )

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
