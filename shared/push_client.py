"""
Push notification transports.

Two primitives back the push channels of the notification dispatcher:

- LocalNotificationQueue: in-process outbox for immediate notifications shown
  to a connected session. No network dependency.
- ExpoPushClient: remote push through the Expo push API, addressed by the
  recipient's registered push token.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shared.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class LocalNotification:
    """A notification queued for immediate on-device display."""

    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    recipient_id: str | None = None
    queued_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class LocalNotificationQueue:
    """
    Bounded in-process queue of local notifications.

    Connected sessions collect their entries with ``drain(recipient_id)``
    (exposed as ``POST /notifications/local/drain``) and show them on-device.
    Oldest entries are dropped once ``max_size`` is reached.
    """

    def __init__(self, max_size: int = 500):
        self._items: deque[LocalNotification] = deque(maxlen=max_size)

    def enqueue(
        self,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
        recipient_id: str | None = None,
    ) -> LocalNotification:
        notification = LocalNotification(
            title=title, body=body, data=dict(data or {}), recipient_id=recipient_id
        )
        self._items.append(notification)
        logger.debug(f"Local notification queued: {title}", extra={"recipient_id": recipient_id})
        return notification

    def drain(self, recipient_id: str | None = None) -> list[LocalNotification]:
        """Return and remove queued notifications, oldest first (one recipient's if given)."""
        if recipient_id is None:
            items = list(self._items)
            self._items.clear()
            return items

        items = [n for n in self._items if n.recipient_id == recipient_id]
        kept = [n for n in self._items if n.recipient_id != recipient_id]
        self._items.clear()
        self._items.extend(kept)
        return items

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class PushDeliveryResult:
    """
    Outcome of a remote push request.

    Attributes:
        success: True when the push service accepted the message
        ticket_id: Push ticket id returned by Expo (if accepted)
        error: Error message reported by Expo (if rejected)
    """

    success: bool
    ticket_id: str | None = None
    error: str | None = None


class ExpoPushClient:
    """Client for the Expo push notification API."""

    def __init__(self, push_url: str | None = None, access_token: str | None = None):
        settings = get_settings()
        self.push_url = push_url or settings.EXPO_PUSH_URL
        access_token = access_token if access_token is not None else settings.EXPO_ACCESS_TOKEN

        self.headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if access_token:
            self.headers["Authorization"] = f"Bearer {access_token}"

        logger.info(f"ExpoPushClient initialized: {self.push_url}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(httpx.HTTPError),
        reraise=True,
    )
    async def send_remote(
        self,
        address: str,
        title: str,
        body: str,
        payload: dict[str, Any] | None = None,
    ) -> PushDeliveryResult:
        """
        Send a push notification to one Expo push token.

        Args:
            address: Expo push token (ExponentPushToken[...])
            title: Notification title
            body: Notification body
            payload: Data mirrored into the notification's ``data`` field

        Returns:
            PushDeliveryResult describing the push ticket

        Raises:
            httpx.HTTPError: After retries are exhausted
        """
        message = {
            "to": address,
            "sound": "default",
            "title": title,
            "body": body,
            "data": payload or {},
            "priority": "high",
            "channelId": "default",
        }

        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(
                    self.push_url,
                    json=message,
                    headers=self.headers,
                    timeout=10.0,
                )
                response.raise_for_status()

            except httpx.HTTPError as e:
                logger.error(f"HTTP error sending push notification: {e}")
                raise

        ticket = response.json().get("data") or {}
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}

        if ticket.get("status") == "error":
            logger.warning(f"Push notification rejected by Expo: {ticket.get('message')}")
            return PushDeliveryResult(success=False, error=ticket.get("message"))

        logger.debug(f"Push notification accepted: ticket={ticket.get('id')}")
        return PushDeliveryResult(success=True, ticket_id=ticket.get("id"))
