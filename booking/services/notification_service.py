"""
In-app notification service.

Persists and manages the Notification records shown in each user's
notification center:
- create_notification: Persist a new unread notification
- get_user_notifications / subscribe_to_notifications: Newest first
- mark_as_read / mark_all_as_read: Read-state transitions
- delete_notification / delete_all_notifications: Recipient cleanup
- cleanup_old_notifications: Retention job (default 90 days)

Notifications are only mutated through read-state transitions; everything
else about them is immutable once created.
"""

import inspect
import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Callable

from booking.formatting import now_iso
from booking.models import Notification
from database.document_store import (
    NOTIFICATIONS,
    DocumentStore,
    FieldFilter,
    FilterOp,
    OrderBy,
    StoreDocument,
)
from database.models import NotificationType, OwnerRole

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 90
CLEANUP_BATCH_SIZE = 500

NotificationsCallback = Callable[[list[Notification]], Any]


def _to_notification(doc: StoreDocument) -> Notification:
    return Notification.model_validate({**doc.data, "id": doc.id})


class NotificationService:
    """CRUD and subscriptions for in-app notifications."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def create_notification(
        self,
        recipient_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        recipient_role: OwnerRole | None = None,
    ) -> str:
        """
        Persist a new unread notification.

        Returns:
            The new notification id
        """
        body = {
            "recipientId": recipient_id,
            "recipientRole": recipient_role.value if recipient_role else None,
            "type": notification_type.value,
            "title": title,
            "message": message,
            "data": data or {},
            "isRead": False,
            "createdAt": now_iso(),
            "readAt": None,
        }
        notification_id = await self.store.create(NOTIFICATIONS, body)

        logger.info(
            f"Notification created: {notification_type.value} for {recipient_id}",
            extra={"recipient_id": recipient_id},
        )
        return notification_id

    async def get_user_notifications(self, user_id: str) -> list[Notification]:
        docs = await self.store.query(
            NOTIFICATIONS,
            [FieldFilter("recipientId", FilterOp.EQUALS, user_id)],
            order_by=OrderBy("createdAt", descending=True),
        )
        return [_to_notification(doc) for doc in docs]

    async def get_unread_count(self, user_id: str) -> int:
        docs = await self.store.query(
            NOTIFICATIONS,
            [
                FieldFilter("recipientId", FilterOp.EQUALS, user_id),
                FieldFilter("isRead", FilterOp.EQUALS, False),
            ],
        )
        return len(docs)

    def subscribe_to_notifications(
        self, user_id: str, callback: NotificationsCallback
    ) -> Callable[[], None]:
        """
        Subscribe to a user's notifications, newest first.

        Returns:
            Function that detaches the subscription
        """

        async def on_batch(docs: list[StoreDocument]) -> None:
            notifications = sorted(
                (_to_notification(doc) for doc in docs),
                key=lambda n: n.created_at or "",
                reverse=True,
            )
            result = callback(notifications)
            if inspect.isawaitable(result):
                await result

        def on_error(error: Exception) -> None:
            logger.error(
                f"Error in notification subscription for {user_id}: {error}",
                extra={"recipient_id": user_id},
            )

        subscription = self.store.subscribe(
            NOTIFICATIONS,
            [FieldFilter("recipientId", FilterOp.EQUALS, user_id)],
            on_batch,
            on_error,
        )
        return subscription.unsubscribe

    async def mark_as_read(self, notification_id: str) -> None:
        """
        Mark one notification as read.

        Raises:
            DocumentNotFoundError: If the notification does not exist
        """
        await self.store.update(
            NOTIFICATIONS, notification_id, {"isRead": True, "readAt": now_iso()}
        )
        logger.debug(f"Notification marked as read: {notification_id}")

    async def mark_all_as_read(self, user_id: str) -> int:
        """
        Mark every unread notification of a user as read.

        Returns:
            Number of notifications updated
        """
        unread = await self.store.query(
            NOTIFICATIONS,
            [
                FieldFilter("recipientId", FilterOp.EQUALS, user_id),
                FieldFilter("isRead", FilterOp.EQUALS, False),
            ],
        )
        read_at = now_iso()
        for doc in unread:
            await self.store.update(NOTIFICATIONS, doc.id, {"isRead": True, "readAt": read_at})

        logger.info(
            f"Marked {len(unread)} notifications as read for {user_id}",
            extra={"recipient_id": user_id},
        )
        return len(unread)

    async def delete_notification(self, notification_id: str) -> None:
        await self.store.delete(NOTIFICATIONS, notification_id)
        logger.debug(f"Notification deleted: {notification_id}")

    async def delete_all_notifications(self, user_id: str) -> int:
        docs = await self.store.query(
            NOTIFICATIONS, [FieldFilter("recipientId", FilterOp.EQUALS, user_id)]
        )
        for doc in docs:
            await self.store.delete(NOTIFICATIONS, doc.id)

        logger.info(
            f"Deleted {len(docs)} notifications for {user_id}",
            extra={"recipient_id": user_id},
        )
        return len(docs)

    async def cleanup_old_notifications(
        self,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        now: datetime | None = None,
    ) -> int:
        """
        Delete notifications created more than ``retention_days`` ago.

        Scans oldest first in batches of CLEANUP_BATCH_SIZE.

        Returns:
            Number of notifications deleted
        """
        cutoff = ((now or datetime.now(UTC)) - timedelta(days=retention_days)).isoformat()
        total_deleted = 0

        while True:
            batch = await self.store.query(
                NOTIFICATIONS,
                order_by=OrderBy("createdAt"),
                limit=CLEANUP_BATCH_SIZE,
            )
            expired = [doc for doc in batch if (doc.data.get("createdAt") or "") < cutoff]
            for doc in expired:
                await self.store.delete(NOTIFICATIONS, doc.id)
            total_deleted += len(expired)

            # Batch reached unexpired notifications (or the end of the collection)
            if len(expired) < len(batch) or len(batch) < CLEANUP_BATCH_SIZE:
                break

        logger.info(f"Deleted {total_deleted} notifications older than {retention_days} days")
        return total_deleted
