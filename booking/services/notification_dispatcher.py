"""
Notification dispatcher.

Delivers one domain event to one recipient across every channel:

1. local_push: immediate on-device notification (in-process queue)
2. remote_push: Expo push to the recipient's registered token (skipped if none)
3. email: templated HTML email (skipped if the recipient has no address)
4. in_app: persisted Notification record with isRead=False

Architecture:
- Channels run in order as an explicit task list; each task returns a
  ChannelResult and a failing task never stops the ones after it.
- Remote push and email go through circuit breakers, so a provider outage
  fails fast instead of retrying on every dispatch.
- dispatch() never raises for a channel failure. It raises DispatchError only
  when the event has no recipient and nothing can be attempted.
"""

import html
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import pybreaker

from booking.formatting import format_date_long, format_time_12h
from booking.models import ServiceStylistPair
from booking.services.notification_service import NotificationService
from database.document_store import USERS, DocumentStore
from database.models import NotificationType, OwnerRole
from shared.circuit_breaker import call_with_breaker, email_breaker, push_breaker
from shared.email_client import EmailClient
from shared.push_client import ExpoPushClient, LocalNotificationQueue

logger = logging.getLogger(__name__)


class DispatchError(Exception):
    """Raised when an event cannot be dispatched at all."""


class DispatchEvent(str, Enum):
    CREATED = "created"
    CANCELLED = "cancelled"
    CONFIRMED = "confirmed"
    IN_SERVICE = "in_service"
    COMPLETED = "completed"
    RESCHEDULED = "rescheduled"
    REMINDER = "reminder"
    WALK_IN = "walk_in"
    TRANSACTION_PAID = "transaction_paid"

    def __str__(self) -> str:
        return self.value


EVENT_NOTIFICATION_TYPES = {
    DispatchEvent.CREATED: NotificationType.APPOINTMENT_CREATED,
    DispatchEvent.CANCELLED: NotificationType.APPOINTMENT_CANCELLED,
    DispatchEvent.CONFIRMED: NotificationType.APPOINTMENT_CONFIRMED,
    DispatchEvent.IN_SERVICE: NotificationType.APPOINTMENT_IN_SERVICE,
    DispatchEvent.COMPLETED: NotificationType.APPOINTMENT_COMPLETED,
    DispatchEvent.RESCHEDULED: NotificationType.APPOINTMENT_RESCHEDULED,
    DispatchEvent.REMINDER: NotificationType.APPOINTMENT_REMINDER,
    DispatchEvent.WALK_IN: NotificationType.WALK_IN_CLIENT,
    DispatchEvent.TRANSACTION_PAID: NotificationType.TRANSACTION_PAID,
}

# Reminders are delivered by the background worker, not to a live session
NO_LOCAL_PUSH_EVENTS = frozenset({DispatchEvent.REMINDER})

LOCAL_PUSH = "local_push"
REMOTE_PUSH = "remote_push"
EMAIL = "email"
IN_APP = "in_app"


@dataclass
class DispatchContext:
    """Everything the templates and channels need to deliver one event."""

    recipient_id: str
    role: OwnerRole = OwnerRole.STYLIST
    email: str | None = None
    name: str | None = None

    appointment_id: str | None = None
    client_name: str = ""
    service_name: str = ""
    service_count: int = 1
    services: list[ServiceStylistPair] = field(default_factory=list)
    appointment_date: str = ""
    appointment_time: str = ""

    # Reschedule
    old_date: str = ""
    old_time: str = ""
    new_date: str = ""
    new_time: str = ""

    # Walk-in / payment
    total_amount: float = 0.0
    commission: float = 0.0
    payment_method: str | None = None
    transaction_id: str | None = None


class ChannelStatus(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ChannelResult:
    channel: str
    status: ChannelStatus
    detail: str | None = None


@dataclass
class DispatchResult:
    """
    Per-channel outcome of one dispatch.

    Attributes:
        event: Dispatched event
        recipient_id: Notified user
        channels: One ChannelResult per channel, in delivery order
        notification_id: Id of the persisted in-app notification (if created)
    """

    event: DispatchEvent
    recipient_id: str
    channels: list[ChannelResult] = field(default_factory=list)
    notification_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return all(result.status != ChannelStatus.FAILED for result in self.channels)

    def status_of(self, channel: str) -> ChannelStatus | None:
        for result in self.channels:
            if result.channel == channel:
                return result.status
        return None


@dataclass
class RenderedMessage:
    title: str
    body: str
    email_subject: str
    email_html: str
    data: dict[str, Any]


# ============================================================================
# Templates
# ============================================================================


def _money(amount: float) -> str:
    return f"₱{amount:,.2f}"


def _service_text(ctx: DispatchContext) -> str:
    if ctx.services and len(ctx.services) > 1:
        return f"{len(ctx.services)} services"
    if ctx.service_count > 1:
        return f"{ctx.service_count} services"
    if ctx.services and not ctx.service_name:
        return ctx.services[0].service_name
    return ctx.service_name or "an appointment"


def _when(date_value: str, time_value: str) -> tuple[str, str]:
    return format_date_long(date_value), format_time_12h(time_value)


def _message_text(event: DispatchEvent, ctx: DispatchContext) -> tuple[str, str]:
    date_text, time_text = _when(ctx.appointment_date, ctx.appointment_time)
    client = ctx.client_name or "A client"
    service = _service_text(ctx)

    if event == DispatchEvent.CREATED:
        return (
            "New Appointment",
            f"{client} has booked {service} on {date_text} at {time_text}.",
        )
    if event == DispatchEvent.CANCELLED:
        return (
            "Appointment Cancelled",
            f"{client} has cancelled their {service} appointment on {date_text} at {time_text}.",
        )
    if event == DispatchEvent.CONFIRMED:
        return (
            "Appointment Confirmed",
            f"Your {service} appointment on {date_text} at {time_text} has been confirmed.",
        )
    if event == DispatchEvent.IN_SERVICE:
        return (
            "Appointment In Service",
            f"Your {service} appointment has started. Enjoy your visit!",
        )
    if event == DispatchEvent.COMPLETED:
        return (
            "Appointment Completed",
            f"Your {service} appointment on {date_text} has been completed. Thank you!",
        )
    if event == DispatchEvent.RESCHEDULED:
        old_date, old_time = _when(ctx.old_date, ctx.old_time)
        new_date, new_time = _when(ctx.new_date, ctx.new_time)
        return (
            "Appointment Rescheduled",
            f"{client} has rescheduled their {service} appointment from "
            f"{old_date} at {old_time} to {new_date} at {new_time}.",
        )
    if event == DispatchEvent.REMINDER:
        return (
            "Appointment Reminder",
            f"Reminder: {client}'s {service} appointment is scheduled for "
            f"{date_text} at {time_text}.",
        )
    if event == DispatchEvent.WALK_IN:
        return (
            "New Walk-in Client",
            f"{client} is here for {service}. Total: {_money(ctx.total_amount)}",
        )
    if event == DispatchEvent.TRANSACTION_PAID:
        return (
            "Payment Received",
            f"{client} paid {_money(ctx.total_amount)} for {service}. "
            f"Your commission: {_money(ctx.commission)}",
        )
    raise ValueError(f"Unsupported dispatch event: {event}")


def _email_html(title: str, body: str, ctx: DispatchContext) -> str:
    parts = [
        f"<h2>{html.escape(title)}</h2>",
        f"<p>Hi {html.escape(ctx.name or 'there')},</p>",
        f"<p>{html.escape(body)}</p>",
    ]
    if ctx.services and len(ctx.services) > 1:
        items = "".join(
            f"<li>{html.escape(pair.service_name)} - {_money(pair.service_price)}</li>"
            for pair in ctx.services
        )
        parts.append(f"<ul>{items}</ul>")
    if ctx.total_amount:
        parts.append(f"<p><strong>Total Amount:</strong> {_money(ctx.total_amount)}</p>")
    if ctx.commission:
        parts.append(f"<p><strong>Your Commission:</strong> {_money(ctx.commission)}</p>")
    return "\n".join(parts)


def render(event: DispatchEvent, ctx: DispatchContext) -> RenderedMessage:
    """Render title, body, email and channel payload for an event."""
    title, body = _message_text(event, ctx)

    data = {
        "type": EVENT_NOTIFICATION_TYPES[event].value,
        "event": event.value,
        "appointmentId": ctx.appointment_id,
        "clientName": ctx.client_name or None,
        "serviceName": _service_text(ctx),
        "appointmentDate": ctx.appointment_date or None,
        "appointmentTime": ctx.appointment_time or None,
    }
    if event == DispatchEvent.RESCHEDULED:
        data.update(
            oldDate=ctx.old_date, oldTime=ctx.old_time, newDate=ctx.new_date, newTime=ctx.new_time
        )
    if event in (DispatchEvent.WALK_IN, DispatchEvent.TRANSACTION_PAID):
        data["totalAmount"] = ctx.total_amount
    if event == DispatchEvent.TRANSACTION_PAID:
        data.update(
            commission=ctx.commission,
            paymentMethod=ctx.payment_method,
            transactionId=ctx.transaction_id,
        )

    return RenderedMessage(
        title=title,
        body=body,
        email_subject=f"{title} - {ctx.client_name}" if ctx.client_name else title,
        email_html=_email_html(title, body, ctx),
        data={k: v for k, v in data.items() if v is not None},
    )


# ============================================================================
# Dispatcher
# ============================================================================


class NotificationDispatcher:
    """Fans one event out to local push, remote push, email and in-app."""

    def __init__(
        self,
        store: DocumentStore,
        local_queue: LocalNotificationQueue | None = None,
        push_client: ExpoPushClient | None = None,
        email_client: EmailClient | None = None,
        notification_service: NotificationService | None = None,
        push_circuit: pybreaker.CircuitBreaker | None = None,
        email_circuit: pybreaker.CircuitBreaker | None = None,
    ):
        self.store = store
        self.local_queue = local_queue or LocalNotificationQueue()
        self.push_client = push_client or ExpoPushClient()
        self.email_client = email_client or EmailClient()
        self.notification_service = notification_service or NotificationService(store)
        self.push_circuit = push_circuit or push_breaker
        self.email_circuit = email_circuit or email_breaker

    async def dispatch(self, event: DispatchEvent, ctx: DispatchContext) -> DispatchResult:
        """
        Deliver an event to its recipient on every channel.

        Args:
            event: Event to deliver
            ctx: Recipient and template data

        Returns:
            DispatchResult with one entry per channel

        Raises:
            DispatchError: If the context has no recipient id
        """
        if not ctx.recipient_id:
            raise DispatchError(f"Cannot dispatch '{event}' without a recipient id")

        log_extra = {
            "recipient_id": ctx.recipient_id,
            "event_type": event.value,
            "appointment_id": ctx.appointment_id,
        }
        message = render(event, ctx)
        profile = await self._load_recipient(ctx.recipient_id)
        result = DispatchResult(event=event, recipient_id=ctx.recipient_id)

        tasks: list[tuple[str, Callable[[], Awaitable[ChannelResult]]]] = [
            (LOCAL_PUSH, lambda: self._local_push(event, ctx, message)),
            (REMOTE_PUSH, lambda: self._remote_push(profile, message)),
            (EMAIL, lambda: self._email(ctx, profile, message)),
            (IN_APP, lambda: self._in_app(event, ctx, message, result)),
        ]

        for channel, task in tasks:
            try:
                channel_result = await task()
            except pybreaker.CircuitBreakerError as e:
                logger.warning(
                    f"Channel {channel} unavailable for {event.value} to {ctx.recipient_id}: {e}",
                    extra={**log_extra, "channel": channel},
                )
                channel_result = ChannelResult(channel, ChannelStatus.FAILED, "circuit open")
            except Exception as e:
                logger.error(
                    f"Channel {channel} failed for {event.value} to {ctx.recipient_id}: {e}",
                    extra={**log_extra, "channel": channel},
                    exc_info=True,
                )
                channel_result = ChannelResult(channel, ChannelStatus.FAILED, str(e))
            result.channels.append(channel_result)

        logger.info(
            f"Dispatched {event.value} to {ctx.recipient_id}: "
            + ", ".join(f"{r.channel}={r.status.value}" for r in result.channels),
            extra=log_extra,
        )
        return result

    async def _load_recipient(self, recipient_id: str) -> dict[str, Any]:
        try:
            doc = await self.store.get_by_id(USERS, recipient_id)
        except Exception as e:
            logger.warning(
                f"Could not load profile for {recipient_id}: {e}",
                extra={"recipient_id": recipient_id},
            )
            return {}
        return doc.data if doc else {}

    async def _local_push(
        self, event: DispatchEvent, ctx: DispatchContext, message: RenderedMessage
    ) -> ChannelResult:
        if event in NO_LOCAL_PUSH_EVENTS:
            return ChannelResult(LOCAL_PUSH, ChannelStatus.SKIPPED, "not sent for reminders")
        self.local_queue.enqueue(message.title, message.body, message.data, ctx.recipient_id)
        return ChannelResult(LOCAL_PUSH, ChannelStatus.SENT)

    async def _remote_push(
        self, profile: dict[str, Any], message: RenderedMessage
    ) -> ChannelResult:
        token = profile.get("pushToken") or profile.get("expoPushToken")
        if not token:
            return ChannelResult(REMOTE_PUSH, ChannelStatus.SKIPPED, "no push token")

        delivery = await call_with_breaker(
            self.push_circuit,
            self.push_client.send_remote,
            token,
            message.title,
            message.body,
            message.data,
        )
        if not delivery.success:
            return ChannelResult(REMOTE_PUSH, ChannelStatus.FAILED, delivery.error)
        return ChannelResult(REMOTE_PUSH, ChannelStatus.SENT, delivery.ticket_id)

    async def _email(
        self, ctx: DispatchContext, profile: dict[str, Any], message: RenderedMessage
    ) -> ChannelResult:
        address = ctx.email or profile.get("email")
        if not address:
            return ChannelResult(EMAIL, ChannelStatus.SKIPPED, "no email address")

        name = ctx.name or profile.get("name") or ""
        accepted = await call_with_breaker(
            self.email_circuit,
            self.email_client.send,
            address,
            name,
            message.email_subject,
            message.email_html,
        )
        if not accepted:
            return ChannelResult(EMAIL, ChannelStatus.FAILED, "rejected by provider")
        return ChannelResult(EMAIL, ChannelStatus.SENT)

    async def _in_app(
        self,
        event: DispatchEvent,
        ctx: DispatchContext,
        message: RenderedMessage,
        result: DispatchResult,
    ) -> ChannelResult:
        result.notification_id = await self.notification_service.create_notification(
            recipient_id=ctx.recipient_id,
            notification_type=EVENT_NOTIFICATION_TYPES[event],
            title=message.title,
            message=message.body,
            data=message.data,
            recipient_role=ctx.role,
        )
        return ChannelResult(IN_APP, ChannelStatus.SENT, result.notification_id)
