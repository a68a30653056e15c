"""
Notification dispatcher.

notify() is fire-and-forget from the caller's point of view: it runs after
the caller has committed, uses its own session, and never raises. Every
outcome is logged and counted.
"""

from html import escape
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from slotbooking.core.logging import get_logger
from slotbooking.core.metrics import record_notification
from slotbooking.infrastructure.email_client import EmailMessage, ResendEmailClient
from slotbooking.models.event import Event
from slotbooking.models.notification import NotificationPreference
from slotbooking.models.user import User

logger = get_logger(__name__)

# Notification type -> NotificationPreference column
PREFERENCE_COLUMNS = {
    "rsvp": "email_rsvp",
    "comment": "email_comment",
    "access_request": "email_access_request",
    "invitation": "email_invitation",
    "reminder": "email_reminder",
    "waitlist_promoted": "email_rsvp",
    "booking_confirmed": "email_booking",
    "booking_cancelled": "email_booking",
}


def compose(
    notification_type: str,
    event_title: str,
    actor_name: str,
    message: Optional[str] = None,
) -> tuple[str, str]:
    """Subject and HTML body for a notification type."""
    title = escape(event_title)
    actor = escape(actor_name)

    if notification_type == "rsvp":
        return f"{actor_name} signed up for {event_title}", f"<p><strong>{actor}</strong> signed up for your event <strong>{title}</strong>.</p>"
    if notification_type == "comment":
        return (
            f"{actor_name} commented on {event_title}",
            f"<p><strong>{actor}</strong> commented on your event <strong>{title}</strong>:</p>"
            f"<blockquote>{escape(message or '')}</blockquote>",
        )
    if notification_type == "access_request":
        return f"{actor_name} asked for access to {event_title}", f"<p><strong>{actor}</strong> asked for access to your event <strong>{title}</strong>.</p>"
    if notification_type == "invitation":
        return f"You are invited to {event_title}", f"<p><strong>{actor}</strong> invited you to <strong>{title}</strong>.</p>"
    if notification_type == "reminder":
        return f"Reminder: {event_title} starts tomorrow", f"<p><strong>{title}</strong> starts tomorrow.</p>"
    if notification_type == "waitlist_promoted":
        return f"You got a spot at {event_title}!", f"<p>A spot opened up at <strong>{title}</strong> and you have been moved off the waitlist.</p>"
    if notification_type == "booking_confirmed":
        return f"Your ticket for {event_title}", f"<p>Your booking for <strong>{title}</strong> is confirmed.</p>"
    if notification_type == "booking_cancelled":
        return f"Booking cancelled: {event_title}", f"<p>Your booking for <strong>{title}</strong> has been cancelled.</p>"
    raise ValueError(f"Unknown notification type: {notification_type}")


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        email_client: ResendEmailClient,
    ):
        self.session_factory = session_factory
        self.email_client = email_client

    async def notify(
        self,
        user_id: int,
        notification_type: str,
        event_id: Optional[int],
        actor_id: Optional[int] = None,
        message: Optional[str] = None,
    ) -> str:
        """Deliver one notification. Returns the outcome; never raises."""
        try:
            result = await self._dispatch(user_id, notification_type, event_id, actor_id, message)
        except Exception as e:
            logger.error(
                "notification_failed",
                user_id=user_id,
                type=notification_type,
                event_id=event_id,
                error=str(e),
            )
            result = "failed"
        record_notification(notification_type, result)
        return result

    async def _dispatch(
        self,
        user_id: int,
        notification_type: str,
        event_id: Optional[int],
        actor_id: Optional[int],
        message: Optional[str],
    ) -> str:
        column = PREFERENCE_COLUMNS.get(notification_type)
        if column is None:
            logger.warning("notification_unknown_type", type=notification_type, user_id=user_id)
            return "unknown_type"

        async with self.session_factory() as db:
            opted_in = await db.scalar(
                select(getattr(NotificationPreference, column)).where(NotificationPreference.user_id == user_id)
            )
            if opted_in is False:
                logger.info("notification_opted_out", user_id=user_id, type=notification_type)
                return "opted_out"

            user = await db.get(User, user_id)
            if user is None or not user.email:
                logger.info("notification_no_email", user_id=user_id, type=notification_type)
                return "no_email"

            event = await db.get(Event, event_id) if event_id is not None else None
            actor = await db.get(User, actor_id) if actor_id is not None else None

            recipient = user.email
            event_title = event.title if event else "an event"
            actor_name = (actor.name or "Someone") if actor else "Someone"

        subject, html = compose(notification_type, event_title, actor_name, message)
        await self.email_client.send(EmailMessage(to=recipient, subject=subject, html=html))
        logger.info("notification_sent", user_id=user_id, type=notification_type, event_id=event_id)
        return "sent"
