"""
tasks/notification_tasks.py
Celery tasks for push delivery over Firebase Cloud Messaging.

Every notification goes to all of the recipient's registered tokens in one
multicast. Tokens FCM reports as unregistered or invalid are pruned from
the user so they are not retried forever.

Usage from a route:
    from shared.utils.background import notify_new_message
    notify_new_message(chat.id, message.id)
"""

import logging
import uuid
from typing import Dict, Iterable, List, Optional

import firebase_admin
from firebase_admin import credentials, exceptions as firebase_exceptions, messaging
from sqlalchemy import select
from sqlalchemy.orm import Session

from config.settings import settings
from shared.models.models import Booking, BookingStatus, Chat, ChatMessage, User
from tasks.base import DatabaseTask
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

_DEAD_TOKEN_ERRORS = (messaging.UnregisteredError, firebase_exceptions.InvalidArgumentError)


def get_firebase_app() -> firebase_admin.App:
    try:
        return firebase_admin.get_app()
    except ValueError:
        cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH)
        options = {"projectId": settings.FIREBASE_PROJECT_ID} if settings.FIREBASE_PROJECT_ID else None
        return firebase_admin.initialize_app(cred, options)


# ── Templates ──────────────────────────────────────────────────────────────────

STATUS_MESSAGES = {
    BookingStatus.PENDING_APPROVAL: ("Nowe zlecenie 📅", "Masz nową prośbę o rezerwację {hash}."),
    BookingStatus.CONFIRMED: ("Rezerwacja potwierdzona ✅", "Fachowiec potwierdził rezerwację {hash}."),
    BookingStatus.ACTIVE: ("Praca rozpoczęta 🔧", "Zlecenie {hash} jest w trakcie realizacji."),
    BookingStatus.COMPLETED: ("Zlecenie zakończone ⭐", "Zlecenie {hash} zostało zakończone. Oceń fachowca!"),
    BookingStatus.CANCELED_BY_HOST: ("Rezerwacja odrzucona", "Fachowiec odrzucił rezerwację {hash}."),
    BookingStatus.CANCELED_BY_GUEST: ("Rezerwacja anulowana", "Klient anulował rezerwację {hash}."),
    BookingStatus.EXPIRED: ("Rezerwacja wygasła", "Rezerwacja {hash} wygasła."),
}


def booking_status_message(booking: Booking) -> tuple:
    title, body = STATUS_MESSAGES.get(
        BookingStatus(booking.status),
        ("Aktualizacja zlecenia", "Status zlecenia {hash} został zmieniony."),
    )
    return title, body.format(hash=booking.booking_hash)


def status_recipients(booking: Booking) -> List:
    """Participants other than whoever made the last change."""
    history = booking.status_history or []
    changed_by = history[-1].get("changed_by") if history else None
    participants = [booking.client_id, booking.host_id]
    return [p for p in participants if p is not None and str(p) != changed_by]


# ── Delivery ───────────────────────────────────────────────────────────────────

def send_multicast(tokens: List[str], title: str, body: str, data: Optional[Dict] = None) -> List[str]:
    """Send to every token; returns the tokens FCM rejected as dead."""
    get_firebase_app()
    message = messaging.MulticastMessage(
        tokens=tokens,
        notification=messaging.Notification(title=title, body=body),
        data={k: str(v) for k, v in (data or {}).items()},
        android=messaging.AndroidConfig(priority="high"),
        apns=messaging.APNSConfig(payload=messaging.APNSPayload(aps=messaging.Aps(sound="default"))),
    )
    response = messaging.send_each_for_multicast(message)
    logger.info(f"FCM multicast: {response.success_count} sent, {response.failure_count} failed")

    return [
        token
        for token, result in zip(tokens, response.responses)
        if not result.success and isinstance(result.exception, _DEAD_TOKEN_ERRORS)
    ]


def push_to_user(db: Session, user_id, title: str, body: str, data: Optional[Dict] = None) -> int:
    """Push to one user and prune dead tokens. Returns the number of tokens targeted."""
    user = db.execute(select(User).where(User.id == uuid.UUID(str(user_id)))).scalar_one_or_none()
    if not user or not user.fcm_tokens:
        logger.info(f"No FCM tokens for user {user_id}")
        return 0

    tokens = list(user.fcm_tokens)
    dead = send_multicast(tokens, title, body, data)
    if dead:
        user.fcm_tokens = [t for t in tokens if t not in dead]
        db.commit()
        logger.info(f"Pruned {len(dead)} dead FCM tokens for user {user_id}")
    return len(tokens)


def _push_all(db: Session, user_ids: Iterable, title: str, body: str, data: Dict) -> int:
    return sum(push_to_user(db, uid, title, body, data) for uid in user_ids)


# ── Tasks ──────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask, max_retries=3, default_retry_delay=60)
def send_booking_status_push(self, booking_id: str):
    """Tell the other participant(s) that a booking changed status."""
    db = self.get_session()
    try:
        booking = db.execute(select(Booking).where(Booking.id == uuid.UUID(booking_id))).scalar_one_or_none()
        if not booking:
            logger.error(f"send_booking_status_push: booking {booking_id} not found")
            return 0

        title, body = booking_status_message(booking)
        data = {"type": "BOOKING_STATUS", "booking_id": booking_id, "status": BookingStatus(booking.status).value}
        return _push_all(db, status_recipients(booking), title, body, data)
    except firebase_exceptions.FirebaseError as e:
        db.rollback()
        logger.warning(f"send_booking_status_push failed for {booking_id}: {e}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
    finally:
        db.close()


@celery_app.task(bind=True, base=DatabaseTask, max_retries=3, default_retry_delay=30)
def send_new_message_push(self, chat_id: str, message_id: str):
    """Push a new chat message to every participant except the sender."""
    db = self.get_session()
    try:
        chat = db.execute(select(Chat).where(Chat.id == uuid.UUID(chat_id))).scalar_one_or_none()
        message = db.execute(
            select(ChatMessage).where(ChatMessage.id == uuid.UUID(message_id))
        ).scalar_one_or_none()
        if not chat or not message:
            logger.error(f"send_new_message_push: chat {chat_id} / message {message_id} not found")
            return 0

        sender = None
        if message.sender_id is not None:
            sender = db.execute(select(User).where(User.id == message.sender_id)).scalar_one_or_none()
        title = sender.display_name if sender else "Nowa wiadomość"

        recipients = [p for p in (chat.participant_ids or []) if p != str(message.sender_id)]
        data = {"type": "NEW_MESSAGE", "chat_id": chat_id}
        return _push_all(db, recipients, title, message.text or "Wysłano zdjęcie", data)
    except firebase_exceptions.FirebaseError as e:
        db.rollback()
        logger.warning(f"send_new_message_push failed for {chat_id}: {e}")
        raise self.retry(exc=e, countdown=30 * (2 ** self.request.retries))
    finally:
        db.close()
