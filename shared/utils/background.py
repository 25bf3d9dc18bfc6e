"""
shared/utils/background.py
Fire-and-forget dispatch of Celery tasks from request handlers.
Tasks are sent by name so the web process never imports worker-only SDKs.
"""

import logging

from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def enqueue(task_name: str, *args, **kwargs) -> None:
    """Queue a task. Broker failures are logged, never raised into request flow."""
    try:
        celery_app.send_task(task_name, args=list(args), kwargs=kwargs)
    except Exception as e:
        logger.error(f"Failed to enqueue {task_name}: {e}")


def notify_booking_status(booking_id) -> None:
    enqueue("tasks.notification_tasks.send_booking_status_push", str(booking_id))


def notify_new_message(chat_id, message_id) -> None:
    enqueue("tasks.notification_tasks.send_new_message_push", str(chat_id), str(message_id))


def recalculate_trust_score(user_id) -> None:
    enqueue("tasks.trust_tasks.recalculate_trust_score", str(user_id))
