"""
tasks/celery_app.py
Celery application instance shared by all task modules.

Workers are started with:
    celery -A tasks.celery_app worker -Q default,notifications,bookings --loglevel=info

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "fachowcy_now",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
        "tasks.booking_tasks",
        "tasks.trust_tasks",
        "tasks.host_evaluation_tasks",
        "tasks.migration_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Europe/Warsaw",
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose the task
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    task_max_retries=3,

    task_annotations={
        "tasks.notification_tasks.send_new_message_push": {"rate_limit": "50/s"},
        "tasks.notification_tasks.send_booking_status_push": {"rate_limit": "30/s"},
    },

    task_default_queue="default",
    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.booking_tasks.*": {"queue": "bookings"},
        "tasks.trust_tasks.*": {"queue": "bookings"},
        "tasks.host_evaluation_tasks.*": {"queue": "bookings"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Non-terminal bookings untouched for BOOKING_VALIDITY_DAYS -> EXPIRED
    "expire-stale-bookings": {
        "task": "tasks.booking_tasks.expire_stale_bookings",
        "schedule": 900,  # every 15 minutes
    },
    # Super Fachowiec status, first day of each quarter
    "evaluate-hosts-quarterly": {
        "task": "tasks.host_evaluation_tasks.evaluate_all_hosts",
        "schedule": crontab(minute=0, hour=3, day_of_month=1, month_of_year="1,4,7,10"),
    },
}
