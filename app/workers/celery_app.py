"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "stream_economy",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # אירועי מתנות בצ'אט צריכים להגיע מהר - ריצה צפופה
    "process-outbox-every-5-seconds": {
        "task": "app.workers.tasks.process_outbox_messages",
        "schedule": 5.0,
    },
    "release-stuck-outbox-every-5-minutes": {
        "task": "app.workers.tasks.release_stuck_outbox_messages",
        "schedule": 300.0,
    },
    "resubmit-stale-payouts-every-10-minutes": {
        "task": "app.workers.tasks.resubmit_stale_payouts",
        "schedule": 600.0,
    },
    "renew-due-subscriptions-every-10-minutes": {
        "task": "app.workers.tasks.renew_due_subscriptions",
        "schedule": 600.0,
    },
    "cleanup-old-outbox-messages-daily": {
        "task": "app.workers.tasks.cleanup_old_outbox_messages",
        "schedule": 86400.0,  # 24 hours
    },
    # השוואת יתרות מול הלדג'ר - בלילה, מחוץ לשעות השידור העמוסות
    "reconcile-wallets-nightly": {
        "task": "app.workers.tasks.reconcile_wallets",
        "schedule": crontab(hour="4", minute="0"),
    },
}
