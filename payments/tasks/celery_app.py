"""
Kodisha Payments Celery Application
Runs the periodic reconciliation sweep (Celery Beat) and on-demand reruns.

Worker:  celery -A payments.tasks.celery_app worker -Q payments
Beat:    celery -A payments.tasks.celery_app beat
"""

from datetime import timedelta

from celery import Celery

from config import WorkerSettings

worker_settings = WorkerSettings.from_env()

# Initialize Celery with Redis as broker and backend
app = Celery(
    "kodisha_payments",
    broker=worker_settings.redis_url,
    backend=worker_settings.redis_url,
    include=['payments.tasks.reconciliation_tasks']
)

# Celery configuration
app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Result backend settings
    result_expires=3600,  # Results expire after 1 hour

    # Task execution settings
    task_track_started=True,
    task_time_limit=300,  # 5 minute hard timeout
    task_soft_time_limit=240,  # 4 minute soft timeout

    # Worker settings
    worker_prefetch_multiplier=1,  # Sweeps must not pile up on one worker

    # Retry settings
    task_acks_late=True,  # Only ack after task completes
    task_reject_on_worker_lost=True,  # Requeue if worker dies
)

app.conf.task_routes = {
    "payments.tasks.reconcile_pending_payments": {"queue": "payments"},
}

# Periodic task schedule (Celery Beat)
app.conf.beat_schedule = {
    'reconcile-pending-payments': {
        'task': 'payments.tasks.reconcile_pending_payments',
        'schedule': timedelta(minutes=worker_settings.reconcile_interval_minutes),
        'options': {'queue': 'payments'}
    },
}

if __name__ == "__main__":
    app.start()
