"""
Celery tasks for payment reconciliation
"""

import logging
from typing import Optional

from celery import Task
from sqlalchemy.orm import sessionmaker

from config import Settings
from database.db import create_db_engine, create_session_factory
from payments.tasks.celery_app import app
from services.mpesa import MpesaConfig, MPesaService
from services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

# Built on first use in each worker process
_settings: Optional[Settings] = None
_gateway: Optional[MPesaService] = None
_session_factory: Optional[sessionmaker] = None


def _collaborators():
    global _settings, _gateway, _session_factory
    if _settings is None:
        _settings = Settings.from_env()
        _gateway = MPesaService(MpesaConfig.from_env())
        _session_factory = create_session_factory(create_db_engine(_settings.database_url))
    return _settings, _gateway, _session_factory


class ReconciliationTask(Task):
    """Base task with error logging for reconciliation"""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(f"Task {task_id} failed: {exc}")
        logger.error(f"Exception info: {einfo}")

    def on_success(self, retval, task_id, args, kwargs):
        logger.info(f"Task {task_id} completed: {retval}")


def run_sweep(settings: Settings, gateway: MPesaService, session_factory: sessionmaker) -> dict:
    """One reconciliation sweep in its own session."""
    db = session_factory()
    try:
        report = ReconciliationService.from_settings(db, gateway, settings).sweep()
        return report.to_dict()
    finally:
        db.close()


@app.task(
    bind=True,
    base=ReconciliationTask,
    name="payments.tasks.reconcile_pending_payments",
    max_retries=2,
    default_retry_delay=30
)
def reconcile_pending_payments(self):
    """
    Resolve stale pending payments against M-Pesa.

    Scheduled by Celery Beat every RECONCILE_INTERVAL_MINUTES.
    """
    settings, gateway, session_factory = _collaborators()
    try:
        return run_sweep(settings, gateway, session_factory)
    except Exception as exc:
        logger.error(f"Reconciliation sweep failed: {exc}")
        raise self.retry(exc=exc)
