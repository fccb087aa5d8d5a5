"""Payment background tasks package"""
from payments.tasks.celery_app import app
from payments.tasks.reconciliation_tasks import reconcile_pending_payments

__all__ = [
    'app',
    'reconcile_pending_payments'
]
