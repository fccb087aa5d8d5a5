"""
Admin Router - Reconciliation

Endpoints (admin only):
- POST /admin/reconcile - Run one reconciliation sweep now
- POST /admin/reconcile/{transaction_id} - Query M-Pesa for one transaction
- GET /admin/reconciliation-issues - Queued discrepancies
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from config import Settings
from database.db import get_db
from database.models import ReconciliationIssue, User
from payments.routers.deps import get_gateway, get_settings, require_admin, success_response
from services.ledger import ReconciliationQueue
from services.mpesa import MPesaService
from services.reconciliation_service import ReconciliationService

router = APIRouter(prefix="/admin", tags=["Admin"])
logger = logging.getLogger(__name__)


def _issue_view(issue: ReconciliationIssue) -> dict:
    return {
        "id": issue.id,
        "kind": issue.kind,
        "transactionId": issue.transaction_id,
        "reference": issue.reference,
        "details": issue.details,
        "resolved": issue.resolved,
        "createdAt": issue.created_at.isoformat() if issue.created_at else None,
        "resolvedAt": issue.resolved_at.isoformat() if issue.resolved_at else None,
    }


@router.post("/reconcile")
def run_reconciliation(
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    gateway: MPesaService = Depends(get_gateway),
    settings: Settings = Depends(get_settings)
):
    """Run the reconciliation sweep synchronously and return its report."""
    logger.info(f"Reconciliation sweep requested by admin {admin.id}")
    report = ReconciliationService.from_settings(db, gateway, settings).sweep()
    return success_response(report.to_dict(), "Reconciliation sweep finished")


@router.post("/reconcile/{transaction_id}")
def reconcile_transaction(
    transaction_id: str,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    gateway: MPesaService = Depends(get_gateway),
    settings: Settings = Depends(get_settings)
):
    logger.info(f"Reconciliation of transaction {transaction_id} requested by admin {admin.id}")
    service = ReconciliationService.from_settings(db, gateway, settings)
    return success_response(service.reconcile_transaction(transaction_id))


@router.get("/reconciliation-issues")
def list_reconciliation_issues(
    resolved: Optional[bool] = None,
    limit: int = Query(100, ge=1, le=500),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    issues = ReconciliationQueue(db).list(resolved=resolved, limit=limit)
    return success_response([_issue_view(i) for i in issues])
