"""
Payout Router - Host Earnings via M-Pesa B2C

Endpoints:
- POST /payments/payout - Disburse earnings to a host (admin, or the host)
- GET /payments/payouts - List payouts (admins: any host, hosts: their own)
- GET /payments/payouts/{payout_id} - Payout details
"""

import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from config import Settings
from database.db import get_db
from database.models import User
from payments.routers.deps import get_current_user, get_gateway, get_settings, success_response
from services.mpesa import MPesaService
from services.payout_service import PayoutOrchestrator

router = APIRouter(prefix="/payments", tags=["Payouts"])
logger = logging.getLogger(__name__)


class PayoutCreate(BaseModel):
    """Create new payout request."""
    hostId: Optional[str] = None
    amount: Optional[Union[float, str]] = None
    description: Optional[str] = None


def _orchestrator(db: Session, gateway: MPesaService, settings: Settings) -> PayoutOrchestrator:
    return PayoutOrchestrator(db, gateway, confirmation_mode=settings.payout_confirmation_mode)


@router.post("/payout")
def create_payout(
    body: PayoutCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: MPesaService = Depends(get_gateway),
    settings: Settings = Depends(get_settings)
):
    """
    Send a host's earnings to their M-Pesa number.

    In callback mode the payout stays pending until the B2C result arrives.
    """
    data = _orchestrator(db, gateway, settings).send_payout(
        host_id=body.hostId,
        amount=body.amount,
        description=body.description,
        caller=current_user
    )
    message = "Payout completed" if data["status"] == "completed" else "Payout submitted to M-Pesa"
    return success_response(data, message)


@router.get("/payouts")
def list_payouts(
    hostId: Optional[str] = None,
    status: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: MPesaService = Depends(get_gateway),
    settings: Settings = Depends(get_settings)
):
    payouts = _orchestrator(db, gateway, settings).list_payouts(current_user, host_id=hostId, status=status)
    return success_response(payouts)


@router.get("/payouts/{payout_id}")
def get_payout(
    payout_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: MPesaService = Depends(get_gateway),
    settings: Settings = Depends(get_settings)
):
    return success_response(_orchestrator(db, gateway, settings).get_payout(payout_id, current_user))
