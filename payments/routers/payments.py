"""
Payments Router - Guest M-Pesa Payments

Endpoints:
- POST /payments/initiate - Send an STK push for a booking
- GET /payments/status - Poll one transaction
- GET /payments/history - The caller's transactions, newest first

The client polls /payments/status until the status is completed or failed;
the outcome itself arrives on /payments/callback (see webhooks.py).
"""

import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from database.db import get_db
from database.models import User
from payments.routers.deps import get_current_user, get_gateway, success_response
from services.mpesa import MPesaService
from services.payment_service import PaymentOrchestrator

router = APIRouter(prefix="/payments", tags=["Payments"])
logger = logging.getLogger(__name__)


class InitiatePaymentRequest(BaseModel):
    """
    Body of POST /payments/initiate.

    Fields are optional here so missing values get the same 400
    "Missing required fields" as empty ones.
    """
    amount: Optional[Union[float, str]] = None
    phoneNumber: Optional[str] = None
    bookingId: Optional[str] = None
    description: Optional[str] = None


@router.post("/initiate")
def initiate_payment(
    body: InitiatePaymentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: MPesaService = Depends(get_gateway)
):
    """
    Start an M-Pesa STK push for one of the caller's bookings.

    Returns transactionId and checkoutRequestId; the guest now has a PIN
    prompt on their phone.
    """
    orchestrator = PaymentOrchestrator(db, gateway)
    data = orchestrator.initiate(
        amount=body.amount,
        payer_phone=body.phoneNumber,
        booking_id=body.bookingId,
        requester_id=current_user.id,
        description=body.description
    )
    return success_response(data, "Payment request sent. Check your phone to complete payment.")


@router.get("/status")
def payment_status(
    transaction_id: Optional[str] = Query(None, alias="transactionId"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: MPesaService = Depends(get_gateway)
):
    orchestrator = PaymentOrchestrator(db, gateway)
    return success_response(orchestrator.get_status(transaction_id, current_user.id))


@router.get("/history")
def payment_history(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: MPesaService = Depends(get_gateway)
):
    """List the caller's payment attempts, optionally filtered by status."""
    orchestrator = PaymentOrchestrator(db, gateway)
    return success_response(orchestrator.list_for_user(current_user.id, status=status, limit=limit))
