"""
Webhook Handlers for M-Pesa

Safaricom calls these after a charge or payout resolves. They must be
registered with Daraja:
- MPESA_CALLBACK_URL -> POST /payments/callback (STK push)
- MPESA_B2C_RESULT_URL -> POST /payments/payout/result
- MPESA_B2C_TIMEOUT_URL -> POST /payments/payout/timeout

Every handler answers 200 with {"ResultCode": 0, ...}, including for
malformed bodies and internal errors. Problems are logged and queued for
reconciliation instead.
"""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from database.db import get_db
from payments.routers.deps import get_gateway
from services.callback_service import CallbackProcessor, acknowledgment
from services.mpesa import MPesaService

router = APIRouter(prefix="/payments", tags=["Webhooks"])
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Callback-Signature"


async def raw_body(request: Request) -> bytes:
    """Raw request body, read on the event loop so the handlers can stay sync."""
    return await request.body()


def _parse_body(raw: bytes, source: str) -> Optional[Any]:
    try:
        return json.loads(raw)
    except ValueError:
        logger.error(f"{source}: Unparseable webhook body ({len(raw)} bytes)")
        return None


@router.post("/callback")
def mpesa_callback(
    request: Request,
    raw: bytes = Depends(raw_body),
    db: Session = Depends(get_db),
    gateway: MPesaService = Depends(get_gateway)
):
    """
    Handle M-Pesa STK Push callback.

    Safaricom sends payment status to this endpoint after customer
    completes (or cancels) payment on their phone.
    """
    try:
        logger.info(f"M-Pesa webhook received: {raw[:2000]!r}")

        if not gateway.verify_callback_signature(raw, request.headers.get(SIGNATURE_HEADER)):
            logger.warning("M-Pesa: Callback signature mismatch, ignoring payload")
            return acknowledgment()

        payload = _parse_body(raw, "M-Pesa")
        if payload is None:
            return acknowledgment()

        return CallbackProcessor(db).handle_stk_callback(payload)
    except Exception:
        logger.exception("M-Pesa webhook error")
        return acknowledgment()


@router.post("/payout/result")
def mpesa_b2c_result(raw: bytes = Depends(raw_body), db: Session = Depends(get_db)):
    """
    Handle M-Pesa B2C payout result callback.

    Called by M-Pesa after a payout is processed (success or failure).
    """
    try:
        payload = _parse_body(raw, "M-Pesa B2C")
        logger.info(f"M-Pesa B2C result received: {payload}")
        if payload is None:
            return acknowledgment()
        return CallbackProcessor(db).handle_payout_result(payload)
    except Exception:
        logger.exception("M-Pesa B2C result webhook error")
        return acknowledgment()


@router.post("/payout/timeout")
def mpesa_b2c_timeout(raw: bytes = Depends(raw_body), db: Session = Depends(get_db)):
    """
    Handle M-Pesa B2C timeout callback.

    Called if M-Pesa couldn't process the payout within the timeout period.
    """
    try:
        payload = _parse_body(raw, "M-Pesa B2C")
        logger.warning(f"M-Pesa B2C timeout received: {payload}")
        if payload is None:
            return acknowledgment()
        return CallbackProcessor(db).handle_payout_timeout(payload)
    except Exception:
        logger.exception("M-Pesa B2C timeout webhook error")
        return acknowledgment()
