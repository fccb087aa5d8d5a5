"""
Payment Orchestrator

Guest-facing entry point for paying a booking with M-Pesa:
1. Validate input
2. Create a pending Transaction
3. Send the STK push
4. Record the outcome of the push request (never the payment outcome;
   that only comes from the callback or reconciliation)
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from database.models import Booking, Transaction
from services.exceptions import (
    GatewayAuthError, GatewayRejectionError, InvalidRequestError,
    NotFoundError, ValidationError
)
from services.ledger import TransactionLedger
from services.mpesa import MPesaService, mask_phone, normalize_phone, round_amount

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "Kodisha Booking"
PROVIDER_UNAVAILABLE = "Payment provider unavailable. Please try again."


def transaction_status(transaction: Transaction) -> Dict[str, Any]:
    """Client-facing view of a transaction (no raw provider codes)."""
    return {
        "transactionId": transaction.id,
        "bookingId": transaction.booking_id,
        "status": transaction.status,
        "amount": transaction.amount,
        "externalRef": transaction.mpesa_receipt,
        "errorMessage": transaction.error_message,
        "createdAt": transaction.created_at.isoformat() if transaction.created_at else None,
        "completedAt": transaction.completed_at.isoformat() if transaction.completed_at else None,
    }


class PaymentOrchestrator:
    """Creates transactions and drives the STK push."""

    def __init__(self, db: Session, gateway: MPesaService):
        self.db = db
        self.gateway = gateway
        self.ledger = TransactionLedger(db)

    def initiate(
        self,
        amount: Any,
        payer_phone: Optional[str],
        booking_id: Optional[str],
        requester_id: str,
        description: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Start an M-Pesa payment for a booking.

        Returns:
            {"transactionId": ..., "checkoutRequestId": ...}; the caller
            polls get_status() until the transaction is terminal.

        Raises:
            ValidationError: missing/invalid input, or a payment already pending
            NotFoundError: booking missing or not the requester's
            GatewayRejectionError: M-Pesa refused the push (transaction is failed)
            GatewayAuthError: M-Pesa rejected our credentials (transaction is failed)
        """
        if amount is None or not payer_phone or not booking_id:
            raise ValidationError("Missing required fields")

        try:
            amount = round_amount(amount)
            phone_number = normalize_phone(payer_phone)
        except InvalidRequestError as e:
            raise ValidationError(e.message)

        booking = self.db.get(Booking, booking_id)
        if not booking or booking.guest_id != requester_id:
            raise NotFoundError("Booking not found")

        description = description or DEFAULT_DESCRIPTION
        transaction = self.ledger.create_pending(
            user_id=requester_id,
            booking_id=booking_id,
            amount=amount,
            phone_number=phone_number,
            description=description
        )

        logger.info(
            f"Initiating M-Pesa payment: transaction {transaction.id}, "
            f"KES {amount} from {mask_phone(phone_number)}"
        )

        try:
            result = self.gateway.initiate_charge(
                amount=amount,
                payer_phone=phone_number,
                account_reference=booking_id,
                description=description,
                correlation_id=transaction.id
            )
        except GatewayAuthError:
            self.ledger.fail_pending(transaction.id, PROVIDER_UNAVAILABLE)
            raise

        if not result.success:
            error = result.error or "Failed to initiate payment"
            self.ledger.fail_pending(transaction.id, error)
            raise GatewayRejectionError(error)

        self.ledger.attach_checkout(
            transaction.id,
            result.checkout_request_id,
            result.merchant_request_id
        )

        return {
            "transactionId": transaction.id,
            "checkoutRequestId": result.checkout_request_id,
        }

    def get_status(self, transaction_id: Optional[str], requester_id: str) -> Dict[str, Any]:
        """Current status of one of the requester's transactions."""
        if not transaction_id:
            raise ValidationError("Missing transactionId")

        transaction = self.ledger.get_for_owner(transaction_id, requester_id)
        return transaction_status(transaction)

    def list_for_user(self, requester_id: str, status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Payment history, newest first."""
        return [
            transaction_status(t)
            for t in self.ledger.list_for_user(requester_id, status=status, limit=limit)
        ]
