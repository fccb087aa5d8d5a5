"""
Payout Orchestrator

Disburses host earnings over M-Pesa B2C.

Only admins, or hosts paying out to themselves, may trigger a payout.

Confirmation modes (PAYOUT_CONFIRMATION_MODE):
- callback: the payout stays pending after M-Pesa accepts it and is
  finalized by the B2C result callback, like guest payments.
- acceptance: the payout is marked completed as soon as M-Pesa accepts
  the request, with the response code as reference.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from database.models import Payout, User, UserRole
from services.exceptions import (
    AuthorizationError, GatewayAuthError, GatewayRejectionError,
    InvalidRequestError, NotFoundError, ValidationError
)
from services.ledger import PayoutLedger
from services.mpesa import MPesaService, mask_phone, normalize_phone, round_amount

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "Earnings Payout"


def payout_view(payout: Payout) -> Dict[str, Any]:
    return {
        "payoutId": payout.id,
        "hostId": payout.host_id,
        "amount": payout.amount,
        "status": payout.status,
        "description": payout.description,
        "externalRef": payout.mpesa_ref,
        "errorMessage": payout.error_message,
        "createdAt": payout.created_at.isoformat() if payout.created_at else None,
        "completedAt": payout.completed_at.isoformat() if payout.completed_at else None,
    }


def _is_admin(user: User) -> bool:
    return user.role == UserRole.ADMIN


class PayoutOrchestrator:
    """Creates payouts and drives the B2C request."""

    def __init__(self, db: Session, gateway: MPesaService, confirmation_mode: str = "callback"):
        self.db = db
        self.gateway = gateway
        self.confirmation_mode = confirmation_mode
        self.ledger = PayoutLedger(db)

    def _authorize(self, caller: User, host_id: str):
        if _is_admin(caller):
            return
        if caller.role == UserRole.HOST and caller.id == host_id:
            return
        logger.warning(f"User {caller.id} attempted a payout for host {host_id}")
        raise AuthorizationError("Only admins or the host themself can request this payout")

    def send_payout(
        self,
        host_id: Optional[str],
        amount: Any,
        description: Optional[str],
        caller: User
    ) -> Dict[str, Any]:
        """
        Pay a host's earnings to their M-Pesa number.

        Returns:
            {"payoutId": ..., "status": "pending" | "completed"}
        """
        if not host_id or amount is None:
            raise ValidationError("Invalid request parameters")

        self._authorize(caller, host_id)

        try:
            amount = round_amount(amount)
        except InvalidRequestError as e:
            raise ValidationError(e.message)

        host = self.db.get(User, host_id)
        if not host:
            raise NotFoundError("Host not found")

        host_phone = host.mpesa_phone or host.phone_number
        if not host_phone:
            raise NotFoundError("Host has no phone number on file")

        try:
            host_phone = normalize_phone(host_phone)
        except InvalidRequestError:
            raise ValidationError("Host phone number on file is not a valid M-Pesa number")

        description = description or DEFAULT_DESCRIPTION
        payout = self.ledger.create_pending(
            host_id=host_id,
            amount=amount,
            phone_number=host_phone,
            description=description,
            requested_by=caller.id
        )

        logger.info(f"Initiating M-Pesa B2C: payout {payout.id}, KES {amount} to {mask_phone(host_phone)}")

        try:
            result = self.gateway.send_payout(
                payee_phone=host_phone,
                amount=amount,
                description=f"Kodisha Earnings - {description}"
            )
        except GatewayAuthError:
            self.ledger.fail_pending(payout.id, "Payment provider unavailable")
            raise

        if not result.success:
            error = result.error or "Failed to process payout"
            self.ledger.fail_pending(payout.id, error)
            raise GatewayRejectionError(error)

        self.ledger.attach_conversation(
            payout.id,
            result.conversation_id,
            result.originator_conversation_id
        )

        if self.confirmation_mode == "acceptance":
            self.ledger.complete_pending(payout.id, result.response_code)

        payout = self.ledger.get(payout.id)
        return {"payoutId": payout.id, "status": payout.status}

    def get_payout(self, payout_id: str, caller: User) -> Dict[str, Any]:
        payout = self.ledger.get(payout_id)
        if not payout or not (_is_admin(caller) or payout.host_id == caller.id):
            raise NotFoundError("Payout not found")
        return payout_view(payout)

    def list_payouts(self, caller: User, host_id: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Admins see any host's payouts; hosts only their own."""
        if not _is_admin(caller):
            if host_id and host_id != caller.id:
                raise AuthorizationError("You can only view your own payouts")
            host_id = caller.id
        return [payout_view(p) for p in self.ledger.list(host_id=host_id, status=status)]
