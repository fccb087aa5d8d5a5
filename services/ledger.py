"""
Payment Ledger

All reads and writes of Transaction / Payout rows go through here so the
state machine lives in one place:

    pending ──► completed
       │
       └──────► failed

Terminal transitions are conditional updates (WHERE status = 'pending').
When two writers race (duplicate callbacks, a callback racing the
reconciliation sweep), exactly one update matches a row; the loser gets
False back and must treat the event as already handled.

Each write commits immediately: a row is durable before the caller talks to
M-Pesa or answers the client.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database.models import (
    Booking, BookingPaymentStatus, IssueKind, PaymentStatus, Payout,
    ReconciliationIssue, Transaction, utcnow
)
from services.exceptions import NotFoundError, PaymentInProgressError

logger = logging.getLogger(__name__)

PENDING = PaymentStatus.PENDING.value
COMPLETED = PaymentStatus.COMPLETED.value
FAILED = PaymentStatus.FAILED.value


class TransactionLedger:
    """Persistence and state transitions for payment attempts."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------
    # Reads
    # ------------------------------------------

    def get(self, transaction_id: str) -> Optional[Transaction]:
        return self.db.get(Transaction, transaction_id, populate_existing=True)

    def get_for_owner(self, transaction_id: str, user_id: str) -> Transaction:
        """
        Fetch a transaction owned by user_id.

        Missing rows and rows owned by someone else raise the same
        NotFoundError.
        """
        transaction = self.db.query(Transaction).filter(
            Transaction.id == transaction_id,
            Transaction.user_id == user_id
        ).populate_existing().first()

        if not transaction:
            raise NotFoundError("Transaction not found")
        return transaction

    def find_by_checkout_id(self, checkout_request_id: str) -> Optional[Transaction]:
        return self.db.query(Transaction).filter(
            Transaction.checkout_request_id == checkout_request_id
        ).populate_existing().first()

    def list_for_user(self, user_id: str, status: Optional[str] = None, limit: int = 50) -> List[Transaction]:
        query = self.db.query(Transaction).filter(Transaction.user_id == user_id)
        if status:
            query = query.filter(Transaction.status == status)
        return query.order_by(Transaction.created_at.desc()).limit(limit).all()

    def stale_pending(self, cutoff: datetime, with_checkout: bool, limit: int = 100) -> List[Transaction]:
        """
        Pending transactions created before cutoff.

        with_checkout=True: accepted by M-Pesa, outcome never arrived.
        with_checkout=False: never got a CheckoutRequestID (orphaned).
        """
        query = self.db.query(Transaction).filter(
            Transaction.status == PENDING,
            Transaction.created_at < cutoff
        )
        if with_checkout:
            query = query.filter(Transaction.checkout_request_id.isnot(None))
        else:
            query = query.filter(Transaction.checkout_request_id.is_(None))
        return query.order_by(Transaction.created_at).limit(limit).all()

    # ------------------------------------------
    # Writes
    # ------------------------------------------

    def create_pending(
        self,
        user_id: str,
        booking_id: str,
        amount: int,
        phone_number: str,
        description: Optional[str] = None
    ) -> Transaction:
        """Insert a pending transaction. One pending attempt per booking + payer."""
        existing = self.db.query(Transaction.id).filter(
            Transaction.booking_id == booking_id,
            Transaction.phone_number == phone_number,
            Transaction.status == PENDING
        ).first()
        if existing:
            raise PaymentInProgressError(
                "A payment for this booking is already in progress. "
                "Complete or cancel the prompt on your phone first."
            )

        transaction = Transaction(
            user_id=user_id,
            booking_id=booking_id,
            amount=amount,
            phone_number=phone_number,
            description=description,
            status=PENDING
        )
        self.db.add(transaction)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent initiate for the same booking + payer
            self.db.rollback()
            raise PaymentInProgressError("A payment for this booking is already in progress.")

        self.db.refresh(transaction)
        logger.info(f"Transaction {transaction.id} created (pending) for booking {booking_id}")
        return transaction

    def attach_checkout(
        self,
        transaction_id: str,
        checkout_request_id: str,
        merchant_request_id: Optional[str] = None
    ) -> bool:
        """Store the CheckoutRequestID on a pending transaction."""
        updated = self.db.query(Transaction).filter(
            Transaction.id == transaction_id,
            Transaction.status == PENDING
        ).update({
            Transaction.checkout_request_id: checkout_request_id,
            Transaction.merchant_request_id: merchant_request_id,
            Transaction.updated_at: utcnow(),
        }, synchronize_session=False)
        self.db.commit()
        self.db.expire_all()
        return updated == 1

    def complete_pending(
        self,
        transaction_id: str,
        receipt: Optional[str],
        completed_at: Optional[datetime] = None
    ) -> bool:
        """pending -> completed. Returns False if the row was already terminal."""
        now = completed_at or utcnow()
        updated = self.db.query(Transaction).filter(
            Transaction.id == transaction_id,
            Transaction.status == PENDING
        ).update({
            Transaction.status: COMPLETED,
            Transaction.mpesa_receipt: receipt,
            Transaction.error_message: None,
            Transaction.completed_at: now,
            Transaction.updated_at: now,
        }, synchronize_session=False)
        self.db.commit()
        self.db.expire_all()

        if updated:
            logger.info(f"Transaction {transaction_id} completed (receipt {receipt})")
        return updated == 1

    def fail_pending(self, transaction_id: str, error_message: str) -> bool:
        """pending -> failed. Returns False if the row was already terminal."""
        now = utcnow()
        updated = self.db.query(Transaction).filter(
            Transaction.id == transaction_id,
            Transaction.status == PENDING
        ).update({
            Transaction.status: FAILED,
            Transaction.error_message: error_message,
            Transaction.completed_at: now,
            Transaction.updated_at: now,
        }, synchronize_session=False)
        self.db.commit()
        self.db.expire_all()

        if updated:
            logger.info(f"Transaction {transaction_id} failed: {error_message}")
        return updated == 1

    def mark_booking_paid(self, booking_id: str, paid_at: Optional[datetime] = None) -> Booking:
        """
        Flag the booking as paid.

        Commits on success; on any failure the booking change is rolled back
        and the exception propagates to the caller.
        """
        try:
            booking = self.db.get(Booking, booking_id)
            if not booking:
                raise NotFoundError(f"Booking {booking_id} not found")

            booking.payment_status = BookingPaymentStatus.COMPLETED.value
            booking.paid_at = paid_at or utcnow()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Booking {booking_id} marked as paid")
        return booking


class PayoutLedger:
    """Persistence and state transitions for host payouts."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, payout_id: str) -> Optional[Payout]:
        return self.db.get(Payout, payout_id, populate_existing=True)

    def find_by_conversation_id(self, conversation_id: str) -> Optional[Payout]:
        return self.db.query(Payout).filter(
            Payout.conversation_id == conversation_id
        ).populate_existing().first()

    def list(self, host_id: Optional[str] = None, status: Optional[str] = None, limit: int = 100) -> List[Payout]:
        query = self.db.query(Payout)
        if host_id:
            query = query.filter(Payout.host_id == host_id)
        if status:
            query = query.filter(Payout.status == status)
        return query.order_by(Payout.created_at.desc()).limit(limit).all()

    def stale_pending(self, cutoff: datetime, limit: int = 100) -> List[Payout]:
        """Pending payouts created before cutoff (result or timeout never arrived)."""
        return self.db.query(Payout).filter(
            Payout.status == PENDING,
            Payout.created_at < cutoff
        ).order_by(Payout.created_at).limit(limit).all()

    def create_pending(
        self,
        host_id: str,
        amount: int,
        phone_number: str,
        description: str,
        requested_by: Optional[str] = None
    ) -> Payout:
        payout = Payout(
            host_id=host_id,
            amount=amount,
            phone_number=phone_number,
            description=description,
            requested_by=requested_by,
            status=PENDING
        )
        self.db.add(payout)
        self.db.commit()
        self.db.refresh(payout)

        logger.info(f"Payout {payout.id} created (pending) for host {host_id}")
        return payout

    def attach_conversation(
        self,
        payout_id: str,
        conversation_id: Optional[str],
        originator_conversation_id: Optional[str]
    ) -> bool:
        updated = self.db.query(Payout).filter(
            Payout.id == payout_id,
            Payout.status == PENDING
        ).update({
            Payout.conversation_id: conversation_id,
            Payout.originator_conversation_id: originator_conversation_id,
            Payout.updated_at: utcnow(),
        }, synchronize_session=False)
        self.db.commit()
        self.db.expire_all()
        return updated == 1

    def complete_pending(self, payout_id: str, mpesa_ref: Optional[str]) -> bool:
        now = utcnow()
        updated = self.db.query(Payout).filter(
            Payout.id == payout_id,
            Payout.status == PENDING
        ).update({
            Payout.status: COMPLETED,
            Payout.mpesa_ref: mpesa_ref,
            Payout.error_message: None,
            Payout.completed_at: now,
            Payout.updated_at: now,
        }, synchronize_session=False)
        self.db.commit()
        self.db.expire_all()

        if updated:
            logger.info(f"Payout {payout_id} completed (ref {mpesa_ref})")
        return updated == 1

    def fail_pending(self, payout_id: str, error_message: str) -> bool:
        now = utcnow()
        updated = self.db.query(Payout).filter(
            Payout.id == payout_id,
            Payout.status == PENDING
        ).update({
            Payout.status: FAILED,
            Payout.error_message: error_message,
            Payout.completed_at: now,
            Payout.updated_at: now,
        }, synchronize_session=False)
        self.db.commit()
        self.db.expire_all()

        if updated:
            logger.info(f"Payout {payout_id} failed: {error_message}")
        return updated == 1


class ReconciliationQueue:
    """Durable list of discrepancies for the reconciliation sweep."""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        kind: IssueKind,
        details: str,
        transaction_id: Optional[str] = None,
        reference: Optional[str] = None
    ) -> ReconciliationIssue:
        """Queue an issue unless the same one is already open."""
        query = self.db.query(ReconciliationIssue).filter(
            ReconciliationIssue.kind == kind.value,
            ReconciliationIssue.resolved.is_(False)
        )
        if transaction_id:
            query = query.filter(ReconciliationIssue.transaction_id == transaction_id)
        if reference:
            query = query.filter(ReconciliationIssue.reference == reference)

        existing = query.first()
        if existing:
            return existing

        issue = ReconciliationIssue(
            kind=kind.value,
            transaction_id=transaction_id,
            reference=reference,
            details=details
        )
        self.db.add(issue)
        self.db.commit()
        self.db.refresh(issue)

        logger.warning(f"Reconciliation issue #{issue.id} queued ({kind.value}): {details}")
        return issue

    def open_issues(
        self,
        kind: Optional[IssueKind] = None,
        limit: int = 100,
        transaction_id: Optional[str] = None,
        reference: Optional[str] = None
    ) -> List[ReconciliationIssue]:
        query = self.db.query(ReconciliationIssue).filter(ReconciliationIssue.resolved.is_(False))
        if kind:
            query = query.filter(ReconciliationIssue.kind == kind.value)
        if transaction_id:
            query = query.filter(ReconciliationIssue.transaction_id == transaction_id)
        if reference:
            query = query.filter(ReconciliationIssue.reference == reference)
        return query.order_by(ReconciliationIssue.created_at).limit(limit).all()

    def list(self, resolved: Optional[bool] = None, limit: int = 100) -> List[ReconciliationIssue]:
        query = self.db.query(ReconciliationIssue)
        if resolved is not None:
            query = query.filter(ReconciliationIssue.resolved.is_(resolved))
        return query.order_by(ReconciliationIssue.created_at.desc()).limit(limit).all()

    def resolve(self, issue: ReconciliationIssue, note: Optional[str] = None):
        issue.resolved = True
        issue.resolved_at = utcnow()
        if note:
            issue.details = f"{issue.details or ''}\nResolved: {note}".strip()
        self.db.commit()
        logger.info(f"Reconciliation issue #{issue.id} resolved")
