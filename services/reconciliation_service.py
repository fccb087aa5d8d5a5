"""
Payment Reconciliation

Callbacks get lost: M-Pesa outages, our own downtime, a crash between
"accepted by M-Pesa" and "CheckoutRequestID saved". This sweep closes those
gaps by asking M-Pesa directly and applying the same transitions the
callback would have applied.

Run by:
- Celery Beat (payments.tasks.reconcile_pending_payments)
- POST /admin/reconcile
- scripts/reconcile_payments.py
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from database.models import IssueKind, PaymentStatus, Payout, Transaction, utcnow
from services.callback_service import CallbackProcessor
from services.exceptions import GatewayAuthError, NotFoundError, ReconciliationGap
from services.ledger import PayoutLedger, ReconciliationQueue, TransactionLedger
from services.mpesa import MPesaService
from services.payment_service import transaction_status

logger = logging.getLogger(__name__)

ORPHAN_FAILURE_MESSAGE = "Payment request was not confirmed by the provider"


@dataclass
class ReconciliationReport:
    checked: int = 0
    completed: int = 0
    failed: int = 0
    still_pending: int = 0
    orphans_failed: int = 0
    orphans_flagged: int = 0
    bookings_repaired: int = 0
    payouts_flagged: int = 0
    payouts_settled: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class ReconciliationService:
    """Resolves stale pending transactions, repairs booking updates and flags stuck payouts."""

    def __init__(
        self,
        db: Session,
        gateway: MPesaService,
        pending_after_seconds: int = 300,
        orphan_after_seconds: int = 900,
        fail_orphans: bool = False,
        batch_size: int = 100,
        payout_after_seconds: int = 1800
    ):
        self.db = db
        self.gateway = gateway
        self.pending_after = timedelta(seconds=pending_after_seconds)
        self.orphan_after = timedelta(seconds=orphan_after_seconds)
        self.payout_after = timedelta(seconds=payout_after_seconds)
        self.fail_orphans = fail_orphans
        self.batch_size = batch_size

        self.ledger = TransactionLedger(db)
        self.payouts = PayoutLedger(db)
        self.issues = ReconciliationQueue(db)
        self.processor = CallbackProcessor(db)

    @classmethod
    def from_settings(cls, db: Session, gateway: MPesaService, settings) -> "ReconciliationService":
        return cls(
            db,
            gateway,
            pending_after_seconds=settings.reconcile_pending_after_seconds,
            orphan_after_seconds=settings.reconcile_orphan_after_seconds,
            fail_orphans=settings.reconcile_fail_orphans,
            batch_size=settings.reconcile_batch_size,
            payout_after_seconds=settings.reconcile_payout_after_seconds,
        )

    # ------------------------------------------
    # Sweep
    # ------------------------------------------

    def sweep(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """One pass over stale pending transactions, open booking issues and stale payouts."""
        now = now or utcnow()
        report = ReconciliationReport()

        self._query_stale_pending(now - self.pending_after, report)
        self._handle_orphans(now - self.orphan_after, report)
        self._repair_bookings(report)
        self._review_payouts(now - self.payout_after, report)

        logger.info(f"Reconciliation sweep finished: {report.to_dict()}")
        return report

    def _query_stale_pending(self, cutoff: datetime, report: ReconciliationReport):
        stale = self.ledger.stale_pending(cutoff, with_checkout=True, limit=self.batch_size)
        for transaction in stale:
            report.checked += 1
            try:
                outcome = self._resolve_with_provider(transaction)
            except GatewayAuthError as e:
                # Every further query would fail the same way
                logger.error(f"Reconciliation stopped, M-Pesa auth failed: {e}")
                report.errors += 1
                break
            except Exception:
                logger.exception(f"Reconciliation failed for transaction {transaction.id}")
                self.db.rollback()
                report.errors += 1
                continue

            if outcome == "completed":
                report.completed += 1
            elif outcome == "failed":
                report.failed += 1
            else:
                report.still_pending += 1

    def _resolve_with_provider(self, transaction: Transaction) -> str:
        """
        Ask M-Pesa for the outcome of one transaction and apply it.

        Returns "completed", "failed" or "pending".
        """
        result = self.gateway.query_status(transaction.checkout_request_id)

        if result.success:
            self.processor.apply_payment_success(transaction.id, transaction.booking_id, receipt=None)
            return "completed"

        if result.result_code is not None and result.result_code != "0":
            self.ledger.fail_pending(transaction.id, result.result_desc or "Payment failed")
            return "failed"

        logger.info(f"Transaction {transaction.id} still pending at M-Pesa: {result.error}")
        return "pending"

    def _handle_orphans(self, cutoff: datetime, report: ReconciliationReport):
        orphans = self.ledger.stale_pending(cutoff, with_checkout=False, limit=self.batch_size)
        for transaction in orphans:
            report.checked += 1
            try:
                self._check_orphan(transaction)
                report.orphans_failed += 1
            except ReconciliationGap as gap:
                self.issues.record(
                    IssueKind.ORPHANED_PENDING,
                    gap.message,
                    transaction_id=transaction.id
                )
                report.orphans_flagged += 1
            except Exception:
                logger.exception(f"Reconciliation failed for orphaned transaction {transaction.id}")
                self.db.rollback()
                report.errors += 1

    def _check_orphan(self, transaction: Transaction):
        """
        A pending transaction that never got a CheckoutRequestID cannot be
        queried. Fail it if configured to, otherwise report the gap.
        """
        if not self.fail_orphans:
            raise ReconciliationGap(
                f"Transaction {transaction.id} pending since {transaction.created_at} "
                f"without a CheckoutRequestID"
            )
        self._fail_orphan(transaction)

    def _fail_orphan(self, transaction: Transaction, note: str = "failed by reconciliation"):
        """Fail an orphaned transaction and close any issue queued for it."""
        self.ledger.fail_pending(transaction.id, ORPHAN_FAILURE_MESSAGE)
        for issue in self.issues.open_issues(IssueKind.ORPHANED_PENDING, transaction_id=transaction.id):
            self.issues.resolve(issue, note=note)

    def _repair_bookings(self, report: ReconciliationReport):
        for issue in self.issues.open_issues(IssueKind.BOOKING_UPDATE_FAILED, limit=self.batch_size):
            transaction = self.ledger.get(issue.transaction_id) if issue.transaction_id else None
            if not transaction:
                continue
            try:
                self.ledger.mark_booking_paid(transaction.booking_id, paid_at=transaction.completed_at)
            except Exception as e:
                logger.error(f"Booking {transaction.booking_id} still not updated: {e}")
                report.errors += 1
                continue
            self.issues.resolve(issue, note="booking marked paid by reconciliation")
            report.bookings_repaired += 1

    def _review_payouts(self, cutoff: datetime, report: ReconciliationReport):
        """
        B2C has no status query we use, so a payout whose result and timeout
        both went missing can only be flagged for an admin. Flags close once
        the payout settles.
        """
        for issue in self.issues.open_issues(IssueKind.STALE_PAYOUT, limit=self.batch_size):
            payout = self.payouts.get(issue.reference) if issue.reference else None
            if payout and payout.status != PaymentStatus.PENDING.value:
                self.issues.resolve(issue, note=f"payout {payout.status}")
                report.payouts_settled += 1

        for payout in self.payouts.stale_pending(cutoff, limit=self.batch_size):
            try:
                self.issues.record(IssueKind.STALE_PAYOUT, self._stale_payout_details(payout), reference=payout.id)
            except Exception:
                logger.exception(f"Reconciliation failed for payout {payout.id}")
                self.db.rollback()
                report.errors += 1
                continue
            report.payouts_flagged += 1

    def _stale_payout_details(self, payout: Payout) -> str:
        details = (
            f"Payout {payout.id} pending since {payout.created_at} "
            f"(ConversationID {payout.conversation_id or 'none'})"
        )
        if payout.conversation_id:
            early = self.issues.open_issues(IssueKind.UNKNOWN_CONVERSATION, reference=payout.conversation_id)
            if early:
                details += f"; its B2C result arrived before the payout was saved, see issue #{early[0].id}"
        return details

    # ------------------------------------------
    # Single transaction
    # ------------------------------------------

    def reconcile_transaction(self, transaction_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Resolve one transaction now.

        Transactions with a CheckoutRequestID are queried regardless of age.
        An orphan is failed once it is past the orphan threshold, whatever
        RECONCILE_FAIL_ORPHANS says; younger orphans stay pending.
        """
        transaction = self.ledger.get(transaction_id)
        if not transaction:
            raise NotFoundError("Transaction not found")

        if not transaction.is_terminal:
            if transaction.checkout_request_id:
                self._resolve_with_provider(transaction)
            elif transaction.created_at < (now or utcnow()) - self.orphan_after:
                self._fail_orphan(transaction, note="failed by admin reconciliation")
            else:
                logger.info(f"Orphaned transaction {transaction_id} is too recent to fail")
            transaction = self.ledger.get(transaction_id)

        return transaction_status(transaction)
