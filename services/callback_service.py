"""
M-Pesa Callback Processing

Safaricom calls us asynchronously once a charge (STK push) or payout (B2C)
resolves. Whatever happens in here, the caller gets the acknowledgment
back: M-Pesa retries any callback it does not see acknowledged, and a retry
of a broken payload will not fix itself. Internal problems go to the log
and to the reconciliation queue instead.

STK callback structure:
{
    "Body": {
        "stkCallback": {
            "MerchantRequestID": "...",
            "CheckoutRequestID": "...",
            "ResultCode": 0,  # 0 = success, anything else = failure
            "ResultDesc": "The service request is processed successfully.",
            "CallbackMetadata": {
                "Item": [
                    {"Name": "Amount", "Value": 1.00},
                    {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                    {"Name": "TransactionDate", "Value": 20191219102115},
                    {"Name": "PhoneNumber", "Value": 254708374149}
                ]
            }
        }
    }
}
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from database.models import IssueKind, PaymentStatus, utcnow
from services.exceptions import InvalidRequestError
from services.ledger import PayoutLedger, ReconciliationQueue, TransactionLedger
from services.mpesa import round_amount

logger = logging.getLogger(__name__)

CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Callback received successfully"}
PAYOUT_TIMEOUT_MESSAGE = "Request timed out in M-Pesa queue"


def acknowledgment() -> Dict[str, Any]:
    return dict(CALLBACK_ACK)


class CallbackMetadata:
    """
    Lookup-by-name view over Daraja's list of {Name, Value} items.

    The list is unordered and items may be missing; absent names (and
    malformed items) read as None.
    """

    def __init__(self, items: Optional[Iterable[Any]], key_field: str = "Name", value_field: str = "Value"):
        self._values: Dict[str, Any] = {}
        if not isinstance(items, (list, tuple)):
            return
        for item in items:
            if isinstance(item, dict) and key_field in item:
                self._values[str(item[key_field])] = item.get(value_field)

    def get(self, name: str) -> Any:
        return self._values.get(name)

    def get_str(self, name: str) -> Optional[str]:
        value = self.get(name)
        return None if value is None else str(value)


def _as_result_code(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


@dataclass
class StkCallback:
    """Parsed Body.stkCallback envelope."""
    checkout_request_id: str
    result_code: int
    result_desc: str
    merchant_request_id: Optional[str]
    metadata: CallbackMetadata

    @property
    def is_success(self) -> bool:
        return self.result_code == 0

    @property
    def receipt(self) -> Optional[str]:
        return self.metadata.get_str("MpesaReceiptNumber")

    @property
    def amount(self) -> Any:
        return self.metadata.get("Amount")

    @classmethod
    def parse(cls, payload: Any) -> Optional["StkCallback"]:
        """Return None when the payload is not a usable STK callback."""
        if not isinstance(payload, dict):
            return None
        body = payload.get("Body")
        stk = body.get("stkCallback") if isinstance(body, dict) else None
        if not isinstance(stk, dict):
            return None

        checkout_request_id = stk.get("CheckoutRequestID")
        result_code = _as_result_code(stk.get("ResultCode"))
        if not checkout_request_id or result_code is None:
            return None

        metadata = stk.get("CallbackMetadata")
        items = metadata.get("Item") if isinstance(metadata, dict) else None

        return cls(
            checkout_request_id=str(checkout_request_id),
            result_code=result_code,
            result_desc=str(stk.get("ResultDesc") or "Payment failed"),
            merchant_request_id=stk.get("MerchantRequestID"),
            metadata=CallbackMetadata(items),
        )


@dataclass
class B2CResult:
    """Parsed B2C Result envelope (payout result / timeout)."""
    conversation_id: str
    result_code: Optional[int]
    result_desc: Optional[str]
    transaction_id: Optional[str]
    parameters: CallbackMetadata

    @property
    def receipt(self) -> Optional[str]:
        return self.parameters.get_str("TransactionReceipt") or self.transaction_id

    @classmethod
    def parse(cls, payload: Any) -> Optional["B2CResult"]:
        if not isinstance(payload, dict):
            return None
        result = payload.get("Result")
        if not isinstance(result, dict) or not result.get("ConversationID"):
            return None

        params = result.get("ResultParameters")
        items = params.get("ResultParameter") if isinstance(params, dict) else None

        return cls(
            conversation_id=str(result["ConversationID"]),
            result_code=_as_result_code(result.get("ResultCode")),
            result_desc=result.get("ResultDesc"),
            transaction_id=result.get("TransactionID"),
            parameters=CallbackMetadata(items, key_field="Key", value_field="Value"),
        )


class CallbackProcessor:
    """Applies M-Pesa callbacks to the ledger. Every handler returns the ack."""

    def __init__(self, db: Session):
        self.db = db
        self.transactions = TransactionLedger(db)
        self.payouts = PayoutLedger(db)
        self.issues = ReconciliationQueue(db)

    # ------------------------------------------
    # STK push (guest payments)
    # ------------------------------------------

    def handle_stk_callback(self, payload: Any) -> Dict[str, Any]:
        """Process a Body.stkCallback payload. Always returns the ack."""
        try:
            self._process_stk_callback(payload)
        except Exception:
            logger.exception("M-Pesa webhook error")
            self.db.rollback()
        return acknowledgment()

    def _process_stk_callback(self, payload: Any):
        callback = StkCallback.parse(payload)
        if callback is None:
            logger.error(f"M-Pesa: Malformed STK callback ignored: {payload!r}")
            return

        logger.info(
            f"M-Pesa callback: CheckoutRequestID={callback.checkout_request_id} "
            f"ResultCode={callback.result_code} ResultDesc={callback.result_desc}"
        )

        transaction = self.transactions.find_by_checkout_id(callback.checkout_request_id)
        if not transaction:
            logger.warning(f"M-Pesa: Transaction not found for {callback.checkout_request_id}")
            self.issues.record(
                IssueKind.UNKNOWN_CHECKOUT,
                f"Callback for unknown CheckoutRequestID (ResultCode {callback.result_code}: "
                f"{callback.result_desc})",
                reference=callback.checkout_request_id
            )
            return

        if transaction.is_terminal:
            logger.info(
                f"M-Pesa: Duplicate callback for transaction {transaction.id} "
                f"(already {transaction.status}), ignoring"
            )
            return

        if callback.is_success:
            self._check_amount(callback, transaction.id, transaction.amount)
            self.apply_payment_success(transaction.id, transaction.booking_id, callback.receipt)
        else:
            if self.transactions.fail_pending(transaction.id, callback.result_desc):
                logger.warning(f"M-Pesa: Payment failed - {callback.result_desc}")
            else:
                logger.info(f"M-Pesa: Transaction {transaction.id} finalized concurrently, ignoring")

    def _check_amount(self, callback: StkCallback, transaction_id: str, expected: int):
        """Log when M-Pesa reports a different amount than we charged. The payment still completes."""
        if callback.amount is None:
            return
        try:
            paid = round_amount(callback.amount)
        except InvalidRequestError:
            paid = None
        if paid != expected:
            logger.warning(
                f"M-Pesa: Amount mismatch for transaction {transaction_id}: "
                f"charged {expected}, callback reports {callback.amount!r}"
            )

    def apply_payment_success(self, transaction_id: str, booking_id: str, receipt: Optional[str]) -> bool:
        """
        Complete a pending transaction and cascade to its booking.

        Only the writer that wins the pending -> completed transition touches
        the booking. A booking failure never rolls the payment back; it is
        queued for reconciliation instead. Shared with the reconciliation
        sweep.
        """
        paid_at = utcnow()
        if not self.transactions.complete_pending(transaction_id, receipt, completed_at=paid_at):
            logger.info(f"M-Pesa: Transaction {transaction_id} finalized concurrently, ignoring")
            return False

        logger.info(f"M-Pesa: Payment completed - {receipt}")
        try:
            self.transactions.mark_booking_paid(booking_id, paid_at=paid_at)
        except Exception as e:
            logger.error(f"Error updating booking {booking_id} for transaction {transaction_id}: {e}")
            self.issues.record(
                IssueKind.BOOKING_UPDATE_FAILED,
                f"Payment {receipt} received but booking {booking_id} was not marked paid: {e}",
                transaction_id=transaction_id
            )
        return True

    # ------------------------------------------
    # B2C (host payouts)
    # ------------------------------------------

    def handle_payout_result(self, payload: Any) -> Dict[str, Any]:
        """
        Process a B2C Result payload.

        {
          "Result": {
            "ResultCode": 0,
            "ResultDesc": "The service request is processed successfully.",
            "ConversationID": "AG_20231221_...",
            "TransactionID": "QH1234567890",
            "ResultParameters": {
              "ResultParameter": [
                {"Key": "TransactionAmount", "Value": 5000},
                {"Key": "TransactionReceipt", "Value": "QH1234567890"}
              ]
            }
          }
        }
        """
        try:
            self._process_payout_result(payload)
        except Exception:
            logger.exception("M-Pesa B2C result webhook error")
            self.db.rollback()
        return acknowledgment()

    def _process_payout_result(self, payload: Any):
        result = B2CResult.parse(payload)
        if result is None:
            logger.error(f"M-Pesa B2C: Malformed result ignored: {payload!r}")
            return

        payout = self.payouts.find_by_conversation_id(result.conversation_id)
        if not payout:
            logger.warning(f"M-Pesa B2C: Payout not found for ConversationID: {result.conversation_id}")
            self.issues.record(
                IssueKind.UNKNOWN_CONVERSATION,
                f"B2C result for unknown ConversationID (ResultCode {result.result_code}: "
                f"{result.result_desc}, receipt {result.receipt})",
                reference=result.conversation_id
            )
            return

        if payout.status != PaymentStatus.PENDING.value:
            logger.info(f"M-Pesa B2C: Duplicate result for payout {payout.id} (already {payout.status})")
            return

        if result.result_code == 0:
            self.payouts.complete_pending(payout.id, result.receipt)
        else:
            self.payouts.fail_pending(payout.id, result.result_desc or "Payout failed")
            logger.warning(f"M-Pesa B2C: Payout failed - {result.result_desc}")

    def handle_payout_timeout(self, payload: Any) -> Dict[str, Any]:
        """M-Pesa sends this if a payout is stuck in its queue too long."""
        try:
            result = B2CResult.parse(payload)
            if result is None:
                logger.error(f"M-Pesa B2C: Malformed timeout ignored: {payload!r}")
                return acknowledgment()

            logger.warning(f"M-Pesa B2C timeout for ConversationID {result.conversation_id}")
            payout = self.payouts.find_by_conversation_id(result.conversation_id)
            if not payout:
                self.issues.record(
                    IssueKind.UNKNOWN_CONVERSATION,
                    "B2C timeout for unknown ConversationID",
                    reference=result.conversation_id
                )
            elif self.payouts.fail_pending(payout.id, PAYOUT_TIMEOUT_MESSAGE):
                logger.info(f"M-Pesa B2C: Payout {payout.id} marked as failed due to timeout")
        except Exception:
            logger.exception("M-Pesa B2C timeout webhook error")
            self.db.rollback()
        return acknowledgment()
