"""
Test Payment Reconciliation

Tests the reconciliation sweep (stale pending, orphans, booking repair),
single-transaction reconciliation, the admin endpoints and the Celery task
body.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import b2c_result, stk_callback
from database.models import Booking, IssueKind, ReconciliationIssue, Transaction, utcnow
from payments.tasks.reconciliation_tasks import run_sweep
from services.callback_service import CallbackProcessor
from services.exceptions import GatewayAuthError, NotFoundError
from services.ledger import PayoutLedger, ReconciliationQueue, TransactionLedger
from services.mpesa import GatewayResult
from services.reconciliation_service import ORPHAN_FAILURE_MESSAGE, ReconciliationService

COMPLETED = GatewayResult(success=True, response_code="0", result_code="0", result_desc="The service request is processed successfully.")
CANCELLED = GatewayResult(success=False, response_code="0", result_code="1032", result_desc="Request cancelled by user", error="Request cancelled by user")
PROCESSING = GatewayResult(success=False, error="The transaction is being processed")

LATER = timedelta(hours=1)


@pytest.fixture
def ledger(db):
    return TransactionLedger(db)


@pytest.fixture
def sent(ledger, guest, booking):
    """A transaction M-Pesa accepted (has a CheckoutRequestID)."""
    transaction = ledger.create_pending(guest.id, booking.id, 1500, "254712345678")
    ledger.attach_checkout(transaction.id, "ws_1", "mr_1")
    return transaction


@pytest.fixture
def orphan(ledger, guest, booking):
    """A pending transaction that never got a CheckoutRequestID."""
    return ledger.create_pending(guest.id, booking.id, 1500, "254722000000")


@pytest.fixture
def service(db, gateway):
    return ReconciliationService(db, gateway)


def _booking_status(db, booking):
    db.expire_all()
    return db.get(Booking, booking.id).payment_status


# ============================================
# Stale pending with a CheckoutRequestID
# ============================================

def test_sweep_completes_paid_transaction(db, service, gateway, ledger, sent, booking):
    gateway.query_status.return_value = COMPLETED

    report = service.sweep(now=utcnow() + LATER)

    assert report.completed == 1
    gateway.query_status.assert_called_once_with("ws_1")
    assert ledger.get(sent.id).status == "completed"
    assert _booking_status(db, booking) == "completed"


def test_sweep_fails_cancelled_transaction(db, service, gateway, ledger, sent, booking):
    gateway.query_status.return_value = CANCELLED

    report = service.sweep(now=utcnow() + LATER)

    assert report.failed == 1
    transaction = ledger.get(sent.id)
    assert transaction.status == "failed"
    assert transaction.error_message == "Request cancelled by user"
    assert _booking_status(db, booking) == "unpaid"


def test_sweep_leaves_unresolved_transaction_pending(service, gateway, ledger, sent):
    gateway.query_status.return_value = PROCESSING

    report = service.sweep(now=utcnow() + LATER)

    assert report.still_pending == 1
    assert ledger.get(sent.id).status == "pending"


def test_sweep_ignores_recent_transactions(service, gateway, sent, orphan):
    report = service.sweep()

    assert report.checked == 0
    gateway.query_status.assert_not_called()


def test_sweep_skips_terminal_transactions(service, gateway, ledger, sent):
    ledger.complete_pending(sent.id, "QAZ123")

    report = service.sweep(now=utcnow() + LATER)

    assert report.checked == 0
    gateway.query_status.assert_not_called()


def test_one_failure_does_not_abort_sweep(service, gateway, ledger, guest, booking, sent):
    second = ledger.create_pending(guest.id, booking.id, 1500, "254733000000")
    ledger.attach_checkout(second.id, "ws_2")
    gateway.query_status.side_effect = [RuntimeError("unexpected payload"), COMPLETED]

    report = service.sweep(now=utcnow() + LATER)

    assert report.checked == 2
    assert report.errors == 1
    assert report.completed == 1


def test_gateway_auth_failure_stops_sweep(service, gateway, ledger, guest, booking, sent):
    second = ledger.create_pending(guest.id, booking.id, 1500, "254733000000")
    ledger.attach_checkout(second.id, "ws_2")
    gateway.query_status.side_effect = GatewayAuthError("M-Pesa rejected credentials")

    report = service.sweep(now=utcnow() + LATER)

    assert report.errors == 1
    assert gateway.query_status.call_count == 1
    assert ledger.get(sent.id).status == "pending"


def test_callback_after_sweep_is_ignored(client, db, gateway, ledger, sent):
    gateway.query_status.return_value = CANCELLED
    ReconciliationService(db, gateway).sweep(now=utcnow() + LATER)

    response = client.post("/payments/callback", json=stk_callback("ws_1"))

    assert response.json()["ResultCode"] == 0
    assert ledger.get(sent.id).status == "failed"


# ============================================
# Orphans
# ============================================

def test_orphan_is_flagged_by_default(db, service, ledger, orphan):
    report = service.sweep(now=utcnow() + LATER)

    assert report.orphans_flagged == 1
    assert ledger.get(orphan.id).status == "pending"
    issue = ReconciliationQueue(db).open_issues(IssueKind.ORPHANED_PENDING)[0]
    assert issue.transaction_id == orphan.id

    # A second sweep does not queue the same orphan twice
    service.sweep(now=utcnow() + LATER)
    assert len(ReconciliationQueue(db).open_issues(IssueKind.ORPHANED_PENDING)) == 1


def test_orphan_is_failed_when_configured(db, gateway, ledger, orphan):
    service = ReconciliationService(db, gateway, fail_orphans=True)

    report = service.sweep(now=utcnow() + LATER)

    assert report.orphans_failed == 1
    transaction = ledger.get(orphan.id)
    assert transaction.status == "failed"
    assert transaction.error_message == ORPHAN_FAILURE_MESSAGE


def test_orphan_threshold_is_separate(service, ledger, orphan):
    # Past the pending threshold (5 min) but not the orphan threshold (15 min)
    report = service.sweep(now=utcnow() + timedelta(minutes=10))

    assert report.orphans_flagged == 0
    assert ledger.get(orphan.id).status == "pending"


# ============================================
# Booking repair
# ============================================

def test_sweep_repairs_failed_booking_update(client, db, service, ledger, sent, booking):
    with patch.object(TransactionLedger, "mark_booking_paid", side_effect=RuntimeError("bookings table locked")):
        client.post("/payments/callback", json=stk_callback("ws_1"))
    assert _booking_status(db, booking) == "unpaid"

    report = service.sweep()

    assert report.bookings_repaired == 1
    assert _booking_status(db, booking) == "completed"
    issue = db.query(ReconciliationIssue).one()
    assert issue.resolved is True
    assert issue.resolved_at is not None


# ============================================
# Single transaction
# ============================================

def test_reconcile_transaction(service, gateway, sent):
    gateway.query_status.return_value = COMPLETED

    status = service.reconcile_transaction(sent.id)

    assert status["status"] == "completed"
    assert status["transactionId"] == sent.id


def test_reconcile_terminal_transaction_does_not_query(service, gateway, ledger, sent):
    ledger.fail_pending(sent.id, "Request cancelled by user")

    status = service.reconcile_transaction(sent.id)

    assert status["status"] == "failed"
    gateway.query_status.assert_not_called()


def test_reconcile_missing_transaction(service):
    with pytest.raises(NotFoundError):
        service.reconcile_transaction("no-such-transaction")


def test_from_settings(db, gateway, settings):
    service = ReconciliationService.from_settings(db, gateway, settings)

    assert service.pending_after == timedelta(seconds=settings.reconcile_pending_after_seconds)
    assert service.orphan_after == timedelta(seconds=settings.reconcile_orphan_after_seconds)
    assert service.fail_orphans is settings.reconcile_fail_orphans


# ============================================
# Admin endpoints & task
# ============================================

def test_admin_endpoints_require_admin(client, guest, host, auth_headers):
    for user in (guest, host):
        assert client.post("/admin/reconcile", headers=auth_headers(user)).status_code == 403
        assert client.get("/admin/reconciliation-issues", headers=auth_headers(user)).status_code == 403
    assert client.post("/admin/reconcile").status_code == 401


def test_admin_reconcile_endpoints(client, gateway, admin, sent, auth_headers):
    gateway.query_status.return_value = COMPLETED
    headers = auth_headers(admin)

    report = client.post("/admin/reconcile", headers=headers).json()["data"]
    assert report["checked"] == 0  # nothing is stale yet

    single = client.post(f"/admin/reconcile/{sent.id}", headers=headers)
    assert single.status_code == 200
    assert single.json()["data"]["status"] == "completed"

    missing = client.post("/admin/reconcile/no-such-transaction", headers=headers)
    assert missing.status_code == 404


def test_admin_lists_issues(client, admin, auth_headers):
    client.post("/payments/callback", json=stk_callback("ws_unknown"))

    issues = client.get("/admin/reconciliation-issues", params={"resolved": False}, headers=auth_headers(admin)).json()["data"]

    assert len(issues) == 1
    assert issues[0]["kind"] == "unknown_checkout"
    assert issues[0]["reference"] == "ws_unknown"


def test_run_sweep_task_body(settings, gateway, session_factory, sent):
    gateway.query_status.return_value = COMPLETED

    report = run_sweep(settings, gateway, session_factory)

    assert set(report) >= {"checked", "completed", "failed", "still_pending", "errors"}


# ============================================
# Orphans resolved by hand
# ============================================

def _age(db, transaction, by):
    db.query(Transaction).filter(Transaction.id == transaction.id).update(
        {Transaction.created_at: utcnow() - by}, synchronize_session=False
    )
    db.commit()


def test_reconcile_old_orphan_fails_it_and_frees_the_booking(client, db, service, ledger, orphan, guest, booking, auth_headers):
    service.sweep(now=utcnow() + timedelta(days=30))
    service.sweep(now=utcnow() + timedelta(days=60))
    assert ledger.get(orphan.id).status == "pending"

    status = service.reconcile_transaction(orphan.id, now=utcnow() + timedelta(days=60))

    assert status["status"] == "failed"
    assert ledger.get(orphan.id).error_message == ORPHAN_FAILURE_MESSAGE
    assert ReconciliationQueue(db).open_issues(IssueKind.ORPHANED_PENDING) == []

    retry = client.post(
        "/payments/initiate",
        json={"amount": 1500, "phoneNumber": "0722000000", "bookingId": booking.id},
        headers=auth_headers(guest)
    )
    assert retry.status_code == 200


def test_reconcile_recent_orphan_stays_pending(service, gateway, ledger, orphan):
    status = service.reconcile_transaction(orphan.id)

    assert status["status"] == "pending"
    assert ledger.get(orphan.id).status == "pending"
    gateway.query_status.assert_not_called()


def test_admin_reconcile_fails_old_orphan(client, db, admin, ledger, orphan, auth_headers):
    _age(db, orphan, timedelta(hours=2))

    response = client.post(f"/admin/reconcile/{orphan.id}", headers=auth_headers(admin))

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "failed"
    assert ledger.get(orphan.id).status == "failed"


def test_failing_orphans_closes_earlier_flag(db, gateway, ledger, orphan):
    ReconciliationService(db, gateway).sweep(now=utcnow() + LATER)
    assert len(ReconciliationQueue(db).open_issues(IssueKind.ORPHANED_PENDING)) == 1

    ReconciliationService(db, gateway, fail_orphans=True).sweep(now=utcnow() + LATER)

    assert ledger.get(orphan.id).status == "failed"
    assert ReconciliationQueue(db).open_issues(IssueKind.ORPHANED_PENDING) == []


# ============================================
# Payouts
# ============================================

@pytest.fixture
def payouts(db):
    return PayoutLedger(db)


@pytest.fixture
def payout(payouts, host):
    payout = payouts.create_pending(host.id, 5000, "254700111222", "Kodisha Earnings")
    payouts.attach_conversation(payout.id, "AG_1", "OC_1")
    return payout


def test_sweep_flags_stale_payout(db, service, payouts, payout):
    report = service.sweep(now=utcnow() + LATER)

    assert report.payouts_flagged == 1
    assert payouts.get(payout.id).status == "pending"
    issue = ReconciliationQueue(db).open_issues(IssueKind.STALE_PAYOUT)[0]
    assert issue.reference == payout.id
    assert "AG_1" in issue.details

    # Flagged once, then closed when the result finally arrives
    service.sweep(now=utcnow() + LATER)
    assert len(ReconciliationQueue(db).open_issues(IssueKind.STALE_PAYOUT)) == 1

    payouts.complete_pending(payout.id, "QH1234567890")
    report = service.sweep(now=utcnow() + LATER)

    assert report.payouts_settled == 1
    assert ReconciliationQueue(db).open_issues(IssueKind.STALE_PAYOUT) == []


def test_recent_payout_is_not_flagged(db, service, payout):
    report = service.sweep()

    assert report.payouts_flagged == 0
    assert ReconciliationQueue(db).open_issues(IssueKind.STALE_PAYOUT) == []


def test_early_b2c_result_is_queued_and_linked(db, service, payouts, host):
    payout = payouts.create_pending(host.id, 5000, "254700111222", "Kodisha Earnings")

    CallbackProcessor(db).handle_payout_result(b2c_result("AG_early"))
    payouts.attach_conversation(payout.id, "AG_early", "OC_early")

    assert payouts.get(payout.id).status == "pending"
    early = ReconciliationQueue(db).open_issues(IssueKind.UNKNOWN_CONVERSATION)
    assert [i.reference for i in early] == ["AG_early"]

    service.sweep(now=utcnow() + LATER)

    stale = ReconciliationQueue(db).open_issues(IssueKind.STALE_PAYOUT)[0]
    assert stale.reference == payout.id
    assert f"issue #{early[0].id}" in stale.details
