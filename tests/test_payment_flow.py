"""
Test Guest Payment Flow

End-to-end through the HTTP API with a mocked M-Pesa gateway:
POST /payments/initiate -> POST /payments/callback -> GET /payments/status
"""

import logging
from unittest.mock import patch

import pytest

from conftest import stk_callback
from database.models import Booking, ReconciliationIssue, Transaction
from services.exceptions import GatewayAuthError
from services.ledger import TransactionLedger
from services.mpesa import GatewayResult


def _initiate(client, headers, booking, **overrides):
    body = {"amount": 1500, "phoneNumber": "0712345678", "bookingId": booking.id}
    body.update(overrides)
    return client.post("/payments/initiate", json=body, headers=headers)


def _status(client, headers, transaction_id):
    return client.get("/payments/status", params={"transactionId": transaction_id}, headers=headers)


def _only_transaction(db, booking):
    db.expire_all()
    return db.query(Transaction).filter(Transaction.booking_id == booking.id).one()


# ============================================
# Initiation
# ============================================

def test_initiate_payment(client, gateway, guest, booking, auth_headers):
    response = _initiate(client, auth_headers(guest), booking, amount=1500.7)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["checkoutRequestId"] == "ws_1"
    assert body["data"]["transactionId"]

    kwargs = gateway.initiate_charge.call_args[1]
    assert kwargs["amount"] == 1501
    assert kwargs["payer_phone"] == "254712345678"
    assert kwargs["account_reference"] == booking.id
    assert kwargs["description"] == "Kodisha Booking"


def test_initiated_payment_stays_pending(client, guest, booking, auth_headers):
    headers = auth_headers(guest)
    transaction_id = _initiate(client, headers, booking).json()["data"]["transactionId"]

    data = _status(client, headers, transaction_id).json()["data"]
    assert data["status"] == "pending"
    assert data["externalRef"] is None
    assert data["errorMessage"] is None
    assert data["amount"] == 1500


def test_initiate_requires_authentication(client, booking):
    response = client.post("/payments/initiate", json={"amount": 100, "phoneNumber": "0712345678", "bookingId": booking.id})

    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Authentication required", "data": None}


def test_initiate_rejects_invalid_token(client, booking):
    response = _initiate(client, {"Authorization": "Bearer not-a-jwt"}, booking)
    assert response.status_code == 401


@pytest.mark.parametrize("overrides, error", [
    ({"amount": None}, "Missing required fields"),
    ({"phoneNumber": ""}, "Missing required fields"),
    ({"bookingId": None}, "Missing required fields"),
    ({"phoneNumber": "12345"}, "Invalid phone number"),
    ({"amount": 0}, "Invalid amount"),
    ({"amount": "abc"}, "Invalid amount"),
])
def test_initiate_validation(client, gateway, guest, booking, auth_headers, overrides, error):
    response = _initiate(client, auth_headers(guest), booking, **overrides)

    assert response.status_code == 400
    assert response.json()["error"] == error
    gateway.initiate_charge.assert_not_called()


def test_initiate_for_someone_elses_booking(client, gateway, other_guest, booking, auth_headers):
    response = _initiate(client, auth_headers(other_guest), booking)

    assert response.status_code == 404
    assert response.json()["error"] == "Booking not found"
    gateway.initiate_charge.assert_not_called()


def test_gateway_rejection_at_initiation(client, db, gateway, guest, booking, auth_headers):
    gateway.initiate_charge.return_value = GatewayResult(success=False, error="Invalid shortcode")

    response = _initiate(client, auth_headers(guest), booking)

    assert response.status_code == 402
    assert response.json()["error"] == "Invalid shortcode"

    transaction = _only_transaction(db, booking)
    assert transaction.status == "failed"
    assert transaction.error_message == "Invalid shortcode"
    assert transaction.checkout_request_id is None


def test_gateway_auth_failure_at_initiation(client, db, gateway, guest, booking, auth_headers):
    gateway.initiate_charge.side_effect = GatewayAuthError("M-Pesa rejected credentials (HTTP 400)")

    response = _initiate(client, auth_headers(guest), booking)

    assert response.status_code == 502
    transaction = _only_transaction(db, booking)
    assert transaction.status == "failed"
    assert transaction.error_message.startswith("Payment provider unavailable")


def test_second_initiate_while_pending_conflicts(client, guest, booking, auth_headers):
    headers = auth_headers(guest)
    assert _initiate(client, headers, booking).status_code == 200

    response = _initiate(client, headers, booking, phoneNumber="+254712345678")
    assert response.status_code == 409
    assert response.json()["success"] is False


# ============================================
# Callback
# ============================================

def test_happy_path(client, db, guest, booking, auth_headers):
    headers = auth_headers(guest)
    transaction_id = _initiate(client, headers, booking).json()["data"]["transactionId"]

    ack = client.post("/payments/callback", json=stk_callback("ws_1", receipt="QAZ123"))
    assert ack.status_code == 200
    assert ack.json() == {"ResultCode": 0, "ResultDesc": "Callback received successfully"}

    data = _status(client, headers, transaction_id).json()["data"]
    assert data["status"] == "completed"
    assert data["externalRef"] == "QAZ123"
    assert data["completedAt"] is not None

    db.expire_all()
    booking = db.get(Booking, booking.id)
    assert booking.payment_status == "completed"
    assert booking.paid_at is not None


def test_amount_mismatch_is_logged_but_payment_completes(client, guest, booking, auth_headers, caplog):
    headers = auth_headers(guest)
    transaction_id = _initiate(client, headers, booking).json()["data"]["transactionId"]

    with caplog.at_level(logging.WARNING, logger="services.callback_service"):
        client.post("/payments/callback", json=stk_callback("ws_1", amount=1))

    assert f"Amount mismatch for transaction {transaction_id}" in caplog.text
    assert _status(client, headers, transaction_id).json()["data"]["status"] == "completed"


def test_matching_amount_is_not_flagged(client, guest, booking, auth_headers, caplog):
    _initiate(client, auth_headers(guest), booking)

    with caplog.at_level(logging.WARNING, logger="services.callback_service"):
        client.post("/payments/callback", json=stk_callback("ws_1", amount=1500.0))

    assert "Amount mismatch" not in caplog.text


def test_duplicate_callback_is_idempotent(client, db, guest, booking, auth_headers):
    headers = auth_headers(guest)
    transaction_id = _initiate(client, headers, booking).json()["data"]["transactionId"]

    client.post("/payments/callback", json=stk_callback("ws_1", receipt="QAZ123"))
    first = _status(client, headers, transaction_id).json()["data"]

    replay = client.post("/payments/callback", json=stk_callback("ws_1", receipt="DIFFERENT"))
    late_failure = client.post("/payments/callback", json=stk_callback("ws_1", result_code=1032))
    assert replay.json()["ResultCode"] == 0
    assert late_failure.json()["ResultCode"] == 0

    second = _status(client, headers, transaction_id).json()["data"]
    assert second == first
    assert second["externalRef"] == "QAZ123"


def test_user_cancellation(client, guest, booking, auth_headers):
    headers = auth_headers(guest)
    transaction_id = _initiate(client, headers, booking).json()["data"]["transactionId"]

    client.post("/payments/callback", json=stk_callback("ws_1", result_code=1032, result_desc="Request cancelled by user"))

    data = _status(client, headers, transaction_id).json()["data"]
    assert data["status"] == "failed"
    assert data["errorMessage"] == "Request cancelled by user"
    assert data["externalRef"] is None


def test_failure_reason_is_persisted(client, db, guest, booking, auth_headers):
    headers = auth_headers(guest)
    transaction_id = _initiate(client, headers, booking).json()["data"]["transactionId"]

    client.post(
        "/payments/callback",
        json=stk_callback("ws_1", result_code=1, result_desc="The balance is insufficient for the transaction.")
    )

    data = _status(client, headers, transaction_id).json()["data"]
    assert data["errorMessage"] == "The balance is insufficient for the transaction."

    db.expire_all()
    assert db.get(Booking, booking.id).payment_status == "unpaid"


def test_string_result_code_is_accepted(client, guest, booking, auth_headers):
    headers = auth_headers(guest)
    transaction_id = _initiate(client, headers, booking).json()["data"]["transactionId"]

    payload = stk_callback("ws_1")
    payload["Body"]["stkCallback"]["ResultCode"] = "0"
    client.post("/payments/callback", json=payload)

    assert _status(client, headers, transaction_id).json()["data"]["status"] == "completed"


@pytest.mark.parametrize("body", [b"not json at all", b"[]", b'{"foo": "bar"}', b'{"Body": {"stkCallback": {}}}'])
def test_malformed_callback_is_acknowledged(client, body):
    response = client.post("/payments/callback", content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 200
    assert response.json()["ResultCode"] == 0


def test_unknown_checkout_is_queued(client, db):
    response = client.post("/payments/callback", json=stk_callback("ws_unknown"))

    assert response.json()["ResultCode"] == 0
    issue = db.query(ReconciliationIssue).one()
    assert issue.kind == "unknown_checkout"
    assert issue.reference == "ws_unknown"


def test_bad_signature_is_acknowledged_but_ignored(client, gateway, guest, booking, auth_headers):
    headers = auth_headers(guest)
    transaction_id = _initiate(client, headers, booking).json()["data"]["transactionId"]
    gateway.verify_callback_signature.return_value = False

    response = client.post("/payments/callback", json=stk_callback("ws_1"))

    assert response.json()["ResultCode"] == 0
    assert _status(client, headers, transaction_id).json()["data"]["status"] == "pending"


def test_booking_failure_keeps_payment_and_queues_issue(client, db, guest, booking, auth_headers):
    headers = auth_headers(guest)
    transaction_id = _initiate(client, headers, booking).json()["data"]["transactionId"]

    with patch.object(TransactionLedger, "mark_booking_paid", side_effect=RuntimeError("bookings table locked")):
        response = client.post("/payments/callback", json=stk_callback("ws_1"))

    assert response.json()["ResultCode"] == 0
    assert _status(client, headers, transaction_id).json()["data"]["status"] == "completed"

    db.expire_all()
    assert db.get(Booking, booking.id).payment_status == "unpaid"
    issue = db.query(ReconciliationIssue).one()
    assert issue.kind == "booking_update_failed"
    assert issue.transaction_id == transaction_id
    assert issue.resolved is False


# ============================================
# Status & history
# ============================================

def test_status_is_owner_only(client, guest, other_guest, booking, auth_headers):
    transaction_id = _initiate(client, auth_headers(guest), booking).json()["data"]["transactionId"]

    foreign = _status(client, auth_headers(other_guest), transaction_id)
    missing = _status(client, auth_headers(guest), "no-such-transaction")

    assert foreign.status_code == 404
    assert missing.status_code == 404
    assert foreign.json()["error"] == missing.json()["error"] == "Transaction not found"


def test_status_requires_transaction_id(client, guest, auth_headers):
    response = client.get("/payments/status", headers=auth_headers(guest))

    assert response.status_code == 400
    assert response.json()["error"] == "Missing transactionId"


def test_history(client, gateway, guest, other_guest, booking, auth_headers):
    headers = auth_headers(guest)
    gateway.initiate_charge.return_value = GatewayResult(success=False, error="Invalid shortcode")
    _initiate(client, headers, booking)
    gateway.initiate_charge.return_value = GatewayResult(success=True, checkout_request_id="ws_2")
    _initiate(client, headers, booking)

    history = client.get("/payments/history", headers=headers).json()["data"]
    assert sorted(t["status"] for t in history) == ["failed", "pending"]

    failed = client.get("/payments/history", params={"status": "failed"}, headers=headers).json()["data"]
    assert [t["errorMessage"] for t in failed] == ["Invalid shortcode"]

    assert client.get("/payments/history", headers=auth_headers(other_guest)).json()["data"] == []
