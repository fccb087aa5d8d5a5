"""
Shared pytest fixtures for Kodisha Payments tests.

Every test gets a fresh in-memory SQLite database and an app built by
create_app() with injected collaborators; the M-Pesa gateway is a mock
unless a test exercises MPesaService itself.
"""
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from config import Settings
from database.db import create_session_factory
from database.models import Base, Booking, User, UserRole
from main import create_app
from services.auth_service import create_access_token
from services.mpesa import GatewayResult, MpesaConfig, MPesaService

TEST_SECRET = "test-secret-key"


def stk_callback(checkout_request_id, result_code=0, result_desc=None, receipt="QAZ123", amount=1500):
    """Build a Daraja STK callback body."""
    stk = {
        "MerchantRequestID": "mr_1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc or (
            "The service request is processed successfully." if result_code == 0 else "Payment failed"
        ),
    }
    if result_code == 0:
        stk["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20240115103045},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": stk}}


def b2c_result(conversation_id, result_code=0, result_desc=None, receipt="QH1234567890"):
    """Build a Daraja B2C Result body."""
    return {
        "Result": {
            "ResultType": 0,
            "ResultCode": result_code,
            "ResultDesc": result_desc or "The service request is processed successfully.",
            "OriginatorConversationID": "OC_1",
            "ConversationID": conversation_id,
            "TransactionID": receipt,
            "ResultParameters": {
                "ResultParameter": [
                    {"Key": "TransactionAmount", "Value": 5000},
                    {"Key": "TransactionReceipt", "Value": receipt},
                ]
            },
        }
    }


@pytest.fixture
def engine():
    """In-memory database shared by every session in the test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", jwt_secret_key=TEST_SECRET)


@pytest.fixture
def mpesa_config():
    return MpesaConfig(
        environment="sandbox",
        consumer_key="consumer-key",
        consumer_secret="consumer-secret",
        short_code="174379",
        passkey="passkey",
        callback_url="https://api.kodisha.test/payments/callback",
        security_credential="security-credential"
    )


@pytest.fixture
def gateway(mpesa_config):
    """Mock M-Pesa gateway that accepts every request."""
    gateway = MagicMock(spec=MPesaService)
    gateway.config = mpesa_config
    gateway.verify_callback_signature.return_value = True
    gateway.initiate_charge.return_value = GatewayResult(
        success=True,
        checkout_request_id="ws_1",
        merchant_request_id="mr_1",
        response_code="0"
    )
    gateway.send_payout.return_value = GatewayResult(
        success=True,
        conversation_id="AG_1",
        originator_conversation_id="OC_1",
        response_code="0"
    )
    return gateway


@pytest.fixture
def app(settings, gateway, session_factory):
    return create_app(settings=settings, gateway=gateway, session_factory=session_factory)


@pytest.fixture
def client(app):
    return TestClient(app)


def _add_user(db, email, role, phone_number=None, mpesa_phone=None):
    user = User(
        email=email,
        full_name=email.split("@")[0].title(),
        role=role,
        phone_number=phone_number,
        mpesa_phone=mpesa_phone
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def guest(db):
    return _add_user(db, "guest@example.com", UserRole.GUEST, phone_number="0712345678")


@pytest.fixture
def other_guest(db):
    return _add_user(db, "other@example.com", UserRole.GUEST, phone_number="0722000000")


@pytest.fixture
def host(db):
    return _add_user(db, "host@example.com", UserRole.HOST, phone_number="0733000000", mpesa_phone="+254 700 111 222")


@pytest.fixture
def other_host(db):
    return _add_user(db, "host2@example.com", UserRole.HOST, phone_number="0744000000")


@pytest.fixture
def admin(db):
    return _add_user(db, "admin@example.com", UserRole.ADMIN)


@pytest.fixture
def booking(db, guest, host):
    booking = Booking(guest_id=guest.id, host_id=host.id, total_amount=1500)
    db.add(booking)
    db.commit()
    db.refresh(booking)
    return booking


@pytest.fixture
def auth_headers():
    """Build an Authorization header for a user."""
    def _headers(user):
        token = create_access_token(
            {"user_id": user.id, "email": user.email, "role": user.role.value},
            TEST_SECRET
        )
        return {"Authorization": f"Bearer {token}"}
    return _headers
