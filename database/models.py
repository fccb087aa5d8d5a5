"""
Kodisha Payments Database Models

This module defines the SQLAlchemy models for the payment subsystem.

Architecture:
- Users: Guests, hosts and admins (owned by the auth subsystem; read-only here)
- Bookings: Stays being paid for (owned by listings; we only touch payment fields)
- Transactions: One row per M-Pesa STK push attempt (guest -> platform)
- Payouts: One row per B2C disbursement (platform -> host)
- Reconciliation Issues: Discrepancies queued for the reconciliation sweep

Ledger rows (transactions, payouts) are never deleted; they are the audit trail.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text,
    ForeignKey, Index, Enum as SQLEnum
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def generate_id() -> str:
    """Opaque unique identifier for ledger rows."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns store UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserRole(enum.Enum):
    """User roles for access control."""
    GUEST = "guest"   # Books and pays for stays
    HOST = "host"     # Lists properties, receives payouts
    ADMIN = "admin"   # Platform staff (payouts for any host, reconciliation)


class PaymentStatus(str, enum.Enum):
    """
    Ledger status for transactions and payouts.

    Status flow:
    - pending: Request created / accepted by M-Pesa, waiting for the outcome
    - completed: Money moved (terminal)
    - failed: Rejected, cancelled, timed out (terminal)
    """
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class BookingPaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    COMPLETED = "completed"


class IssueKind(str, enum.Enum):
    """Kinds of discrepancy the reconciliation sweep works through."""
    BOOKING_UPDATE_FAILED = "booking_update_failed"
    ORPHANED_PENDING = "orphaned_pending"
    UNKNOWN_CHECKOUT = "unknown_checkout"
    UNKNOWN_CONVERSATION = "unknown_conversation"
    STALE_PAYOUT = "stale_payout"


class User(Base):
    """
    Marketplace user.

    Only the fields the payment flows need are mapped: identity, role and
    the phone numbers used for M-Pesa payouts (mpesa_phone wins over
    phone_number).
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_id)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255))
    role = Column(SQLEnum(UserRole), default=UserRole.GUEST, nullable=False)
    phone_number = Column(String(20))
    mpesa_phone = Column(String(20))
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, role={self.role.value if self.role else None})>"


class Booking(Base):
    """
    A guest's booking of a listing.

    The listings subsystem owns this table. The payment subsystem only
    writes payment_status and paid_at after a confirmed payment.
    """
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=generate_id)
    guest_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    host_id = Column(String(36), ForeignKey("users.id"), index=True)
    total_amount = Column(Integer)
    payment_status = Column(String(20), default=BookingPaymentStatus.UNPAID.value, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    guest = relationship("User", foreign_keys=[guest_id])
    host = relationship("User", foreign_keys=[host_id])

    def __repr__(self):
        return f"<Booking(id={self.id}, payment_status={self.payment_status})>"


class Transaction(Base):
    """
    A single M-Pesa STK push payment attempt.

    Key Fields:
    - checkout_request_id: Daraja CheckoutRequestID, the callback correlation key
    - mpesa_receipt: MpesaReceiptNumber, set only when completed
    - error_message: Human-readable reason, set only when failed

    A booking can have many transactions (retries) but only one pending
    per payer phone at a time (partial unique index below).
    """
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=generate_id)

    # Ownership
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)

    # Payment details
    amount = Column(Integer, nullable=False)  # Whole KES
    phone_number = Column(String(20), nullable=False)
    description = Column(String(255))

    # Status tracking
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)
    error_message = Column(Text)

    # M-Pesa specific
    checkout_request_id = Column(String(100), unique=True, index=True)
    merchant_request_id = Column(String(100))
    mpesa_receipt = Column(String(50))

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)

    # Relationships
    booking = relationship("Booking", backref="transactions")

    __table_args__ = (
        Index(
            "uq_transactions_pending_booking_payer",
            "booking_id", "phone_number",
            unique=True,
            postgresql_where=(status == PaymentStatus.PENDING.value),
            sqlite_where=(status == PaymentStatus.PENDING.value),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != PaymentStatus.PENDING.value

    def __repr__(self):
        return f"<Transaction(id={self.id}, amount={self.amount} KES, status={self.status})>"


class Payout(Base):
    """
    Tracks payments FROM platform TO hosts (M-Pesa B2C).

    Status flow:
    - pending: Payout created; after M-Pesa accepts it, waiting for the B2C result
    - completed: Money successfully sent (mpesa_ref holds the receipt)
    - failed: Payout failed (insufficient balance, invalid number, timeout...)
    """
    __tablename__ = "payouts"

    id = Column(String(36), primary_key=True, default=generate_id)

    # Recipient
    host_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    phone_number = Column(String(20))
    requested_by = Column(String(36), ForeignKey("users.id"))

    # Payment details
    amount = Column(Integer, nullable=False)
    description = Column(String(255))

    # M-Pesa specific
    conversation_id = Column(String(100), index=True)  # M-Pesa ConversationID
    originator_conversation_id = Column(String(100))  # M-Pesa OriginatorConversationID
    mpesa_ref = Column(String(100))  # TransactionReceipt (or response code in acceptance mode)

    # Status tracking
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)
    error_message = Column(Text)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)

    host = relationship("User", foreign_keys=[host_id])

    def __repr__(self):
        return f"<Payout(id={self.id}, amount={self.amount} KES, status={self.status})>"


class ReconciliationIssue(Base):
    """
    Durable queue of payment discrepancies.

    Written when state could not be made consistent on the request path
    (e.g. payment confirmed but booking update failed). The reconciliation
    sweep and admins work through unresolved rows.
    """
    __tablename__ = "reconciliation_issues"

    id = Column(Integer, primary_key=True)
    kind = Column(String(40), nullable=False, index=True)
    transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=True, index=True)
    reference = Column(String(100))
    details = Column(Text)
    resolved = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    transaction = relationship("Transaction", backref="reconciliation_issues")

    def __repr__(self):
        return f"<ReconciliationIssue(id={self.id}, kind={self.kind}, resolved={self.resolved})>"
