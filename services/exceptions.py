"""
Payment error taxonomy.

Routers translate these into HTTP responses (see payments/routers/deps.py).
Webhook handlers never let them escape.
"""


class PaymentError(Exception):
    """Base class for all payment subsystem errors."""
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(PaymentError):
    """Malformed or missing caller input. Never retried."""
    status_code = 400


class InvalidRequestError(ValidationError):
    """Gateway-local rejection (bad amount or phone) before any network call."""


class PaymentInProgressError(ValidationError):
    """A pending payment already exists for this booking and payer."""
    status_code = 409


class AuthorizationError(PaymentError):
    """Caller is authenticated but not allowed to perform the action."""
    status_code = 403


class NotFoundError(PaymentError):
    """Referenced row is absent or not owned by the caller."""
    status_code = 404


class GatewayConfigError(PaymentError):
    """M-Pesa credentials or settings are missing/invalid."""


class GatewayAuthError(PaymentError):
    """The provider rejected our credentials or token."""
    status_code = 502


class GatewayRejectionError(PaymentError):
    """The provider refused the operation (bad phone, permissions, balance...)."""
    status_code = 402


class ReconciliationGap(PaymentError):
    """
    A pending payment with no provider outcome past its SLA.

    Not raised on request paths; the reconciliation sweep records these as
    ReconciliationIssue rows.
    """
