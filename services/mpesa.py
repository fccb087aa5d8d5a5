"""
M-Pesa Payment Integration Service

Wraps the Safaricom Daraja API:
- OAuth access token (cached, refreshed 60s before expiry)
- STK Push (Lipa Na M-Pesa Online) - money IN from guests
- STK Push query - poll for a definitive result (reconciliation)
- B2C payment - money OUT to hosts

M-Pesa Flow:
1. Initiate STK Push (send payment prompt to phone)
2. Customer enters PIN on their phone
3. Receive callback with payment status
4. Update transaction + booking

Network problems and non-2xx responses come back as a failed GatewayResult
instead of an exception, so callers can persist the reason. Only
configuration and credential problems raise.
"""

import base64
import hashlib
import hmac
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit

import requests

from database.models import utcnow
from services.exceptions import GatewayAuthError, GatewayConfigError, InvalidRequestError

logger = logging.getLogger(__name__)

BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"
B2C_PATH = "/mpesa/b2c/v1/paymentrequest"

TOKEN_SAFETY_MARGIN = timedelta(seconds=60)

# Daraja timestamps are East Africa Time
NAIROBI_TZ = timezone(timedelta(hours=3))

MIN_PHONE_DIGITS = 9
_KENYAN_MSISDN = re.compile(r"^254\d{9}$")


# ============================================
# Helpers
# ============================================

def normalize_phone(phone_number: Any) -> str:
    """
    Normalize a phone number to Safaricom's format (2547XXXXXXXX).

    Accepts: +254712345678, 0712345678, 254712345678, 712345678
    Raises InvalidRequestError for anything shorter than 9 digits or not
    a Kenyan MSISDN.
    """
    if phone_number is None:
        raise InvalidRequestError("Invalid phone number")

    phone = re.sub(r"[\s\-()]", "", str(phone_number))
    if phone.startswith("+"):
        phone = phone[1:]

    if not phone.isdigit() or len(phone) < MIN_PHONE_DIGITS:
        raise InvalidRequestError("Invalid phone number")

    if phone.startswith("0"):
        phone = "254" + phone[1:]
    elif len(phone) == MIN_PHONE_DIGITS:
        phone = "254" + phone

    if not _KENYAN_MSISDN.match(phone):
        raise InvalidRequestError("Invalid phone number")

    return phone


def round_amount(amount: Any) -> int:
    """
    Round an amount to whole shillings, half up (M-Pesa rejects decimals).

    Raises InvalidRequestError for non-numeric or non-positive amounts.
    """
    if isinstance(amount, bool):
        raise InvalidRequestError("Invalid amount")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidRequestError("Invalid amount")

    if not value.is_finite() or value <= 0:
        raise InvalidRequestError("Invalid amount")

    rounded = int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if rounded <= 0:
        raise InvalidRequestError("Invalid amount")
    return rounded


def mask_phone(phone_number: Optional[str]) -> str:
    """254712345678 -> 2547****5678 (for logs)."""
    if not phone_number or len(phone_number) < 8:
        return "****"
    return f"{phone_number[:4]}****{phone_number[-4:]}"


# ============================================
# Configuration & results
# ============================================

@dataclass
class MpesaConfig:
    """Daraja credentials. All required fields are checked at construction."""
    environment: str
    consumer_key: str
    consumer_secret: str
    short_code: str
    passkey: str
    callback_url: str
    security_credential: str
    initiator_name: str = "Kodisha"
    b2c_result_url: Optional[str] = None
    b2c_timeout_url: Optional[str] = None
    callback_secret: Optional[str] = None
    timeout: int = 30

    REQUIRED = (
        ("consumer_key", "MPESA_CONSUMER_KEY"),
        ("consumer_secret", "MPESA_CONSUMER_SECRET"),
        ("short_code", "MPESA_SHORTCODE"),
        ("passkey", "MPESA_PASSKEY"),
        ("callback_url", "MPESA_CALLBACK_URL"),
        ("security_credential", "MPESA_SECURITY_CREDENTIAL"),
    )

    def __post_init__(self):
        if self.environment not in BASE_URLS:
            raise GatewayConfigError(
                f"MPESA_ENVIRONMENT must be 'sandbox' or 'production', got {self.environment!r}"
            )

        missing = [env_name for attr, env_name in self.REQUIRED if not getattr(self, attr)]
        if missing:
            raise GatewayConfigError(f"Missing M-Pesa configuration: {', '.join(missing)}")

        origin = urlsplit(self.callback_url)
        base = f"{origin.scheme}://{origin.netloc}"
        if not self.b2c_result_url:
            self.b2c_result_url = f"{base}/payments/payout/result"
        if not self.b2c_timeout_url:
            self.b2c_timeout_url = f"{base}/payments/payout/timeout"

    @property
    def base_url(self) -> str:
        return BASE_URLS[self.environment]

    @classmethod
    def from_env(cls) -> "MpesaConfig":
        """Build config from MPESA_* environment variables."""
        return cls(
            environment=os.getenv("MPESA_ENVIRONMENT", "sandbox").strip().lower(),
            consumer_key=os.getenv("MPESA_CONSUMER_KEY", ""),
            consumer_secret=os.getenv("MPESA_CONSUMER_SECRET", ""),
            short_code=os.getenv("MPESA_SHORTCODE", ""),
            passkey=os.getenv("MPESA_PASSKEY", ""),
            callback_url=os.getenv("MPESA_CALLBACK_URL", ""),
            security_credential=os.getenv("MPESA_SECURITY_CREDENTIAL", ""),
            initiator_name=os.getenv("MPESA_INITIATOR_NAME", "Kodisha"),
            b2c_result_url=os.getenv("MPESA_B2C_RESULT_URL") or None,
            b2c_timeout_url=os.getenv("MPESA_B2C_TIMEOUT_URL") or None,
            callback_secret=os.getenv("MPESA_CALLBACK_SECRET") or None,
            timeout=int(os.getenv("MPESA_TIMEOUT_SECONDS", "30")),
        )


@dataclass
class GatewayResult:
    """
    Outcome of a Daraja call.

    success means the provider accepted the request (charge / payout) or,
    for status queries, that the payment itself completed.
    """
    success: bool
    error: Optional[str] = None
    checkout_request_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    conversation_id: Optional[str] = None
    originator_conversation_id: Optional[str] = None
    response_code: Optional[str] = None
    response_description: Optional[str] = None
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


# ============================================
# Service
# ============================================

class MPesaService:
    """M-Pesa (Daraja) gateway client."""

    def __init__(self, config: MpesaConfig, clock: Callable[[], datetime] = utcnow):
        self.config = config
        self._clock = clock

        self._access_token: Optional[str] = None
        self._token_expiry: Optional[datetime] = None
        self._token_lock = threading.Lock()

    # ------------------------------------------
    # Authentication
    # ------------------------------------------

    def _token_is_valid(self) -> bool:
        return (
            self._access_token is not None
            and self._token_expiry is not None
            and self._clock() < self._token_expiry - TOKEN_SAFETY_MARGIN
        )

    def get_access_token(self, force_refresh: bool = False) -> str:
        """
        Return a valid OAuth access token.

        The cached token is reused until 60s before it expires. Refreshes are
        serialized so concurrent callers share one token request.

        Raises GatewayAuthError if M-Pesa rejects the credentials.
        """
        if not force_refresh and self._token_is_valid():
            return self._access_token

        with self._token_lock:
            # Another thread may have refreshed while we waited
            if not force_refresh and self._token_is_valid():
                return self._access_token
            return self._fetch_access_token()

    def _fetch_access_token(self) -> str:
        credentials = f"{self.config.consumer_key}:{self.config.consumer_secret}"
        encoded = base64.b64encode(credentials.encode()).decode()

        headers = {
            'Authorization': f'Basic {encoded}'
        }

        response = requests.get(
            f"{self.config.base_url}{TOKEN_PATH}",
            headers=headers,
            timeout=self.config.timeout
        )

        if not response.ok:
            logger.error(f"M-Pesa: Token request rejected (HTTP {response.status_code})")
            raise GatewayAuthError(f"M-Pesa rejected credentials (HTTP {response.status_code})")

        try:
            data = response.json()
            token = data['access_token']
            expires_in = int(data.get('expires_in', 3599))
        except (ValueError, KeyError, TypeError) as e:
            raise GatewayAuthError(f"Unreadable M-Pesa token response: {e}")

        self._access_token = token
        self._token_expiry = self._clock() + timedelta(seconds=expires_in)

        logger.info(f"M-Pesa: Access token obtained (expires in {expires_in}s)")
        return token

    # ------------------------------------------
    # Request plumbing
    # ------------------------------------------

    def _timestamp(self) -> str:
        return datetime.now(NAIROBI_TZ).strftime('%Y%m%d%H%M%S')

    def _password(self, timestamp: str) -> str:
        """Password = Base64(BusinessShortCode + Passkey + Timestamp)"""
        password_str = f"{self.config.short_code}{self.config.passkey}{timestamp}"
        return base64.b64encode(password_str.encode()).decode()

    def _send(self, url: str, payload: Dict, access_token: str) -> requests.Response:
        headers = {
            'Authorization': f'Bearer {access_token}',
            'Content-Type': 'application/json'
        }
        return requests.post(url, json=payload, headers=headers, timeout=self.config.timeout)

    def _post(self, path: str, payload: Dict) -> requests.Response:
        """
        POST to Daraja with a bearer token.

        A 401 forces one token refresh and one retry; a second 401 raises
        GatewayAuthError.
        """
        url = f"{self.config.base_url}{path}"
        response = self._send(url, payload, self.get_access_token())

        if response.status_code == 401:
            logger.warning(f"M-Pesa: 401 from {path}, refreshing access token")
            response = self._send(url, payload, self.get_access_token(force_refresh=True))
            if response.status_code == 401:
                raise GatewayAuthError("M-Pesa rejected the access token")

        return response

    @staticmethod
    def _json(response: requests.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _error_message(data: Dict[str, Any], default: str) -> str:
        return (
            data.get('errorMessage')
            or data.get('ResponseDescription')
            or data.get('ResultDesc')
            or default
        )

    def _call(self, path: str, payload: Dict, context: str):
        """
        Execute a Daraja call.

        Returns (data, error). error is None only for a 2xx response.
        """
        try:
            response = self._post(path, payload)
        except requests.RequestException as e:
            logger.error(f"M-Pesa: {context} failed: {str(e)}")
            return {}, f"Could not reach M-Pesa: {str(e)}"

        data = self._json(response)
        if not response.ok:
            error = self._error_message(data, f"M-Pesa {context} failed (HTTP {response.status_code})")
            logger.error(f"M-Pesa: {context} HTTP {response.status_code} - {error}")
            return data, error

        return data, None

    # ------------------------------------------
    # Operations
    # ------------------------------------------

    def initiate_charge(
        self,
        amount: Any,
        payer_phone: str,
        account_reference: str,
        description: str,
        correlation_id: Optional[str] = None
    ) -> GatewayResult:
        """
        Initiate STK Push (Lipa Na M-Pesa Online).

        Args:
            amount: Amount to charge (rounded half up to whole KES)
            payer_phone: Customer phone (07..., 254..., +254...)
            account_reference: Reference shown on the prompt (booking id)
            description: Description shown to customer
            correlation_id: Our transaction id, for logs

        Returns:
            GatewayResult; success means M-Pesa accepted the request for
            processing, not that the customer paid. The outcome arrives on
            the callback URL.
        """
        amount = round_amount(amount)
        phone_number = normalize_phone(payer_phone)

        timestamp = self._timestamp()
        payload = {
            'BusinessShortCode': self.config.short_code,
            'Password': self._password(timestamp),
            'Timestamp': timestamp,
            'TransactionType': 'CustomerPayBillOnline',
            'Amount': amount,
            'PartyA': phone_number,
            'PartyB': self.config.short_code,
            'PhoneNumber': phone_number,
            'CallBackURL': self.config.callback_url,
            'AccountReference': account_reference[:12],
            'TransactionDesc': (description or 'Kodisha Booking')[:13]
        }

        logger.info(
            f"M-Pesa: STK Push to {mask_phone(phone_number)} for KES {amount} "
            f"(transaction {correlation_id})"
        )
        data, error = self._call(STK_PUSH_PATH, payload, "STK Push")
        if error:
            return GatewayResult(success=False, error=error, raw=data)

        response_code = str(data.get('ResponseCode', ''))
        if response_code != '0' or not data.get('CheckoutRequestID'):
            error = self._error_message(data, 'Failed to initiate payment')
            logger.warning(f"M-Pesa: STK Push not accepted - {error}")
            return GatewayResult(
                success=False,
                error=error,
                response_code=response_code or None,
                raw=data
            )

        logger.info(f"M-Pesa: STK Push accepted - {data.get('CheckoutRequestID')}")
        return GatewayResult(
            success=True,
            checkout_request_id=data.get('CheckoutRequestID'),
            merchant_request_id=data.get('MerchantRequestID'),
            response_code=response_code,
            response_description=data.get('ResponseDescription'),
            raw=data
        )

    def query_status(self, checkout_request_id: str) -> GatewayResult:
        """
        Query the status of an STK Push transaction.

        success is True only when the payment itself completed
        (ResponseCode 0 and ResultCode 0). A non-zero result_code means the
        payment definitively failed; result_code None means M-Pesa has no
        answer yet (still processing, or the query itself failed).
        """
        timestamp = self._timestamp()
        payload = {
            'BusinessShortCode': self.config.short_code,
            'Password': self._password(timestamp),
            'Timestamp': timestamp,
            'CheckoutRequestID': checkout_request_id
        }

        data, error = self._call(STK_QUERY_PATH, payload, "STK query")
        if error:
            return GatewayResult(success=False, error=error, raw=data)

        response_code = data.get('ResponseCode')
        result_code = data.get('ResultCode')
        response_code = str(response_code) if response_code is not None else None
        result_code = str(result_code) if result_code is not None else None

        success = response_code == '0' and result_code == '0'
        logger.info(f"M-Pesa: Query {checkout_request_id} - {data.get('ResultDesc')}")

        return GatewayResult(
            success=success,
            error=None if success else self._error_message(data, 'Payment not completed'),
            checkout_request_id=checkout_request_id,
            response_code=response_code,
            response_description=data.get('ResponseDescription'),
            result_code=result_code,
            result_desc=data.get('ResultDesc'),
            raw=data
        )

    def send_payout(self, payee_phone: str, amount: Any, description: str) -> GatewayResult:
        """
        Send money to a host (B2C - Business to Customer).

        M-Pesa B2C Flow:
        1. Call B2C API with recipient details
        2. M-Pesa returns ConversationID immediately
        3. M-Pesa processes payment asynchronously
        4. M-Pesa sends result to ResultURL webhook
        """
        amount = round_amount(amount)
        phone_number = normalize_phone(payee_phone)

        payload = {
            'InitiatorName': self.config.initiator_name,
            'SecurityCredential': self.config.security_credential,
            'CommandID': 'BusinessPayment',
            'Amount': amount,
            'PartyA': self.config.short_code,
            'PartyB': phone_number,
            'Remarks': (description or 'Host Payout')[:100],
            'QueueTimeOutURL': self.config.b2c_timeout_url,
            'ResultURL': self.config.b2c_result_url,
            'Occasion': 'Host Payout'
        }

        logger.info(f"M-Pesa: B2C payout to {mask_phone(phone_number)} for KES {amount}")
        data, error = self._call(B2C_PATH, payload, "B2C")
        if error:
            return GatewayResult(success=False, error=error, raw=data)

        response_code = str(data.get('ResponseCode', ''))
        if response_code != '0':
            error = self._error_message(data, 'Failed to send payout')
            logger.warning(f"M-Pesa: B2C not accepted - {error}")
            return GatewayResult(
                success=False,
                error=error,
                response_code=response_code or None,
                raw=data
            )

        logger.info(f"M-Pesa: B2C accepted - {data.get('ConversationID')}")
        return GatewayResult(
            success=True,
            conversation_id=data.get('ConversationID'),
            originator_conversation_id=data.get('OriginatorConversationID'),
            response_code=response_code,
            response_description=data.get('ResponseDescription'),
            raw=data
        )

    def verify_callback_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """
        Check the X-Callback-Signature header (HMAC-SHA256 of the raw body).

        Daraja v1 callbacks carry no signature, so this only applies when
        MPESA_CALLBACK_SECRET is configured (e.g. behind a signing proxy).
        """
        if not self.config.callback_secret:
            return True
        if not signature:
            return False

        expected = hmac.new(
            self.config.callback_secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())
