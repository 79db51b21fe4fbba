"""
Payment Gateway Adapter
Creates hosted payment sessions and authenticates gateway notifications.

``PaymentGateway`` is the seam the escrow core depends on; ``MidtransGateway``
implements it against the Midtrans Snap API. Amounts are integer rupiah.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any

import requests
from requests.auth import HTTPBasicAuth

from config import Config
from models import PaymentStatus
from utils.exception_handler import SignatureInvalidError, UpstreamFailureError

logger = logging.getLogger(__name__)


@dataclass
class CustomerDetails:
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class LineItem:
    id: str
    name: str
    price: int
    quantity: int = 1


@dataclass
class PaymentSession:
    token: str
    redirect_url: str
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway:
    """Interface the escrow core needs from a payment provider"""

    provider = "generic"

    def create_session(
        self, order_id: str, amount: int, buyer: CustomerDetails, items: List[LineItem]
    ) -> PaymentSession:
        raise NotImplementedError

    def verify_signature(self, external_order_id: str, status_code: str, gross_amount: str, signature: str) -> bool:
        raise NotImplementedError

    def authenticate(self, external_order_id: str, status_code: str, gross_amount: str, signature: str) -> None:
        """Raise SignatureInvalidError unless the notification signature checks out"""
        if not self.verify_signature(external_order_id, status_code, gross_amount, signature):
            raise SignatureInvalidError(f"Invalid {self.provider} signature for order {external_order_id}")

    def normalize_status(self, raw_status: Optional[str], fraud_status: Optional[str] = None) -> PaymentStatus:
        raise NotImplementedError


class MidtransGateway(PaymentGateway):
    """Midtrans Snap adapter"""

    provider = "midtrans"

    # Gateway transaction_status -> normalized status
    STATUS_MAP = {
        "capture": PaymentStatus.SETTLEMENT,
        "settlement": PaymentStatus.SETTLEMENT,
        "pending": PaymentStatus.PENDING,
        "deny": PaymentStatus.FAILED,
        "failure": PaymentStatus.FAILED,
        "cancel": PaymentStatus.CANCELLED,
        "expire": PaymentStatus.EXPIRED,
        "refund": PaymentStatus.REFUND,
        "partial_refund": PaymentStatus.REFUND,
    }
    FRAUD_STATUSES = frozenset({"deny", "challenge"})

    def __init__(
        self,
        server_key: Optional[str] = None,
        snap_url: Optional[str] = None,
        timeout: Optional[int] = None,
        http: Optional[requests.Session] = None,
    ):
        self.server_key = server_key if server_key is not None else Config.MIDTRANS_SERVER_KEY
        self.snap_url = snap_url or Config.MIDTRANS_SNAP_URL
        self.timeout = timeout or Config.MIDTRANS_TIMEOUT_SECONDS
        self.http = http or requests.Session()

    def create_session(
        self, order_id: str, amount: int, buyer: CustomerDetails, items: List[LineItem]
    ) -> PaymentSession:
        if not self.server_key:
            raise UpstreamFailureError("Payment gateway is not configured")

        payload = {
            "transaction_details": {"order_id": order_id, "gross_amount": amount},
            "customer_details": {
                "first_name": buyer.full_name,
                "email": buyer.email,
                "phone": buyer.phone,
            },
            "item_details": [
                {"id": item.id, "price": item.price, "quantity": item.quantity, "name": item.name[:50]}
                for item in items
            ],
            "expiry": {"unit": "minutes", "duration": Config.PAYMENT_EXPIRY_MINUTES},
            "callbacks": {"finish": f"{Config.FRONTEND_URL}/orders/{order_id}"},
        }

        try:
            response = self.http.post(
                self.snap_url,
                json=payload,
                auth=HTTPBasicAuth(self.server_key, ""),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"❌ MIDTRANS_SESSION: transport error for order {order_id}: {e}")
            raise UpstreamFailureError("Failed to create payment session") from e

        if response.status_code >= 400:
            logger.error(
                f"❌ MIDTRANS_SESSION: HTTP {response.status_code} for order {order_id}: {response.text[:200]}"
            )
            raise UpstreamFailureError("Failed to create payment session")

        try:
            data = response.json()
            session = PaymentSession(token=data["token"], redirect_url=data["redirect_url"], raw=data)
        except (ValueError, KeyError) as e:
            logger.error(f"❌ MIDTRANS_SESSION: malformed response for order {order_id}: {e}")
            raise UpstreamFailureError("Failed to create payment session") from e

        logger.info(f"✅ MIDTRANS_SESSION: created for order {order_id} amount={amount}")
        return session

    def compute_signature(self, external_order_id: str, status_code: str, gross_amount: str) -> str:
        message = f"{external_order_id}{status_code}{gross_amount}{self.server_key}"
        return hmac.new(self.server_key.encode(), message.encode(), hashlib.sha512).hexdigest()

    def verify_signature(self, external_order_id: str, status_code: str, gross_amount: str, signature: str) -> bool:
        if not self.server_key or not signature:
            return False
        expected = self.compute_signature(external_order_id, status_code, gross_amount)
        return hmac.compare_digest(expected, signature)

    def normalize_status(self, raw_status: Optional[str], fraud_status: Optional[str] = None) -> PaymentStatus:
        if fraud_status and fraud_status.lower() in self.FRAUD_STATUSES:
            return PaymentStatus.FAILED
        return self.STATUS_MAP.get((raw_status or "").lower(), PaymentStatus.PENDING)
