from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple
import base64
import hashlib
import hmac
import uuid

import orjson

from .errors import ValidationError
from .helpers import from_cents, now_ts

SIGNATURE_HEADER = "x-webhook-signature"

# normalized event statuses
APPROVED = "approved"
PROCESSING = "processing"
FAILED = "failed"
CANCELLED = "cancelled"
REFUNDED = "refunded"
UNKNOWN = "unknown"

_STATUS_ALIASES = {
    "approved": APPROVED,
    "paid": APPROVED,
    "succeeded": APPROVED,
    "processing": PROCESSING,
    "in_process": PROCESSING,
    "failed": FAILED,
    "rejected": FAILED,
    "cancelled": CANCELLED,
    "canceled": CANCELLED,
    "expired": CANCELLED,
    "refunded": REFUNDED,
}


def sign(secret: str, payload: bytes) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    name = "adapter"

    @abstractmethod
    def pix_code(self, pix_key: str, amount_cents: int,
                 payment_id: str) -> str: ...

    @abstractmethod
    def charge_instant(self, payment_id: str, amount_cents: int) -> dict: ...

    # raises ValidationError on a bad signature or body
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict,
                       secret: Optional[str]) -> dict: ...

    # one of the normalized statuses above
    @abstractmethod
    def event_status(self, event: dict) -> str: ...

    # (payment_id, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]: ...


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    name = "mockpay"

    def pix_code(self, pix_key: str, amount_cents: int,
                 payment_id: str) -> str:
        return f"PIX|{pix_key}|{from_cents(amount_cents)}|{payment_id}"

    def charge_instant(self, payment_id: str, amount_cents: int) -> dict:
        # simulated card authorization, always approved
        return {
            "gateway": self.name,
            "status": APPROVED,
            "transaction_id": f"txn_{uuid.uuid4().hex[:16]}",
            "payment_id": payment_id,
            "amount": str(from_cents(amount_cents)),
            "approved_at": now_ts(),
        }

    def verify_webhook(self, payload: bytes, headers: dict,
                       secret: Optional[str]) -> dict:
        if secret:
            sig = headers.get(SIGNATURE_HEADER)
            if not sig or not hmac.compare_digest(sign(secret, payload), sig):
                raise ValidationError("invalid webhook signature")
        try:
            event = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise ValidationError("webhook body is not valid JSON") from None
        if not isinstance(event, dict):
            raise ValidationError("webhook body must be a JSON object")
        return event

    def event_status(self, event: dict) -> str:
        raw = event.get("status") or event.get("type") or ""
        raw = str(raw).split(".")[-1].strip().lower()
        return _STATUS_ALIASES.get(raw, UNKNOWN)

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        pid = event.get("payment_id") or event.get("external_reference") or ""
        idem = event.get("event_id") or event.get("idempotency_key")
        return str(pid).strip(), (str(idem) if idem else None)

    def build_event(self, payment_id: str, status: str,
                    amount_cents: Optional[int],
                    currency: str) -> Dict[str, Any]:
        return {
            "event_id": f"evt_{uuid.uuid4().hex}",
            "type": f"payment.{status}",
            "payment_id": payment_id,
            "status": status,
            "amount": (
                None if amount_cents is None else str(from_cents(amount_cents))
            ),
            "currency": currency,
            "created_at": int(now_ts()),
        }
