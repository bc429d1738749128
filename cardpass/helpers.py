import time
import re
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
import hmac
from typing import Optional

from .errors import ValidationError

UPPER_ALNUM = string.ascii_uppercase + string.digits
ALNUM = string.ascii_letters + string.digits

_CENT = Decimal("0.01")


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def random_token(length: int, alphabet: str = UPPER_ALNUM) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def to_cents(value: Decimal | str | int | float) -> int:
    """Convert a money amount to integer minor units.

    Amounts with more than two decimal places are rejected rather than
    rounded.
    """
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"invalid amount: {value!r}") from None
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"invalid amount: {value!r}")
    if amount != amount.quantize(_CENT):
        raise ValidationError(
            f"amount has more than two decimal places: {value!r}"
        )
    return int(amount * 100)


def from_cents(cents: int | None) -> Optional[Decimal]:
    if cents is None:
        return None
    return (Decimal(cents) / 100).quantize(_CENT)
