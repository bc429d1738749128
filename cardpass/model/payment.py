# model/payment.py
"""
Payment lifecycle.

    pending ─▶ processing ─▶ paid ─▶ refunded
       │            │
       ├────────────┴─▶ failed
       └────────────┴─▶ cancelled

`paid`, `failed`, `refunded` and `cancelled` are terminal; the only way out
of one is `paid → refunded`. Transitions are conditional UPDATEs keyed on the
allowed source states. Re-applying a transition to a payment that is already
in the target state is a no-op (`changed=False`), since payment providers
deliver their notifications at least once.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import orjson
from sqlalchemy import bindparam, func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import CapacityError, InvalidStateError, NotFoundError
from ..helpers import random_token
from .db import ActivationCode, Payment

PENDING = "pending"
PROCESSING = "processing"
PAID = "paid"
FAILED = "failed"
REFUNDED = "refunded"
CANCELLED = "cancelled"
STATUSES = (PENDING, PROCESSING, PAID, FAILED, REFUNDED, CANCELLED)
TERMINAL = (PAID, FAILED, REFUNDED, CANCELLED)

_ALLOWED_FROM: Dict[str, Tuple[str, ...]] = {
    PROCESSING: (PENDING,),
    PAID: (PENDING, PROCESSING),
    FAILED: (PENDING, PROCESSING),
    CANCELLED: (PENDING, PROCESSING),
    REFUNDED: (PAID,),
}

# timestamp column stamped by each transition
_STAMP: Dict[str, Optional[str]] = {
    PROCESSING: None,
    PAID: "paid_at",
    FAILED: "failed_at",
    CANCELLED: "cancelled_at",
    REFUNDED: "refunded_at",
}


@dataclass(frozen=True)
class CheckoutDetails:
    plan: str
    payment_method: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    customer_document: Optional[str] = None


def dump_gateway_payload(payload: Any) -> Optional[str]:
    if payload is None:
        return None
    return orjson.dumps(payload).decode()


def load_gateway_payload(raw: Optional[str]) -> Any:
    if not raw:
        return None
    return orjson.loads(raw)


async def get_payment(db: AsyncSession, payment_id: str) -> Optional[Payment]:
    stmt = (
        select(Payment)
        .where(Payment.payment_id == payment_id)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def new_payment_id(db: AsyncSession, max_attempts: int = 5) -> str:
    for _ in range(max_attempts):
        pid = "PAY-" + random_token(8)
        taken = (await db.execute(
            text("SELECT 1 FROM payments WHERE payment_id = :pid"),
            {"pid": pid},
        )).first()
        if taken is None:
            return pid
    raise CapacityError(
        f"could not generate a unique payment id after {max_attempts} attempts"
    )


async def insert_payment(
    db: AsyncSession, *, payment_id: str, details: CheckoutDetails,
    amount_cents: int, currency: str, now: float,
    pix_code: Optional[str] = None, expires_at: Optional[float] = None,
    gateway: str = "mockpay",
) -> Payment:
    payment = Payment(
        payment_id=payment_id,
        status=PENDING,
        plan=details.plan,
        amount_cents=amount_cents,
        currency=currency,
        payment_method=details.payment_method,
        customer_name=details.customer_name,
        customer_email=details.customer_email,
        customer_phone=details.customer_phone,
        customer_document=details.customer_document,
        gateway=gateway,
        pix_code=pix_code,
        expires_at=expires_at,
        created_at=now,
        updated_at=now,
    )
    db.add(payment)
    await db.flush()
    return payment


async def transition(
    db: AsyncSession, payment_id: str, to: str, now: float,
    gateway_response: Any = None,
) -> Tuple[bool, Payment]:
    """Move a payment to `to` if it is in one of the allowed source states.

    Returns ``(changed, payment)``. ``changed`` is False when the payment
    was already in `to`; any other refusal raises.
    """
    stamp = _STAMP[to]
    sets = "status = :to, updated_at = :now"
    if stamp:
        sets += f", {stamp} = :now"
    sets += ", gateway_response = COALESCE(:gr, gateway_response)"
    stmt = text(f"""
        UPDATE payments SET {sets}
         WHERE payment_id = :pid AND status IN :from_states
    """).bindparams(bindparam("from_states", expanding=True))
    res = await db.execute(stmt, {
        "to": to,
        "now": now,
        "gr": dump_gateway_payload(gateway_response),
        "pid": payment_id,
        "from_states": list(_ALLOWED_FROM[to]),
    })
    payment = await get_payment(db, payment_id)
    if res.rowcount == 1:
        return True, payment
    if payment is None:
        raise NotFoundError("payment not found", payment_id=payment_id)
    if payment.status == to:
        return False, payment
    raise InvalidStateError(
        f"payment is {payment.status} and cannot become {to}",
        current=payment.status, payment_id=payment_id,
    )


async def mark_processing(db: AsyncSession, payment_id: str, now: float,
                          gateway_response: Any = None):
    return await transition(db, payment_id, PROCESSING, now, gateway_response)


async def mark_paid(db: AsyncSession, payment_id: str, now: float,
                    gateway_response: Any = None):
    return await transition(db, payment_id, PAID, now, gateway_response)


async def mark_failed(db: AsyncSession, payment_id: str, now: float,
                      gateway_response: Any = None):
    return await transition(db, payment_id, FAILED, now, gateway_response)


async def mark_cancelled(db: AsyncSession, payment_id: str, now: float,
                         gateway_response: Any = None):
    return await transition(db, payment_id, CANCELLED, now, gateway_response)


async def mark_refunded(db: AsyncSession, payment_id: str, now: float,
                        gateway_response: Any = None):
    return await transition(db, payment_id, REFUNDED, now, gateway_response)


async def expire_if_due(db: AsyncSession, payment_id: str, now: float) -> bool:
    """Lazy expiry: cancel a pending payment whose deadline has passed."""
    res = await db.execute(text("""
        UPDATE payments
           SET status = 'cancelled', cancelled_at = :now, updated_at = :now
         WHERE payment_id = :pid
           AND status = 'pending'
           AND expires_at IS NOT NULL
           AND expires_at <= :now
    """), {"pid": payment_id, "now": now})
    return res.rowcount == 1


async def link_code(db: AsyncSession, payment_id: str, code: str,
                    now: float) -> bool:
    res = await db.execute(text("""
        UPDATE payments SET activation_code = :code, updated_at = :now
         WHERE payment_id = :pid AND activation_code IS NULL
    """), {"pid": payment_id, "code": code, "now": now})
    return res.rowcount == 1


async def link_artifact(db: AsyncSession, payment_id: str, artifact_id: str,
                        now: float) -> bool:
    res = await db.execute(text("""
        UPDATE payments
           SET artifact_id = :aid, artifact_linked_at = :now, updated_at = :now
         WHERE payment_id = :pid AND artifact_id IS NULL
    """), {"pid": payment_id, "aid": artifact_id, "now": now})
    return res.rowcount == 1


async def list_payments(
    db: AsyncSession, status: str | None = None, limit: int = 200
) -> List[Payment]:
    stmt = select(Payment)
    if status:
        stmt = stmt.where(Payment.status == status)
    stmt = stmt.order_by(Payment.created_at.desc()).limit(limit)
    return list((await db.execute(stmt)).scalars().all())


async def count_by_status(db: AsyncSession) -> Dict[str, int]:
    rows = (await db.execute(
        select(Payment.status, func.count()).group_by(Payment.status)
    )).all()
    counts = {s: 0 for s in STATUSES}
    counts.update({r[0]: int(r[1]) for r in rows})
    return counts


async def paid_revenue_cents(db: AsyncSession) -> int:
    total = (await db.execute(
        select(func.coalesce(func.sum(Payment.amount_cents), 0))
        .where(Payment.status == PAID)
    )).scalar_one()
    return int(total)


async def refunded_with_activated_code(
    db: AsyncSession, limit: int = 200
) -> List[Payment]:
    stmt = (
        select(Payment)
        .join(ActivationCode, ActivationCode.payment_id == Payment.payment_id)
        .where(Payment.status == REFUNDED)
        .where(ActivationCode.status == "activated")
        .order_by(Payment.refunded_at.desc())
        .limit(limit)
    )
    return list((await db.execute(stmt)).scalars().all())
