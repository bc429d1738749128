# model/activation.py
"""
Activation-code lifecycle.

    available ──markSold──▶ sold ──redeem──▶ activated
        │                    │
        └──────expire────────┴──▶ expired

Every transition is a single conditional UPDATE (``... WHERE status = ...``)
whose affected-row count decides the outcome; status is never read into
Python, inspected and written back. The functions here run inside a caller's
transaction and raise the typed errors from ``cardpass.errors``.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    ConflictError, InvalidStateError, NotFoundError, ValidationError
)
from .db import ActivationCode, Card

AVAILABLE = "available"
SOLD = "sold"
ACTIVATED = "activated"
EXPIRED = "expired"
STATUSES = (AVAILABLE, SOLD, ACTIVATED, EXPIRED)


@dataclass(frozen=True)
class SaleDetails:
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    amount_cents: Optional[int] = None
    payment_method: Optional[str] = None
    payment_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class CodeEdit:
    """Admin correction of a code's sale snapshot. None leaves a field as
    it is; status is not editable."""
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    plan: Optional[str] = None
    amount_cents: Optional[int] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None

    @property
    def reprices(self) -> bool:
        return self.plan is not None or self.amount_cents is not None


@dataclass(frozen=True)
class CustomerInput:
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


def normalize_code(raw: str | None) -> str:
    code = (raw or "").strip().upper()
    if not code:
        raise ValidationError("activation code is required")
    return code


async def get_code(db: AsyncSession, code: str) -> Optional[ActivationCode]:
    stmt = (
        select(ActivationCode)
        .where(ActivationCode.code == code)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_code_for_payment(
    db: AsyncSession, payment_id: str
) -> Optional[ActivationCode]:
    stmt = (
        select(ActivationCode)
        .where(ActivationCode.payment_id == payment_id)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def insert_codes(
    db: AsyncSession, codes: Sequence[str], *, status: str, plan: str,
    now: float, sale: SaleDetails | None = None,
) -> List[ActivationCode]:
    """Insert freshly generated codes in `available` or `sold`.

    Runs inside the caller's transaction, so a failure on any row discards
    the whole batch.
    """
    if status not in (AVAILABLE, SOLD):
        raise ValueError(f"codes cannot be created in status {status!r}")
    sale = sale or SaleDetails()
    rows = [
        ActivationCode(
            code=c,
            status=status,
            plan=plan,
            amount_cents=sale.amount_cents,
            customer_name=sale.customer_name,
            customer_email=sale.customer_email,
            customer_phone=sale.customer_phone,
            payment_method=sale.payment_method,
            payment_id=sale.payment_id,
            notes=sale.notes,
            created_at=now,
            sold_at=now if status == SOLD else None,
        )
        for c in codes
    ]
    db.add_all(rows)
    await db.flush()
    return rows


async def mark_sold(
    db: AsyncSession, code: str, sale: SaleDetails, now: float
) -> ActivationCode:
    res = await db.execute(text("""
        UPDATE activation_codes
           SET status = 'sold',
               sold_at = :now,
               amount_cents = COALESCE(:amount_cents, amount_cents),
               customer_name = COALESCE(:customer_name, customer_name),
               customer_email = COALESCE(:customer_email, customer_email),
               customer_phone = COALESCE(:customer_phone, customer_phone),
               payment_method = COALESCE(:payment_method, payment_method),
               notes = COALESCE(:notes, notes)
         WHERE code = :code AND status = 'available'
    """), {
        "code": code,
        "now": now,
        "amount_cents": sale.amount_cents,
        "customer_name": sale.customer_name,
        "customer_email": sale.customer_email,
        "customer_phone": sale.customer_phone,
        "payment_method": sale.payment_method,
        "notes": sale.notes,
    })
    row = await get_code(db, code)
    if res.rowcount == 1:
        return row
    if row is None:
        raise NotFoundError("activation code not found", code=code)
    raise InvalidStateError(
        f"only available codes can be sold; this code is {row.status}",
        current=row.status, code=code,
    )


async def load_redeemable(db: AsyncSession, code: str) -> ActivationCode:
    """Read-only precheck that gives the user a precise reason for refusal.

    It does not guard anything: the conditional write in `activate` does.
    """
    row = await get_code(db, code)
    if row is None:
        raise NotFoundError("invalid activation code", code=code)
    if row.status == ACTIVATED:
        raise InvalidStateError(
            "this code was already used", current=row.status, code=code
        )
    if row.status == EXPIRED:
        raise InvalidStateError(
            "this code has expired", current=row.status, code=code
        )
    if row.status == AVAILABLE:
        raise InvalidStateError(
            "this code has not been sold", current=row.status, code=code
        )
    return row


async def activate(
    db: AsyncSession, code: str, customer: CustomerInput, now: float
) -> None:
    res = await db.execute(text("""
        UPDATE activation_codes
           SET status = 'activated',
               activated_at = :now,
               customer_name = COALESCE(customer_name, :name),
               customer_email = COALESCE(customer_email, :email),
               customer_phone = COALESCE(customer_phone, :phone)
         WHERE code = :code AND status = 'sold'
    """), {
        "code": code,
        "now": now,
        "name": customer.name,
        "email": customer.email,
        "phone": customer.phone,
    })
    if res.rowcount != 1:
        raise ConflictError("already redeemed", code=code)


async def expire(db: AsyncSession, code: str, now: float) -> ActivationCode:
    res = await db.execute(text("""
        UPDATE activation_codes
           SET status = 'expired', expired_at = :now
         WHERE code = :code AND status IN ('available', 'sold')
    """), {"code": code, "now": now})
    row = await get_code(db, code)
    if res.rowcount == 1:
        return row
    if row is None:
        raise NotFoundError("activation code not found", code=code)
    if row.status == EXPIRED:
        return row
    raise InvalidStateError(
        "activated codes cannot be expired", current=row.status, code=code
    )


async def update_details(
    db: AsyncSession, code: str, edit: CodeEdit
) -> ActivationCode:
    # plan and amount follow the payment once one is linked, and the card
    # once the code is redeemed
    guard = (
        "AND status IN ('available', 'sold') AND payment_id IS NULL"
        if edit.reprices else ""
    )
    res = await db.execute(text(f"""
        UPDATE activation_codes
           SET customer_name = COALESCE(:customer_name, customer_name),
               customer_email = COALESCE(:customer_email, customer_email),
               customer_phone = COALESCE(:customer_phone, customer_phone),
               plan = COALESCE(:plan, plan),
               amount_cents = COALESCE(:amount_cents, amount_cents),
               payment_method = COALESCE(:payment_method, payment_method),
               notes = COALESCE(:notes, notes)
         WHERE code = :code {guard}
    """), {
        "code": code,
        "customer_name": edit.customer_name,
        "customer_email": edit.customer_email,
        "customer_phone": edit.customer_phone,
        "plan": edit.plan,
        "amount_cents": edit.amount_cents,
        "payment_method": edit.payment_method,
        "notes": edit.notes,
    })
    row = await get_code(db, code)
    if res.rowcount == 1:
        return row
    if row is None:
        raise NotFoundError("activation code not found", code=code)
    raise InvalidStateError(
        "only unpaid, unredeemed codes can change plan or amount",
        current=row.status, code=code,
    )


async def delete_code(db: AsyncSession, code: str) -> None:
    """Delete a code that was never sold."""
    res = await db.execute(text("""
        DELETE FROM activation_codes
         WHERE code = :code AND status = 'available' AND payment_id IS NULL
    """), {"code": code})
    if res.rowcount == 1:
        return
    row = await get_code(db, code)
    if row is None:
        raise NotFoundError("activation code not found", code=code)
    raise InvalidStateError(
        f"only available codes can be deleted; this code is {row.status}",
        current=row.status, code=code,
    )


async def list_codes(
    db: AsyncSession, status: str | None = None, limit: int = 200
) -> List[ActivationCode]:
    stmt = select(ActivationCode)
    if status:
        stmt = stmt.where(ActivationCode.status == status)
    stmt = stmt.order_by(ActivationCode.created_at.desc(),
                         ActivationCode.id.desc()).limit(limit)
    return list((await db.execute(stmt)).scalars().all())


async def count_by_status(db: AsyncSession) -> Dict[str, int]:
    rows = (await db.execute(
        select(ActivationCode.status, func.count())
        .group_by(ActivationCode.status)
    )).all()
    counts = {s: 0 for s in STATUSES}
    counts.update({r[0]: int(r[1]) for r in rows})
    return counts


async def activated_without_card(
    db: AsyncSession, activated_before: float, limit: int = 200
) -> List[ActivationCode]:
    stmt = (
        select(ActivationCode)
        .outerjoin(Card, Card.activation_code == ActivationCode.code)
        .where(ActivationCode.status == ACTIVATED)
        .where(ActivationCode.activated_at <= activated_before)
        .where(Card.id.is_(None))
        .order_by(ActivationCode.activated_at)
        .limit(limit)
    )
    return list((await db.execute(stmt)).scalars().all())
