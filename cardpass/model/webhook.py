# model/webhook.py
from __future__ import annotations
from typing import List, Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import WebhookEvent

RECEIVED = "received"


async def record_event(
    db: AsyncSession, *, key: str, payment_id: str | None,
    reported_status: str | None, payload: str, now: float,
) -> Optional[int]:
    """Durably record a delivery. Returns the new row id, or None when an
    event with the same idempotency key was already recorded."""
    row = (await db.execute(text("""
        INSERT INTO webhook_events
            (idempotency_key, payment_id, reported_status, payload,
             received_at, outcome, needs_review)
        VALUES (:key, :pid, :status, :payload, :now, 'received', :review)
        ON CONFLICT (idempotency_key) DO NOTHING
        RETURNING id
    """), {
        "key": key,
        "pid": payment_id or None,
        "status": reported_status,
        "payload": payload,
        "now": now,
        "review": False,
    })).first()
    return None if row is None else int(row[0])


async def get_event_by_key(db: AsyncSession, key: str) -> Optional[WebhookEvent]:
    stmt = (
        select(WebhookEvent)
        .where(WebhookEvent.idempotency_key == key)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def finish_event(
    db: AsyncSession, event_id: int, outcome: str, now: float,
    review_reason: str | None = None,
) -> bool:
    # first finisher wins; redeliveries of an unfinished event may race here
    res = await db.execute(text("""
        UPDATE webhook_events
           SET outcome = :outcome,
               needs_review = :review,
               review_reason = :reason,
               processed_at = :now
         WHERE id = :id AND outcome = 'received'
    """), {
        "id": event_id,
        "outcome": outcome,
        "review": review_reason is not None,
        "reason": review_reason,
        "now": now,
    })
    return res.rowcount == 1


async def flagged_events(db: AsyncSession, limit: int = 200) -> List[WebhookEvent]:
    stmt = (
        select(WebhookEvent)
        .where(WebhookEvent.needs_review.is_(True))
        .order_by(WebhookEvent.received_at.desc())
        .limit(limit)
    )
    return list((await db.execute(stmt)).scalars().all())


async def unfinished_events(
    db: AsyncSession, received_before: float, limit: int = 200
) -> List[WebhookEvent]:
    """Deliveries recorded but never processed to an outcome."""
    stmt = (
        select(WebhookEvent)
        .where(WebhookEvent.outcome == RECEIVED)
        .where(WebhookEvent.received_at <= received_before)
        .order_by(WebhookEvent.received_at)
        .limit(limit)
    )
    return list((await db.execute(stmt)).scalars().all())


async def events_for_payment(
    db: AsyncSession, payment_id: str
) -> List[WebhookEvent]:
    stmt = (
        select(WebhookEvent)
        .where(WebhookEvent.payment_id == payment_id)
        .order_by(WebhookEvent.received_at, WebhookEvent.id)
    )
    return list((await db.execute(stmt)).scalars().all())
