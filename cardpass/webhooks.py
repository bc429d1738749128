"""
Webhook ingestion and idempotency guard.

Payment providers deliver at least once and retry on anything that is not
a 2xx, so every delivery is first recorded under an idempotency key
(``INSERT ... ON CONFLICT DO NOTHING``) and acknowledged once recorded.
Deliveries the guard cannot act on (unknown payment, amount mismatch, late
approval) are acknowledged too, and flagged for operator review instead of
provoking a retry storm.
"""

from __future__ import annotations
import hashlib
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Tuple

from .config import SettingsStore
from .errors import InvalidStateError, ValidationError
from .gateway import (
    APPROVED, CANCELLED, FAILED, PROCESSING, REFUNDED, PaymentAdapter,
)
from .helpers import now_ts, to_cents
from .infra.log import get_logger
from .infra.timings import timeit
from .model import payment as payments
from .model import webhook as events
from .provisioning import Coordinator

log = get_logger("webhooks")

# outcomes
APPLIED = "applied"
ALREADY_APPLIED = "already_applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"
FLAGGED = "flagged"


@dataclass(frozen=True)
class Ack:
    outcome: str
    payment_id: Optional[str] = None
    review_reason: Optional[str] = None

    @property
    def body(self) -> dict:
        return {"status": "ok"}


def idempotency_key(idem: str | None, body: bytes) -> str:
    if idem:
        return f"evt:{idem}"
    return "sha256:" + hashlib.sha256(body).hexdigest()


class WebhookGuard:
    def __init__(self, unit: Callable[[], Any], coordinator: Coordinator,
                 adapter: PaymentAdapter, settings: SettingsStore,
                 clock: Callable[[], float] = now_ts) -> None:
        self.unit = unit
        self.coordinator = coordinator
        self.adapter = adapter
        self.settings = settings
        self.clock = clock

    async def ingest(self, body: bytes, headers: Mapping[str, str]) -> Ack:
        secret = self.settings.current.webhook_secret
        if not secret:
            log.warning("webhook_unsigned")
        event = self.adapter.verify_webhook(body, dict(headers), secret)
        pid, idem = self.adapter.event_ids(event)
        status = self.adapter.event_status(event)
        key = idempotency_key(idem, body)

        async with timeit("webhooks.record"):
            async with self.unit() as db:
                event_id = await events.record_event(
                    db,
                    key=key,
                    payment_id=pid,
                    reported_status=status,
                    payload=body.decode("utf-8", errors="replace"),
                    now=self.clock(),
                )
                if event_id is None:
                    seen = await events.get_event_by_key(db, key)

        if event_id is None:
            if seen.outcome != events.RECEIVED:
                log.info(
                    "webhook_duplicate",
                    key=key,
                    payment_id=pid,
                    first_outcome=seen.outcome,
                )
                return Ack(DUPLICATE, pid)
            # recorded earlier but never finished processing: try again
            log.info("webhook_redelivered", key=key, payment_id=pid)
            event_id = seen.id

        async with timeit("webhooks.process"):
            outcome, reason = await self._process(pid, status, event)
        async with self.unit() as db:
            await events.finish_event(db, event_id, outcome, self.clock(), reason)

        log.info(
            "webhook_processed",
            payment_id=pid,
            status=status,
            outcome=outcome,
            review_reason=reason,
        )
        return Ack(outcome, pid, reason)

    async def _process(self, pid: str, status: str,
                       event: dict) -> Tuple[str, Optional[str]]:
        if not pid:
            log.warning("webhook_missing_payment_id", status=status)
            return FLAGGED, "missing_payment_id"

        async with self.unit() as db:
            payment = await payments.get_payment(db, pid)
        if payment is None:
            log.warning("webhook_unknown_payment", payment_id=pid, status=status)
            return FLAGGED, "unknown_payment"

        if status == APPROVED:
            return await self._approve(payment, event)

        handlers = {
            PROCESSING: self.coordinator.mark_processing,
            FAILED: self.coordinator.fail_payment,
            CANCELLED: self.coordinator.cancel_payment,
        }
        try:
            if status == REFUNDED:
                result = await self.coordinator.refund_payment(pid, event)
                if result.needs_review:
                    return APPLIED, "refund_after_activation"
                return APPLIED, None
            handler = handlers.get(status)
            if handler is None:
                log.info("webhook_status_ignored", payment_id=pid, status=status)
                return IGNORED, None
            before = payment.status
            payment = await handler(pid, event)
        except InvalidStateError as e:
            log.info(
                "webhook_status_ignored",
                payment_id=pid,
                status=status,
                current=e.current,
            )
            return IGNORED, None
        return (ALREADY_APPLIED if before == payment.status else APPLIED), None

    async def _approve(self, payment, event: dict) -> Tuple[str, Optional[str]]:
        pid = payment.payment_id
        raw_amount = event.get("amount")
        if raw_amount is not None:
            try:
                amount_cents = to_cents(raw_amount)
            except ValidationError:
                amount_cents = None
            if amount_cents != payment.amount_cents:
                log.warning(
                    "webhook_amount_mismatch",
                    payment_id=pid,
                    expected_cents=payment.amount_cents,
                    reported=str(raw_amount),
                )
                return FLAGGED, "amount_mismatch"

        if payment.status == payments.PAID:
            return ALREADY_APPLIED, None
        if payment.status in payments.TERMINAL:
            log.warning(
                "webhook_late_approval", payment_id=pid, current=payment.status
            )
            return FLAGGED, "late_approval"

        try:
            issued = await self.coordinator.confirm_payment(pid, event)
        except InvalidStateError as e:
            # cancelled or expired between the read above and the update
            log.warning("webhook_late_approval", payment_id=pid, current=e.current)
            return FLAGGED, "late_approval"
        return (APPLIED if issued.created else ALREADY_APPLIED), None
