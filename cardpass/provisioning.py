"""
Provisioning coordinator.

The only place where a Payment and an ActivationCode get linked, and where
cards get created. Two pipelines run through here:

* payment confirmed -> exactly one `sold` code carrying the payment id,
  with the back-reference on the payment, in one transaction;
* code redeemed -> exactly one card carrying the code.

Both are safe to repeat. Notifications are queued after commit and never
affect the outcome of an operation.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

from .config import Settings, SettingsStore
from .errors import (
    CapacityError, ConflictError, InvalidStateError, NotFoundError,
    PersistenceError, ValidationError,
)
from .gateway import PaymentAdapter
from .handoff import Handoff
from .helpers import is_valid_email, now_ts
from .infra.log import get_logger
from .infra.timings import timeit
from .model import activation, card as cards, payment as payments
from .model import webhook as webhook_events
from .model.activation import CodeEdit, CustomerInput, SaleDetails
from .model.card import CardInput
from .model.codegen import CodeGenerator
from .model.db import ActivationCode, Card, Payment
from .model.payment import CheckoutDetails
from .notify import (
    NotificationQueue, code_issued_message, pix_instructions_message,
)

log = get_logger("provisioning")

Unit = Callable[[], Any]


@dataclass(frozen=True)
class IssueResult:
    payment_id: str
    code: str
    created: bool


@dataclass(frozen=True)
class CheckoutResult:
    payment: Payment
    activation_code: Optional[str] = None


@dataclass(frozen=True)
class RedemptionResult:
    code: str
    plan: str
    customer_name: Optional[str]
    activated_at: float
    handoff_token: Optional[str] = None


@dataclass(frozen=True)
class CardResult:
    card: Card
    created: bool


@dataclass(frozen=True)
class RefundResult:
    payment: Payment
    code: Optional[str]
    code_status: Optional[str]
    needs_review: bool


def _check_customer(name: str | None, email: str | None,
                    email_required: bool) -> None:
    if not (name or "").strip():
        raise ValidationError("customer name is required")
    if email_required and not email:
        raise ValidationError("customer email is required")
    if email and not is_valid_email(email):
        raise ValidationError("customer email is not a valid address")


class Coordinator:
    def __init__(
        self,
        unit: Unit,
        settings: SettingsStore,
        notifications: NotificationQueue,
        handoff: Handoff,
        adapter: PaymentAdapter,
        codegen: Callable[[Settings], CodeGenerator] = CodeGenerator.from_settings,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self.unit = unit
        self.settings = settings
        self.notifications = notifications
        self.handoff = handoff
        self.adapter = adapter
        self.codegen = codegen
        self.clock = clock

    # ----------------------------
    # Payments
    # ----------------------------
    async def open_payment(self, details: CheckoutDetails) -> CheckoutResult:
        """Create a payment for a plan.

        Deferred methods (PIX) leave the payment `pending` and send the PIX
        instructions. Instant methods are authorized on the spot: the
        payment, its `paid` transition and the issued code commit together.
        """
        s = self.settings.current
        method = s.check_method(details.payment_method)
        plan = s.plan(details.plan)
        _check_customer(details.customer_name, details.customer_email, True)
        details = replace(
            details,
            plan=plan.key,
            payment_method=method,
            customer_name=details.customer_name.strip(),
            customer_email=details.customer_email.strip(),
        )
        instant = s.is_instant(method)
        now = self.clock()

        async with timeit("payments.open"):
            async with self.unit() as db:
                pid = await payments.new_payment_id(db, s.code_max_attempts)
                pix_code = expires_at = None
                if not instant:
                    pix_code = self.adapter.pix_code(
                        s.pix_key, plan.price_cents, pid
                    )
                    expires_at = now + s.pix_ttl_seconds
                payment = await payments.insert_payment(
                    db,
                    payment_id=pid,
                    details=details,
                    amount_cents=plan.price_cents,
                    currency=s.currency,
                    now=now,
                    pix_code=pix_code,
                    expires_at=expires_at,
                    gateway=self.adapter.name,
                )
                issued = None
                if instant:
                    charge = self.adapter.charge_instant(pid, plan.price_cents)
                    issued, payment = await self._issue_for_payment(
                        db, pid, charge, now
                    )

        log.info(
            "payment_opened",
            payment_id=pid,
            plan=plan.key,
            method=method,
            amount_cents=plan.price_cents,
            status=payment.status,
        )
        if issued is not None:
            self._notify_issued(payment, issued.code, s)
            return CheckoutResult(payment=payment, activation_code=issued.code)

        self.notifications.enqueue(pix_instructions_message(
            payment_id=pid,
            pix_code=pix_code,
            amount_cents=plan.price_cents,
            to_email=payment.customer_email,
            to_name=payment.customer_name,
            settings=s,
        ))
        return CheckoutResult(payment=payment)

    async def confirm_payment(self, payment_id: str,
                              gateway_payload: Any = None) -> IssueResult:
        """Mark a payment paid and issue its activation code.

        Idempotent: confirming an already confirmed payment returns the code
        issued the first time. Raises NotFoundError for an unknown payment
        and InvalidStateError for one that can no longer be paid.
        """
        s = self.settings.current
        now = self.clock()
        try:
            async with timeit("provisioning.confirm"):
                async with self.unit() as db:
                    issued, payment = await self._issue_for_payment(
                        db, payment_id, gateway_payload, now
                    )
        except PersistenceError as e:
            if not e.context.get("integrity"):
                raise
            # a concurrent confirmation committed the code first
            async with self.unit() as db:
                payment = await payments.get_payment(db, payment_id)
            if payment is None or payment.activation_code is None:
                raise
            log.info("payment_confirm_replayed", payment_id=payment_id)
            return IssueResult(payment_id, payment.activation_code, False)

        if issued.created:
            log.info(
                "code_issued",
                payment_id=payment_id,
                code=issued.code,
                plan=payment.plan,
            )
            self._notify_issued(payment, issued.code, s)
        else:
            log.info(
                "payment_already_confirmed",
                payment_id=payment_id,
                code=issued.code,
            )
        return issued

    async def _issue_for_payment(self, db, payment_id: str,
                                 gateway_payload: Any, now: float):
        # the conditional UPDATE comes first: concurrent confirmations of
        # one payment serialize on it
        _, payment = await payments.mark_paid(
            db, payment_id, now, gateway_payload
        )
        if payment.activation_code:
            return IssueResult(payment_id, payment.activation_code, False), payment

        code = await self.codegen(self.settings.current).generate(db)
        await activation.insert_codes(
            db, [code],
            status=activation.SOLD,
            plan=payment.plan,
            now=now,
            sale=SaleDetails(
                customer_name=payment.customer_name,
                customer_email=payment.customer_email,
                customer_phone=payment.customer_phone,
                amount_cents=payment.amount_cents,
                payment_method=payment.payment_method,
                payment_id=payment_id,
            ),
        )
        if not await payments.link_code(db, payment_id, code, now):
            raise ConflictError(
                "payment already has an activation code", payment_id=payment_id
            )
        payment = await payments.get_payment(db, payment_id)
        return IssueResult(payment_id, code, True), payment

    def _notify_issued(self, payment: Payment, code: str, s: Settings) -> None:
        plan = s.plans.get(payment.plan)
        self.notifications.enqueue(code_issued_message(
            code=code,
            plan_name=plan.name if plan else payment.plan,
            amount_cents=payment.amount_cents,
            to_email=payment.customer_email,
            to_name=payment.customer_name,
            settings=s,
        ))

    async def _transition(self, name: str, fn, payment_id: str,
                          gateway_payload: Any) -> Payment:
        async with timeit(f"payments.{name}"):
            async with self.unit() as db:
                changed, payment = await fn(
                    db, payment_id, self.clock(), gateway_payload
                )
        if changed:
            log.info(f"payment_{name}", payment_id=payment_id)
        return payment

    async def mark_processing(self, payment_id: str,
                              gateway_payload: Any = None) -> Payment:
        return await self._transition(
            "processing", payments.mark_processing, payment_id, gateway_payload
        )

    async def fail_payment(self, payment_id: str,
                           gateway_payload: Any = None) -> Payment:
        return await self._transition(
            "failed", payments.mark_failed, payment_id, gateway_payload
        )

    async def cancel_payment(self, payment_id: str,
                             gateway_payload: Any = None) -> Payment:
        return await self._transition(
            "cancelled", payments.mark_cancelled, payment_id, gateway_payload
        )

    async def refund_payment(self, payment_id: str,
                             gateway_payload: Any = None) -> RefundResult:
        """Refund a paid payment.

        A code that was never redeemed is expired with the refund. A code
        that was already redeemed stays activated and is reported for
        operator review.
        """
        now = self.clock()
        review = False
        async with timeit("payments.refund"):
            async with self.unit() as db:
                changed, payment = await payments.mark_refunded(
                    db, payment_id, now, gateway_payload
                )
                row = await activation.get_code_for_payment(db, payment_id)
                if row is not None and row.status == activation.SOLD:
                    try:
                        row = await activation.expire(db, row.code, now)
                    except InvalidStateError:
                        # redeemed between our read and the expiry
                        row = await activation.get_code(db, row.code)
                review = row is not None and row.status == activation.ACTIVATED

        if changed:
            log.info("payment_refunded", payment_id=payment_id)
        if review:
            log.warning(
                "refund_requires_review",
                payment_id=payment_id,
                code=row.code,
            )
        return RefundResult(
            payment=payment,
            code=row.code if row is not None else None,
            code_status=row.status if row is not None else None,
            needs_review=review,
        )

    async def payment_status(self, payment_id: str) -> Payment:
        payment_id = (payment_id or "").strip()
        async with timeit("payments.status"):
            async with self.unit() as db:
                expired = await payments.expire_if_due(
                    db, payment_id, self.clock()
                )
                payment = await payments.get_payment(db, payment_id)
        if payment is None:
            raise NotFoundError("payment not found", payment_id=payment_id)
        if expired:
            log.info("payment_expired", payment_id=payment_id)
        return payment

    async def payment_history(self, payment_id: str):
        """A payment with every webhook delivery recorded for it."""
        payment_id = (payment_id or "").strip()
        async with self.unit() as db:
            payment = await payments.get_payment(db, payment_id)
            events = await webhook_events.events_for_payment(db, payment_id)
        if payment is None:
            raise NotFoundError("payment not found", payment_id=payment_id)
        return payment, events

    async def list_payments(self, status: str | None = None,
                            limit: int = 200) -> List[Payment]:
        if status and status not in payments.STATUSES:
            raise ValidationError(f"unknown payment status {status!r}")
        async with self.unit() as db:
            return await payments.list_payments(
                db, status, max(1, min(limit, 500))
            )

    # ----------------------------
    # Codes
    # ----------------------------
    def _check_quantity(self, quantity: int, maximum: int) -> None:
        if not isinstance(quantity, int) or not 1 <= quantity <= maximum:
            raise ValidationError(
                f"quantity must be between 1 and {maximum}"
            )

    async def issue_bulk(self, quantity: int, plan: str) -> List[str]:
        """Pre-provision `quantity` unsold codes. All or nothing."""
        s = self.settings.current
        self._check_quantity(quantity, s.bulk_max_quantity)
        p = s.plan(plan)
        async with timeit("codes.bulk"):
            async with self.unit() as db:
                codes = await self.codegen(s).generate_batch(db, quantity)
                await activation.insert_codes(
                    db, codes,
                    status=activation.AVAILABLE,
                    plan=p.key,
                    now=self.clock(),
                )
        log.info("codes_bulk_issued", quantity=quantity, plan=p.key)
        return codes

    async def issue_manual(self, quantity: int, plan: str,
                           sale: SaleDetails) -> List[str]:
        """Create codes directly in `sold` for an offline sale."""
        s = self.settings.current
        self._check_quantity(quantity, s.manual_max_quantity)
        p = s.plan(plan)
        if sale.customer_email and not is_valid_email(sale.customer_email):
            raise ValidationError("customer email is not a valid address")
        sale = replace(
            sale,
            amount_cents=(
                p.price_cents if sale.amount_cents is None else sale.amount_cents
            ),
            payment_method=sale.payment_method or "manual",
            payment_id=None,
        )
        async with timeit("codes.manual"):
            async with self.unit() as db:
                codes = await self.codegen(s).generate_batch(db, quantity)
                await activation.insert_codes(
                    db, codes,
                    status=activation.SOLD,
                    plan=p.key,
                    now=self.clock(),
                    sale=sale,
                )
        log.info("codes_manual_issued", quantity=quantity, plan=p.key)
        if sale.customer_email:
            for code in codes:
                self.notifications.enqueue(code_issued_message(
                    code=code,
                    plan_name=p.name,
                    amount_cents=sale.amount_cents,
                    to_email=sale.customer_email,
                    to_name=sale.customer_name,
                    settings=s,
                ))
        return codes

    async def sell_code(self, code: str, sale: SaleDetails) -> ActivationCode:
        code = activation.normalize_code(code)
        if sale.customer_email and not is_valid_email(sale.customer_email):
            raise ValidationError("customer email is not a valid address")
        async with timeit("codes.sell"):
            async with self.unit() as db:
                row = await activation.mark_sold(db, code, sale, self.clock())
        log.info("code_sold", code=code)
        return row

    async def expire_code(self, code: str) -> ActivationCode:
        code = activation.normalize_code(code)
        async with timeit("codes.expire"):
            async with self.unit() as db:
                row = await activation.expire(db, code, self.clock())
        log.info("code_expired", code=code)
        return row

    async def edit_code(self, code: str, edit: CodeEdit) -> ActivationCode:
        code = activation.normalize_code(code)
        if edit.customer_name is not None and not edit.customer_name.strip():
            raise ValidationError("customer name cannot be blank")
        if edit.customer_email and not is_valid_email(edit.customer_email):
            raise ValidationError("customer email is not a valid address")
        if edit.plan is not None:
            edit = replace(edit, plan=self.settings.current.plan(edit.plan).key)
        async with timeit("codes.edit"):
            async with self.unit() as db:
                row = await activation.update_details(db, code, edit)
        log.info("code_edited", code=code, repriced=edit.reprices)
        return row

    async def delete_code(self, code: str) -> None:
        code = activation.normalize_code(code)
        async with self.unit() as db:
            await activation.delete_code(db, code)
        log.info("code_deleted", code=code)

    async def lookup_code(self, code: str) -> ActivationCode:
        code = activation.normalize_code(code)
        async with self.unit() as db:
            row = await activation.get_code(db, code)
        if row is None or row.status != activation.SOLD:
            raise NotFoundError("invalid or already used activation code")
        return row

    async def list_codes(self, status: str | None = None,
                         limit: int = 200) -> List[ActivationCode]:
        if status and status not in activation.STATUSES:
            raise ValidationError(f"unknown code status {status!r}")
        async with self.unit() as db:
            return await activation.list_codes(
                db, status, max(1, min(limit, 1000))
            )

    # ----------------------------
    # Redemption & cards
    # ----------------------------
    async def _precheck(self, code: str) -> ActivationCode:
        # read-only, in its own transaction; the conditional write that
        # follows is what actually guards the transition
        async with self.unit() as db:
            return await activation.load_redeemable(db, code)

    async def redeem_code(self, code: str,
                          customer: CustomerInput) -> RedemptionResult:
        """Redeem a sold code and hand out a token for card creation."""
        code = activation.normalize_code(code)
        _check_customer(customer.name, customer.email, False)
        await self._precheck(code)
        now = self.clock()
        async with timeit("codes.redeem"):
            async with self.unit() as db:
                await activation.activate(db, code, customer, now)
                row = await activation.get_code(db, code)
        log.info("code_redeemed", code=code, plan=row.plan)
        return RedemptionResult(
            code=code,
            plan=row.plan,
            customer_name=row.customer_name,
            activated_at=row.activated_at,
            handoff_token=self.handoff.issue(code),
        )

    async def create_card(self, handoff_token: str,
                          data: CardInput) -> CardResult:
        """Create the card for a redeemed code. Repeats return the card
        created the first time."""
        s = self.settings.current
        data.validate()
        code = self.handoff.resolve(handoff_token, s.handoff_ttl_seconds)
        try:
            async with timeit("cards.create"):
                async with self.unit() as db:
                    existing = await cards.get_card_for_code(db, code)
                    if existing is not None:
                        return CardResult(existing, False)
                    row = await activation.get_code(db, code)
                    if row is None:
                        raise NotFoundError("activation code not found")
                    if row.status != activation.ACTIVATED:
                        raise InvalidStateError(
                            "cards can only be created for redeemed codes",
                            current=row.status, code=code,
                        )
                    card = await self._insert_card(db, row, data, s)
        except PersistenceError as e:
            if e.context.get("integrity"):
                async with self.unit() as db:
                    existing = await cards.get_card_for_code(db, code)
                if existing is not None:
                    return CardResult(existing, False)
            log.error("reconciliation_required", code=code, error=e.detail)
            raise
        except CapacityError:
            log.error("reconciliation_required", code=code, error="capacity")
            raise
        log.info("card_created", code=code, card_id=card.id, slug=card.slug)
        return CardResult(card, True)

    async def redeem_and_create(self, code: str, customer: CustomerInput,
                                data: CardInput) -> CardResult:
        """Redeem a code and create its card in one transaction.

        If the card cannot be created the redemption is rolled back and the
        code stays sold.
        """
        s = self.settings.current
        code = activation.normalize_code(code)
        _check_customer(customer.name, customer.email, False)
        data.validate()
        await self._precheck(code)
        now = self.clock()
        async with timeit("codes.redeem_and_create"):
            async with self.unit() as db:
                await activation.activate(db, code, customer, now)
                row = await activation.get_code(db, code)
                card = await self._insert_card(db, row, data, s)
        log.info("card_created", code=code, card_id=card.id, slug=card.slug)
        return CardResult(card, True)

    async def _insert_card(self, db, row: ActivationCode, data: CardInput,
                           s: Settings) -> Card:
        now = self.clock()
        card = await cards.insert_card(
            db,
            data=data,
            plan=row.plan,
            owner_name=row.customer_name or data.name,
            owner_email=row.customer_email or data.email,
            now=now,
            activation_code=row.code,
            payment_id=row.payment_id,
            max_attempts=s.code_max_attempts,
        )
        if row.payment_id:
            await payments.link_artifact(db, row.payment_id, card.id, now)
        return card

    # ----------------------------
    # Operator views
    # ----------------------------
    async def stats(self) -> Dict[str, Any]:
        async with self.unit() as db:
            codes = await activation.count_by_status(db)
            pays = await payments.count_by_status(db)
            revenue = await payments.paid_revenue_cents(db)
        redeemable = codes[activation.SOLD] + codes[activation.ACTIVATED]
        return {
            "codes": codes,
            "payments": pays,
            "revenue_cents": revenue,
            "activation_rate": (
                round(codes[activation.ACTIVATED] / redeemable, 4)
                if redeemable else 0.0
            ),
            "pending_activations": codes[activation.SOLD],
        }

    async def reconciliation(self, limit: int = 200) -> Dict[str, list]:
        s = self.settings.current
        cutoff = self.clock() - s.reconcile_grace_seconds
        async with self.unit() as db:
            orphaned = await activation.activated_without_card(db, cutoff, limit)
            flagged = await webhook_events.flagged_events(db, limit)
            refunded = await payments.refunded_with_activated_code(db, limit)
            stalled = await webhook_events.unfinished_events(db, cutoff, limit)
        if orphaned or flagged or refunded or stalled:
            log.warning(
                "reconciliation_pending",
                activated_without_card=len(orphaned),
                flagged_webhooks=len(flagged),
                refunded_after_activation=len(refunded),
                unprocessed_webhooks=len(stalled),
            )
        return {
            "activated_without_card": orphaned,
            "flagged_webhooks": flagged,
            "refunded_after_activation": refunded,
            "unprocessed_webhooks": stalled,
        }
