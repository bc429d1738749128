import asyncio
from dataclasses import replace

import pytest
from sqlalchemy import func, select

from cardpass.errors import (
    CapacityError, ConflictError, ExternalServiceError, InvalidStateError,
    NotFoundError, ValidationError,
)
from cardpass.model import activation, payment as payments
from cardpass.model import card as card_model
from cardpass.model.activation import CodeEdit, CustomerInput, SaleDetails
from cardpass.model.card import CardInput
from cardpass.model.db import ActivationCode, Card
from cardpass.notify import Notifier

PROFILE = CardInput(name="Ana Souza", email="ana@example.com",
                    job_title="Designer", color_theme="purple")
CUSTOMER = CustomerInput(name="Ana Souza", email="ana@example.com")


async def count(unit, model, *where):
    async with unit() as db:
        stmt = select(func.count()).select_from(model)
        for clause in where:
            stmt = stmt.where(clause)
        return (await db.execute(stmt)).scalar_one()


async def paid_code(coordinator, checkout):
    opened = await coordinator.open_payment(checkout())
    issued = await coordinator.confirm_payment(opened.payment.payment_id)
    return opened.payment.payment_id, issued.code


def racing_precheck(monkeypatch, coordinator, n):
    """Hold every request after its precheck until all n have passed it, so
    they all race on the conditional write."""
    barrier = asyncio.Barrier(n)
    original = coordinator._precheck

    async def precheck(code):
        row = await original(code)
        await barrier.wait()
        return row

    monkeypatch.setattr(coordinator, "_precheck", precheck)


# ----------------------------
# Checkout
# ----------------------------
async def test_pix_checkout_stays_pending(coordinator, services, notifier,
                                          checkout):
    result = await coordinator.open_payment(checkout("pix", "premium"))
    p = result.payment
    assert p.status == payments.PENDING
    assert p.amount_cents == 6990
    assert p.payment_id.startswith("PAY-")
    assert p.pix_code == f"PIX|pix@cardpass.example|69.90|{p.payment_id}"
    assert p.expires_at == pytest.approx(p.created_at + 1800)
    assert result.activation_code is None

    await services.notifications.drain()
    assert notifier.kinds() == ["pix_instructions"]


async def test_instant_checkout_issues_code(coordinator, services, notifier,
                                            unit, checkout):
    result = await coordinator.open_payment(checkout("credit_card"))
    p = result.payment
    assert p.status == payments.PAID
    assert result.activation_code == p.activation_code
    assert p.pix_code is None

    async with unit() as db:
        row = await activation.get_code(db, result.activation_code)
    assert row.status == activation.SOLD
    assert row.payment_id == p.payment_id
    assert row.amount_cents == 3990

    await services.notifications.drain()
    (message,) = notifier.sent
    assert message.kind == "code_issued"
    assert message.context["creation_url"] == (
        f"https://cards.example/activate/{result.activation_code}"
    )


@pytest.mark.parametrize("overrides", [
    {"plan": "gold"},
    {"payment_method": "boleto"},
    {"customer_name": "  "},
    {"customer_email": "not-an-email"},
])
async def test_checkout_validation(coordinator, unit, checkout, overrides):
    with pytest.raises(ValidationError):
        await coordinator.open_payment(replace(checkout(), **overrides))
    assert await count(unit, payments.Payment) == 0


# ----------------------------
# Payment confirmed -> one code
# ----------------------------
async def test_confirm_issues_exactly_one_code(coordinator, unit, checkout):
    pid, code = await paid_code(coordinator, checkout)
    assert await count(
        unit, ActivationCode, ActivationCode.payment_id == pid
    ) == 1
    async with unit() as db:
        row = await activation.get_code_for_payment(db, pid)
        p = await payments.get_payment(db, pid)
    assert row.code == code
    assert row.status == activation.SOLD
    assert p.status == payments.PAID
    assert p.activation_code == code


async def test_confirm_is_idempotent(coordinator, unit, services, notifier,
                                     checkout):
    pid, code = await paid_code(coordinator, checkout)
    again = await coordinator.confirm_payment(pid)
    assert again.code == code
    assert not again.created
    assert await count(unit, ActivationCode) == 1

    await services.notifications.drain()
    assert notifier.kinds().count("code_issued") == 1


async def test_concurrent_confirmations_issue_one_code(coordinator, unit,
                                                       checkout):
    opened = await coordinator.open_payment(checkout())
    pid = opened.payment.payment_id
    results = await asyncio.gather(
        *[coordinator.confirm_payment(pid) for _ in range(8)]
    )
    assert len({r.code for r in results}) == 1
    assert sum(r.created for r in results) == 1
    assert await count(unit, ActivationCode) == 1


async def test_confirm_unknown_or_failed_payment(coordinator, checkout):
    with pytest.raises(NotFoundError):
        await coordinator.confirm_payment("PAY-NOPE0000")
    opened = await coordinator.open_payment(checkout())
    await coordinator.fail_payment(opened.payment.payment_id)
    with pytest.raises(InvalidStateError):
        await coordinator.confirm_payment(opened.payment.payment_id)


async def test_notification_failure_does_not_undo_issuance(
        coordinator, services, unit, checkout):
    class Broken(Notifier):
        async def send(self, message):
            raise ExternalServiceError("relay down")

    services.notifications.notifier = Broken()
    pid, code = await paid_code(coordinator, checkout)
    await services.notifications.drain()
    async with unit() as db:
        assert (await payments.get_payment(db, pid)).activation_code == code


async def test_capacity_error_rolls_back_confirmation(coordinator, unit,
                                                      monkeypatch, checkout):
    opened = await coordinator.open_payment(checkout())
    pid = opened.payment.payment_id

    class Exhausted:
        async def generate(self, db):
            raise CapacityError("code space exhausted")

    monkeypatch.setattr(coordinator, "codegen", lambda s: Exhausted())
    with pytest.raises(CapacityError):
        await coordinator.confirm_payment(pid)
    async with unit() as db:
        p = await payments.get_payment(db, pid)
    assert p.status == payments.PENDING
    assert p.activation_code is None


# ----------------------------
# Lazy expiry
# ----------------------------
async def test_status_check_expires_overdue_pix(coordinator, monkeypatch,
                                                checkout):
    opened = await coordinator.open_payment(checkout())
    pid = opened.payment.payment_id
    assert (await coordinator.payment_status(pid)).status == payments.PENDING

    later = opened.payment.expires_at + 1
    monkeypatch.setattr(coordinator, "clock", lambda: later)
    assert (await coordinator.payment_status(pid)).status == payments.CANCELLED
    with pytest.raises(InvalidStateError):
        await coordinator.confirm_payment(pid)


async def test_status_of_unknown_payment(coordinator):
    with pytest.raises(NotFoundError):
        await coordinator.payment_status("PAY-NOPE0000")


# ----------------------------
# Refunds
# ----------------------------
async def test_refund_expires_unredeemed_code(coordinator, checkout):
    pid, code = await paid_code(coordinator, checkout)
    result = await coordinator.refund_payment(pid)
    assert result.payment.status == payments.REFUNDED
    assert result.code == code
    assert result.code_status == activation.EXPIRED
    assert not result.needs_review


async def test_refund_after_redemption_needs_review(coordinator, checkout):
    pid, code = await paid_code(coordinator, checkout)
    await coordinator.redeem_and_create(code, CUSTOMER, PROFILE)
    result = await coordinator.refund_payment(pid)
    assert result.code_status == activation.ACTIVATED
    assert result.needs_review

    report = await coordinator.reconciliation()
    assert [p.payment_id for p in report["refunded_after_activation"]] == [pid]


async def test_refund_requires_paid(coordinator, checkout):
    opened = await coordinator.open_payment(checkout())
    with pytest.raises(InvalidStateError):
        await coordinator.refund_payment(opened.payment.payment_id)


# ----------------------------
# Redemption
# ----------------------------
async def test_bulk_issue_thousand_codes(coordinator, unit):
    codes = await coordinator.issue_bulk(1000, "basic")
    assert len(codes) == len(set(codes)) == 1000
    async with unit() as db:
        counts = await activation.count_by_status(db)
    assert counts[activation.AVAILABLE] == 1000


@pytest.mark.parametrize("quantity", [0, 1001])
async def test_bulk_quantity_limits(coordinator, quantity):
    with pytest.raises(ValidationError):
        await coordinator.issue_bulk(quantity, "basic")


async def test_redeem_unsold_code_is_invalid_state(coordinator, unit):
    (code,) = await coordinator.issue_bulk(1, "basic")
    with pytest.raises(InvalidStateError):
        await coordinator.redeem_and_create(code, CUSTOMER, PROFILE)
    assert await count(unit, Card) == 0


async def test_redeem_twice_is_invalid_state_not_conflict(coordinator,
                                                          checkout):
    _, code = await paid_code(coordinator, checkout)
    await coordinator.redeem_and_create(code, CUSTOMER, PROFILE)
    with pytest.raises(InvalidStateError) as exc:
        await coordinator.redeem_and_create(code, CUSTOMER, PROFILE)
    assert exc.value.message == "this code was already used"


async def test_concurrent_redemptions_one_winner(coordinator, unit,
                                                 monkeypatch, checkout):
    _, code = await paid_code(coordinator, checkout)
    n = 6
    racing_precheck(monkeypatch, coordinator, n)
    outcomes = await asyncio.gather(
        *[coordinator.redeem_and_create(code, CUSTOMER, PROFILE)
          for _ in range(n)],
        return_exceptions=True,
    )
    wins = [o for o in outcomes if not isinstance(o, Exception)]
    conflicts = [o for o in outcomes if isinstance(o, ConflictError)]
    assert len(wins) == 1
    assert len(conflicts) == n - 1
    assert {c.message for c in conflicts} == {"already redeemed"}
    assert await count(unit, Card) == 1
    async with unit() as db:
        row = await activation.get_code(db, code)
    assert row.status == activation.ACTIVATED


async def test_concurrent_two_step_redemptions(coordinator, monkeypatch,
                                               checkout):
    _, code = await paid_code(coordinator, checkout)
    racing_precheck(monkeypatch, coordinator, 2)
    a, b = await asyncio.gather(
        coordinator.redeem_code(code, CUSTOMER),
        coordinator.redeem_code(code, CustomerInput(name="Rival")),
        return_exceptions=True,
    )
    assert sorted(type(o).__name__ for o in (a, b)) == [
        "ConflictError", "RedemptionResult"
    ]


async def test_one_shot_rolls_back_redemption_when_card_fails(
        coordinator, unit, monkeypatch, checkout):
    _, code = await paid_code(coordinator, checkout)

    async def broken(*args, **kwargs):
        raise CapacityError("could not generate a unique card slug")

    monkeypatch.setattr(card_model, "insert_card", broken)
    with pytest.raises(CapacityError):
        await coordinator.redeem_and_create(code, CUSTOMER, PROFILE)
    async with unit() as db:
        row = await activation.get_code(db, code)
    assert row.status == activation.SOLD


async def test_lowercase_prefix_codes_are_redeemable(coordinator, store,
                                                     checkout):
    store._current = replace(store.current, code_prefix="cd-")
    _, code = await paid_code(coordinator, checkout)
    assert code.startswith("CD-")
    assert (await coordinator.lookup_code(code.lower())).code == code
    result = await coordinator.redeem_code(code, CUSTOMER)
    assert result.code == code


async def test_redeem_requires_customer_name(coordinator, checkout):
    _, code = await paid_code(coordinator, checkout)
    with pytest.raises(ValidationError):
        await coordinator.redeem_code(code, CustomerInput(name=""))


# ----------------------------
# Two-step card creation
# ----------------------------
async def test_two_step_creates_card_once(coordinator, unit, checkout):
    pid, code = await paid_code(coordinator, checkout)
    redeemed = await coordinator.redeem_code(code.lower(), CUSTOMER)
    assert redeemed.code == code
    assert redeemed.handoff_token

    first = await coordinator.create_card(redeemed.handoff_token, PROFILE)
    again = await coordinator.create_card(redeemed.handoff_token, PROFILE)
    assert first.created and not again.created
    assert again.card.id == first.card.id
    assert first.card.activation_code == code
    assert len(first.card.code) == 6 and len(first.card.slug) == 10

    async with unit() as db:
        p = await payments.get_payment(db, pid)
    assert p.artifact_id == first.card.id


async def test_card_requires_valid_token_and_contact(coordinator, checkout):
    _, code = await paid_code(coordinator, checkout)
    redeemed = await coordinator.redeem_code(code, CUSTOMER)
    with pytest.raises(ValidationError):
        await coordinator.create_card("forged-token", PROFILE)
    with pytest.raises(ValidationError):
        await coordinator.create_card(
            redeemed.handoff_token, CardInput(name="No Contact")
        )
    with pytest.raises(ValidationError):
        await coordinator.create_card(
            redeemed.handoff_token,
            CardInput(name="Ana", email="ana@example.com", color_theme="red"),
        )


async def test_reconciliation_lists_activated_codes_without_card(
        coordinator, monkeypatch, checkout):
    _, code = await paid_code(coordinator, checkout)
    redeemed = await coordinator.redeem_code(code, CUSTOMER)

    assert (await coordinator.reconciliation())["activated_without_card"] == []

    later = redeemed.activated_at + 901
    monkeypatch.setattr(coordinator, "clock", lambda: later)
    report = await coordinator.reconciliation()
    assert [c.code for c in report["activated_without_card"]] == [code]

    await coordinator.create_card(redeemed.handoff_token, PROFILE)
    assert (await coordinator.reconciliation())["activated_without_card"] == []


# ----------------------------
# Admin code handling
# ----------------------------
async def test_manual_issue_creates_sold_codes(coordinator, unit, services,
                                               notifier):
    codes = await coordinator.issue_manual(
        2, "business",
        SaleDetails(customer_name="Caio", customer_email="caio@example.com"),
    )
    async with unit() as db:
        rows = [await activation.get_code(db, c) for c in codes]
    assert {r.status for r in rows} == {activation.SOLD}
    assert {r.payment_method for r in rows} == {"manual"}
    assert {r.amount_cents for r in rows} == {19990}

    await services.notifications.drain()
    assert notifier.kinds() == ["code_issued", "code_issued"]


async def test_sell_lookup_and_expire(coordinator):
    (code,) = await coordinator.issue_bulk(1, "premium")
    with pytest.raises(NotFoundError):
        await coordinator.lookup_code(code)

    sold = await coordinator.sell_code(
        code, SaleDetails(customer_name="Dora", amount_cents=6990)
    )
    assert sold.status == activation.SOLD
    found = await coordinator.lookup_code(f"  {code.lower()} ")
    assert found.customer_name == "Dora"

    with pytest.raises(InvalidStateError):
        await coordinator.sell_code(code, SaleDetails())

    expired = await coordinator.expire_code(code)
    assert expired.status == activation.EXPIRED
    with pytest.raises(InvalidStateError):
        await coordinator.redeem_code(code, CUSTOMER)


async def test_stats(coordinator, checkout):
    await coordinator.issue_bulk(3, "basic")
    _, code = await paid_code(coordinator, checkout)
    await paid_code(coordinator, checkout)
    await coordinator.redeem_and_create(code, CUSTOMER, PROFILE)

    stats = await coordinator.stats()
    assert stats["codes"]["available"] == 3
    assert stats["codes"]["sold"] == 1
    assert stats["codes"]["activated"] == 1
    assert stats["payments"]["paid"] == 2
    assert stats["revenue_cents"] == 2 * 3990
    assert stats["activation_rate"] == 0.5
    assert stats["pending_activations"] == 1


async def test_edit_code_never_moves_status(coordinator, unit, checkout):
    _, code = await paid_code(coordinator, checkout)
    await coordinator.redeem_and_create(code, CUSTOMER, PROFILE)

    with pytest.raises(InvalidStateError):
        await coordinator.edit_code(code, CodeEdit(amount_cents=100))
    row = await coordinator.edit_code(code, CodeEdit(notes="called back"))
    assert row.status == activation.ACTIVATED
    assert row.notes == "called back"
    assert row.amount_cents == 3990

    with pytest.raises(ValidationError):
        await coordinator.edit_code(code, CodeEdit(customer_name="  "))
    with pytest.raises(ValidationError):
        await coordinator.edit_code(code, CodeEdit(plan="gold"))
    with pytest.raises(NotFoundError):
        await coordinator.edit_code("CD-NOPE00", CodeEdit(notes="x"))


async def test_delete_only_available_codes(coordinator, unit):
    available, expired = await coordinator.issue_bulk(2, "basic")
    await coordinator.expire_code(expired)

    await coordinator.delete_code(available.lower())
    assert await count(unit, ActivationCode,
                       ActivationCode.code == available) == 0
    with pytest.raises(InvalidStateError):
        await coordinator.delete_code(expired)
    with pytest.raises(NotFoundError):
        await coordinator.delete_code(available)
