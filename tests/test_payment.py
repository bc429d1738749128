import pytest

from cardpass.errors import CapacityError, InvalidStateError, NotFoundError
from cardpass.model import payment as payments
from cardpass.model.payment import load_gateway_payload


async def seed(unit, checkout, pid="PAY-TEST0001", expires_at=None):
    async with unit() as db:
        await payments.insert_payment(
            db, payment_id=pid, details=checkout(), amount_cents=3990,
            currency="brl", now=100.0, expires_at=expires_at,
        )
    return pid


async def test_pending_to_paid_records_gateway_payload(unit, checkout):
    pid = await seed(unit, checkout)
    async with unit() as db:
        changed, p = await payments.mark_paid(
            db, pid, 200.0, {"transaction_id": "txn_1"}
        )
    assert changed
    assert p.status == payments.PAID
    assert p.paid_at == 200.0
    assert load_gateway_payload(p.gateway_response) == {
        "transaction_id": "txn_1"
    }


async def test_mark_paid_is_idempotent(unit, checkout):
    pid = await seed(unit, checkout)
    async with unit() as db:
        await payments.mark_paid(db, pid, 200.0)
    async with unit() as db:
        changed, p = await payments.mark_paid(db, pid, 300.0)
    assert not changed
    assert p.paid_at == 200.0


async def test_processing_then_paid(unit, checkout):
    pid = await seed(unit, checkout)
    async with unit() as db:
        assert (await payments.mark_processing(db, pid, 150.0))[0]
        changed, p = await payments.mark_paid(db, pid, 200.0)
    assert changed and p.status == payments.PAID


@pytest.mark.parametrize("terminal", ["failed", "cancelled"])
async def test_terminal_states_cannot_be_paid(unit, checkout, terminal):
    pid = await seed(unit, checkout)
    async with unit() as db:
        await payments.transition(db, pid, terminal, 150.0)
    with pytest.raises(InvalidStateError) as exc:
        async with unit() as db:
            await payments.mark_paid(db, pid, 200.0)
    assert exc.value.current == terminal


async def test_refund_only_from_paid(unit, checkout):
    pid = await seed(unit, checkout)
    with pytest.raises(InvalidStateError):
        async with unit() as db:
            await payments.mark_refunded(db, pid, 150.0)
    async with unit() as db:
        await payments.mark_paid(db, pid, 200.0)
        changed, p = await payments.mark_refunded(db, pid, 300.0)
    assert changed and p.status == payments.REFUNDED
    with pytest.raises(InvalidStateError):
        async with unit() as db:
            await payments.mark_paid(db, pid, 400.0)


async def test_unknown_payment(unit):
    with pytest.raises(NotFoundError):
        async with unit() as db:
            await payments.mark_paid(db, "PAY-NOPE0000", 1.0)


async def test_expire_if_due(unit, checkout):
    pid = await seed(unit, checkout, expires_at=500.0)
    async with unit() as db:
        assert not await payments.expire_if_due(db, pid, 499.0)
    async with unit() as db:
        assert await payments.expire_if_due(db, pid, 500.0)
        p = await payments.get_payment(db, pid)
    assert p.status == payments.CANCELLED
    assert p.cancelled_at == 500.0
    async with unit() as db:
        assert not await payments.expire_if_due(db, pid, 600.0)


async def test_links_are_set_once(unit, checkout):
    pid = await seed(unit, checkout)
    async with unit() as db:
        assert await payments.link_code(db, pid, "CD-AAAAAA", 1.0)
        assert not await payments.link_code(db, pid, "CD-BBBBBB", 2.0)
        assert await payments.link_artifact(db, pid, "card-1", 3.0)
        assert not await payments.link_artifact(db, pid, "card-2", 4.0)
        p = await payments.get_payment(db, pid)
    assert p.activation_code == "CD-AAAAAA"
    assert p.artifact_id == "card-1"


async def test_new_payment_id(unit, monkeypatch, checkout):
    async with unit() as db:
        pid = await payments.new_payment_id(db)
    assert pid.startswith("PAY-") and len(pid) == 12

    await seed(unit, checkout, pid="PAY-SAMESAME")
    monkeypatch.setattr(payments, "random_token", lambda n: "SAMESAME")
    with pytest.raises(CapacityError):
        async with unit() as db:
            await payments.new_payment_id(db, max_attempts=2)


async def test_revenue_counts_paid_only(unit, checkout):
    a = await seed(unit, checkout, pid="PAY-A0000001")
    await seed(unit, checkout, pid="PAY-B0000001")
    async with unit() as db:
        await payments.mark_paid(db, a, 1.0)
    async with unit() as db:
        assert await payments.paid_revenue_cents(db) == 3990
        counts = await payments.count_by_status(db)
    assert counts["paid"] == 1 and counts["pending"] == 1
