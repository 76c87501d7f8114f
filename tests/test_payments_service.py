"""Order payment: request, OTP verify, commission split, races."""

import asyncio

import pytest

from marketplace.core.exceptions import (
    AuthorizationError,
    InsufficientFundsError,
    NotFoundError,
    StateConflictError,
)
from marketplace.services.payments import commission_split


@pytest.mark.parametrize(
    "price,commission,seller_amount",
    [(1000, 100, 900), (1, 0, 1), (5, 1, 4), (15, 2, 13), (14, 1, 13), (99999, 10000, 89999)],
)
def test_commission_split(price, commission, seller_amount):
    assert commission_split(price) == (commission, seller_amount)
    assert sum(commission_split(price)) == price


async def test_payment_moves_order_to_in_progress(services, store, mailer, clock, buyer, seller, activated_order, pay):
    payment, order = await pay(buyer.id, activated_order.id)
    assert payment.status == "completed"
    assert order.status == "in_progress"
    assert order.payment_status == "completed"
    assert (order.total_amount, order.commission, order.seller_amount) == (1000, 100, 900)
    assert order.payment_id == payment.id
    assert order.payment_lock is None
    assert (order.due_date - order.start_date).days == order.delivery_days
    assert store.users[buyer.id].wallet.balance == 0
    await services.dispatcher.drain()
    assert any(t == "payment_completed" for _, t, _ in mailer.sent)


async def test_insufficient_balance_is_rejected_at_request(services, store, make_user, seller, gig):
    poor = await make_user("Poor", balance=500, role="buyer")
    order = await services.orders.create_from_gig(poor.id, gig.id)
    await services.orders.accept_order(seller.id, order.id)
    with pytest.raises(InsufficientFundsError) as exc:
        await services.payments.request_payment(poor.id, order.id, "card")
    assert exc.value.details == {"balance": 500, "required": 1000}
    assert store.users[poor.id].wallet.balance == 500
    assert store.intents.get("payment", {}) == {}


async def test_balance_is_rechecked_at_verify(services, store, mailer, buyer, activated_order):
    payment = await services.payments.request_payment(buyer.id, activated_order.id, "card")
    await services.dispatcher.drain()
    code = mailer.last_otp()
    # Balance drops between request and verify
    await services.wallet.debit(buyer.id, 600, "withdrawal", "withdrawal:elsewhere")
    with pytest.raises(InsufficientFundsError):
        await services.payments.complete_payment(buyer.id, payment.id, code)
    assert store.intents["payment"][payment.id].status == "failed"
    order = store.orders[activated_order.id]
    assert order.status == "activated"
    assert order.payment_lock is None
    assert store.users[buyer.id].wallet.balance == 400


async def test_request_guards(services, buyer, seller, gig, activated_order, make_user):
    stranger = await make_user("Stranger", balance=5000)
    with pytest.raises(AuthorizationError):
        await services.payments.request_payment(stranger.id, activated_order.id, "card")
    pending = await services.orders.create_from_gig(stranger.id, gig.id)
    with pytest.raises(StateConflictError):
        await services.payments.request_payment(stranger.id, pending.id, "card")
    with pytest.raises(NotFoundError):
        await services.payments.request_payment(buyer.id, "missing", "card")


async def test_deadline_passed_blocks_payment(services, store, mailer, clock, buyer, activated_order):
    payment = await services.payments.request_payment(buyer.id, activated_order.id, "card")
    await services.dispatcher.drain()
    clock.advance(days=7, seconds=1)
    with pytest.raises(StateConflictError):
        await services.payments.request_payment(buyer.id, activated_order.id, "card")
    # Keep the code alive so only the order deadline is in play
    store.intents["payment"][payment.id].otp_expiry = clock.now.replace(year=2031)
    with pytest.raises(StateConflictError):
        await services.payments.complete_payment(buyer.id, payment.id, mailer.last_otp())
    assert store.users[buyer.id].wallet.balance == 1000


async def test_concurrent_payments_debit_once(services, store, mailer, buyer, activated_order):
    first = await services.payments.request_payment(buyer.id, activated_order.id, "card")
    await services.dispatcher.drain()
    first_code = mailer.last_otp()
    second = await services.payments.request_payment(buyer.id, activated_order.id, "bkash")
    await services.dispatcher.drain()
    second_code = mailer.last_otp()

    results = await asyncio.gather(
        services.payments.complete_payment(buyer.id, first.id, first_code),
        services.payments.complete_payment(buyer.id, second.id, second_code),
        return_exceptions=True,
    )
    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1 and isinstance(losers[0], StateConflictError)
    assert store.users[buyer.id].wallet.balance == 0
    assert [e.reason for e in store.ledger] == ["order_payment"]
    statuses = sorted(p.status for p in store.intents["payment"].values())
    assert statuses == ["completed", "failed"]


async def test_replayed_payment_verify(services, mailer, buyer, activated_order):
    payment = await services.payments.request_payment(buyer.id, activated_order.id, "card")
    await services.dispatcher.drain()
    code = mailer.last_otp()
    await services.payments.complete_payment(buyer.id, payment.id, code)
    with pytest.raises(NotFoundError):
        await services.payments.complete_payment(buyer.id, payment.id, code)


async def test_paid_order_cannot_be_paid_again(services, buyer, in_progress_order):
    with pytest.raises(StateConflictError):
        await services.payments.request_payment(buyer.id, in_progress_order.id, "card")


async def test_history_hides_otp_material(services, buyer, activated_order, pay):
    await pay(buyer.id, activated_order.id)
    items, total = await services.payments.history(buyer.id)
    assert total == 1
    public = items[0].public()
    assert public["status"] == "completed"
    assert not {"otp_hash", "otp_salt", "claim_id"} & public.keys()
