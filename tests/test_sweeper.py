"""Expiry sweep: deadline cancellation, idempotence, reconciliation."""

import asyncio
from datetime import timedelta

from marketplace.core.exceptions import InsufficientFundsError
from marketplace.models.deposit import Deposit
from marketplace.models.payment import Payment
from marketplace.models.withdrawal import Withdrawal
from marketplace.worker.sweeper import ExpirySweeper


def _sweeper(services) -> ExpirySweeper:
    return ExpirySweeper(services, interval_seconds=3600, batch_size=50, claim_timeout_minutes=5)


async def test_expired_order_is_cancelled_once(services, store, notifier, clock, buyer, seller, activated_order):
    clock.advance(days=8)
    sweeper = _sweeper(services)
    report = await sweeper.run_once()
    assert report.expired_orders == 1

    order = store.orders[activated_order.id]
    assert order.status == "cancelled"
    assert order.cancellation.cancelled_by == "system"
    assert store.users[buyer.id].stats.cancelled_orders == 1
    assert store.users[seller.id].stats.cancelled_orders == 1

    again = await sweeper.run_once()
    assert again.expired_orders == 0
    assert store.users[buyer.id].stats.cancelled_orders == 1
    assert store.users[seller.id].stats.cancelled_orders == 1

    await services.dispatcher.drain()
    assert "order_expired" in notifier.names_for(buyer.id)
    assert "order_expired" in notifier.names_for(seller.id)


async def test_orders_within_deadline_are_left_alone(services, store, clock, activated_order):
    clock.advance(days=6)
    report = await _sweeper(services).run_once()
    assert report.expired_orders == 0
    assert store.orders[activated_order.id].status == "activated"


async def test_locked_order_is_skipped(services, store, clock, activated_order):
    await services.orders.lock_for_payment(activated_order.id, "payment-in-flight")
    clock.advance(days=8)
    report = await _sweeper(services).run_once()
    assert report.expired_orders == 0
    assert store.orders[activated_order.id].status == "activated"


async def test_sweep_and_payment_race_has_one_winner(services, store, mailer, clock, buyer, activated_order):
    payment = await services.payments.request_payment(buyer.id, activated_order.id, "card")
    await services.dispatcher.drain()
    code = mailer.last_otp()
    clock.advance(days=7, seconds=-30)
    # Deadline passes while the payment is being verified
    store.orders[activated_order.id].payment_deadline = clock.now + timedelta(seconds=1)
    store.intents["payment"][payment.id].otp_expiry = clock.now + timedelta(minutes=5)
    clock.advance(seconds=2)
    await asyncio.gather(
        services.payments.complete_payment(buyer.id, payment.id, code),
        _sweeper(services).run_once(),
        return_exceptions=True,
    )
    order = store.orders[activated_order.id]
    assert order.status == "cancelled"
    assert store.users[buyer.id].wallet.balance == 1000


async def test_payment_locked_before_deadline_beats_later_sweep(services, store, mailer, clock, buyer, activated_order):
    clock.advance(days=7, seconds=-30)
    payment = await services.payments.request_payment(buyer.id, activated_order.id, "card")
    await services.dispatcher.drain()
    claimed = await services.gate.claim(Payment, buyer.id, payment.id, mailer.last_otp())
    await services.orders.lock_for_payment(activated_order.id, claimed.id)

    # Deadline passes between the lock and the debit
    clock.advance(minutes=1)
    report = await _sweeper(services).run_once()
    assert report.expired_orders == 0
    assert store.orders[activated_order.id].status == "activated"

    _, order = await services.payments.settle(claimed)
    assert order.status == "in_progress"
    assert store.users[buyer.id].wallet.balance == 0
    assert [e.reason for e in store.ledger if e.user_id == buyer.id] == ["order_payment"]
    assert (await _sweeper(services).run_once()).expired_orders == 0


async def test_started_but_unpaid_order_still_expires(services, store, clock, buyer, seller, activated_order):
    await services.orders.update_status(seller.id, activated_order.id, "in_progress")
    clock.advance(days=8)
    report = await _sweeper(services).run_once()
    assert report.expired_orders == 1
    order = store.orders[activated_order.id]
    assert order.status == "cancelled"
    assert order.payment_status == "pending"
    assert store.users[buyer.id].wallet.balance == 1000


async def test_paid_order_is_never_expired(services, store, clock, in_progress_order):
    clock.advance(days=30)
    assert (await _sweeper(services).run_once()).expired_orders == 0
    assert store.orders[in_progress_order.id].status == "in_progress"


async def test_failure_on_one_order_does_not_stop_the_pass(services, store, clock, buyer, seller, gig, make_user, monkeypatch):
    other_buyer = await make_user("Other", balance=0, role="buyer")
    first = await services.orders.create_from_gig(buyer.id, gig.id)
    await services.orders.accept_order(seller.id, first.id)
    second = await services.orders.create_from_gig(other_buyer.id, gig.id)
    await services.orders.accept_order(seller.id, second.id)
    clock.advance(days=8)

    original = services.orders.expire

    async def flaky(order_id):
        if order_id == first.id:
            raise RuntimeError("store hiccup")
        return await original(order_id)

    monkeypatch.setattr(services.orders, "expire", flaky)
    report = await _sweeper(services).run_once()
    assert report.failed_orders == 1
    assert report.expired_orders == 1
    assert store.orders[second.id].status == "cancelled"
    assert store.orders[first.id].status == "activated"


async def test_lapsed_intents_are_expired(services, store, clock, make_user):
    user = await make_user("Alice")
    deposit = await services.deposits.request(user.id, 500, "card")
    await services.dispatcher.drain()
    clock.advance(minutes=11)
    report = await _sweeper(services).run_once()
    assert report.expired_intents == 1
    assert store.intents["deposit"][deposit.id].status == "expired"


async def test_stale_claim_is_finished(services, store, clock, mailer, make_user, monkeypatch):
    user = await make_user("Alice", balance=0)
    deposit = await services.deposits.request(user.id, 500, "card")
    await services.dispatcher.drain()

    async def crash(*args, **kwargs):
        raise RuntimeError("process died")

    # Claim wins, then the process dies before the credit
    monkeypatch.setattr(services.deposits, "settle", crash)
    try:
        await services.deposits.verify(user.id, deposit.id, mailer.last_otp())
    except RuntimeError:
        pass
    monkeypatch.undo()
    assert store.intents["deposit"][deposit.id].claim_id is not None
    assert store.intents["deposit"][deposit.id].status == "pending_otp"

    clock.advance(minutes=6)
    report = await _sweeper(services).run_once()
    assert report.reconciled_claims == 1
    assert store.intents["deposit"][deposit.id].status == "completed"
    assert store.users[user.id].wallet.balance == 500

    # Nothing left to do, and the credit is not repeated
    again = await _sweeper(services).run_once()
    assert again.reconciled_claims == 0
    assert store.users[user.id].wallet.balance == 500


async def test_stale_claim_after_credit_is_not_applied_twice(services, store, clock, mailer, make_user):
    user = await make_user("Alice", balance=0)
    deposit = await services.deposits.request(user.id, 500, "card")
    await services.dispatcher.drain()
    claimed = await services.gate.claim(Deposit, user.id, deposit.id, mailer.last_otp())
    # Credit applied, crash before the intent was resolved
    await services.wallet.credit(user.id, 500, "deposit", claimed.ledger_key, "deposit", claimed.id)
    clock.advance(minutes=6)
    report = await _sweeper(services).run_once()
    assert report.reconciled_claims == 1
    assert store.users[user.id].wallet.balance == 500
    assert store.intents["deposit"][deposit.id].status == "completed"


async def test_stale_withdrawal_claim_without_funds_is_released(services, store, clock, mailer, make_user):
    user = await make_user("Alice", balance=500)
    withdrawal = await services.withdrawals.request(user.id, 500, "bank")
    await services.dispatcher.drain()
    claimed = await services.gate.claim(Withdrawal, user.id, withdrawal.id, mailer.last_otp())
    await services.wallet.debit(user.id, 200, "withdrawal", "withdrawal:other")
    clock.advance(minutes=6)
    report = await _sweeper(services).run_once()
    assert report.released_claims == 1
    intent = store.intents["withdrawal"][claimed.id]
    assert intent.status == "failed"
    assert intent.failure_reason == InsufficientFundsError(300, 500).message
    assert store.users[user.id].wallet.balance == 300


async def test_unsettled_refund_is_credited(services, store, buyer, in_progress_order, monkeypatch):
    async def down(*args, **kwargs):
        raise RuntimeError("wallet unavailable")

    monkeypatch.setattr(services.orders, "settle_refund", down)
    try:
        await services.orders.cancel_order(buyer.id, in_progress_order.id)
    except RuntimeError:
        pass
    monkeypatch.undo()
    order = store.orders[in_progress_order.id]
    assert order.payment_status == "refunded" and not order.refund_settled
    assert store.users[buyer.id].wallet.balance == 0

    report = await _sweeper(services).run_once()
    assert report.settled_refunds == 1
    assert store.users[buyer.id].wallet.balance == 1000
    assert (await _sweeper(services).run_once()).settled_refunds == 0


async def test_start_and_stop(services):
    sweeper = _sweeper(services)
    sweeper.start()
    await asyncio.sleep(0)
    await sweeper.stop()
    assert sweeper._task is None
