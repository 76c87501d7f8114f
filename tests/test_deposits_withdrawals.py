"""Deposit and withdrawal flows, financial summary."""

import pytest

from marketplace.core.exceptions import ExpiredChallengeError, InsufficientFundsError, ValidationError


async def test_deposit_credits_wallet(services, store, mailer, clock, make_user):
    user = await make_user("Alice", balance=0)
    deposit = await services.deposits.request(user.id, 2500, "nagad", {"phone": "01700000000"})
    assert deposit.status == "pending_otp"
    await services.dispatcher.drain()
    done, balance = await services.deposits.verify(user.id, deposit.id, mailer.last_otp())
    assert done.status == "completed"
    assert done.completed_at is not None
    assert balance == 2500
    assert store.users[user.id].wallet.balance == 2500
    assert [e.reason for e in store.ledger] == ["deposit"]
    [audit] = [a for a in store.audit if a.event_type == "deposit_completed"]
    assert audit.created_at == clock.now


@pytest.mark.parametrize("amount", [99, 100_001, 0, -5])
async def test_deposit_bounds(services, make_user, amount):
    user = await make_user("Alice")
    with pytest.raises(ValidationError):
        await services.deposits.request(user.id, amount, "card")


async def test_deposit_bounds_are_inclusive(services, make_user):
    user = await make_user("Alice")
    await services.deposits.request(user.id, 100, "card")
    await services.deposits.request(user.id, 100_000, "card")


async def test_invalid_method(services, make_user):
    user = await make_user("Alice")
    with pytest.raises(ValidationError):
        await services.deposits.request(user.id, 500, "paypal")


async def test_deposit_verified_after_eleven_minutes_expires(services, store, clock, mailer, make_user):
    user = await make_user("Alice", balance=0)
    deposit = await services.deposits.request(user.id, 500, "card")
    await services.dispatcher.drain()
    clock.advance(minutes=11)
    with pytest.raises(ExpiredChallengeError):
        await services.deposits.verify(user.id, deposit.id, mailer.last_otp())
    assert store.intents["deposit"][deposit.id].status == "expired"
    assert store.users[user.id].wallet.balance == 0


async def test_withdrawal_debits_and_tracks_total(services, store, mailer, make_user):
    user = await make_user("Alice", balance=1000)
    withdrawal = await services.withdrawals.request(user.id, 300, "bank", {"account": "123"})
    await services.dispatcher.drain()
    done, balance = await services.withdrawals.verify(user.id, withdrawal.id, mailer.last_otp())
    assert done.status == "completed"
    assert balance == 700
    assert store.users[user.id].wallet.total_withdrawn == 300


async def test_withdrawal_bounds(services, make_user):
    user = await make_user("Alice", balance=1000)
    with pytest.raises(ValidationError):
        await services.withdrawals.request(user.id, 99, "bank")
    with pytest.raises(InsufficientFundsError) as exc:
        await services.withdrawals.request(user.id, 1001, "bank")
    assert exc.value.details == {"balance": 1000, "required": 1001}


async def test_withdrawal_rechecks_balance_at_verify(services, store, mailer, make_user):
    user = await make_user("Alice", balance=500)
    first = await services.withdrawals.request(user.id, 400, "bank")
    await services.dispatcher.drain()
    first_code = mailer.last_otp()
    second = await services.withdrawals.request(user.id, 400, "bank")
    await services.dispatcher.drain()
    second_code = mailer.last_otp()

    await services.withdrawals.verify(user.id, first.id, first_code)
    with pytest.raises(InsufficientFundsError):
        await services.withdrawals.verify(user.id, second.id, second_code)
    assert store.intents["withdrawal"][second.id].status == "failed"
    assert store.users[user.id].wallet.balance == 100


async def test_otp_email_ignores_notification_preference(services, mailer, make_user):
    user = await make_user("Quiet", balance=1000, email_notifications=False)
    await services.withdrawals.request(user.id, 100, "bank")
    await services.dispatcher.drain()
    assert mailer.sent[-1][0] == "quiet@example.com"
    assert mailer.sent[-1][1] == "withdrawal_otp"


async def test_financial_summary(services, store, buyer, seller, in_progress_order):
    await services.orders.update_status(seller.id, in_progress_order.id, "completed")
    seller_summary = await services.withdrawals.financial_summary(seller.id)
    assert seller_summary["total_earnings"] == 900
    assert seller_summary["total_spending"] == 0
    buyer_summary = await services.withdrawals.financial_summary(buyer.id)
    assert buyer_summary["total_spending"] == 1000
    assert buyer_summary["current_balance"] == 0
    assert buyer_summary["currency"] == "BDT"


async def test_histories_are_paginated(services, make_user):
    user = await make_user("Alice", balance=5000)
    for _ in range(3):
        await services.deposits.request(user.id, 100, "card")
    items, total = await services.deposits.history(user.id, limit=2)
    assert total == 3 and len(items) == 2
    items, total = await services.withdrawals.history(user.id)
    assert total == 0 and items == []
