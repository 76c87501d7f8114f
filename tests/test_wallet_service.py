"""Wallet ledger: guarded, idempotent balance updates."""

import asyncio

import pytest

from marketplace.core.exceptions import InsufficientFundsError, NotFoundError, ValidationError


async def test_credit_and_debit_record_ledger(services, store, make_user):
    user = await make_user("Alice", balance=0)
    res = await services.wallet.credit(user.id, 500, "deposit", "deposit:1", "deposit", "1")
    assert res.outcome == "applied"
    assert res.balance == 500
    res = await services.wallet.debit(user.id, 200, "withdrawal", "withdrawal:1", withdrawn=True)
    assert res.balance == 300

    assert await services.wallet.get_balance(user.id) == 300
    assert store.users[user.id].wallet.total_withdrawn == 200
    entries = await services.wallet.list_ledger(user.id)
    assert sorted(e.amount for e in entries) == [-200, 500]
    assert {e.balance_after for e in entries} == {500, 300}


async def test_same_key_applies_once(services, store, make_user):
    user = await make_user("Alice", balance=0)
    await services.wallet.credit(user.id, 100, "deposit", "deposit:abc")
    again = await services.wallet.credit(user.id, 100, "deposit", "deposit:abc")
    assert again.outcome == "duplicate"
    assert await services.wallet.get_balance(user.id) == 100
    assert len(store.ledger) == 1
    assert await services.wallet.has_applied(user.id, "deposit:abc")
    assert not await services.wallet.has_applied(user.id, "deposit:other")


async def test_debit_never_goes_negative(services, make_user):
    user = await make_user("Alice", balance=150)
    with pytest.raises(InsufficientFundsError) as exc:
        await services.wallet.debit(user.id, 200, "withdrawal", "withdrawal:1")
    assert exc.value.details == {"balance": 150, "required": 200}
    assert await services.wallet.get_balance(user.id) == 150


async def test_concurrent_debits_only_one_fits(services, make_user):
    user = await make_user("Alice", balance=100)
    results = await asyncio.gather(
        services.wallet.debit(user.id, 100, "withdrawal", "withdrawal:a"),
        services.wallet.debit(user.id, 100, "withdrawal", "withdrawal:b"),
        return_exceptions=True,
    )
    assert sum(1 for r in results if isinstance(r, InsufficientFundsError)) == 1
    assert await services.wallet.get_balance(user.id) == 0


async def test_unknown_user_and_reason(services, make_user):
    with pytest.raises(NotFoundError):
        await services.wallet.credit("missing", 100, "deposit", "deposit:x")
    user = await make_user("Alice")
    with pytest.raises(ValidationError):
        await services.wallet.credit(user.id, 100, "gift", "gift:x")
