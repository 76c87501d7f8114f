"""Withdraw from the wallet, confirmed by OTP; wallet summary."""

from typing import Any

from marketplace.core.audit import log_event
from marketplace.core.exceptions import AppError, InsufficientFundsError, NotFoundError, ValidationError
from marketplace.models.withdrawal import Withdrawal
from marketplace.services.dispatch import Dispatcher
from marketplace.services.otp import OtpGate
from marketplace.services.wallet import WalletService
from marketplace.storage.base import MarketStore

WITHDRAWAL_MIN = 100

# Buyer-side orders whose payment counts as spending
SPENDING_STATUSES = ["in_progress", "delivered", "completed"]


class WithdrawalService:
    model = Withdrawal

    def __init__(self, store: MarketStore, wallet: WalletService, gate: OtpGate, dispatcher: Dispatcher) -> None:
        self.store = store
        self.wallet = wallet
        self.gate = gate
        self.dispatcher = dispatcher

    async def request(self, user_id: str, amount: int, method: str, details: dict[str, Any] | None = None) -> Withdrawal:
        if amount < WITHDRAWAL_MIN:
            raise ValidationError(f"Minimum withdrawal amount is {WITHDRAWAL_MIN}", details={"min": WITHDRAWAL_MIN})
        balance = await self.wallet.get_balance(user_id)
        if balance < amount:
            raise InsufficientFundsError(balance=balance, required=amount)
        return await self.gate.issue(Withdrawal, user_id, amount, method, details, "withdrawal_otp")

    async def verify(self, user_id: str, withdrawal_id: str, otp: str) -> tuple[Withdrawal, int]:
        intent = await self.gate.claim(Withdrawal, user_id, withdrawal_id, otp)
        return await self.settle(intent)

    async def settle(self, intent: Withdrawal) -> tuple[Withdrawal, int]:
        """Debit a claimed withdrawal; the balance is checked again at the moment of the debit."""
        try:
            result = await self.wallet.debit(
                intent.user_id, intent.amount, "withdrawal", intent.ledger_key, "withdrawal", intent.id,
                withdrawn=True,
            )
        except AppError as e:
            await self.gate.release(Withdrawal, intent, e.message)
            raise
        withdrawal = await self.gate.complete(Withdrawal, intent)
        await log_event(
            self.store, intent.user_id, "withdrawal_completed", "withdrawal", intent.id, {"amount": intent.amount},
            created_at=self.gate.clock(),
        )
        self.dispatcher.notify(
            intent.user_id, "withdrawal_completed", {"withdrawalId": intent.id, "amount": intent.amount}
        )
        return withdrawal, result.balance

    async def cancel(self, user_id: str, withdrawal_id: str) -> Withdrawal:
        return await self.gate.cancel(Withdrawal, user_id, withdrawal_id)

    async def history(self, user_id: str, limit: int = 20, offset: int = 0) -> tuple[list[Withdrawal], int]:
        items = await self.store.list_intents(Withdrawal, user_id, limit=limit, offset=offset)
        total = await self.store.count_intents(Withdrawal, user_id)
        return items, total

    async def financial_summary(self, user_id: str) -> dict[str, Any]:
        user = await self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        earned = await self.store.list_orders(seller_id=user_id, statuses=["completed"], payment_status="completed")
        spent = await self.store.list_orders(
            buyer_id=user_id, statuses=SPENDING_STATUSES, payment_status="completed"
        )
        return {
            "current_balance": user.wallet.balance,
            "total_earnings": sum(o.seller_amount or 0 for o in earned),
            "total_spending": sum(o.total_amount or 0 for o in spent),
            "total_withdrawn": user.wallet.total_withdrawn,
            "currency": user.wallet.currency,
        }
