"""Add money to the wallet, confirmed by OTP."""

from typing import Any

from marketplace.core.audit import log_event
from marketplace.core.exceptions import AppError, NotFoundError, ValidationError
from marketplace.models.deposit import Deposit
from marketplace.services.dispatch import Dispatcher
from marketplace.services.otp import OtpGate
from marketplace.services.wallet import WalletService
from marketplace.storage.base import MarketStore

DEPOSIT_MIN = 100
DEPOSIT_MAX = 100_000


class DepositService:
    model = Deposit

    def __init__(self, store: MarketStore, wallet: WalletService, gate: OtpGate, dispatcher: Dispatcher) -> None:
        self.store = store
        self.wallet = wallet
        self.gate = gate
        self.dispatcher = dispatcher

    async def request(self, user_id: str, amount: int, method: str, details: dict[str, Any] | None = None) -> Deposit:
        if amount < DEPOSIT_MIN or amount > DEPOSIT_MAX:
            raise ValidationError(
                f"Amount must be between {DEPOSIT_MIN} and {DEPOSIT_MAX}",
                details={"min": DEPOSIT_MIN, "max": DEPOSIT_MAX},
            )
        if await self.store.get_user(user_id) is None:
            raise NotFoundError("User not found")
        return await self.gate.issue(Deposit, user_id, amount, method, details, "deposit_otp")

    async def verify(self, user_id: str, deposit_id: str, otp: str) -> tuple[Deposit, int]:
        intent = await self.gate.claim(Deposit, user_id, deposit_id, otp)
        return await self.settle(intent)

    async def settle(self, intent: Deposit) -> tuple[Deposit, int]:
        """Apply the credit for a claimed deposit and resolve it. Safe to re-run."""
        try:
            result = await self.wallet.credit(
                intent.user_id, intent.amount, "deposit", intent.ledger_key, "deposit", intent.id
            )
        except AppError as e:
            await self.gate.release(Deposit, intent, e.message)
            raise
        deposit = await self.gate.complete(Deposit, intent)
        await log_event(
            self.store, intent.user_id, "deposit_completed", "deposit", intent.id, {"amount": intent.amount},
            created_at=self.gate.clock(),
        )
        self.dispatcher.notify(intent.user_id, "deposit_completed", {"depositId": intent.id, "amount": intent.amount})
        return deposit, result.balance

    async def cancel(self, user_id: str, deposit_id: str) -> Deposit:
        return await self.gate.cancel(Deposit, user_id, deposit_id)

    async def history(self, user_id: str, limit: int = 20, offset: int = 0) -> tuple[list[Deposit], int]:
        items = await self.store.list_intents(Deposit, user_id, limit=limit, offset=offset)
        total = await self.store.count_intents(Deposit, user_id)
        return items, total
