"""Wallet ledger: idempotent, guarded balance updates plus history entries."""

from marketplace.core.clock import Clock, utcnow
from marketplace.core.exceptions import InsufficientFundsError, NotFoundError, ValidationError
from marketplace.core.logging import get_logger
from marketplace.models.wallet_ledger import WalletLedgerEntry
from marketplace.storage.base import MarketStore, WalletResult

log = get_logger(__name__)

REASONS = ("deposit", "withdrawal", "order_payment", "order_refund")


class WalletService:
    def __init__(self, store: MarketStore, clock: Clock = utcnow) -> None:
        self.store = store
        self.clock = clock

    async def get_balance(self, user_id: str) -> int:
        user = await self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user.wallet.balance

    async def has_applied(self, user_id: str, idempotency_key: str) -> bool:
        user = await self.store.get_user(user_id)
        return bool(user) and idempotency_key in user.wallet.recent_keys

    async def credit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        idempotency_key: str,
        reference_type: str | None = None,
        reference_id: str | None = None,
    ) -> WalletResult:
        return await self._apply(user_id, amount, reason, idempotency_key, reference_type, reference_id)

    async def debit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        idempotency_key: str,
        reference_type: str | None = None,
        reference_id: str | None = None,
        withdrawn: bool = False,
    ) -> WalletResult:
        """Debit `amount`; the balance check and the write are one conditional update."""
        return await self._apply(
            user_id, -amount, reason, idempotency_key, reference_type, reference_id,
            withdrawn=amount if withdrawn else 0,
        )

    async def _apply(
        self,
        user_id: str,
        delta: int,
        reason: str,
        idempotency_key: str,
        reference_type: str | None,
        reference_id: str | None,
        withdrawn: int = 0,
    ) -> WalletResult:
        """
        Apply a signed delta once per idempotency key.
        A key that was already applied returns the "duplicate" outcome and changes nothing.
        """
        if reason not in REASONS:
            raise ValidationError(f"Invalid reason: {reason}")
        if delta == 0:
            raise ValidationError("Amount must be non-zero")
        result = await self.store.apply_wallet_delta(user_id, delta, idempotency_key, withdrawn=withdrawn)
        if result.outcome == "missing":
            raise NotFoundError("User not found")
        if result.outcome == "insufficient":
            raise InsufficientFundsError(balance=result.balance, required=-delta)
        if result.outcome == "duplicate":
            log.info("wallet_delta_duplicate", user_id=user_id, key=idempotency_key, reason=reason)
            return result

        await self.store.insert_ledger_entry(
            WalletLedgerEntry(
                user_id=user_id,
                amount=delta,
                balance_after=result.balance,
                reason=reason,
                reference_type=reference_type,
                reference_id=reference_id,
                idempotency_key=idempotency_key,
                created_at=self.clock(),
            )
        )
        log.info("wallet_delta_applied", user_id=user_id, amount=delta, balance=result.balance, reason=reason)
        return result

    async def list_ledger(self, user_id: str, limit: int = 50, offset: int = 0) -> list[WalletLedgerEntry]:
        return await self.store.list_ledger(user_id, limit=limit, offset=offset)
