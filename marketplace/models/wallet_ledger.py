from datetime import datetime

from pydantic import Field

from marketplace.core.clock import utcnow
from marketplace.models.base import Record


class WalletLedgerEntry(Record):
    user_id: str
    amount: int  # positive = credit, negative = debit
    balance_after: int
    reason: str  # deposit, withdrawal, order_payment, order_refund
    reference_type: str | None = None
    reference_id: str | None = None
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "wallet_ledger"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("idempotency_key", 1)],
        ]
