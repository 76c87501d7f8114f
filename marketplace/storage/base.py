"""Persistence interface. Every method is one atomic step against the store.

Mutations that guard on current state (order version, intent status, wallet balance)
evaluate the guard and apply the write as a single conditional update, so a stale
reader can never overwrite a newer state.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, TypeVar

from marketplace.core.config import get_settings
from marketplace.models.audit_log import AuditLog
from marketplace.models.catalog import Conversation, Gig, Job, Proposal
from marketplace.models.intent import FinancialIntent
from marketplace.models.order import Order
from marketplace.models.user import User
from marketplace.models.wallet_ledger import WalletLedgerEntry

IntentT = TypeVar("IntentT", bound=FinancialIntent)

# How many applied idempotency keys each wallet remembers
WALLET_KEY_WINDOW = 500


@dataclass(frozen=True)
class WalletResult:
    outcome: Literal["applied", "duplicate", "insufficient", "missing"]
    balance: int = 0


class MarketStore(ABC):
    async def init(self) -> None:
        """Prepare collections and indexes."""

    async def close(self) -> None:
        """Release connections."""

    # Users and wallets

    @abstractmethod
    async def get_user(self, user_id: str) -> User | None:
        ...

    @abstractmethod
    async def insert_user(self, user: User) -> User:
        ...

    @abstractmethod
    async def apply_wallet_delta(self, user_id: str, delta: int, key: str, withdrawn: int = 0) -> WalletResult:
        """Add `delta` to the balance once per `key`; debits require balance >= -delta."""
        ...

    @abstractmethod
    async def increment_stats(self, user_id: str, **deltas: int) -> None:
        ...

    # Orders

    @abstractmethod
    async def insert_order(self, order: Order) -> bool:
        """Insert; False when another order already holds the same `inflight_key`."""
        ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Order | None:
        ...

    @abstractmethod
    async def replace_order(self, order: Order, expected_version: int) -> bool:
        """Write `order` only if the stored version still equals `expected_version`."""
        ...

    @abstractmethod
    async def list_orders(
        self,
        *,
        buyer_id: str | None = None,
        seller_id: str | None = None,
        statuses: list[str] | None = None,
        payment_status: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Order]:
        ...

    @abstractmethod
    async def count_orders(
        self,
        *,
        buyer_id: str | None = None,
        seller_id: str | None = None,
        statuses: list[str] | None = None,
    ) -> int:
        ...

    @abstractmethod
    async def find_expired_unpaid(self, now: datetime, limit: int) -> list[Order]:
        """Unpaid, unlocked orders (activated or started early) whose payment deadline is before `now`."""
        ...

    @abstractmethod
    async def find_unsettled_refunds(self, limit: int) -> list[Order]:
        ...

    # OTP-gated intents

    @abstractmethod
    async def insert_intent(self, intent: FinancialIntent) -> None:
        ...

    @abstractmethod
    async def get_intent(self, model: type[IntentT], intent_id: str) -> IntentT | None:
        ...

    @abstractmethod
    async def update_intent(
        self,
        model: type[IntentT],
        intent_id: str,
        where: dict[str, Any],
        changes: dict[str, Any],
    ) -> IntentT | None:
        """Apply `changes` if every field in `where` still has the given value; return the new state."""
        ...

    @abstractmethod
    async def list_intents(
        self,
        model: type[IntentT],
        user_id: str,
        statuses: list[str] | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[IntentT]:
        ...

    @abstractmethod
    async def count_intents(self, model: type[IntentT], user_id: str, statuses: list[str] | None = None) -> int:
        ...

    @abstractmethod
    async def find_stale_claims(self, model: type[IntentT], claimed_before: datetime, limit: int) -> list[IntentT]:
        ...

    @abstractmethod
    async def find_lapsed_intents(self, model: type[IntentT], now: datetime, limit: int) -> list[IntentT]:
        """Unclaimed pending_otp intents past their OTP expiry."""
        ...

    # Ledger history and audit

    @abstractmethod
    async def insert_ledger_entry(self, entry: WalletLedgerEntry) -> bool:
        """False if an entry with the same idempotency key exists."""
        ...

    @abstractmethod
    async def list_ledger(self, user_id: str, limit: int = 50, offset: int = 0) -> list[WalletLedgerEntry]:
        ...

    @abstractmethod
    async def insert_audit(self, event: AuditLog) -> None:
        ...

    # Catalog collaborators

    @abstractmethod
    async def get_gig(self, gig_id: str) -> Gig | None:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        ...

    @abstractmethod
    async def get_proposal(self, proposal_id: str) -> Proposal | None:
        ...

    @abstractmethod
    async def insert_catalog(self, record: Gig | Job | Proposal) -> None:
        ...

    @abstractmethod
    async def insert_conversation(self, conversation: Conversation) -> Conversation:
        ...

    @abstractmethod
    async def increment_gig_orders(self, gig_id: str) -> None:
        ...

    @abstractmethod
    async def mark_proposal_accepted(self, proposal_id: str) -> None:
        ...

    @abstractmethod
    async def assign_job(self, job_id: str, freelancer_id: str) -> None:
        ...

    @abstractmethod
    async def release_job(self, job_id: str) -> None:
        """Reopen the job and clear its hired freelancer."""
        ...


def get_store() -> MarketStore:
    settings = get_settings()
    if settings.store_backend == "memory":
        from marketplace.storage.memory import MemoryStore
        return MemoryStore()
    from marketplace.storage.mongo import MongoStore
    return MongoStore(settings.mongodb_uri, settings.mongodb_db_name)
