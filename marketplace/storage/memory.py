"""In-process store for development and tests.

Records are copied in and out so callers never share state with the store. Each
method yields to the event loop once before touching data, like a network round
trip would, and then runs to completion without awaiting, which makes every
method atomic with respect to other tasks.
"""

import asyncio
from datetime import datetime
from typing import Any

from marketplace.core.clock import utcnow
from marketplace.models.audit_log import AuditLog
from marketplace.models.catalog import Conversation, Gig, Job, Proposal
from marketplace.models.intent import FinancialIntent
from marketplace.models.order import Order
from marketplace.models.user import User
from marketplace.models.wallet_ledger import WalletLedgerEntry
from marketplace.storage.base import WALLET_KEY_WINDOW, IntentT, MarketStore, WalletResult


class MemoryStore(MarketStore):
    def __init__(self) -> None:
        self.users: dict[str, User] = {}
        self.orders: dict[str, Order] = {}
        self.intents: dict[str, dict[str, FinancialIntent]] = {}
        self.ledger: list[WalletLedgerEntry] = []
        self.audit: list[AuditLog] = []
        self.gigs: dict[str, Gig] = {}
        self.jobs: dict[str, Job] = {}
        self.proposals: dict[str, Proposal] = {}
        self.conversations: dict[str, Conversation] = {}

    async def _io(self) -> None:
        await asyncio.sleep(0)

    # Users and wallets

    async def get_user(self, user_id: str) -> User | None:
        await self._io()
        user = self.users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def insert_user(self, user: User) -> User:
        await self._io()
        self.users[user.id] = user.model_copy(deep=True)
        return user

    async def apply_wallet_delta(self, user_id: str, delta: int, key: str, withdrawn: int = 0) -> WalletResult:
        await self._io()
        user = self.users.get(user_id)
        if user is None:
            return WalletResult("missing")
        wallet = user.wallet
        if key in wallet.recent_keys:
            return WalletResult("duplicate", wallet.balance)
        if delta < 0 and wallet.balance < -delta:
            return WalletResult("insufficient", wallet.balance)
        wallet.balance += delta
        wallet.total_withdrawn += withdrawn
        wallet.recent_keys = (wallet.recent_keys + [key])[-WALLET_KEY_WINDOW:]
        user.updated_at = utcnow()
        return WalletResult("applied", wallet.balance)

    async def increment_stats(self, user_id: str, **deltas: int) -> None:
        await self._io()
        user = self.users.get(user_id)
        if user is None:
            return
        for field, value in deltas.items():
            setattr(user.stats, field, getattr(user.stats, field) + value)

    # Orders

    async def insert_order(self, order: Order) -> bool:
        await self._io()
        if order.inflight_key and any(o.inflight_key == order.inflight_key for o in self.orders.values()):
            return False
        self.orders[order.id] = order.model_copy(deep=True)
        return True

    async def get_order(self, order_id: str) -> Order | None:
        await self._io()
        order = self.orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def replace_order(self, order: Order, expected_version: int) -> bool:
        await self._io()
        current = self.orders.get(order.id)
        if current is None or current.version != expected_version:
            return False
        self.orders[order.id] = order.model_copy(deep=True)
        return True

    def _match_orders(
        self,
        buyer_id: str | None,
        seller_id: str | None,
        statuses: list[str] | None,
        payment_status: str | None = None,
    ) -> list[Order]:
        out = []
        for o in self.orders.values():
            if buyer_id is not None and o.buyer_id != buyer_id:
                continue
            if seller_id is not None and o.seller_id != seller_id:
                continue
            if statuses is not None and o.status not in statuses:
                continue
            if payment_status is not None and o.payment_status != payment_status:
                continue
            out.append(o)
        out.sort(key=lambda o: o.created_at, reverse=True)
        return out

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
        await self._io()
        matched = self._match_orders(buyer_id, seller_id, statuses, payment_status)[offset:]
        if limit is not None:
            matched = matched[:limit]
        return [o.model_copy(deep=True) for o in matched]

    async def count_orders(
        self,
        *,
        buyer_id: str | None = None,
        seller_id: str | None = None,
        statuses: list[str] | None = None,
    ) -> int:
        await self._io()
        return len(self._match_orders(buyer_id, seller_id, statuses))

    async def find_expired_unpaid(self, now: datetime, limit: int) -> list[Order]:
        await self._io()
        out = [
            o.model_copy(deep=True)
            for o in self.orders.values()
            if o.awaiting_payment()
            and o.payment_lock is None
            and o.payment_deadline is not None
            and o.payment_deadline < now
        ]
        return out[:limit]

    async def find_unsettled_refunds(self, limit: int) -> list[Order]:
        await self._io()
        out = [
            o.model_copy(deep=True)
            for o in self.orders.values()
            if o.status == "cancelled" and o.payment_status == "refunded" and not o.refund_settled
        ]
        return out[:limit]

    # OTP-gated intents

    def _bucket(self, model: type[FinancialIntent]) -> dict[str, FinancialIntent]:
        return self.intents.setdefault(model.kind, {})

    async def insert_intent(self, intent: FinancialIntent) -> None:
        await self._io()
        self._bucket(type(intent))[intent.id] = intent.model_copy(deep=True)

    async def get_intent(self, model: type[IntentT], intent_id: str) -> IntentT | None:
        await self._io()
        intent = self._bucket(model).get(intent_id)
        return intent.model_copy(deep=True) if intent else None

    async def update_intent(
        self,
        model: type[IntentT],
        intent_id: str,
        where: dict[str, Any],
        changes: dict[str, Any],
    ) -> IntentT | None:
        await self._io()
        intent = self._bucket(model).get(intent_id)
        if intent is None:
            return None
        if any(getattr(intent, field) != value for field, value in where.items()):
            return None
        for field, value in changes.items():
            setattr(intent, field, value)
        return intent.model_copy(deep=True)

    def _user_intents(self, model: type[FinancialIntent], user_id: str, statuses: list[str] | None):
        out = [
            i for i in self._bucket(model).values()
            if i.user_id == user_id and (statuses is None or i.status in statuses)
        ]
        out.sort(key=lambda i: i.created_at, reverse=True)
        return out

    async def list_intents(
        self,
        model: type[IntentT],
        user_id: str,
        statuses: list[str] | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[IntentT]:
        await self._io()
        matched = self._user_intents(model, user_id, statuses)[offset:offset + limit]
        return [i.model_copy(deep=True) for i in matched]

    async def count_intents(self, model: type[IntentT], user_id: str, statuses: list[str] | None = None) -> int:
        await self._io()
        return len(self._user_intents(model, user_id, statuses))

    async def find_stale_claims(self, model: type[IntentT], claimed_before: datetime, limit: int) -> list[IntentT]:
        await self._io()
        out = [
            i.model_copy(deep=True)
            for i in self._bucket(model).values()
            if i.status == "pending_otp" and i.claim_id is not None
            and i.claimed_at is not None and i.claimed_at < claimed_before
        ]
        return out[:limit]

    async def find_lapsed_intents(self, model: type[IntentT], now: datetime, limit: int) -> list[IntentT]:
        await self._io()
        out = [
            i.model_copy(deep=True)
            for i in self._bucket(model).values()
            if i.status == "pending_otp" and i.claim_id is None and i.otp_expiry < now
        ]
        return out[:limit]

    # Ledger history and audit

    async def insert_ledger_entry(self, entry: WalletLedgerEntry) -> bool:
        await self._io()
        if entry.idempotency_key and any(e.idempotency_key == entry.idempotency_key for e in self.ledger):
            return False
        self.ledger.append(entry.model_copy(deep=True))
        return True

    async def list_ledger(self, user_id: str, limit: int = 50, offset: int = 0) -> list[WalletLedgerEntry]:
        await self._io()
        entries = sorted((e for e in self.ledger if e.user_id == user_id), key=lambda e: e.created_at, reverse=True)
        return [e.model_copy(deep=True) for e in entries[offset:offset + limit]]

    async def insert_audit(self, event: AuditLog) -> None:
        await self._io()
        self.audit.append(event.model_copy(deep=True))

    # Catalog collaborators

    async def get_gig(self, gig_id: str) -> Gig | None:
        await self._io()
        gig = self.gigs.get(gig_id)
        return gig.model_copy(deep=True) if gig else None

    async def get_job(self, job_id: str) -> Job | None:
        await self._io()
        job = self.jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def get_proposal(self, proposal_id: str) -> Proposal | None:
        await self._io()
        proposal = self.proposals.get(proposal_id)
        return proposal.model_copy(deep=True) if proposal else None

    async def insert_catalog(self, record: Gig | Job | Proposal) -> None:
        await self._io()
        table = {Gig: self.gigs, Job: self.jobs, Proposal: self.proposals}[type(record)]
        table[record.id] = record.model_copy(deep=True)

    async def insert_conversation(self, conversation: Conversation) -> Conversation:
        await self._io()
        self.conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation

    async def increment_gig_orders(self, gig_id: str) -> None:
        await self._io()
        if gig_id in self.gigs:
            self.gigs[gig_id].stats.orders += 1

    async def mark_proposal_accepted(self, proposal_id: str) -> None:
        await self._io()
        if proposal_id in self.proposals:
            self.proposals[proposal_id].status = "accepted"

    async def assign_job(self, job_id: str, freelancer_id: str) -> None:
        await self._io()
        if job_id in self.jobs:
            self.jobs[job_id].status = "in-progress"
            self.jobs[job_id].hired_freelancer = freelancer_id

    async def release_job(self, job_id: str) -> None:
        await self._io()
        if job_id in self.jobs:
            self.jobs[job_id].status = "open"
            self.jobs[job_id].hired_freelancer = None
