from datetime import datetime
from typing import Any

import certifi
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from marketplace.core.clock import utcnow
from marketplace.core.logging import get_logger
from marketplace.models.audit_log import AuditLog
from marketplace.models.base import Record
from marketplace.models.catalog import Conversation, Gig, Job, Proposal
from marketplace.models.deposit import Deposit
from marketplace.models.intent import FinancialIntent
from marketplace.models.order import PAYABLE_STATUSES, Order
from marketplace.models.payment import Payment
from marketplace.models.user import User
from marketplace.models.wallet_ledger import WalletLedgerEntry
from marketplace.models.withdrawal import Withdrawal
from marketplace.storage.base import WALLET_KEY_WINDOW, IntentT, MarketStore, WalletResult

log = get_logger(__name__)

DOCUMENT_MODELS: list[type[Record]] = [
    User,
    Order,
    Payment,
    Deposit,
    Withdrawal,
    WalletLedgerEntry,
    AuditLog,
    Gig,
    Job,
    Proposal,
    Conversation,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def to_doc(record: Record) -> dict[str, Any]:
    doc = record.model_dump()
    doc["_id"] = doc.pop("id")
    return doc


def from_doc(model: type[Record], doc: dict[str, Any] | None):
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = doc.pop("_id")
    return model.model_validate(doc)


class MongoStore(MarketStore):
    def __init__(self, uri: str, db_name: str) -> None:
        kwargs = {}
        # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
        if _use_tls(uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        self._client = AsyncIOMotorClient(uri, **kwargs)
        self._db = self._client[db_name]

    def _col(self, model: type[Record]) -> AsyncIOMotorCollection:
        return self._db[model.Settings.name]

    async def init(self) -> None:
        for model in DOCUMENT_MODELS:
            for keys in model.Settings.indexes:
                await self._col(model).create_index(keys)
        await self._col(Order).create_index(
            "inflight_key",
            unique=True,
            partialFilterExpression={"inflight_key": {"$type": "string"}},
        )
        await self._col(WalletLedgerEntry).create_index(
            "idempotency_key",
            unique=True,
            partialFilterExpression={"idempotency_key": {"$type": "string"}},
            name="idempotency_key_unique",
        )
        log.info("store_ready", backend="mongo", db=self._db.name)

    async def close(self) -> None:
        self._client.close()

    # Users and wallets

    async def get_user(self, user_id: str) -> User | None:
        return from_doc(User, await self._col(User).find_one({"_id": user_id}))

    async def insert_user(self, user: User) -> User:
        await self._col(User).insert_one(to_doc(user))
        return user

    async def apply_wallet_delta(self, user_id: str, delta: int, key: str, withdrawn: int = 0) -> WalletResult:
        query: dict[str, Any] = {"_id": user_id, "wallet.recent_keys": {"$ne": key}}
        if delta < 0:
            query["wallet.balance"] = {"$gte": -delta}
        doc = await self._col(User).find_one_and_update(
            query,
            {
                "$inc": {"wallet.balance": delta, "wallet.total_withdrawn": withdrawn},
                "$push": {"wallet.recent_keys": {"$each": [key], "$slice": -WALLET_KEY_WINDOW}},
                "$set": {"updated_at": utcnow()},
            },
            projection={"wallet.balance": 1},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            return WalletResult("applied", doc["wallet"]["balance"])
        # Guard failed: find out which one
        doc = await self._col(User).find_one({"_id": user_id}, {"wallet": 1})
        if not doc:
            return WalletResult("missing")
        wallet = doc.get("wallet") or {}
        if key in (wallet.get("recent_keys") or []):
            return WalletResult("duplicate", wallet.get("balance", 0))
        return WalletResult("insufficient", wallet.get("balance", 0))

    async def increment_stats(self, user_id: str, **deltas: int) -> None:
        await self._col(User).update_one(
            {"_id": user_id},
            {"$inc": {f"stats.{k}": v for k, v in deltas.items()}},
        )

    # Orders

    async def insert_order(self, order: Order) -> bool:
        try:
            await self._col(Order).insert_one(to_doc(order))
        except DuplicateKeyError:
            return False
        return True

    async def get_order(self, order_id: str) -> Order | None:
        return from_doc(Order, await self._col(Order).find_one({"_id": order_id}))

    async def replace_order(self, order: Order, expected_version: int) -> bool:
        res = await self._col(Order).replace_one({"_id": order.id, "version": expected_version}, to_doc(order))
        return res.matched_count == 1

    def _order_query(
        self,
        buyer_id: str | None,
        seller_id: str | None,
        statuses: list[str] | None,
        payment_status: str | None = None,
    ) -> dict[str, Any]:
        query: dict[str, Any] = {}
        if buyer_id is not None:
            query["buyer_id"] = buyer_id
        if seller_id is not None:
            query["seller_id"] = seller_id
        if statuses is not None:
            query["status"] = {"$in": list(statuses)}
        if payment_status is not None:
            query["payment_status"] = payment_status
        return query

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
        cursor = (
            self._col(Order)
            .find(self._order_query(buyer_id, seller_id, statuses, payment_status))
            .sort("created_at", -1)
            .skip(offset)
        )
        if limit is not None:
            cursor = cursor.limit(limit)
        return [from_doc(Order, d) async for d in cursor]

    async def count_orders(
        self,
        *,
        buyer_id: str | None = None,
        seller_id: str | None = None,
        statuses: list[str] | None = None,
    ) -> int:
        return await self._col(Order).count_documents(self._order_query(buyer_id, seller_id, statuses))

    async def find_expired_unpaid(self, now: datetime, limit: int) -> list[Order]:
        cursor = self._col(Order).find(
            {
                "status": {"$in": list(PAYABLE_STATUSES)},
                "payment_status": "pending",
                "payment_lock": None,
                "payment_deadline": {"$lt": now},
            }
        ).limit(limit)
        return [from_doc(Order, d) async for d in cursor]

    async def find_unsettled_refunds(self, limit: int) -> list[Order]:
        cursor = self._col(Order).find(
            {"status": "cancelled", "payment_status": "refunded", "refund_settled": False}
        ).limit(limit)
        return [from_doc(Order, d) async for d in cursor]

    # OTP-gated intents

    async def insert_intent(self, intent: FinancialIntent) -> None:
        await self._col(type(intent)).insert_one(to_doc(intent))

    async def get_intent(self, model: type[IntentT], intent_id: str) -> IntentT | None:
        return from_doc(model, await self._col(model).find_one({"_id": intent_id}))

    async def update_intent(
        self,
        model: type[IntentT],
        intent_id: str,
        where: dict[str, Any],
        changes: dict[str, Any],
    ) -> IntentT | None:
        doc = await self._col(model).find_one_and_update(
            {"_id": intent_id, **where},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        return from_doc(model, doc)

    def _intent_query(self, user_id: str, statuses: list[str] | None) -> dict[str, Any]:
        query: dict[str, Any] = {"user_id": user_id}
        if statuses is not None:
            query["status"] = {"$in": list(statuses)}
        return query

    async def list_intents(
        self,
        model: type[IntentT],
        user_id: str,
        statuses: list[str] | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[IntentT]:
        cursor = (
            self._col(model)
            .find(self._intent_query(user_id, statuses))
            .sort("created_at", -1)
            .skip(offset)
            .limit(limit)
        )
        return [from_doc(model, d) async for d in cursor]

    async def count_intents(self, model: type[IntentT], user_id: str, statuses: list[str] | None = None) -> int:
        return await self._col(model).count_documents(self._intent_query(user_id, statuses))

    async def find_stale_claims(self, model: type[IntentT], claimed_before: datetime, limit: int) -> list[IntentT]:
        cursor = self._col(model).find(
            {"status": "pending_otp", "claim_id": {"$ne": None}, "claimed_at": {"$lt": claimed_before}}
        ).limit(limit)
        return [from_doc(model, d) async for d in cursor]

    async def find_lapsed_intents(self, model: type[IntentT], now: datetime, limit: int) -> list[IntentT]:
        cursor = self._col(model).find(
            {"status": "pending_otp", "claim_id": None, "otp_expiry": {"$lt": now}}
        ).limit(limit)
        return [from_doc(model, d) async for d in cursor]

    # Ledger history and audit

    async def insert_ledger_entry(self, entry: WalletLedgerEntry) -> bool:
        try:
            await self._col(WalletLedgerEntry).insert_one(to_doc(entry))
        except DuplicateKeyError:
            return False
        return True

    async def list_ledger(self, user_id: str, limit: int = 50, offset: int = 0) -> list[WalletLedgerEntry]:
        cursor = (
            self._col(WalletLedgerEntry)
            .find({"user_id": user_id})
            .sort("created_at", -1)
            .skip(offset)
            .limit(limit)
        )
        return [from_doc(WalletLedgerEntry, d) async for d in cursor]

    async def insert_audit(self, event: AuditLog) -> None:
        await self._col(AuditLog).insert_one(to_doc(event))

    # Catalog collaborators

    async def get_gig(self, gig_id: str) -> Gig | None:
        return from_doc(Gig, await self._col(Gig).find_one({"_id": gig_id}))

    async def get_job(self, job_id: str) -> Job | None:
        return from_doc(Job, await self._col(Job).find_one({"_id": job_id}))

    async def get_proposal(self, proposal_id: str) -> Proposal | None:
        return from_doc(Proposal, await self._col(Proposal).find_one({"_id": proposal_id}))

    async def insert_catalog(self, record: Gig | Job | Proposal) -> None:
        await self._col(type(record)).insert_one(to_doc(record))

    async def insert_conversation(self, conversation: Conversation) -> Conversation:
        await self._col(Conversation).insert_one(to_doc(conversation))
        return conversation

    async def increment_gig_orders(self, gig_id: str) -> None:
        await self._col(Gig).update_one({"_id": gig_id}, {"$inc": {"stats.orders": 1}})

    async def mark_proposal_accepted(self, proposal_id: str) -> None:
        await self._col(Proposal).update_one({"_id": proposal_id}, {"$set": {"status": "accepted"}})

    async def assign_job(self, job_id: str, freelancer_id: str) -> None:
        await self._col(Job).update_one(
            {"_id": job_id},
            {"$set": {"status": "in-progress", "hired_freelancer": freelancer_id}},
        )

    async def release_job(self, job_id: str) -> None:
        await self._col(Job).update_one(
            {"_id": job_id},
            {"$set": {"status": "open", "hired_freelancer": None}},
        )
