"""OTP gate for payments, deposits and withdrawals.

An intent is created in `pending_otp` with a salted hash of a 6-digit code. Verifying
it is a sequence of conditional updates on the intent record: the call that wins the
claim is the only one allowed to apply the wallet effect, and the claim is resolved
exactly once (completed or failed). A replayed verify finds nothing to claim.
"""

import re
from datetime import datetime, timedelta
from typing import Any

from marketplace.core.clock import Clock, utcnow
from marketplace.core.exceptions import (
    ExpiredChallengeError,
    InvalidChallengeError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from marketplace.core.logging import get_logger
from marketplace.core.security import generate_otp, hash_otp, new_salt, verify_otp
from marketplace.models.base import new_id
from marketplace.models.intent import METHODS
from marketplace.services import rate_limit
from marketplace.services.dispatch import Dispatcher
from marketplace.storage.base import IntentT, MarketStore

log = get_logger(__name__)

OTP_LENGTH = 6
OTP_TTL = timedelta(minutes=10)

_OTP_RE = re.compile(r"[0-9]{6}")

# Claimable: waiting for a code and not yet won by any verify call
_OPEN = {"status": "pending_otp", "claim_id": None}


def validate_method(method: str) -> None:
    if method not in METHODS:
        raise ValidationError("Invalid payment method", details={"allowed": list(METHODS)})


class OtpGate:
    def __init__(self, store: MarketStore, dispatcher: Dispatcher, clock: Clock = utcnow, redis=None) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock
        self.redis = redis

    async def _throttle(self, user_id: str) -> None:
        if self.redis is None:
            return
        count = await rate_limit.incr_otp_requests(self.redis, user_id, self.clock())
        if count > rate_limit.otp_hourly_cap():
            log.warning("otp_throttled", user_id=user_id, count=count)
            raise RateLimitedError("Too many verification codes requested. Try again later.")

    async def issue(
        self,
        model: type[IntentT],
        user_id: str,
        amount: int,
        method: str,
        details: dict[str, Any] | None,
        email_template: str,
        email_data: dict[str, Any] | None = None,
        **fields: Any,
    ) -> IntentT:
        """Persist a pending intent and email its code. The code itself is never returned."""
        validate_method(method)
        await self._throttle(user_id)
        code = generate_otp(OTP_LENGTH)
        salt = new_salt()
        now = self.clock()
        intent = model(
            user_id=user_id,
            amount=amount,
            method=method,
            details=details or {},
            otp_hash=hash_otp(code, salt),
            otp_salt=salt,
            otp_expiry=now + OTP_TTL,
            created_at=now,
            updated_at=now,
            **fields,
        )
        await self.store.insert_intent(intent)
        log.info("otp_issued", kind=model.kind, intent_id=intent.id, user_id=user_id, amount=amount)
        self.dispatcher.email(
            user_id,
            email_template,
            {"otp": code, "amount": amount, "method": method, **(email_data or {})},
            transactional=True,
        )
        return intent

    async def claim(self, model: type[IntentT], user_id: str, intent_id: str, code: str) -> IntentT:
        """
        Check the code and win the right to settle the intent.
        Expired and mismatched codes resolve the intent for good; a new request is needed.
        """
        if not isinstance(code, str) or not _OTP_RE.fullmatch(code):
            raise ValidationError("Please provide a valid 6-digit OTP")
        intent = await self.store.get_intent(model, intent_id)
        if intent is None or intent.user_id != user_id or intent.status != "pending_otp" or intent.claim_id:
            raise NotFoundError(f"{model.kind.capitalize()} request not found or already processed")

        now = self.clock()
        if now > intent.otp_expiry:
            resolved = await self._resolve(model, intent_id, _OPEN, "expired", "OTP expired", now)
            if resolved is None:
                raise NotFoundError(f"{model.kind.capitalize()} request not found or already processed")
            log.info("otp_expired", kind=model.kind, intent_id=intent_id)
            raise ExpiredChallengeError(f"OTP has expired. Please request a new {model.kind}.")

        if not verify_otp(code, intent.otp_salt, intent.otp_hash):
            resolved = await self._resolve(model, intent_id, _OPEN, "failed", "Invalid OTP", now)
            if resolved is None:
                raise NotFoundError(f"{model.kind.capitalize()} request not found or already processed")
            log.info("otp_mismatch", kind=model.kind, intent_id=intent_id)
            raise InvalidChallengeError(f"Invalid OTP. {model.kind.capitalize()} failed.")

        claimed = await self.store.update_intent(
            model, intent_id, _OPEN, {"claim_id": new_id(), "claimed_at": now, "updated_at": now}
        )
        if claimed is None:
            raise NotFoundError(f"{model.kind.capitalize()} request not found or already processed")
        return claimed

    async def complete(self, model: type[IntentT], intent: IntentT) -> IntentT:
        now = self.clock()
        done = await self.store.update_intent(
            model,
            intent.id,
            {"status": "pending_otp", "claim_id": intent.claim_id},
            {"status": "completed", "completed_at": now, "updated_at": now},
        )
        if done is None:
            # Another resolver finished this claim first
            done = await self.store.get_intent(model, intent.id)
        return done

    async def release(self, model: type[IntentT], intent: IntentT, reason: str) -> IntentT | None:
        """Resolve a claimed intent as failed after its effect could not be applied."""
        released = await self._resolve(
            model, intent.id, {"status": "pending_otp", "claim_id": intent.claim_id}, "failed", reason, self.clock()
        )
        log.info("otp_claim_released", kind=model.kind, intent_id=intent.id, reason=reason)
        return released

    async def cancel(self, model: type[IntentT], user_id: str, intent_id: str) -> IntentT:
        intent = await self.store.get_intent(model, intent_id)
        if intent is None or intent.user_id != user_id:
            raise NotFoundError(f"{model.kind.capitalize()} request not found or already processed")
        cancelled = await self._resolve(model, intent_id, _OPEN, "cancelled", "Cancelled by user", self.clock())
        if cancelled is None:
            raise NotFoundError(f"{model.kind.capitalize()} request not found or already processed")
        return cancelled

    async def expire_lapsed(self, model: type[IntentT], now: datetime, limit: int) -> int:
        """Mark unclaimed intents whose code lapsed as expired. Returns how many changed."""
        expired = 0
        for intent in await self.store.find_lapsed_intents(model, now, limit):
            if await self._resolve(model, intent.id, _OPEN, "expired", "OTP expired", now):
                expired += 1
        return expired

    async def _resolve(
        self,
        model: type[IntentT],
        intent_id: str,
        where: dict[str, Any],
        status: str,
        reason: str,
        now: datetime,
    ) -> IntentT | None:
        return await self.store.update_intent(
            model, intent_id, where, {"status": status, "failure_reason": reason, "updated_at": now}
        )
