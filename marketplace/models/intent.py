"""OTP-gated financial intents: shared shape of payments, deposits and withdrawals."""

from datetime import datetime
from typing import Any, ClassVar, Literal

from pydantic import Field

from marketplace.core.clock import utcnow
from marketplace.models.base import Record

IntentStatus = Literal["pending_otp", "completed", "failed", "expired", "cancelled"]
PaymentMethod = Literal["bank", "card", "bkash", "nagad"]
METHODS = ("bank", "card", "bkash", "nagad")

# Never leaves the service
SECRET_FIELDS = {"otp_hash", "otp_salt", "claim_id"}


class FinancialIntent(Record):
    kind: ClassVar[str] = ""

    user_id: str
    amount: int
    method: PaymentMethod
    details: dict[str, Any] = Field(default_factory=dict)
    otp_hash: str
    otp_salt: str
    otp_expiry: datetime
    status: IntentStatus = "pending_otp"
    claim_id: str | None = None
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def ledger_key(self) -> str:
        return f"{self.kind}:{self.id}"

    def public(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude=SECRET_FIELDS)
