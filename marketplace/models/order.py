from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from marketplace.core.clock import utcnow
from marketplace.models.base import Record, new_id

OrderStatus = Literal["pending", "activated", "in_progress", "delivered", "completed", "cancelled"]
PaymentStatus = Literal["pending", "completed", "refunded"]
Party = Literal["buyer", "seller"]

# Non-terminal states; cancellation is allowed from any of them
OPEN_STATUSES = ("pending", "activated", "in_progress", "delivered")
# States in which an order blocks a duplicate purchase of the same item
INFLIGHT_STATUSES = ("pending", "activated")
# States in which an unpaid order can still be paid; the seller may start work before payment
PAYABLE_STATUSES = ("activated", "in_progress")


class Delivery(BaseModel):
    description: str = ""
    notes: str = ""
    link: str | None = None
    files: list[str] = Field(default_factory=list)
    delivered_at: datetime | None = None
    status: Literal["pending", "accepted", "rejected"] = "pending"
    rejection_reason: str | None = None
    redelivery_deadline: datetime | None = None
    accepted_at: datetime | None = None


class ExtensionRequest(BaseModel):
    id: str = Field(default_factory=new_id)
    requested_by: Party
    requested_at: datetime = Field(default_factory=utcnow)
    reason: str
    extension_days: int
    status: Literal["pending", "approved", "rejected"] = "pending"
    responded_by: str | None = None
    responded_at: datetime | None = None


class Cancellation(BaseModel):
    reason: str | None = None
    cancelled_by: Literal["buyer", "seller", "system"]
    cancelled_at: datetime = Field(default_factory=utcnow)


class Order(Record):
    buyer_id: str
    seller_id: str
    gig_id: str | None = None
    job_id: str | None = None
    proposal_id: str | None = None
    conversation_id: str | None = None
    title: str
    description: str = ""
    price: int
    delivery_days: int
    due_date: datetime | None = None

    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"

    # Set once, when payment completes
    total_amount: int | None = None
    commission: int = 0
    seller_amount: int | None = None
    payment_id: str | None = None

    activated_at: datetime | None = None
    payment_deadline: datetime | None = None
    payment_completed_at: datetime | None = None
    start_date: datetime | None = None
    completion_date: datetime | None = None

    delivery: Delivery | None = None
    extension_requests: list[ExtensionRequest] = Field(default_factory=list)
    cancellation: Cancellation | None = None
    refund_settled: bool = False

    # Concurrency bookkeeping
    payment_lock: str | None = None
    payment_locked_at: datetime | None = None
    inflight_key: str | None = None
    version: int = 0

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "orders"
        indexes = [
            [("buyer_id", 1), ("status", 1)],
            [("seller_id", 1), ("status", 1)],
            [("status", 1), ("payment_deadline", 1)],
            [("created_at", -1)],
        ]

    def party_of(self, user_id: str) -> Party | None:
        if user_id == self.buyer_id:
            return "buyer"
        if user_id == self.seller_id:
            return "seller"
        return None

    def awaiting_payment(self) -> bool:
        return self.status in PAYABLE_STATUSES and self.payment_status == "pending"

    def counterparty_id(self, party: Party) -> str:
        return self.seller_id if party == "buyer" else self.buyer_id

    def find_extension(self, extension_id: str) -> ExtensionRequest | None:
        for ext in self.extension_requests:
            if ext.id == extension_id:
                return ext
        return None
