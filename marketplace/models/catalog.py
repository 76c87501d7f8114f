"""Catalog records owned by other parts of the marketplace; read here to price orders."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from marketplace.core.clock import utcnow
from marketplace.models.base import Record


class PriceTier(BaseModel):
    name: str = ""
    price: int
    delivery_days: int
    revisions: int = 0
    description: str = ""


class GigStats(BaseModel):
    views: int = 0
    orders: int = 0


class Gig(Record):
    seller_id: str
    title: str
    description: str = ""
    base_price: int
    delivery_days: int
    price_tiers: list[PriceTier] = Field(default_factory=list)
    status: Literal["active", "inactive", "paused"] = "active"
    stats: GigStats = Field(default_factory=GigStats)

    class Settings:
        name = "gigs"
        indexes = [[("seller_id", 1), ("status", 1)]]


class Job(Record):
    posted_by: str
    title: str
    description: str = ""
    budget: int = 0
    status: Literal["open", "in-progress", "completed"] = "open"
    hired_freelancer: str | None = None

    class Settings:
        name = "jobs"
        indexes = [[("posted_by", 1)]]


class Proposal(Record):
    job_id: str
    seller_id: str
    proposed_price: int
    delivery_days: int = 7
    cover_letter: str = ""
    status: Literal["pending", "accepted", "rejected"] = "pending"

    class Settings:
        name = "proposals"
        indexes = [[("job_id", 1)]]


class Conversation(Record):
    participants: list[str]
    gig_id: str | None = None
    job_id: str | None = None
    order_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "conversations"
        indexes = [[("participants", 1)]]
