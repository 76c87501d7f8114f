from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from marketplace.core.clock import utcnow
from marketplace.models.base import Record


class Wallet(BaseModel):
    """Platform-held balance. Only the wallet ledger mutates it."""
    balance: int = 0
    currency: str = "BDT"
    total_withdrawn: int = 0
    recent_keys: list[str] = Field(default_factory=list)  # idempotency keys already applied


class UserStats(BaseModel):
    total_orders: int = 0
    completed_orders: int = 0
    cancelled_orders: int = 0
    total_earnings: int = 0


class User(Record):
    name: str = ""
    email: str
    role: Literal["buyer", "seller", "admin"] = "seller"
    email_notifications: bool = True
    wallet: Wallet = Field(default_factory=Wallet)
    stats: UserStats = Field(default_factory=UserStats)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "users"
        indexes = [[("email", 1)]]
