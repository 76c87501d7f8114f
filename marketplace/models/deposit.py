from typing import ClassVar

from marketplace.models.intent import FinancialIntent


class Deposit(FinancialIntent):
    kind: ClassVar[str] = "deposit"

    class Settings:
        name = "deposits"
        indexes = [[("user_id", 1), ("created_at", -1)], [("status", 1)]]
