from typing import ClassVar

from marketplace.models.intent import FinancialIntent


class Withdrawal(FinancialIntent):
    kind: ClassVar[str] = "withdrawal"

    class Settings:
        name = "withdrawals"
        indexes = [[("user_id", 1), ("created_at", -1)], [("status", 1)]]
