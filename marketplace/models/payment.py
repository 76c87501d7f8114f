from typing import ClassVar

from marketplace.models.intent import FinancialIntent


class Payment(FinancialIntent):
    """Buyer's settlement of one order from their wallet."""
    kind: ClassVar[str] = "payment"

    order_id: str

    class Settings:
        name = "payments"
        indexes = [[("user_id", 1), ("order_id", 1), ("created_at", -1)], [("status", 1)]]
