"""Order payment from the buyer's wallet, confirmed by OTP.

Settlement order: take the order's payment lock, debit the wallet under the payment's
idempotency key, then move the order to in_progress with the frozen split. Each step
can be re-run after a crash; the sweeper's reconciliation does exactly that.
"""

from typing import Any

from marketplace.core.audit import log_event
from marketplace.core.exceptions import (
    AppError,
    AuthorizationError,
    InsufficientFundsError,
    NotFoundError,
    StateConflictError,
)
from marketplace.core.logging import get_logger
from marketplace.models.order import PAYABLE_STATUSES, Order
from marketplace.models.payment import Payment
from marketplace.services.dispatch import Dispatcher
from marketplace.services.orders import OrderService
from marketplace.services.otp import OtpGate
from marketplace.services.wallet import WalletService
from marketplace.storage.base import MarketStore

log = get_logger(__name__)

COMMISSION_PERCENT = 10


def commission_split(price: int) -> tuple[int, int]:
    """(commission, seller_amount) for a price; commission rounds half up to a whole unit."""
    commission = (price * COMMISSION_PERCENT + 50) // 100
    return commission, price - commission


class PaymentService:
    model = Payment

    def __init__(
        self,
        store: MarketStore,
        wallet: WalletService,
        gate: OtpGate,
        orders: OrderService,
        dispatcher: Dispatcher,
    ) -> None:
        self.store = store
        self.wallet = wallet
        self.gate = gate
        self.orders = orders
        self.dispatcher = dispatcher

    async def request_payment(
        self, buyer_id: str, order_id: str, method: str, details: dict[str, Any] | None = None
    ) -> Payment:
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.buyer_id != buyer_id:
            raise AuthorizationError("Only the buyer can pay for this order")
        if order.status not in PAYABLE_STATUSES:
            raise StateConflictError("Order must be activated before payment", current_status=order.status)
        if order.payment_status != "pending":
            raise StateConflictError("Order is already paid", current_status=order.status)
        if order.payment_lock is not None:
            raise StateConflictError("Another payment is in progress for this order", current_status=order.status)
        if order.payment_deadline is not None and self.gate.clock() > order.payment_deadline:
            raise StateConflictError(
                "Payment deadline has passed. Please request an extension from the seller.",
                current_status=order.status,
            )
        balance = await self.wallet.get_balance(buyer_id)
        if balance < order.price:
            raise InsufficientFundsError(balance=balance, required=order.price)
        return await self.gate.issue(
            Payment,
            buyer_id,
            order.price,
            method,
            details,
            "payment_otp",
            {"orderTitle": order.title},
            order_id=order.id,
        )

    async def complete_payment(self, buyer_id: str, payment_id: str, otp: str) -> tuple[Payment, Order]:
        intent = await self.gate.claim(Payment, buyer_id, payment_id, otp)
        return await self.settle(intent)

    async def settle(self, intent: Payment) -> tuple[Payment, Order]:
        order = await self.store.get_order(intent.order_id)
        if order is not None and order.payment_id == intent.id:
            # Order already moved; only the intent is left to resolve
            return await self.gate.complete(Payment, intent), order

        try:
            await self.orders.lock_for_payment(intent.order_id, intent.id)
        except AppError as e:
            await self.gate.release(Payment, intent, e.message)
            raise

        try:
            await self.wallet.debit(intent.user_id, intent.amount, "order_payment", intent.ledger_key, "order", intent.order_id)
        except AppError as e:
            await self.orders.unlock_payment(intent.order_id, intent.id)
            await self.gate.release(Payment, intent, e.message)
            raise

        commission, seller_amount = commission_split(intent.amount)
        order = await self.orders.finish_payment(intent.order_id, intent.id, commission, seller_amount)
        payment = await self.gate.complete(Payment, intent)
        await log_event(
            self.store,
            intent.user_id,
            "order_paid",
            "order",
            order.id,
            {"payment_id": intent.id, "amount": intent.amount, "commission": commission, "seller_amount": seller_amount},
            created_at=self.gate.clock(),
        )
        log.info("order_paid", order_id=order.id, payment_id=intent.id, amount=intent.amount)
        self.dispatcher.notify(
            order.seller_id,
            "payment_completed",
            {"orderId": order.id, "title": order.title, "amount": order.total_amount, "sellerAmount": seller_amount},
        )
        self.dispatcher.email(
            order.seller_id,
            "payment_completed",
            {"orderId": order.id, "title": order.title, "sellerAmount": seller_amount},
        )
        return payment, order

    async def cancel(self, buyer_id: str, payment_id: str) -> Payment:
        return await self.gate.cancel(Payment, buyer_id, payment_id)

    async def history(self, buyer_id: str, limit: int = 20, offset: int = 0) -> tuple[list[Payment], int]:
        resolved = ["completed", "failed", "cancelled", "expired"]
        items = await self.store.list_intents(Payment, buyer_id, statuses=resolved, limit=limit, offset=offset)
        total = await self.store.count_intents(Payment, buyer_id, statuses=resolved)
        return items, total
