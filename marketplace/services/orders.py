"""Order state machine.

Every mutation goes through `_transition`: load the order, run the change (which checks
the caller's party and the expected state and raises if either is wrong), then write it
back only if the stored version is still the one that was read. On a lost race the
whole check is repeated against the fresh state, so a precondition that no longer holds
surfaces as a conflict instead of overwriting the winner.

Allowed moves:

    pending     -> activated | cancelled
    activated   -> in_progress (payment, or the seller starting early) | cancelled
    in_progress -> delivered | completed | cancelled
    delivered   -> in_progress (delivery rejected) | completed | cancelled
"""

from datetime import timedelta
from typing import Any, Callable

from marketplace.core.audit import log_event
from marketplace.core.clock import Clock, utcnow
from marketplace.core.exceptions import (
    AppError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from marketplace.core.logging import get_logger
from marketplace.models.base import new_id
from marketplace.models.catalog import Conversation
from marketplace.models.order import (
    INFLIGHT_STATUSES,
    OPEN_STATUSES,
    PAYABLE_STATUSES,
    Cancellation,
    Delivery,
    ExtensionRequest,
    Order,
    Party,
)
from marketplace.services.dispatch import Dispatcher
from marketplace.services.wallet import WalletService
from marketplace.storage.base import MarketStore

log = get_logger(__name__)

PAYMENT_WINDOW = timedelta(days=7)
MAX_CAS_RETRIES = 5
MAX_REDELIVERY_DAYS = 30
MAX_EXTENSION_DAYS = 30
UPDATABLE_STATUSES = ("in_progress", "completed")


def _require_party(order: Order, user_id: str, party: Party) -> None:
    if order.party_of(user_id) != party:
        raise AuthorizationError(f"Only the {party} can perform this action")


def _require_status(order: Order, *statuses: str, message: str | None = None) -> None:
    if order.status not in statuses:
        raise StateConflictError(
            message or f"Order must be {' or '.join(statuses)} (currently {order.status})",
            current_status=order.status,
        )


def _check_days(days: int, maximum: int, label: str) -> None:
    if not 1 <= days <= maximum:
        raise ValidationError(f"{label} must be between 1 and {maximum} days")


class OrderService:
    def __init__(
        self,
        store: MarketStore,
        wallet: WalletService,
        dispatcher: Dispatcher,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.wallet = wallet
        self.dispatcher = dispatcher
        self.clock = clock

    # Plumbing

    async def _load(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    async def _transition(self, order_id: str, change: Callable[[Order], None]) -> Order:
        for attempt in range(MAX_CAS_RETRIES):
            order = await self._load(order_id)
            expected = order.version
            change(order)
            if order.status not in INFLIGHT_STATUSES:
                order.inflight_key = None
            order.version = expected + 1
            order.updated_at = self.clock()
            if await self.store.replace_order(order, expected):
                return order
            log.info("order_write_conflict", order_id=order_id, attempt=attempt + 1)
        raise ConflictError("Order was modified concurrently. Please retry.")

    def _notify(self, order: Order, user_id: str, event: str, **extra: Any) -> None:
        self.dispatcher.notify(
            user_id, event, {"orderId": order.id, "title": order.title, "status": order.status, **extra}
        )

    def _email(self, order: Order, user_id: str, template_id: str, **extra: Any) -> None:
        self.dispatcher.email(user_id, template_id, {"orderId": order.id, "title": order.title, **extra})

    # Creation

    async def create_from_gig(self, buyer_id: str, gig_id: str, price_tier: int | None = None) -> Order:
        gig = await self.store.get_gig(gig_id)
        if gig is None:
            raise NotFoundError("Gig not found")
        if gig.status != "active":
            raise ValidationError("This gig is not accepting orders")
        if gig.seller_id == buyer_id:
            raise ValidationError("You cannot order your own gig")

        price, delivery_days = gig.base_price, gig.delivery_days
        if price_tier is not None:
            if not 0 <= price_tier < len(gig.price_tiers):
                raise ValidationError("Invalid price tier")
            tier = gig.price_tiers[price_tier]
            price, delivery_days = tier.price, tier.delivery_days

        now = self.clock()
        order = Order(
            buyer_id=buyer_id,
            seller_id=gig.seller_id,
            gig_id=gig.id,
            conversation_id=new_id(),
            title=gig.title,
            description=gig.description,
            price=price,
            delivery_days=delivery_days,
            inflight_key=f"gig:{buyer_id}:{gig.id}",
            created_at=now,
            updated_at=now,
        )
        if not await self.store.insert_order(order):
            raise ConflictError("You already have an active order for this gig")

        await self.store.insert_conversation(
            Conversation(id=order.conversation_id, participants=[buyer_id, gig.seller_id], gig_id=gig.id, order_id=order.id)
        )
        await self.store.increment_gig_orders(gig.id)
        await self._count_new_order(order)
        log.info("order_created", order_id=order.id, source="gig", price=price)
        self._notify(order, order.seller_id, "order_placed", price=price)
        self._email(order, order.seller_id, "order_placed", price=price)
        return order

    async def create_from_proposal(self, buyer_id: str, proposal_id: str) -> Order:
        """Hire from an accepted proposal; the order starts activated and awaits payment."""
        proposal = await self.store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError("Proposal not found")
        job = await self.store.get_job(proposal.job_id)
        if job is None:
            raise NotFoundError("Job not found")
        if job.posted_by != buyer_id:
            raise AuthorizationError("Only the job poster can hire for this job")
        if proposal.status == "rejected":
            raise StateConflictError("Proposal was rejected", current_status=proposal.status)

        now = self.clock()
        order = Order(
            buyer_id=buyer_id,
            seller_id=proposal.seller_id,
            job_id=job.id,
            proposal_id=proposal.id,
            conversation_id=new_id(),
            title=job.title,
            description=job.description,
            price=proposal.proposed_price,
            delivery_days=proposal.delivery_days,
            status="activated",
            activated_at=now,
            payment_deadline=now + PAYMENT_WINDOW,
            inflight_key=f"job:{buyer_id}:{proposal.seller_id}:{job.id}",
            created_at=now,
            updated_at=now,
        )
        if not await self.store.insert_order(order):
            raise ConflictError("An active order already exists for this job and freelancer")

        await self.store.mark_proposal_accepted(proposal.id)
        await self.store.assign_job(job.id, proposal.seller_id)
        await self.store.insert_conversation(
            Conversation(
                id=order.conversation_id, participants=[buyer_id, proposal.seller_id], job_id=job.id, order_id=order.id
            )
        )
        await self._count_new_order(order)
        log.info("order_created", order_id=order.id, source="proposal", price=order.price)
        deadline = order.payment_deadline.isoformat()
        self._notify(order, order.seller_id, "proposal_accepted", paymentDeadline=deadline)
        self._notify(order, buyer_id, "order_activated", paymentDeadline=deadline)
        self._email(order, buyer_id, "order_activated", paymentDeadline=deadline)
        return order

    async def _count_new_order(self, order: Order) -> None:
        await self.store.increment_stats(order.buyer_id, total_orders=1)
        await self.store.increment_stats(order.seller_id, total_orders=1)

    # Seller decision on a new order

    async def accept_order(self, seller_id: str, order_id: str) -> Order:
        def change(order: Order) -> None:
            _require_party(order, seller_id, "seller")
            _require_status(order, "pending", message="Only pending orders can be accepted")
            now = self.clock()
            order.status = "activated"
            order.activated_at = now
            order.payment_deadline = now + PAYMENT_WINDOW

        order = await self._transition(order_id, change)
        deadline = order.payment_deadline.isoformat()
        self._notify(order, order.buyer_id, "order_activated", paymentDeadline=deadline)
        self._email(order, order.buyer_id, "order_activated", paymentDeadline=deadline)
        return order

    async def reject_order(self, seller_id: str, order_id: str, reason: str | None = None) -> Order:
        def change(order: Order) -> None:
            _require_party(order, seller_id, "seller")
            _require_status(order, "pending", message="Only pending orders can be rejected")
            self._mark_cancelled(order, "seller", reason or "Rejected by seller")

        order = await self._transition(order_id, change)
        await self._after_cancel(order)
        self._notify(order, order.buyer_id, "order_rejected", reason=order.cancellation.reason)
        self._email(order, order.buyer_id, "order_cancelled", reason=order.cancellation.reason)
        return order

    # Payment settlement hooks (driven by PaymentService)

    async def lock_for_payment(self, order_id: str, payment_id: str) -> Order:
        """Reserve an unpaid order for one payment. Sweep and cancel leave locked orders alone."""
        def change(order: Order) -> None:
            if order.payment_lock == payment_id:
                return
            _require_status(order, *PAYABLE_STATUSES, message="Order must be activated before payment")
            if order.payment_status != "pending":
                raise StateConflictError("Order is already paid", current_status=order.status)
            if order.payment_lock is not None:
                raise StateConflictError("Another payment is in progress for this order", current_status=order.status)
            now = self.clock()
            if order.payment_deadline is not None and now > order.payment_deadline:
                raise StateConflictError(
                    "Payment deadline has passed. Please request an extension from the seller.",
                    current_status=order.status,
                )
            order.payment_lock = payment_id
            order.payment_locked_at = now

        return await self._transition(order_id, change)

    async def unlock_payment(self, order_id: str, payment_id: str) -> Order:
        def change(order: Order) -> None:
            if order.payment_lock == payment_id:
                order.payment_lock = None
                order.payment_locked_at = None

        return await self._transition(order_id, change)

    async def finish_payment(self, order_id: str, payment_id: str, commission: int, seller_amount: int) -> Order:
        """Freeze the split and start the work. Requires the lock taken by the same payment."""
        def change(order: Order) -> None:
            if order.payment_lock != payment_id:
                raise StateConflictError("Payment lock was lost", current_status=order.status)
            now = self.clock()
            order.status = "in_progress"
            order.payment_status = "completed"
            order.total_amount = order.price
            order.commission = commission
            order.seller_amount = seller_amount
            order.payment_id = payment_id
            order.payment_completed_at = now
            order.start_date = order.start_date or now
            order.due_date = now + timedelta(days=order.delivery_days)
            order.payment_lock = None
            order.payment_locked_at = None

        return await self._transition(order_id, change)

    # Delivery

    async def deliver_order(
        self,
        seller_id: str,
        order_id: str,
        description: str = "",
        notes: str = "",
        link: str | None = None,
        files: list[str] | None = None,
    ) -> Order:
        if not (description.strip() or link or files):
            raise ValidationError("Provide a description, a link or files for the delivery")

        def change(order: Order) -> None:
            _require_party(order, seller_id, "seller")
            _require_status(order, "in_progress", message="Only orders in progress can be delivered")
            if order.payment_status != "completed":
                raise StateConflictError("Order has not been paid", current_status=order.status)
            order.delivery = Delivery(
                description=description,
                notes=notes,
                link=link,
                files=list(files or []),
                delivered_at=self.clock(),
            )
            order.status = "delivered"

        order = await self._transition(order_id, change)
        self._notify(order, order.buyer_id, "order_delivered")
        self._email(order, order.buyer_id, "order_delivered")
        return order

    def _require_pending_delivery(self, order: Order) -> Delivery:
        _require_status(order, "delivered", message="Order has not been delivered")
        if order.delivery is None or order.delivery.status != "pending":
            raise StateConflictError("Delivery has already been reviewed", current_status=order.status)
        return order.delivery

    async def accept_delivery(self, buyer_id: str, order_id: str) -> Order:
        def change(order: Order) -> None:
            _require_party(order, buyer_id, "buyer")
            delivery = self._require_pending_delivery(order)
            delivery.status = "accepted"
            delivery.accepted_at = self.clock()

        order = await self._transition(order_id, change)
        self._notify(order, order.seller_id, "delivery_accepted")
        self._email(order, order.seller_id, "delivery_accepted")
        return order

    async def reject_delivery(self, buyer_id: str, order_id: str, reason: str, redelivery_days: int) -> Order:
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reject a delivery")
        _check_days(redelivery_days, MAX_REDELIVERY_DAYS, "Redelivery time")

        def change(order: Order) -> None:
            _require_party(order, buyer_id, "buyer")
            delivery = self._require_pending_delivery(order)
            delivery.status = "rejected"
            delivery.rejection_reason = reason.strip()
            delivery.redelivery_deadline = self.clock() + timedelta(days=redelivery_days)
            order.status = "in_progress"

        order = await self._transition(order_id, change)
        deadline = order.delivery.redelivery_deadline.isoformat()
        self._notify(order, order.seller_id, "delivery_rejected", reason=reason, redeliveryDeadline=deadline)
        self._email(order, order.seller_id, "delivery_rejected", reason=reason, redeliveryDeadline=deadline)
        return order

    # Generic status update

    async def update_status(self, caller_id: str, order_id: str, target: str) -> Order:
        if target not in UPDATABLE_STATUSES:
            raise ValidationError(f"Status can only be updated to {' or '.join(UPDATABLE_STATUSES)}")

        def change(order: Order) -> None:
            _require_party(order, caller_id, "seller")
            if target == "in_progress":
                # Work may start before payment; the order stays payable and sweepable
                _require_status(order, "activated")
                order.status = "in_progress"
                order.start_date = self.clock()
                return
            if order.payment_status != "completed":
                raise StateConflictError("Order has not been paid", current_status=order.status)
            accepted = order.status == "delivered" and order.delivery and order.delivery.status == "accepted"
            if order.status != "in_progress" and not accepted:
                raise StateConflictError(
                    "Order can be completed only while in progress or after the buyer accepted the delivery",
                    current_status=order.status,
                )
            order.status = "completed"
            order.completion_date = self.clock()

        order = await self._transition(order_id, change)
        if target == "completed":
            await self.store.increment_stats(order.buyer_id, completed_orders=1)
            await self.store.increment_stats(
                order.seller_id, completed_orders=1, total_earnings=order.seller_amount or 0
            )
            await log_event(
                self.store, caller_id, "order_completed", "order", order.id, {"seller_amount": order.seller_amount},
                created_at=self.clock(),
            )
            self._notify(order, order.seller_id, "order_completed", sellerAmount=order.seller_amount)
            self._notify(order, order.buyer_id, "review_requested", sellerId=order.seller_id)
        return order

    # Cancellation

    def _mark_cancelled(self, order: Order, by: str, reason: str | None) -> None:
        if order.payment_lock is not None:
            raise StateConflictError("A payment is being processed for this order", current_status=order.status)
        order.status = "cancelled"
        order.cancellation = Cancellation(reason=reason, cancelled_by=by, cancelled_at=self.clock())
        if order.payment_status == "completed":
            order.payment_status = "refunded"
            order.refund_settled = False

    async def _after_cancel(self, order: Order) -> None:
        if order.job_id:
            await self.store.release_job(order.job_id)
        await self.store.increment_stats(order.buyer_id, cancelled_orders=1)
        await self.store.increment_stats(order.seller_id, cancelled_orders=1)
        await log_event(
            self.store,
            None if order.cancellation.cancelled_by == "system" else self._actor_id(order),
            "order_cancelled",
            "order",
            order.id,
            {"by": order.cancellation.cancelled_by, "reason": order.cancellation.reason},
            created_at=self.clock(),
        )
        if order.payment_status == "refunded":
            try:
                await self.settle_refund(order)
            except AppError as e:
                # Left for the sweeper's refund pass
                log.warning("refund_deferred", order_id=order.id, reason=e.message)

    def _actor_id(self, order: Order) -> str:
        return order.buyer_id if order.cancellation.cancelled_by == "buyer" else order.seller_id

    async def cancel_order(self, caller_id: str, order_id: str, reason: str | None = None) -> Order:
        def change(order: Order) -> None:
            party = order.party_of(caller_id)
            if party is None:
                raise AuthorizationError("Only the buyer or the seller can cancel this order")
            _require_status(order, *OPEN_STATUSES, message=f"Cannot cancel a {order.status} order")
            self._mark_cancelled(order, party, reason)

        order = await self._transition(order_id, change)
        await self._after_cancel(order)
        other = order.counterparty_id(order.cancellation.cancelled_by)
        self._notify(order, other, "order_cancelled", reason=reason, cancelledBy=order.cancellation.cancelled_by)
        self._email(order, other, "order_cancelled", reason=reason)
        return order

    async def expire(self, order_id: str) -> Order:
        """Cancel an unpaid order whose payment deadline passed. Used by the sweeper."""
        def change(order: Order) -> None:
            if (
                not order.awaiting_payment()
                or order.payment_lock is not None
                or order.payment_deadline is None
                or order.payment_deadline >= self.clock()
            ):
                raise StateConflictError("Order is no longer eligible for expiry", current_status=order.status)
            self._mark_cancelled(order, "system", "Payment deadline expired")

        order = await self._transition(order_id, change)
        await self._after_cancel(order)
        for user_id in (order.buyer_id, order.seller_id):
            self._notify(order, user_id, "order_expired")
            self._email(order, user_id, "order_expired")
        return order

    async def settle_refund(self, order: Order) -> Order:
        """Credit the buyer for a cancelled paid order. Idempotent per order."""
        if order.refund_settled:
            return order
        amount = order.total_amount or order.price
        result = await self.wallet.credit(
            order.buyer_id, amount, "order_refund", f"refund:{order.id}", "order", order.id
        )

        def change(o: Order) -> None:
            o.refund_settled = True

        order = await self._transition(order.id, change)
        # A duplicate credit means an earlier settle already recorded the refund
        if result.outcome == "applied":
            await log_event(
                self.store, order.buyer_id, "order_refunded", "order", order.id, {"amount": amount},
                created_at=self.clock(),
            )
            self._notify(order, order.buyer_id, "order_refunded", amount=amount)
        return order

    # Extensions

    async def request_extension(self, caller_id: str, order_id: str, reason: str, days: int) -> tuple[Order, ExtensionRequest]:
        if not reason or not reason.strip():
            raise ValidationError("A reason is required")
        _check_days(days, MAX_EXTENSION_DAYS, "Extension")
        request = ExtensionRequest(requested_by="buyer", reason=reason.strip(), extension_days=days)

        def change(order: Order) -> None:
            party = order.party_of(caller_id)
            if party is None:
                raise AuthorizationError("Only the buyer or the seller can request an extension")
            _require_status(order, "activated", "in_progress", message="This order cannot be extended")
            if any(e.status == "pending" and e.requested_by == party for e in order.extension_requests):
                raise StateConflictError("You already have a pending extension request", current_status=order.status)
            request.requested_by = party
            request.requested_at = self.clock()
            order.extension_requests.append(request.model_copy())

        order = await self._transition(order_id, change)
        self._notify(
            order,
            order.counterparty_id(request.requested_by),
            "extension_requested",
            extensionId=request.id,
            days=days,
            reason=request.reason,
        )
        return order, request

    async def respond_to_extension(
        self, responder_id: str, order_id: str, extension_id: str, approved: bool
    ) -> tuple[Order, ExtensionRequest]:
        def change(order: Order) -> None:
            ext = order.find_extension(extension_id)
            if ext is None:
                raise NotFoundError("Extension request not found")
            party = order.party_of(responder_id)
            if party is None or party == ext.requested_by:
                raise AuthorizationError("Only the other party can respond to this request")
            if ext.status != "pending":
                raise StateConflictError("Extension request was already answered", current_status=order.status)
            if approved:
                extra = timedelta(days=ext.extension_days)
                if order.awaiting_payment():
                    order.payment_deadline = (order.payment_deadline or self.clock()) + extra
                elif order.status == "in_progress":
                    order.due_date = (order.due_date or self.clock()) + extra
                else:
                    raise StateConflictError("This order can no longer be extended", current_status=order.status)
            ext.status = "approved" if approved else "rejected"
            ext.responded_by = responder_id
            ext.responded_at = self.clock()

        order = await self._transition(order_id, change)
        ext = order.find_extension(extension_id)
        self._notify(
            order,
            order.counterparty_id(order.party_of(responder_id)),
            "extension_approved" if approved else "extension_rejected",
            extensionId=extension_id,
            paymentDeadline=order.payment_deadline.isoformat() if order.payment_deadline else None,
            dueDate=order.due_date.isoformat() if order.due_date else None,
        )
        return order, ext

    async def extend_payment_deadline(self, seller_id: str, order_id: str, days: int) -> Order:
        _check_days(days, MAX_EXTENSION_DAYS, "Extension")

        def change(order: Order) -> None:
            _require_party(order, seller_id, "seller")
            if not order.awaiting_payment():
                raise StateConflictError(
                    "Only the payment deadline of an unpaid order can be extended", current_status=order.status
                )
            order.payment_deadline = (order.payment_deadline or self.clock()) + timedelta(days=days)

        order = await self._transition(order_id, change)
        self._notify(order, order.buyer_id, "payment_deadline_extended", paymentDeadline=order.payment_deadline.isoformat())
        return order

    # Reads

    async def get_order(self, user_id: str, order_id: str) -> Order:
        order = await self._load(order_id)
        if order.party_of(user_id) is None:
            raise AuthorizationError("Not authorized to view this order")
        return order

    async def list_orders(
        self,
        user_id: str,
        role: Party = "buyer",
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        filters: dict[str, Any] = {"buyer_id": user_id} if role == "buyer" else {"seller_id": user_id}
        statuses = [status] if status else None
        orders = await self.store.list_orders(**filters, statuses=statuses, limit=limit, offset=offset)
        total = await self.store.count_orders(**filters, statuses=statuses)
        return orders, total
