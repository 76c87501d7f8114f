"""Delivery review and extension requests."""

from datetime import timedelta

import pytest

from marketplace.core.exceptions import AuthorizationError, NotFoundError, StateConflictError, ValidationError


async def test_reject_delivery_returns_to_in_progress(services, clock, buyer, seller, in_progress_order):
    await services.orders.deliver_order(seller.id, in_progress_order.id, description="first cut")
    order = await services.orders.reject_delivery(buyer.id, in_progress_order.id, "incomplete", 3)
    assert order.status == "in_progress"
    assert order.delivery.status == "rejected"
    assert order.delivery.rejection_reason == "incomplete"
    assert order.delivery.redelivery_deadline == clock.now + timedelta(days=3)

    # Seller can deliver again
    again = await services.orders.deliver_order(seller.id, in_progress_order.id, description="second cut")
    assert again.status == "delivered"
    assert again.delivery.status == "pending"


@pytest.mark.parametrize("reason,days", [("", 3), ("   ", 3), ("bad", 0), ("bad", 31)])
async def test_reject_delivery_validation(services, buyer, seller, in_progress_order, reason, days):
    await services.orders.deliver_order(seller.id, in_progress_order.id, description="done")
    with pytest.raises(ValidationError):
        await services.orders.reject_delivery(buyer.id, in_progress_order.id, reason, days)


async def test_only_buyer_reviews_delivery(services, seller, in_progress_order):
    await services.orders.deliver_order(seller.id, in_progress_order.id, description="done")
    with pytest.raises(AuthorizationError):
        await services.orders.accept_delivery(seller.id, in_progress_order.id)


async def test_review_requires_delivered(services, buyer, in_progress_order):
    with pytest.raises(StateConflictError):
        await services.orders.accept_delivery(buyer.id, in_progress_order.id)


async def test_extension_approved_extends_payment_deadline(services, buyer, seller, activated_order):
    deadline = activated_order.payment_deadline
    order, ext = await services.orders.request_extension(buyer.id, activated_order.id, "Salary is late", 3)
    assert ext.requested_by == "buyer"
    assert ext.status == "pending"
    with pytest.raises(AuthorizationError):
        await services.orders.respond_to_extension(buyer.id, activated_order.id, ext.id, True)
    order, answered = await services.orders.respond_to_extension(seller.id, activated_order.id, ext.id, True)
    assert answered.status == "approved"
    assert answered.responded_by == seller.id
    assert order.payment_deadline == deadline + timedelta(days=3)
    with pytest.raises(StateConflictError):
        await services.orders.respond_to_extension(seller.id, activated_order.id, ext.id, True)


async def test_extension_extends_due_date_while_in_progress(services, buyer, seller, in_progress_order):
    due = in_progress_order.due_date
    _, ext = await services.orders.request_extension(seller.id, in_progress_order.id, "Need more time", 2)
    order, _ = await services.orders.respond_to_extension(buyer.id, in_progress_order.id, ext.id, True)
    assert order.due_date == due + timedelta(days=2)


async def test_rejected_extension_changes_nothing(services, buyer, seller, activated_order):
    _, ext = await services.orders.request_extension(seller.id, activated_order.id, "Holiday", 5)
    order, answered = await services.orders.respond_to_extension(buyer.id, activated_order.id, ext.id, False)
    assert answered.status == "rejected"
    assert order.payment_deadline == activated_order.payment_deadline


async def test_one_pending_request_per_requester(services, buyer, seller, activated_order):
    await services.orders.request_extension(buyer.id, activated_order.id, "First", 1)
    with pytest.raises(StateConflictError):
        await services.orders.request_extension(buyer.id, activated_order.id, "Second", 1)
    # The other party may still ask
    order, _ = await services.orders.request_extension(seller.id, activated_order.id, "Mine", 1)
    assert len(order.extension_requests) == 2


async def test_extension_guards(services, buyer, activated_order, make_user):
    stranger = await make_user("Stranger")
    with pytest.raises(AuthorizationError):
        await services.orders.request_extension(stranger.id, activated_order.id, "Please", 1)
    with pytest.raises(ValidationError):
        await services.orders.request_extension(buyer.id, activated_order.id, "Please", 0)
    with pytest.raises(NotFoundError):
        await services.orders.respond_to_extension(buyer.id, activated_order.id, "missing", True)


async def test_seller_extends_payment_deadline_directly(services, buyer, seller, activated_order):
    order = await services.orders.extend_payment_deadline(seller.id, activated_order.id, 4)
    assert order.payment_deadline == activated_order.payment_deadline + timedelta(days=4)
    with pytest.raises(AuthorizationError):
        await services.orders.extend_payment_deadline(buyer.id, activated_order.id, 4)


async def test_direct_extension_only_while_unpaid(services, seller, in_progress_order):
    with pytest.raises(StateConflictError):
        await services.orders.extend_payment_deadline(seller.id, in_progress_order.id, 2)
