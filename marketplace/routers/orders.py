from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from marketplace.deps import get_current_user, get_services
from marketplace.models.order import Order
from marketplace.models.user import User
from marketplace.services.container import Services

router = APIRouter()

# Concurrency bookkeeping stays server-side
INTERNAL_FIELDS = {"inflight_key", "payment_lock", "payment_locked_at", "version"}


def order_out(order: Order) -> dict[str, Any]:
    return order.model_dump(mode="json", exclude=INTERNAL_FIELDS)


class FromGigRequest(BaseModel):
    gig_id: str
    price_tier: int | None = None


class FromProposalRequest(BaseModel):
    proposal_id: str


class ReasonRequest(BaseModel):
    reason: str | None = None


class DeliverRequest(BaseModel):
    description: str = ""
    notes: str = ""
    link: str | None = None
    files: list[str] = Field(default_factory=list)


class RejectDeliveryRequest(BaseModel):
    reason: str
    redelivery_days: int = 3


class StatusRequest(BaseModel):
    status: str


class ExtensionCreateRequest(BaseModel):
    reason: str
    days: int


class ExtensionResponseRequest(BaseModel):
    approved: bool


class DeadlineRequest(BaseModel):
    days: int


@router.post("/from-gig", status_code=201)
async def create_from_gig(
    body: FromGigRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Place an order for a gig (or one of its price tiers)."""
    order = await services.orders.create_from_gig(user.id, body.gig_id, body.price_tier)
    return {"order": order_out(order)}


@router.post("/from-proposal", status_code=201)
async def create_from_proposal(
    body: FromProposalRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Hire a freelancer from a proposal; the order is activated immediately."""
    order = await services.orders.create_from_proposal(user.id, body.proposal_id)
    return {"order": order_out(order)}


@router.get("")
async def list_orders(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
    role: Literal["buyer", "seller"] = "buyer",
    status: str | None = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    orders, total = await services.orders.list_orders(user.id, role, status, limit, offset)
    return {"orders": [order_out(o) for o in orders], "total": total, "limit": limit, "offset": offset}


@router.get("/{order_id}")
async def get_order(order_id: str, user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    order = await services.orders.get_order(user.id, order_id)
    return {"order": order_out(order)}


@router.post("/{order_id}/accept")
async def accept_order(order_id: str, user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    order = await services.orders.accept_order(user.id, order_id)
    return {"order": order_out(order)}


@router.post("/{order_id}/reject")
async def reject_order(
    order_id: str,
    body: ReasonRequest | None = None,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    order = await services.orders.reject_order(user.id, order_id, body.reason if body else None)
    return {"order": order_out(order)}


@router.post("/{order_id}/deliver")
async def deliver_order(
    order_id: str,
    body: DeliverRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    order = await services.orders.deliver_order(
        user.id, order_id, body.description, body.notes, body.link, body.files
    )
    return {"order": order_out(order)}


@router.post("/{order_id}/delivery/accept")
async def accept_delivery(order_id: str, user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    order = await services.orders.accept_delivery(user.id, order_id)
    return {"order": order_out(order)}


@router.post("/{order_id}/delivery/reject")
async def reject_delivery(
    order_id: str,
    body: RejectDeliveryRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    order = await services.orders.reject_delivery(user.id, order_id, body.reason, body.redelivery_days)
    return {"order": order_out(order)}


@router.put("/{order_id}/status")
async def update_status(
    order_id: str,
    body: StatusRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    order = await services.orders.update_status(user.id, order_id, body.status)
    return {"order": order_out(order)}


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    body: ReasonRequest | None = None,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    order = await services.orders.cancel_order(user.id, order_id, body.reason if body else None)
    return {"order": order_out(order)}


@router.post("/{order_id}/extensions", status_code=201)
async def request_extension(
    order_id: str,
    body: ExtensionCreateRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    order, ext = await services.orders.request_extension(user.id, order_id, body.reason, body.days)
    return {"order": order_out(order), "extension": ext.model_dump(mode="json")}


@router.post("/{order_id}/extensions/{extension_id}/respond")
async def respond_to_extension(
    order_id: str,
    extension_id: str,
    body: ExtensionResponseRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    order, ext = await services.orders.respond_to_extension(user.id, order_id, extension_id, body.approved)
    return {"order": order_out(order), "extension": ext.model_dump(mode="json")}


@router.post("/{order_id}/payment-deadline")
async def extend_payment_deadline(
    order_id: str,
    body: DeadlineRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Seller shortcut: extend the payment deadline without a request/response round."""
    order = await services.orders.extend_payment_deadline(user.id, order_id, body.days)
    return {"order": order_out(order)}
