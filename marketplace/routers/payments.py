from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from marketplace.deps import get_current_user, get_services
from marketplace.models.intent import PaymentMethod
from marketplace.models.user import User
from marketplace.routers.orders import order_out
from marketplace.services.container import Services

router = APIRouter()


class PaymentRequest(BaseModel):
    order_id: str
    method: PaymentMethod
    details: dict[str, Any] = Field(default_factory=dict)


class VerifyPaymentRequest(BaseModel):
    payment_id: str
    otp: str


@router.post("/request")
async def request_payment(
    body: PaymentRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Start paying an activated order; the OTP goes to the buyer's email."""
    payment = await services.payments.request_payment(user.id, body.order_id, body.method, body.details)
    return {
        "message": "OTP sent to your email. Please verify to complete payment.",
        "payment_id": payment.id,
        "amount": payment.amount,
        "otp_expiry": payment.otp_expiry.isoformat(),
    }


@router.post("/verify")
async def verify_payment(
    body: VerifyPaymentRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    payment, order = await services.payments.complete_payment(user.id, body.payment_id, body.otp)
    return {"message": "Payment completed successfully", "payment": payment.public(), "order": order_out(order)}


@router.post("/{payment_id}/cancel")
async def cancel_payment(payment_id: str, user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    payment = await services.payments.cancel(user.id, payment_id)
    return {"payment": payment.public()}


@router.get("/history")
async def payment_history(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    payments, total = await services.payments.history(user.id, limit, offset)
    return {"payments": [p.public() for p in payments], "total": total, "limit": limit, "offset": offset}
