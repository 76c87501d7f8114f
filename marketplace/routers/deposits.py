from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from marketplace.deps import get_current_user, get_services
from marketplace.models.intent import PaymentMethod
from marketplace.models.user import User
from marketplace.services.container import Services

router = APIRouter()


class DepositRequest(BaseModel):
    amount: int
    method: PaymentMethod
    details: dict[str, Any] = Field(default_factory=dict)


class VerifyDepositRequest(BaseModel):
    deposit_id: str
    otp: str


@router.post("/request")
async def request_deposit(
    body: DepositRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Add money to the wallet; the OTP goes to the user's email."""
    deposit = await services.deposits.request(user.id, body.amount, body.method, body.details)
    return {
        "message": "OTP sent to your email. Please verify to complete deposit.",
        "deposit_id": deposit.id,
        "otp_expiry": deposit.otp_expiry.isoformat(),
    }


@router.post("/verify")
async def verify_deposit(
    body: VerifyDepositRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    deposit, balance = await services.deposits.verify(user.id, body.deposit_id, body.otp)
    return {"message": "Money added successfully", "deposit": deposit.public(), "new_balance": balance}


@router.post("/{deposit_id}/cancel")
async def cancel_deposit(deposit_id: str, user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    deposit = await services.deposits.cancel(user.id, deposit_id)
    return {"deposit": deposit.public()}


@router.get("/history")
async def deposit_history(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    deposits, total = await services.deposits.history(user.id, limit, offset)
    return {"deposits": [d.public() for d in deposits], "total": total, "limit": limit, "offset": offset}
