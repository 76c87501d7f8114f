from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from marketplace.deps import get_current_user, get_services
from marketplace.models.intent import PaymentMethod
from marketplace.models.user import User
from marketplace.services.container import Services

router = APIRouter()


class WithdrawalRequest(BaseModel):
    amount: int
    method: PaymentMethod
    details: dict[str, Any] = Field(default_factory=dict)


class VerifyWithdrawalRequest(BaseModel):
    withdrawal_id: str
    otp: str


@router.post("/request")
async def request_withdrawal(
    body: WithdrawalRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    withdrawal = await services.withdrawals.request(user.id, body.amount, body.method, body.details)
    return {
        "message": "OTP sent to your email. Please verify to complete withdrawal.",
        "withdrawal_id": withdrawal.id,
        "otp_expiry": withdrawal.otp_expiry.isoformat(),
    }


@router.post("/verify")
async def verify_withdrawal(
    body: VerifyWithdrawalRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    withdrawal, balance = await services.withdrawals.verify(user.id, body.withdrawal_id, body.otp)
    return {"message": "Withdrawal completed successfully", "withdrawal": withdrawal.public(), "new_balance": balance}


@router.post("/{withdrawal_id}/cancel")
async def cancel_withdrawal(
    withdrawal_id: str, user: User = Depends(get_current_user), services: Services = Depends(get_services)
):
    withdrawal = await services.withdrawals.cancel(user.id, withdrawal_id)
    return {"withdrawal": withdrawal.public()}


@router.get("/history")
async def withdrawal_history(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    withdrawals, total = await services.withdrawals.history(user.id, limit, offset)
    return {"withdrawals": [w.public() for w in withdrawals], "total": total, "limit": limit, "offset": offset}


@router.get("/summary")
async def financial_summary(user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    """Balance, lifetime earnings and spending, total withdrawn."""
    return await services.withdrawals.financial_summary(user.id)
