from fastapi import APIRouter, Depends, Query

from marketplace.deps import get_current_user, get_services
from marketplace.models.user import User
from marketplace.services.container import Services

router = APIRouter()


@router.get("/balance")
async def wallet_balance(user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    """Return current wallet balance."""
    balance = await services.wallet.get_balance(user.id)
    return {"balance": balance, "currency": user.wallet.currency}


@router.get("/ledger")
async def wallet_ledger(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current user (newest first)."""
    entries = await services.wallet.list_ledger(user.id, limit=limit, offset=offset)
    out = [
        {
            "id": e.id,
            "amount": e.amount,
            "balance_after": e.balance_after,
            "reason": e.reason,
            "reference_type": e.reference_type,
            "reference_id": e.reference_id,
            "created_at": e.created_at.isoformat(),
        }
        for e in entries
    ]
    return {"entries": out, "limit": limit, "offset": offset}
