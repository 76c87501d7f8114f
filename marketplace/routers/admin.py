from dataclasses import asdict

from fastapi import APIRouter, Depends, Request

from marketplace.deps import require_admin
from marketplace.models.user import User

router = APIRouter()


@router.post("/sweep")
async def admin_sweep(request: Request, user: User = Depends(require_admin)):
    """Admin: run one expiry sweep pass now."""
    report = await request.app.state.sweeper.run_once()
    return asdict(report)
