"""App Store subscription purchase and status router."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.subscriptions import get_subscription_status, purchase_app_store_subscription

router = APIRouter()


class PurchaseRequest(BaseModel):
    tier: str
    receipt_data: str
    transaction_id: str


@router.post("/purchase")
async def purchase_subscription(
    request: PurchaseRequest,
    _rate_limit: None = Depends(rate_limit("subscription_purchase", limit=20, window_seconds=3600)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await purchase_app_store_subscription(
        user,
        request.tier,
        request.receipt_data,
        request.transaction_id,
        db,
    )


@router.get("/status")
async def subscription_status(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_subscription_status(user, db)
