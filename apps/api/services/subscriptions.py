"""Subscription plans, App Store purchases and tier bookkeeping."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import stripe_price_ids, stripe_product_ids
from models.payment_history import PaymentHistory
from models.subscription import Subscription
from models.user import User
from services.credits import add_credits
from services.errors import DuplicateTransactionError, ValidationError

logger = logging.getLogger(__name__)

APP_STORE_PERIOD_DAYS = 30
ACTIVE_STRIPE_STATUSES = {"active", "trialing"}


@dataclass(frozen=True)
class SubscriptionPlan:
    tier: str
    name: str
    price: float
    credits: int
    images: int
    description: str
    apple_product_id: str = ""


SUBSCRIPTION_PLANS: Dict[str, SubscriptionPlan] = {
    "free": SubscriptionPlan(
        tier="free",
        name="Free",
        price=0.0,
        credits=40,
        images=10,
        description="Get started with 10 free attempts and 40 credits",
    ),
    "basic": SubscriptionPlan(
        tier="basic",
        name="Basic",
        price=9.9,
        credits=800,
        images=200,
        description="800 credits, 200 image generations per month",
        apple_product_id="com.nanobanana.basic",
    ),
    "pro": SubscriptionPlan(
        tier="pro",
        name="Pro",
        price=29.9,
        credits=3000,
        images=750,
        description="3000 credits, 750 image generations per month",
        apple_product_id="com.nanobanana.pro",
    ),
    "premium": SubscriptionPlan(
        tier="premium",
        name="Premium",
        price=59.9,
        credits=8000,
        images=2000,
        description="8000 credits, 2000 image generations per month",
        apple_product_id="com.nanobanana.premium",
    ),
}

PAID_TIERS = ("basic", "pro", "premium")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from databases without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_plan(tier: str) -> SubscriptionPlan:
    plan = SUBSCRIPTION_PLANS.get(str(tier or "").strip().lower())
    if plan is None:
        raise ValidationError("Invalid subscription tier")
    return plan


def plan_to_dict(plan: SubscriptionPlan) -> Dict[str, Any]:
    return asdict(plan)


def tier_for_price_id(price_id: Optional[str]) -> Optional[str]:
    if not price_id:
        return None
    for tier, configured in stripe_price_ids().items():
        if configured and configured == price_id:
            return tier
    return None


def tier_for_product_id(product_id: Optional[str]) -> Optional[str]:
    if not product_id:
        return None
    for tier, configured in stripe_product_ids().items():
        if configured and configured == product_id:
            return tier
    return None


def tier_for_app_store_product(product_id: Optional[str]) -> Optional[str]:
    if not product_id:
        return None
    for plan in SUBSCRIPTION_PLANS.values():
        if plan.apple_product_id and plan.apple_product_id == product_id:
            return plan.tier
    return None


def serialize_subscription(subscription: Subscription) -> Dict[str, Any]:
    return {
        "id": subscription.id,
        "user_id": subscription.user_id,
        "payment_provider": subscription.payment_provider,
        "external_subscription_id": subscription.external_subscription_id,
        "apple_transaction_id": subscription.apple_transaction_id,
        "tier": subscription.tier,
        "price": subscription.price,
        "credits_per_month": subscription.credits_per_month,
        "images_per_month": subscription.images_per_month,
        "status": subscription.status,
        "purchased_at": subscription.purchased_at.isoformat() if subscription.purchased_at else None,
        "expires_at": subscription.expires_at.isoformat() if subscription.expires_at else None,
        "auto_renew": bool(subscription.auto_renew),
        "created_at": subscription.created_at.isoformat() if subscription.created_at else None,
    }


async def purchase_app_store_subscription(
    user: User,
    tier: str,
    receipt_data: str,
    transaction_id: str,
    db: AsyncSession,
) -> Dict[str, Any]:
    """Apply a one-time App Store purchase. A transaction id is only ever applied once."""
    if not tier or not receipt_data or not transaction_id:
        raise ValidationError("Missing required fields")

    resolved_tier = tier_for_app_store_product(f"com.nanobanana.{str(tier).strip().lower()}")
    if resolved_tier is None:
        raise ValidationError("Invalid subscription tier")
    plan = SUBSCRIPTION_PLANS[resolved_tier]

    existing = await db.execute(
        select(Subscription.id).where(Subscription.apple_transaction_id == transaction_id)
    )
    if existing.scalar_one_or_none() is not None:
        raise DuplicateTransactionError("Transaction already processed")

    now = utc_now()
    expires_at = now + timedelta(days=APP_STORE_PERIOD_DAYS)
    subscription = Subscription(
        user_id=user.id,
        payment_provider="apple",
        apple_transaction_id=transaction_id,
        tier=plan.tier,
        price=plan.price,
        credits_per_month=plan.credits,
        images_per_month=plan.images,
        status="completed",
        purchased_at=now,
        expires_at=expires_at,
        auto_renew=True,
    )
    db.add(subscription)
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        raise DuplicateTransactionError("Transaction already processed") from exc

    user.subscription_tier = plan.tier
    user.subscription_expires_at = expires_at

    grant = await add_credits(
        user.id,
        db,
        amount=plan.credits,
        transaction_type="subscription",
        description=f"{plan.name} subscription activated",
        related_id=subscription.id,
        commit=False,
    )
    db.add(
        PaymentHistory(
            user_id=user.id,
            subscription_id=subscription.id,
            external_payment_id=transaction_id,
            payment_provider="apple",
            amount=plan.price,
            currency="usd",
            status="completed",
            receipt_data=receipt_data,
        )
    )
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise DuplicateTransactionError("Transaction already processed") from exc

    logger.info(
        "app_store_purchase user=%s tier=%s subscription=%s balance=%s",
        user.id,
        plan.tier,
        subscription.id,
        grant["new_balance"],
    )
    return {
        "success": True,
        "subscription": serialize_subscription(subscription),
        "credits_added": plan.credits,
        "new_balance": grant["new_balance"],
    }


async def refresh_subscription_tier(user: User, db: AsyncSession) -> bool:
    """Drop the user back to ``free`` once the paid period has ended. Returns True when changed."""
    expires_at = as_utc(user.subscription_expires_at)
    if user.subscription_tier == "free" or expires_at is None:
        return False
    if utc_now() < expires_at:
        return False

    logger.info("subscription_expired user=%s tier=%s", user.id, user.subscription_tier)
    user.subscription_tier = "free"
    user.subscription_expires_at = None
    await db.commit()
    return True


async def get_active_subscription(user_id: str, db: AsyncSession) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.status == "completed")
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_subscription_status(user: User, db: AsyncSession) -> Dict[str, Any]:
    await refresh_subscription_tier(user, db)
    await db.refresh(user)

    plan = SUBSCRIPTION_PLANS.get(user.subscription_tier) or SUBSCRIPTION_PLANS["free"]
    active = await get_active_subscription(user.id, db)
    expires_at = as_utc(user.subscription_expires_at)
    return {
        "success": True,
        "subscription_tier": user.subscription_tier,
        "subscription_expires_at": expires_at.isoformat() if expires_at else None,
        "is_active": user.subscription_tier != "free" and expires_at is not None and expires_at > utc_now(),
        "credits": int(user.credits or 0),
        "free_attempts": int(user.free_attempts or 0),
        "plan": plan_to_dict(plan),
        "active_subscription": serialize_subscription(active) if active else None,
        "available_plans": [plan_to_dict(SUBSCRIPTION_PLANS[tier]) for tier in PAID_TIERS],
    }
