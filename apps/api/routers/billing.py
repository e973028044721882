"""Stripe checkout, subscription management and webhook router."""

from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings, stripe_price_ids
from database import get_db
from models.subscription import Subscription
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.billing_webhooks import process_event, verify_webhook
from services.errors import BillingNotConfiguredError, NotFoundError, ValidationError
from services.stripe_gateway import get_stripe_gateway
from services.subscriptions import PAID_TIERS, SUBSCRIPTION_PLANS, serialize_subscription, utc_now

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutSessionRequest(BaseModel):
    tier: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class ManageSubscriptionRequest(BaseModel):
    action: Literal["cancel", "resume"]


async def _active_stripe_subscription(user: User, db: AsyncSession) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user.id,
            Subscription.payment_provider == "stripe",
            Subscription.status == "completed",
            Subscription.expires_at > utc_now(),
        )
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _require_active_subscription(user: User, db: AsyncSession) -> Subscription:
    subscription = await _active_stripe_subscription(user, db)
    if subscription is None or not subscription.external_subscription_id:
        raise NotFoundError("No active Stripe subscription found")
    return subscription


def _stripe_details(stripe_subscription: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "status": stripe_subscription.get("status"),
        "cancel_at_period_end": bool(stripe_subscription.get("cancel_at_period_end")),
        "current_period_end": stripe_subscription.get("current_period_end"),
    }


@router.post("/checkout-session")
async def create_checkout_session(
    request: CheckoutSessionRequest,
    _rate_limit: None = Depends(rate_limit("stripe_checkout", limit=20, window_seconds=3600)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_stripe_gateway),
):
    tier = str(request.tier or "").strip().lower()
    if tier not in PAID_TIERS:
        raise ValidationError("Invalid subscription tier")
    price_id = stripe_price_ids().get(tier)
    if not price_id:
        raise BillingNotConfiguredError("Stripe price ID not configured for this plan. Please contact support.")

    if await _active_stripe_subscription(user, db) is not None:
        raise ValidationError(
            "You already have an active Stripe subscription. Please manage it from your account page."
        )

    if not user.stripe_customer_id:
        customer = await gateway.create_customer(email=user.email, user_id=user.id)
        user.stripe_customer_id = customer["id"]
        await db.commit()

    plan = SUBSCRIPTION_PLANS[tier]
    app_url = settings.APP_URL.rstrip("/")
    session = await gateway.create_checkout_session(
        customer_id=user.stripe_customer_id,
        price_id=price_id,
        user_id=user.id,
        tier=tier,
        credits=plan.credits,
        images=plan.images,
        success_url=request.success_url or f"{app_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=request.cancel_url or f"{app_url}/subscription",
    )
    logger.info("Created checkout session %s for user %s tier=%s", session.get("id"), user.id, tier)
    return {"success": True, "session_id": session.get("id"), "session_url": session.get("url")}


@router.get("/checkout-session/{session_id}")
async def read_checkout_session(
    session_id: str,
    user: User = Depends(get_current_user),
    gateway=Depends(get_stripe_gateway),
):
    session = await gateway.retrieve_checkout_session(session_id)
    owner = (session.get("metadata") or {}).get("user_id")
    customer = session.get("customer")
    customer_id = customer.get("id") if isinstance(customer, dict) else customer
    if owner != user.id and (not customer_id or customer_id != user.stripe_customer_id):
        raise NotFoundError("Checkout session not found")

    subscription = session.get("subscription")
    return {
        "success": True,
        "session": {
            "id": session.get("id"),
            "payment_status": session.get("payment_status"),
            "status": session.get("status"),
            "customer_email": (session.get("customer_details") or {}).get("email"),
            "subscription_id": subscription.get("id") if isinstance(subscription, dict) else subscription,
            "amount_total": session.get("amount_total"),
            "currency": session.get("currency"),
        },
    }


@router.get("/subscription")
async def read_stripe_subscription(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_stripe_gateway),
):
    subscription = await _active_stripe_subscription(user, db)
    if subscription is None:
        return {"success": True, "subscription": None}

    payload = serialize_subscription(subscription)
    if subscription.external_subscription_id:
        stripe_subscription = await gateway.retrieve_subscription(subscription.external_subscription_id)
        payload["stripe_details"] = _stripe_details(stripe_subscription)
    return {"success": True, "subscription": payload}


@router.post("/subscription")
async def manage_stripe_subscription(
    request: ManageSubscriptionRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_stripe_gateway),
):
    subscription = await _require_active_subscription(user, db)
    cancel = request.action == "cancel"
    updated = await gateway.set_cancel_at_period_end(subscription.external_subscription_id, cancel)

    subscription.auto_renew = not cancel
    await db.commit()

    payload = serialize_subscription(subscription)
    payload["stripe_details"] = _stripe_details(updated)
    return {
        "success": True,
        "message": (
            "Subscription will be cancelled at the end of the billing period"
            if cancel
            else "Subscription resumed successfully"
        ),
        "subscription": payload,
    }


@router.delete("/subscription")
async def cancel_stripe_subscription(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_stripe_gateway),
):
    subscription = await _require_active_subscription(user, db)
    await gateway.cancel_subscription(subscription.external_subscription_id)

    subscription.status = "cancelled"
    subscription.auto_renew = False
    subscription.expires_at = utc_now()
    user.subscription_tier = "free"
    user.subscription_expires_at = None
    await db.commit()
    logger.info("Cancelled Stripe subscription %s for user %s", subscription.id, user.id)
    return {"success": True, "message": "Subscription cancelled immediately"}


@router.put("/subscription")
async def open_billing_portal(
    user: User = Depends(get_current_user),
    gateway=Depends(get_stripe_gateway),
):
    if not user.stripe_customer_id:
        raise NotFoundError("No Stripe customer found for this account")
    portal = await gateway.create_portal_session(
        customer_id=user.stripe_customer_id,
        return_url=f"{settings.APP_URL.rstrip('/')}/subscription",
    )
    return {"success": True, "url": portal.get("url")}


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_stripe_gateway),
):
    payload = await request.body()
    event = verify_webhook(payload, request.headers.get("stripe-signature"))
    outcome = await process_event(event, db, gateway)
    return {"received": True, "event_id": event["id"], "outcome": outcome}
