"""Thin async wrapper over stripe-python. Every call returns plain dicts."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import stripe

from config import settings
from services.errors import BillingNotConfiguredError

logger = logging.getLogger(__name__)


def _to_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    return obj.to_dict()


class StripeGateway:
    """Blocking Stripe SDK calls executed in worker threads."""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY

    def _require_key(self) -> str:
        if not self.api_key:
            raise BillingNotConfiguredError("Stripe is not configured.")
        return self.api_key

    async def _call(self, fn, *args, **kwargs) -> Dict[str, Any]:
        kwargs["api_key"] = self._require_key()
        result = await asyncio.to_thread(fn, *args, **kwargs)
        return _to_dict(result)

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._call(stripe.Subscription.retrieve, subscription_id)

    async def create_customer(self, *, email: Optional[str], user_id: str) -> Dict[str, Any]:
        return await self._call(
            stripe.Customer.create,
            email=email or None,
            metadata={"user_id": user_id, "platform": "web"},
        )

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        user_id: str,
        tier: str,
        credits: int,
        images: int,
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, Any]:
        return await self._call(
            stripe.checkout.Session.create,
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            billing_address_collection="auto",
            allow_promotion_codes=True,
            subscription_data={
                "metadata": {
                    "user_id": user_id,
                    "subscription_tier": tier,
                    "credits": str(credits),
                    "images": str(images),
                }
            },
            metadata={"user_id": user_id, "subscription_tier": tier},
        )

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return await self._call(stripe.checkout.Session.retrieve, session_id)

    async def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> Dict[str, Any]:
        return await self._call(stripe.Subscription.modify, subscription_id, cancel_at_period_end=bool(cancel))

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._call(stripe.Subscription.cancel, subscription_id)

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, Any]:
        return await self._call(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )


def get_stripe_gateway() -> StripeGateway:
    return StripeGateway()
