"""Stripe webhook verification and subscription reconciliation.

Each verified event is applied in one database transaction together with a
``StripeEvent`` row keyed by the Stripe event id, so a redelivered event is
either rejected by the lookup or by the primary key and never applied twice.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CreditTransaction
from models.payment_history import PaymentHistory
from models.stripe_event import StripeEvent
from models.subscription import Subscription
from models.user import User
from services.credits import add_credits, set_credit_balance
from services.errors import BillingNotConfiguredError, WebhookVerificationError
from services.subscriptions import (
    ACTIVE_STRIPE_STATUSES,
    SUBSCRIPTION_PLANS,
    as_utc,
    tier_for_price_id,
    tier_for_product_id,
    utc_now,
)

logger = logging.getLogger(__name__)

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_SKIPPED = "skipped"
OUTCOME_IGNORED = "ignored"

RENEWAL_FALLBACK_DAYS = 30
# first period is granted by checkout.session.completed; proration invoices carry no plan grant
RENEWAL_BILLING_REASONS = {None, "", "subscription_cycle", "manual"}


def verify_webhook(payload: bytes, signature: Optional[str], secret: Optional[str] = None) -> Dict[str, Any]:
    """Check the ``Stripe-Signature`` header and return the decoded event."""
    webhook_secret = secret if secret is not None else settings.STRIPE_WEBHOOK_SECRET
    if not webhook_secret:
        raise BillingNotConfiguredError("Stripe webhook secret is not configured.")
    if not signature:
        raise WebhookVerificationError("Missing Stripe signature")

    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookVerificationError("Invalid webhook payload") from exc

    try:
        stripe.WebhookSignature.verify_header(
            text,
            signature,
            webhook_secret,
            tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
        )
    except stripe.SignatureVerificationError as exc:
        raise WebhookVerificationError("Invalid webhook signature") from exc

    try:
        event = json.loads(text)
    except ValueError as exc:
        raise WebhookVerificationError("Invalid webhook payload") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise WebhookVerificationError("Invalid webhook payload")
    return event


def _from_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _object_id(value: Any) -> Optional[str]:
    """Stripe fields may hold an id or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _price_and_product(subscription: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    price = _first_item(subscription).get("price") or {}
    if not isinstance(price, dict):
        return str(price), None
    return price.get("id"), _object_id(price.get("product"))


def _period_end(subscription: Dict[str, Any]) -> Optional[datetime]:
    return _from_timestamp(subscription.get("current_period_end")) or _from_timestamp(
        _first_item(subscription).get("current_period_end")
    )


def _resolve_tier(subscription: Dict[str, Any]) -> Optional[str]:
    price_id, product_id = _price_and_product(subscription)
    tier = tier_for_price_id(price_id) or tier_for_product_id(product_id)
    if tier is None:
        logger.error(
            "Unmapped Stripe price/product for subscription %s: price=%s product=%s",
            subscription.get("id"),
            price_id,
            product_id,
        )
    return tier


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _object_id(details.get("subscription"))


def _invoice_period_end(invoice: Dict[str, Any]) -> Optional[datetime]:
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        end = _from_timestamp((line.get("period") or {}).get("end"))
        if end is not None:
            return end
    return None


async def _resolve_user(
    db: AsyncSession,
    metadata: Optional[Dict[str, Any]],
    customer_id: Optional[str],
    reference_id: Optional[str] = None,
) -> Optional[User]:
    metadata = metadata or {}
    for candidate in (metadata.get("user_id"), metadata.get("supabase_user_id"), reference_id):
        if candidate:
            user = await db.get(User, str(candidate))
            if user is not None:
                return user
    if customer_id:
        result = await db.execute(select(User).where(User.stripe_customer_id == customer_id).limit(1))
        return result.scalar_one_or_none()
    return None


async def _subscription_by_external_id(db: AsyncSession, external_id: str) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription).where(Subscription.external_subscription_id == external_id)
    )
    return result.scalar_one_or_none()


async def _payment_recorded(db: AsyncSession, external_payment_id: str) -> bool:
    result = await db.execute(
        select(PaymentHistory.id).where(PaymentHistory.external_payment_id == external_payment_id)
    )
    return result.scalar_one_or_none() is not None


async def _record_payment(
    db: AsyncSession,
    *,
    user_id: str,
    subscription_id: Optional[str],
    external_payment_id: str,
    amount_cents: Any,
    fallback_amount: float,
    currency: Optional[str],
    status: str,
    payment_intent_id: Optional[str],
) -> None:
    if await _payment_recorded(db, external_payment_id):
        return
    amount = float(amount_cents) / 100.0 if amount_cents not in (None, "") else float(fallback_amount)
    db.add(
        PaymentHistory(
            user_id=user_id,
            subscription_id=subscription_id,
            external_payment_id=external_payment_id,
            stripe_payment_intent_id=payment_intent_id,
            payment_provider="stripe",
            amount=amount,
            currency=(currency or "usd").lower(),
            status=status,
        )
    )


def _apply_plan(row: Subscription, tier: str, price_id: Optional[str]) -> None:
    plan = SUBSCRIPTION_PLANS[tier]
    row.tier = plan.tier
    row.price = plan.price
    row.credits_per_month = plan.credits
    row.images_per_month = plan.images
    if price_id:
        row.stripe_price_id = price_id


async def _upsert_subscription(
    db: AsyncSession,
    stripe_subscription: Dict[str, Any],
    tier: str,
    user: User,
) -> Subscription:
    external_id = stripe_subscription["id"]
    price_id, _ = _price_and_product(stripe_subscription)
    row = await _subscription_by_external_id(db, external_id)
    if row is None:
        row = Subscription(
            user_id=user.id,
            payment_provider="stripe",
            external_subscription_id=external_id,
            tier=tier,
            status="pending",
        )
        db.add(row)
    _apply_plan(row, tier, price_id)
    row.expires_at = _period_end(stripe_subscription) or row.expires_at
    row.auto_renew = not bool(stripe_subscription.get("cancel_at_period_end"))
    await db.flush()
    return row


async def _other_active_subscription(
    db: AsyncSession,
    user_id: str,
    exclude_id: Optional[str],
) -> Optional[Subscription]:
    """Another completed subscription of the user whose period has not ended yet."""
    query = select(Subscription).where(Subscription.user_id == user_id, Subscription.status == "completed")
    if exclude_id is not None:
        query = query.where(Subscription.id != exclude_id)
    now = utc_now()
    for candidate in (await db.execute(query)).scalars().all():
        expires_at = as_utc(candidate.expires_at)
        if expires_at is not None and expires_at > now:
            return candidate
    return None


async def _activation_granted(db: AsyncSession, subscription_row_id: str) -> bool:
    result = await db.execute(
        select(CreditTransaction.id)
        .where(
            CreditTransaction.related_id == subscription_row_id,
            CreditTransaction.transaction_type == "subscription",
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def handle_checkout_completed(session: Dict[str, Any], db: AsyncSession, gateway: Any) -> str:
    subscription_id = _object_id(session.get("subscription"))
    if not subscription_id:
        logger.warning("Checkout session %s has no subscription; nothing to activate", session.get("id"))
        return OUTCOME_SKIPPED

    stripe_subscription = await gateway.retrieve_subscription(subscription_id)
    tier = _resolve_tier(stripe_subscription)
    if tier is None:
        return OUTCOME_SKIPPED

    customer_id = _object_id(session.get("customer"))
    user = await _resolve_user(
        db,
        session.get("metadata"),
        customer_id,
        reference_id=session.get("client_reference_id"),
    )
    if user is None:
        logger.error("No user for checkout session %s (customer=%s)", session.get("id"), customer_id)
        return OUTCOME_SKIPPED

    plan = SUBSCRIPTION_PLANS[tier]
    row = await _upsert_subscription(db, stripe_subscription, tier, user)

    if await _activation_granted(db, row.id):
        logger.info("Subscription %s already activated; checkout %s not re-applied", row.id, session.get("id"))
    else:
        row.status = "completed"
        row.purchased_at = row.purchased_at or utc_now()
        user.subscription_tier = tier
        user.subscription_expires_at = row.expires_at
        if customer_id:
            user.stripe_customer_id = customer_id
        grant = await set_credit_balance(
            user.id,
            db,
            balance=plan.credits,
            transaction_type="subscription",
            description=f"{plan.name} subscription activated",
            related_id=row.id,
            commit=False,
        )
        logger.info(
            "stripe_activation user=%s tier=%s subscription=%s balance=%s->%s",
            user.id,
            tier,
            row.id,
            grant["previous_balance"],
            grant["new_balance"],
        )

    await _record_payment(
        db,
        user_id=user.id,
        subscription_id=row.id,
        external_payment_id=session["id"],
        amount_cents=session.get("amount_total"),
        fallback_amount=plan.price,
        currency=session.get("currency"),
        status="completed",
        payment_intent_id=_object_id(session.get("payment_intent")),
    )
    return OUTCOME_PROCESSED


async def handle_subscription_upsert(stripe_subscription: Dict[str, Any], db: AsyncSession, gateway: Any) -> str:
    tier = _resolve_tier(stripe_subscription)
    if tier is None:
        return OUTCOME_SKIPPED

    row = await _subscription_by_external_id(db, stripe_subscription["id"])
    user = await db.get(User, row.user_id) if row is not None else None
    if user is None:
        user = await _resolve_user(
            db,
            stripe_subscription.get("metadata"),
            _object_id(stripe_subscription.get("customer")),
        )
    if user is None:
        logger.error("No user for Stripe subscription %s", stripe_subscription.get("id"))
        return OUTCOME_SKIPPED

    row = await _upsert_subscription(db, stripe_subscription, tier, user)
    stripe_status = str(stripe_subscription.get("status") or "").lower()
    if stripe_status in ACTIVE_STRIPE_STATUSES:
        row.status = "completed"
        row.purchased_at = row.purchased_at or utc_now()
        user.subscription_tier = tier
        user.subscription_expires_at = row.expires_at
        customer_id = _object_id(stripe_subscription.get("customer"))
        if customer_id and not user.stripe_customer_id:
            user.stripe_customer_id = customer_id
    elif stripe_status == "canceled":
        row.status = "cancelled"
        row.auto_renew = False
    elif row.status != "completed":
        row.status = "pending"
    return OUTCOME_PROCESSED


async def handle_subscription_deleted(stripe_subscription: Dict[str, Any], db: AsyncSession, gateway: Any) -> str:
    row = await _subscription_by_external_id(db, stripe_subscription["id"])
    user = await db.get(User, row.user_id) if row is not None else None
    if user is None:
        user = await _resolve_user(
            db,
            stripe_subscription.get("metadata"),
            _object_id(stripe_subscription.get("customer")),
        )
    if row is None and user is None:
        logger.warning("Deleted Stripe subscription %s is unknown", stripe_subscription.get("id"))
        return OUTCOME_SKIPPED

    period_end = _period_end(stripe_subscription)
    if row is not None:
        row.status = "cancelled"
        row.auto_renew = False
        period_end = period_end or as_utc(row.expires_at)

    if user is not None:
        other = await _other_active_subscription(db, user.id, row.id if row is not None else None)
        if other is not None:
            logger.info(
                "Stripe subscription %s deleted; user %s keeps %s subscription %s",
                stripe_subscription.get("id"),
                user.id,
                other.tier,
                other.id,
            )
            return OUTCOME_PROCESSED
        if period_end is None or utc_now() >= period_end:
            user.subscription_tier = "free"
            user.subscription_expires_at = None
        else:
            user.subscription_expires_at = period_end
    return OUTCOME_PROCESSED


async def handle_invoice_paid(invoice: Dict[str, Any], db: AsyncSession, gateway: Any) -> str:
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return OUTCOME_IGNORED
    billing_reason = invoice.get("billing_reason")
    if billing_reason not in RENEWAL_BILLING_REASONS:
        logger.info("Invoice %s billing_reason=%s is not a renewal", invoice.get("id"), billing_reason)
        return OUTCOME_IGNORED

    invoice_id = invoice["id"]
    if await _payment_recorded(db, invoice_id):
        logger.info("Invoice %s already applied", invoice_id)
        return OUTCOME_PROCESSED

    row = await _subscription_by_external_id(db, subscription_id)
    stripe_subscription: Optional[Dict[str, Any]] = None
    if row is None:
        stripe_subscription = await gateway.retrieve_subscription(subscription_id)
        tier = _resolve_tier(stripe_subscription)
        if tier is None:
            return OUTCOME_SKIPPED
        user = await _resolve_user(
            db,
            stripe_subscription.get("metadata"),
            _object_id(invoice.get("customer")),
        )
        if user is None:
            logger.error("No user for invoice %s (subscription=%s)", invoice_id, subscription_id)
            return OUTCOME_SKIPPED
        row = await _upsert_subscription(db, stripe_subscription, tier, user)
    else:
        user = await db.get(User, row.user_id)
        if row.status == "cancelled":
            logger.warning("Invoice %s paid for cancelled subscription %s; not renewed", invoice_id, row.id)
            return OUTCOME_SKIPPED

    plan = SUBSCRIPTION_PLANS.get(row.tier)
    if plan is None or user is None:
        logger.error("Cannot renew subscription %s: tier=%s", row.id, row.tier)
        return OUTCOME_SKIPPED

    expires_at = _invoice_period_end(invoice)
    if expires_at is None and stripe_subscription is not None:
        expires_at = _period_end(stripe_subscription)
    if expires_at is None:
        expires_at = max(as_utc(row.expires_at) or utc_now(), utc_now()) + timedelta(days=RENEWAL_FALLBACK_DAYS)

    row.status = "completed"
    row.expires_at = expires_at
    user.subscription_tier = row.tier
    user.subscription_expires_at = expires_at

    grant = await add_credits(
        user.id,
        db,
        amount=plan.credits,
        transaction_type="subscription",
        description=f"{plan.name} subscription renewed",
        related_id=invoice_id,
        commit=False,
    )
    await _record_payment(
        db,
        user_id=user.id,
        subscription_id=row.id,
        external_payment_id=invoice_id,
        amount_cents=invoice.get("amount_paid"),
        fallback_amount=plan.price,
        currency=invoice.get("currency"),
        status="completed",
        payment_intent_id=_object_id(invoice.get("payment_intent")),
    )
    logger.info(
        "stripe_renewal user=%s tier=%s invoice=%s balance=%s",
        user.id,
        row.tier,
        invoice_id,
        grant["new_balance"],
    )
    return OUTCOME_PROCESSED


async def handle_invoice_failed(invoice: Dict[str, Any], db: AsyncSession, gateway: Any) -> str:
    invoice_id = invoice["id"]
    if await _payment_recorded(db, invoice_id):
        return OUTCOME_PROCESSED

    subscription_id = _invoice_subscription_id(invoice)
    row = await _subscription_by_external_id(db, subscription_id) if subscription_id else None
    user = await db.get(User, row.user_id) if row is not None else None
    if user is None:
        user = await _resolve_user(db, None, _object_id(invoice.get("customer")))
    if user is None:
        logger.error("No user for failed invoice %s", invoice_id)
        return OUTCOME_SKIPPED

    await _record_payment(
        db,
        user_id=user.id,
        subscription_id=row.id if row is not None else None,
        external_payment_id=invoice_id,
        amount_cents=invoice.get("amount_due"),
        fallback_amount=row.price if row is not None else 0.0,
        currency=invoice.get("currency"),
        status="failed",
        payment_intent_id=_object_id(invoice.get("payment_intent")),
    )
    logger.warning("stripe_payment_failed user=%s invoice=%s", user.id, invoice_id)
    return OUTCOME_PROCESSED


EventHandler = Callable[[Dict[str, Any], AsyncSession, Any], Awaitable[str]]

EVENT_HANDLERS: Dict[str, EventHandler] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.created": handle_subscription_upsert,
    "customer.subscription.updated": handle_subscription_upsert,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_succeeded": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_failed,
}


async def process_event(event: Dict[str, Any], db: AsyncSession, gateway: Any) -> str:
    """Apply one verified event. Returns processed, duplicate, skipped or ignored."""
    event_id = str(event["id"])
    event_type = str(event["type"])

    if await db.get(StripeEvent, event_id) is not None:
        logger.info("Stripe event %s (%s) already processed", event_id, event_type)
        return OUTCOME_DUPLICATE

    handler = EVENT_HANDLERS.get(event_type)
    data_object = (event.get("data") or {}).get("object") or {}
    try:
        outcome = await handler(data_object, db, gateway) if handler else OUTCOME_IGNORED
        db.add(StripeEvent(id=event_id, event_type=event_type, outcome=outcome))
        await db.commit()
    except IntegrityError:
        await db.rollback()
        if await db.get(StripeEvent, event_id) is not None:
            logger.info("Stripe event %s applied by a concurrent delivery", event_id)
            return OUTCOME_DUPLICATE
        raise
    except Exception:
        await db.rollback()
        raise

    logger.info("Stripe event %s (%s) -> %s", event_id, event_type, outcome)
    return outcome
