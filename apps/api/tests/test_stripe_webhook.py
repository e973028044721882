import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CreditTransaction
from models.payment_history import PaymentHistory
from models.stripe_event import StripeEvent
from models.subscription import Subscription
from models.user import User


WEBHOOK_SECRET = "whsec_test_secret"
PRO_PRICE = "price_pro_monthly"
BASIC_PRICE = "price_basic_monthly"


@pytest.fixture(autouse=True)
def stripe_settings(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "STRIPE_PRICE_ID_PRO", PRO_PRICE)
    monkeypatch.setattr(settings, "STRIPE_PRICE_ID_BASIC", BASIC_PRICE)
    monkeypatch.setattr(settings, "STRIPE_PRODUCT_ID_PREMIUM", "prod_premium")


def _signature(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _period_end(days: int) -> int:
    return int((datetime.now(timezone.utc) + timedelta(days=days)).timestamp())


def _stripe_subscription(sub_id="sub_1", price_id=PRO_PRICE, product="prod_pro", status="active", days=30, **extra):
    payload = {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": "cus_1",
        "cancel_at_period_end": False,
        "current_period_end": _period_end(days),
        "metadata": {"user_id": "user-1"},
        "items": {"data": [{"price": {"id": price_id, "product": product}}]},
    }
    payload.update(extra)
    return payload


def _checkout_event(event_id="evt_checkout_1", session_id="cs_1", subscription_id="sub_1"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "mode": "subscription",
                "customer": "cus_1",
                "subscription": subscription_id,
                "amount_total": 2990,
                "currency": "usd",
                "metadata": {"user_id": "user-1", "subscription_tier": "pro"},
            }
        },
    }


async def _deliver(client, event):
    payload = json.dumps(event)
    return await client.post(
        "/stripe/webhook",
        content=payload,
        headers={"stripe-signature": _signature(payload), "content-type": "application/json"},
    )


async def _state(session_maker, user_id="user-1"):
    async with session_maker() as session:
        user = await session.get(User, user_id)
        subscriptions = (
            await session.execute(select(Subscription).where(Subscription.user_id == user_id))
        ).scalars().all()
        transactions = (
            await session.execute(select(CreditTransaction).where(CreditTransaction.user_id == user_id))
        ).scalars().all()
        payments = (
            await session.execute(select(PaymentHistory).where(PaymentHistory.user_id == user_id))
        ).scalars().all()
        return user, subscriptions, transactions, payments


async def _seed_active_subscription(session_maker, *, tier="pro", sub_id="sub_1", days=20):
    async with session_maker() as session:
        row = Subscription(
            user_id="user-1",
            payment_provider="stripe",
            external_subscription_id=sub_id,
            stripe_price_id=PRO_PRICE,
            tier=tier,
            price=29.9,
            credits_per_month=3000,
            images_per_month=750,
            status="completed",
            purchased_at=datetime.now(timezone.utc),
            expires_at=datetime.now(timezone.utc) + timedelta(days=days),
        )
        session.add(row)
        user = await session.get(User, "user-1")
        user.subscription_tier = tier
        user.subscription_expires_at = row.expires_at
        await session.commit()
        return row.id


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected_without_side_effects(client, session_maker, make_user, fake_gateway):
    await make_user(credits=0)
    fake_gateway.subscriptions["sub_1"] = _stripe_subscription()
    payload = json.dumps(_checkout_event())

    response = await client.post(
        "/stripe/webhook",
        content=payload,
        headers={"stripe-signature": _signature(payload, secret="whsec_wrong")},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_signature"
    user, subscriptions, transactions, _ = await _state(session_maker)
    assert user.credits == 0
    assert subscriptions == []
    assert transactions == []
    assert fake_gateway.calls == []


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(client):
    response = await client.post("/stripe/webhook", content=json.dumps(_checkout_event()))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_checkout_completed_activates_pro_plan(client, session_maker, make_user, fake_gateway):
    await make_user(credits=0)
    fake_gateway.subscriptions["sub_1"] = _stripe_subscription()

    response = await _deliver(client, _checkout_event())

    assert response.status_code == 200
    assert response.json()["outcome"] == "processed"
    user, subscriptions, transactions, payments = await _state(session_maker)
    assert user.credits == 3000
    assert user.subscription_tier == "pro"
    assert user.stripe_customer_id == "cus_1"
    assert len(subscriptions) == 1
    assert subscriptions[0].status == "completed"
    assert subscriptions[0].external_subscription_id == "sub_1"
    assert [(tx.transaction_type, tx.amount, tx.balance_after) for tx in transactions] == [
        ("subscription", 3000, 3000)
    ]
    assert len(payments) == 1
    assert payments[0].external_payment_id == "cs_1"
    assert payments[0].amount == pytest.approx(29.9)


@pytest.mark.asyncio
async def test_first_activation_sets_balance_absolutely(client, session_maker, make_user, fake_gateway):
    await make_user(credits=57)
    fake_gateway.subscriptions["sub_1"] = _stripe_subscription()

    await _deliver(client, _checkout_event())

    user, _, transactions, _ = await _state(session_maker)
    assert user.credits == 3000
    assert [(tx.amount, tx.balance_after) for tx in transactions] == [(2943, 3000)]


@pytest.mark.asyncio
async def test_redelivered_activation_is_applied_once(client, session_maker, make_user, fake_gateway):
    await make_user(credits=0)
    fake_gateway.subscriptions["sub_1"] = _stripe_subscription()

    first = await _deliver(client, _checkout_event())
    second = await _deliver(client, _checkout_event())
    resent = await _deliver(client, _checkout_event(event_id="evt_checkout_resent"))

    assert first.json()["outcome"] == "processed"
    assert second.status_code == 200
    assert second.json()["outcome"] == "duplicate"
    assert resent.json()["outcome"] == "processed"

    user, subscriptions, transactions, payments = await _state(session_maker)
    assert user.credits == 3000
    assert len(subscriptions) == 1
    assert len(transactions) == 1
    assert len(payments) == 1
    async with session_maker() as session:
        events = (await session.execute(select(StripeEvent))).scalars().all()
        assert sorted(event.id for event in events) == ["evt_checkout_1", "evt_checkout_resent"]


@pytest.mark.asyncio
async def test_subscription_created_before_checkout_still_grants_once(
    client, session_maker, make_user, fake_gateway
):
    await make_user(credits=10)
    stripe_subscription = _stripe_subscription()
    fake_gateway.subscriptions["sub_1"] = stripe_subscription

    created = await _deliver(
        client,
        {"id": "evt_sub_created", "type": "customer.subscription.created", "data": {"object": stripe_subscription}},
    )
    assert created.json()["outcome"] == "processed"
    user, subscriptions, transactions, _ = await _state(session_maker)
    assert user.subscription_tier == "pro"
    assert user.credits == 10
    assert transactions == []
    assert subscriptions[0].status == "completed"

    await _deliver(client, _checkout_event())

    user, subscriptions, transactions, _ = await _state(session_maker)
    assert user.credits == 3000
    assert len(subscriptions) == 1
    assert len(transactions) == 1


@pytest.mark.asyncio
async def test_renewal_adds_plan_credits(client, session_maker, make_user):
    await make_user(credits=120)
    await _seed_active_subscription(session_maker)
    invoice = {
        "id": "in_renewal_1",
        "object": "invoice",
        "billing_reason": "subscription_cycle",
        "subscription": "sub_1",
        "customer": "cus_1",
        "amount_paid": 2990,
        "currency": "usd",
        "lines": {"data": [{"period": {"start": _period_end(0), "end": _period_end(30)}}]},
    }

    response = await _deliver(client, {"id": "evt_invoice_1", "type": "invoice.paid", "data": {"object": invoice}})
    again = await _deliver(
        client, {"id": "evt_invoice_1_retry", "type": "invoice.payment_succeeded", "data": {"object": invoice}}
    )

    assert response.json()["outcome"] == "processed"
    assert again.status_code == 200
    user, subscriptions, transactions, payments = await _state(session_maker)
    assert user.credits == 3120
    assert [(tx.amount, tx.balance_after) for tx in transactions] == [(3000, 3120)]
    assert [payment.external_payment_id for payment in payments] == ["in_renewal_1"]
    assert subscriptions[0].status == "completed"


@pytest.mark.asyncio
async def test_initial_invoice_does_not_grant_credits(client, session_maker, make_user):
    await make_user(credits=3000)
    await _seed_active_subscription(session_maker)
    invoice = {
        "id": "in_first",
        "billing_reason": "subscription_create",
        "subscription": "sub_1",
        "amount_paid": 2990,
    }

    response = await _deliver(client, {"id": "evt_invoice_first", "type": "invoice.paid", "data": {"object": invoice}})

    assert response.json()["outcome"] == "ignored"
    user, _, transactions, _ = await _state(session_maker)
    assert user.credits == 3000
    assert transactions == []


@pytest.mark.asyncio
async def test_deleted_subscription_keeps_tier_until_period_end(client, session_maker, make_user):
    await make_user(credits=500)
    await _seed_active_subscription(session_maker)
    deleted = _stripe_subscription(status="canceled", days=12)

    response = await _deliver(
        client, {"id": "evt_deleted", "type": "customer.subscription.deleted", "data": {"object": deleted}}
    )

    assert response.json()["outcome"] == "processed"
    user, subscriptions, _, _ = await _state(session_maker)
    assert subscriptions[0].status == "cancelled"
    assert subscriptions[0].auto_renew is False
    assert user.subscription_tier == "pro"
    assert user.credits == 500


@pytest.mark.asyncio
async def test_deleted_subscription_after_period_end_resets_tier(client, session_maker, make_user):
    await make_user(credits=500)
    await _seed_active_subscription(session_maker)
    deleted = _stripe_subscription(status="canceled", days=-1)

    await _deliver(client, {"id": "evt_deleted_late", "type": "customer.subscription.deleted", "data": {"object": deleted}})

    user, subscriptions, _, _ = await _state(session_maker)
    assert subscriptions[0].status == "cancelled"
    assert user.subscription_tier == "free"
    assert user.subscription_expires_at is None


@pytest.mark.asyncio
async def test_unmapped_price_is_acknowledged_but_skipped(client, session_maker, make_user, fake_gateway, caplog):
    await make_user(credits=5)
    fake_gateway.subscriptions["sub_1"] = _stripe_subscription(price_id="price_unknown", product="prod_unknown")

    with caplog.at_level(logging.ERROR, logger="services.billing_webhooks"):
        response = await _deliver(client, _checkout_event())

    assert response.status_code == 200
    assert response.json()["outcome"] == "skipped"
    assert any("Unmapped Stripe price" in record.getMessage() for record in caplog.records)
    user, subscriptions, transactions, _ = await _state(session_maker)
    assert user.credits == 5
    assert subscriptions == []
    assert transactions == []


@pytest.mark.asyncio
async def test_tier_resolves_from_product_when_price_is_unknown(client, session_maker, make_user, fake_gateway):
    await make_user(credits=0)
    fake_gateway.subscriptions["sub_1"] = _stripe_subscription(price_id="price_new", product="prod_premium")

    await _deliver(client, _checkout_event())

    user, subscriptions, _, _ = await _state(session_maker)
    assert user.subscription_tier == "premium"
    assert user.credits == 8000
    assert subscriptions[0].tier == "premium"


@pytest.mark.asyncio
async def test_failed_invoice_records_payment_only(client, session_maker, make_user):
    await make_user(credits=40)
    await _seed_active_subscription(session_maker)
    invoice = {
        "id": "in_failed",
        "billing_reason": "subscription_cycle",
        "subscription": "sub_1",
        "customer": "cus_1",
        "amount_due": 2990,
        "currency": "usd",
    }

    response = await _deliver(
        client, {"id": "evt_failed", "type": "invoice.payment_failed", "data": {"object": invoice}}
    )

    assert response.json()["outcome"] == "processed"
    user, subscriptions, transactions, payments = await _state(session_maker)
    assert user.credits == 40
    assert transactions == []
    assert subscriptions[0].status == "completed"
    assert [(payment.status, payment.amount) for payment in payments] == [("failed", pytest.approx(29.9))]


@pytest.mark.asyncio
async def test_unhandled_event_types_are_ignored(client):
    response = await _deliver(
        client, {"id": "evt_other", "type": "customer.created", "data": {"object": {"id": "cus_9"}}}
    )
    assert response.status_code == 200
    assert response.json()["outcome"] == "ignored"


async def _buy_app_store_plan(client, headers_for, tier="premium", transaction_id="2000000001"):
    response = await client.post(
        "/subscription/purchase",
        json={"tier": tier, "receipt_data": "MIIT-receipt", "transaction_id": transaction_id},
        headers=headers_for("user-1"),
    )
    assert response.status_code == 200
    return response


@pytest.mark.asyncio
async def test_deleting_expired_stripe_plan_keeps_newer_app_store_plan(
    client, session_maker, make_user, headers_for
):
    await make_user(credits=0)
    await _seed_active_subscription(session_maker, tier="basic", sub_id="sub_old", days=-2)
    await _buy_app_store_plan(client, headers_for)
    before, _, _, _ = await _state(session_maker)
    assert before.subscription_tier == "premium"

    deleted = _stripe_subscription(sub_id="sub_old", price_id=BASIC_PRICE, status="canceled", days=-1)
    response = await _deliver(
        client, {"id": "evt_old_deleted", "type": "customer.subscription.deleted", "data": {"object": deleted}}
    )

    assert response.json()["outcome"] == "processed"
    user, subscriptions, _, _ = await _state(session_maker)
    assert user.subscription_tier == "premium"
    assert user.subscription_expires_at == before.subscription_expires_at
    statuses = {(row.payment_provider, row.tier): row.status for row in subscriptions}
    assert statuses == {("stripe", "basic"): "cancelled", ("apple", "premium"): "completed"}


@pytest.mark.asyncio
async def test_deleting_stripe_plan_does_not_shorten_newer_plan_expiry(
    client, session_maker, make_user, headers_for
):
    await make_user(credits=0)
    await _seed_active_subscription(session_maker, sub_id="sub_old", days=5)
    await _buy_app_store_plan(client, headers_for)
    before, _, _, _ = await _state(session_maker)

    deleted = _stripe_subscription(sub_id="sub_old", status="canceled", days=5)
    await _deliver(
        client, {"id": "evt_old_deleted", "type": "customer.subscription.deleted", "data": {"object": deleted}}
    )

    user, _, _, _ = await _state(session_maker)
    assert user.subscription_tier == "premium"
    assert user.subscription_expires_at == before.subscription_expires_at


@pytest.mark.asyncio
async def test_paid_invoice_for_cancelled_subscription_is_not_renewed(client, session_maker, make_user):
    await make_user(credits=200)
    await _seed_active_subscription(session_maker)
    deleted = _stripe_subscription(status="canceled", days=12)
    await _deliver(client, {"id": "evt_deleted", "type": "customer.subscription.deleted", "data": {"object": deleted}})
    invoice = {
        "id": "in_late",
        "billing_reason": "subscription_cycle",
        "subscription": "sub_1",
        "customer": "cus_1",
        "amount_paid": 2990,
        "currency": "usd",
        "lines": {"data": [{"period": {"start": _period_end(12), "end": _period_end(42)}}]},
    }

    response = await _deliver(client, {"id": "evt_late_invoice", "type": "invoice.paid", "data": {"object": invoice}})

    assert response.json()["outcome"] == "skipped"
    user, subscriptions, transactions, payments = await _state(session_maker)
    assert user.credits == 200
    assert transactions == []
    assert payments == []
    assert subscriptions[0].status == "cancelled"


@pytest.mark.asyncio
async def test_proration_invoice_does_not_grant_plan_credits(client, session_maker, make_user):
    await make_user(credits=900)
    await _seed_active_subscription(session_maker)
    invoice = {
        "id": "in_upgrade",
        "billing_reason": "subscription_update",
        "subscription": "sub_1",
        "customer": "cus_1",
        "amount_paid": 1500,
        "currency": "usd",
    }

    response = await _deliver(client, {"id": "evt_upgrade", "type": "invoice.paid", "data": {"object": invoice}})

    assert response.json()["outcome"] == "ignored"
    user, _, transactions, payments = await _state(session_maker)
    assert user.credits == 900
    assert transactions == []
    assert payments == []
