from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.user import User
from routers import rate_limit
from services.image_provider import GeneratedImage, get_image_provider
from services.session_token import create_session_token
from services.storage import get_object_storage
from services.stripe_gateway import get_stripe_gateway


class FakeImageProvider:
    model = "fake-image-model"

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.failures: List[Exception] = []
        self.image = GeneratedImage(data=b"\x89PNG\r\n\x1a\nfake-image", mime_type="image/png")

    async def generate(self, prompt, input_images=None):
        self.calls.append({"prompt": prompt, "input_images": list(input_images or [])})
        if self.failures:
            raise self.failures.pop(0)
        return self.image


class FakeObjectStorage:
    base_url = "https://media.test"

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.fail = False

    async def put(self, data, content_type, prefix="generated"):
        if self.fail:
            raise OSError("object storage unavailable")
        key = f"{prefix}/object-{len(self.objects) + 1}.png"
        self.objects[key] = data
        return f"{self.base_url}/{key}"

    def storage_path(self, public_url):
        return public_url[len(self.base_url) + 1 :]


class FakeStripeGateway:
    def __init__(self):
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.checkout_sessions: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []

    async def retrieve_subscription(self, subscription_id):
        self.calls.append(("retrieve_subscription", subscription_id))
        return self.subscriptions[subscription_id]

    async def create_customer(self, *, email, user_id):
        self.calls.append(("create_customer", user_id))
        return {"id": f"cus_{user_id[:8]}", "email": email}

    async def create_checkout_session(self, **kwargs):
        self.calls.append(("create_checkout_session", kwargs))
        return {"id": "cs_test_created", "url": "https://checkout.stripe.test/cs_test_created"}

    async def retrieve_checkout_session(self, session_id):
        self.calls.append(("retrieve_checkout_session", session_id))
        return self.checkout_sessions[session_id]

    async def set_cancel_at_period_end(self, subscription_id, cancel):
        self.calls.append(("set_cancel_at_period_end", subscription_id, cancel))
        subscription = self.subscriptions.setdefault(subscription_id, {"id": subscription_id, "status": "active"})
        subscription["cancel_at_period_end"] = cancel
        return subscription

    async def cancel_subscription(self, subscription_id):
        self.calls.append(("cancel_subscription", subscription_id))
        return {"id": subscription_id, "status": "canceled"}

    async def create_portal_session(self, *, customer_id, return_url):
        self.calls.append(("create_portal_session", customer_id))
        return {"url": "https://billing.stripe.test/portal"}


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'image_studio.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def fake_provider():
    return FakeImageProvider()


@pytest.fixture
def fake_storage():
    return FakeObjectStorage()


@pytest.fixture
def fake_gateway():
    return FakeStripeGateway()


@pytest.fixture
def no_retry_delay(monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "GENERATION_RETRY_DELAY_SECONDS", 0.0)


@pytest_asyncio.fixture
async def client(session_maker, fake_provider, fake_storage, fake_gateway):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_image_provider] = lambda: fake_provider
    app.dependency_overrides[get_object_storage] = lambda: fake_storage
    app.dependency_overrides[get_stripe_gateway] = lambda: fake_gateway
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client

    for dependency in (get_db, get_image_provider, get_object_storage, get_stripe_gateway):
        app.dependency_overrides.pop(dependency, None)


@pytest.fixture
def make_user(session_maker):
    async def _make_user(
        user_id: str = "user-1",
        *,
        credits: int = 0,
        email: Optional[str] = None,
        **fields: Any,
    ) -> str:
        async with session_maker() as session:
            session.add(
                User(
                    id=user_id,
                    email=email or f"{user_id}@example.com",
                    credits=credits,
                    **fields,
                )
            )
            await session.commit()
        return user_id

    return _make_user


def auth_headers(user_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_session_token(user_id)['token']}"}


@pytest.fixture
def headers_for():
    return auth_headers
