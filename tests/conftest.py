import os
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-process store, no Redis, no background sweep
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SWEEPER_ENABLED", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        self.events.append((user_id, event, payload))

    def names_for(self, user_id: str) -> list[str]:
        return [e for u, e, _ in self.events if u == user_id]


class RecordingEmailSender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    async def send_email(self, address: str, template_id: str, data: dict[str, Any]) -> None:
        self.sent.append((address, template_id, data))

    def last_otp(self) -> str:
        for _, template_id, data in reversed(self.sent):
            if template_id.endswith("_otp"):
                return data["otp"]
        raise AssertionError("no OTP email was sent")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2030, 1, 1, 12, 0, 0))


@pytest.fixture
def store():
    from marketplace.storage.memory import MemoryStore
    return MemoryStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def mailer() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def services(store, notifier, mailer, clock):
    from marketplace.services.container import build_services
    return build_services(store=store, notifier=notifier, email_sender=mailer, clock=clock, redis=None)


@pytest.fixture
def make_user(store):
    from marketplace.models.user import User, Wallet

    async def _make(name: str, balance: int = 0, role: str = "seller", email_notifications: bool = True) -> User:
        user = User(
            name=name,
            email=f"{name.lower()}@example.com",
            role=role,
            email_notifications=email_notifications,
            wallet=Wallet(balance=balance),
        )
        return await store.insert_user(user)

    return _make


@pytest_asyncio.fixture
async def buyer(make_user):
    return await make_user("Buyer", balance=1000, role="buyer")


@pytest_asyncio.fixture
async def seller(make_user):
    return await make_user("Seller")


@pytest_asyncio.fixture
async def gig(store, seller):
    from marketplace.models.catalog import Gig, PriceTier
    gig = Gig(
        seller_id=seller.id,
        title="Logo design",
        description="A clean logo",
        base_price=1000,
        delivery_days=5,
        price_tiers=[
            PriceTier(name="Basic", price=500, delivery_days=3),
            PriceTier(name="Premium", price=2500, delivery_days=10),
        ],
    )
    await store.insert_catalog(gig)
    return gig


@pytest_asyncio.fixture
async def activated_order(services, buyer, seller, gig):
    order = await services.orders.create_from_gig(buyer.id, gig.id)
    return await services.orders.accept_order(seller.id, order.id)


@pytest.fixture
def pay(services, mailer):
    """Request and verify a payment for an order; returns (payment, order)."""

    async def _pay(buyer_id: str, order_id: str):
        payment = await services.payments.request_payment(buyer_id, order_id, "bkash", {"account": "017"})
        await services.dispatcher.drain()
        return await services.payments.complete_payment(buyer_id, payment.id, mailer.last_otp())

    return _pay


@pytest_asyncio.fixture
async def in_progress_order(activated_order, buyer, pay):
    _, order = await pay(buyer.id, activated_order.id)
    return order


@pytest_asyncio.fixture
async def app(services):
    from marketplace.main import create_app
    app = create_app(services, run_sweeper=False)
    async with app.router.lifespan_context(app):
        yield app


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def login(client):
    from marketplace.core.security import create_session_cookie
    from marketplace.deps import SESSION_COOKIE_NAME

    def _login(user) -> None:
        client.cookies.set(SESSION_COOKIE_NAME, create_session_cookie({"user_id": user.id}))

    return _login
