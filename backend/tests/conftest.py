"""
Pytest configuration and shared fixtures for the order lifecycle tests.

Provides an in-memory SQLite session, a file-backed session factory for
concurrency tests, seeded catalog items, an order factory, and an httpx
client bound to the FastAPI app.
"""
import pytest
import pytest_asyncio
from typing import AsyncGenerator

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from config import settings
from database import Base, get_db
from db_models import Item, Order, OrderItem
from domain.lifecycle import derive_status
from middleware.auth import issue_access_token
from services import shipment_service

# ── Test Configuration ───────────────────────────────────────────────
# Test-only values for settings that would normally come from .env
settings.environment = "development"
settings.jwt_secret = "test-jwt-secret-for-pytest-only"
settings.gateway_key_id = "rzp_test_key"
settings.gateway_key_secret = "test-gateway-key-secret"
settings.gateway_webhook_secret = "test-gateway-webhook-secret"
settings.carrier_webhook_secret = "test-carrier-webhook-secret"
settings.carrier_use_live_api = False
settings.tax_rate_percent = 0.0
settings.max_shipment_attempts = 3
settings.rto_logistics_loss_multiplier = 2.0

CARRIER_POSTAL_CODE = "560001"
SELF_DELIVERY_POSTAL_CODE = "273005"


# ── Database Fixtures ────────────────────────────────────────────────


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create an in-memory SQLite database session for each test.

    Uses StaticPool to allow in-memory SQLite with async SQLAlchemy.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path):
    """
    File-backed database with a real connection pool.

    Each session gets its own connection, so concurrent tasks really
    contend on the database the way separate workers would.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


# ── Test Data Fixtures ────────────────────────────────────────────────


async def seed_items(session: AsyncSession) -> list[Item]:
    items = [
        Item(name="Cotton Tote", price=300.0, stock_qty=10, weight_grams=400),
        Item(name="Enamel Pin", price=150.0, discount_price=120.0, stock_qty=5, weight_grams=50),
    ]
    session.add_all(items)
    await session.commit()
    return items


async def seed_order(
    session: AsyncSession,
    items: list[Item],
    *,
    provider: str = "CARRIER",
    payment: str = "pending",
    delivery: str | None = "PENDING",
    tracking_number: str | None = None,
    shipment_attempts: int = 0,
    stock_committed: bool = False,
    restock_handled: bool = False,
    shipping_charge: float = 80.0,
    quantities: tuple[int, ...] = (2, 1),
    gateway_order_id: str | None = None,
) -> Order:
    lines = [
        OrderItem(
            item_id=item.id,
            name=item.name,
            quantity=qty,
            unit_price=item.effective_price,
            unit_weight_grams=item.weight_grams,
        )
        for item, qty in zip(items, quantities)
        if qty
    ]
    subtotal = sum(line.unit_price * line.quantity for line in lines)
    order = Order(
        customer_ref="cust-001",
        subtotal=subtotal,
        tax=0.0,
        shipping_charge=shipping_charge,
        grand_total=subtotal + shipping_charge,
        total_weight_grams=sum(line.unit_weight_grams * line.quantity for line in lines),
        payment_signal=payment,
        delivery_signal=delivery,
        lifecycle_status=derive_status(delivery, payment).value,
        shipment_provider=provider,
        tracking_number=tracking_number,
        shipment_attempts=shipment_attempts,
        stock_committed=stock_committed,
        restock_handled=restock_handled,
        gateway_order_id=gateway_order_id,
        consignee_name="Asha Verma",
        phone="+91 98765-43210",
        address_line="12 MG Road",
        city="Bengaluru",
        state="Karnataka",
        postal_code=SELF_DELIVERY_POSTAL_CODE if provider == "SELF_HANDLED" else CARRIER_POSTAL_CODE,
        items=lines,
        payment_attempts=[],
    )
    session.add(order)
    await session.commit()
    return order


@pytest_asyncio.fixture
async def sample_items(db_session: AsyncSession) -> list[Item]:
    """Tote (₹300, 10 in stock) and pin (₹150 → ₹120, 5 in stock)."""
    return await seed_items(db_session)


@pytest.fixture
def make_order(db_session: AsyncSession, sample_items):
    """Factory for orders in an arbitrary state. Default: 2 totes + 1 pin, ₹80 shipping."""
    async def _make(**kwargs) -> Order:
        return await seed_order(db_session, sample_items, **kwargs)
    return _make


# ── Dispatch + HTTP Fixtures ─────────────────────────────────────────


class DispatchRecorder:
    """Stands in for the shipment dispatcher; records order ids."""

    def __init__(self):
        self.calls: list[int] = []

    def __call__(self, order_id: int) -> None:
        self.calls.append(order_id)


@pytest.fixture
def dispatcher() -> DispatchRecorder:
    return DispatchRecorder()


@pytest.fixture
def dispatched_shipments(monkeypatch) -> list[int]:
    """Replace the background shipment task; collects the order ids it was queued for."""
    calls: list[int] = []

    async def fake_create_shipment_in_background(order_id: int) -> None:
        calls.append(order_id)

    monkeypatch.setattr(
        shipment_service, "create_shipment_in_background", fake_create_shipment_in_background
    )
    return calls


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, dispatched_shipments) -> AsyncGenerator[AsyncClient, None]:
    """
    httpx client bound to the app, with get_db overridden to the test session.
    """
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    token = issue_access_token(subject="ops@example.com", role="admin")
    return {"Authorization": f"Bearer {token}"}
