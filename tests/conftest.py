"""Общие фикстуры тестов."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["REDIS_URL"] = ""
os.environ["ENVIRONMENT"] = "test"
os.environ["SITE_URL"] = "https://coliving.test"
os.environ["SECRET_KEY"] = "test-secret-key"

import uuid
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.dependencies import get_phonepe_service
from app.core.rate_limit import enforce_rate_limit
from app.core.security import create_access_token
from app.database import Base, get_db
from app.main import app
from app.models.booking import Booking, BOOKING_PENDING
from app.models.customer import Customer
from app.models.payment import Payment, GATEWAY_PHONEPE, PAYMENT_INITIATED
from app.services.gateway_status import GatewayStatus, normalize_gateway_response
from app.services.phonepe_service import CreatePaymentResult


class FakeGateway:
    """Шлюз-заглушка с контрактом PhonePeService.

    check_status отдает `status` (если задан) или нормализованный `raw`.
    `before_return` вызывается перед ответом: так тесты вклиниваются
    между запросом статуса и записью результата.
    """

    def __init__(self, raw=None, status: GatewayStatus | None = None, exception: Exception | None = None):
        self.raw = raw if raw is not None else {"state": "PENDING"}
        self.status = status
        self.exception = exception
        self.before_return = None
        self.calls: list[str] = []
        self.create_result: CreatePaymentResult | None = None
        self.created: list[dict] = []

    async def create_payment(self, amount_paise: int, merchant_order_id: str, redirect_url: str) -> CreatePaymentResult:
        self.created.append(
            {"amount_paise": amount_paise, "merchant_order_id": merchant_order_id, "redirect_url": redirect_url}
        )
        if self.create_result is not None:
            return self.create_result
        return CreatePaymentResult(
            success=True,
            redirect_url=f"https://mercury.phonepe.test/pay/{merchant_order_id}",
            order_id="OMO-test",
        )

    async def check_status(self, merchant_order_id: str) -> GatewayStatus:
        self.calls.append(merchant_order_id)
        if self.before_return is not None:
            await self.before_return()
        if self.exception is not None:
            raise self.exception
        if self.status is not None:
            return self.status
        return normalize_gateway_response(self.raw)

    def normalize(self, raw) -> GatewayStatus:
        return normalize_gateway_response(raw)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


async def _add(db, obj):
    db.add(obj)
    await db.commit()
    await db.refresh(obj)
    return obj


@pytest.fixture
async def customer(db):
    # Пароль не хешируем: вход проверяется отдельно в test_auth_api
    return await _add(db, Customer(email="tenant@example.com", name="Tenant"))


@pytest.fixture
async def other_customer(db):
    return await _add(db, Customer(email="neighbour@example.com", name="Neighbour"))


@pytest.fixture
async def admin(db):
    return await _add(db, Customer(email="admin@example.com", name="Admin", role="admin"))


@pytest.fixture
async def booking(db, customer):
    return await _add(
        db,
        Booking(customer_id=customer.id, status=BOOKING_PENDING, price=Decimal("15000.00")),
    )


@pytest.fixture
def make_payment(db):
    """Фабрика платежей. По умолчанию платеж уже отправлен в шлюз."""

    async def _make(
        customer: Customer,
        booking: Booking | None = None,
        status: str = PAYMENT_INITIATED,
        initiated: bool = True,
        amount: Decimal = Decimal("15000.00"),
        merchant_order_id: str | None = None,
    ) -> Payment:
        if initiated and merchant_order_id is None:
            merchant_order_id = f"PAY-{uuid.uuid4().hex}-1700000000000"
        payment = Payment(
            customer_id=customer.id,
            payfor_id=booking.id if booking else None,
            booking_snapshot=booking.snapshot() if booking else None,
            amount=amount,
            status=status,
            gateway=GATEWAY_PHONEPE if initiated else None,
            merchant_order_id=merchant_order_id if initiated else None,
        )
        return await _add(db, payment)

    return _make


@pytest.fixture
def gateway():
    return FakeGateway()


def auth_headers(customer: Customer) -> dict[str, str]:
    token = create_access_token(str(customer.id), customer.role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client(session_factory, gateway):
    """HTTP клиент приложения: БД теста, шлюз-заглушка, без rate limit."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_phonepe_service] = lambda: gateway
    app.dependency_overrides[enforce_rate_limit] = lambda: None

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
