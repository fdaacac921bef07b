"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- Webhook endpoint stubs (httpx.AsyncClient patched)
- In-memory Redis
- Test data factories
"""
import pytest
from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch

from httpx import Response

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from opsboard.core.config import settings
from opsboard.db.database import Base, get_db, utcnow
from opsboard.db.models import (
    AcceleratorStage,
    Alert,
    AlertStatus,
    AlertType,
    Client,
    Installment,
    InstallmentStatus,
    Subscription,
    SubscriptionStatus,
)
from opsboard.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def other_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Second session on the same database, for another worker's view"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Webhook endpoints
# ============================================================================

class WebhookStub:
    """
    Stand-in for the outbound webhook endpoints.

    Records every POST and answers with a per-URL status code (default 200)
    or raises a per-URL exception.
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.status_by_url: dict[str, int] = {}
        self.error_by_url: dict[str, Exception] = {}
        self.default_status = 200

    async def post(self, url: str, json: Any = None, headers: dict | None = None, **kwargs) -> Response:
        self.calls.append({"url": url, "json": json, "headers": headers})
        if url in self.error_by_url:
            raise self.error_by_url[url]

        status_code = self.status_by_url.get(url, self.default_status)
        response = MagicMock(spec=Response)
        response.status_code = status_code
        response.text = "OK" if status_code < 400 else "Internal Server Error"
        return response

    def urls(self) -> list[str]:
        return [call["url"] for call in self.calls]


@pytest.fixture
def mock_webhooks():
    """
    Patch httpx.AsyncClient for webhook delivery.

    API tests must request ``test_client`` before this fixture so the test
    client is built from the real class.
    """
    stub = WebhookStub()
    with patch("httpx.AsyncClient") as mock_client:
        mock_instance = AsyncMock()
        mock_instance.post = AsyncMock(side_effect=stub.post)
        mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
        mock_instance.__aexit__ = AsyncMock(return_value=None)

        mock_client.return_value = mock_instance
        stub.client_class = mock_client

        yield stub


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def alert_factory(db_session: AsyncSession):
    """Factory for creating alerts directly (bypassing the evaluators)"""
    async def _create_alert(
        alert_type: AlertType = AlertType.PAYMENT_OVERDUE,
        title: str = "Pago retrasado: Ana López",
        message: str = "La cuota #2 de Ana López venció.",
        status: AlertStatus = AlertStatus.PENDING,
        created_at: datetime | None = None,
        sent_at: datetime | None = None,
        client_id: str | None = None,
        subscription_id: str | None = None,
        installment_id: str | None = None,
        metadata: dict | None = None,
        condition_key: str | None = None,
    ) -> Alert:
        alert = Alert(
            alert_type=alert_type,
            title=title,
            message=message,
            status=status,
            created_at=created_at or utcnow(),
            sent_at=sent_at,
            client_id=client_id,
            subscription_id=subscription_id,
            installment_id=installment_id,
            alert_metadata=metadata or {},
            condition_key=condition_key,
        )
        db_session.add(alert)
        await db_session.commit()
        await db_session.refresh(alert)
        return alert

    return _create_alert


@pytest.fixture
def client_factory(db_session: AsyncSession):
    """Factory for creating clients"""
    async def _create_client(
        full_name: str = "Ana López",
        email: str | None = "ana@example.com",
    ) -> Client:
        client = Client(full_name=full_name, email=email)
        db_session.add(client)
        await db_session.commit()
        await db_session.refresh(client)
        return client

    return _create_client


@pytest.fixture
def subscription_factory(db_session: AsyncSession, client_factory):
    """Factory for creating subscriptions (creates a client when none is given)"""
    async def _create_subscription(
        client_id: str | None = None,
        start_date: date = date(2025, 1, 1),
        end_date: date = date(2025, 12, 31),
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    ) -> Subscription:
        if client_id is None:
            client_id = (await client_factory()).id
        subscription = Subscription(
            client_id=client_id,
            start_date=start_date,
            end_date=end_date,
            status=status,
        )
        db_session.add(subscription)
        await db_session.commit()
        await db_session.refresh(subscription)
        return subscription

    return _create_subscription


@pytest.fixture
def installment_factory(db_session: AsyncSession):
    """Factory for creating installments"""
    async def _create_installment(
        subscription_id: str,
        installment_number: int = 1,
        amount_usd: Decimal = Decimal("250.00"),
        due_date: date = date(2025, 2, 1),
        payment_date: date | None = None,
        status: InstallmentStatus = InstallmentStatus.PENDING,
    ) -> Installment:
        installment = Installment(
            subscription_id=subscription_id,
            installment_number=installment_number,
            amount_usd=amount_usd,
            due_date=due_date,
            payment_date=payment_date,
            status=status,
        )
        db_session.add(installment)
        await db_session.commit()
        await db_session.refresh(installment)
        return installment

    return _create_installment


@pytest.fixture
def stage_factory(db_session: AsyncSession):
    """Factory for creating accelerator stages"""
    async def _create_stage(
        subscription_id: str,
        stage_number: int = 1,
        stage_name: str = "Diagnóstico",
        start_date: date = date(2025, 3, 1),
        end_date: date = date(2025, 3, 31),
        status: str = "pending",
        is_activated: bool = False,
    ) -> AcceleratorStage:
        stage = AcceleratorStage(
            subscription_id=subscription_id,
            stage_number=stage_number,
            stage_name=stage_name,
            start_date=start_date,
            end_date=end_date,
            status=status,
            is_activated=is_activated,
        )
        db_session.add(stage)
        await db_session.commit()
        await db_session.refresh(stage)
        return stage

    return _create_stage


@pytest.fixture
async def stage_change_alert(alert_factory) -> Alert:
    """A pending stage_change alert with full stage metadata"""
    return await alert_factory(
        alert_type=AlertType.STAGE_CHANGE,
        title="Cambio de etapa: Ana López",
        message="Ana López inicia la etapa 2 (Validación).",
        client_id="client-1",
        subscription_id="sub-1",
        metadata={
            "stage_number": 2,
            "stage_name": "Validación",
            "start_date": "2025-03-01",
            "end_date": "2025-03-31",
            "program_day": 31,
        },
    )


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from opsboard.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


class FakeRedis:
    """In-memory Redis replacement with the subset of commands the app uses."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET with NX (only if absent) and EX (TTL in seconds)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with a FakeRedis for every test."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("opsboard.core.redis_client.get_redis", _get_fake_redis):
        yield _fake


@pytest.fixture
def webhook_urls() -> dict[str, str]:
    return {
        "alerts": settings.ALERTS_WEBHOOK_URL,
        "stage_change": settings.STAGE_CHANGE_WEBHOOK_URL,
        "phase_activation": settings.PHASE_ACTIVATION_WEBHOOK_URL,
    }
