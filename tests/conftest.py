"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file, so services can open as many
sessions as they like without sharing state across tests.
"""
import json
import random
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from tenacity import wait_none

from payflow.api import dependencies
from payflow.api.main import app
from payflow.config import Settings, get_settings
from payflow.core.audit import AuditSink
from payflow.core.idempotency import IdempotencyLedger
from payflow.core.payment_processor import PaymentProcessor
from payflow.core.reconciliation import ReconciliationEngine
from payflow.core.retry_scheduler import RetryScheduler
from payflow.database.connection import create_engine_from_url, create_session_factory, init_db
from payflow.integrations.delivery_client import WebhookDeliveryClient
from payflow.integrations.gateway import GatewayClient, StubGateway
from payflow.integrations.webhook_handler import WebhookDispatcher
from payflow.integrations.webhook_verifier import sign_payload

WEBHOOK_SECRET = "whsec_test_secret"


class RecordingAuditSink(AuditSink):
    """Keeps audit records in memory."""

    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []

    async def record(
        self,
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        *,
        user_id: Optional[str] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.records.append(
            {
                "action": action,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "user_id": user_id,
                "old_values": old_values,
                "new_values": new_values,
            }
        )

    def actions(self) -> List[str]:
        return [r["action"] for r in self.records]


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'payflow.db'}",
        app_name="payflow-test",
        app_env="test",
        log_level="DEBUG",
        webhook_secret=WEBHOOK_SECRET,
        webhook_delivery_url="http://test/webhooks",
        gateway_success_rate=1.0,
        gateway_max_retries=3,
        internal_api_key="internal-test-key",
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a fresh schema in a per-test SQLite file."""
    engine = create_engine_from_url(test_settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def ledger(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings
) -> IdempotencyLedger:
    return IdempotencyLedger(session_factory, test_settings)


@pytest.fixture
def gateway(test_settings: Settings) -> GatewayClient:
    """Gateway that always approves and retries without sleeping."""
    return GatewayClient(
        StubGateway(success_rate=1.0, rng=random.Random(7)),
        settings=test_settings,
        wait=wait_none(),
    )


@pytest.fixture
def processor(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: IdempotencyLedger,
    gateway: GatewayClient,
    audit_sink: RecordingAuditSink,
    test_settings: Settings,
) -> PaymentProcessor:
    return PaymentProcessor(
        session_factory,
        ledger=ledger,
        gateway=gateway,
        audit_sink=audit_sink,
        settings=test_settings,
    )


@pytest.fixture
def dispatcher(
    session_factory: async_sessionmaker[AsyncSession],
    audit_sink: RecordingAuditSink,
    test_settings: Settings,
) -> WebhookDispatcher:
    return WebhookDispatcher(session_factory, audit_sink, test_settings)


@pytest.fixture
def reconciliation_engine(
    session_factory: async_sessionmaker[AsyncSession], audit_sink: RecordingAuditSink
) -> ReconciliationEngine:
    return ReconciliationEngine(session_factory, audit_sink)


@pytest.fixture
def signed_event() -> Callable[..., Tuple[bytes, str]]:
    """Build a webhook body and its signature header."""

    def build(
        event_id: str,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        secret: str = WEBHOOK_SECRET,
    ) -> Tuple[bytes, str]:
        body = json.dumps(
            {"event_id": event_id, "event_type": event_type, "data": data or {}}
        ).encode("utf-8")
        return body, sign_payload(body, secret)

    return build


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    processor: PaymentProcessor,
    dispatcher: WebhookDispatcher,
    reconciliation_engine: ReconciliationEngine,
    audit_sink: RecordingAuditSink,
    test_settings: Settings,
) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """
    HTTP client for the app with services bound to the test database.

    The retry scheduler delivers back into the same app, so a retried
    webhook goes through the real ``/webhooks`` route.
    """
    loopback = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app, raise_app_exceptions=False),
        base_url="http://test",
    )
    scheduler = RetryScheduler(
        session_factory,
        delivery_client=WebhookDeliveryClient(test_settings, client=loopback),
        audit_sink=audit_sink,
        settings=test_settings,
    )

    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[dependencies.get_payment_processor] = lambda: processor
    app.dependency_overrides[dependencies.get_webhook_dispatcher] = lambda: dispatcher
    app.dependency_overrides[dependencies.get_retry_scheduler] = lambda: scheduler
    app.dependency_overrides[dependencies.get_reconciliation_engine] = lambda: reconciliation_engine

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app, raise_app_exceptions=False),
        base_url="http://test",
    ) as ac:
        yield ac

    await loopback.aclose()
    app.dependency_overrides.clear()


@pytest.fixture
def sample_payment_data() -> Dict[str, Any]:
    """Sample payment request data."""
    return {
        "amount_minor_units": 10000,
        "currency": "USD",
        "payment_method": "card",
        "user_id": "user_123",
        "metadata": {"order_id": "test_order_123"},
    }
