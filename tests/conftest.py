"""
Test configuration and fixtures.
Uses a per-test SQLite file (aiosqlite) so the store's independent sessions
see each other's commits. Redis and alert delivery are mocked.
"""
import json
import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from boostpay.config import Settings
from boostpay.database import Base
from boostpay.models import Booking
from boostpay.services.replay_guard import ReplayGuard
from boostpay.services.webhook_store import WebhookEventStore
from boostpay.utils.timestamps import format_vnpay_date, to_epoch_ms
from boostpay.utils.webhook_signatures import (
    sign_momo_payload,
    sign_vnpay_params,
    sign_zalopay_data,
)

MOMO_ACCESS_KEY = "test_momo_access"
MOMO_SECRET_KEY = "test_momo_secret"
VNPAY_HASH_SECRET = "test_vnpay_hash_secret"
ZALOPAY_KEY2 = "test_zalopay_key2"
ADMIN_API_KEY = "test_admin_key"
CRON_SECRET = "test_cron_secret"


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'boostpay_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    """A session for arranging and asserting test state."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session_factory):
    return WebhookEventStore(session_factory)


@pytest.fixture
def guard(session_factory):
    return ReplayGuard(session_factory)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        app_env="test",
        momo_access_key=MOMO_ACCESS_KEY,
        momo_secret_key=MOMO_SECRET_KEY,
        vnpay_hash_secret=VNPAY_HASH_SECRET,
        zalopay_key2=ZALOPAY_KEY2,
        admin_api_key=ADMIN_API_KEY,
        cron_secret=CRON_SECRET,
        alert_webhook_url="",
    )


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("boostpay.utils.redis_client.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.ping = AsyncMock(return_value=True)
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[0, 1, 1, [], True])
        redis_mock.pipeline = MagicMock(return_value=pipe)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def mock_alert():
    with patch("boostpay.services.webhook_store.send_alert", new_callable=AsyncMock) as mock:
        yield mock


@pytest.fixture
def make_booking(session_factory):
    """Create and commit a booking awaiting payment."""
    async def _make(
        payment_reference: str = "BK-1001",
        total_amount: int = 150000,
        status: str = "pending",
        payment_status: str = "pending",
    ) -> Booking:
        async with session_factory() as session:
            booking = Booking(
                booking_number=f"BN-{uuid.uuid4().hex[:8].upper()}",
                payment_reference=payment_reference,
                total_amount=total_amount,
                status=status,
                payment_status=payment_status,
            )
            session.add(booking)
            await session.commit()
            return booking
    return _make


@pytest.fixture
def app(test_settings, session_factory):
    """FastAPI app wired to the test database and settings."""
    from boostpay.api.deps import get_replay_guard, get_webhook_store
    from boostpay.config import get_settings
    from boostpay.database import get_db
    from boostpay.main import create_app

    # Keep pytest's log capture handlers on the root logger
    with patch("boostpay.main.configure_structured_logging"):
        application = create_app()

    async def _get_db():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_db] = _get_db
    application.dependency_overrides[get_webhook_store] = (
        lambda: WebhookEventStore.from_settings(session_factory, test_settings)
    )
    application.dependency_overrides[get_replay_guard] = (
        lambda: ReplayGuard(
            session_factory,
            max_age_seconds=test_settings.webhook_max_age_seconds,
            clock_skew_seconds=test_settings.webhook_clock_skew_seconds,
        )
    )
    return application


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


# ---------------------------------------------------------------------------
# Signed gateway payload builders
# ---------------------------------------------------------------------------

def build_momo_payload(
    order_id: str = "BK-1001",
    trans_id: int = 4088878653,
    amount: int = 150000,
    result_code: int = 0,
    sent_at: datetime | None = None,
    secret_key: str = MOMO_SECRET_KEY,
) -> dict:
    sent_at = sent_at or datetime.now(timezone.utc)
    payload = {
        "partnerCode": "MOMOBOOST",
        "orderId": order_id,
        "requestId": f"req-{order_id}",
        "amount": amount,
        "orderInfo": f"Thanh toan don {order_id}",
        "orderType": "momo_wallet",
        "transId": trans_id,
        "resultCode": result_code,
        "message": "Successful." if result_code == 0 else "Transaction denied by user.",
        "payType": "qr",
        "responseTime": to_epoch_ms(sent_at),
        "extraData": "",
    }
    payload["signature"] = sign_momo_payload(MOMO_ACCESS_KEY, secret_key, payload)
    return payload


def build_vnpay_params(
    txn_ref: str = "BK-1001",
    transaction_no: str = "14226112",
    amount: int = 150000,
    response_code: str = "00",
    sent_at: datetime | None = None,
    hash_secret: str = VNPAY_HASH_SECRET,
) -> dict:
    sent_at = sent_at or datetime.now(timezone.utc)
    params = {
        "vnp_TmnCode": "BOOSTPAY",
        "vnp_Amount": str(amount * 100),
        "vnp_BankCode": "NCB",
        "vnp_BankTranNo": "VNP14226112",
        "vnp_CardType": "ATM",
        "vnp_PayDate": format_vnpay_date(sent_at),
        "vnp_OrderInfo": f"Thanh toan don hang {txn_ref}",
        "vnp_TransactionNo": transaction_no,
        "vnp_ResponseCode": response_code,
        "vnp_TransactionStatus": response_code,
        "vnp_TxnRef": txn_ref,
    }
    params["vnp_SecureHash"] = sign_vnpay_params(hash_secret, params)
    return params


def build_zalopay_form(
    app_trans_id: str = "261019_BK1001",
    zp_trans_id: int = 240000123,
    amount: int = 150000,
    status: int | None = 1,
    sent_at: datetime | None = None,
    key2: str = ZALOPAY_KEY2,
) -> dict:
    sent_at = sent_at or datetime.now(timezone.utc)
    data = {
        "app_id": 2553,
        "app_trans_id": app_trans_id,
        "app_user": "boostpay_user",
        "app_time": to_epoch_ms(sent_at) - 30_000,
        "amount": amount,
        "embed_data": "{}",
        "item": "[]",
        "zp_trans_id": zp_trans_id,
        "server_time": to_epoch_ms(sent_at),
        "channel": 38,
    }
    if status is not None:
        data["status"] = status
    data_str = json.dumps(data)
    return {"data": data_str, "mac": sign_zalopay_data(key2, data_str)}


@pytest.fixture
def momo_payload():
    return build_momo_payload


@pytest.fixture
def vnpay_params():
    return build_vnpay_params


@pytest.fixture
def zalopay_form():
    return build_zalopay_form
