import json
import uuid
import pytest
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from webhook_ingest.app import create_app
from webhook_ingest.core.config import Settings
from webhook_ingest.db.base import Base
from webhook_ingest.db.models import Payment, Registration
from webhook_ingest.db.models.payment import PaymentStatus
from webhook_ingest.db.models.registration import FunnelStage, RegistrationStatus
from webhook_ingest.services.event_processor import EventProcessor
from webhook_ingest.services.idempotency import IdempotencyLedger
from webhook_ingest.services.signature import sign_payload

WEBHOOK_SECRET = "whsec_test_secret"
ORDER_ID = "order_test_1"
USER_ID = "user_test_1"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        ENV="test",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'webhooks.db'}",
        RAZORPAY_WEBHOOK_SECRET=WEBHOOK_SECRET,
        ENABLE_BACKGROUND_WORKERS=False,
        WEBHOOK_RETRY_DELAY_MS=5000,
    )


@pytest.fixture
async def db_engine(settings):
    # file backed so concurrent sessions get their own connections
    engine = create_async_engine(url=settings.DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(
        bind=db_engine,
        autoflush=False,
        expire_on_commit=False
    )


@pytest.fixture
def ledger(session_factory):
    return IdempotencyLedger(session_factory, max_retries=3, retry_delay_ms=5000)


@pytest.fixture
def processor(session_factory):
    return EventProcessor(session_factory)


@pytest.fixture
async def seeded_payment(session_factory):
    """
    A registration waiting for payment and its PENDING payment for ORDER_ID.
    """
    registration = Registration(
        id=uuid.uuid4(),
        user_id=USER_ID,
        status=RegistrationStatus.DRAFT,
        funnel_stage=FunnelStage.PAYMENT_PENDING,
    )
    payment = Payment(
        id=uuid.uuid4(),
        registration_id=registration.id,
        provider_order_id=ORDER_ID,
        amount=50000,
        currency="INR",
        status=PaymentStatus.PENDING,
    )
    async with session_factory() as db:
        db.add(registration)
        await db.flush()
        db.add(payment)
        await db.commit()
    return {"registration_id": registration.id, "payment_id": payment.id, "order_id": ORDER_ID}


@pytest.fixture
async def redis_client():
    redis = FakeRedis()
    yield redis
    await redis.flushall()
    await redis.aclose()


@pytest.fixture
def app(settings, session_factory, redis_client):
    return create_app(settings, session_factory=session_factory, redis=redis_client)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def build_event(event_id: str = "evt_test_1", event: str = "payment.captured", order_id: str = ORDER_ID,
                payment_id: str = "pay_test_1", **entity) -> dict:
    """Provider envelope for a payment event."""
    return {
        "entity": "event",
        "id": event_id,
        "event": event,
        "created_at": 1700000000,
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": order_id,
                    "amount": 50000,
                    "currency": "INR",
                    "status": "captured" if event == "payment.captured" else "failed",
                    **entity,
                }
            }
        },
    }


def signed_request(event: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(event).encode("utf-8")
    return body, {"Content-Type": "application/json", "X-Razorpay-Signature": sign_payload(body, secret)}


@pytest.fixture
def event_factory():
    return build_event


@pytest.fixture
def deliver(client):
    """POST a signed event to the webhook endpoint."""
    async def _deliver(event: dict):
        body, headers = signed_request(event)
        return await client.post("/api/v1/webhooks/razorpay", content=body, headers=headers)
    return _deliver
