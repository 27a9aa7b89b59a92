import asyncio
from sqlalchemy import func, select
from webhook_ingest.db.models import AuditLog, Payment, WebhookEvent
from webhook_ingest.db.models.payment import PaymentStatus
from webhook_ingest.db.models.webhook_event import WebhookEventStatus
from webhook_ingest.services.webhooks import ALREADY_PROCESSED, IN_FLIGHT, PROCESSED


async def test_concurrent_duplicate_deliveries(deliver, session_factory, seeded_payment, event_factory):
    """
    Test: concurrent deliveries of one event. The payment must change exactly once.
    """
    event = event_factory()
    responses = await asyncio.gather(*[deliver(event) for _ in range(3)])

    assert all(r.status_code == 200 for r in responses), [r.json() for r in responses]
    messages = [r.json()["message"] for r in responses]
    assert messages.count(PROCESSED) == 1, f"Expected one processed delivery, got {messages}"
    assert set(messages) <= {PROCESSED, ALREADY_PROCESSED, IN_FLIGHT}

    async with session_factory() as db:
        payment = await db.get(Payment, seeded_payment["payment_id"])
        audit_count = await db.scalar(select(func.count(AuditLog.id)))
        rows = list((await db.execute(select(WebhookEvent))).scalars().all())
    assert payment.status == PaymentStatus.COMPLETED
    assert audit_count == 1, f"Expected 1 audit row, got {audit_count}"
    assert len(rows) == 1
    assert rows[0].status == WebhookEventStatus.COMPLETED
