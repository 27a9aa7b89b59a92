import uuid
from typing import Optional
from pydantic import BaseModel


class WebhookResponse(BaseModel):
    success: bool
    message: str


class NewWebhookEvent(BaseModel):
    provider: str
    event_id: str
    event_type: Optional[str] = None
    signature: Optional[str] = None
    payload: str


class EventStats(BaseModel):
    total: int
    pending: int
    processing: int
    completed: int
    failed: int
    retry_rate: float


class WebhookJob(BaseModel):
    """Data carried by a queue job. record_id ties the job back to its ledger row."""
    job_id: str
    record_id: uuid.UUID
    provider: str
    event_id: str
    event_type: str
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    attempts: int = 0
