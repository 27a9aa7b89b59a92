from .timestamp import TimestampMixin as TimestampMixin
from .registration import Registration as Registration
from .payment import Payment as Payment
from .audit_log import AuditLog as AuditLog
from .webhook_event import WebhookEvent as WebhookEvent

__all__ = ["TimestampMixin", "Registration", "Payment", "AuditLog", "WebhookEvent"]
