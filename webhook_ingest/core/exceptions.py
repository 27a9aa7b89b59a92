class WebhookError(Exception):
    """
    Errors that are returned to the webhook sender.
    The message is always generic, details go to the log.
    """

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class MissingSignatureError(WebhookError):
    def __init__(self):
        super().__init__("Missing webhook signature", status_code=400)


class InvalidSignatureError(WebhookError):
    def __init__(self):
        super().__init__("Invalid webhook signature", status_code=401)


class InvalidPayloadError(WebhookError):
    def __init__(self):
        super().__init__("Invalid JSON payload", status_code=400)


class MissingEventIdError(WebhookError):
    def __init__(self):
        super().__init__("Missing event ID", status_code=400)


class MalformedEventError(WebhookError):
    def __init__(self):
        super().__init__("Malformed event payload", status_code=400)


class WebhookProcessingError(WebhookError):
    def __init__(self):
        super().__init__("Webhook processing failed", status_code=500)


class WebhookConfigurationError(Exception):
    """Raised when the webhook secret is missing. Never a signature mismatch."""


class LedgerError(Exception):
    pass


class DuplicateEventError(LedgerError):
    def __init__(self, provider: str, event_id: str):
        self.provider = provider
        self.event_id = event_id
        super().__init__(f"webhook event {provider}:{event_id} already recorded")


class WebhookEventNotFoundError(LedgerError):
    def __init__(self, record_id):
        self.record_id = record_id
        super().__init__(f"Webhook event not found: {record_id}")


class EventProcessingError(Exception):
    """Business failure while applying an event. `retryable` drives the ledger transition."""
    retryable = True


class PaymentNotFoundError(EventProcessingError):
    # may be a race with order creation, so it stays retryable
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Payment not found for order {order_id}")


class RegistrationNotFoundError(EventProcessingError):
    def __init__(self, registration_id):
        self.registration_id = registration_id
        super().__init__(f"Registration not found: {registration_id}")


class InvalidPaymentTransitionError(EventProcessingError):
    retryable = False

    def __init__(self, payment_id, current_status, target_status):
        self.payment_id = payment_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Payment {payment_id} cannot move from {current_status} to {target_status}")
