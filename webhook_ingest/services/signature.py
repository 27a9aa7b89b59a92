import hashlib
import hmac
import logging
from typing import Optional, Union
from webhook_ingest.core.exceptions import WebhookConfigurationError

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def _as_bytes(payload: Union[bytes, str]) -> bytes:
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return payload


def _require_secret(secret: Optional[str]) -> str:
    if not secret:
        raise WebhookConfigurationError("Webhook secret not configured")
    return secret


def sign_payload(payload: Union[bytes, str], secret: str) -> str:
    """
    HMAC-SHA256 of the payload as lowercase hex.
    Used by tests and for re-delivering events to downstream consumers.
    """
    secret = _require_secret(secret)
    return hmac.new(
        secret.encode("utf-8"),
        _as_bytes(payload),
        hashlib.sha256
    ).hexdigest()


def verify_signature(payload: bytes, signature: str, secret: Optional[str]) -> bool:
    """
    Verify a webhook signature over the raw request body.

    The digest must be computed on the bytes exactly as received; a
    re-serialized body can differ in key order or whitespace.
    Returns False for any malformed signature. Raises
    WebhookConfigurationError when no secret is configured.
    """
    secret = _require_secret(secret)
    if not signature:
        return False
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]
    try:
        provided = bytes.fromhex(signature)
    except ValueError:
        return False
    expected = hmac.new(secret.encode("utf-8"),
                        _as_bytes(payload), hashlib.sha256).digest()
    # compare_digest handles unequal lengths without leaking timing
    return hmac.compare_digest(expected, provided)


class SignatureValidator:
    def __init__(self, secret: Optional[str]):
        self._secret = secret

    @property
    def is_configured(self) -> bool:
        return bool(self._secret)

    def check_configured(self) -> bool:
        """Startup check; a missing secret is logged loudly, requests then fail with a 500."""
        if not self.is_configured:
            logger.critical(
                "Webhook secret is not configured, every webhook will fail until it is set")
        return self.is_configured

    def verify(self, payload: bytes, signature: str) -> bool:
        return verify_signature(payload, signature, self._secret)

    def sign(self, payload: Union[bytes, str]) -> str:
        return sign_payload(payload, self._secret)
