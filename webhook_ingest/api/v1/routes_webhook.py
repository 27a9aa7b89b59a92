import logging
from typing import Optional
from fastapi import APIRouter, Depends, Header, Request
from webhook_ingest.core.exceptions import WebhookConfigurationError, WebhookError, WebhookProcessingError
from webhook_ingest.schemas.webhook import WebhookResponse
from webhook_ingest.services.webhooks import WebhookService

router = APIRouter()
logger = logging.getLogger(__name__)


def get_webhook_service(request: Request) -> WebhookService:
    return request.app.state.services.webhooks


@router.post("/razorpay", response_model=WebhookResponse)
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None, alias="X-Razorpay-Signature"),
    service: WebhookService = Depends(get_webhook_service),
):
    """
    Handle Razorpay webhook callbacks.

    Any non-2xx answer makes the provider deliver again, so failures that
    should be retried return 500 and everything that is settled returns 200.
    """
    # the signature covers these exact bytes, never a re-serialized body
    payload = await request.body()
    try:
        return await service.ingest(payload, x_razorpay_signature)
    except WebhookError:
        raise
    except WebhookConfigurationError as e:
        logger.critical(f"Webhook endpoint misconfigured: {e}")
        raise WebhookProcessingError()
    except Exception as e:
        logger.error(f"Unexpected error handling webhook: {e}", exc_info=True)
        raise WebhookProcessingError()
