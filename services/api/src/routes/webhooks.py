from fastapi import APIRouter, Depends, HTTPException, Request

from models.operations.errors import PaymentNotFound, ProviderUnavailable
from settlement.providers import WebhookRejected
from utils import log

from .dependencies import get_coordinator

logger = log.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments")
async def route_payment_webhook(request: Request, coordinator=Depends(get_coordinator)):
    """
    Provider webhook receiver. Delivery is at-least-once and unordered, so the
    event body is only used to find the intent; its state is read back from
    the provider.
    """
    payload = await request.body()
    try:
        verification = await coordinator.handle_webhook(payload, request.headers)
    except WebhookRejected as e:
        logger.warning(f"Webhook rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except PaymentNotFound as e:
        # non-2xx makes the provider redeliver
        logger.warning(f"Webhook for unknown payment: {e}")
        raise HTTPException(status_code=404, detail="Payment not found")
    except ProviderUnavailable as e:
        logger.error(f"Webhook verification failed, provider unavailable: {e}")
        raise HTTPException(status_code=503, detail="Payment provider unavailable")

    if verification:
        logger.info(f"Webhook processed: provider status {verification.provider_status}")
    return {"received": True}
