"""
Stripe webhook endpoint.

200 {"received": true} for accepted and duplicate events, 400 for rejected
ones, 500 for anything that failed before commit so Stripe redelivers.
"""

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from app.infrastructure.observability.logging import get_logger
from app.models.domain.billing_domain import WebhookStatus
from app.services.billing.webhook_engine import PushEventEngine, push_event_engine

logger = get_logger(__name__)

router = APIRouter(tags=["billing"])

SIGNATURE_HEADER = "stripe-signature"


def get_push_event_engine() -> PushEventEngine:
    return push_event_engine


@router.post("/stripe/webhook")
async def stripe_webhook(request: Request, engine: PushEventEngine = Depends(get_push_event_engine)):
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        result = await engine.handle_event(payload, signature)
    except Exception as e:
        logger.error(
            "Webhook processing failed", error=str(e), error_type=type(e).__name__, exc_info=True
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"received": False, "error": "processing_failed"},
        )

    if result.status == WebhookStatus.REJECTED:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"received": False, "error": result.error.value if result.error else None},
        )

    return {"received": True, "status": result.status.value}
