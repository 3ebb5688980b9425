"""
CampusBid Escrow — Payment Webhook Router
Providers retry until they see a 2xx, so every delivery is acknowledged
with 200 once stored, whatever happened while processing it. A bad HMAC
signature is the only refusal (401).
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import ValidationError

from campusbid.middleware.rate_limit import RATE_LIMIT_WEBHOOK, limiter
from campusbid.routers.deps import get_services
from campusbid.schemas.webhooks import PaymentWebhookPayload, WebhookAck
from campusbid.services.container import EngineServices

logger = logging.getLogger("campusbid.api.webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


def _parse_body(body: bytes) -> dict:
    try:
        data = json.loads(body or b"{}")
    except ValueError:
        return {"raw": body.decode("utf-8", errors="replace")}
    if not isinstance(data, dict):
        return {"raw": data}
    try:
        return PaymentWebhookPayload.model_validate(data).model_dump(exclude_none=True)
    except ValidationError:
        return data


@router.post("/payments", response_model=WebhookAck)
@limiter.limit(RATE_LIMIT_WEBHOOK)
async def payment_webhook(
    request: Request,
    x_webhook_signature: Optional[str] = Header(None),
    x_webhook_provider: Optional[str] = Header(None),
    services: EngineServices = Depends(get_services),
):
    body = await request.body()
    receipt = await services.webhooks.process(
        _parse_body(body),
        body=body,
        signature=x_webhook_signature,
        provider=x_webhook_provider or "sandbox",
    )
    return WebhookAck(
        processed=receipt.processed,
        webhook_id=receipt.webhook_id,
        transaction_id=receipt.transaction_id,
        escrow_created=receipt.escrow_created,
    )
