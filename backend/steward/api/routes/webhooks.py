"""Provider webhook endpoints.

Both endpoints verify the signature on the raw body before anything else.
A processing failure returns 500 so the provider redelivers; the ledger has
already marked the event FAILED, which lets the redelivery claim it again.
"""

from dataclasses import asdict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from steward.api.deps import provider_adapters, webhook_service
from steward.core.exceptions import ValidationError
from steward.domain.subscription_status import SubscriptionProvider
from steward.providers.registry import ProviderAdapters
from steward.services.webhook_service import WebhookService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks")

_SIGNATURE_HEADERS = {
    SubscriptionProvider.STRIPE: "stripe-signature",
    SubscriptionProvider.PAYSTACK: "x-paystack-signature",
}


async def _verified_payload(
    request: Request,
    provider: SubscriptionProvider,
    adapters: ProviderAdapters,
) -> tuple[dict, bytes]:
    adapter = adapters[provider]
    if not adapter.webhook_configured:
        logger.error("webhook_secret_missing", provider=provider.value)
        raise HTTPException(status_code=503, detail=f"{adapter.name} webhook endpoint is not configured")

    body = await request.body()
    try:
        payload = adapter.verify_webhook(body, request.headers.get(_SIGNATURE_HEADERS[provider]))
    except ValidationError as exc:
        logger.warning("webhook_rejected", provider=provider.value, reason=exc.message)
        raise HTTPException(status_code=400, detail=exc.message)
    return payload, body


def _processing_failed(provider: SubscriptionProvider) -> HTTPException:
    return HTTPException(status_code=500, detail=f"{provider.value} webhook processing failed")


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    adapters: ProviderAdapters = Depends(provider_adapters),
    service: WebhookService = Depends(webhook_service),
):
    event, body = await _verified_payload(request, SubscriptionProvider.STRIPE, adapters)
    if not event.get("id"):
        raise HTTPException(status_code=400, detail="Event has no id")

    try:
        outcome = await service.handle_stripe(event, body)
    except Exception:
        raise _processing_failed(SubscriptionProvider.STRIPE)
    return {"status": "ok", "outcome": asdict(outcome)}


@router.post("/paystack")
async def paystack_webhook(
    request: Request,
    adapters: ProviderAdapters = Depends(provider_adapters),
    service: WebhookService = Depends(webhook_service),
):
    payload, body = await _verified_payload(request, SubscriptionProvider.PAYSTACK, adapters)

    try:
        outcome = await service.handle_paystack(payload, body)
    except Exception:
        raise _processing_failed(SubscriptionProvider.PAYSTACK)
    return {"status": "ok", "outcome": asdict(outcome)}
