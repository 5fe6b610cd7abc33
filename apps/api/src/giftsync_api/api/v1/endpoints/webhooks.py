"""Shopify webhook receiver."""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from giftsync_api.api.dependencies.providers import get_appstle_client_factory
from giftsync_api.core.settings import settings
from giftsync_api.db.session import get_session
from giftsync_api.services.appstle import AppstleError
from giftsync_api.services.gifts import (
    ClientFactory,
    ConfigurationError,
    ShopifyWebhookHandler,
    verify_webhook_signature,
)


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/shopify", summary="Receive Shopify webhooks")
async def receive_shopify_webhook(
    request: Request,
    x_shopify_topic: str = Header("", alias="X-Shopify-Topic"),
    x_shopify_shop_domain: str = Header("", alias="X-Shopify-Shop-Domain"),
    x_shopify_hmac_sha256: str | None = Header(None, alias="X-Shopify-Hmac-Sha256"),
    session: AsyncSession = Depends(get_session),
    client_factory: ClientFactory = Depends(get_appstle_client_factory),
) -> dict[str, object]:
    body = await request.body()
    if settings.shopify_api_secret and not verify_webhook_signature(
        body, x_shopify_hmac_sha256, settings.shopify_api_secret
    ):
        logger.warning("Rejected webhook with invalid signature", shop=x_shopify_shop_domain, topic=x_shopify_topic)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    if not x_shopify_topic or not x_shopify_shop_domain:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing webhook topic or shop domain")

    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    handler = ShopifyWebhookHandler(session, client_factory=client_factory)
    try:
        outcome = await handler.handle(x_shopify_topic, x_shopify_shop_domain, payload)
    except ConfigurationError as exc:
        logger.warning("Webhook ignored for unconfigured shop", shop=exc.shop, reason=str(exc))
        return {"status": "ignored", "detail": str(exc), "eligibilitiesCreated": 0}
    except AppstleError as exc:
        logger.exception("Webhook processing failed upstream", shop=x_shopify_shop_domain, error=str(exc))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    return {
        "status": outcome.status,
        "detail": outcome.detail,
        "eligibilitiesCreated": outcome.eligibilities_created,
    }
