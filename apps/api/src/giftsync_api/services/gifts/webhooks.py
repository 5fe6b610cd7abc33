"""Shopify webhook handling for the gift workflow."""

from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Mapping

from loguru import logger
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from giftsync_api.core.settings import get_settings
from giftsync_api.models.gift import GiftEligibility, GiftSelection
from giftsync_api.models.shop_settings import AppSettings, GiftSettings
from giftsync_api.models.subscriber import SubscriberSnapshot, SyncLog
from giftsync_api.services.appstle.normalize import to_numeric_id

from .milestones import EvaluationResult, MilestoneCandidate, MilestoneEvaluator, MilestonePolicy
from .shop_settings import ClientFactory, ShopSettingsService

ORDERS_PAID = "orders/paid"
APP_UNINSTALLED = "app/uninstalled"
CUSTOMERS_DATA_REQUEST = "customers/data_request"
CUSTOMERS_REDACT = "customers/redact"
SHOP_REDACT = "shop/redact"


def normalize_topic(raw: str) -> str:
    """``ORDERS_PAID`` / ``orders/paid`` -> ``orders/paid``."""

    topic = raw.strip().lower()
    if "/" not in topic:
        topic = topic.replace("_", "/", 1)
    return topic


def verify_webhook_signature(body: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature.strip())


@dataclass(slots=True)
class WebhookOutcome:
    status: str
    detail: str | None = None
    eligibilities_created: int = 0


def _customer_fields(payload: Mapping[str, Any]) -> tuple[str | None, str | None, str | None]:
    customer = payload.get("customer") if isinstance(payload.get("customer"), dict) else {}
    customer_id = customer.get("id") or customer.get("admin_graphql_api_id")
    email = customer.get("email") or payload.get("email") or payload.get("contact_email")
    name = " ".join(
        part for part in (customer.get("first_name"), customer.get("last_name")) if isinstance(part, str) and part
    ).strip()
    return (
        to_numeric_id(str(customer_id)) if customer_id else None,
        str(email).strip() if email else None,
        name or None,
    )


class ShopifyWebhookHandler:
    """Dispatches verified Shopify webhook topics."""

    def __init__(self, session: AsyncSession, *, client_factory: ClientFactory | None = None) -> None:
        self._session = session
        self._shop_settings = ShopSettingsService(session, client_factory=client_factory)

    async def handle(self, topic: str, shop: str, payload: Mapping[str, Any]) -> WebhookOutcome:
        normalized = normalize_topic(topic)
        if normalized == ORDERS_PAID:
            return await self.handle_order_paid(shop, payload)
        if normalized == APP_UNINSTALLED:
            return await self.handle_app_uninstalled(shop)
        if normalized == CUSTOMERS_REDACT:
            return await self.handle_customer_redact(shop, payload)
        if normalized == SHOP_REDACT:
            return await self.handle_app_uninstalled(shop)
        if normalized == CUSTOMERS_DATA_REQUEST:
            logger.info("Customer data request acknowledged", shop=shop)
            return WebhookOutcome(status="acknowledged")
        logger.info("Ignoring unhandled webhook topic", shop=shop, topic=normalized)
        return WebhookOutcome(status="ignored", detail=f"Unhandled topic {normalized}")

    async def handle_order_paid(self, shop: str, payload: Mapping[str, Any]) -> WebhookOutcome:
        """Issue a gift when the paying customer's delivered-order count hits a milestone."""

        customer_id, email, name = _customer_fields(payload)
        if not customer_id:
            return WebhookOutcome(status="ignored", detail="Order has no customer")

        gift_settings = await self._shop_settings.get_gift_settings(shop)
        if gift_settings is None or not gift_settings.enabled:
            return WebhookOutcome(status="ignored", detail="Gifts disabled")

        client = await self._shop_settings.build_client(shop)
        async with client:
            contracts = await client.fetch_all_contracts(status="ACTIVE")

        matching = [
            contract
            for contract in contracts
            if contract.customer_id and to_numeric_id(contract.customer_id) == customer_id
        ]
        if not matching:
            return WebhookOutcome(status="ignored", detail="Customer has no active subscription")

        policy = MilestonePolicy(get_settings().webhook_milestone_policy)
        evaluator = MilestoneEvaluator(self._session)
        total = EvaluationResult()
        for contract in matching:
            result = await evaluator.record_milestone(
                shop,
                MilestoneCandidate(
                    contract_id=contract.contract_id,
                    customer_email=contract.customer_email or email,
                    delivered_orders=contract.delivered_orders,
                    customer_id=customer_id,
                    customer_name=contract.customer_name or name,
                ),
                policy=policy,
                gift_settings=gift_settings,
            )
            total.created += result.created
            total.already_issued += result.already_issued

        logger.info(
            "Order paid webhook processed",
            shop=shop,
            customer_id=customer_id,
            contracts=len(matching),
            created=total.created,
            policy=policy.value,
        )
        return WebhookOutcome(status="processed", eligibilities_created=total.created)

    async def handle_customer_redact(self, shop: str, payload: Mapping[str, Any]) -> WebhookOutcome:
        customer_id, email, _ = _customer_fields(payload)
        if not customer_id and not email:
            return WebhookOutcome(status="ignored", detail="No customer identity in payload")

        snapshot_match = []
        eligibility_match = []
        if customer_id:
            snapshot_match.append(SubscriberSnapshot.customer_id == customer_id)
            eligibility_match.append(GiftEligibility.customer_id == customer_id)
        if email:
            snapshot_match.append(SubscriberSnapshot.customer_email == email)
            eligibility_match.append(GiftEligibility.customer_email == email)

        eligibility_ids = select(GiftEligibility.id).where(GiftEligibility.shop == shop, or_(*eligibility_match))
        await self._session.execute(
            delete(GiftSelection).where(GiftSelection.gift_eligibility_id.in_(eligibility_ids))
        )
        await self._session.execute(
            delete(GiftEligibility).where(GiftEligibility.shop == shop, or_(*eligibility_match))
        )
        await self._session.execute(
            delete(SubscriberSnapshot).where(SubscriberSnapshot.shop == shop, or_(*snapshot_match))
        )
        await self._session.commit()
        logger.info("Redacted customer gift data", shop=shop, customer_id=customer_id)
        return WebhookOutcome(status="processed", detail="Customer data removed")

    async def handle_app_uninstalled(self, shop: str) -> WebhookOutcome:
        eligibility_ids = select(GiftEligibility.id).where(GiftEligibility.shop == shop)
        await self._session.execute(
            delete(GiftSelection).where(GiftSelection.gift_eligibility_id.in_(eligibility_ids))
        )
        for model in (GiftEligibility, SubscriberSnapshot, SyncLog, GiftSettings, AppSettings):
            await self._session.execute(delete(model).where(model.shop == shop))
        await self._session.commit()
        logger.info("Purged shop data after uninstall", shop=shop)
        return WebhookOutcome(status="processed", detail="Shop data removed")
