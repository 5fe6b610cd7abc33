"""Per-shop configuration access and Appstle client construction."""

from __future__ import annotations

from typing import Callable, Iterable

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from giftsync_api.core.settings import get_settings
from giftsync_api.models.shop_settings import AppSettings, GiftSettings
from giftsync_api.services.appstle import AppstleClient

from .errors import ConfigurationError

MASK_PREFIX = "••••••••"
MISSING_API_KEY_MESSAGE = "No Appstle API key configured"

ClientFactory = Callable[[AppSettings], AppstleClient]


def parse_trigger_thresholds(raw: str | None) -> list[int]:
    """``"10, 3,x,5,3"`` -> ``[3, 5, 10]``; junk and non-positive entries are dropped."""

    if not raw:
        return []
    thresholds: set[int] = set()
    for part in raw.split(","):
        try:
            value = int(part.strip())
        except ValueError:
            continue
        if value > 0:
            thresholds.add(value)
    return sorted(thresholds)


def parse_product_allow_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def masked_api_key(api_key: str | None) -> str:
    if not api_key:
        return ""
    return f"{MASK_PREFIX}{api_key[-8:]}"


def default_client_factory(app_settings: AppSettings) -> AppstleClient:
    settings = get_settings()
    return AppstleClient(
        api_key=app_settings.appstle_api_key,
        shop=app_settings.shop,
        base_url=app_settings.appstle_api_url or settings.appstle_default_api_url,
    )


class ShopSettingsService:
    """Reads and writes shop configuration rows."""

    def __init__(self, session: AsyncSession, *, client_factory: ClientFactory | None = None) -> None:
        self._session = session
        self._client_factory = client_factory or default_client_factory

    async def get_app_settings(self, shop: str) -> AppSettings | None:
        result = await self._session.execute(select(AppSettings).where(AppSettings.shop == shop))
        return result.scalar_one_or_none()

    async def save_app_settings(self, shop: str, *, api_key: str | None, api_url: str | None = None) -> AppSettings:
        """Upsert credentials. A masked key echoed back by a form keeps the stored key."""

        record = await self.get_app_settings(shop)
        incoming = (api_key or "").strip()
        keep_existing = not incoming or incoming.startswith(MASK_PREFIX)

        if keep_existing and (record is None or not record.appstle_api_key):
            raise ConfigurationError(shop, "Please enter a valid API key")

        if record is None:
            record = AppSettings(shop=shop)
            self._session.add(record)
        if not keep_existing:
            record.appstle_api_key = incoming
        record.appstle_api_url = (api_url or "").strip().rstrip("/") or None

        await self._session.commit()
        await self._session.refresh(record)
        logger.info("Saved Appstle settings", shop=shop, api_key=masked_api_key(record.appstle_api_key))
        return record

    async def get_gift_settings(self, shop: str) -> GiftSettings | None:
        result = await self._session.execute(select(GiftSettings).where(GiftSettings.shop == shop))
        return result.scalar_one_or_none()

    async def ensure_gift_settings(self, shop: str) -> GiftSettings:
        record = await self.get_gift_settings(shop)
        if record is not None:
            return record

        defaults = get_settings()
        record = GiftSettings(
            shop=shop,
            enabled=defaults.gift_default_enabled,
            trigger_order_numbers=defaults.gift_default_trigger_order_numbers,
            max_gift_products=defaults.gift_default_max_products,
            gift_expiry_days=defaults.gift_default_expiry_days,
            email_delay_days=defaults.gift_default_email_delay_days,
            email_subject=defaults.gift_default_email_subject,
        )
        self._session.add(record)
        await self._session.commit()
        await self._session.refresh(record)
        logger.info("Created default gift settings", shop=shop)
        return record

    async def save_gift_settings(
        self,
        shop: str,
        *,
        enabled: bool,
        trigger_order_numbers: str,
        max_gift_products: int,
        gift_expiry_days: int,
        email_delay_days: int,
        eligible_product_ids: Iterable[str] | str | None = None,
        email_subject: str | None = None,
    ) -> GiftSettings:
        thresholds = parse_trigger_thresholds(trigger_order_numbers)
        if not thresholds:
            raise ValueError("At least one positive trigger order number is required")
        if max_gift_products < 1:
            raise ValueError("max_gift_products must be at least 1")
        if gift_expiry_days < 1:
            raise ValueError("gift_expiry_days must be at least 1")
        if email_delay_days < 0:
            raise ValueError("email_delay_days cannot be negative")

        if isinstance(eligible_product_ids, str):
            allow_list = parse_product_allow_list(eligible_product_ids)
        else:
            allow_list = [str(item).strip() for item in eligible_product_ids or [] if str(item).strip()]

        record = await self.get_gift_settings(shop)
        if record is None:
            record = GiftSettings(shop=shop)
            self._session.add(record)

        record.enabled = enabled
        record.trigger_order_numbers = ",".join(str(value) for value in thresholds)
        record.max_gift_products = max_gift_products
        record.gift_expiry_days = gift_expiry_days
        record.email_delay_days = email_delay_days
        record.eligible_product_ids = ",".join(allow_list) or None
        record.email_subject = (email_subject or "").strip() or get_settings().gift_default_email_subject

        await self._session.commit()
        await self._session.refresh(record)
        logger.info("Saved gift settings", shop=shop, enabled=enabled, thresholds=thresholds)
        return record

    async def list_enabled_gift_settings(self) -> list[GiftSettings]:
        result = await self._session.execute(
            select(GiftSettings).where(GiftSettings.enabled.is_(True)).order_by(GiftSettings.shop)
        )
        return list(result.scalars().all())

    async def build_client(self, shop: str) -> AppstleClient:
        """Return an Appstle client for ``shop`` or raise ``ConfigurationError``."""

        app_settings = await self.get_app_settings(shop)
        if app_settings is None or not app_settings.appstle_api_key:
            raise ConfigurationError(shop, MISSING_API_KEY_MESSAGE)
        return self._client_factory(app_settings)
