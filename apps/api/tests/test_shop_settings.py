import pytest

from giftsync_api.services.gifts import (
    ConfigurationError,
    ShopSettingsService,
    masked_api_key,
    parse_product_allow_list,
    parse_trigger_thresholds,
)
from giftsync_api.services.gifts.shop_settings import MASK_PREFIX

SHOP = "settings-shop.myshopify.com"


def test_parse_trigger_thresholds_sorts_and_drops_junk() -> None:
    assert parse_trigger_thresholds("10, 3,x,5,3,-2,0") == [3, 5, 10]
    assert parse_trigger_thresholds("") == []
    assert parse_trigger_thresholds(None) == []


def test_parse_product_allow_list() -> None:
    assert parse_product_allow_list(" 11, ,22 ") == ["11", "22"]
    assert parse_product_allow_list(None) == []


def test_masked_api_key_keeps_last_eight() -> None:
    assert masked_api_key("abcdefgh12345678") == f"{MASK_PREFIX}12345678"
    assert masked_api_key(None) == ""


@pytest.mark.asyncio
async def test_saving_masked_key_keeps_stored_key(session_factory) -> None:
    async with session_factory() as session:
        service = ShopSettingsService(session)
        await service.save_app_settings(SHOP, api_key="real-key-0001", api_url="https://appstle.example/")
        record = await service.save_app_settings(SHOP, api_key=masked_api_key("real-key-0001"), api_url=None)

    assert record.appstle_api_key == "real-key-0001"
    assert record.appstle_api_url is None


@pytest.mark.asyncio
async def test_saving_empty_key_without_existing_key_is_rejected(session_factory) -> None:
    async with session_factory() as session:
        service = ShopSettingsService(session)
        with pytest.raises(ConfigurationError):
            await service.save_app_settings(SHOP, api_key="", api_url=None)
        with pytest.raises(ConfigurationError):
            await service.save_app_settings(SHOP, api_key=f"{MASK_PREFIX}abcd", api_url=None)


@pytest.mark.asyncio
async def test_build_client_requires_api_key(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(ConfigurationError) as excinfo:
            await ShopSettingsService(session).build_client(SHOP)

    assert excinfo.value.shop == SHOP


@pytest.mark.asyncio
async def test_build_client_uses_factory(session_factory, fake_appstle) -> None:
    async with session_factory() as session:
        service = ShopSettingsService(session, client_factory=fake_appstle.client_factory)
        await service.save_app_settings(SHOP, api_key="real-key-0001")
        client = await service.build_client(SHOP)

    assert client.shop == SHOP


@pytest.mark.asyncio
async def test_ensure_gift_settings_creates_defaults_once(session_factory) -> None:
    async with session_factory() as session:
        service = ShopSettingsService(session)
        first = await service.ensure_gift_settings(SHOP)
        second = await service.ensure_gift_settings(SHOP)

    assert first.id == second.id
    assert first.enabled is True
    assert parse_trigger_thresholds(first.trigger_order_numbers) == [3, 5, 10, 15, 20]
    assert first.max_gift_products == 3
    assert first.gift_expiry_days == 14
    assert first.email_delay_days == 7


@pytest.mark.asyncio
async def test_save_gift_settings_validates_and_normalizes(session_factory) -> None:
    async with session_factory() as session:
        service = ShopSettingsService(session)
        with pytest.raises(ValueError):
            await service.save_gift_settings(
                SHOP,
                enabled=True,
                trigger_order_numbers="x, -1",
                max_gift_products=3,
                gift_expiry_days=14,
                email_delay_days=0,
            )
        record = await service.save_gift_settings(
            SHOP,
            enabled=True,
            trigger_order_numbers="10,3,5",
            max_gift_products=2,
            gift_expiry_days=7,
            email_delay_days=1,
            eligible_product_ids=["111", " 222 "],
        )
        enabled = await service.list_enabled_gift_settings()

    assert record.trigger_order_numbers == "3,5,10"
    assert record.eligible_product_ids == "111,222"
    assert record.email_subject == "You've earned a free gift!"
    assert [item.shop for item in enabled] == [SHOP]
