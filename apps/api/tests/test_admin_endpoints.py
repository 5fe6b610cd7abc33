from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from giftsync_api.api.dependencies.providers import get_appstle_client_factory
from giftsync_api.core.settings import settings
from giftsync_api.models.gift import GiftEligibility, GiftEligibilityStatus

SHOP = "gift-shop.myshopify.com"
BASE = f"/api/v1/admin/shops/{SHOP}"


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_admin_routes_require_api_key(app_with_db, monkeypatch) -> None:
    monkeypatch.setattr(settings, "admin_api_key", "operator-key")
    app, _ = app_with_db

    async with _client(app) as client:
        missing = await client.get(f"{BASE}/settings")
        wrong = await client.get(f"{BASE}/settings", headers={"X-API-Key": "nope"})
        valid = await client.get(f"{BASE}/settings", headers={"X-API-Key": "operator-key"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert valid.status_code == 200


@pytest.mark.asyncio
async def test_api_key_is_masked_and_preserved(app_with_db) -> None:
    app, session_factory = app_with_db

    async with _client(app) as client:
        saved = await client.put(f"{BASE}/settings", json={"apiKey": "appstle-secret-12345678"})
        masked = saved.json()["apiKey"]
        resaved = await client.put(f"{BASE}/settings", json={"apiKey": masked, "apiUrl": "https://appstle.test"})
        fetched = await client.get(f"{BASE}/settings")
        rejected = await client.put(
            "/api/v1/admin/shops/fresh-shop.myshopify.com/settings", json={"apiKey": "  "}
        )

    assert saved.status_code == 200
    assert masked.endswith("12345678")
    assert "appstle-secret" not in masked
    assert resaved.status_code == 200
    assert fetched.json()["configured"] is True
    assert fetched.json()["apiKey"] == masked
    assert fetched.json()["apiUrl"] == "https://appstle.test"
    assert rejected.status_code == 400


@pytest.mark.asyncio
async def test_gift_settings_defaults_and_update(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        defaults = await client.get(f"{BASE}/gift-settings")
        updated = await client.put(
            f"{BASE}/gift-settings",
            json={
                "enabled": True,
                "triggerOrderNumbers": "10, 3,5,3",
                "maxGiftProducts": 2,
                "giftExpiryDays": 30,
                "emailDelayDays": 0,
                "eligibleProductIds": ["111", "222"],
            },
        )
        invalid = await client.put(f"{BASE}/gift-settings", json={"triggerOrderNumbers": "soon"})

    assert defaults.status_code == 200
    assert defaults.json()["triggerOrderNumbers"] == [3, 5, 10, 15, 20]
    assert defaults.json()["emailDelayDays"] == 7
    body = updated.json()
    assert body["triggerOrderNumbers"] == [3, 5, 10]
    assert body["maxGiftProducts"] == 2
    assert body["eligibleProductIds"] == ["111", "222"]
    assert invalid.status_code == 400


@pytest.mark.asyncio
async def test_sync_and_list_subscribers(app_with_db, shop_seeder, fake_appstle) -> None:
    app, session_factory = app_with_db
    app.dependency_overrides[get_appstle_client_factory] = lambda: fake_appstle.client_factory
    await shop_seeder(session_factory)
    fake_appstle.add_contract("900", delivered=6)
    fake_appstle.add_contract("901", delivered=1)
    fake_appstle.add_contract("902", delivered=4, status="PAUSED")

    async with _client(app) as client:
        synced = await client.post(f"{BASE}/subscribers/sync", json={"minOrders": 2, "statuses": ["ACTIVE", "PAUSED"]})
        listing = await client.get(f"{BASE}/subscribers", params={"pageSize": 1})
        overview = await client.get(f"{BASE}/overview")
        cleared = await client.delete(f"{BASE}/subscribers")

    assert synced.json() == {"totalFetched": 3, "totalSynced": 2}
    body = listing.json()
    assert body["total"] == 2
    assert body["totalPages"] == 2
    assert body["subscribers"][0]["contractId"] == "900"
    assert body["subscribers"][0]["customerName"] == "Ada Lovelace"
    assert body["lastSync"]["status"] == "success"
    assert body["lastSync"]["triggeredBy"] == "manual"
    assert overview.json()["subscriberCount"] == 2
    assert overview.json()["configured"] is True
    assert cleared.json() == {"deleted": 2}


@pytest.mark.asyncio
async def test_sync_upstream_failure_is_bad_gateway(app_with_db, shop_seeder, fake_appstle) -> None:
    app, session_factory = app_with_db
    app.dependency_overrides[get_appstle_client_factory] = lambda: fake_appstle.client_factory
    await shop_seeder(session_factory)
    fake_appstle.listing_error = 500

    async with _client(app) as client:
        response = await client.post(f"{BASE}/subscribers/sync", json={})

    assert response.status_code == 502


@pytest.mark.asyncio
async def test_sync_without_credentials_is_bad_request(app_with_db, shop_seeder, fake_appstle) -> None:
    app, session_factory = app_with_db
    app.dependency_overrides[get_appstle_client_factory] = lambda: fake_appstle.client_factory
    await shop_seeder(session_factory, api_key=None)

    async with _client(app) as client:
        response = await client.post(f"{BASE}/subscribers/sync", json={})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_update_contract_status(app_with_db, shop_seeder, fake_appstle) -> None:
    app, session_factory = app_with_db
    app.dependency_overrides[get_appstle_client_factory] = lambda: fake_appstle.client_factory
    await shop_seeder(session_factory)

    async with _client(app) as client:
        response = await client.put(f"{BASE}/subscribers/905/status", json={"status": "PAUSED"})
        invalid = await client.put(f"{BASE}/subscribers/905/status", json={"status": "DELETED"})

    assert response.status_code == 200
    assert response.json() == {"contractId": "905", "status": "PAUSED"}
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_manual_eligibility_and_duplicate(app_with_db, shop_seeder) -> None:
    app, session_factory = app_with_db
    await shop_seeder(session_factory)
    payload = {"contractId": "910", "customerEmail": "sub@example.com", "orderNumber": 3, "customerName": "Ada"}

    async with _client(app) as client:
        created = await client.post(f"{BASE}/eligibilities", json=payload)
        duplicate = await client.post(f"{BASE}/eligibilities", json=payload)
        listing = await client.get(f"{BASE}/eligibilities", params={"status": "pending"})

    assert created.status_code == 201
    body = created.json()
    assert body["status"] == "pending"
    assert body["customerId"] == "manual"
    assert body["giftLink"].startswith(f"https://{SHOP}/pages/gift-selection?token=")
    assert duplicate.status_code == 409
    assert listing.json()["total"] == 1
    assert listing.json()["eligibilities"][0]["id"] == body["id"]


@pytest.mark.asyncio
async def test_manual_eligibility_requires_gift_settings(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        response = await client.post(
            f"{BASE}/eligibilities",
            json={"contractId": "911", "customerEmail": "sub@example.com", "orderNumber": 3},
        )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_evaluate_endpoint_uses_requested_policy(app_with_db, shop_seeder, fake_appstle) -> None:
    app, session_factory = app_with_db
    app.dependency_overrides[get_appstle_client_factory] = lambda: fake_appstle.client_factory
    await shop_seeder(session_factory, thresholds="3,5")
    fake_appstle.add_contract("915", delivered=5)

    async with _client(app) as client:
        await client.post(f"{BASE}/subscribers/sync", json={})
        exact = await client.post(f"{BASE}/eligibilities/evaluate", json={"policy": "exact"})
        cumulative = await client.post(f"{BASE}/eligibilities/evaluate")

    assert exact.json() == {"created": 1, "alreadyIssued": 0, "skippedWithoutEmail": 0}
    assert cumulative.json() == {"created": 1, "alreadyIssued": 1, "skippedWithoutEmail": 0}


@pytest.mark.asyncio
async def test_reset_and_retry_routes(app_with_db, shop_seeder, fake_appstle) -> None:
    app, session_factory = app_with_db
    app.dependency_overrides[get_appstle_client_factory] = lambda: fake_appstle.client_factory
    await shop_seeder(session_factory)
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        eligibility = GiftEligibility(
            shop=SHOP,
            subscription_contract_id="920",
            customer_email="sub@example.com",
            order_number=3,
            gift_token=uuid4().hex + uuid4().hex,
            status=GiftEligibilityStatus.APPLIED,
            selected_at=now,
            applied_at=now,
            expires_at=now + timedelta(days=14),
        )
        session.add(eligibility)
        await session.commit()

    async with _client(app) as client:
        retry = await client.post(f"{BASE}/eligibilities/{eligibility.id}/retry")
        reset = await client.post(f"{BASE}/eligibilities/{eligibility.id}/reset")
        other_shop = await client.post(
            f"/api/v1/admin/shops/other-shop.myshopify.com/eligibilities/{eligibility.id}/reset"
        )
        unknown = await client.post(f"{BASE}/eligibilities/{uuid4()}/reset")

    assert retry.status_code == 409
    assert reset.status_code == 200
    assert reset.json()["status"] == "pending"
    assert reset.json()["appliedAt"] is None
    assert other_shop.status_code == 404
    assert unknown.status_code == 404
