import os
import sys
from pathlib import Path

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("EMAIL_SEND_DELAY_SECONDS", "0")
os.environ.setdefault("APPSTLE_REQUEST_DELAY_SECONDS", "0")


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

import giftsync_api.models  # noqa: E402,F401
from giftsync_api.app import create_app  # noqa: E402
from giftsync_api.db.base import Base  # noqa: E402
from giftsync_api.db.session import get_session  # noqa: E402
from giftsync_api.models.shop_settings import AppSettings, GiftSettings  # noqa: E402
from giftsync_api.observability.gift_cycle import get_gift_cycle_store  # noqa: E402
from giftsync_api.services.appstle import AppstleClient  # noqa: E402

SHOP = "gift-shop.myshopify.com"
APPSTLE_BASE_URL = "https://appstle.test"

_LISTING_PATH = "/subscription-contract-details"
_UPCOMING_PATH = "/upcoming-subscription-contract-one-offs-by-contractId"
_ONE_OFF_PATH = "/subscription-contract-one-offs-by-contractId-and-billing-attempt-id"
_GROUPS_PATH = "/subscription-groups"
_STATUS_PATH = "/subscription-contracts-update-status"


class FakeAppstleApi:
    """In-memory stand-in for the Appstle external API, served over ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.contracts: list[dict] = []
        self.failing_variants: set[str] = set()
        self.listing_error: int | None = None
        self.requests: list[httpx.Request] = []
        self.applied_lines: list[dict] = []

    def add_contract(
        self,
        contract_id: str,
        *,
        delivered: int,
        email: str | None = "subscriber@example.com",
        status: str = "ACTIVE",
        customer_id: str = "7001",
        internal_id: str | None = None,
        first_name: str = "Ada",
        last_name: str = "Lovelace",
        next_billing_date: str | None = "2030-01-01T00:00:00Z",
    ) -> dict:
        contract = {
            "id": internal_id or f"9{contract_id}",
            "subscriptionContractId": contract_id,
            "status": status,
            "customerId": customer_id,
            "customerEmail": email,
            "customerFirstName": first_name,
            "customerLastName": last_name,
            "totalSuccessfulOrders": delivered,
            "nextBillingDate": next_billing_date,
        }
        self.contracts.append(contract)
        return contract

    def set_delivered(self, contract_id: str, delivered: int) -> None:
        for contract in self.contracts:
            if contract["subscriptionContractId"] == contract_id:
                contract["totalSuccessfulOrders"] = delivered

    def one_off_requests(self) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path.endswith(_ONE_OFF_PATH)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = request.url.params

        if path.endswith(_LISTING_PATH):
            if self.listing_error:
                return httpx.Response(self.listing_error, json={"detail": "upstream unavailable"})
            status = params.get("status")
            matching = [c for c in self.contracts if not status or c["status"] == status]
            page = int(params.get("page", 0))
            size = int(params.get("size", 50))
            items = matching[page * size : (page + 1) * size]
            return httpx.Response(
                200,
                json={
                    "content": items,
                    "totalElements": len(matching),
                    "last": (page + 1) * size >= len(matching),
                },
            )
        if path.endswith(_UPCOMING_PATH):
            return httpx.Response(200, json=[])
        if path.endswith(_ONE_OFF_PATH):
            variant_id = params.get("variantId")
            if variant_id in self.failing_variants:
                return httpx.Response(400, json={"title": "Bad Request", "detail": "No value present"})
            line = {"id": f"line-{len(self.applied_lines) + 1}", "variantId": variant_id}
            self.applied_lines.append(line)
            return httpx.Response(200, json=[line])
        if path.endswith(_GROUPS_PATH):
            return httpx.Response(200, json=[])
        if path.endswith(_STATUS_PATH):
            return httpx.Response(200, text="")
        return httpx.Response(404, json={"detail": "not found"})

    def build_client(self, shop: str = SHOP) -> AppstleClient:
        return AppstleClient(
            api_key="appstle-test-key",
            shop=shop,
            base_url=APPSTLE_BASE_URL,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
            request_delay_seconds=0,
        )

    def client_factory(self, app_settings: AppSettings) -> AppstleClient:
        return self.build_client(app_settings.shop)


async def _create_factory(url: str, **engine_kwargs):
    engine = create_async_engine(url, future=True, **engine_kwargs)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session_factory():
    engine, factory = await _create_factory("sqlite+aiosqlite:///:memory:")

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Separate connection per session, for tests that race two sessions."""

    engine, factory = await _create_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'giftsync.db'}",
        poolclass=NullPool,
    )

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def fake_appstle() -> FakeAppstleApi:
    return FakeAppstleApi()


@pytest.fixture(autouse=True)
def reset_gift_cycle_store():
    get_gift_cycle_store().reset()
    yield
    get_gift_cycle_store().reset()


async def seed_shop(
    factory,
    shop: str = SHOP,
    *,
    api_key: str | None = "appstle-test-key",
    enabled: bool = True,
    thresholds: str = "3,5,10",
    max_gift_products: int = 3,
    gift_expiry_days: int = 14,
    email_delay_days: int = 0,
) -> None:
    async with factory() as session:
        if api_key is not None:
            session.add(AppSettings(shop=shop, appstle_api_key=api_key))
        session.add(
            GiftSettings(
                shop=shop,
                enabled=enabled,
                trigger_order_numbers=thresholds,
                max_gift_products=max_gift_products,
                gift_expiry_days=gift_expiry_days,
                email_delay_days=email_delay_days,
                email_subject="You've earned a free gift!",
            )
        )
        await session.commit()


@pytest.fixture
def shop_seeder():
    return seed_shop
