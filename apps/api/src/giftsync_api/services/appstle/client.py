"""Async client for the Appstle subscription admin API."""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

import httpx
from loguru import logger

from giftsync_api.core.logging import mask_secret
from giftsync_api.core.settings import settings

from .errors import (
    AppstleError,
    ContractNotEligibleError,
    ContractNotFoundError,
    GiftLineApplicationError,
    UpstreamHttpError,
    UpstreamParseError,
    UpstreamTimeoutError,
    UpstreamTransportError,
)
from .normalize import (
    ContractOrderHistory,
    ContractRecord,
    ContractsPage,
    normalize_contracts_page,
    normalize_order_history,
    sanitize_variant_handle,
    to_numeric_variant_id,
)

DEFAULT_BASE_URL = "https://subscription-admin.appstle.com"

_CONTRACT_DETAILS_PATH = "/api/external/v2/subscription-contract-details"
_STATUS_UPDATE_PATH = "/api/external/v2/subscription-contracts-update-status"
_SUBSCRIPTION_GROUPS_PATH = "/api/external/v2/subscription-groups"
_UPCOMING_ONE_OFFS_PATH = "/api/external/v2/upcoming-subscription-contract-one-offs-by-contractId"
_ONE_OFF_PATH = "/api/external/v2/subscription-contract-one-offs-by-contractId-and-billing-attempt-id"
# Order history has moved between releases; probed in this order.
_ORDER_HISTORY_CANDIDATES: tuple[tuple[str, dict[str, str]], ...] = (
    ("/api/external/v2/subscription-contract-orders", {"subscriptionContractId": "{contract_id}"}),
    ("/api/external/v2/subscription-contracts/{contract_id}/orders", {}),
    ("/api/external/v2/subscription-contract/{contract_id}/orders", {}),
)

CONTRACT_STATUSES = ("ACTIVE", "PAUSED", "CANCELLED")
DEFAULT_VARIANT_HANDLE = "default-title"
# Appstle falls back to the next upcoming order when the attempt id is not QUEUED.
FALLBACK_BILLING_ATTEMPT_ID = "1"

_NO_VALUE_PRESENT = "No value present"
_DETAIL_PATTERN = re.compile(r'"detail"\s*:\s*"([^"]+)"')


@dataclass(slots=True)
class ConnectionCheck:
    ok: bool
    message: str
    status_code: int | None = None


@dataclass(slots=True)
class GiftLineCandidate:
    contract_id: str
    billing_attempt_id: str
    variant_handle: str


@dataclass(slots=True)
class GiftLineResult:
    """Successful one-time line write."""

    line_id: str | None
    candidate: GiftLineCandidate
    already_present: bool = False


@dataclass(slots=True)
class GiftLineRequest:
    variant_id: str
    quantity: int = 1
    variant_handle: str | None = None
    title: str | None = None


@dataclass(slots=True)
class GiftLineOutcome:
    """Per-product result of a multi-product gift application."""

    variant_id: str
    success: bool
    line_id: str | None = None
    error: str | None = None


def _short_error(error: AppstleError) -> str:
    body = getattr(error, "body", None) or str(error)
    match = _DETAIL_PATTERN.search(body)
    if match:
        return match.group(1)
    return str(error)[:160]


class AppstleClient:
    """Thin async wrapper over the Appstle external v2 API.

    Every call is bounded by ``timeout_seconds``. Non-2xx answers raise
    ``UpstreamHttpError``; undecodable bodies raise ``UpstreamParseError``.
    """

    def __init__(
        self,
        *,
        api_key: str,
        shop: str,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
        request_delay_seconds: float | None = None,
        max_pages: int | None = None,
        lookup_max_pages: int | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self.shop = shop
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.appstle_timeout_seconds
        self._request_delay = (
            request_delay_seconds if request_delay_seconds is not None else settings.appstle_request_delay_seconds
        )
        self._max_pages = max_pages or settings.appstle_max_pages
        self._lookup_max_pages = lookup_max_pages or settings.appstle_lookup_max_pages
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self._timeout)

    async def __aenter__(self) -> "AppstleClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def masked_api_key(self) -> str:
        return mask_secret(self._api_key, visible=8)

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-API-Key": self._api_key,
            "X-Shopify-Shop-Domain": self.shop,
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        query = {key: value for key, value in (params or {}).items() if value is not None}
        logger.debug(
            "Appstle request",
            method=method,
            url=url,
            shop=self.shop,
            api_key=self.masked_api_key,
        )
        try:
            response = await self._client.request(
                method,
                url,
                params=query,
                headers=self._headers(),
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(url, self._timeout) from exc
        except httpx.HTTPError as exc:
            raise UpstreamTransportError(url, str(exc) or exc.__class__.__name__) from exc

        if response.status_code >= 400:
            logger.warning(
                "Appstle request failed",
                method=method,
                url=url,
                status_code=response.status_code,
                shop=self.shop,
            )
            raise UpstreamHttpError(response.status_code, response.text, url=url)

        text = response.text
        if not text.strip():
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise UpstreamParseError(
                f"Invalid JSON response: {text[:100]}",
                body=text,
                url=url,
            ) from exc

    async def fetch_contracts_page(
        self,
        page: int = 0,
        page_size: int = 50,
        status: str | None = None,
    ) -> ContractsPage:
        payload = await self._request(
            "GET",
            _CONTRACT_DETAILS_PATH,
            params={"page": page, "size": page_size, "status": status},
        )
        return normalize_contracts_page(payload, page=page, page_size=page_size)

    async def fetch_all_contracts(
        self,
        status: str | None = None,
        *,
        page_size: int | None = None,
    ) -> list[ContractRecord]:
        """Walk the listing until exhausted or the page ceiling is hit."""

        size = page_size or settings.appstle_page_size
        records: list[ContractRecord] = []
        page = 0
        while page < self._max_pages:
            result = await self.fetch_contracts_page(page, size, status)
            records.extend(result.records)
            if not result.has_more:
                break
            page += 1
        else:
            logger.warning(
                "Contract pagination stopped at page ceiling",
                shop=self.shop,
                max_pages=self._max_pages,
                fetched=len(records),
            )

        logger.info("Fetched subscription contracts", shop=self.shop, total=len(records), pages=page + 1)
        return records

    async def fetch_contract_orders(self, contract_id: str) -> ContractOrderHistory:
        """Return order history from the first endpoint that yields orders."""

        last_error: AppstleError | None = None
        for path_template, params_template in _ORDER_HISTORY_CANDIDATES:
            path = path_template.format(contract_id=contract_id)
            params = {key: value.format(contract_id=contract_id) for key, value in params_template.items()}
            try:
                payload = await self._request("GET", path, params=params)
                history = normalize_order_history(payload, source_path=path)
            except AppstleError as exc:
                logger.debug("Order history endpoint unavailable", path=path, error=str(exc))
                last_error = exc
                continue
            if history.orders:
                return history

        if last_error is not None and not isinstance(last_error, UpstreamHttpError):
            raise last_error
        return ContractOrderHistory(orders=[], total_count=0, last_order=None, source_path=None)

    async def update_contract_status(self, contract_id: str, status: str) -> None:
        normalized = status.upper()
        if normalized not in CONTRACT_STATUSES:
            raise ValueError(f"Unsupported contract status: {status}")
        await self._request(
            "PUT",
            _STATUS_UPDATE_PATH,
            params={"contractId": contract_id, "status": normalized},
        )
        logger.info("Updated contract status", shop=self.shop, contract_id=contract_id, status=normalized)

    async def test_connection(self) -> ConnectionCheck:
        try:
            await self._request("GET", _SUBSCRIPTION_GROUPS_PATH)
        except UpstreamHttpError as exc:
            if exc.status_code in (401, 403):
                return ConnectionCheck(False, "Invalid API key or insufficient permissions", exc.status_code)
            return ConnectionCheck(False, f"Appstle returned HTTP {exc.status_code}", exc.status_code)
        except AppstleError as exc:
            return ConnectionCheck(False, str(exc))
        return ConnectionCheck(True, "Connected to Appstle successfully", 200)

    async def resolve_contract(self, contract_id: str) -> ContractRecord:
        """Locate a contract by external or internal id across listing pages."""

        page = 0
        while page < self._lookup_max_pages:
            result = await self.fetch_contracts_page(page, 100)
            for record in result.records:
                if record.matches(contract_id):
                    return record
            if not result.has_more:
                break
            page += 1
        logger.warning("Contract not found during lookup", shop=self.shop, contract_id=contract_id, pages=page + 1)
        raise ContractNotFoundError(contract_id)

    async def fetch_upcoming_billing_attempt_id(self, contract_id: str) -> str | None:
        """Best-effort read of a queued billing attempt from the one-offs endpoint."""

        try:
            payload = await self._request("GET", _UPCOMING_ONE_OFFS_PATH, params={"contractId": contract_id})
        except AppstleError as exc:
            logger.debug("Upcoming one-offs lookup failed", contract_id=contract_id, error=str(exc))
            return None
        if isinstance(payload, list) and payload and isinstance(payload[0], dict):
            first = payload[0]
            candidate = first.get("billingAttemptId") or first.get("id")
            return str(candidate) if candidate else None
        return None

    def _build_candidates(
        self,
        record: ContractRecord,
        requested_id: str,
        billing_attempt_id: str,
        variant_handle: str | None,
    ) -> list[GiftLineCandidate]:
        contract_ids = _dedupe([record.internal_id or requested_id, record.contract_id])
        handles = _dedupe([sanitize_variant_handle(variant_handle) or DEFAULT_VARIANT_HANDLE, DEFAULT_VARIANT_HANDLE])
        return [
            GiftLineCandidate(contract_id=cid, billing_attempt_id=billing_attempt_id, variant_handle=handle)
            for cid in contract_ids
            for handle in handles
        ]

    async def apply_gift_line(
        self,
        contract_id: str,
        variant_id: str,
        quantity: int = 1,
        variant_handle: str | None = None,
    ) -> GiftLineResult:
        """Attach a zero-price one-time product to the contract's next order."""

        record = await self.resolve_contract(contract_id)
        if not record.is_active:
            raise ContractNotEligibleError(
                contract_id,
                f"Subscription is {record.status}. Only ACTIVE subscriptions can receive gift products.",
            )
        if record.next_billing_date is None and record.billing_attempt_id is None:
            raise ContractNotEligibleError(contract_id, "Subscription has no scheduled next order")

        billing_attempt_id = (
            record.billing_attempt_id
            or await self.fetch_upcoming_billing_attempt_id(record.internal_id or contract_id)
            or FALLBACK_BILLING_ATTEMPT_ID
        )
        numeric_variant_id = to_numeric_variant_id(variant_id)
        attempts: list[str] = []

        for candidate in self._build_candidates(record, contract_id, billing_attempt_id, variant_handle):
            params = {
                "contractId": candidate.contract_id,
                "billingAttemptId": candidate.billing_attempt_id,
                "variantId": numeric_variant_id,
                "variantHandle": candidate.variant_handle,
                "quantity": quantity,
            }
            label = f"contractId={candidate.contract_id}, billing={candidate.billing_attempt_id}"
            try:
                payload = await self._request("PUT", _ONE_OFF_PATH, params=params)
            except (UpstreamHttpError, UpstreamParseError) as exc:
                attempts.append(f"{label}: {_short_error(exc)}")
                continue

            if isinstance(payload, list):
                if not payload:
                    return GiftLineResult(line_id=None, candidate=candidate, already_present=True)
                first = payload[0] if isinstance(payload[0], dict) else {}
                line_id = first.get("id")
                return GiftLineResult(line_id=str(line_id) if line_id else None, candidate=candidate)
            if isinstance(payload, dict) and payload and not _looks_like_error(payload):
                line_id = payload.get("id")
                return GiftLineResult(line_id=str(line_id) if line_id else None, candidate=candidate)
            attempts.append(f"{label}: unrecognised response")

        logger.warning(
            "All gift line candidates failed",
            shop=self.shop,
            contract_id=contract_id,
            variant_id=numeric_variant_id,
            attempts=attempts,
        )
        if any(_NO_VALUE_PRESENT in attempt for attempt in attempts):
            message = (
                "Could not add product to subscription. The subscription may not have a scheduled "
                "next order, or the billing attempt is not in QUEUED status. Please check the "
                "subscription in Appstle admin."
            )
        else:
            message = f"Failed to add product: {attempts[0] if attempts else 'Unknown error'}"
        raise GiftLineApplicationError(message, attempts=attempts)

    async def apply_gift_lines(
        self,
        contract_id: str,
        products: Sequence[GiftLineRequest],
    ) -> list[GiftLineOutcome]:
        """Apply several gift lines sequentially, spacing calls by the request delay."""

        outcomes: list[GiftLineOutcome] = []
        for index, product in enumerate(products):
            if index and self._request_delay > 0:
                await asyncio.sleep(self._request_delay)
            try:
                result = await self.apply_gift_line(
                    contract_id,
                    product.variant_id,
                    product.quantity,
                    product.variant_handle or product.title,
                )
            except AppstleError as exc:
                outcomes.append(GiftLineOutcome(variant_id=product.variant_id, success=False, error=str(exc)))
                continue
            outcomes.append(GiftLineOutcome(variant_id=product.variant_id, success=True, line_id=result.line_id))
        return outcomes


def _looks_like_error(payload: Mapping[str, Any]) -> bool:
    if payload.get("error"):
        return True
    message = payload.get("message")
    return isinstance(message, str) and "error" in message.lower()


def _dedupe(values: Iterable[str | None]) -> list[str]:
    seen: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


__all__ = [
    "AppstleClient",
    "CONTRACT_STATUSES",
    "ConnectionCheck",
    "DEFAULT_BASE_URL",
    "GiftLineCandidate",
    "GiftLineOutcome",
    "GiftLineRequest",
    "GiftLineResult",
]
