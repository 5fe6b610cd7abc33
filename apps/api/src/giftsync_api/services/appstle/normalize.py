"""Normalization of Appstle response envelopes into one internal shape."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from loguru import logger

from .errors import UpstreamParseError

_LISTING_KEYS = ("content", "subscriptionContractDetails", "subscriptionContracts")
_ORDER_KEYS = ("content", "orders", "subscriptionContractOrders", "data")
_PAGING_KEYS = {"totalElements", "totalCount", "totalPages", "last", "empty", "number", "size"}
_BILLING_ATTEMPT_KEYS = ("billingAttemptId", "nextBillingAttemptId", "upcomingBillingAttemptId")
_HANDLE_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
_TRAILING_DIGITS = re.compile(r"(\d+)$")


@dataclass(slots=True)
class ContractRecord:
    """A subscription contract as the rest of the service sees it."""

    contract_id: str
    internal_id: str | None
    status: str
    customer_id: str | None = None
    customer_email: str | None = None
    customer_first_name: str | None = None
    customer_last_name: str | None = None
    delivered_orders: int = 0
    last_order_name: str | None = None
    last_order_date: datetime | None = None
    next_billing_date: datetime | None = None
    billing_attempt_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == "ACTIVE"

    @property
    def customer_name(self) -> str:
        parts = [self.customer_first_name or "", self.customer_last_name or ""]
        return " ".join(part for part in parts if part).strip()

    def matches(self, contract_id: str) -> bool:
        return contract_id in {self.contract_id, self.internal_id}


@dataclass(slots=True)
class ContractsPage:
    records: list[ContractRecord]
    total_count: int
    has_more: bool
    page: int
    page_size: int


@dataclass(slots=True)
class ContractOrderHistory:
    orders: list[dict[str, Any]]
    total_count: int
    last_order: dict[str, Any] | None
    source_path: str | None


def parse_datetime(value: Any) -> datetime | None:
    """Parse ISO strings or epoch values into aware UTC datetimes."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10**11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str):
        candidate = value.strip()
        if candidate.endswith("Z"):
            candidate = f"{candidate[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return 0
    return 0


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def resolve_contract_id(raw: Mapping[str, Any]) -> str | None:
    """External contract id, falling back through the fields Appstle populates."""

    direct = _clean(raw.get("subscriptionContractId"))
    if direct:
        return direct
    graph_id = raw.get("graphSubscriptionContractId")
    if isinstance(graph_id, str):
        match = _TRAILING_DIGITS.search(graph_id)
        if match:
            return match.group(1)
    for key in ("contractId", "id"):
        candidate = _clean(raw.get(key))
        if candidate:
            return candidate
    return None


def _parse_last_order(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            logger.debug("Ignoring malformed lastSuccessfulOrder payload")
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def _split_name(raw: Mapping[str, Any]) -> tuple[str | None, str | None]:
    first = _clean(raw.get("customerFirstName"))
    last = _clean(raw.get("customerLastName"))
    if first or last:
        return first, last
    full_name = _clean(raw.get("customerName"))
    if not full_name:
        return None, None
    head, _, tail = full_name.partition(" ")
    return head or None, tail.strip() or None


def normalize_contract(raw: Mapping[str, Any]) -> ContractRecord | None:
    """Map one upstream contract payload to a ``ContractRecord``.

    Returns ``None`` when no usable contract identifier is present.
    """

    contract_id = resolve_contract_id(raw)
    if contract_id is None:
        return None

    first_name, last_name = _split_name(raw)
    last_order = _parse_last_order(raw.get("lastSuccessfulOrder"))
    delivered = raw.get("totalSuccessfulOrders")
    if delivered is None:
        delivered = raw.get("totalOrdersDelivered")

    billing_attempt_id = None
    for key in _BILLING_ATTEMPT_KEYS:
        billing_attempt_id = _clean(raw.get(key))
        if billing_attempt_id:
            break

    return ContractRecord(
        contract_id=contract_id,
        internal_id=_clean(raw.get("id")),
        status=(_clean(raw.get("status")) or "UNKNOWN").upper(),
        customer_id=_clean(raw.get("customerId")),
        customer_email=_clean(raw.get("customerEmail") or raw.get("email")),
        customer_first_name=first_name,
        customer_last_name=last_name,
        delivered_orders=max(_coerce_int(delivered), 0),
        last_order_name=_clean(last_order.get("orderName") or last_order.get("orderId")),
        last_order_date=parse_datetime(last_order.get("orderDate")),
        next_billing_date=parse_datetime(raw.get("nextBillingDate")),
        billing_attempt_id=billing_attempt_id,
        raw=dict(raw),
    )


def _extract_items(payload: Any, keys: tuple[str, ...], *, what: str) -> tuple[list[Any], Mapping[str, Any]]:
    if isinstance(payload, list):
        return payload, {}
    if not isinstance(payload, dict):
        raise UpstreamParseError(f"Unexpected {what} payload type: {type(payload).__name__}")
    for key in keys:
        items = payload.get(key)
        if isinstance(items, list):
            return items, payload
    if not payload or _PAGING_KEYS.intersection(payload):
        return [], payload
    raise UpstreamParseError(
        f"Unrecognised {what} envelope (keys: {', '.join(sorted(payload)[:10])})"
    )


def normalize_contracts_page(payload: Any, *, page: int, page_size: int) -> ContractsPage:
    """Collapse the listing envelopes Appstle returns into a ``ContractsPage``."""

    items, envelope = _extract_items(payload, _LISTING_KEYS, what="contract listing")

    records: list[ContractRecord] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        record = normalize_contract(item)
        if record is None:
            logger.warning("Skipping contract without identifier", page=page)
            continue
        records.append(record)

    total = envelope.get("totalElements") or envelope.get("totalCount") or len(items)

    last = envelope.get("last")
    total_pages = envelope.get("totalPages")
    if isinstance(last, bool):
        has_more = not last and len(items) > 0
    elif isinstance(total_pages, int):
        has_more = page + 1 < total_pages
    else:
        has_more = len(items) > 0 and len(items) >= page_size

    return ContractsPage(
        records=records,
        total_count=_coerce_int(total),
        has_more=has_more,
        page=page,
        page_size=page_size,
    )


def normalize_order_history(payload: Any, *, source_path: str | None = None) -> ContractOrderHistory:
    items, envelope = _extract_items(payload, _ORDER_KEYS, what="order history")
    orders = [item for item in items if isinstance(item, dict)]
    ordered = sorted(
        orders,
        key=lambda order: parse_datetime(order.get("createdAt") or order.get("orderDate"))
        or datetime.min.replace(tzinfo=timezone.utc),
        reverse=True,
    )
    total = envelope.get("totalElements") or envelope.get("totalCount") or len(ordered)
    return ContractOrderHistory(
        orders=ordered,
        total_count=_coerce_int(total),
        last_order=ordered[0] if ordered else None,
        source_path=source_path,
    )


def to_numeric_id(value: str) -> str:
    """``gid://shopify/ProductVariant/123`` -> ``123``; plain ids pass through."""

    match = _TRAILING_DIGITS.search(value.strip())
    return match.group(1) if match else value.strip()


def to_numeric_variant_id(variant_id: str) -> str:
    return to_numeric_id(variant_id)


def sanitize_variant_handle(handle: str | None) -> str | None:
    """Reduce a variant title or handle to the slug form Appstle accepts."""

    if not handle:
        return None
    slug = re.sub(r"[^a-z0-9]+", "-", handle.strip().lower()).strip("-")
    if slug and _HANDLE_PATTERN.match(slug):
        return slug
    return None


__all__ = [
    "ContractOrderHistory",
    "ContractRecord",
    "ContractsPage",
    "normalize_contract",
    "normalize_contracts_page",
    "normalize_order_history",
    "parse_datetime",
    "resolve_contract_id",
    "to_numeric_id",
    "sanitize_variant_handle",
    "to_numeric_variant_id",
]
