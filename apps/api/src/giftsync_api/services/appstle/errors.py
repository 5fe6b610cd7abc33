"""Typed failures raised by the Appstle subscription client."""

from __future__ import annotations

from typing import Sequence


class AppstleError(RuntimeError):
    """Base error for upstream subscription API failures."""


class UpstreamHttpError(AppstleError):
    """Raised when the upstream answers with a non-2xx status."""

    def __init__(self, status_code: int, body: str, *, url: str | None = None) -> None:
        self.status_code = status_code
        self.body = body
        self.url = url
        super().__init__(f"Appstle API error: {status_code} - {body[:500]}")


class UpstreamParseError(AppstleError):
    """Raised when an upstream body is not valid JSON."""

    def __init__(self, message: str, *, body: str | None = None, url: str | None = None) -> None:
        self.body = body
        self.url = url
        super().__init__(message)


class UpstreamTimeoutError(AppstleError):
    """Raised when an upstream call exceeds its timeout."""

    def __init__(self, url: str, timeout_seconds: float) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Appstle request timed out after {timeout_seconds:g}s: {url}")


class UpstreamTransportError(AppstleError):
    """Raised when the upstream cannot be reached at all."""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        super().__init__(f"Appstle request failed: {reason}")


class ContractNotFoundError(AppstleError):
    """Raised when a contract cannot be located after paging through the listing."""

    def __init__(self, contract_id: str) -> None:
        self.contract_id = contract_id
        super().__init__(
            "Subscription not found in Appstle. Please verify the subscription exists "
            "and re-sync your subscribers."
        )


class ContractNotEligibleError(AppstleError):
    """Raised when a contract cannot receive one-time gift lines."""

    def __init__(self, contract_id: str, message: str) -> None:
        self.contract_id = contract_id
        super().__init__(message)


class GiftLineApplicationError(AppstleError):
    """Raised when every write candidate for a gift line failed."""

    def __init__(self, message: str, *, attempts: Sequence[str]) -> None:
        self.attempts = list(attempts)
        super().__init__(message)


__all__ = [
    "AppstleError",
    "ContractNotEligibleError",
    "ContractNotFoundError",
    "GiftLineApplicationError",
    "UpstreamHttpError",
    "UpstreamParseError",
    "UpstreamTimeoutError",
    "UpstreamTransportError",
]
