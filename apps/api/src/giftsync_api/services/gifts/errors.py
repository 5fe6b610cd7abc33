"""Domain errors for the gift workflow."""

from __future__ import annotations

from enum import Enum


class ConfigurationError(RuntimeError):
    """Raised when a shop is missing configuration required for a step."""

    def __init__(self, shop: str, message: str) -> None:
        self.shop = shop
        super().__init__(message)


class GiftValidationCode(str, Enum):
    MISSING_INPUT = "missing_input"
    INVALID_TOKEN = "invalid_token"
    EXPIRED = "expired"
    ALREADY_REDEEMED = "already_redeemed"
    SELECTION_LIMIT = "selection_limit"


class GiftValidationError(RuntimeError):
    """Customer-facing rejection of a gift verification or redemption."""

    def __init__(self, code: GiftValidationCode, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


class EligibilityNotFoundError(RuntimeError):
    def __init__(self, eligibility_id: object) -> None:
        self.eligibility_id = eligibility_id
        super().__init__(f"Gift eligibility {eligibility_id} not found")


class EligibilityStateError(RuntimeError):
    """Raised when an operator action does not apply to the eligibility's status."""

    def __init__(self, eligibility_id: object, status: str, action: str) -> None:
        self.eligibility_id = eligibility_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} gift eligibility {eligibility_id} in status {status}")


class DuplicateEligibilityError(RuntimeError):
    """Raised when an eligibility already exists for a subscriber milestone."""

    def __init__(self, shop: str, contract_id: str, order_number: int) -> None:
        self.shop = shop
        self.contract_id = contract_id
        self.order_number = order_number
        super().__init__(
            f"Gift eligibility already exists for contract {contract_id} at order {order_number}"
        )


__all__ = [
    "ConfigurationError",
    "DuplicateEligibilityError",
    "EligibilityNotFoundError",
    "EligibilityStateError",
    "GiftValidationCode",
    "GiftValidationError",
]
