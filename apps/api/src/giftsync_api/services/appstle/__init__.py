"""Appstle subscription platform integration."""

from .client import (  # noqa: F401
    AppstleClient,
    ConnectionCheck,
    GiftLineOutcome,
    GiftLineRequest,
    GiftLineResult,
)
from .errors import (  # noqa: F401
    AppstleError,
    ContractNotEligibleError,
    ContractNotFoundError,
    GiftLineApplicationError,
    UpstreamHttpError,
    UpstreamParseError,
    UpstreamTimeoutError,
    UpstreamTransportError,
)
from .normalize import ContractOrderHistory, ContractRecord, ContractsPage  # noqa: F401
