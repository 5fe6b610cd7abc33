"""SQLAlchemy models package."""

from .shop_settings import AppSettings, GiftSettings  # noqa: F401
from .subscriber import SubscriberSnapshot, SyncLog, SyncLogStatus  # noqa: F401
from .gift import GiftEligibility, GiftEligibilityStatus, GiftSelection  # noqa: F401

__all__ = [
    "AppSettings",
    "GiftEligibility",
    "GiftEligibilityStatus",
    "GiftSelection",
    "GiftSettings",
    "SubscriberSnapshot",
    "SyncLog",
    "SyncLogStatus",
]
