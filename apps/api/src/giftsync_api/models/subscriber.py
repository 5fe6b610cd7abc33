"""Cached subscriber snapshot and sync audit models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum as SqlEnum,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID

from giftsync_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriberSnapshot(Base):
    """One subscription contract as last seen upstream. Replaced wholesale per sync."""

    __tablename__ = "subscriber_snapshots"
    __table_args__ = (
        UniqueConstraint("shop", "contract_id", name="uq_subscriber_snapshots_shop_contract"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    shop = Column(String, nullable=False, index=True)
    contract_id = Column(String, nullable=False)
    appstle_internal_id = Column(String, nullable=True)
    customer_id = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    customer_first_name = Column(String, nullable=True)
    customer_last_name = Column(String, nullable=True)
    status = Column(String(32), nullable=False, default="ACTIVE")
    total_orders_delivered = Column(Integer, nullable=False, default=0)
    last_order_id = Column(String, nullable=True)
    last_order_date = Column(DateTime(timezone=True), nullable=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    subscription_data = Column(JSON, nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def customer_name(self) -> str:
        parts = [self.customer_first_name or "", self.customer_last_name or ""]
        return " ".join(part for part in parts if part).strip()


class SyncLogStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class SyncLog(Base):
    """Append-only record of each reconciliation attempt."""

    __tablename__ = "sync_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    shop = Column(String, nullable=False, index=True)
    total_fetched = Column(Integer, nullable=False, default=0)
    total_synced = Column(Integer, nullable=False, default=0)
    filter_min_orders = Column(Integer, nullable=False, default=0)
    status = Column(
        SqlEnum(
            SyncLogStatus,
            name="sync_log_status",
            native_enum=False,
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
    )
    error_message = Column(Text, nullable=True)
    triggered_by = Column(String(32), nullable=False, default="manual")
    synced_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
