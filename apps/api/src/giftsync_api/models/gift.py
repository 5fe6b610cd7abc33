"""Gift eligibility and selection models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from giftsync_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored instant is UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class GiftEligibilityStatus(str, Enum):
    """Lifecycle of a milestone gift."""

    PENDING = "pending"
    EMAIL_SENT = "email_sent"
    EMAIL_FAILED = "email_failed"
    SELECTING = "selecting"
    SELECTED = "selected"
    APPLIED = "applied"
    EXPIRED = "expired"


# Statuses from which a customer may still submit a selection.
REDEEMABLE_STATUSES = (
    GiftEligibilityStatus.PENDING,
    GiftEligibilityStatus.EMAIL_SENT,
    GiftEligibilityStatus.EMAIL_FAILED,
)


class GiftEligibility(Base):
    """A subscriber's claim to a gift for one order-count milestone."""

    __tablename__ = "gift_eligibilities"
    __table_args__ = (
        UniqueConstraint(
            "shop",
            "subscription_contract_id",
            "order_number",
            name="uq_gift_eligibilities_shop_contract_milestone",
        ),
        Index("ix_gift_eligibilities_dispatch", "shop", "status", "email_sent_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    shop = Column(String, nullable=False, index=True)
    subscription_contract_id = Column(String, nullable=False)
    customer_id = Column(String, nullable=True)
    customer_email = Column(String, nullable=False)
    customer_name = Column(String, nullable=True)
    order_number = Column(Integer, nullable=False)
    gift_token = Column(String(64), nullable=False, unique=True, index=True)
    status = Column(
        SqlEnum(
            GiftEligibilityStatus,
            name="gift_eligibility_status",
            native_enum=False,
            length=32,
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
        default=GiftEligibilityStatus.PENDING,
    )
    email_sent_at = Column(DateTime(timezone=True), nullable=True)
    selected_at = Column(DateTime(timezone=True), nullable=True)
    applied_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    selections = relationship(
        "GiftSelection",
        back_populates="eligibility",
        cascade="all, delete-orphan",
        order_by="GiftSelection.created_at",
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        reference = now or _utcnow()
        return ensure_aware(self.expires_at) <= reference

    def display_status(self, now: datetime | None = None) -> GiftEligibilityStatus:
        """Stored status, with expiry folded in for listings."""

        if self.status in REDEEMABLE_STATUSES and self.is_expired(now):
            return GiftEligibilityStatus.EXPIRED
        return self.status


class GiftSelection(Base):
    """One product line a customer picked for their gift."""

    __tablename__ = "gift_selections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    gift_eligibility_id = Column(
        UUID(as_uuid=True),
        ForeignKey("gift_eligibilities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    variant_id = Column(String, nullable=False)
    product_title = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    added_to_subscription = Column(Boolean, nullable=False, default=False)
    appstle_line_id = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    eligibility = relationship("GiftEligibility", back_populates="selections")
