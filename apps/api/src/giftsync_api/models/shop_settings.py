"""Per-shop configuration models."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, false, func
from sqlalchemy.dialects.postgresql import UUID

from giftsync_api.db.base import Base


class AppSettings(Base):
    """Upstream subscription API credentials for a shop."""

    __tablename__ = "app_settings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    shop = Column(String, nullable=False, unique=True, index=True)
    appstle_api_key = Column(Text, nullable=True)
    appstle_api_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class GiftSettings(Base):
    """Milestone gift program configuration for a shop."""

    __tablename__ = "gift_settings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    shop = Column(String, nullable=False, unique=True, index=True)
    enabled = Column(Boolean, nullable=False, default=False, server_default=false())
    trigger_order_numbers = Column(String, nullable=False, default="3,5,10,15,20")
    max_gift_products = Column(Integer, nullable=False, default=3, server_default="3")
    gift_expiry_days = Column(Integer, nullable=False, default=14, server_default="14")
    email_delay_days = Column(Integer, nullable=False, default=0, server_default="0")
    eligible_product_ids = Column(Text, nullable=True)
    email_subject = Column(String, nullable=False, default="You've earned a free gift!")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
