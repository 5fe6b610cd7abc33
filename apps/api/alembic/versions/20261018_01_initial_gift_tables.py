"""Create shop settings, subscriber snapshot and gift tables.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "app_settings",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("shop", sa.String(), nullable=False),
        sa.Column("appstle_api_key", sa.Text(), nullable=True),
        sa.Column("appstle_api_url", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_app_settings_shop", "app_settings", ["shop"], unique=True)

    op.create_table(
        "gift_settings",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("shop", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("trigger_order_numbers", sa.String(), nullable=False),
        sa.Column("max_gift_products", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("gift_expiry_days", sa.Integer(), nullable=False, server_default="14"),
        sa.Column("email_delay_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("eligible_product_ids", sa.Text(), nullable=True),
        sa.Column("email_subject", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_gift_settings_shop", "gift_settings", ["shop"], unique=True)

    op.create_table(
        "subscriber_snapshots",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("shop", sa.String(), nullable=False),
        sa.Column("contract_id", sa.String(), nullable=False),
        sa.Column("appstle_internal_id", sa.String(), nullable=True),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("customer_first_name", sa.String(), nullable=True),
        sa.Column("customer_last_name", sa.String(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("total_orders_delivered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_order_id", sa.String(), nullable=True),
        sa.Column("last_order_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_data", sa.JSON(), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("shop", "contract_id", name="uq_subscriber_snapshots_shop_contract"),
    )
    op.create_index("ix_subscriber_snapshots_shop", "subscriber_snapshots", ["shop"])

    op.create_table(
        "sync_logs",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("shop", sa.String(), nullable=False),
        sa.Column("total_fetched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("filter_min_orders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=7), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("triggered_by", sa.String(length=32), nullable=False),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_sync_logs_shop", "sync_logs", ["shop"])

    op.create_table(
        "gift_eligibilities",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("shop", sa.String(), nullable=False),
        sa.Column("subscription_contract_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("customer_email", sa.String(), nullable=False),
        sa.Column("customer_name", sa.String(), nullable=True),
        sa.Column("order_number", sa.Integer(), nullable=False),
        sa.Column("gift_token", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("email_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("selected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "shop",
            "subscription_contract_id",
            "order_number",
            name="uq_gift_eligibilities_shop_contract_milestone",
        ),
    )
    op.create_index("ix_gift_eligibilities_shop", "gift_eligibilities", ["shop"])
    op.create_index("ix_gift_eligibilities_gift_token", "gift_eligibilities", ["gift_token"], unique=True)
    op.create_index(
        "ix_gift_eligibilities_dispatch",
        "gift_eligibilities",
        ["shop", "status", "email_sent_at"],
    )

    op.create_table(
        "gift_selections",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("gift_eligibility_id", sa.dialects.postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("variant_id", sa.String(), nullable=False),
        sa.Column("product_title", sa.String(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("added_to_subscription", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("appstle_line_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["gift_eligibility_id"], ["gift_eligibilities.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_gift_selections_gift_eligibility_id", "gift_selections", ["gift_eligibility_id"])


def downgrade() -> None:
    op.drop_index("ix_gift_selections_gift_eligibility_id", table_name="gift_selections")
    op.drop_table("gift_selections")
    op.drop_index("ix_gift_eligibilities_dispatch", table_name="gift_eligibilities")
    op.drop_index("ix_gift_eligibilities_gift_token", table_name="gift_eligibilities")
    op.drop_index("ix_gift_eligibilities_shop", table_name="gift_eligibilities")
    op.drop_table("gift_eligibilities")
    op.drop_index("ix_sync_logs_shop", table_name="sync_logs")
    op.drop_table("sync_logs")
    op.drop_index("ix_subscriber_snapshots_shop", table_name="subscriber_snapshots")
    op.drop_table("subscriber_snapshots")
    op.drop_index("ix_gift_settings_shop", table_name="gift_settings")
    op.drop_table("gift_settings")
    op.drop_index("ix_app_settings_shop", table_name="app_settings")
    op.drop_table("app_settings")
