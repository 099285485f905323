"""Marketplace core: catalog, carts, orders, payments, loyalty points, notifications

Revision ID: 20261019_marketplace_core
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_marketplace_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated: bool = True):
    cols = [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
    ]
    if updated:
        cols.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False)
        )
    return cols


def upgrade():
    # Catalog collaborator
    op.create_table(
        "seller_products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("seller_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("stock", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("seller_products", schema=None) as batch_op:
        batch_op.create_index("ix_seller_products_seller_id", ["seller_id"], unique=False)
        batch_op.create_index("ix_seller_products_seller_active", ["seller_id", "is_active"], unique=False)

    op.create_table(
        "carts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("buyer_id", sa.String(64), nullable=False),
        sa.Column("seller_id", sa.String(64), nullable=False),
        *_timestamps(),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("buyer_id", "seller_id", name="uq_carts_buyer_seller"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("carts", schema=None) as batch_op:
        batch_op.create_index("ix_carts_buyer_id", ["buyer_id"], unique=False)
        batch_op.create_index("ix_carts_seller_id", ["seller_id"], unique=False)

    op.create_table(
        "cart_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("cart_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("qty", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["cart_id"], ["carts.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["seller_products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("cart_items", schema=None) as batch_op:
        batch_op.create_index("ix_cart_items_cart_id", ["cart_id"], unique=False)

    # Orders and payments
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("buyer_id", sa.String(64), nullable=False),
        sa.Column("seller_id", sa.String(64), nullable=False),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("payment_method", sa.String(16), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("payment_status", sa.String(32), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivery_address", sa.Text(), nullable=True),
        sa.Column("delivery_notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.CheckConstraint("total_cents >= 1", name="ck_orders_total_positive"),
        sa.CheckConstraint("total_cents <= subtotal_cents", name="ck_orders_total_not_increased"),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_buyer_id", ["buyer_id"], unique=False)
        batch_op.create_index("ix_orders_seller_id", ["seller_id"], unique=False)
        batch_op.create_index("ix_orders_status", ["status"], unique=False)
        batch_op.create_index("ix_orders_payment_status", ["payment_status"], unique=False)
        batch_op.create_index("ix_orders_expiration_sweep", ["status", "payment_status", "expires_at"], unique=False)
        batch_op.create_index("ix_orders_seller_status", ["seller_id", "status"], unique=False)

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("qty", sa.Integer(), nullable=False),
        sa.Column("line_total_cents", sa.Integer(), nullable=False),
        *_timestamps(updated=False),
        sa.CheckConstraint("qty > 0", name="ck_order_items_qty_positive"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("order_items", schema=None) as batch_op:
        batch_op.create_index("ix_order_items_order_id", ["order_id"], unique=False)

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("receipt_ref", sa.String(1024), nullable=True),
        sa.Column("transfer_bank", sa.String(128), nullable=True),
        sa.Column("transfer_account", sa.String(128), nullable=True),
        sa.Column("transfer_declared_amount", sa.String(64), nullable=True),
        sa.Column("receipt_uploaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewer_id", sa.String(64), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.String(512), nullable=True),
        sa.Column("review_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id", name="uq_payments_order"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("payments", schema=None) as batch_op:
        batch_op.create_index("ix_payments_status", ["status"], unique=False)
        batch_op.create_index("ix_payments_status_created", ["status", "created_at"], unique=False)

    # Loyalty points
    op.create_table(
        "seller_rewards_config",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("seller_id", sa.String(64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("points_per_peso", sa.Numeric(10, 4), nullable=False, server_default=sa.text("0.0286")),
        sa.Column("minimum_purchase_cents", sa.Integer(), nullable=False, server_default=sa.text("500000")),
        sa.Column("point_value_cents", sa.Integer(), nullable=True),
        sa.Column("max_redemption_ratio", sa.Numeric(5, 4), nullable=False, server_default=sa.text("0.5")),
        *_timestamps(),
        sa.CheckConstraint("points_per_peso > 0", name="ck_rewards_config_rate_positive"),
        sa.CheckConstraint(
            "max_redemption_ratio > 0 AND max_redemption_ratio <= 1",
            name="ck_rewards_config_ratio_range",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("seller_id", name="uq_rewards_config_seller"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "seller_reward_tiers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("seller_id", sa.String(64), nullable=False),
        sa.Column("tier_name", sa.String(100), nullable=False),
        sa.Column("minimum_purchase_cents", sa.Integer(), nullable=False),
        sa.Column("points_multiplier", sa.Numeric(10, 4), nullable=False, server_default=sa.text("1.0")),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        *_timestamps(updated=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("seller_id", "tier_name", name="uq_reward_tiers_seller_name"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("seller_reward_tiers", schema=None) as batch_op:
        batch_op.create_index(
            "ix_reward_tiers_seller_active_min",
            ["seller_id", "is_active", "minimum_purchase_cents"],
            unique=False,
        )

    op.create_table(
        "points_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("seller_id", sa.String(64), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("points_earned", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("points_spent", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("transaction_type", sa.String(16), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint("points_earned >= 0 AND points_spent >= 0", name="ck_points_history_non_negative"),
        sa.CheckConstraint("points_earned = 0 OR points_spent = 0", name="ck_points_history_one_side"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("points_history", schema=None) as batch_op:
        batch_op.create_index("ix_points_history_user_seller_created", ["user_id", "seller_id", "created_at"], unique=False)
        batch_op.create_index("ix_points_history_order_type", ["order_id", "transaction_type"], unique=False)

    op.create_table(
        "user_points",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("seller_id", sa.String(64), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("lifetime_earned", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("lifetime_spent", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.CheckConstraint("points >= 0", name="ck_user_points_non_negative"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "seller_id", name="uq_user_points_user_seller"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("user_points", schema=None) as batch_op:
        batch_op.create_index("ix_user_points_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_user_points_seller_id", ["seller_id"], unique=False)

    op.create_table(
        "point_redemptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("seller_id", sa.String(64), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("points_used", sa.Integer(), nullable=False),
        sa.Column("discount_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reversed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reversal_reason", sa.String(255), nullable=True),
        sa.CheckConstraint("points_used > 0", name="ck_point_redemptions_points_positive"),
        sa.CheckConstraint("discount_cents > 0", name="ck_point_redemptions_discount_positive"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id", name="uq_point_redemptions_order"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("point_redemptions", schema=None) as batch_op:
        batch_op.create_index("ix_point_redemptions_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_point_redemptions_seller_id", ["seller_id"], unique=False)

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("notifications", schema=None) as batch_op:
        batch_op.create_index("ix_notifications_type", ["type"], unique=False)
        batch_op.create_index("ix_notifications_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_notifications_user_read_created", ["user_id", "is_read", "created_at"], unique=False)


def downgrade():
    for table in (
        "notifications",
        "point_redemptions",
        "user_points",
        "points_history",
        "seller_reward_tiers",
        "seller_rewards_config",
        "payments",
        "order_items",
        "orders",
        "cart_items",
        "carts",
        "seller_products",
    ):
        op.drop_table(table)
