"""create customer and settlement tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 09:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "customer",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("company_name", sa.Text(), nullable=True),
        sa.Column("status_code", sa.String(length=32), nullable=False, server_default="상담대기"),
        sa.Column("manager_id", sa.String(length=64), nullable=True),
        sa.Column("manager_name", sa.Text(), nullable=True),
        sa.Column("team_id", sa.String(length=64), nullable=True),
        sa.Column("team_name", sa.Text(), nullable=True),
        sa.Column("entry_source", sa.String(length=64), nullable=True),
        sa.Column("entry_date", sa.Date(), nullable=True),
        sa.Column("contract_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("commission_rate", sa.Numeric(9, 4), nullable=True),
        sa.Column("execution_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("contract_date", sa.Date(), nullable=True),
        sa.Column("execution_date", sa.Date(), nullable=True),
        sa.Column("contract_completion_date", sa.Date(), nullable=True),
        sa.Column("processing_org", sa.String(length=32), nullable=True),
        sa.Column("recent_memo", sa.Text(), nullable=True),
        sa.Column("clawed_back_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_customer_status_code", "customer", ["status_code"])
    op.create_index("ix_customer_manager_id", "customer", ["manager_id"])
    op.create_index("ix_customer_team_id", "customer", ["team_id"])

    op.create_table(
        "customer_processing_org",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column("org", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=8), nullable=False, server_default="진행중"),
        sa.Column("execution_date", sa.Date(), nullable=True),
        sa.Column("execution_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("is_re_execution", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customer.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "customer_id",
            "org",
            "is_re_execution",
            name="uq_customer_processing_org_customer_org",
        ),
        sa.CheckConstraint("status IN ('진행중', '부결', '승인')", name="ck_customer_processing_org_status"),
    )

    op.create_table(
        "customer_status_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column("previous_status", sa.String(length=32), nullable=False),
        sa.Column("new_status", sa.String(length=32), nullable=False),
        sa.Column("changed_by", sa.String(length=64), nullable=False),
        sa.Column("changed_by_name", sa.Text(), nullable=True),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customer.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_customer_status_log_customer_changed",
        "customer_status_log",
        ["customer_id", "changed_at"],
    )

    op.create_table(
        "customer_history_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column("action_type", sa.String(length=32), nullable=False),
        sa.Column("old_value", sa.Text(), nullable=True),
        sa.Column("new_value", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("changed_by", sa.String(length=64), nullable=False),
        sa.Column("changed_by_name", sa.Text(), nullable=True),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customer.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "action_type IN ('status_change', 'manager_change', 'info_update', "
            "'document_upload', 'memo_added', 'org_change')",
            name="ck_customer_history_log_action_type",
        ),
    )
    op.create_index(
        "ix_customer_history_log_customer_changed",
        "customer_history_log",
        ["customer_id", "changed_at"],
    )

    op.create_table(
        "settlement_item",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column("settlement_key", sa.String(length=64), nullable=False),
        sa.Column("settlement_month", sa.String(length=7), nullable=False),
        sa.Column("processing_org", sa.String(length=32), nullable=True),
        sa.Column("base_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("commission_rate", sa.Numeric(9, 4), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("tax_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("net_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("category_bonus", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_bonus", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("manager_id", sa.String(length=64), nullable=True),
        sa.Column("manager_name", sa.String(length=255), nullable=True),
        sa.Column("team_id", sa.String(length=64), nullable=True),
        sa.Column("team_name", sa.String(length=255), nullable=True),
        sa.Column("is_clawback", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("original_item_id", sa.Uuid(), nullable=True),
        sa.Column("clawback_applied_at", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customer.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["original_item_id"], ["settlement_item.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_settlement_item_customer_key", "settlement_item", ["customer_id", "settlement_key"])
    op.create_index("ix_settlement_item_month_manager", "settlement_item", ["settlement_month", "manager_id"])


def downgrade() -> None:
    op.drop_index("ix_settlement_item_month_manager", table_name="settlement_item")
    op.drop_index("ix_settlement_item_customer_key", table_name="settlement_item")
    op.drop_table("settlement_item")
    op.drop_index("ix_customer_history_log_customer_changed", table_name="customer_history_log")
    op.drop_table("customer_history_log")
    op.drop_index("ix_customer_status_log_customer_changed", table_name="customer_status_log")
    op.drop_table("customer_status_log")
    op.drop_table("customer_processing_org")
    op.drop_index("ix_customer_team_id", table_name="customer")
    op.drop_index("ix_customer_manager_id", table_name="customer")
    op.drop_index("ix_customer_status_code", table_name="customer")
    op.drop_table("customer")
