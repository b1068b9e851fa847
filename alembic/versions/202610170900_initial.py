"""initial schema

Revision ID: 202610170900
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610170900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    transaction_type = sa.Enum("income", "expense", name="transactiontype")

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("type", "name", name="uq_category_type_name"),
    )

    op.create_table(
        "properties",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("address", sa.String(length=255)),
        sa.Column(
            "purchase_price_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("market_value_cents", sa.Integer()),
        sa.Column("rent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "purchase_price_cents >= 0", name="ck_properties_purchase_price_positive"
        ),
        sa.CheckConstraint("rent_cents >= 0", name="ck_properties_rent_positive"),
    )
    op.create_index(
        "ix_properties_user_deleted", "properties", ["user_id", "deleted_at"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "property_id", sa.Integer(), sa.ForeignKey("properties.id"), nullable=False
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("description", sa.Text()),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_user_date", "transactions", ["user_id", "transaction_date"]
    )
    op.create_index(
        "ix_transactions_property_date",
        "transactions",
        ["user_id", "property_id", "transaction_date"],
    )
    op.create_index(
        "ix_transactions_user_type_date",
        "transactions",
        ["user_id", "type", "transaction_date"],
    )

    op.create_table(
        "monthly_metrics",
        sa.Column(
            "property_id",
            sa.Integer(),
            sa.ForeignKey("properties.id"),
            primary_key=True,
        ),
        sa.Column("year", sa.Integer(), primary_key=True),
        sa.Column("month", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "total_income_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "total_expenses_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("cash_flow_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "transaction_count", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_monthly_metrics_month"),
    )
    op.create_index(
        "ix_monthly_metrics_user_period", "monthly_metrics", ["user_id", "year", "month"]
    )


def downgrade():
    op.drop_index("ix_monthly_metrics_user_period", table_name="monthly_metrics")
    op.drop_table("monthly_metrics")
    op.drop_index("ix_transactions_user_type_date", table_name="transactions")
    op.drop_index("ix_transactions_property_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_properties_user_deleted", table_name="properties")
    op.drop_table("properties")
    op.drop_table("categories")
    sa.Enum(name="transactiontype").drop(op.get_bind(), checkfirst=True)
