"""financial plans and smart input history

Revision ID: 202610191200
Revises: 202610190900
Create Date: 2026-10-19 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610191200"
down_revision = "202610190900"
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _enum(name, *values):
    return sa.Enum(*values, name=name)


def upgrade():
    op.create_table(
        "finance_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("start_year", sa.Integer(), nullable=False),
        sa.Column("end_year", sa.Integer(), nullable=False),
        sa.Column(
            "currency_code", sa.String(length=3), sa.ForeignKey("currencies.code"), nullable=False
        ),
        sa.Column(
            "status",
            _enum("planstatus", "draft", "active", "archived"),
            nullable=False,
            server_default="draft",
        ),
        *_timestamps(),
        sa.CheckConstraint("end_year >= start_year", name="ck_finance_plans_plan_year_order"),
    )
    op.create_table(
        "finance_plan_periods",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "plan_id",
            sa.Integer(),
            sa.ForeignKey("finance_plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("planned_income", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("planned_expense", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint("plan_id", "year", name="uq_finance_plan_period_year"),
    )
    op.create_table(
        "finance_plan_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "period_id",
            sa.Integer(),
            sa.ForeignKey("finance_plan_periods.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("finance_categories.id", ondelete="SET NULL"),
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("type", _enum("categorytype", "income", "expense"), nullable=False),
        sa.Column("planned_amount", sa.BigInteger(), nullable=False),
        sa.Column(
            "recurrence",
            _enum("planrecurrence", "monthly", "quarterly", "yearly", "one_time"),
            nullable=False,
            server_default="monthly",
        ),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint(
            "planned_amount >= 0", name="ck_finance_plan_items_planned_amount_positive"
        ),
    )
    op.create_table(
        "finance_smart_input_histories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("finance_transactions.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "input_type",
            _enum("smartinputtype", "text", "voice", "image", "text_image"),
            nullable=False,
        ),
        sa.Column("raw_text", sa.Text()),
        sa.Column("parsed_result", sa.JSON()),
        sa.Column("ai_provider", sa.String(length=40)),
        sa.Column("language", sa.String(length=5), nullable=False, server_default="vi"),
        sa.Column("confidence", sa.Numeric(4, 3)),
        sa.Column("transaction_saved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index(
        "ix_finance_smart_input_user_created",
        "finance_smart_input_histories",
        ["user_id", "created_at"],
    )


def downgrade():
    op.drop_index(
        "ix_finance_smart_input_user_created", table_name="finance_smart_input_histories"
    )
    op.drop_table("finance_smart_input_histories")
    op.drop_table("finance_plan_items")
    op.drop_table("finance_plan_periods")
    op.drop_table("finance_plans")
