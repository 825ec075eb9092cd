"""initial schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
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
    # --- identity & permissions
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("language", sa.String(length=10), nullable=False, server_default="en"),
        sa.Column("finance_settings", sa.JSON()),
        sa.Column("invoice_settings", sa.JSON()),
        sa.Column("sidebar_settings", sa.JSON()),
        *_timestamps(),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_table(
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("name", name="uq_roles_name"),
    )
    op.create_table(
        "permissions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=150), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("name", name="uq_permissions_name"),
    )
    op.create_table(
        "user_roles",
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "role_id",
            sa.Integer(),
            sa.ForeignKey("roles.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    op.create_table(
        "role_permissions",
        sa.Column(
            "role_id",
            sa.Integer(),
            sa.ForeignKey("roles.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "permission_id",
            sa.Integer(),
            sa.ForeignKey("permissions.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    op.create_table(
        "module_states",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("name", name="uq_module_states_name"),
    )

    # --- finance
    op.create_table(
        "currencies",
        sa.Column("code", sa.String(length=3), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("symbol", sa.String(length=10), nullable=False),
        sa.Column("decimal_places", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_table(
        "finance_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "account_type",
            _enum(
                "accounttype",
                "bank",
                "investment",
                "cash",
                "credit_card",
                "loan",
                "e_wallet",
                "other",
            ),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column(
            "currency_code",
            sa.String(length=3),
            sa.ForeignKey("currencies.code"),
            nullable=False,
        ),
        sa.Column("rate_source", sa.String(length=40)),
        sa.Column("institution_name", sa.String(length=255)),
        sa.Column("description", sa.Text()),
        sa.Column("color", sa.String(length=7)),
        sa.Column("initial_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("current_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "exclude_from_total", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime()),
    )
    op.create_index(
        "ix_finance_accounts_user_active", "finance_accounts", ["user_id", "is_active"]
    )
    op.create_table(
        "finance_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("finance_categories.id")),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", _enum("categorytype", "income", "expense"), nullable=False),
        sa.Column("color", sa.String(length=7)),
        sa.Column("icon", sa.String(length=50)),
        sa.Column("is_passive", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "type", "name", name="uq_finance_category_user_type_name"
        ),
    )
    op.create_table(
        "finance_recurring_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("finance_accounts.id"), nullable=False
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("finance_categories.id", ondelete="SET NULL"),
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.String(length=255)),
        sa.Column(
            "transaction_type", _enum("categorytype", "income", "expense"), nullable=False
        ),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column(
            "currency_code",
            sa.String(length=3),
            sa.ForeignKey("currencies.code"),
            nullable=False,
        ),
        sa.Column(
            "frequency",
            _enum("frequency", "daily", "weekly", "monthly", "yearly"),
            nullable=False,
        ),
        sa.Column("day_of_week", sa.Integer()),
        sa.Column("day_of_month", sa.Integer()),
        sa.Column("month_of_year", sa.Integer()),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("next_run_date", sa.Date(), nullable=False),
        sa.Column("last_run_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("auto_create", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime()),
        sa.CheckConstraint(
            "amount >= 0", name="ck_finance_recurring_transactions_amount_positive"
        ),
        sa.CheckConstraint(
            "day_of_week IS NULL OR (day_of_week >= 0 AND day_of_week <= 6)",
            name="ck_finance_recurring_transactions_day_of_week_range",
        ),
        sa.CheckConstraint(
            "day_of_month IS NULL OR (day_of_month >= 1 AND day_of_month <= 31)",
            name="ck_finance_recurring_transactions_day_of_month_range",
        ),
        sa.CheckConstraint(
            "month_of_year IS NULL OR (month_of_year >= 1 AND month_of_year <= 12)",
            name="ck_finance_recurring_transactions_month_of_year_range",
        ),
    )
    op.create_index(
        "ix_finance_recurring_next_run",
        "finance_recurring_transactions",
        ["next_run_date", "is_active"],
    )
    op.create_table(
        "finance_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("finance_accounts.id"), nullable=False
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("finance_categories.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "transaction_type",
            _enum("transactiontype", "income", "expense", "transfer"),
            nullable=False,
        ),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column(
            "currency_code",
            sa.String(length=3),
            sa.ForeignKey("currencies.code"),
            nullable=False,
        ),
        sa.Column("description", sa.Text()),
        sa.Column("notes", sa.Text()),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column("reconciled_at", sa.DateTime()),
        sa.Column("transfer_direction", _enum("transferdirection", "outgoing", "incoming")),
        sa.Column("transfer_account_id", sa.Integer(), sa.ForeignKey("finance_accounts.id")),
        sa.Column(
            "transfer_transaction_id", sa.Integer(), sa.ForeignKey("finance_transactions.id")
        ),
        sa.Column(
            "recurring_transaction_id",
            sa.Integer(),
            sa.ForeignKey("finance_recurring_transactions.id"),
        ),
        sa.Column("occurrence_date", sa.Date()),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime()),
        sa.UniqueConstraint(
            "recurring_transaction_id",
            "occurrence_date",
            name="uq_finance_txn_recurring_occurrence",
        ),
        sa.CheckConstraint("amount >= 0", name="ck_finance_transactions_amount_positive"),
        sa.CheckConstraint(
            "transfer_account_id IS NULL OR transfer_account_id != account_id",
            name="ck_finance_transactions_transfer_distinct_accounts",
        ),
    )
    op.create_index(
        "ix_finance_transactions_user_date",
        "finance_transactions",
        ["user_id", "transaction_date"],
    )
    op.create_index(
        "ix_finance_transactions_account_date",
        "finance_transactions",
        ["account_id", "transaction_date"],
    )
    op.create_table(
        "finance_exchange_rates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("base_currency", sa.String(length=3), nullable=False),
        sa.Column("target_currency", sa.String(length=3), nullable=False),
        sa.Column("rate", sa.Numeric(24, 10), nullable=False),
        sa.Column("bid_rate", sa.Numeric(24, 10)),
        sa.Column("ask_rate", sa.Numeric(24, 10)),
        sa.Column("source", sa.String(length=40), nullable=False),
        sa.Column("rate_date", sa.Date(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "base_currency",
            "target_currency",
            "source",
            "rate_date",
            name="uq_exchange_rate_pair_source_date",
        ),
    )
    op.create_index(
        "ix_exchange_rate_pair_date",
        "finance_exchange_rates",
        ["base_currency", "target_currency", "rate_date"],
    )
    op.create_table(
        "finance_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("finance_categories.id", ondelete="SET NULL"),
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column(
            "period_type",
            _enum("budgetperiod", "weekly", "monthly", "quarterly", "yearly", "custom"),
            nullable=False,
        ),
        sa.Column("allocated_amount", sa.BigInteger(), nullable=False),
        sa.Column("spent_amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "currency_code",
            sa.String(length=3),
            sa.ForeignKey("currencies.code"),
            nullable=False,
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("rollover", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint(
            "allocated_amount >= 0", name="ck_finance_budgets_allocated_positive"
        ),
    )
    op.create_table(
        "finance_savings_goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "target_account_id",
            sa.Integer(),
            sa.ForeignKey("finance_accounts.id", ondelete="SET NULL"),
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("target_amount", sa.BigInteger(), nullable=False),
        sa.Column("current_amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "currency_code",
            sa.String(length=3),
            sa.ForeignKey("currencies.code"),
            nullable=False,
        ),
        sa.Column("target_date", sa.Date()),
        sa.Column(
            "status",
            _enum("savingsgoalstatus", "active", "paused", "completed", "cancelled"),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_table(
        "finance_savings_contributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "savings_goal_id",
            sa.Integer(),
            sa.ForeignKey("finance_savings_goals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("finance_transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("contribution_date", sa.Date(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("type", sa.String(length=10), nullable=False, server_default="manual"),
        *_timestamps(),
    )

    # --- invoice
    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("invoice_number", sa.String(length=32), nullable=False),
        sa.Column("invoice_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            _enum("invoicestatus", "draft", "sent", "paid", "overdue", "cancelled"),
            nullable=False,
        ),
        sa.Column("from_name", sa.String(length=255), nullable=False),
        sa.Column("from_address", sa.Text()),
        sa.Column("from_email", sa.String(length=255)),
        sa.Column("from_phone", sa.String(length=50)),
        sa.Column("to_name", sa.String(length=255), nullable=False),
        sa.Column("to_address", sa.Text()),
        sa.Column("to_email", sa.String(length=255)),
        sa.Column("subtotal", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("tax_rate", sa.Numeric(6, 4), nullable=False, server_default="0"),
        sa.Column("tax_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime()),
        sa.UniqueConstraint("invoice_number", name="uq_invoices_invoice_number"),
        sa.CheckConstraint(
            "due_date >= invoice_date", name="ck_invoices_due_after_invoice_date"
        ),
    )
    op.create_index("ix_invoices_user_date", "invoices", ["user_id", "invoice_date"])
    op.create_table(
        "invoice_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "invoice_id",
            sa.Integer(),
            sa.ForeignKey("invoices.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 2), nullable=False),
        sa.Column("unit_price", sa.Numeric(14, 2), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_table(
        "download_quotas",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("kind", sa.String(length=30), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "kind", "day", name="uq_download_quota_user_kind_day"),
    )

    # --- notification
    op.create_table(
        "notification_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=30), nullable=False),
        sa.Column("channels", sa.JSON(), nullable=False),
        sa.Column("variables", sa.JSON()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime()),
        sa.UniqueConstraint("slug", name="uq_notification_templates_slug"),
    )
    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category", sa.String(length=30), nullable=False),
        sa.Column("channel", sa.String(length=20), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "category", "channel", name="uq_notification_pref_user_cat_channel"
        ),
    )
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category", sa.String(length=30), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("icon", sa.String(length=50)),
        sa.Column("action_url", sa.String(length=500)),
        sa.Column("action_label", sa.String(length=100)),
        sa.Column("data", sa.JSON()),
        sa.Column("read_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index("ix_notifications_user_read", "notifications", ["user_id", "read_at"])
    op.create_table(
        "notification_deliveries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("channel", sa.String(length=20), nullable=False),
        sa.Column("driver", sa.String(length=20), nullable=False),
        sa.Column("recipient", sa.String(length=255)),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("status", _enum("deliverystatus", "sent", "failed"), nullable=False),
        sa.Column("error", sa.Text()),
        *_timestamps(),
    )

    # --- blog
    op.create_table(
        "blog_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint("slug", name="uq_blog_categories_slug"),
    )
    op.create_table(
        "blog_tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("slug", sa.String(length=100), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("slug", name="uq_blog_tags_slug"),
    )
    op.create_table(
        "posts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("blog_categories.id", ondelete="SET NULL"),
        ),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("excerpt", sa.Text()),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column(
            "status", _enum("poststatus", "draft", "published", "archived"), nullable=False
        ),
        sa.Column("published_at", sa.DateTime()),
        sa.Column("meta_title", sa.String(length=255)),
        sa.Column("meta_description", sa.Text()),
        sa.Column("views_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reading_time", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_featured", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime()),
        sa.UniqueConstraint("slug", name="uq_posts_slug"),
    )
    op.create_table(
        "post_tags",
        sa.Column(
            "post_id",
            sa.Integer(),
            sa.ForeignKey("posts.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "tag_id",
            sa.Integer(),
            sa.ForeignKey("blog_tags.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )

    # --- ecommerce
    op.create_table(
        "product_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint("slug", name="uq_product_categories_slug"),
    )
    op.create_table(
        "product_tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("slug", sa.String(length=100), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("slug", name="uq_product_tags_slug"),
    )
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("product_categories.id", ondelete="SET NULL"),
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("sku", sa.String(length=50), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("sale_price", sa.Numeric(10, 2)),
        sa.Column("cost", sa.Numeric(10, 2)),
        sa.Column("stock_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("low_stock_threshold", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("track_inventory", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "status", _enum("productstatus", "draft", "active", "archived"), nullable=False
        ),
        sa.Column("is_featured", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("views_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sales_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime()),
        sa.UniqueConstraint("slug", name="uq_products_slug"),
        sa.UniqueConstraint("sku", name="uq_products_sku"),
    )
    op.create_table(
        "product_product_tag",
        sa.Column(
            "product_id",
            sa.Integer(),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "product_tag_id",
            sa.Integer(),
            sa.ForeignKey("product_tags.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("order_number", sa.String(length=32), nullable=False),
        sa.Column(
            "status",
            _enum(
                "orderstatus", "pending", "processing", "completed", "cancelled", "refunded"
            ),
            nullable=False,
        ),
        sa.Column(
            "payment_status",
            _enum("paymentstatus", "unpaid", "paid", "refunded"),
            nullable=False,
        ),
        sa.Column("subtotal", sa.Numeric(10, 2), nullable=False),
        sa.Column("tax", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("shipping", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("discount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("total", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("payment_method", sa.String(length=50)),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column("customer_notes", sa.Text()),
        sa.Column("admin_notes", sa.Text()),
        sa.Column("billing_address", sa.JSON()),
        sa.Column("shipping_address", sa.JSON()),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime()),
        sa.UniqueConstraint("order_number", name="uq_orders_order_number"),
    )
    op.create_index("ix_orders_user_status", "orders", ["user_id", "status"])
    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "order_id",
            sa.Integer(),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "product_id",
            sa.Integer(),
            sa.ForeignKey("products.id", ondelete="SET NULL"),
        ),
        sa.Column("product_name", sa.String(length=255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("total", sa.Numeric(10, 2), nullable=False),
        *_timestamps(),
    )


def downgrade():
    op.drop_table("order_items")
    op.drop_index("ix_orders_user_status", table_name="orders")
    op.drop_table("orders")
    op.drop_table("product_product_tag")
    op.drop_table("products")
    op.drop_table("product_tags")
    op.drop_table("product_categories")
    op.drop_table("post_tags")
    op.drop_table("posts")
    op.drop_table("blog_tags")
    op.drop_table("blog_categories")
    op.drop_table("notification_deliveries")
    op.drop_index("ix_notifications_user_read", table_name="notifications")
    op.drop_table("notifications")
    op.drop_table("notification_preferences")
    op.drop_table("notification_templates")
    op.drop_table("download_quotas")
    op.drop_table("invoice_items")
    op.drop_index("ix_invoices_user_date", table_name="invoices")
    op.drop_table("invoices")
    op.drop_table("finance_savings_contributions")
    op.drop_table("finance_savings_goals")
    op.drop_table("finance_budgets")
    op.drop_index("ix_exchange_rate_pair_date", table_name="finance_exchange_rates")
    op.drop_table("finance_exchange_rates")
    op.drop_index("ix_finance_transactions_account_date", table_name="finance_transactions")
    op.drop_index("ix_finance_transactions_user_date", table_name="finance_transactions")
    op.drop_table("finance_transactions")
    op.drop_index("ix_finance_recurring_next_run", table_name="finance_recurring_transactions")
    op.drop_table("finance_recurring_transactions")
    op.drop_table("finance_categories")
    op.drop_index("ix_finance_accounts_user_active", table_name="finance_accounts")
    op.drop_table("finance_accounts")
    op.drop_table("currencies")
    op.drop_table("module_states")
    op.drop_table("role_permissions")
    op.drop_table("user_roles")
    op.drop_table("permissions")
    op.drop_table("roles")
    op.drop_table("users")
