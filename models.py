import re
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base, SoftDeleteMixin, TimestampMixin


CENT = Decimal("0.01")

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")


# --- enums -----------------------------------------------------------------


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class TransferDirection(str, Enum):
    outgoing = "outgoing"
    incoming = "incoming"


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"


class AccountType(str, Enum):
    bank = "bank"
    investment = "investment"
    cash = "cash"
    credit_card = "credit_card"
    loan = "loan"
    e_wallet = "e_wallet"
    other = "other"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class BudgetPeriod(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"
    custom = "custom"


class SavingsGoalStatus(str, Enum):
    active = "active"
    paused = "paused"
    completed = "completed"
    cancelled = "cancelled"


class PlanStatus(str, Enum):
    draft = "draft"
    active = "active"
    archived = "archived"


class PlanRecurrence(str, Enum):
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"
    one_time = "one_time"

    @property
    def per_year(self) -> int:
        return {"monthly": 12, "quarterly": 4}.get(self.value, 1)


class SmartInputType(str, Enum):
    text = "text"
    voice = "voice"
    image = "image"
    text_image = "text_image"


class InvoiceStatus(str, Enum):
    draft = "draft"
    sent = "sent"
    paid = "paid"
    overdue = "overdue"
    cancelled = "cancelled"


class PostStatus(str, Enum):
    draft = "draft"
    published = "published"
    archived = "archived"


class ProductStatus(str, Enum):
    draft = "draft"
    active = "active"
    archived = "archived"


class OrderStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    cancelled = "cancelled"
    refunded = "refunded"


class PaymentStatus(str, Enum):
    unpaid = "unpaid"
    paid = "paid"
    refunded = "refunded"


class DeliveryStatus(str, Enum):
    sent = "sent"
    failed = "failed"


class NotificationCategory(str, Enum):
    communication = "communication"
    marketing = "marketing"
    security = "security"
    system = "system"
    transactional = "transactional"

    @property
    def label(self) -> str:
        return _CATEGORY_META[self][0]

    @property
    def description(self) -> str:
        return _CATEGORY_META[self][1]

    @property
    def icon(self) -> str:
        return _CATEGORY_META[self][2]


_CATEGORY_META = {
    NotificationCategory.communication: (
        "Communication",
        "Messages, mentions, and direct communications",
        "message-circle",
    ),
    NotificationCategory.marketing: (
        "Marketing",
        "Product updates, promotions, and newsletters",
        "megaphone",
    ),
    NotificationCategory.security: (
        "Security",
        "Login alerts, password changes, and security events",
        "shield",
    ),
    NotificationCategory.system: (
        "System Alerts",
        "Maintenance notices, updates, and service status",
        "server",
    ),
    NotificationCategory.transactional: (
        "Transactional",
        "Orders, payments, and receipts",
        "receipt",
    ),
}


class NotificationChannel(str, Enum):
    database = "database"
    email = "email"
    sms = "sms"
    push = "push"

    @property
    def label(self) -> str:
        return _CHANNEL_META[self][0]

    @property
    def description(self) -> str:
        return _CHANNEL_META[self][1]

    @property
    def icon(self) -> str:
        return _CHANNEL_META[self][2]

    @property
    def driver(self) -> str:
        return _CHANNEL_META[self][3]


_CHANNEL_META = {
    NotificationChannel.database: ("In-App", "Show in notification center", "bell", "database"),
    NotificationChannel.email: ("Email", "Send to email address", "mail", "mail"),
    NotificationChannel.sms: ("SMS", "Text message to phone", "smartphone", "vonage"),
    NotificationChannel.push: (
        "Push",
        "Browser/mobile push notification",
        "bell-ring",
        "fcm",
    ),
}


# --- identity & permissions --------------------------------------------------


user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)

role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column(
        "permission_id",
        Integer,
        ForeignKey("permissions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    language: Mapped[str] = mapped_column(String(10), nullable=False, default="en")
    finance_settings: Mapped[Optional[dict]] = mapped_column(JSON)
    invoice_settings: Mapped[Optional[dict]] = mapped_column(JSON)
    sidebar_settings: Mapped[Optional[dict]] = mapped_column(JSON)

    roles: Mapped[list["Role"]] = relationship(
        "Role", secondary=user_roles, back_populates="users", lazy="selectin"
    )
    notification_preferences: Mapped[list["NotificationPreference"]] = relationship(
        "NotificationPreference", back_populates="user", cascade="all, delete-orphan"
    )

    def has_role(self, name: str) -> bool:
        return any(role.name == name for role in self.roles)

    @property
    def default_currency(self) -> Optional[str]:
        return (self.finance_settings or {}).get("default_currency")


class Role(Base, TimestampMixin):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    users: Mapped[list["User"]] = relationship(
        "User", secondary=user_roles, back_populates="roles"
    )
    permissions: Mapped[list["Permission"]] = relationship(
        "Permission", secondary=role_permissions, lazy="selectin"
    )


class Permission(Base, TimestampMixin):
    __tablename__ = "permissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False, unique=True)


class ModuleState(Base, TimestampMixin):
    __tablename__ = "module_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


# --- finance ----------------------------------------------------------------


class Currency(Base, TimestampMixin):
    __tablename__ = "currencies"

    code: Mapped[str] = mapped_column(String(3), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    symbol: Mapped[str] = mapped_column(String(10), nullable=False)
    decimal_places: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class Account(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "finance_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    currency_code: Mapped[str] = mapped_column(
        ForeignKey("currencies.code"), nullable=False
    )
    rate_source: Mapped[Optional[str]] = mapped_column(String(40))
    institution_name: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)
    color: Mapped[Optional[str]] = mapped_column(String(7))
    initial_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    current_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    exclude_from_total: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    currency: Mapped["Currency"] = relationship("Currency")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="account",
        foreign_keys="Transaction.account_id",
    )

    __table_args__ = (Index("ix_finance_accounts_user_active", "user_id", "is_active"),)


class FinanceCategory(Base, TimestampMixin):
    __tablename__ = "finance_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("finance_categories.id"))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(7))
    icon: Mapped[Optional[str]] = mapped_column(String(50))
    is_passive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_finance_category_user_type_name"),
    )


class Transaction(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "finance_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("finance_accounts.id"), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("finance_categories.id", ondelete="SET NULL")
    )
    transaction_type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency_code: Mapped[str] = mapped_column(
        ForeignKey("currencies.code"), nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    reconciled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    transfer_direction: Mapped[Optional[TransferDirection]] = mapped_column(
        SAEnum(TransferDirection)
    )
    transfer_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("finance_accounts.id")
    )
    transfer_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("finance_transactions.id")
    )
    recurring_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("finance_recurring_transactions.id")
    )
    occurrence_date: Mapped[Optional[date]] = mapped_column(Date)

    account: Mapped["Account"] = relationship(
        "Account", back_populates="transactions", foreign_keys=[account_id]
    )
    transfer_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[transfer_account_id]
    )
    category: Mapped[Optional["FinanceCategory"]] = relationship("FinanceCategory")
    recurring_transaction: Mapped[Optional["RecurringTransaction"]] = relationship(
        "RecurringTransaction", back_populates="transactions"
    )

    __table_args__ = (
        UniqueConstraint(
            "recurring_transaction_id",
            "occurrence_date",
            name="uq_finance_txn_recurring_occurrence",
        ),
        Index("ix_finance_transactions_user_date", "user_id", "transaction_date"),
        Index("ix_finance_transactions_account_date", "account_id", "transaction_date"),
        CheckConstraint("amount >= 0", name="amount_positive"),
        CheckConstraint(
            "transfer_account_id IS NULL OR transfer_account_id != account_id",
            name="transfer_distinct_accounts",
        ),
    )

    @property
    def is_transfer(self) -> bool:
        return self.transaction_type == TransactionType.transfer

    @property
    def is_reconciled(self) -> bool:
        return self.reconciled_at is not None

    @property
    def signed_amount(self) -> int:
        if self.transaction_type == TransactionType.income:
            return self.amount
        if self.transaction_type == TransactionType.expense:
            return -self.amount
        if self.transfer_direction == TransferDirection.incoming:
            return self.amount
        return -self.amount


class RecurringTransaction(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "finance_recurring_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("finance_accounts.id"), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("finance_categories.id", ondelete="SET NULL")
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))
    transaction_type: Mapped[CategoryType] = mapped_column(
        SAEnum(CategoryType), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency_code: Mapped[str] = mapped_column(
        ForeignKey("currencies.code"), nullable=False
    )
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer)
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    month_of_year: Mapped[Optional[int]] = mapped_column(Integer)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    next_run_date: Mapped[date] = mapped_column(Date, nullable=False)
    last_run_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_create: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    account: Mapped["Account"] = relationship("Account")
    category: Mapped[Optional["FinanceCategory"]] = relationship("FinanceCategory")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="recurring_transaction"
    )

    __table_args__ = (
        Index("ix_finance_recurring_next_run", "next_run_date", "is_active"),
        CheckConstraint("amount >= 0", name="amount_positive"),
        CheckConstraint(
            "day_of_week IS NULL OR (day_of_week >= 0 AND day_of_week <= 6)",
            name="day_of_week_range",
        ),
        CheckConstraint(
            "day_of_month IS NULL OR (day_of_month >= 1 AND day_of_month <= 31)",
            name="day_of_month_range",
        ),
        CheckConstraint(
            "month_of_year IS NULL OR (month_of_year >= 1 AND month_of_year <= 12)",
            name="month_of_year_range",
        ),
    )

    @property
    def monthly_amount(self) -> int:
        if self.frequency == Frequency.daily:
            return self.amount * 30
        if self.frequency == Frequency.weekly:
            return int(
                (Decimal(self.amount) * Decimal("4.33")).quantize(
                    Decimal("1"), rounding=ROUND_HALF_UP
                )
            )
        if self.frequency == Frequency.yearly:
            return int(
                (Decimal(self.amount) / 12).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
            )
        return self.amount

    @property
    def yearly_amount(self) -> int:
        multipliers = {
            Frequency.daily: 365,
            Frequency.weekly: 52,
            Frequency.monthly: 12,
            Frequency.yearly: 1,
        }
        return self.amount * multipliers[self.frequency]


class ExchangeRate(Base, TimestampMixin):
    __tablename__ = "finance_exchange_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    target_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(24, 10), nullable=False)
    bid_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10))
    ask_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10))
    source: Mapped[str] = mapped_column(String(40), nullable=False)
    rate_date: Mapped[date] = mapped_column(Date, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "base_currency",
            "target_currency",
            "source",
            "rate_date",
            name="uq_exchange_rate_pair_source_date",
        ),
        Index("ix_exchange_rate_pair_date", "base_currency", "target_currency", "rate_date"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "finance_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("finance_categories.id", ondelete="SET NULL")
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    period_type: Mapped[BudgetPeriod] = mapped_column(SAEnum(BudgetPeriod), nullable=False)
    allocated_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    spent_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency_code: Mapped[str] = mapped_column(
        ForeignKey("currencies.code"), nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    rollover: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    category: Mapped[Optional["FinanceCategory"]] = relationship("FinanceCategory")

    __table_args__ = (CheckConstraint("allocated_amount >= 0", name="allocated_positive"),)

    @property
    def spent_percent(self) -> float:
        if not self.allocated_amount:
            return 0.0
        return self.spent_amount / self.allocated_amount * 100

    @property
    def variance(self) -> int:
        return self.allocated_amount - self.spent_amount

    @property
    def is_over_budget(self) -> bool:
        return self.spent_amount > self.allocated_amount


class SavingsGoal(Base, TimestampMixin):
    __tablename__ = "finance_savings_goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    target_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("finance_accounts.id", ondelete="SET NULL")
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    target_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    current_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency_code: Mapped[str] = mapped_column(
        ForeignKey("currencies.code"), nullable=False
    )
    target_date: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[SavingsGoalStatus] = mapped_column(
        SAEnum(SavingsGoalStatus), nullable=False, default=SavingsGoalStatus.active
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    contributions: Mapped[list["SavingsContribution"]] = relationship(
        "SavingsContribution", back_populates="goal", cascade="all, delete-orphan"
    )

    @property
    def has_reached_target(self) -> bool:
        return self.current_amount >= self.target_amount

    @property
    def progress_percent(self) -> float:
        if not self.target_amount:
            return 0.0
        return min(self.current_amount / self.target_amount * 100, 100.0)


class SavingsContribution(Base, TimestampMixin):
    __tablename__ = "finance_savings_contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    savings_goal_id: Mapped[int] = mapped_column(
        ForeignKey("finance_savings_goals.id", ondelete="CASCADE"), nullable=False
    )
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("finance_transactions.id", ondelete="SET NULL")
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    contribution_date: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    type: Mapped[str] = mapped_column(String(10), nullable=False, default="manual")

    goal: Mapped["SavingsGoal"] = relationship("SavingsGoal", back_populates="contributions")


class FinancialPlan(Base, TimestampMixin):
    __tablename__ = "finance_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    start_year: Mapped[int] = mapped_column(Integer, nullable=False)
    end_year: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_code: Mapped[str] = mapped_column(
        ForeignKey("currencies.code"), nullable=False
    )
    status: Mapped[PlanStatus] = mapped_column(
        SAEnum(PlanStatus), nullable=False, default=PlanStatus.draft
    )

    periods: Mapped[list["PlanPeriod"]] = relationship(
        "PlanPeriod",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="PlanPeriod.year",
    )

    __table_args__ = (CheckConstraint("end_year >= start_year", name="plan_year_order"),)

    @property
    def year_span(self) -> int:
        return self.end_year - self.start_year + 1

    @property
    def total_planned_income(self) -> int:
        return sum(period.planned_income for period in self.periods)

    @property
    def total_planned_expense(self) -> int:
        return sum(period.planned_expense for period in self.periods)

    @property
    def planned_net(self) -> int:
        return self.total_planned_income - self.total_planned_expense


class PlanPeriod(Base, TimestampMixin):
    __tablename__ = "finance_plan_periods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_id: Mapped[int] = mapped_column(
        ForeignKey("finance_plans.id", ondelete="CASCADE"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    planned_income: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    planned_expense: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    plan: Mapped["FinancialPlan"] = relationship("FinancialPlan", back_populates="periods")
    items: Mapped[list["PlanItem"]] = relationship(
        "PlanItem",
        back_populates="period",
        cascade="all, delete-orphan",
        order_by="PlanItem.id",
    )

    __table_args__ = (UniqueConstraint("plan_id", "year", name="uq_finance_plan_period_year"),)

    @property
    def planned_net(self) -> int:
        return self.planned_income - self.planned_expense

    def recalculate_totals(self) -> None:
        self.planned_income = sum(
            item.yearly_amount for item in self.items if item.type == CategoryType.income
        )
        self.planned_expense = sum(
            item.yearly_amount for item in self.items if item.type == CategoryType.expense
        )


class PlanItem(Base, TimestampMixin):
    __tablename__ = "finance_plan_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    period_id: Mapped[int] = mapped_column(
        ForeignKey("finance_plan_periods.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("finance_categories.id", ondelete="SET NULL")
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    planned_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    recurrence: Mapped[PlanRecurrence] = mapped_column(
        SAEnum(PlanRecurrence), nullable=False, default=PlanRecurrence.monthly
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    period: Mapped["PlanPeriod"] = relationship("PlanPeriod", back_populates="items")
    category: Mapped[Optional["FinanceCategory"]] = relationship("FinanceCategory")

    __table_args__ = (CheckConstraint("planned_amount >= 0", name="planned_amount_positive"),)

    @property
    def yearly_amount(self) -> int:
        return self.planned_amount * self.recurrence.per_year


class SmartInputHistory(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "finance_smart_input_histories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("finance_transactions.id", ondelete="SET NULL")
    )
    input_type: Mapped[SmartInputType] = mapped_column(SAEnum(SmartInputType), nullable=False)
    raw_text: Mapped[Optional[str]] = mapped_column(Text)
    parsed_result: Mapped[Optional[dict]] = mapped_column(JSON)
    ai_provider: Mapped[Optional[str]] = mapped_column(String(40))
    language: Mapped[str] = mapped_column(String(5), nullable=False, default="vi")
    confidence: Mapped[Optional[Decimal]] = mapped_column(Numeric(4, 3))
    transaction_saved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_finance_smart_input_user_created", "user_id", "created_at"),
    )


# --- invoice ----------------------------------------------------------------


class Invoice(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        SAEnum(InvoiceStatus), nullable=False, default=InvoiceStatus.draft
    )
    from_name: Mapped[str] = mapped_column(String(255), nullable=False)
    from_address: Mapped[Optional[str]] = mapped_column(Text)
    from_email: Mapped[Optional[str]] = mapped_column(String(255))
    from_phone: Mapped[Optional[str]] = mapped_column(String(50))
    to_name: Mapped[str] = mapped_column(String(255), nullable=False)
    to_address: Mapped[Optional[str]] = mapped_column(Text)
    to_email: Mapped[Optional[str]] = mapped_column(String(255))
    subtotal: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False, default=0)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    items: Mapped[list["InvoiceItem"]] = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.sort_order",
    )

    __table_args__ = (
        CheckConstraint("due_date >= invoice_date", name="due_after_invoice_date"),
        Index("ix_invoices_user_date", "user_id", "invoice_date"),
    )

    def calculate_totals(self) -> None:
        subtotal = Decimal("0")
        for item in self.items:
            item.refresh_amount()
            subtotal += item.amount
        self.subtotal = subtotal.quantize(CENT, rounding=ROUND_HALF_UP)
        self.tax_amount = (self.subtotal * Decimal(self.tax_rate)).quantize(
            CENT, rounding=ROUND_HALF_UP
        )
        self.total = self.subtotal + self.tax_amount


class InvoiceItem(Base, TimestampMixin):
    __tablename__ = "invoice_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(
        ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="items")

    def refresh_amount(self) -> None:
        self.amount = (Decimal(self.quantity) * Decimal(self.unit_price)).quantize(
            CENT, rounding=ROUND_HALF_UP
        )


class DownloadQuota(Base, TimestampMixin):
    __tablename__ = "download_quotas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("user_id", "kind", "day", name="uq_download_quota_user_kind_day"),
    )


# --- notification -----------------------------------------------------------


class NotificationTemplate(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "notification_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    channels: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    variables: Mapped[Optional[list]] = mapped_column(JSON)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def render(self, variables: Optional[dict] = None) -> dict[str, str]:
        """Fill ``{{ key }}`` placeholders; unknown keys stay as written."""
        values = {str(key): str(value) for key, value in (variables or {}).items()}

        def substitute(match: re.Match) -> str:
            return values.get(match.group(1), match.group(0))

        return {
            "subject": _PLACEHOLDER_RE.sub(substitute, self.subject),
            "body": _PLACEHOLDER_RE.sub(substitute, self.body),
        }

    def supports_channel(self, channel) -> bool:
        value = getattr(channel, "value", channel)
        return value in (self.channels or [])


class NotificationPreference(Base, TimestampMixin):
    __tablename__ = "notification_preferences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    user: Mapped["User"] = relationship("User", back_populates="notification_preferences")

    __table_args__ = (
        UniqueConstraint(
            "user_id", "category", "channel", name="uq_notification_pref_user_cat_channel"
        ),
    )


class Notification(Base, TimestampMixin):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    icon: Mapped[Optional[str]] = mapped_column(String(50))
    action_url: Mapped[Optional[str]] = mapped_column(String(500))
    action_label: Mapped[Optional[str]] = mapped_column(String(100))
    data: Mapped[Optional[dict]] = mapped_column(JSON)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (Index("ix_notifications_user_read", "user_id", "read_at"),)


class NotificationDelivery(Base, TimestampMixin):
    __tablename__ = "notification_deliveries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    driver: Mapped[str] = mapped_column(String(20), nullable=False)
    recipient: Mapped[Optional[str]] = mapped_column(String(255))
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(SAEnum(DeliveryStatus), nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text)


# --- blog ---------------------------------------------------------------------


post_tags = Table(
    "post_tags",
    Base.metadata,
    Column("post_id", Integer, ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("blog_tags.id", ondelete="CASCADE"), primary_key=True),
)


class BlogCategory(Base, TimestampMixin):
    __tablename__ = "blog_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)


class BlogTag(Base, TimestampMixin):
    __tablename__ = "blog_tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)


class Post(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("blog_categories.id", ondelete="SET NULL")
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    excerpt: Mapped[Optional[str]] = mapped_column(Text)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[PostStatus] = mapped_column(
        SAEnum(PostStatus), nullable=False, default=PostStatus.draft
    )
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    meta_title: Mapped[Optional[str]] = mapped_column(String(255))
    meta_description: Mapped[Optional[str]] = mapped_column(Text)
    views_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reading_time: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    category: Mapped[Optional["BlogCategory"]] = relationship("BlogCategory")
    tags: Mapped[list["BlogTag"]] = relationship(
        "BlogTag", secondary=post_tags, lazy="selectin"
    )


# --- ecommerce ----------------------------------------------------------------


product_tags = Table(
    "product_product_tag",
    Base.metadata,
    Column(
        "product_id", Integer, ForeignKey("products.id", ondelete="CASCADE"), primary_key=True
    ),
    Column(
        "product_tag_id",
        Integer,
        ForeignKey("product_tags.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class ProductCategory(Base, TimestampMixin):
    __tablename__ = "product_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)


class ProductTag(Base, TimestampMixin):
    __tablename__ = "product_tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)


class Product(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("product_categories.id", ondelete="SET NULL")
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    sku: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    sale_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    low_stock_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    track_inventory: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[ProductStatus] = mapped_column(
        SAEnum(ProductStatus), nullable=False, default=ProductStatus.draft
    )
    is_featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    views_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sales_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    category: Mapped[Optional["ProductCategory"]] = relationship("ProductCategory")
    tags: Mapped[list["ProductTag"]] = relationship(
        "ProductTag", secondary=product_tags, lazy="selectin"
    )

    @property
    def effective_price(self) -> Decimal:
        return self.sale_price if self.sale_price is not None else self.price

    @property
    def is_on_sale(self) -> bool:
        return self.sale_price is not None and self.sale_price < self.price

    @property
    def discount_percentage(self) -> Optional[float]:
        if not self.is_on_sale:
            return None
        return round(float((self.price - self.sale_price) / self.price * 100), 2)

    @property
    def is_low_stock(self) -> bool:
        return self.track_inventory and self.stock_quantity <= self.low_stock_threshold

    @property
    def is_out_of_stock(self) -> bool:
        return self.track_inventory and self.stock_quantity <= 0


class Order(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    status: Mapped[OrderStatus] = mapped_column(
        SAEnum(OrderStatus), nullable=False, default=OrderStatus.pending
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(PaymentStatus), nullable=False, default=PaymentStatus.unpaid
    )
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    tax: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    shipping: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    discount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    payment_method: Mapped[Optional[str]] = mapped_column(String(50))
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    customer_notes: Mapped[Optional[str]] = mapped_column(Text)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text)
    billing_address: Mapped[Optional[dict]] = mapped_column(JSON)
    shipping_address: Mapped[Optional[dict]] = mapped_column(JSON)

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_orders_user_status", "user_id", "status"),)


class OrderItem(Base, TimestampMixin):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("products.id", ondelete="SET NULL")
    )
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="items")
    product: Mapped[Optional["Product"]] = relationship("Product")
