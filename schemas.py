from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import (
    AccountType,
    BudgetPeriod,
    CategoryType,
    Frequency,
    InvoiceStatus,
    NotificationCategory,
    NotificationChannel,
    OrderStatus,
    PaymentStatus,
    PlanRecurrence,
    PlanStatus,
    PostStatus,
    ProductStatus,
    SavingsGoalStatus,
    SmartInputType,
    TransactionType,
    TransferDirection,
)


# --- auth / permission / settings -------------------------------------------


class TokenIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1)


class TokenOut(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"


class UserIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    roles: list[str] = Field(default_factory=list)


class RoleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    language: str
    roles: list[RoleOut] = Field(default_factory=list)


class RoleIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    permissions: list[str] = Field(default_factory=list)


class RoleDetailOut(RoleOut):
    permissions: list[str] = Field(default_factory=list)


class ModuleOut(BaseModel):
    name: str
    alias: str
    description: str
    keywords: list[str]
    priority: int
    enabled: bool
    is_core: bool


class ModuleOrderIn(BaseModel):
    order: list[str] = Field(..., min_length=1)


class ProfileIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., min_length=3, max_length=255)
    language: str = Field(default="en", max_length=10)


class FinanceSettingsIn(BaseModel):
    default_currency: str = Field(..., min_length=3, max_length=3)


class InvoiceSettingsIn(BaseModel):
    from_name: Optional[str] = Field(default=None, max_length=255)
    from_address: Optional[str] = None
    from_email: Optional[str] = Field(default=None, max_length=255)
    from_phone: Optional[str] = Field(default=None, max_length=50)
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=1)


# --- finance -----------------------------------------------------------------


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    account_type: AccountType
    currency_code: str = Field(..., min_length=3, max_length=3)
    rate_source: Optional[str] = Field(default=None, max_length=40)
    initial_balance: int = 0
    institution_name: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None
    color: Optional[str] = Field(default=None, max_length=7)
    is_active: bool = True
    exclude_from_total: bool = False


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    account_type: AccountType
    currency_code: str
    rate_source: Optional[str]
    initial_balance: int
    current_balance: int
    institution_name: Optional[str]
    color: Optional[str]
    is_active: bool
    exclude_from_total: bool


class FinanceCategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    parent_id: Optional[int] = None
    color: Optional[str] = Field(default=None, max_length=7)
    icon: Optional[str] = Field(default=None, max_length=50)
    is_passive: bool = False


class FinanceCategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: CategoryType
    parent_id: Optional[int]
    color: Optional[str]
    icon: Optional[str]
    is_passive: bool


class TransactionIn(BaseModel):
    account_id: int
    category_id: Optional[int] = None
    transaction_type: CategoryType
    amount: int = Field(..., gt=0)
    transaction_date: date
    description: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = None


class TransactionUpdateIn(BaseModel):
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    amount: Optional[int] = Field(default=None, gt=0)
    transaction_date: Optional[date] = None
    description: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = None


class TransferIn(BaseModel):
    from_account_id: int
    to_account_id: int
    amount: int = Field(..., gt=0)
    transaction_date: date
    description: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = None


class BulkUpdateIn(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1, max_length=500)
    category_id: Optional[int] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    category_id: Optional[int]
    transaction_type: TransactionType
    amount: int
    signed_amount: int
    currency_code: str
    description: Optional[str]
    notes: Optional[str]
    transaction_date: date
    reconciled_at: Optional[datetime]
    transfer_direction: Optional[TransferDirection]
    transfer_account_id: Optional[int]
    transfer_transaction_id: Optional[int]
    recurring_transaction_id: Optional[int]


class RecurringTransactionIn(BaseModel):
    account_id: int
    category_id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=255)
    transaction_type: CategoryType
    amount: int = Field(..., gt=0)
    frequency: Frequency
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    month_of_year: Optional[int] = Field(default=None, ge=1, le=12)
    start_date: date
    end_date: Optional[date] = None
    auto_create: bool = True

    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class RecurringTransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    category_id: Optional[int]
    name: str
    transaction_type: CategoryType
    amount: int
    currency_code: str
    frequency: Frequency
    day_of_week: Optional[int]
    day_of_month: Optional[int]
    month_of_year: Optional[int]
    start_date: date
    end_date: Optional[date]
    next_run_date: date
    last_run_date: Optional[date]
    is_active: bool
    auto_create: bool
    monthly_amount: int


class ExchangeRateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    base_currency: str
    target_currency: str
    rate: Decimal
    bid_rate: Optional[Decimal]
    ask_rate: Optional[Decimal]
    source: str
    rate_date: date


class ConversionPreviewIn(BaseModel):
    from_account_id: int
    to_account_id: int
    amount: int = Field(..., gt=0)


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    category_id: Optional[int] = None
    period_type: BudgetPeriod
    allocated_amount: int = Field(..., ge=0)
    currency_code: str = Field(..., min_length=3, max_length=3)
    start_date: date
    end_date: Optional[date] = None
    rollover: bool = False

    @model_validator(mode="after")
    def check_window(self):
        if self.period_type == BudgetPeriod.custom and not self.end_date:
            raise ValueError("Custom budgets require an end_date")
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    category_id: Optional[int]
    period_type: BudgetPeriod
    allocated_amount: int
    spent_amount: int
    currency_code: str
    start_date: date
    end_date: date
    is_active: bool
    rollover: bool
    spent_percent: float
    variance: int


class SavingsGoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    target_account_id: Optional[int] = None
    target_amount: int = Field(..., gt=0)
    currency_code: str = Field(..., min_length=3, max_length=3)
    target_date: Optional[date] = None


class SavingsContributionIn(BaseModel):
    amount: int = Field(..., gt=0)
    contribution_date: date
    notes: Optional[str] = None
    transaction_id: Optional[int] = None


class SavingsGoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    target_account_id: Optional[int]
    target_amount: int
    current_amount: int
    currency_code: str
    target_date: Optional[date]
    status: SavingsGoalStatus
    completed_at: Optional[datetime]
    progress_percent: float


class CSVRow(BaseModel):
    date: date
    type: CategoryType
    amount: Decimal
    category: str
    description: Optional[str]


class PlanItemIn(BaseModel):
    id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=255)
    type: CategoryType
    planned_amount: int = Field(..., ge=0)
    recurrence: PlanRecurrence = PlanRecurrence.monthly
    category_id: Optional[int] = None
    notes: Optional[str] = None


class PlanPeriodIn(BaseModel):
    id: Optional[int] = None
    year: int
    notes: Optional[str] = None
    items: list[PlanItemIn] = Field(default_factory=list)


class FinancialPlanIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    start_year: int = Field(..., ge=2000, le=2100)
    end_year: int = Field(..., ge=2000, le=2100)
    currency_code: str = Field(..., min_length=3, max_length=3)
    status: PlanStatus = PlanStatus.draft
    periods: list[PlanPeriodIn] = Field(..., min_length=1)

    @model_validator(mode="after")
    def check_years(self):
        if self.end_year < self.start_year:
            raise ValueError("end_year must be on or after start_year")
        years = [period.year for period in self.periods]
        if len(set(years)) != len(years):
            raise ValueError("Each year may only appear once in a plan")
        outside = [y for y in years if not self.start_year <= y <= self.end_year]
        if outside:
            raise ValueError(f"Period years outside the plan range: {sorted(outside)}")
        return self


class PlanItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: CategoryType
    planned_amount: int
    recurrence: PlanRecurrence
    category_id: Optional[int]
    notes: Optional[str]
    yearly_amount: int


class PlanPeriodOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    year: int
    planned_income: int
    planned_expense: int
    planned_net: int
    notes: Optional[str]
    items: list[PlanItemOut]


class FinancialPlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str]
    start_year: int
    end_year: int
    currency_code: str
    status: PlanStatus
    year_span: int
    total_planned_income: int
    total_planned_expense: int
    planned_net: int
    periods: list[PlanPeriodOut]


class SmartTextIn(BaseModel):
    text: str = Field(..., min_length=1, max_length=1000)
    language: Literal["vi", "en"] = "vi"


class SmartInputStoreIn(TransactionIn):
    history_id: Optional[int] = None


class SmartInputHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    input_type: SmartInputType
    raw_text: Optional[str]
    parsed_result: Optional[dict]
    ai_provider: Optional[str]
    language: str
    confidence: Optional[Decimal]
    transaction_id: Optional[int]
    transaction_saved: bool
    created_at: datetime


# --- invoice -----------------------------------------------------------------


class InvoiceItemIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(..., ge=Decimal("0.01"), decimal_places=2)
    unit_price: Decimal = Field(..., ge=0, decimal_places=2)


class InvoiceIn(BaseModel):
    invoice_date: date
    due_date: date
    status: InvoiceStatus = InvoiceStatus.draft
    from_name: str = Field(..., min_length=1, max_length=255)
    from_address: Optional[str] = None
    from_email: Optional[str] = Field(default=None, max_length=255)
    from_phone: Optional[str] = Field(default=None, max_length=50)
    to_name: str = Field(..., min_length=1, max_length=255)
    to_address: Optional[str] = None
    to_email: Optional[str] = Field(default=None, max_length=255)
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=1, decimal_places=4)
    notes: Optional[str] = None
    items: list[InvoiceItemIn] = Field(..., min_length=1)

    @model_validator(mode="after")
    def check_due_date(self):
        if self.due_date < self.invoice_date:
            raise ValueError("due_date must be on or after invoice_date")
        return self


class InvoiceItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    sort_order: int


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_number: str
    invoice_date: date
    due_date: date
    status: InvoiceStatus
    from_name: str
    to_name: str
    to_email: Optional[str]
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    notes: Optional[str]
    items: list[InvoiceItemOut]


class InvoiceStatusIn(BaseModel):
    status: InvoiceStatus


# --- notification ------------------------------------------------------------


class NotificationTemplateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    subject: str = Field(..., min_length=1, max_length=255)
    body: str = Field(..., min_length=1)
    category: NotificationCategory
    channels: list[NotificationChannel] = Field(..., min_length=1)
    variables: list[str] = Field(default_factory=list)
    is_active: bool = True


class NotificationTemplateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    slug: str
    subject: str
    body: str
    category: NotificationCategory
    channels: list[NotificationChannel]
    variables: Optional[list[str]]
    is_active: bool
    version: int


class Recipients(BaseModel):
    target: Literal["users", "role", "all"] = "users"
    user_ids: list[int] = Field(default_factory=list)
    role: Optional[str] = None

    @model_validator(mode="after")
    def check_target(self):
        if self.target == "users" and not self.user_ids:
            raise ValueError("user_ids is required when target is users")
        if self.target == "role" and not self.role:
            raise ValueError("role is required when target is role")
        return self


class NotificationSendIn(BaseModel):
    recipients: Recipients
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1)
    category: NotificationCategory = NotificationCategory.system
    channels: list[NotificationChannel] = Field(
        default_factory=lambda: [NotificationChannel.database]
    )
    action_url: Optional[str] = Field(default=None, max_length=500)
    action_label: Optional[str] = Field(default=None, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=50)
    data: dict = Field(default_factory=dict)


class TemplateSendIn(BaseModel):
    recipients: Recipients
    template_id: Optional[int] = None
    slug: Optional[str] = None
    variables: dict[str, str] = Field(default_factory=dict)
    action_url: Optional[str] = Field(default=None, max_length=500)
    action_label: Optional[str] = Field(default=None, max_length=100)

    @model_validator(mode="after")
    def check_reference(self):
        if self.template_id is None and not self.slug:
            raise ValueError("template_id or slug is required")
        return self


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category: str
    title: str
    message: str
    icon: Optional[str]
    action_url: Optional[str]
    action_label: Optional[str]
    data: Optional[dict]
    read_at: Optional[datetime]
    created_at: datetime


class PreferenceIn(BaseModel):
    category: NotificationCategory
    channel: NotificationChannel
    enabled: bool


# --- blog --------------------------------------------------------------------


class TaxonomyIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None


class TaxonomyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    slug: str


class PostIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(default=None, max_length=255)
    excerpt: Optional[str] = None
    content: str = Field(..., min_length=1)
    status: PostStatus = PostStatus.draft
    published_at: Optional[datetime] = None
    category_id: Optional[int] = None
    meta_title: Optional[str] = Field(default=None, max_length=255)
    meta_description: Optional[str] = None
    is_featured: bool = False
    tag_ids: list[int] = Field(default_factory=list)


class PostOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    slug: str
    excerpt: Optional[str]
    content: str
    status: PostStatus
    published_at: Optional[datetime]
    category_id: Optional[int]
    views_count: int
    reading_time: int
    is_featured: bool
    tags: list[TaxonomyOut]


# --- ecommerce ---------------------------------------------------------------


class ProductIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(default=None, max_length=255)
    sku: Optional[str] = Field(default=None, max_length=50)
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0, decimal_places=2)
    sale_price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    cost: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    stock_quantity: int = Field(default=0, ge=0)
    low_stock_threshold: int = Field(default=5, ge=0)
    track_inventory: bool = True
    status: ProductStatus = ProductStatus.draft
    is_featured: bool = False
    category_id: Optional[int] = None
    tag_ids: list[int] = Field(default_factory=list)


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    slug: str
    sku: str
    price: Decimal
    sale_price: Optional[Decimal]
    effective_price: Decimal
    is_on_sale: bool
    discount_percentage: Optional[float]
    stock_quantity: int
    is_low_stock: bool
    is_out_of_stock: bool
    track_inventory: bool
    status: ProductStatus
    is_featured: bool
    sales_count: int
    category_id: Optional[int]
    tags: list[TaxonomyOut]


class OrderItemIn(BaseModel):
    product_id: int
    quantity: int = Field(..., ge=1)


class OrderIn(BaseModel):
    items: list[OrderItemIn] = Field(..., min_length=1)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    shipping: Decimal = Field(default=Decimal("0"), ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    payment_method: Optional[str] = Field(default=None, max_length=50)
    customer_notes: Optional[str] = None
    billing_address: Optional[dict] = None
    shipping_address: Optional[dict] = None


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: Optional[int]
    product_name: str
    quantity: int
    unit_price: Decimal
    total: Decimal


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal
    currency: str
    paid_at: Optional[datetime]
    items: list[OrderItemOut]
