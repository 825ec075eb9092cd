import logging
from dataclasses import asdict
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from auth import UserService, authenticate, issue_token, user_from_token
from blog import PostService, blog_categories, blog_tags
from config import get_settings
from database import SessionLocal
from ecommerce import OrderService, ProductService, product_categories, product_tags
from errors import AuthorizationError, DownloadLimitError, NotFoundError, SmartInputError
from fx_rates import ExchangeRateService
from importers import StatementImportService
from invoices import InvoiceService
from models import (
    CategoryType,
    InvoiceStatus,
    OrderStatus,
    PaymentStatus,
    Permission,
    PlanStatus,
    PostStatus,
    ProductStatus,
    SavingsGoalStatus,
    TransactionType,
    User,
)
from module_registry import ModuleRegistry, SettingsService
from notifications import (
    GenericNotification,
    NotificationInbox,
    NotificationService,
    NotificationTemplateService,
)
from periods import resolve_period
from permissions import RoleService, policy_for
from plans import FinancialPlanService
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    BudgetIn,
    BudgetOut,
    BulkUpdateIn,
    ConversionPreviewIn,
    ExchangeRateOut,
    FinanceCategoryIn,
    FinanceCategoryOut,
    FinanceSettingsIn,
    FinancialPlanIn,
    FinancialPlanOut,
    InvoiceIn,
    InvoiceItemIn,
    InvoiceItemOut,
    InvoiceOut,
    InvoiceSettingsIn,
    InvoiceStatusIn,
    ModuleOrderIn,
    NotificationOut,
    NotificationSendIn,
    NotificationTemplateIn,
    NotificationTemplateOut,
    OrderIn,
    OrderOut,
    PostIn,
    PostOut,
    PreferenceIn,
    ProductIn,
    ProductOut,
    ProfileIn,
    RecurringTransactionIn,
    RecurringTransactionOut,
    RoleDetailOut,
    RoleIn,
    SavingsContributionIn,
    SavingsGoalIn,
    SavingsGoalOut,
    SmartInputHistoryOut,
    SmartInputStoreIn,
    SmartTextIn,
    TaxonomyIn,
    TaxonomyOut,
    TemplateSendIn,
    TokenIn,
    TokenOut,
    TransactionIn,
    TransactionOut,
    TransactionUpdateIn,
    TransferIn,
    UserIn,
    UserOut,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    CSVService,
    DashboardService,
    RecurringTransactionService,
    ReportService,
    SavingsGoalService,
    TransactionFilters,
    TransactionService,
)
from smart_input import SmartInputService


logger = logging.getLogger(__name__)

app = FastAPI(title="Admin Dashboard")
bearer = HTTPBearer(auto_error=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(NotFoundError)
def not_found_handler(_request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(DownloadLimitError)
def download_limit_handler(_request, exc: DownloadLimitError):
    return JSONResponse(status_code=429, content={"detail": str(exc)})


@app.exception_handler(AuthorizationError)
def authorization_handler(_request, exc: AuthorizationError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(SmartInputError)
def smart_input_handler(_request, exc: SmartInputError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValueError)
def value_error_handler(_request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    user = user_from_token(db, credentials.credentials) if credentials else None
    if user is None:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def module_enabled(name: str):
    def dependency(db: Session = Depends(get_db)) -> None:
        if not ModuleRegistry(db).is_enabled(name):
            raise HTTPException(status_code=404, detail="Not Found")

    return dependency


def authorize(user: User, policy: str, action: str, record: object = None) -> None:
    policy_for(policy).authorize(user, action, record)


def page(items, total: int, limit: int, offset: int, schema: type[BaseModel]) -> dict:
    return {
        "data": [schema.model_validate(item) for item in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


# --- auth --------------------------------------------------------------------


@app.post("/v1/auth/token", response_model=TokenOut)
def login(payload: TokenIn, db: Session = Depends(get_db)):
    user = authenticate(db, payload.email, payload.password)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return TokenOut(access_token=issue_token(user.id))


@app.get("/v1/me", response_model=UserOut)
def me(user: User = Depends(current_user)):
    return user


# --- permission ----------------------------------------------------------------

access = APIRouter(prefix="/v1", dependencies=[Depends(module_enabled("Permission"))])


def _role_out(role) -> RoleDetailOut:
    return RoleDetailOut(
        id=role.id, name=role.name, permissions=sorted(p.name for p in role.permissions)
    )


@access.get("/users")
def list_users(user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "users", "view_any")
    return [UserOut.model_validate(u) for u in UserService(db).list()]


@access.post("/users", response_model=UserOut, status_code=201)
def create_user(payload: UserIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "users", "create")
    return UserService(db).create(payload)


@access.put("/users/{user_id}", response_model=UserOut)
def update_user(
    user_id: int, payload: UserIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "users", "update")
    return UserService(db).update(user_id, payload)


@access.delete("/users/{user_id}", status_code=204)
def delete_user(user_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "users", "delete")
    UserService(db).delete(user, user_id)
    return Response(status_code=204)


@access.get("/roles")
def list_roles(user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "roles", "view_any")
    return [_role_out(role) for role in RoleService(db).list()]


@access.post("/roles", response_model=RoleDetailOut, status_code=201)
def create_role(payload: RoleIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "roles", "create")
    return _role_out(RoleService(db).create(payload))


@access.put("/roles/{role_id}", response_model=RoleDetailOut)
def update_role(
    role_id: int, payload: RoleIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "roles", "update")
    return _role_out(RoleService(db).update(role_id, payload))


@access.delete("/roles/{role_id}", status_code=204)
def delete_role(role_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "roles", "delete")
    RoleService(db).delete(role_id)
    return Response(status_code=204)


@access.get("/permissions")
def list_permissions(user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "roles", "view_any")
    return sorted(db.scalars(select(Permission.name)))


# --- settings ----------------------------------------------------------------

settings_router = APIRouter(
    prefix="/v1/settings", dependencies=[Depends(module_enabled("Settings"))]
)


@settings_router.get("/modules")
def list_modules(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return ModuleRegistry(db).list_modules(user)


@settings_router.post("/modules/{name}/toggle")
def toggle_module(name: str, user: User = Depends(current_user), db: Session = Depends(get_db)):
    enabled = ModuleRegistry(db).toggle(user, name)
    return {"name": name, "enabled": enabled}


@settings_router.put("/modules/order")
def reorder_modules(
    payload: ModuleOrderIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return {"module_order": ModuleRegistry(db).reorder(user, payload.order)}


@settings_router.put("/profile", response_model=UserOut)
def update_profile(payload: ProfileIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    return SettingsService(db, user).update_profile(payload)


@settings_router.put("/finance")
def update_finance_settings(
    payload: FinanceSettingsIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return SettingsService(db, user).update_finance_settings(payload)


@settings_router.put("/invoice")
def update_invoice_settings(
    payload: InvoiceSettingsIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return SettingsService(db, user).update_invoice_settings(payload)


# --- finance -------------------------------------------------------------------

finance = APIRouter(prefix="/v1/finance", dependencies=[Depends(module_enabled("Finance"))])


@finance.get("/accounts")
def list_accounts(user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "view_any")
    return [AccountOut.model_validate(a) for a in AccountService(db, user.id).list()]


@finance.get("/accounts/total")
def total_balance(
    currency: Optional[str] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "view_any")
    return AccountService(db, user.id).total_balance(currency)


@finance.post("/accounts", response_model=AccountOut, status_code=201)
def create_account(payload: AccountIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "create")
    return AccountService(db, user.id).create(payload)


@finance.get("/accounts/{account_id}", response_model=AccountOut)
def get_account(account_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    account = AccountService(db, user.id).get(account_id)
    authorize(user, "finance", "view", account)
    return account


@finance.put("/accounts/{account_id}", response_model=AccountOut)
def update_account(
    account_id: int, payload: AccountIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "update")
    return AccountService(db, user.id).update(account_id, payload)


@finance.delete("/accounts/{account_id}", status_code=204)
def delete_account(account_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "delete")
    AccountService(db, user.id).soft_delete(account_id)
    return Response(status_code=204)


@finance.post("/accounts/{account_id}/recalculate", response_model=AccountOut)
def recalculate_account(account_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "update")
    service = AccountService(db, user.id)
    service.get(account_id)
    service.recalculate_balance(account_id)
    return service.get(account_id)


@finance.get("/categories")
def list_categories(
    type: Optional[CategoryType] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "view_any")
    return [FinanceCategoryOut.model_validate(c) for c in CategoryService(db, user.id).list_all(type)]


@finance.post("/categories", response_model=FinanceCategoryOut, status_code=201)
def create_category(
    payload: FinanceCategoryIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "create")
    return CategoryService(db, user.id).create(payload)


@finance.post("/categories/seed")
def seed_categories(user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "create")
    return {"created": CategoryService(db, user.id).seed_defaults()}


@finance.put("/categories/{category_id}", response_model=FinanceCategoryOut)
def update_category(
    category_id: int,
    payload: FinanceCategoryIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "update")
    return CategoryService(db, user.id).update(category_id, payload)


@finance.delete("/categories/{category_id}", status_code=204)
def delete_category(category_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "delete")
    CategoryService(db, user.id).delete(category_id)
    return Response(status_code=204)


@finance.get("/transactions")
def list_transactions(
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    q: Optional[str] = None,
    reconciled: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "view_any")
    filters = TransactionFilters(
        account_id=account_id,
        category_id=category_id,
        transaction_type=type,
        query=q,
        reconciled=reconciled,
    )
    items, total = TransactionService(db, user.id).list(
        filters, resolve_period(period, start, end), limit, offset
    )
    return page(items, total, limit, offset, TransactionOut)


@finance.post("/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    payload: TransactionIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "create")
    return TransactionService(db, user.id).create(payload)


@finance.post("/transfers", status_code=201)
def create_transfer(payload: TransferIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "create")
    outgoing, incoming = TransactionService(db, user.id).record_transfer(payload)
    return {
        "outgoing": TransactionOut.model_validate(outgoing),
        "incoming": TransactionOut.model_validate(incoming),
    }


@finance.post("/transactions/conversion-preview")
def conversion_preview(
    payload: ConversionPreviewIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "view_any")
    return TransactionService(db, user.id).conversion_preview(
        payload.from_account_id, payload.to_account_id, payload.amount
    )


@finance.post("/transactions/bulk-update")
def bulk_update_transactions(
    payload: BulkUpdateIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "update")
    updated = TransactionService(db, user.id).bulk_update(payload.transaction_ids, payload.category_id)
    return {"updated": updated}


@finance.post("/transactions/import")
async def import_transactions(
    account_id: int = Form(...),
    file: UploadFile = File(...),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "create")
    raw = await file.read()
    try:
        content = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="File must be UTF-8 encoded CSV") from exc
    return CSVService(db, user.id).import_csv(content, account_id)


@finance.get("/transactions/export")
def export_transactions(
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    account_id: Optional[int] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "view_any")
    resolved = resolve_period(period, start, end)
    csv_content = CSVService(db, user.id).export(resolved, TransactionFilters(account_id=account_id))
    filename = f"transactions_{resolved.start}_{resolved.end}.csv"
    return StreamingResponse(
        iter([csv_content]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@finance.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(transaction_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    txn = TransactionService(db, user.id).get(transaction_id)
    authorize(user, "finance", "view", txn)
    return txn


@finance.patch("/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdateIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "update")
    return TransactionService(db, user.id).update(transaction_id, payload)


@finance.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(transaction_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "delete")
    TransactionService(db, user.id).soft_delete(transaction_id)
    return Response(status_code=204)


@finance.post("/transactions/{transaction_id}/restore", response_model=TransactionOut)
def restore_transaction(transaction_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "update")
    service = TransactionService(db, user.id)
    service.restore(transaction_id)
    return service.get(transaction_id)


@finance.post("/transactions/{transaction_id}/reconcile", response_model=TransactionOut)
def reconcile_transaction(
    transaction_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "update")
    return TransactionService(db, user.id).reconcile(transaction_id)


@finance.get("/recurring")
def list_recurring(
    active_only: bool = False, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "view_any")
    rules = RecurringTransactionService(db, user.id).list(active_only=active_only)
    return [RecurringTransactionOut.model_validate(r) for r in rules]


@finance.get("/recurring/upcoming")
def upcoming_recurring(
    days: int = Query(30, ge=1, le=366), user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "view_any")
    rules = RecurringTransactionService(db, user.id).upcoming(days)
    return [RecurringTransactionOut.model_validate(r) for r in rules]


@finance.get("/recurring/projection")
def recurring_projection(
    currency: Optional[str] = None, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "view_any")
    return RecurringTransactionService(db, user.id).monthly_projection(currency)


@finance.post("/recurring/process")
def process_recurring(user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "create")
    result = RecurringTransactionService(db, user.id).process_due()
    return {
        "processed": result.processed,
        "created": result.created,
        "skipped": result.skipped,
        "errors": result.errors,
    }


@finance.post("/recurring", response_model=RecurringTransactionOut, status_code=201)
def create_recurring(
    payload: RecurringTransactionIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "create")
    return RecurringTransactionService(db, user.id).create(payload)


@finance.put("/recurring/{rule_id}", response_model=RecurringTransactionOut)
def update_recurring(
    rule_id: int,
    payload: RecurringTransactionIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "update")
    return RecurringTransactionService(db, user.id).update(rule_id, payload)


@finance.delete("/recurring/{rule_id}", status_code=204)
def delete_recurring(rule_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "delete")
    RecurringTransactionService(db, user.id).delete(rule_id)
    return Response(status_code=204)


@finance.post("/recurring/{rule_id}/pause", response_model=RecurringTransactionOut)
def pause_recurring(rule_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "update")
    return RecurringTransactionService(db, user.id).pause(rule_id)


@finance.post("/recurring/{rule_id}/resume", response_model=RecurringTransactionOut)
def resume_recurring(rule_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "update")
    return RecurringTransactionService(db, user.id).resume(rule_id)


@finance.get("/recurring/{rule_id}/preview")
def preview_recurring(
    rule_id: int,
    count: int = Query(12, ge=1, le=60),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "view_any")
    return RecurringTransactionService(db, user.id).preview(rule_id, count)


@finance.get("/exchange-rates")
def list_exchange_rates(
    base: Optional[str] = None, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "view_any")
    return [ExchangeRateOut.model_validate(r) for r in ExchangeRateService(db).latest_rates(base)]


@finance.post("/exchange-rates/refresh")
def refresh_exchange_rates(
    provider: Optional[str] = None, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "update")
    return {"saved": ExchangeRateService(db).update_rates(provider)}


@finance.get("/budgets")
def list_budgets(
    active_only: bool = True, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "view_any")
    return [BudgetOut.model_validate(b) for b in BudgetService(db, user.id).list(active_only)]


@finance.post("/budgets", response_model=BudgetOut, status_code=201)
def create_budget(payload: BudgetIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "create")
    return BudgetService(db, user.id).create(payload)


@finance.post("/budgets/renew")
def renew_budgets(user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "update")
    return {"renewed": BudgetService(db, user.id).renew_expired()}


@finance.put("/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int, payload: BudgetIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "update")
    return BudgetService(db, user.id).update(budget_id, payload)


@finance.delete("/budgets/{budget_id}", status_code=204)
def delete_budget(budget_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "delete")
    BudgetService(db, user.id).delete(budget_id)
    return Response(status_code=204)


@finance.get("/budgets/{budget_id}/variance")
def budget_variance(budget_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "view_any")
    service = BudgetService(db, user.id)
    return {**service.variance(budget_id), "alert_level": service.alert_level(budget_id)}


@finance.get("/savings-goals")
def list_savings_goals(user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "view_any")
    return [SavingsGoalOut.model_validate(g) for g in SavingsGoalService(db, user.id).list()]


@finance.post("/savings-goals", response_model=SavingsGoalOut, status_code=201)
def create_savings_goal(
    payload: SavingsGoalIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "create")
    return SavingsGoalService(db, user.id).create(payload)


@finance.put("/savings-goals/{goal_id}", response_model=SavingsGoalOut)
def update_savings_goal(
    goal_id: int, payload: SavingsGoalIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "update")
    return SavingsGoalService(db, user.id).update(goal_id, payload)


@finance.delete("/savings-goals/{goal_id}", status_code=204)
def delete_savings_goal(goal_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "delete")
    SavingsGoalService(db, user.id).delete(goal_id)
    return Response(status_code=204)


@finance.post("/savings-goals/{goal_id}/contributions", response_model=SavingsGoalOut)
def add_contribution(
    goal_id: int,
    payload: SavingsContributionIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "update")
    service = SavingsGoalService(db, user.id)
    service.add_contribution(goal_id, payload)
    return service.get(goal_id)


@finance.post("/savings-goals/{goal_id}/withdrawals", response_model=SavingsGoalOut)
def withdraw_contribution(
    goal_id: int,
    payload: SavingsContributionIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "update")
    service = SavingsGoalService(db, user.id)
    service.withdraw(goal_id, payload)
    return service.get(goal_id)


@finance.post("/savings-goals/{goal_id}/status", response_model=SavingsGoalOut)
def set_savings_goal_status(
    goal_id: int,
    status: SavingsGoalStatus,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "update")
    return SavingsGoalService(db, user.id).set_status(goal_id, status)


@finance.get("/reports/summary")
def report_summary(
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    currency: Optional[str] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "view_any")
    return ReportService(db, user.id).summary(resolve_period(period, start, end), currency)


@finance.get("/reports/cashflow")
def report_cashflow(
    months: int = Query(6, ge=1, le=36),
    currency: Optional[str] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "view_any")
    return ReportService(db, user.id).cashflow(months, currency)


@finance.get("/dashboard")
def finance_dashboard(
    currency: Optional[str] = None, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "view_any")
    overview = DashboardService(db, user.id).overview(currency)
    overview["recent_transactions"] = [
        TransactionOut.model_validate(t) for t in overview["recent_transactions"]
    ]
    overview["budgets"] = [BudgetOut.model_validate(b) for b in overview["budgets"]]
    overview["upcoming_recurring"] = [
        RecurringTransactionOut.model_validate(r) for r in overview["upcoming_recurring"]
    ]
    return overview


@finance.get("/plans")
def list_plans(
    status: Optional[PlanStatus] = None, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "view_any")
    return [FinancialPlanOut.model_validate(p) for p in FinancialPlanService(db, user.id).list(status)]


@finance.post("/plans", response_model=FinancialPlanOut, status_code=201)
def create_plan(payload: FinancialPlanIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "create")
    return FinancialPlanService(db, user.id).create(payload)


@finance.get("/plans/{plan_id}", response_model=FinancialPlanOut)
def get_plan(plan_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "view_any")
    return FinancialPlanService(db, user.id).get(plan_id)


@finance.put("/plans/{plan_id}", response_model=FinancialPlanOut)
def update_plan(
    plan_id: int, payload: FinancialPlanIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "update")
    return FinancialPlanService(db, user.id).update(plan_id, payload)


@finance.delete("/plans/{plan_id}", status_code=204)
def delete_plan(plan_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "delete")
    FinancialPlanService(db, user.id).delete(plan_id)
    return Response(status_code=204)


@finance.post("/plans/{plan_id}/recalculate")
def recalculate_plan(plan_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "update")
    changes = FinancialPlanService(db, user.id).recalculate_totals(plan_id)
    return {"changes": [asdict(change) for change in changes]}


@finance.get("/plans/{plan_id}/compare")
def compare_plan(plan_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "view_any")
    return FinancialPlanService(db, user.id).compare(plan_id)


@finance.post("/transactions/import/statement")
async def import_statement(
    source: str = Form(...),
    account_id: int = Form(...),
    file: UploadFile = File(...),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "create")
    content = await file.read()
    return StatementImportService(db, user.id).import_file(source, content, account_id)


@finance.post("/smart-input/text")
def smart_input_text(payload: SmartTextIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "finance", "create")
    return SmartInputService(db, user.id).parse_text(payload.text, payload.language)


@finance.post("/smart-input/receipt")
async def smart_input_receipt(
    image: UploadFile = File(...),
    language: str = Form("vi"),
    notes: Optional[str] = Form(None),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "create")
    if language not in ("vi", "en"):
        raise HTTPException(status_code=422, detail="language must be vi or en")
    content = await image.read()
    return SmartInputService(db, user.id).parse_receipt(
        content, image.content_type or "image/jpeg", language, notes
    )


@finance.post("/smart-input/voice")
async def smart_input_voice(
    audio: UploadFile = File(...),
    language: str = Form("vi"),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "finance", "create")
    if language not in ("vi", "en"):
        raise HTTPException(status_code=422, detail="language must be vi or en")
    content = await audio.read()
    return SmartInputService(db, user.id).parse_voice(
        content, audio.content_type or "audio/webm", language
    )


@finance.post("/smart-input/transactions", response_model=TransactionOut, status_code=201)
def smart_input_store(
    payload: SmartInputStoreIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "create")
    return SmartInputService(db, user.id).store(payload)


@finance.get("/smart-input/history")
def smart_input_history(
    limit: int = Query(50, ge=1, le=200), user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "view_any")
    return [SmartInputHistoryOut.model_validate(h) for h in SmartInputService(db, user.id).history(limit)]


@finance.delete("/smart-input/history/{history_id}", status_code=204)
def delete_smart_input_history(
    history_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "finance", "delete")
    SmartInputService(db, user.id).delete_history(history_id)
    return Response(status_code=204)


# --- invoice -------------------------------------------------------------------

invoice_router = APIRouter(prefix="/v1/invoices", dependencies=[Depends(module_enabled("Invoice"))])


@invoice_router.get("")
def list_invoices(
    status: Optional[InvoiceStatus] = None,
    q: Optional[str] = None,
    limit: int = Query(15, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "invoices", "view_any")
    items, total = InvoiceService(db, user.id).list(status=status, query=q, limit=limit, offset=offset)
    return page(items, total, limit, offset, InvoiceOut)


@invoice_router.post("", response_model=InvoiceOut, status_code=201)
def create_invoice(payload: InvoiceIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "invoices", "create")
    return InvoiceService(db, user.id).create(payload)


@invoice_router.get("/report")
def invoice_report(
    start: date, end: date, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "invoices", "view_any")
    return InvoiceService(db, user.id).report(start, end)


@invoice_router.get("/{invoice_id}", response_model=InvoiceOut)
def get_invoice(invoice_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    invoice = InvoiceService(db, user.id).get(invoice_id)
    authorize(user, "invoices", "view", invoice)
    return invoice


@invoice_router.put("/{invoice_id}", response_model=InvoiceOut)
def update_invoice(
    invoice_id: int, payload: InvoiceIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "invoices", "update")
    return InvoiceService(db, user.id).update(invoice_id, payload)


@invoice_router.delete("/{invoice_id}", status_code=204)
def delete_invoice(invoice_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "invoices", "delete")
    InvoiceService(db, user.id).soft_delete(invoice_id)
    return Response(status_code=204)


@invoice_router.post("/{invoice_id}/status", response_model=InvoiceOut)
def set_invoice_status(
    invoice_id: int,
    payload: InvoiceStatusIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "invoices", "update")
    return InvoiceService(db, user.id).set_status(invoice_id, payload.status)


@invoice_router.post("/{invoice_id}/items", response_model=InvoiceItemOut, status_code=201)
def add_invoice_item(
    invoice_id: int,
    payload: InvoiceItemIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "invoices", "update")
    return InvoiceService(db, user.id).add_item(invoice_id, payload)


@invoice_router.put("/{invoice_id}/items/{item_id}", response_model=InvoiceItemOut)
def update_invoice_item(
    invoice_id: int,
    item_id: int,
    payload: InvoiceItemIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "invoices", "update")
    return InvoiceService(db, user.id).update_item(invoice_id, item_id, payload)


@invoice_router.delete("/{invoice_id}/items/{item_id}", response_model=InvoiceOut)
def remove_invoice_item(
    invoice_id: int, item_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "invoices", "update")
    return InvoiceService(db, user.id).remove_item(invoice_id, item_id)


@invoice_router.get("/{invoice_id}/pdf")
def invoice_pdf(invoice_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "invoices", "view")
    try:
        filename, pdf_bytes = InvoiceService(db, user.id).render_pdf(invoice_id)
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return StreamingResponse(
        iter([pdf_bytes]),
        media_type="application/pdf",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


# --- notification --------------------------------------------------------------

notification_router = APIRouter(
    prefix="/v1", dependencies=[Depends(module_enabled("Notification"))]
)


@notification_router.get("/notifications")
def list_notifications(
    unread_only: bool = False,
    category: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    items, total = NotificationInbox(db, user.id).list(
        unread_only=unread_only, category=category, limit=limit, offset=offset
    )
    return page(items, total, limit, offset, NotificationOut)


@notification_router.get("/notifications/unread-count")
def unread_count(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return {"count": NotificationInbox(db, user.id).unread_count()}


@notification_router.post("/notifications/read-all")
def mark_all_read(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return {"updated": NotificationInbox(db, user.id).mark_all_as_read()}


@notification_router.get("/notifications/preferences")
def get_preferences(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return NotificationInbox(db, user.id).preferences_matrix()


@notification_router.put("/notifications/preferences")
def set_preference(payload: PreferenceIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    inbox = NotificationInbox(db, user.id)
    inbox.set_preference(payload.category, payload.channel, payload.enabled)
    return inbox.preferences_matrix()


@notification_router.post("/notifications/send")
def send_notification(
    payload: NotificationSendIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "notifications_send", "create")
    notification = GenericNotification(
        title=payload.title,
        message=payload.message,
        category=payload.category,
        channels=payload.channels,
        action_url=payload.action_url,
        action_label=payload.action_label,
        icon=payload.icon,
        data=payload.data,
    )
    return NotificationService(db).send(payload.recipients, notification)


@notification_router.post("/notifications/send-template")
def send_template_notification(
    payload: TemplateSendIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "notifications_send", "create")
    service = NotificationService(db)
    if payload.template_id is not None:
        template = NotificationTemplateService(db).get(payload.template_id)
        if not template.is_active:
            raise HTTPException(status_code=400, detail="Template is inactive")
        return service.send_from_template(
            template, payload.recipients, payload.variables, payload.action_url, payload.action_label
        )
    return service.send_from_template_by_slug(
        payload.slug, payload.recipients, payload.variables, payload.action_url, payload.action_label
    )


@notification_router.post("/notifications/{notification_id}/read", response_model=NotificationOut)
def mark_read(notification_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    return NotificationInbox(db, user.id).mark_as_read(notification_id)


@notification_router.delete("/notifications/{notification_id}", status_code=204)
def delete_notification(
    notification_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    NotificationInbox(db, user.id).delete(notification_id)
    return Response(status_code=204)


@notification_router.get("/notification-templates")
def list_templates(
    category: Optional[str] = None, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "notification_templates", "view_any")
    return [
        NotificationTemplateOut.model_validate(t)
        for t in NotificationTemplateService(db).list(category)
    ]


@notification_router.post(
    "/notification-templates", response_model=NotificationTemplateOut, status_code=201
)
def create_template(
    payload: NotificationTemplateIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "notification_templates", "create")
    return NotificationTemplateService(db).create(payload)


@notification_router.put(
    "/notification-templates/{template_id}", response_model=NotificationTemplateOut
)
def update_template(
    template_id: int,
    payload: NotificationTemplateIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "notification_templates", "update")
    return NotificationTemplateService(db).update(template_id, payload)


@notification_router.delete("/notification-templates/{template_id}", status_code=204)
def delete_template(template_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "notification_templates", "delete")
    NotificationTemplateService(db).delete(template_id)
    return Response(status_code=204)


# --- blog ----------------------------------------------------------------------

blog_router = APIRouter(prefix="/v1/blog", dependencies=[Depends(module_enabled("Blog"))])


def register_taxonomy_routes(router: APIRouter, path: str, factory, policy: str) -> None:
    @router.get(path, name=f"list_{policy}")
    def list_items(user: User = Depends(current_user), db: Session = Depends(get_db)):
        authorize(user, policy, "view_any")
        return [TaxonomyOut.model_validate(item) for item in factory(db).list()]

    @router.post(path, response_model=TaxonomyOut, status_code=201, name=f"create_{policy}")
    def create_item(payload: TaxonomyIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
        authorize(user, policy, "create")
        return factory(db).create(payload)

    @router.put(path + "/{item_id}", response_model=TaxonomyOut, name=f"update_{policy}")
    def update_item(
        item_id: int, payload: TaxonomyIn, user: User = Depends(current_user), db: Session = Depends(get_db)
    ):
        authorize(user, policy, "update")
        return factory(db).update(item_id, payload)

    @router.delete(path + "/{item_id}", status_code=204, name=f"delete_{policy}")
    def delete_item(item_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
        authorize(user, policy, "delete")
        factory(db).delete(item_id)
        return Response(status_code=204)


register_taxonomy_routes(blog_router, "/categories", blog_categories, "blog_categories")
register_taxonomy_routes(blog_router, "/tags", blog_tags, "blog_tags")


@blog_router.get("/posts")
def list_posts(
    status: Optional[PostStatus] = None,
    category_id: Optional[int] = None,
    tag_id: Optional[int] = None,
    q: Optional[str] = None,
    featured: Optional[bool] = None,
    limit: int = Query(15, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "posts", "view_any")
    items, total = PostService(db, user.id).list(
        status=status,
        category_id=category_id,
        tag_id=tag_id,
        query=q,
        featured=featured,
        limit=limit,
        offset=offset,
    )
    return page(items, total, limit, offset, PostOut)


@blog_router.post("/posts", response_model=PostOut, status_code=201)
def create_post(payload: PostIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "posts", "create")
    return PostService(db, user.id).create(payload)


@blog_router.get("/posts/{post_id}", response_model=PostOut)
def get_post(post_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "posts", "view")
    return PostService(db, user.id).get(post_id)


@blog_router.put("/posts/{post_id}", response_model=PostOut)
def update_post(
    post_id: int, payload: PostIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "posts", "update")
    return PostService(db, user.id).update(post_id, payload)


@blog_router.post("/posts/{post_id}/publish", response_model=PostOut)
def publish_post(post_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "posts", "update")
    return PostService(db, user.id).publish(post_id)


@blog_router.delete("/posts/{post_id}", status_code=204)
def delete_post(post_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "posts", "delete")
    PostService(db, user.id).soft_delete(post_id)
    return Response(status_code=204)


# --- ecommerce -----------------------------------------------------------------

shop = APIRouter(prefix="/v1/ecommerce", dependencies=[Depends(module_enabled("Ecommerce"))])

register_taxonomy_routes(shop, "/categories", product_categories, "product_categories")
register_taxonomy_routes(shop, "/tags", product_tags, "product_tags")


@shop.get("/products")
def list_products(
    status: Optional[ProductStatus] = None,
    category_id: Optional[int] = None,
    q: Optional[str] = None,
    low_stock: bool = False,
    limit: int = Query(15, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "products", "view_any")
    items, total = ProductService(db, user.id).list(
        status=status, category_id=category_id, query=q, low_stock=low_stock, limit=limit, offset=offset
    )
    return page(items, total, limit, offset, ProductOut)


@shop.post("/products", response_model=ProductOut, status_code=201)
def create_product(payload: ProductIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "products", "create")
    return ProductService(db, user.id).create(payload)


@shop.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "products", "view")
    return ProductService(db, user.id).get(product_id)


@shop.put("/products/{product_id}", response_model=ProductOut)
def update_product(
    product_id: int, payload: ProductIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    authorize(user, "products", "update")
    return ProductService(db, user.id).update(product_id, payload)


@shop.delete("/products/{product_id}", status_code=204)
def delete_product(product_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "products", "delete")
    ProductService(db, user.id).soft_delete(product_id)
    return Response(status_code=204)


@shop.get("/orders")
def list_orders(
    status: Optional[OrderStatus] = None,
    payment_status: Optional[PaymentStatus] = None,
    q: Optional[str] = None,
    limit: int = Query(15, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    authorize(user, "orders", "view_any")
    items, total = OrderService(db, user.id).list(
        status=status, payment_status=payment_status, query=q, limit=limit, offset=offset
    )
    return page(items, total, limit, offset, OrderOut)


@shop.post("/orders", response_model=OrderOut, status_code=201)
def place_order(payload: OrderIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "orders", "create")
    return OrderService(db, user.id).place_order(payload)


@shop.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "orders", "view")
    return OrderService(db, user.id).get(order_id)


ORDER_ACTIONS = {
    "pay": OrderService.mark_paid,
    "process": OrderService.mark_processing,
    "complete": OrderService.complete,
    "cancel": OrderService.cancel,
    "refund": OrderService.refund,
}


@shop.post("/orders/{order_id}/{action}", response_model=OrderOut)
def order_action(
    order_id: int, action: str, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    handler = ORDER_ACTIONS.get(action)
    if handler is None:
        raise HTTPException(status_code=404, detail="Not Found")
    authorize(user, "orders", "update")
    return handler(OrderService(db, user.id), order_id)


@shop.delete("/orders/{order_id}", status_code=204)
def delete_order(order_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    authorize(user, "orders", "delete")
    OrderService(db, user.id).soft_delete(order_id)
    return Response(status_code=204)


for router in (access, settings_router, finance, invoice_router, notification_router, blog_router, shop):
    app.include_router(router)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
