from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from rapidfuzz.distance import Levenshtein

from config import get_settings
from csv_utils import export_transactions, parse_csv
from errors import InsufficientFundsError, InvalidTransferError, NotFoundError
from fx_rates import ExchangeRateService
from models import (
    Account,
    AccountType,
    Budget,
    BudgetPeriod,
    CategoryType,
    Currency,
    FinanceCategory,
    RecurringTransaction,
    SavingsContribution,
    SavingsGoal,
    SavingsGoalStatus,
    Transaction,
    TransactionType,
    TransferDirection,
    User,
)
from money import CURRENCIES, decimal_places, to_minor
from periods import Period, budget_window, month_end, shift_month
from recurrence import (
    ProcessResult,
    RecurringEngine,
    align_to_anchor,
    local_today,
    preview_dates,
    reschedule,
    upcoming_filter,
)
from schemas import (
    AccountIn,
    BudgetIn,
    FinanceCategoryIn,
    RecurringTransactionIn,
    SavingsContributionIn,
    SavingsGoalIn,
    TransactionIn,
    TransactionUpdateIn,
    TransferIn,
)


logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [
    ("Salary", CategoryType.income, "wallet", "#10b981", False),
    ("Business Income", CategoryType.income, "briefcase", "#3b82f6", False),
    ("Affiliate Income", CategoryType.income, "briefcase", "#22c55e", True),
    ("Investment Income", CategoryType.income, "trending-up", "#8b5cf6", True),
    ("Other Income", CategoryType.income, "plus-circle", "#6b7280", False),
    ("Food & Dining", CategoryType.expense, "utensils", "#ef4444", False),
    ("Transportation", CategoryType.expense, "car", "#f59e0b", False),
    ("Housing", CategoryType.expense, "home", "#14b8a6", False),
    ("Utilities", CategoryType.expense, "zap", "#fbbf24", False),
    ("Healthcare", CategoryType.expense, "heart", "#ec4899", False),
    ("Insurance", CategoryType.expense, "shield", "#06b6d4", False),
    ("Entertainment", CategoryType.expense, "film", "#8b5cf6", False),
    ("Shopping", CategoryType.expense, "shopping-bag", "#f43f5e", False),
    ("Gifts & Donations", CategoryType.expense, "more-horizontal", "#6b7280", False),
    ("Education", CategoryType.expense, "book", "#0ea5e9", False),
    ("Other Expenses", CategoryType.expense, "more-horizontal", "#6b7280", False),
]

SCHEDULE_FIELDS = (
    "frequency",
    "day_of_week",
    "day_of_month",
    "month_of_year",
    "start_date",
    "end_date",
)


def seed_currencies(session: Session, default_code: Optional[str] = None) -> int:
    default_code = (default_code or get_settings().default_currency).upper()
    created = 0
    for code, (name, symbol, places) in CURRENCIES.items():
        currency = session.get(Currency, code)
        if currency is None:
            currency = Currency(code=code, name=name, symbol=symbol, decimal_places=places)
            session.add(currency)
            created += 1
        currency.is_default = code == default_code
    session.commit()
    return created


def default_currency_code(session: Session, user: Optional[User] = None) -> str:
    if user is not None and user.default_currency:
        return user.default_currency
    code = session.scalar(select(Currency.code).where(Currency.is_default.is_(True)))
    return code or get_settings().default_currency


def purge_deleted(
    session: Session, older_than_days: int = 30, today: Optional[date] = None
) -> dict[str, int]:
    today = today or local_today()
    cutoff = datetime.combine(today - timedelta(days=older_than_days), datetime.min.time())

    txn_ids = list(
        session.scalars(
            select(Transaction.id).where(
                Transaction.deleted_at.is_not(None), Transaction.deleted_at < cutoff
            )
        )
    )
    if txn_ids:
        session.execute(
            update(Transaction)
            .where(Transaction.transfer_transaction_id.in_(txn_ids))
            .values(transfer_transaction_id=None)
        )
        session.execute(
            update(SavingsContribution)
            .where(SavingsContribution.transaction_id.in_(txn_ids))
            .values(transaction_id=None)
        )
        session.execute(delete(Transaction).where(Transaction.id.in_(txn_ids)))

    rule_ids = list(
        session.scalars(
            select(RecurringTransaction.id).where(
                RecurringTransaction.deleted_at.is_not(None),
                RecurringTransaction.deleted_at < cutoff,
            )
        )
    )
    if rule_ids:
        session.execute(
            update(Transaction)
            .where(Transaction.recurring_transaction_id.in_(rule_ids))
            .values(recurring_transaction_id=None)
        )
        session.execute(
            delete(RecurringTransaction).where(RecurringTransaction.id.in_(rule_ids))
        )

    account_ids = []
    for account in session.scalars(
        select(Account).where(Account.deleted_at.is_not(None), Account.deleted_at < cutoff)
    ):
        in_use = session.scalar(
            select(func.count(Transaction.id)).where(
                or_(
                    Transaction.account_id == account.id,
                    Transaction.transfer_account_id == account.id,
                )
            )
        ) or session.scalar(
            select(func.count(RecurringTransaction.id)).where(
                RecurringTransaction.account_id == account.id
            )
        )
        if not in_use:
            account_ids.append(account.id)
    if account_ids:
        session.execute(
            update(SavingsGoal)
            .where(SavingsGoal.target_account_id.in_(account_ids))
            .values(target_account_id=None)
        )
        session.execute(delete(Account).where(Account.id.in_(account_ids)))

    session.commit()
    counts = {
        "transactions": len(txn_ids),
        "recurring_transactions": len(rule_ids),
        "accounts": len(account_ids),
    }
    logger.info(
        "purge_deleted: "
        + " ".join(f"{name}={count}" for name, count in counts.items())
    )
    return counts


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    transaction_type: Optional[TransactionType] = None
    query: Optional[str] = None
    reconciled: Optional[bool] = None


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id or account.is_deleted:
            raise NotFoundError("Account not found")
        return account

    def list(self, include_inactive: bool = True) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id, Account.deleted_at.is_(None))
            .order_by(Account.name)
        )
        if not include_inactive:
            stmt = stmt.where(Account.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def _check_currency(self, code: str) -> str:
        code = code.upper()
        if self.session.get(Currency, code) is None:
            raise ValueError(f"Unknown currency {code}")
        return code

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            **data.model_dump(exclude={"currency_code"}),
            currency_code=self._check_currency(data.currency_code),
            current_balance=data.initial_balance,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountIn) -> Account:
        account = self.get(account_id)
        currency = self._check_currency(data.currency_code)
        if currency != account.currency_code and self._has_transactions(account.id):
            raise ValueError("Cannot change the currency of an account with transactions")
        for field, value in data.model_dump(exclude={"currency_code"}).items():
            setattr(account, field, value)
        account.currency_code = currency
        self.recalculate_balance(account.id, commit=False)
        self.session.commit()
        self.session.refresh(account)
        return account

    def _has_transactions(self, account_id: int) -> bool:
        stmt = select(Transaction.id).where(Transaction.account_id == account_id).limit(1)
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def soft_delete(self, account_id: int) -> None:
        account = self.get(account_id)
        account.deleted_at = datetime.utcnow()
        account.is_active = False
        self.session.commit()

    def recalculate_balance(self, account_id: int, commit: bool = True) -> int:
        account = self.session.get(Account, account_id)
        if account is None:
            raise NotFoundError("Account not found")
        stmt = select(Transaction).where(
            Transaction.account_id == account_id, Transaction.deleted_at.is_(None)
        )
        total = sum(txn.signed_amount for txn in self.session.scalars(stmt))
        account.current_balance = account.initial_balance + total
        if commit:
            self.session.commit()
        return account.current_balance

    def total_balance(self, currency: Optional[str] = None) -> dict[str, object]:
        user = self.session.get(User, self.user_id)
        target = (currency or default_currency_code(self.session, user)).upper()
        fx = ExchangeRateService(self.session)
        total = 0
        missing: list[str] = []
        for account in self.list(include_inactive=False):
            if account.exclude_from_total:
                continue
            converted = fx.convert(
                account.current_balance, account.currency_code, target, account.rate_source
            )
            if converted is None:
                missing.append(account.currency_code)
                logger.warning(
                    f"total_balance_skipped: account_id={account.id} "
                    f"from={account.currency_code} to={target}"
                )
                continue
            total += converted
        return {"currency_code": target, "total": total, "missing_rates": sorted(set(missing))}


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, category_id: int) -> FinanceCategory:
        category = self.session.get(FinanceCategory, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def list_all(self, type: Optional[CategoryType] = None) -> list[FinanceCategory]:
        stmt = select(FinanceCategory).where(FinanceCategory.user_id == self.user_id)
        if type is not None:
            stmt = stmt.where(FinanceCategory.type == type)
        return list(
            self.session.scalars(stmt.order_by(FinanceCategory.type, FinanceCategory.name))
        )

    def _check_unique(self, name: str, type: CategoryType, exclude_id: Optional[int] = None):
        stmt = select(FinanceCategory.id).where(
            FinanceCategory.user_id == self.user_id,
            FinanceCategory.type == type,
            func.lower(FinanceCategory.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(FinanceCategory.id != exclude_id)
        if self.session.execute(stmt).first():
            raise ValueError("Category with this name already exists")

    def _check_parent(self, parent_id: Optional[int], type: CategoryType) -> None:
        if parent_id is None:
            return
        parent = self.get(parent_id)
        if parent.type != type:
            raise ValueError("Parent category type mismatch")

    def create(self, data: FinanceCategoryIn) -> FinanceCategory:
        name = data.name.strip()
        self._check_unique(name, data.type)
        self._check_parent(data.parent_id, data.type)
        category = FinanceCategory(
            user_id=self.user_id, **data.model_dump(exclude={"name"}), name=name
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: FinanceCategoryIn) -> FinanceCategory:
        category = self.get(category_id)
        name = data.name.strip()
        self._check_unique(name, data.type, exclude_id=category.id)
        if data.parent_id == category.id:
            raise ValueError("Category cannot be its own parent")
        self._check_parent(data.parent_id, data.type)
        for field, value in data.model_dump(exclude={"name"}).items():
            setattr(category, field, value)
        category.name = name
        self.session.commit()
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        self.session.execute(
            update(FinanceCategory)
            .where(FinanceCategory.parent_id == category.id)
            .values(parent_id=None)
        )
        self.session.execute(
            update(Transaction)
            .where(Transaction.category_id == category.id)
            .values(category_id=None)
        )
        self.session.delete(category)
        self.session.commit()

    def seed_defaults(self) -> int:
        existing = {
            (c.type, c.name.lower())
            for c in self.session.scalars(
                select(FinanceCategory).where(FinanceCategory.user_id == self.user_id)
            )
        }
        created = 0
        for name, type, icon, color, is_passive in DEFAULT_CATEGORIES:
            if (type, name.lower()) in existing:
                continue
            self.session.add(
                FinanceCategory(
                    user_id=self.user_id,
                    name=name,
                    type=type,
                    icon=icon,
                    color=color,
                    is_passive=is_passive,
                )
            )
            created += 1
        self.session.commit()
        return created


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _account(self, account_id: int) -> Account:
        return AccountService(self.session, self.user_id).get(account_id)

    def _check_category(
        self, category_id: Optional[int], transaction_type: TransactionType
    ) -> None:
        if category_id is None:
            return
        category = CategoryService(self.session, self.user_id).get(category_id)
        if transaction_type == TransactionType.transfer:
            raise ValueError("Transfers cannot have a category")
        if category.type.value != transaction_type.value:
            raise ValueError("Category type mismatch")

    @staticmethod
    def _ensure_funds(account: Account, amount: int) -> None:
        if account.account_type == AccountType.credit_card:
            return
        if account.current_balance < amount:
            raise InsufficientFundsError("Insufficient funds")

    def post(
        self,
        *,
        account_id: int,
        transaction_type: TransactionType,
        amount: int,
        transaction_date: date,
        category_id: Optional[int] = None,
        description: Optional[str] = None,
        notes: Optional[str] = None,
        transfer_direction: Optional[TransferDirection] = None,
        transfer_account_id: Optional[int] = None,
        recurring_transaction_id: Optional[int] = None,
        occurrence_date: Optional[date] = None,
    ) -> Transaction:
        """Write one transaction and apply it to the account balance (no commit)."""
        if amount <= 0:
            raise ValueError("Amount must be positive")
        account = self._account(account_id)
        self._check_category(category_id, transaction_type)
        txn = Transaction(
            user_id=self.user_id,
            account_id=account.id,
            category_id=category_id,
            transaction_type=transaction_type,
            amount=amount,
            currency_code=account.currency_code,
            description=description,
            notes=notes,
            transaction_date=transaction_date,
            transfer_direction=transfer_direction,
            transfer_account_id=transfer_account_id,
            recurring_transaction_id=recurring_transaction_id,
            occurrence_date=occurrence_date,
        )
        if txn.signed_amount < 0:
            self._ensure_funds(account, amount)
        self.session.add(txn)
        account.current_balance += txn.signed_amount
        self.session.flush()
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        if data.transaction_type == CategoryType.income:
            return self.record_income(data)
        return self.record_expense(data)

    def record_income(self, data: TransactionIn) -> Transaction:
        return self._record(data, TransactionType.income)

    def record_expense(self, data: TransactionIn) -> Transaction:
        return self._record(data, TransactionType.expense)

    def _record(self, data: TransactionIn, transaction_type: TransactionType) -> Transaction:
        txn = self.post(
            account_id=data.account_id,
            transaction_type=transaction_type,
            amount=data.amount,
            transaction_date=data.transaction_date,
            category_id=data.category_id,
            description=data.description,
            notes=data.notes,
        )
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def _transfer_accounts(self, from_id: int, to_id: int) -> tuple[Account, Account]:
        if from_id == to_id:
            raise InvalidTransferError("Cannot transfer to the same account")
        from_account = self.session.get(Account, from_id)
        to_account = self.session.get(Account, to_id)
        if from_account is None or from_account.is_deleted:
            raise NotFoundError("Account not found")
        if to_account is None or to_account.is_deleted:
            raise NotFoundError("Account not found")
        if from_account.user_id != self.user_id or to_account.user_id != self.user_id:
            raise InvalidTransferError("Transfers must be between your own accounts")
        return from_account, to_account

    def record_transfer(self, data: TransferIn) -> tuple[Transaction, Transaction]:
        from_account, to_account = self._transfer_accounts(
            data.from_account_id, data.to_account_id
        )
        converted = data.amount
        rate: Optional[Decimal] = None
        if from_account.currency_code != to_account.currency_code:
            fx = ExchangeRateService(self.session)
            rate = fx.get_rate(
                from_account.currency_code, to_account.currency_code, from_account.rate_source
            )
            if rate is None:
                raise ValueError(
                    f"Exchange rate not found for {from_account.currency_code} "
                    f"to {to_account.currency_code}"
                )
            converted = fx.convert(
                data.amount,
                from_account.currency_code,
                to_account.currency_code,
                from_account.rate_source,
            )
            if not converted:
                raise ValueError("Converted amount is too small")

        rate_note = f" (Rate: {rate:.4f})" if rate is not None else ""
        outgoing = self.post(
            account_id=from_account.id,
            transaction_type=TransactionType.transfer,
            amount=data.amount,
            transaction_date=data.transaction_date,
            description=(data.description or f"Transfer to {to_account.name}") + rate_note,
            notes=data.notes,
            transfer_direction=TransferDirection.outgoing,
            transfer_account_id=to_account.id,
        )
        incoming = self.post(
            account_id=to_account.id,
            transaction_type=TransactionType.transfer,
            amount=converted,
            transaction_date=data.transaction_date,
            description=(data.description or f"Transfer from {from_account.name}") + rate_note,
            notes=data.notes,
            transfer_direction=TransferDirection.incoming,
            transfer_account_id=from_account.id,
        )
        outgoing.transfer_transaction_id = incoming.id
        incoming.transfer_transaction_id = outgoing.id
        self.session.commit()
        return outgoing, incoming

    def conversion_preview(
        self, from_account_id: int, to_account_id: int, amount: int
    ) -> dict[str, object]:
        from_account, to_account = self._transfer_accounts(from_account_id, to_account_id)
        preview = ExchangeRateService(self.session).preview(
            amount,
            from_account.currency_code,
            to_account.currency_code,
            from_account.rate_source,
        )
        preview["rate_source"] = from_account.rate_source or "default"
        return preview

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.account))
            .where(Transaction.id == transaction_id, Transaction.user_id == self.user_id)
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalars(stmt).first()
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionUpdateIn) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)
        if txn.is_transfer:
            if {"amount", "account_id", "category_id"} & {
                k for k, v in changes.items() if v is not None
            }:
                raise InvalidTransferError(
                    "Transfer amount and accounts cannot be edited; delete and recreate it"
                )
            for field in ("transaction_date", "description", "notes"):
                if field in changes:
                    setattr(txn, field, changes[field])
            self.session.commit()
            return txn

        if "category_id" in changes:
            self._check_category(changes["category_id"], txn.transaction_type)
        new_account = (
            self._account(changes["account_id"])
            if changes.get("account_id")
            else txn.account
        )
        new_amount = changes.get("amount") or txn.amount

        old_account = txn.account
        old_account.current_balance -= txn.signed_amount
        if txn.transaction_type == TransactionType.expense:
            try:
                self._ensure_funds(new_account, new_amount)
            except InsufficientFundsError:
                old_account.current_balance += txn.signed_amount
                raise
        txn.account_id = new_account.id
        txn.account = new_account
        txn.currency_code = new_account.currency_code
        txn.amount = new_amount
        for field in ("category_id", "transaction_date", "description", "notes"):
            if field in changes:
                setattr(txn, field, changes[field])
        new_account.current_balance += txn.signed_amount
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def _legs(self, txn: Transaction) -> list[Transaction]:
        legs = [txn]
        if txn.is_transfer and txn.transfer_transaction_id:
            pair = self.session.get(Transaction, txn.transfer_transaction_id)
            if pair is not None:
                legs.append(pair)
        return legs

    def soft_delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        now = datetime.utcnow()
        for leg in self._legs(txn):
            if leg.deleted_at is not None:
                continue
            leg.deleted_at = now
            leg.account.current_balance -= leg.signed_amount
        self.session.commit()

    def restore(self, transaction_id: int) -> None:
        txn = self.get(transaction_id, include_deleted=True)
        if txn.deleted_at is None:
            return
        for leg in self._legs(txn):
            if leg.deleted_at is None:
                continue
            if leg.account.is_deleted:
                raise ValueError("Cannot restore a transaction of a deleted account")
            leg.deleted_at = None
            leg.account.current_balance += leg.signed_amount
        self.session.commit()

    def reconcile(self, transaction_id: int) -> Transaction:
        txn = self.get(transaction_id)
        if txn.is_reconciled:
            raise ValueError("Transaction already reconciled")
        txn.reconciled_at = datetime.utcnow()
        self.session.commit()
        return txn

    def _filtered(self, filters: Optional[TransactionFilters], period: Optional[Period]):
        stmt = select(Transaction).where(
            Transaction.user_id == self.user_id, Transaction.deleted_at.is_(None)
        )
        if period is not None:
            stmt = stmt.where(Transaction.transaction_date.between(period.start, period.end))
        if filters:
            if filters.account_id:
                stmt = stmt.where(Transaction.account_id == filters.account_id)
            if filters.category_id:
                stmt = stmt.where(Transaction.category_id == filters.category_id)
            if filters.transaction_type:
                stmt = stmt.where(Transaction.transaction_type == filters.transaction_type)
            if filters.query:
                pattern = f"%{filters.query.strip()}%"
                stmt = stmt.where(
                    or_(
                        Transaction.description.ilike(pattern),
                        Transaction.notes.ilike(pattern),
                    )
                )
            if filters.reconciled is True:
                stmt = stmt.where(Transaction.reconciled_at.is_not(None))
            elif filters.reconciled is False:
                stmt = stmt.where(Transaction.reconciled_at.is_(None))
        return stmt

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        period: Optional[Period] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        stmt = self._filtered(filters, period)
        total = self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        stmt = (
            stmt.options(joinedload(Transaction.category), joinedload(Transaction.account))
            .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.session.scalars(stmt).unique().all()), int(total)

    def all_for_period(
        self, period: Period, filters: Optional[TransactionFilters] = None
    ) -> list[Transaction]:
        stmt = (
            self._filtered(filters, period)
            .options(joinedload(Transaction.category), joinedload(Transaction.account))
            .order_by(Transaction.transaction_date, Transaction.id)
        )
        return list(self.session.scalars(stmt).unique().all())

    def bulk_update(self, transaction_ids: list[int], category_id: Optional[int]) -> int:
        category = (
            CategoryService(self.session, self.user_id).get(category_id)
            if category_id is not None
            else None
        )
        txns = self.session.scalars(
            select(Transaction).where(
                Transaction.id.in_(transaction_ids),
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
            )
        ).all()
        updated = 0
        for txn in txns:
            if txn.is_transfer:
                continue
            if category is not None and category.type.value != txn.transaction_type.value:
                continue
            txn.category_id = category_id
            updated += 1
        self.session.commit()
        return updated

    def deleted(self, limit: int = 200) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id, Transaction.deleted_at.is_not(None))
            .order_by(Transaction.deleted_at.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())


class RecurringTransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, rule_id: int) -> RecurringTransaction:
        rule = self.session.get(RecurringTransaction, rule_id)
        if not rule or rule.user_id != self.user_id or rule.is_deleted:
            raise NotFoundError("Recurring transaction not found")
        return rule

    def list(self, active_only: bool = False) -> list[RecurringTransaction]:
        stmt = (
            select(RecurringTransaction)
            .options(joinedload(RecurringTransaction.category))
            .where(
                RecurringTransaction.user_id == self.user_id,
                RecurringTransaction.deleted_at.is_(None),
            )
            .order_by(RecurringTransaction.next_run_date)
        )
        if active_only:
            stmt = stmt.where(RecurringTransaction.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def _validate(self, data: RecurringTransactionIn) -> Account:
        account = AccountService(self.session, self.user_id).get(data.account_id)
        if data.category_id is not None:
            category = CategoryService(self.session, self.user_id).get(data.category_id)
            if category.type != data.transaction_type:
                raise ValueError("Category type mismatch")
        return account

    def create(
        self, data: RecurringTransactionIn, today: Optional[date] = None
    ) -> RecurringTransaction:
        account = self._validate(data)
        rule = RecurringTransaction(
            user_id=self.user_id,
            currency_code=account.currency_code,
            is_active=True,
            **data.model_dump(),
        )
        reschedule(rule, align_to_anchor(rule, rule.start_date), today)
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def update(
        self, rule_id: int, data: RecurringTransactionIn, today: Optional[date] = None
    ) -> RecurringTransaction:
        rule = self.get(rule_id)
        account = self._validate(data)
        values = data.model_dump()
        schedule_changed = any(getattr(rule, f) != values[f] for f in SCHEDULE_FIELDS)
        for field, value in values.items():
            setattr(rule, field, value)
        rule.currency_code = account.currency_code
        if schedule_changed:
            reschedule(rule, align_to_anchor(rule, rule.start_date), today)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def pause(self, rule_id: int) -> RecurringTransaction:
        rule = self.get(rule_id)
        rule.is_active = False
        self.session.commit()
        return rule

    def resume(self, rule_id: int, today: Optional[date] = None) -> RecurringTransaction:
        rule = self.get(rule_id)
        rule.is_active = True
        reschedule(rule, rule.next_run_date, today)
        self.session.commit()
        return rule

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        rule.deleted_at = datetime.utcnow()
        rule.is_active = False
        self.session.commit()

    def preview(self, rule_id: int, count: int = 12) -> list[dict[str, object]]:
        rule = self.get(rule_id)
        return [
            {"date": d, "amount": rule.amount, "type": rule.transaction_type.value}
            for d in preview_dates(rule, count)
        ]

    def upcoming(self, days: int = 30, today: Optional[date] = None) -> list[RecurringTransaction]:
        today = today or local_today()
        stmt = (
            select(RecurringTransaction)
            .options(joinedload(RecurringTransaction.account))
            .where(RecurringTransaction.user_id == self.user_id, *upcoming_filter(today, days))
            .order_by(RecurringTransaction.next_run_date)
        )
        return list(self.session.scalars(stmt).all())

    def monthly_projection(self, currency: Optional[str] = None) -> dict[str, object]:
        user = self.session.get(User, self.user_id)
        target = (currency or default_currency_code(self.session, user)).upper()
        fx = ExchangeRateService(self.session)
        income = expense = passive = 0
        for rule in self.list(active_only=True):
            monthly = rule.monthly_amount
            if rule.currency_code != target:
                converted = fx.convert(
                    monthly, rule.currency_code, target, rule.account.rate_source
                )
                monthly = converted if converted is not None else monthly
            if rule.transaction_type == CategoryType.income:
                income += monthly
                if rule.category is not None and rule.category.is_passive:
                    passive += monthly
            else:
                expense += monthly
        return {
            "monthly_income": income,
            "monthly_expense": expense,
            "monthly_passive_income": passive,
            "monthly_net": income - expense,
            "passive_coverage": round(passive / expense * 100, 1) if expense > 0 else 0,
            "currency_code": target,
        }

    def process_due(self, today: Optional[date] = None) -> ProcessResult:
        result = RecurringEngine(self.session).process_due(today, user_id=self.user_id)
        self.session.commit()
        return result


def process_all_due(session: Session, today: Optional[date] = None) -> ProcessResult:
    result = RecurringEngine(session).process_due(today)
    session.commit()
    return result


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        return budget

    def list(self, active_only: bool = True) -> list[Budget]:
        stmt = select(Budget).where(Budget.user_id == self.user_id).order_by(Budget.start_date)
        if active_only:
            stmt = stmt.where(Budget.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def _apply(self, budget: Budget, data: BudgetIn) -> None:
        if data.category_id is not None:
            category = CategoryService(self.session, self.user_id).get(data.category_id)
            if category.type != CategoryType.expense:
                raise ValueError("Budgets can only track expense categories")
        if data.period_type == BudgetPeriod.custom:
            start, end = data.start_date, data.end_date
        else:
            start, end = budget_window(data.period_type, data.start_date)
        budget.name = data.name
        budget.category_id = data.category_id
        budget.period_type = data.period_type
        budget.allocated_amount = data.allocated_amount
        budget.currency_code = data.currency_code.upper()
        budget.start_date = start
        budget.end_date = end
        budget.rollover = data.rollover

    def create(self, data: BudgetIn) -> Budget:
        budget = Budget(user_id=self.user_id, spent_amount=0, is_active=True)
        self._apply(budget, data)
        self.session.add(budget)
        self.session.flush()
        self.track_spending(budget.id, commit=False)
        self.session.commit()
        return budget

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        budget = self.get(budget_id)
        self._apply(budget, data)
        self.track_spending(budget.id, commit=False)
        self.session.commit()
        return budget

    def delete(self, budget_id: int) -> None:
        self.session.delete(self.get(budget_id))
        self.session.commit()

    def track_spending(self, budget_id: int, commit: bool = True) -> int:
        budget = self.get(budget_id)
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.user_id == budget.user_id,
            Transaction.transaction_type == TransactionType.expense,
            Transaction.deleted_at.is_(None),
            Transaction.transaction_date.between(budget.start_date, budget.end_date),
        )
        if budget.category_id is not None:
            stmt = stmt.where(Transaction.category_id == budget.category_id)
        budget.spent_amount = int(self.session.scalar(stmt) or 0)
        if commit:
            self.session.commit()
        return budget.spent_amount

    def variance(self, budget_id: int) -> dict[str, object]:
        budget = self.get(budget_id)
        percent = budget.spent_percent
        if percent >= 100:
            status = "over_budget"
        elif percent >= 80:
            status = "warning"
        else:
            status = "on_track"
        return {
            "variance": budget.variance,
            "spent_percent": round(percent, 2),
            "remaining": budget.allocated_amount - budget.spent_amount,
            "status": status,
            "is_over_budget": budget.is_over_budget,
        }

    def alert_level(self, budget_id: int) -> Optional[str]:
        percent = self.get(budget_id).spent_percent
        if percent >= 100:
            return "critical"
        if percent >= 80:
            return "warning"
        return None

    def renew_expired(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        expired = self.session.scalars(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.is_active.is_(True),
                Budget.period_type != BudgetPeriod.custom,
                Budget.end_date < today,
            )
        ).all()
        for budget in expired:
            carry = 0
            if budget.rollover:
                carry = max(budget.allocated_amount - budget.spent_amount, 0)
            budget.start_date, budget.end_date = budget_window(budget.period_type, today)
            budget.allocated_amount += carry
            budget.spent_amount = 0
            self.track_spending(budget.id, commit=False)
        self.session.commit()
        return len(expired)


class SavingsGoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, goal_id: int) -> SavingsGoal:
        goal = self.session.get(SavingsGoal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise NotFoundError("Savings goal not found")
        return goal

    def list(self) -> list[SavingsGoal]:
        stmt = (
            select(SavingsGoal)
            .where(SavingsGoal.user_id == self.user_id)
            .order_by(SavingsGoal.target_date.is_(None), SavingsGoal.target_date)
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: SavingsGoalIn) -> SavingsGoal:
        if data.target_account_id is not None:
            AccountService(self.session, self.user_id).get(data.target_account_id)
        goal = SavingsGoal(
            user_id=self.user_id,
            **data.model_dump(exclude={"currency_code"}),
            currency_code=data.currency_code.upper(),
            current_amount=0,
            status=SavingsGoalStatus.active,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: SavingsGoalIn) -> SavingsGoal:
        goal = self.get(goal_id)
        for field, value in data.model_dump(exclude={"currency_code"}).items():
            setattr(goal, field, value)
        goal.currency_code = data.currency_code.upper()
        self._sync_status(goal)
        self.session.commit()
        return goal

    def add_contribution(
        self, goal_id: int, data: SavingsContributionIn
    ) -> SavingsContribution:
        goal = self.get(goal_id)
        if data.transaction_id is not None:
            TransactionService(self.session, self.user_id).get(data.transaction_id)
        contribution = SavingsContribution(
            savings_goal_id=goal.id,
            transaction_id=data.transaction_id,
            amount=abs(data.amount),
            currency_code=goal.currency_code,
            contribution_date=data.contribution_date,
            notes=data.notes,
            type="linked" if data.transaction_id else "manual",
        )
        goal.contributions.append(contribution)
        self.recalculate_progress(goal.id, commit=False)
        self._sync_status(goal)
        self.session.commit()
        return contribution

    def withdraw(self, goal_id: int, data: SavingsContributionIn) -> SavingsContribution:
        goal = self.get(goal_id)
        amount = abs(data.amount)
        if amount > goal.current_amount:
            raise ValueError("Withdrawal amount exceeds current savings")
        contribution = SavingsContribution(
            savings_goal_id=goal.id,
            transaction_id=data.transaction_id,
            amount=-amount,
            currency_code=goal.currency_code,
            contribution_date=data.contribution_date,
            notes=data.notes,
            type="linked" if data.transaction_id else "manual",
        )
        goal.contributions.append(contribution)
        self.recalculate_progress(goal.id, commit=False)
        self._sync_status(goal)
        self.session.commit()
        return contribution

    def link_transaction(self, goal_id: int, transaction_id: int) -> SavingsContribution:
        txn = TransactionService(self.session, self.user_id).get(transaction_id)
        return self.add_contribution(
            goal_id,
            SavingsContributionIn(
                amount=txn.amount,
                contribution_date=txn.transaction_date,
                transaction_id=txn.id,
                notes=f"Linked from transaction: {txn.description or txn.id}",
            ),
        )

    def remove_contribution(self, goal_id: int, contribution_id: int) -> None:
        goal = self.get(goal_id)
        contribution = self.session.get(SavingsContribution, contribution_id)
        if contribution is None or contribution.savings_goal_id != goal.id:
            raise NotFoundError("Contribution not found")
        goal.contributions.remove(contribution)
        self.recalculate_progress(goal.id, commit=False)
        self._sync_status(goal)
        self.session.commit()

    def recalculate_progress(self, goal_id: int, commit: bool = True) -> int:
        goal = self.get(goal_id)
        self.session.flush()
        total = self.session.scalar(
            select(func.coalesce(func.sum(SavingsContribution.amount), 0)).where(
                SavingsContribution.savings_goal_id == goal.id
            )
        )
        goal.current_amount = max(int(total or 0), 0)
        if commit:
            self.session.commit()
        return goal.current_amount

    @staticmethod
    def _sync_status(goal: SavingsGoal) -> None:
        if goal.status == SavingsGoalStatus.active and goal.has_reached_target:
            goal.status = SavingsGoalStatus.completed
            goal.completed_at = datetime.utcnow()
        elif goal.status == SavingsGoalStatus.completed and not goal.has_reached_target:
            goal.status = SavingsGoalStatus.active
            goal.completed_at = None

    def set_status(self, goal_id: int, status: SavingsGoalStatus) -> SavingsGoal:
        goal = self.get(goal_id)
        if status == SavingsGoalStatus.completed:
            raise ValueError("Goals complete automatically when the target is reached")
        goal.status = status
        self._sync_status(goal)
        self.session.commit()
        return goal

    def delete(self, goal_id: int) -> None:
        self.session.delete(self.get(goal_id))
        self.session.commit()


class ReportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.fx = ExchangeRateService(session)

    def _target(self, currency: Optional[str]) -> str:
        user = self.session.get(User, self.user_id)
        return (currency or default_currency_code(self.session, user)).upper()

    def _converted(self, txn: Transaction, target: str) -> int:
        converted = self.fx.convert(
            txn.amount, txn.currency_code, target, txn.account.rate_source
        )
        if converted is None:
            logger.warning(
                f"report_unconverted: transaction_id={txn.id} "
                f"from={txn.currency_code} to={target}"
            )
            return txn.amount
        return converted

    def summary(self, period: Period, currency: Optional[str] = None) -> dict[str, object]:
        target = self._target(currency)
        txns = TransactionService(self.session, self.user_id).all_for_period(period)
        income = expense = 0
        by_category: dict[tuple[str, str], int] = {}
        for txn in txns:
            if txn.is_transfer:
                continue
            amount = self._converted(txn, target)
            if txn.transaction_type == TransactionType.income:
                income += amount
            else:
                expense += amount
            key = (txn.transaction_type.value, txn.category.name if txn.category else "Uncategorized")
            by_category[key] = by_category.get(key, 0) + amount

        def breakdown(kind: str, total: int) -> list[dict[str, object]]:
            items = sorted(
                ((name, amount) for (t, name), amount in by_category.items() if t == kind),
                key=lambda item: item[1],
                reverse=True,
            )
            return [
                {
                    "name": name,
                    "amount": amount,
                    "percent": round(amount / total * 100, 2) if total else 0,
                }
                for name, amount in items
            ]

        return {
            "period": {"slug": period.slug, "start": period.start, "end": period.end},
            "currency_code": target,
            "income": income,
            "expense": expense,
            "net": income - expense,
            "income_by_category": breakdown("income", income),
            "expense_by_category": breakdown("expense", expense),
        }

    def cashflow(
        self, months: int = 6, currency: Optional[str] = None, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        today = today or local_today()
        target = self._target(currency)
        first = shift_month(today, -(months - 1))
        period = Period("cashflow", first, month_end(today))
        series: dict[str, dict[str, int]] = {}
        for offset in range(months):
            key = shift_month(first, offset).strftime("%Y-%m")
            series[key] = {"income": 0, "expense": 0}
        for txn in TransactionService(self.session, self.user_id).all_for_period(period):
            if txn.is_transfer:
                continue
            bucket = series.get(txn.transaction_date.strftime("%Y-%m"))
            if bucket is None:
                continue
            bucket[txn.transaction_type.value] += self._converted(txn, target)
        return [
            {
                "month": key,
                "income": values["income"],
                "expense": values["expense"],
                "net": values["income"] - values["expense"],
            }
            for key, values in series.items()
        ]


LIABILITY_TYPES = (AccountType.credit_card, AccountType.loan)


class DashboardService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.fx = ExchangeRateService(session)

    def _to_target(self, amount: int, account: Account, target: str) -> int:
        converted = self.fx.convert(amount, account.currency_code, target, account.rate_source)
        return amount if converted is None else converted

    def summary(self, currency: Optional[str] = None) -> dict[str, object]:
        user = self.session.get(User, self.user_id)
        target = (currency or default_currency_code(self.session, user)).upper()
        accounts = AccountService(self.session, self.user_id).list(include_inactive=False)
        assets = liabilities = balance = 0
        for account in accounts:
            if account.account_type in LIABILITY_TYPES:
                owed = account.initial_balance - account.current_balance
                if owed > 0:
                    liabilities += self._to_target(owed, account, target)
                continue
            if account.exclude_from_total:
                continue
            if account.current_balance > 0:
                assets += self._to_target(account.current_balance, account, target)
        for account in accounts:
            if not account.exclude_from_total:
                balance += self._to_target(account.current_balance, account, target)
        return {
            "total_assets": assets,
            "total_liabilities": liabilities,
            "net_worth": assets - liabilities,
            "total_balance": balance,
            "currency_code": target,
            "accounts_count": len(accounts),
        }

    def spending_trend(
        self, days: int = 30, currency: Optional[str] = None, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        today = today or local_today()
        user = self.session.get(User, self.user_id)
        target = (currency or default_currency_code(self.session, user)).upper()
        period = Period("trend", today - timedelta(days=days), today)
        daily: dict[date, int] = {}
        for txn in TransactionService(self.session, self.user_id).all_for_period(
            period, TransactionFilters(transaction_type=TransactionType.expense)
        ):
            amount = self._to_target(txn.amount, txn.account, target)
            daily[txn.transaction_date] = daily.get(txn.transaction_date, 0) + amount
        return [{"date": day, "amount": daily[day]} for day in sorted(daily)]

    def overview(
        self, currency: Optional[str] = None, today: Optional[date] = None
    ) -> dict[str, object]:
        """Everything the finance landing page shows, in one payload."""
        today = today or local_today()
        recent, _ = TransactionService(self.session, self.user_id).list(limit=10)
        budgets = [
            budget
            for budget in BudgetService(self.session, self.user_id).list(active_only=True)
            if budget.start_date <= today <= budget.end_date
        ]
        budgets.sort(key=lambda budget: budget.allocated_amount, reverse=True)
        recurring = RecurringTransactionService(self.session, self.user_id)
        return {
            "summary": self.summary(currency),
            "recent_transactions": recent,
            "budgets": budgets,
            "spending_trend": self.spending_trend(currency=currency, today=today),
            "recurring_projection": recurring.monthly_projection(currency),
            "upcoming_recurring": recurring.upcoming(7, today)[:5],
        }


class CSVService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _match_category(self, name: str, type: CategoryType) -> Optional[int]:
        if not name:
            return None
        categories = CategoryService(self.session, self.user_id).list_all(type)
        wanted = name.strip().lower()
        for category in categories:
            if category.name.lower() == wanted:
                return category.id
        best_distance: Optional[int] = None
        best: list[FinanceCategory] = []
        for category in categories:
            dist = int(Levenshtein.distance(wanted, category.name.lower()))
            if best_distance is None or dist < best_distance:
                best_distance, best = dist, [category]
            elif dist == best_distance:
                best.append(category)
        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(sorted(c.name for c in best))
                raise ValueError(f"Category '{name}' is ambiguous; matches: {options}")
            return best[0].id
        created = CategoryService(self.session, self.user_id).create(
            FinanceCategoryIn(name=name.strip(), type=type)
        )
        return created.id

    def _is_duplicate(
        self, account_id: int, txn_type: TransactionType, amount: int, on: date, desc: Optional[str]
    ) -> bool:
        stmt = (
            select(Transaction.id)
            .where(
                Transaction.account_id == account_id,
                Transaction.transaction_type == txn_type,
                Transaction.amount == amount,
                Transaction.transaction_date == on,
                Transaction.deleted_at.is_(None),
            )
            .limit(1)
        )
        if desc is None:
            stmt = stmt.where(Transaction.description.is_(None))
        else:
            stmt = stmt.where(Transaction.description == desc)
        return self.session.execute(stmt).first() is not None

    def import_csv(self, content: str, account_id: int) -> dict[str, object]:
        account = AccountService(self.session, self.user_id).get(account_id)
        places = decimal_places(account.currency_code, self.session)
        rows, errors = parse_csv(content)
        summary = {"imported": 0, "skipped": 0, "failed": len(errors), "errors": list(errors)}
        txn_service = TransactionService(self.session, self.user_id)
        for row_number, row in rows:
            txn_type = TransactionType(row.type.value)
            amount = to_minor(row.amount, places)
            try:
                if self._is_duplicate(account.id, txn_type, amount, row.date, row.description):
                    summary["skipped"] += 1
                    continue
                category_id = self._match_category(row.category, row.type)
                txn_service.post(
                    account_id=account.id,
                    transaction_type=txn_type,
                    amount=amount,
                    transaction_date=row.date,
                    category_id=category_id,
                    description=row.description,
                )
            except ValueError as exc:
                summary["failed"] += 1
                summary["errors"].append(f"Row {row_number}: {exc}")
                continue
            summary["imported"] += 1
        self.session.commit()
        logger.info(
            f"csv_import: account_id={account.id} imported={summary['imported']} "
            f"skipped={summary['skipped']} failed={summary['failed']}"
        )
        return summary

    def export(self, period: Period, filters: Optional[TransactionFilters] = None) -> str:
        txns = TransactionService(self.session, self.user_id).all_for_period(period, filters)
        places = {
            code: digits
            for code, digits in self.session.execute(
                select(Currency.code, Currency.decimal_places)
            )
        }
        return export_transactions(txns, places)
