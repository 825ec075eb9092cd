import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    Account,
    CategoryType,
    Frequency,
    RecurringTransaction,
    Transaction,
    TransactionType,
)


logger = logging.getLogger(__name__)

MAX_CATCH_UP = 366


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(desired_day, days_in_month(year, month)))


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, days_in_month(year, month)))


def _anchor_day(rule: RecurringTransaction) -> int:
    return rule.day_of_month or rule.start_date.day


def _python_weekday(day_of_week: int) -> int:
    # stored with Sunday = 0; date.weekday() has Monday = 0
    return (day_of_week - 1) % 7


def align_to_anchor(rule: RecurringTransaction, candidate: date) -> date:
    """First date on or after ``candidate`` that matches the rule's anchor."""
    if rule.frequency == Frequency.weekly and rule.day_of_week is not None:
        offset = (_python_weekday(rule.day_of_week) - candidate.weekday()) % 7
        return candidate + timedelta(days=offset)
    if rule.frequency == Frequency.monthly:
        aligned = _clamped(candidate.year, candidate.month, _anchor_day(rule))
        if aligned < candidate:
            aligned = _add_months(aligned, 1, desired_day=_anchor_day(rule))
        return aligned
    if rule.frequency == Frequency.yearly:
        month = rule.month_of_year or rule.start_date.month
        aligned = _clamped(candidate.year, month, _anchor_day(rule))
        if aligned < candidate:
            aligned = _clamped(candidate.year + 1, month, _anchor_day(rule))
        return aligned
    return candidate


def calculate_next_date(rule: RecurringTransaction, from_date: date) -> date:
    if rule.frequency == Frequency.daily:
        return from_date + timedelta(days=1)
    if rule.frequency == Frequency.weekly:
        return from_date + timedelta(weeks=1)
    if rule.frequency == Frequency.monthly:
        return _add_months(from_date, 1, desired_day=_anchor_day(rule))
    month = rule.month_of_year or from_date.month
    return _clamped(from_date.year + 1, month, _anchor_day(rule))


def _advance(rule: RecurringTransaction, next_date: date, today: date) -> date:
    while next_date < today:
        following = calculate_next_date(rule, next_date)
        if rule.end_date and following > rule.end_date:
            break
        next_date = following
    return next_date


def reschedule(
    rule: RecurringTransaction, base: date, today: Optional[date] = None
) -> RecurringTransaction:
    """Move ``next_run_date`` to the first occurrence on or after ``today``.

    A rule with no occurrence left before ``end_date`` is deactivated and its
    ``next_run_date`` stays within ``end_date``.
    """
    today = today or local_today()
    next_date = _advance(rule, base, today)
    if rule.end_date and (next_date < today or next_date > rule.end_date):
        rule.is_active = False
        next_date = min(next_date, rule.end_date)
    rule.next_run_date = next_date
    return rule


def preview_dates(
    rule: RecurringTransaction, count: int = 12, start: Optional[date] = None
) -> list[date]:
    dates: list[date] = []
    current = start or rule.next_run_date
    while len(dates) < count:
        if rule.end_date and current > rule.end_date:
            break
        dates.append(current)
        current = calculate_next_date(rule, current)
    return dates


@dataclass
class ProcessResult:
    processed: int = 0
    created: int = 0
    skipped: int = 0
    errors: dict[int, str] = field(default_factory=dict)


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def due_rules(
        self, today: date, user_id: Optional[int] = None
    ) -> list[RecurringTransaction]:
        stmt = (
            select(RecurringTransaction)
            .where(
                RecurringTransaction.is_active.is_(True),
                RecurringTransaction.auto_create.is_(True),
                RecurringTransaction.deleted_at.is_(None),
                RecurringTransaction.next_run_date <= today,
            )
            .order_by(RecurringTransaction.next_run_date, RecurringTransaction.id)
        )
        if user_id is not None:
            stmt = stmt.where(RecurringTransaction.user_id == user_id)
        return list(self.session.scalars(stmt).all())

    def process_due(
        self, today: Optional[date] = None, user_id: Optional[int] = None
    ) -> ProcessResult:
        today = today or local_today()
        result = ProcessResult()
        for rule in self.due_rules(today, user_id):
            account = self.session.get(Account, rule.account_id)
            if account is None or account.is_deleted:
                result.skipped += 1
                logger.warning(
                    f"recurring_skipped: rule_id={rule.id} reason=account_unavailable"
                )
                continue
            rule_id = rule.id
            try:
                with self.session.begin_nested():
                    created = self.catch_up_rule(rule, today)
            except (ValueError, SQLAlchemyError) as exc:
                result.errors[rule_id] = str(exc)
                logger.warning(f"recurring_failed: rule_id={rule_id} error={exc}")
                continue
            result.processed += 1
            result.created += created
            logger.info(f"recurring_processed: rule_id={rule_id} created={created}")
        return result

    def catch_up_rule(self, rule: RecurringTransaction, today: Optional[date] = None) -> int:
        today = today or local_today()
        created = 0
        iterations = 0
        while rule.next_run_date <= today and iterations < MAX_CATCH_UP:
            occurrence_date = rule.next_run_date
            if rule.end_date and occurrence_date > rule.end_date:
                rule.is_active = False
                break
            if self._post_occurrence(rule, occurrence_date):
                created += 1
            rule.last_run_date = occurrence_date
            next_date = calculate_next_date(rule, occurrence_date)
            if rule.end_date and next_date > rule.end_date:
                rule.is_active = False
                break
            rule.next_run_date = next_date
            iterations += 1
        self.session.flush()
        return created

    def _post_occurrence(self, rule: RecurringTransaction, occurrence_date: date) -> bool:
        from services import TransactionService

        exists_stmt = (
            select(Transaction.id)
            .where(
                Transaction.recurring_transaction_id == rule.id,
                Transaction.occurrence_date == occurrence_date,
            )
            .limit(1)
        )
        if self.session.execute(exists_stmt).scalar_one_or_none():
            return False

        txn_type = (
            TransactionType.income
            if rule.transaction_type == CategoryType.income
            else TransactionType.expense
        )
        TransactionService(self.session, rule.user_id).post(
            account_id=rule.account_id,
            transaction_type=txn_type,
            amount=rule.amount,
            transaction_date=occurrence_date,
            category_id=rule.category_id,
            description=rule.name,
            notes=rule.description,
            recurring_transaction_id=rule.id,
            occurrence_date=occurrence_date,
        )
        return True


def upcoming_filter(today: date, days: int):
    horizon = today + timedelta(days=days)
    return (
        RecurringTransaction.is_active.is_(True),
        RecurringTransaction.deleted_at.is_(None),
        RecurringTransaction.next_run_date <= horizon,
        or_(
            RecurringTransaction.end_date.is_(None),
            RecurringTransaction.end_date >= today,
        ),
    )
