from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from errors import NotFoundError
from fx_rates import ExchangeRateService
from models import (
    Currency,
    FinancialPlan,
    PlanItem,
    PlanPeriod,
    PlanStatus,
    TransactionType,
)
from periods import Period
from schemas import FinancialPlanIn, PlanItemIn, PlanPeriodIn
from services import CategoryService, TransactionService


logger = logging.getLogger(__name__)


@dataclass
class PeriodChange:
    plan_id: int
    year: int
    income_before: int
    income_after: int
    expense_before: int
    expense_after: int


def _variance_percent(actual: int, planned: int) -> float:
    if planned <= 0:
        return 0
    return round((actual - planned) / planned * 100, 1)


def _recalculate(periods: list[PlanPeriod]) -> list[PeriodChange]:
    changes: list[PeriodChange] = []
    for period in periods:
        income, expense = period.planned_income, period.planned_expense
        period.recalculate_totals()
        if (income, expense) != (period.planned_income, period.planned_expense):
            changes.append(
                PeriodChange(
                    plan_id=period.plan_id,
                    year=period.year,
                    income_before=income,
                    income_after=period.planned_income,
                    expense_before=expense,
                    expense_after=period.planned_expense,
                )
            )
    return changes


def recalculate_all_plans(session: Session) -> tuple[int, list[PeriodChange]]:
    """Recompute every plan period's totals from its items' yearly amounts."""
    periods = list(
        session.scalars(
            select(PlanPeriod).options(selectinload(PlanPeriod.items)).order_by(PlanPeriod.id)
        ).all()
    )
    changes = _recalculate(periods)
    session.commit()
    logger.info(f"plans_recalculated: periods={len(periods)} changed={len(changes)}")
    return len(periods), changes


class FinancialPlanService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, plan_id: int) -> FinancialPlan:
        plan = self.session.get(FinancialPlan, plan_id)
        if plan is None or plan.user_id != self.user_id:
            raise NotFoundError("Financial plan not found")
        return plan

    def list(self, status: Optional[PlanStatus] = None) -> list[FinancialPlan]:
        stmt = (
            select(FinancialPlan)
            .options(selectinload(FinancialPlan.periods))
            .where(FinancialPlan.user_id == self.user_id)
            .order_by(FinancialPlan.start_year.desc(), FinancialPlan.id.desc())
        )
        if status is not None:
            stmt = stmt.where(FinancialPlan.status == status)
        return list(self.session.scalars(stmt).all())

    def _check_currency(self, code: str) -> str:
        code = code.upper()
        if self.session.get(Currency, code) is None:
            raise ValueError(f"Unknown currency {code}")
        return code

    def _apply_item(self, item: PlanItem, data: PlanItemIn) -> None:
        if data.category_id is not None:
            category = CategoryService(self.session, self.user_id).get(data.category_id)
            if category.type != data.type:
                raise ValueError("Category type must match the item type")
        item.name = data.name
        item.type = data.type
        item.planned_amount = data.planned_amount
        item.recurrence = data.recurrence
        item.category_id = data.category_id
        item.notes = data.notes

    def _sync_items(self, period: PlanPeriod, items: list[PlanItemIn]) -> None:
        existing = {item.id: item for item in period.items}
        kept: list[PlanItem] = []
        for data in items:
            if data.id is None:
                item = PlanItem()
            elif data.id in existing:
                item = existing[data.id]
            else:
                raise NotFoundError("Plan item not found")
            self._apply_item(item, data)
            kept.append(item)
        period.items = kept
        period.recalculate_totals()

    def _sync_periods(self, plan: FinancialPlan, periods: list[PlanPeriodIn]) -> None:
        existing = {period.id: period for period in plan.periods}
        kept: list[PlanPeriod] = []
        for data in periods:
            if data.id is None:
                period = PlanPeriod(planned_income=0, planned_expense=0)
            elif data.id in existing:
                period = existing[data.id]
            else:
                raise NotFoundError("Plan period not found")
            period.year = data.year
            period.notes = data.notes
            self._sync_items(period, data.items)
            kept.append(period)
        plan.periods = kept

    def create(self, data: FinancialPlanIn) -> FinancialPlan:
        plan = FinancialPlan(
            user_id=self.user_id,
            name=data.name,
            description=data.description,
            start_year=data.start_year,
            end_year=data.end_year,
            currency_code=self._check_currency(data.currency_code),
            status=data.status,
        )
        self._sync_periods(plan, data.periods)
        self.session.add(plan)
        self.session.commit()
        logger.info(f"plan_created: plan_id={plan.id} periods={len(plan.periods)}")
        return plan

    def update(self, plan_id: int, data: FinancialPlanIn) -> FinancialPlan:
        plan = self.get(plan_id)
        plan.name = data.name
        plan.description = data.description
        plan.start_year = data.start_year
        plan.end_year = data.end_year
        plan.currency_code = self._check_currency(data.currency_code)
        plan.status = data.status
        self._sync_periods(plan, data.periods)
        self.session.commit()
        return plan

    def delete(self, plan_id: int) -> None:
        self.session.delete(self.get(plan_id))
        self.session.commit()

    def recalculate_totals(self, plan_id: int) -> list[PeriodChange]:
        changes = _recalculate(self.get(plan_id).periods)
        self.session.commit()
        return changes

    def compare(self, plan_id: int) -> list[dict[str, object]]:
        """Planned against actual income and expense for each year of the plan."""
        plan = self.get(plan_id)
        fx = ExchangeRateService(self.session)
        txn_service = TransactionService(self.session, self.user_id)
        comparison: list[dict[str, object]] = []
        for period in plan.periods:
            window = Period(str(period.year), date(period.year, 1, 1), date(period.year, 12, 31))
            actual = {TransactionType.income: 0, TransactionType.expense: 0}
            for txn in txn_service.all_for_period(window):
                if txn.is_transfer:
                    continue
                amount = fx.convert(
                    txn.amount, txn.currency_code, plan.currency_code, txn.account.rate_source
                )
                if amount is None:
                    logger.warning(
                        f"plan_compare_unconverted: transaction_id={txn.id} "
                        f"from={txn.currency_code} to={plan.currency_code}"
                    )
                    amount = txn.amount
                actual[txn.transaction_type] += amount
            income, expense = actual[TransactionType.income], actual[TransactionType.expense]
            comparison.append(
                {
                    "year": period.year,
                    "planned_income": period.planned_income,
                    "planned_expense": period.planned_expense,
                    "actual_income": income,
                    "actual_expense": expense,
                    "income_variance": income - period.planned_income,
                    "expense_variance": expense - period.planned_expense,
                    "income_variance_percent": _variance_percent(income, period.planned_income),
                    "expense_variance_percent": _variance_percent(
                        expense, period.planned_expense
                    ),
                    "planned_net": period.planned_net,
                    "actual_net": income - expense,
                }
            )
        return comparison
