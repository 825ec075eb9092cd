from contextlib import contextmanager
from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from typer.testing import CliRunner

import cli
from database import Base
from errors import NotFoundError
from models import CategoryType, PlanRecurrence, User
from plans import FinancialPlanService, recalculate_all_plans
from schemas import (
    AccountIn,
    FinanceCategoryIn,
    FinancialPlanIn,
    PlanItemIn,
    PlanPeriodIn,
    TransactionIn,
    TransferIn,
)
from services import AccountService, CategoryService, TransactionService, seed_currencies


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _user(session: Session, email: str = "owner@example.com") -> User:
    user = User(name="Owner", email=email, password_hash="x")
    session.add(user)
    session.commit()
    return user


def _plan_in(**overrides) -> FinancialPlanIn:
    data = {
        "name": "Five year plan",
        "start_year": 2024,
        "end_year": 2025,
        "currency_code": "USD",
        "periods": [
            PlanPeriodIn(
                year=2024,
                items=[
                    PlanItemIn(name="Salary", type=CategoryType.income, planned_amount=500_000),
                    PlanItemIn(
                        name="Insurance",
                        type=CategoryType.expense,
                        planned_amount=30_000,
                        recurrence=PlanRecurrence.quarterly,
                    ),
                    PlanItemIn(
                        name="Laptop",
                        type=CategoryType.expense,
                        planned_amount=200_000,
                        recurrence=PlanRecurrence.one_time,
                    ),
                ],
            ),
            PlanPeriodIn(year=2025),
        ],
    }
    data.update(overrides)
    return FinancialPlanIn(**data)


def test_period_totals_roll_up_item_recurrence():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        plan = FinancialPlanService(session, user.id).create(_plan_in())

        first, second = plan.periods
        assert first.year == 2024
        assert first.planned_income == 6_000_000
        assert first.planned_expense == 120_000 + 200_000
        assert first.planned_net == 6_000_000 - 320_000
        assert second.planned_income == second.planned_expense == 0
        assert plan.year_span == 2
        assert plan.total_planned_income == 6_000_000
        assert plan.planned_net == 5_680_000


def test_plan_years_are_validated():
    with pytest.raises(ValidationError):
        _plan_in(start_year=2025, end_year=2024, periods=[PlanPeriodIn(year=2025)])
    with pytest.raises(ValidationError):
        _plan_in(periods=[PlanPeriodIn(year=2026)])
    with pytest.raises(ValidationError):
        _plan_in(periods=[PlanPeriodIn(year=2024), PlanPeriodIn(year=2024)])
    with pytest.raises(ValidationError):
        _plan_in(periods=[])
    with pytest.raises(ValidationError):
        _plan_in(start_year=1999, periods=[PlanPeriodIn(year=2000)])


def test_unknown_currency_and_mismatched_category_are_rejected():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        service = FinancialPlanService(session, user.id)
        food = CategoryService(session, user.id).create(
            FinanceCategoryIn(name="Food", type=CategoryType.expense)
        )

        with pytest.raises(ValueError):
            service.create(_plan_in(currency_code="XYZ"))
        session.rollback()
        bad_item = PlanItemIn(
            name="Salary", type=CategoryType.income, planned_amount=1, category_id=food.id
        )
        with pytest.raises(ValueError):
            service.create(_plan_in(periods=[PlanPeriodIn(year=2024, items=[bad_item])]))


def test_update_syncs_periods_and_items_by_id():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        service = FinancialPlanService(session, user.id)
        plan = service.create(_plan_in())
        first = plan.periods[0]
        salary = first.items[0]

        updated = service.update(
            plan.id,
            _plan_in(
                name="Revised",
                status="active",
                periods=[
                    PlanPeriodIn(
                        id=first.id,
                        year=2024,
                        items=[
                            PlanItemIn(
                                id=salary.id,
                                name="Salary",
                                type=CategoryType.income,
                                planned_amount=600_000,
                            ),
                            PlanItemIn(
                                name="Gym",
                                type=CategoryType.expense,
                                planned_amount=5_000,
                            ),
                        ],
                    )
                ],
            ),
        )

        assert updated.name == "Revised"
        assert [period.year for period in updated.periods] == [2024]
        assert updated.periods[0].id == first.id
        assert {item.name for item in updated.periods[0].items} == {"Salary", "Gym"}
        assert updated.periods[0].items[0].id == salary.id
        assert updated.periods[0].planned_income == 7_200_000
        assert updated.periods[0].planned_expense == 60_000


def test_update_with_foreign_period_id_is_not_found():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        service = FinancialPlanService(session, user.id)
        plan = service.create(_plan_in())

        with pytest.raises(NotFoundError):
            service.update(plan.id, _plan_in(periods=[PlanPeriodIn(id=9_999, year=2024)]))


def test_plans_are_private_and_deletable():
    with _session() as session:
        seed_currencies(session, "USD")
        owner = _user(session)
        other = _user(session, "other@example.com")
        plan = FinancialPlanService(session, owner.id).create(_plan_in())

        with pytest.raises(NotFoundError):
            FinancialPlanService(session, other.id).get(plan.id)
        assert FinancialPlanService(session, other.id).list() == []

        FinancialPlanService(session, owner.id).delete(plan.id)
        assert FinancialPlanService(session, owner.id).list() == []


def test_list_filters_by_status():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        service = FinancialPlanService(session, user.id)
        service.create(_plan_in(name="Draft"))
        service.create(_plan_in(name="Live", status="active"))

        assert [plan.name for plan in service.list("active")] == ["Live"]
        assert len(service.list()) == 2


def test_compare_uses_actual_income_and_expense_for_each_year():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        accounts = AccountService(session, user.id)
        checking = accounts.create(
            AccountIn(name="Checking", account_type="bank", currency_code="USD")
        )
        savings = accounts.create(
            AccountIn(name="Wallet", account_type="cash", currency_code="USD")
        )
        txns = TransactionService(session, user.id)
        txns.create(
            TransactionIn(
                account_id=checking.id,
                transaction_type="income",
                amount=6_600_000,
                transaction_date=date(2024, 3, 1),
            )
        )
        txns.create(
            TransactionIn(
                account_id=checking.id,
                transaction_type="expense",
                amount=160_000,
                transaction_date=date(2024, 6, 1),
            )
        )
        dropped = txns.create(
            TransactionIn(
                account_id=checking.id,
                transaction_type="expense",
                amount=1_000,
                transaction_date=date(2024, 6, 2),
            )
        )
        txns.soft_delete(dropped.id)
        txns.record_transfer(
            TransferIn(
                from_account_id=checking.id,
                to_account_id=savings.id,
                amount=100_000,
                transaction_date=date(2024, 7, 1),
            )
        )
        plan = FinancialPlanService(session, user.id).create(_plan_in())

        rows = FinancialPlanService(session, user.id).compare(plan.id)

        assert [row["year"] for row in rows] == [2024, 2025]
        this_year = rows[0]
        assert this_year["actual_income"] == 6_600_000
        assert this_year["actual_expense"] == 160_000
        assert this_year["income_variance"] == 600_000
        assert this_year["income_variance_percent"] == 10.0
        assert this_year["expense_variance_percent"] == -50.0
        assert this_year["actual_net"] == 6_440_000
        assert rows[1]["income_variance_percent"] == 0


def test_recalculate_reports_periods_whose_totals_drifted():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        plan = FinancialPlanService(session, user.id).create(_plan_in())
        plan.periods[0].planned_income = 1
        session.commit()

        total, changes = recalculate_all_plans(session)

        assert total == 2
        assert len(changes) == 1
        assert changes[0].year == 2024
        assert changes[0].income_before == 1
        assert changes[0].income_after == 6_000_000
        assert FinancialPlanService(session, user.id).recalculate_totals(plan.id) == []


def test_recalculate_plans_command(monkeypatch):
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        plan = FinancialPlanService(session, user.id).create(_plan_in())
        plan.periods[0].planned_expense = 0
        session.commit()

        @contextmanager
        def fake_scope():
            yield session

        monkeypatch.setattr(cli, "session_scope", fake_scope)
        result = CliRunner().invoke(cli.app, ["recalculate-plans"])

        assert result.exit_code == 0, result.output
        assert "Recalculated 2 plan periods" in result.output
        assert plan.periods[0].planned_expense == 320_000
