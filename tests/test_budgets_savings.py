from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import AccountType, BudgetPeriod, CategoryType, SavingsGoalStatus, User
from schemas import (
    AccountIn,
    BudgetIn,
    FinanceCategoryIn,
    SavingsContributionIn,
    SavingsGoalIn,
    TransactionIn,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    SavingsGoalService,
    TransactionService,
    seed_currencies,
)


def _setup(session: Session):
    seed_currencies(session, "USD")
    user = User(name="Owner", email="owner@example.com", password_hash="x")
    session.add(user)
    session.commit()
    account = AccountService(session, user.id).create(
        AccountIn(
            name="Checking",
            account_type=AccountType.bank,
            currency_code="USD",
            initial_balance=100_000,
        )
    )
    food = CategoryService(session, user.id).create(
        FinanceCategoryIn(name="Food", type=CategoryType.expense)
    )
    return user, account, food


def _spend(session: Session, user_id: int, account_id: int, amount: int, on: date, **kwargs):
    return TransactionService(session, user_id).create(
        TransactionIn(
            account_id=account_id,
            transaction_type=kwargs.pop("kind", CategoryType.expense),
            amount=amount,
            transaction_date=on,
            **kwargs,
        )
    )


def test_monthly_budget_tracks_category_spending_in_window():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account, food = _setup(session)
        _spend(session, user.id, account.id, 5_000, date(2024, 5, 3), category_id=food.id)
        _spend(session, user.id, account.id, 3_500, date(2024, 5, 20), category_id=food.id)
        _spend(session, user.id, account.id, 9_999, date(2024, 5, 20))
        _spend(session, user.id, account.id, 3_000, date(2024, 6, 2), category_id=food.id)
        _spend(session, user.id, account.id, 2_000, date(2024, 5, 4), kind=CategoryType.income)

        service = BudgetService(session, user.id)
        budget = service.create(
            BudgetIn(
                name="Groceries",
                category_id=food.id,
                period_type=BudgetPeriod.monthly,
                allocated_amount=10_000,
                currency_code="usd",
                start_date=date(2024, 5, 15),
            )
        )

        assert (budget.start_date, budget.end_date) == (date(2024, 5, 1), date(2024, 5, 31))
        assert budget.spent_amount == 8_500
        assert budget.currency_code == "USD"
        variance = service.variance(budget.id)
        assert variance["status"] == "warning"
        assert variance["remaining"] == 1_500
        assert service.alert_level(budget.id) == "warning"

        _spend(session, user.id, account.id, 2_000, date(2024, 5, 25), category_id=food.id)
        assert service.track_spending(budget.id) == 10_500
        assert service.variance(budget.id)["status"] == "over_budget"
        assert service.variance(budget.id)["is_over_budget"] is True
        assert service.alert_level(budget.id) == "critical"


def test_budget_rejects_income_categories():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, _, _ = _setup(session)
        salary = CategoryService(session, user.id).create(
            FinanceCategoryIn(name="Salary", type=CategoryType.income)
        )

        with pytest.raises(ValueError, match="expense categories"):
            BudgetService(session, user.id).create(
                BudgetIn(
                    name="Wrong",
                    category_id=salary.id,
                    period_type=BudgetPeriod.monthly,
                    allocated_amount=1_000,
                    currency_code="USD",
                    start_date=date(2024, 5, 1),
                )
            )


def test_quarterly_window_and_custom_dates():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, _, _ = _setup(session)
        service = BudgetService(session, user.id)
        quarterly = service.create(
            BudgetIn(
                name="Q",
                period_type=BudgetPeriod.quarterly,
                allocated_amount=1_000,
                currency_code="USD",
                start_date=date(2024, 8, 17),
            )
        )
        custom = service.create(
            BudgetIn(
                name="Trip",
                period_type=BudgetPeriod.custom,
                allocated_amount=1_000,
                currency_code="USD",
                start_date=date(2024, 8, 1),
                end_date=date(2024, 8, 10),
            )
        )

        assert (quarterly.start_date, quarterly.end_date) == (date(2024, 7, 1), date(2024, 9, 30))
        assert (custom.start_date, custom.end_date) == (date(2024, 8, 1), date(2024, 8, 10))


def test_renew_expired_rolls_over_unspent_amount():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account, food = _setup(session)
        _spend(session, user.id, account.id, 8_500, date(2024, 5, 3), category_id=food.id)
        _spend(session, user.id, account.id, 3_000, date(2024, 6, 2), category_id=food.id)
        service = BudgetService(session, user.id)
        rolling = service.create(
            BudgetIn(
                name="Groceries",
                category_id=food.id,
                period_type=BudgetPeriod.monthly,
                allocated_amount=10_000,
                currency_code="USD",
                start_date=date(2024, 5, 1),
                rollover=True,
            )
        )
        fixed = service.create(
            BudgetIn(
                name="Everything",
                period_type=BudgetPeriod.monthly,
                allocated_amount=10_000,
                currency_code="USD",
                start_date=date(2024, 5, 1),
            )
        )

        assert service.renew_expired(today=date(2024, 6, 10)) == 2

        rolling = service.get(rolling.id)
        assert (rolling.start_date, rolling.end_date) == (date(2024, 6, 1), date(2024, 6, 30))
        assert rolling.allocated_amount == 11_500
        assert rolling.spent_amount == 3_000
        assert service.get(fixed.id).allocated_amount == 10_000
        assert service.renew_expired(today=date(2024, 6, 10)) == 0


def test_goal_completes_at_target_and_reopens_after_withdrawal():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account, _ = _setup(session)
        service = SavingsGoalService(session, user.id)
        goal = service.create(
            SavingsGoalIn(
                name="Emergency fund",
                target_account_id=account.id,
                target_amount=10_000,
                currency_code="USD",
            )
        )

        service.add_contribution(
            goal.id, SavingsContributionIn(amount=6_000, contribution_date=date(2024, 5, 1))
        )
        assert service.get(goal.id).status == SavingsGoalStatus.active

        service.add_contribution(
            goal.id, SavingsContributionIn(amount=4_000, contribution_date=date(2024, 5, 2))
        )
        goal = service.get(goal.id)
        assert goal.status == SavingsGoalStatus.completed
        assert goal.completed_at is not None
        assert goal.progress_percent == 100.0

        service.withdraw(
            goal.id, SavingsContributionIn(amount=1_000, contribution_date=date(2024, 5, 3))
        )
        goal = service.get(goal.id)
        assert goal.current_amount == 9_000
        assert goal.status == SavingsGoalStatus.active
        assert goal.completed_at is None


def test_goal_withdrawal_and_status_guards():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, _, _ = _setup(session)
        service = SavingsGoalService(session, user.id)
        goal = service.create(
            SavingsGoalIn(name="Bike", target_amount=50_000, currency_code="USD")
        )
        service.add_contribution(
            goal.id, SavingsContributionIn(amount=1_000, contribution_date=date(2024, 5, 1))
        )

        with pytest.raises(ValueError, match="exceeds"):
            service.withdraw(
                goal.id, SavingsContributionIn(amount=1_001, contribution_date=date(2024, 5, 2))
            )
        with pytest.raises(ValueError):
            service.set_status(goal.id, SavingsGoalStatus.completed)
        assert service.set_status(goal.id, SavingsGoalStatus.paused).status == SavingsGoalStatus.paused


def test_linked_transaction_counts_toward_goal():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account, _ = _setup(session)
        deposit = _spend(
            session,
            user.id,
            account.id,
            2_500,
            date(2024, 5, 1),
            kind=CategoryType.income,
            description="Bonus",
        )
        service = SavingsGoalService(session, user.id)
        goal = service.create(
            SavingsGoalIn(name="Holiday", target_amount=2_000, currency_code="USD")
        )

        contribution = service.link_transaction(goal.id, deposit.id)

        assert contribution.type == "linked"
        assert contribution.transaction_id == deposit.id
        assert contribution.notes == "Linked from transaction: Bonus"
        assert service.get(goal.id).status == SavingsGoalStatus.completed
