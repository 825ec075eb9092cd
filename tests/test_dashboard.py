from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from fx_rates import ExchangeRateService
from models import AccountType, BudgetPeriod, CategoryType, User
from schemas import AccountIn, BudgetIn, TransactionIn
from services import (
    AccountService,
    BudgetService,
    DashboardService,
    TransactionService,
    seed_currencies,
)


TODAY = date(2024, 5, 20)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _setup(session: Session):
    seed_currencies(session, "USD")
    user = User(name="Owner", email="owner@example.com", password_hash="x")
    session.add(user)
    session.commit()
    accounts = AccountService(session, user.id)
    checking = accounts.create(
        AccountIn(
            name="Checking",
            account_type=AccountType.bank,
            currency_code="USD",
            initial_balance=100_000,
        )
    )
    card = accounts.create(
        AccountIn(name="Visa", account_type=AccountType.credit_card, currency_code="USD")
    )
    return user, checking, card


def _spend(session: Session, user_id: int, account_id: int, amount: int, on: date) -> None:
    TransactionService(session, user_id).create(
        TransactionIn(
            account_id=account_id,
            transaction_type=CategoryType.expense,
            amount=amount,
            transaction_date=on,
        )
    )


def test_summary_separates_assets_from_liabilities():
    with _session() as session:
        user, checking, card = _setup(session)
        _spend(session, user.id, card.id, 30_000, TODAY)
        euro = AccountService(session, user.id).create(
            AccountIn(
                name="Euro savings",
                account_type=AccountType.bank,
                currency_code="EUR",
                initial_balance=10_000,
            )
        )
        AccountService(session, user.id).create(
            AccountIn(
                name="Hidden",
                account_type=AccountType.cash,
                currency_code="USD",
                initial_balance=99_999,
                exclude_from_total=True,
            )
        )
        ExchangeRateService(session).set_rate("EUR", "USD", Decimal("1.1"), rate_date=TODAY)

        summary = DashboardService(session, user.id).summary()

        assert euro.current_balance == 10_000
        assert summary["currency_code"] == "USD"
        assert summary["total_assets"] == 100_000 + 11_000
        assert summary["total_liabilities"] == 30_000
        assert summary["net_worth"] == 81_000
        assert summary["total_balance"] == 100_000 + 11_000 - 30_000
        assert summary["accounts_count"] == 4


def test_spending_trend_sums_expenses_per_day():
    with _session() as session:
        user, checking, card = _setup(session)
        _spend(session, user.id, checking.id, 1_000, date(2024, 5, 18))
        _spend(session, user.id, card.id, 2_500, date(2024, 5, 18))
        _spend(session, user.id, checking.id, 700, date(2024, 5, 19))
        _spend(session, user.id, checking.id, 900, date(2024, 3, 1))

        trend = DashboardService(session, user.id).spending_trend(today=TODAY)

        assert trend == [
            {"date": date(2024, 5, 18), "amount": 3_500},
            {"date": date(2024, 5, 19), "amount": 700},
        ]


def test_overview_lists_current_budgets_largest_first():
    with _session() as session:
        user, checking, card = _setup(session)
        _spend(session, user.id, checking.id, 1_000, date(2024, 5, 18))
        budgets = BudgetService(session, user.id)
        for name, amount, start in (
            ("Small", 5_000, date(2024, 5, 1)),
            ("Large", 50_000, date(2024, 5, 1)),
            ("Last month", 90_000, date(2024, 4, 1)),
        ):
            budgets.create(
                BudgetIn(
                    name=name,
                    period_type=BudgetPeriod.monthly,
                    allocated_amount=amount,
                    currency_code="USD",
                    start_date=start,
                )
            )

        overview = DashboardService(session, user.id).overview(today=TODAY)

        assert [budget.name for budget in overview["budgets"]] == ["Large", "Small"]
        assert len(overview["recent_transactions"]) == 1
        assert overview["summary"]["total_assets"] == 99_000
        assert overview["spending_trend"] == [{"date": date(2024, 5, 18), "amount": 1_000}]
        assert overview["upcoming_recurring"] == []
