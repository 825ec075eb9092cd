from datetime import date

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import (
    Account,
    AccountType,
    CategoryType,
    Frequency,
    RecurringTransaction,
    Transaction,
    User,
)
from recurrence import (
    RecurringEngine,
    align_to_anchor,
    calculate_next_date,
    preview_dates,
    reschedule,
)
from schemas import AccountIn, RecurringTransactionIn
from services import AccountService, RecurringTransactionService, process_all_due, seed_currencies


def _rule(frequency: Frequency, start: date, **kwargs) -> RecurringTransaction:
    return RecurringTransaction(
        id=1,
        user_id=1,
        account_id=1,
        name="Test",
        transaction_type=CategoryType.expense,
        amount=1000,
        currency_code="USD",
        frequency=frequency,
        start_date=start,
        next_run_date=start,
        is_active=True,
        auto_create=True,
        **kwargs,
    )


def _setup(session: Session, balance: int = 100_000) -> tuple[User, Account]:
    seed_currencies(session, "USD")
    user = User(name="Owner", email="owner@example.com", password_hash="x")
    session.add(user)
    session.commit()
    account = AccountService(session, user.id).create(
        AccountIn(
            name="Checking",
            account_type=AccountType.bank,
            currency_code="USD",
            initial_balance=balance,
        )
    )
    return user, account


def _rule_in(account_id: int, **overrides) -> RecurringTransactionIn:
    values = dict(
        account_id=account_id,
        name="Rent",
        transaction_type=CategoryType.expense,
        amount=1000,
        frequency=Frequency.monthly,
        start_date=date(2024, 1, 15),
    )
    values.update(overrides)
    return RecurringTransactionIn(**values)


def test_monthly_rule_clamps_to_month_end_and_recovers():
    rule = _rule(Frequency.monthly, date(2024, 1, 31))
    feb = calculate_next_date(rule, date(2024, 1, 31))
    assert feb == date(2024, 2, 29)
    assert calculate_next_date(rule, feb) == date(2024, 3, 31)


def test_yearly_rule_on_leap_day_falls_back_to_feb_28():
    rule = _rule(Frequency.yearly, date(2024, 2, 29), month_of_year=2, day_of_month=29)
    assert calculate_next_date(rule, date(2024, 2, 29)) == date(2025, 2, 28)


def test_weekly_rule_aligns_to_day_of_week():
    # day_of_week uses Sunday = 0, so 1 is Monday
    rule = _rule(Frequency.weekly, date(2024, 1, 3), day_of_week=1)
    scheduled = reschedule(rule, align_to_anchor(rule, rule.start_date), today=date(2024, 1, 1))
    assert scheduled.next_run_date == date(2024, 1, 8)


def test_first_run_skips_past_occurrences():
    rule = _rule(Frequency.monthly, date(2023, 11, 10))
    scheduled = reschedule(rule, rule.start_date, today=date(2024, 1, 20))
    assert scheduled.next_run_date == date(2024, 2, 10)
    assert scheduled.is_active is True


def test_preview_dates_stop_at_end_date():
    rule = _rule(Frequency.daily, date(2024, 1, 1), end_date=date(2024, 1, 3))
    assert preview_dates(rule, count=10) == [
        date(2024, 1, 1),
        date(2024, 1, 2),
        date(2024, 1, 3),
    ]


def test_process_due_catches_up_and_is_idempotent():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session)
        service = RecurringTransactionService(session, user.id)
        rule = service.create(_rule_in(account.id), today=date(2024, 1, 1))
        assert rule.next_run_date == date(2024, 1, 15)

        result = service.process_due(today=date(2024, 3, 20))
        assert result.created == 3
        assert result.processed == 1

        again = service.process_due(today=date(2024, 3, 20))
        assert again.created == 0

        rule = service.get(rule.id)
        assert rule.next_run_date == date(2024, 4, 15)
        assert rule.last_run_date == date(2024, 3, 15)
        occurrences = session.scalars(
            select(Transaction.occurrence_date)
            .where(Transaction.recurring_transaction_id == rule.id)
            .order_by(Transaction.occurrence_date)
        ).all()
        assert occurrences == [date(2024, 1, 15), date(2024, 2, 15), date(2024, 3, 15)]
        assert AccountService(session, user.id).get(account.id).current_balance == 97_000


def test_rule_deactivates_after_end_date():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session)
        service = RecurringTransactionService(session, user.id)
        rule = service.create(
            _rule_in(account.id, end_date=date(2024, 2, 20)), today=date(2024, 1, 1)
        )

        result = process_all_due(session, today=date(2024, 3, 20))

        assert result.created == 2
        assert service.get(rule.id).is_active is False


def test_manual_rules_and_deleted_accounts_are_not_posted():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session)
        service = RecurringTransactionService(session, user.id)
        service.create(_rule_in(account.id, auto_create=False), today=date(2024, 1, 1))
        other = AccountService(session, user.id).create(
            AccountIn(name="Old", account_type=AccountType.cash, currency_code="USD")
        )
        service.create(_rule_in(other.id, name="Gym"), today=date(2024, 1, 1))
        AccountService(session, user.id).soft_delete(other.id)

        result = service.process_due(today=date(2024, 2, 1))

        assert result.created == 0
        assert result.skipped == 1
        assert session.scalars(select(Transaction)).all() == []


def test_failed_rule_is_reported_without_blocking_others():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session, balance=500)
        service = RecurringTransactionService(session, user.id)
        failing = service.create(_rule_in(account.id), today=date(2024, 1, 1))
        service.create(
            _rule_in(account.id, name="Salary", transaction_type=CategoryType.income),
            today=date(2024, 1, 1),
        )

        result = service.process_due(today=date(2024, 1, 15))

        assert failing.id in result.errors
        assert "Insufficient funds" in result.errors[failing.id]
        assert result.created == 1


def test_resume_moves_next_run_to_today_or_later():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session)
        service = RecurringTransactionService(session, user.id)
        rule = service.create(_rule_in(account.id), today=date(2024, 1, 1))
        service.pause(rule.id)
        assert service.process_due(today=date(2024, 2, 1)).created == 0

        resumed = service.resume(rule.id, today=date(2024, 4, 2))

        assert resumed.is_active is True
        assert resumed.next_run_date == date(2024, 4, 15)


def test_monthly_projection_normalizes_frequencies():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session)
        service = RecurringTransactionService(session, user.id)
        service.create(
            _rule_in(
                account.id,
                name="Salary",
                transaction_type=CategoryType.income,
                amount=500_000,
            ),
            today=date(2024, 1, 1),
        )
        service.create(
            _rule_in(account.id, name="Coffee", amount=100, frequency=Frequency.weekly),
            today=date(2024, 1, 1),
        )
        service.create(
            _rule_in(
                account.id,
                name="Insurance",
                amount=12_000,
                frequency=Frequency.yearly,
            ),
            today=date(2024, 1, 1),
        )

        projection = service.monthly_projection("USD")

        assert projection["monthly_income"] == 500_000
        assert projection["monthly_expense"] == 433 + 1_000
        assert projection["monthly_net"] == 500_000 - 1_433
        assert projection["passive_coverage"] == 0


def test_rule_created_after_its_window_is_inactive():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session)
        service = RecurringTransactionService(session, user.id)

        rule = service.create(
            _rule_in(account.id, end_date=date(2024, 6, 30)), today=date(2024, 10, 19)
        )

        assert rule.is_active is False
        assert rule.next_run_date <= rule.end_date
        result = process_all_due(session, today=date(2024, 10, 19))
        assert result.created == 0
        assert service.get(rule.id).next_run_date <= date(2024, 6, 30)


def test_resume_never_moves_past_end_date():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session)
        service = RecurringTransactionService(session, user.id)
        rule = service.create(
            _rule_in(account.id, end_date=date(2024, 3, 20)), today=date(2024, 1, 1)
        )
        service.pause(rule.id)

        resumed = service.resume(rule.id, today=date(2024, 5, 1))

        assert resumed.is_active is False
        assert resumed.next_run_date == date(2024, 3, 15)

        still_open = service.create(
            _rule_in(account.id, name="Gym", end_date=date(2024, 12, 31)),
            today=date(2024, 1, 1),
        )
        service.pause(still_open.id)
        assert service.resume(still_open.id, today=date(2024, 5, 1)).is_active is True


def test_update_of_end_date_reschedules():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session)
        service = RecurringTransactionService(session, user.id)
        rule = service.create(_rule_in(account.id), today=date(2024, 4, 1))

        updated = service.update(
            rule.id, _rule_in(account.id, end_date=date(2024, 3, 31)), today=date(2024, 4, 1)
        )

        assert updated.is_active is False
        assert updated.next_run_date <= date(2024, 3, 31)


def test_database_error_on_one_rule_keeps_the_batch(monkeypatch):
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session)
        service = RecurringTransactionService(session, user.id)
        broken = service.create(_rule_in(account.id, name="Broken"), today=date(2024, 1, 1))
        service.create(
            _rule_in(account.id, name="Salary", transaction_type=CategoryType.income),
            today=date(2024, 1, 1),
        )
        post_occurrence = RecurringEngine._post_occurrence

        def failing_post(self, rule, occurrence_date):
            if rule.name == "Broken":
                self.session.add(
                    User(name="Clone", email="owner@example.com", password_hash="x")
                )
                self.session.flush()
            return post_occurrence(self, rule, occurrence_date)

        monkeypatch.setattr(RecurringEngine, "_post_occurrence", failing_post)

        result = process_all_due(session, today=date(2024, 2, 20))

        assert broken.id in result.errors
        assert result.created == 2
        assert result.processed == 1
        assert service.get(broken.id).next_run_date == date(2024, 1, 15)
        incomes = session.scalars(
            select(Transaction).where(Transaction.recurring_transaction_id != broken.id)
        ).all()
        assert len(incomes) == 2
