from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from errors import InsufficientFundsError, InvalidTransferError, NotFoundError
from fx_rates import ExchangeRateService
from models import AccountType, CategoryType, Transaction, TransactionType, TransferDirection, User
from periods import Period
from schemas import (
    AccountIn,
    FinanceCategoryIn,
    TransactionIn,
    TransactionUpdateIn,
    TransferIn,
)
from services import (
    AccountService,
    CategoryService,
    ReportService,
    TransactionFilters,
    TransactionService,
    purge_deleted,
    seed_currencies,
)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _user(session: Session, email: str = "owner@example.com") -> User:
    user = User(name="Owner", email=email, password_hash="x")
    session.add(user)
    session.commit()
    return user


def _account(
    session: Session,
    user_id: int,
    name: str = "Checking",
    currency: str = "USD",
    balance: int = 0,
    account_type: AccountType = AccountType.bank,
):
    return AccountService(session, user_id).create(
        AccountIn(
            name=name,
            account_type=account_type,
            currency_code=currency,
            initial_balance=balance,
        )
    )


def _txn(account_id: int, kind: CategoryType, amount: int, **kwargs) -> TransactionIn:
    return TransactionIn(
        account_id=account_id,
        transaction_type=kind,
        amount=amount,
        transaction_date=kwargs.pop("transaction_date", date(2024, 5, 10)),
        **kwargs,
    )


def test_income_and_expense_move_the_balance():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        account = _account(session, user.id, balance=10_000)
        service = TransactionService(session, user.id)

        service.create(_txn(account.id, CategoryType.income, 2_500))
        expense = service.create(_txn(account.id, CategoryType.expense, 4_000))

        assert expense.signed_amount == -4_000
        assert AccountService(session, user.id).get(account.id).current_balance == 8_500


def test_expense_beyond_balance_is_rejected_except_for_credit_cards():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        bank = _account(session, user.id, balance=1_000)
        card = _account(session, user.id, name="Visa", account_type=AccountType.credit_card)
        service = TransactionService(session, user.id)

        with pytest.raises(InsufficientFundsError):
            service.create(_txn(bank.id, CategoryType.expense, 1_001))
        service.create(_txn(card.id, CategoryType.expense, 5_000))

        assert AccountService(session, user.id).get(bank.id).current_balance == 1_000
        assert AccountService(session, user.id).get(card.id).current_balance == -5_000


def test_category_type_must_match_transaction_type():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        account = _account(session, user.id, balance=10_000)
        salary = CategoryService(session, user.id).create(
            FinanceCategoryIn(name="Salary", type=CategoryType.income)
        )

        with pytest.raises(ValueError, match="type mismatch"):
            TransactionService(session, user.id).create(
                _txn(account.id, CategoryType.expense, 100, category_id=salary.id)
            )


def test_transactions_are_scoped_to_their_owner():
    with _session() as session:
        seed_currencies(session, "USD")
        owner = _user(session)
        other = _user(session, "other@example.com")
        account = _account(session, owner.id, balance=1_000)
        txn = TransactionService(session, owner.id).create(
            _txn(account.id, CategoryType.income, 100)
        )

        with pytest.raises(NotFoundError):
            TransactionService(session, other.id).get(txn.id)
        with pytest.raises(NotFoundError):
            TransactionService(session, other.id).create(
                _txn(account.id, CategoryType.income, 100)
            )


def test_same_currency_transfer_creates_linked_legs():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        checking = _account(session, user.id, balance=50_000)
        savings = _account(session, user.id, name="Savings")

        outgoing, incoming = TransactionService(session, user.id).record_transfer(
            TransferIn(
                from_account_id=checking.id,
                to_account_id=savings.id,
                amount=20_000,
                transaction_date=date(2024, 5, 1),
            )
        )

        assert outgoing.transfer_direction == TransferDirection.outgoing
        assert incoming.transfer_direction == TransferDirection.incoming
        assert outgoing.transfer_transaction_id == incoming.id
        assert incoming.transfer_transaction_id == outgoing.id
        assert outgoing.description == "Transfer to Savings"
        accounts = AccountService(session, user.id)
        assert accounts.get(checking.id).current_balance == 30_000
        assert accounts.get(savings.id).current_balance == 20_000


def test_cross_currency_transfer_uses_stored_rate():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        usd = _account(session, user.id, balance=50_000)
        eur = _account(session, user.id, name="Euro", currency="EUR")
        ExchangeRateService(session).set_rate("USD", "EUR", Decimal("0.9"), rate_date=date(2024, 5, 1))
        session.commit()

        outgoing, incoming = TransactionService(session, user.id).record_transfer(
            TransferIn(
                from_account_id=usd.id,
                to_account_id=eur.id,
                amount=10_000,
                transaction_date=date(2024, 5, 2),
            )
        )

        assert outgoing.amount == 10_000
        assert incoming.amount == 9_000
        assert incoming.currency_code == "EUR"
        assert "(Rate: 0.9000)" in incoming.description


def test_transfer_validation():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        other = _user(session, "other@example.com")
        usd = _account(session, user.id, balance=50_000)
        jpy = _account(session, user.id, name="Yen", currency="JPY")
        foreign = _account(session, other.id, name="Not mine")
        service = TransactionService(session, user.id)

        def transfer(to_id: int) -> None:
            service.record_transfer(
                TransferIn(
                    from_account_id=usd.id,
                    to_account_id=to_id,
                    amount=100,
                    transaction_date=date(2024, 5, 2),
                )
            )

        with pytest.raises(InvalidTransferError):
            transfer(usd.id)
        with pytest.raises(InvalidTransferError):
            transfer(foreign.id)
        with pytest.raises(ValueError, match="Exchange rate not found"):
            transfer(jpy.id)


def test_deleting_one_transfer_leg_removes_both_and_restore_brings_them_back():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        checking = _account(session, user.id, balance=50_000)
        savings = _account(session, user.id, name="Savings")
        service = TransactionService(session, user.id)
        outgoing, incoming = service.record_transfer(
            TransferIn(
                from_account_id=checking.id,
                to_account_id=savings.id,
                amount=20_000,
                transaction_date=date(2024, 5, 1),
            )
        )

        service.soft_delete(incoming.id)

        accounts = AccountService(session, user.id)
        assert accounts.get(checking.id).current_balance == 50_000
        assert accounts.get(savings.id).current_balance == 0
        with pytest.raises(NotFoundError):
            service.get(outgoing.id)

        service.restore(outgoing.id)

        assert accounts.get(checking.id).current_balance == 30_000
        assert accounts.get(savings.id).current_balance == 20_000


def test_transfer_amount_cannot_be_edited():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        checking = _account(session, user.id, balance=50_000)
        savings = _account(session, user.id, name="Savings")
        service = TransactionService(session, user.id)
        outgoing, _ = service.record_transfer(
            TransferIn(
                from_account_id=checking.id,
                to_account_id=savings.id,
                amount=20_000,
                transaction_date=date(2024, 5, 1),
            )
        )

        with pytest.raises(InvalidTransferError):
            service.update(outgoing.id, TransactionUpdateIn(amount=1))
        updated = service.update(outgoing.id, TransactionUpdateIn(description="Moved"))
        assert updated.description == "Moved"


def test_update_moves_expense_between_accounts():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        first = _account(session, user.id, balance=10_000)
        second = _account(session, user.id, name="Second", balance=10_000)
        service = TransactionService(session, user.id)
        txn = service.create(_txn(first.id, CategoryType.expense, 3_000))

        service.update(txn.id, TransactionUpdateIn(account_id=second.id, amount=4_000))

        accounts = AccountService(session, user.id)
        assert accounts.get(first.id).current_balance == 10_000
        assert accounts.get(second.id).current_balance == 6_000
        assert accounts.recalculate_balance(second.id) == 6_000


def test_reconcile_only_once():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        account = _account(session, user.id)
        service = TransactionService(session, user.id)
        txn = service.create(_txn(account.id, CategoryType.income, 100))

        assert service.reconcile(txn.id).is_reconciled
        with pytest.raises(ValueError, match="already reconciled"):
            service.reconcile(txn.id)


def test_bulk_update_skips_transfers_and_mismatched_types():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        checking = _account(session, user.id, balance=50_000)
        savings = _account(session, user.id, name="Savings")
        groceries = CategoryService(session, user.id).create(
            FinanceCategoryIn(name="Groceries", type=CategoryType.expense)
        )
        service = TransactionService(session, user.id)
        expense = service.create(_txn(checking.id, CategoryType.expense, 500))
        income = service.create(_txn(checking.id, CategoryType.income, 500))
        outgoing, _ = service.record_transfer(
            TransferIn(
                from_account_id=checking.id,
                to_account_id=savings.id,
                amount=100,
                transaction_date=date(2024, 5, 1),
            )
        )

        updated = service.bulk_update([expense.id, income.id, outgoing.id], groceries.id)

        assert updated == 1
        assert service.get(expense.id).category_id == groceries.id
        assert service.get(income.id).category_id is None


def test_list_filters_and_counts():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        account = _account(session, user.id, balance=50_000)
        service = TransactionService(session, user.id)
        service.create(_txn(account.id, CategoryType.expense, 100, description="Coffee beans"))
        service.create(_txn(account.id, CategoryType.expense, 200, description="Bread"))
        service.create(
            _txn(
                account.id,
                CategoryType.income,
                300,
                transaction_date=date(2024, 6, 1),
            )
        )

        may = Period("custom", date(2024, 5, 1), date(2024, 5, 31))
        items, total = service.list(period=may)
        assert total == 2
        items, total = service.list(TransactionFilters(query="coffee"))
        assert [t.description for t in items] == ["Coffee beans"]
        items, total = service.list(
            TransactionFilters(transaction_type=TransactionType.income), limit=1
        )
        assert total == 1 and len(items) == 1


def test_total_balance_converts_and_reports_missing_rates():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        _account(session, user.id, balance=10_000)
        _account(session, user.id, name="Euro", currency="EUR", balance=10_000)
        _account(session, user.id, name="Yen", currency="JPY", balance=5_000)
        ExchangeRateService(session).set_rate("USD", "EUR", Decimal("0.8"), rate_date=date(2024, 5, 1))
        session.commit()

        total = AccountService(session, user.id).total_balance("USD")

        # EUR -> USD through the reverse of the stored USD -> EUR rate
        assert total["total"] == 10_000 + 12_500
        assert total["missing_rates"] == ["JPY"]


def test_summary_ignores_transfers():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        checking = _account(session, user.id, balance=50_000)
        savings = _account(session, user.id, name="Savings")
        service = TransactionService(session, user.id)
        service.create(_txn(checking.id, CategoryType.income, 3_000))
        service.create(_txn(checking.id, CategoryType.expense, 1_000))
        service.record_transfer(
            TransferIn(
                from_account_id=checking.id,
                to_account_id=savings.id,
                amount=5_000,
                transaction_date=date(2024, 5, 10),
            )
        )

        summary = ReportService(session, user.id).summary(
            Period("custom", date(2024, 5, 1), date(2024, 5, 31)), "USD"
        )

        assert summary["income"] == 3_000
        assert summary["expense"] == 1_000
        assert summary["net"] == 2_000
        assert summary["expense_by_category"] == [
            {"name": "Uncategorized", "amount": 1_000, "percent": 100.0}
        ]


def test_purge_deleted_only_removes_old_rows():
    with _session() as session:
        seed_currencies(session, "USD")
        user = _user(session)
        account = _account(session, user.id, balance=10_000)
        service = TransactionService(session, user.id)
        old = service.create(_txn(account.id, CategoryType.expense, 100))
        recent = service.create(_txn(account.id, CategoryType.expense, 200))
        service.soft_delete(old.id)
        service.soft_delete(recent.id)
        session.get(Transaction, old.id).deleted_at = datetime.utcnow() - timedelta(days=60)
        session.commit()

        counts = purge_deleted(session, older_than_days=30)

        assert counts["transactions"] == 1
        remaining = session.scalars(select(Transaction.id)).all()
        assert remaining == [recent.id]
