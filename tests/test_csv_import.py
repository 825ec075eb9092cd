import csv
from datetime import date
from decimal import Decimal
from io import StringIO

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from csv_utils import parse_amount, parse_csv, parse_date, sanitize_csv_value
from database import Base
from models import AccountType, CategoryType, User
from periods import Period
from schemas import AccountIn, FinanceCategoryIn, TransactionIn
from services import (
    AccountService,
    CategoryService,
    CSVService,
    TransactionService,
    seed_currencies,
)


IMPORT_FILE = """Date,Type,Amount,Category,Description
2024-05-01,expense,$12.50,groceries,Market
02.05.2024,expense,"1,234.56",Grocerie,Big shop
03/05/2024,income,100,Books,Sold books
2024-05-04,expense,5,Cap,Toy
2024-05-05,transfer,5,,Moved
not-a-date,expense,5,,Lunch
2024-05-01,expense,12.50,groceries,Market
"""


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
            initial_balance=200_000,
        )
    )
    categories = CategoryService(session, user.id)
    for name in ("Groceries", "Cat", "Car"):
        categories.create(FinanceCategoryIn(name=name, type=CategoryType.expense))
    return user, account


def test_parse_helpers():
    assert parse_date("31.12.2024") == date(2024, 12, 31)
    assert parse_date("31/12/2024") == date(2024, 12, 31)
    assert parse_amount("-€1.234,50") == Decimal("1234.50")
    assert parse_amount("12,5") == Decimal("12.5")
    with pytest.raises(ValueError):
        parse_amount("abc")
    with pytest.raises(ValueError):
        parse_date("2024/31/12")


def test_parse_csv_requires_core_columns():
    rows, errors = parse_csv("Date,Amount\n2024-01-01,5\n")
    assert rows == []
    assert errors == ["Missing columns: Type"]


def test_parse_csv_numbers_rows_from_the_header():
    rows, errors = parse_csv("\ufeffDate,Type,Amount\n2024-01-01,Income,5\n2024-01-02,expense,0\n")
    assert [(number, row.type) for number, row in rows] == [(2, CategoryType.income)]
    assert errors == ["Row 3: Amount must be greater than zero"]


def test_import_matches_creates_and_skips():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session)

        summary = CSVService(session, user.id).import_csv(IMPORT_FILE, account.id)

        assert summary["imported"] == 3
        assert summary["skipped"] == 1
        assert summary["failed"] == 3
        assert summary["errors"] == [
            "Row 6: Unknown type 'transfer'",
            "Row 7: Invalid date 'not-a-date'",
            "Row 5: Category 'Cap' is ambiguous; matches: Car, Cat",
        ]

        txns, total = TransactionService(session, user.id).list()
        assert total == 3
        by_description = {t.description: t for t in txns}
        assert by_description["Market"].amount == 1_250
        assert by_description["Big shop"].amount == 123_456
        assert by_description["Big shop"].category.name == "Groceries"
        books = by_description["Sold books"].category
        assert (books.name, books.type) == ("Books", CategoryType.income)
        assert AccountService(session, user.id).get(account.id).current_balance == (
            200_000 - 1_250 - 123_456 + 10_000
        )


def test_import_into_foreign_account_is_rejected():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        _, account = _setup(session)
        stranger = User(name="Stranger", email="stranger@example.com", password_hash="x")
        session.add(stranger)
        session.commit()

        with pytest.raises(ValueError, match="Account not found"):
            CSVService(session, stranger.id).import_csv(IMPORT_FILE, account.id)


def test_export_writes_signed_amounts_and_neutralises_formulas():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session)
        service = TransactionService(session, user.id)
        service.create(
            TransactionIn(
                account_id=account.id,
                transaction_type=CategoryType.expense,
                amount=1_250,
                transaction_date=date(2024, 5, 1),
                description="=SUM(A1:A9)",
            )
        )
        service.create(
            TransactionIn(
                account_id=account.id,
                transaction_type=CategoryType.income,
                amount=500,
                transaction_date=date(2024, 6, 1),
            )
        )

        content = CSVService(session, user.id).export(
            Period("custom", date(2024, 5, 1), date(2024, 5, 31))
        )

        rows = list(csv.reader(StringIO(content)))
        assert rows[0] == ["Date", "Type", "Amount", "Currency", "Account", "Category", "Description"]
        assert rows[1:] == [
            ["2024-05-01", "expense", "-12.50", "USD", "Checking", "", "\t=SUM(A1:A9)"]
        ]


def test_sanitize_leaves_plain_text_alone():
    assert sanitize_csv_value("  Coffee ") == "Coffee"
    assert sanitize_csv_value("https://example.com") == "\thttps://example.com"
    assert sanitize_csv_value("") == ""
