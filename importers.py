"""Bank statement sources: Techcombank Excel and PDF exports and Payoneer CSV.

Each parser turns a statement into ``StatementRow`` values; ``StatementImportService``
posts them to an account, skipping rows that are already recorded.
"""

from __future__ import annotations

import csv
import logging
import re
import zipfile
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from io import BytesIO, StringIO
from typing import Callable, Optional

import pandas as pd
from pypdf import PdfReader
from pypdf.errors import PdfReadError
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import CategoryType, FinanceCategory, Transaction, TransactionType
from money import decimal_places, to_minor
from services import AccountService, TransactionService


logger = logging.getLogger(__name__)

# Techcombank statement layout: data starts on row 36, columns by letter
TCB_FIRST_ROW = 36
TCB_COLUMNS = {
    "date": "B",
    "remitter": "H",
    "remitter_bank": "Q",
    "description": "Y",
    "transaction_no": "AG",
    "debit": "AT",
    "credit": "BB",
    "balance": "BH",
}

TCB_CATEGORIES = {
    "chuyen tien": "Transfer",
    "transfer": "Transfer",
    "luong": "Salary",
    "salary": "Salary",
    "interest": "Investment Income",
    "lai suat": "Investment Income",
    "loi nhuan": "Investment Income",
    "sinh loi": "Investment Income",
    "tikop": "Investment Income",
    "cctg": "Investment Income",
    "affiliate": "Affiliate Income",
    "tra lai so du tren tai khoan": "Other Income",
    "dien": "Utilities",
    "nuoc": "Utilities",
    "internet": "Utilities",
    "fpt": "Utilities",
    "viettel": "Utilities",
    "vnpt": "Utilities",
    "nap tien": "Utilities",
    "grab": "Food & Dining",
    "shopee": "Shopping",
    "lazada": "Shopping",
    "tiki": "Shopping",
    "benh vien": "Healthcare",
    "phi": "Bank Fees",
    "fee": "Bank Fees",
    "thanh toan": "Other Expenses",
}

PAYONEER_CATEGORIES = {
    "claude.ai": "Software & Subscriptions",
    "cloudflare": "Software & Subscriptions",
    "cloudcone": "Software & Subscriptions",
    "kindle": "Education",
    "annual card fee": "Bank Fees",
    "transaction fee": "Bank Fees",
    "withdrawal to": "Transfer",
    "payment from": "Business Income",
}

TRANSFER_KEYWORDS = ("chuyen tien", "chuyen khoan", "transfer")

# PDF statements carry no debit/credit columns; the description decides
PDF_EXPENSE_KEYWORDS = ("nap tien", "thanh toan no vay", "t.toan qr", "thanh toan qr", "mua hang")
PDF_INCOME_KEYWORDS = (
    "rut tien tu tikop",
    "sinh loi tu dong",
    "loi nhuan",
    "cctg bao loc",
    "phan bo so du",
    "affiliate",
    "lai suat",
)

_PDF_DATE_RE = re.compile(r"(\d{2}/\d{2}/\d{4})")
_PDF_REF_RE = re.compile(
    r"(FT\d{11,})((?:\\[A-Z]{2,3})?.{0,200}?)(?=FT\d{11}|\s\d{1,3}(?:,\d{3})+\.\d{2}|$)",
    re.S,
)
_PDF_AMOUNT_RE = re.compile(r"\s(-?[\d,]+\.\d{2})")
_BANK_MARKER_RE = re.compile(r"^\\(BNK|BKB|TLG)|\\(BNK|BKB|TLG)$", re.I)
_EXCEL_EPOCH = date(1899, 12, 30)


@dataclass
class StatementRow:
    transaction_date: date
    type: CategoryType
    amount: Decimal
    description: str
    reference: str = ""
    suggested_category: Optional[str] = None
    is_transfer: bool = False
    currency: Optional[str] = None


def column_index(letters: str) -> int:
    """Zero-based index of a spreadsheet column name (A=0, AA=26)."""
    index = 0
    for letter in letters.upper():
        index = index * 26 + (ord(letter) - ord("A") + 1)
    return index - 1


def suggest_category(description: str, mapping: dict[str, str]) -> Optional[str]:
    lowered = description.lower()
    for keyword, category in mapping.items():
        if keyword in lowered:
            return category
    return None


def is_transfer(description: str) -> bool:
    lowered = description.lower()
    return any(keyword in lowered for keyword in TRANSFER_KEYWORDS)


def _blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _text(value) -> str:
    return "" if _blank(value) else str(value).strip()


def parse_statement_amount(value) -> Decimal:
    if _blank(value):
        return Decimal("0")
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return abs(Decimal(str(value)))
    cleaned = re.sub(r"[^\d.,\-]", "", str(value)).replace(",", "")
    if not cleaned or cleaned == "-":
        return Decimal("0")
    try:
        return abs(Decimal(cleaned))
    except InvalidOperation:
        return Decimal("0")


def parse_statement_date(value) -> Optional[date]:
    if _blank(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _EXCEL_EPOCH + timedelta(days=int(value))
    text = str(value).strip()
    for fmt in ("%d/%m/%Y", "%Y-%m-%d", "%d/%m/%Y %H:%M:%S"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


# --- Techcombank Excel --------------------------------------------------------


def techcombank_rows(frame: pd.DataFrame) -> list[StatementRow]:
    positions = {name: column_index(letters) for name, letters in TCB_COLUMNS.items()}
    rows: list[StatementRow] = []
    for values in frame.iloc[TCB_FIRST_ROW - 1 :].itertuples(index=False):
        cells = {
            name: values[position] if position < len(values) else None
            for name, position in positions.items()
        }
        on = parse_statement_date(cells["date"])
        if on is None:
            continue
        debit = parse_statement_amount(cells["debit"])
        credit = parse_statement_amount(cells["credit"])
        if debit == 0 and credit == 0:
            continue
        parts = [_text(cells[name]) for name in ("description", "remitter", "remitter_bank")]
        description = " - ".join(part for part in parts if part) or "No description"
        rows.append(
            StatementRow(
                transaction_date=on,
                type=CategoryType.income if credit > 0 else CategoryType.expense,
                amount=credit if credit > 0 else debit,
                description=description,
                reference=_text(cells["transaction_no"]),
                suggested_category=suggest_category(description, TCB_CATEGORIES),
                is_transfer=is_transfer(description),
            )
        )
    return rows


def parse_techcombank_excel(content: bytes) -> list[StatementRow]:
    try:
        frame = pd.read_excel(BytesIO(content), header=None, engine="openpyxl", dtype=object)
    except (ValueError, OSError, KeyError, zipfile.BadZipFile) as exc:
        raise ValueError("Could not read Excel statement") from exc
    return techcombank_rows(frame)


# --- Techcombank PDF ------------------------------------------------------------


def clean_pdf_description(text: str) -> str:
    text = _BANK_MARKER_RE.sub("", text.strip())
    text = re.sub(r"([a-z])([A-Z])", r"\1 \2", text)
    text = re.sub(r"\s+", " ", text).strip()
    text = re.sub(r"chuyen\s*ti\s*en", "chuyen tien", text, flags=re.I)
    return re.sub(r"chuyen\s*khoan", "chuyen khoan", text, flags=re.I)


def is_likely_credit(description: str) -> bool:
    lowered = description.lower()
    if any(keyword in lowered for keyword in PDF_EXPENSE_KEYWORDS):
        return False
    return any(keyword in lowered for keyword in PDF_INCOME_KEYWORDS)


def _page_dates(text: str) -> list[tuple[int, date]]:
    found: list[tuple[int, date]] = []
    for match in _PDF_DATE_RE.finditer(text):
        try:
            on = datetime.strptime(match.group(1), "%d/%m/%Y").date()
        except ValueError:
            continue
        if 2020 <= on.year <= 2030:
            found.append((match.start(), on))
    return found


def techcombank_pdf_rows(pages: list[str]) -> list[StatementRow]:
    """Pair each FT reference on a page with the next (amount, balance) pair."""
    rows: list[StatementRow] = []
    for number, text in enumerate(pages, start=1):
        dates = _page_dates(text)
        if not dates:
            continue
        amounts = [
            Decimal(raw.replace(",", "")) for raw in _PDF_AMOUNT_RE.findall(text)
        ]
        position = 0
        lowered = text.lower()
        if number == 1 and amounts and ("opening balance" in lowered or "số dư đầu kỳ" in lowered):
            position = 1
        for match in _PDF_REF_RE.finditer(text):
            if position >= len(amounts):
                break
            amount = abs(amounts[position])
            position += 2
            if amount == 0:
                continue
            reference = match.group(1)
            cleaned = clean_pdf_description(match.group(2))
            preceding = [on for offset, on in dates if offset < match.start()]
            rows.append(
                StatementRow(
                    transaction_date=preceding[-1] if preceding else dates[0][1],
                    type=CategoryType.income if is_likely_credit(cleaned) else CategoryType.expense,
                    amount=amount,
                    description=f"{cleaned or 'Transaction'} (Ref: {reference})",
                    reference=reference,
                    suggested_category=suggest_category(cleaned, TCB_CATEGORIES),
                    is_transfer=is_transfer(cleaned),
                )
            )
    return rows


def parse_techcombank_pdf(content: bytes) -> list[StatementRow]:
    try:
        reader = PdfReader(BytesIO(content))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PdfReadError, ValueError, OSError) as exc:
        raise ValueError("Could not read PDF statement") from exc
    return techcombank_pdf_rows(pages)


# --- Payoneer CSV ---------------------------------------------------------------


def payoneer_rows(content: str) -> list[StatementRow]:
    """Completed rows from a Payoneer activity export.

    Columns: currency, payout method, date (MM-DD-YYYY), time, timezone,
    credit, debit (negative), status, balance, description.
    """
    rows: list[StatementRow] = []
    reader = csv.reader(StringIO(content.lstrip("\ufeff")))
    for raw in reader:
        if len(raw) < 10:
            continue
        values = [value.strip() for value in raw[:10]]
        currency, on_raw, credit_raw, debit_raw = values[0], values[2], values[5], values[6]
        status, description = values[7], values[9]
        if status.lower() != "completed":
            continue
        try:
            on = datetime.strptime(on_raw, "%m-%d-%Y").date()
        except ValueError:
            continue
        credit = parse_statement_amount(credit_raw)
        debit = parse_statement_amount(debit_raw)
        if credit == 0 and debit == 0:
            continue
        transfer = "withdrawal to" in description.lower()
        income = credit > 0 and not transfer
        rows.append(
            StatementRow(
                transaction_date=on,
                type=CategoryType.income if income else CategoryType.expense,
                amount=credit if credit > 0 else debit,
                description=description or "Payoneer transaction",
                suggested_category=suggest_category(description, PAYONEER_CATEGORIES),
                is_transfer=transfer,
                currency=currency.upper() or None,
            )
        )
    return rows


def parse_payoneer_csv(content: bytes) -> list[StatementRow]:
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError("File must be UTF-8 encoded CSV") from exc
    return payoneer_rows(text)


SOURCES: dict[str, tuple[str, Callable[[bytes], list[StatementRow]]]] = {
    "techcombank_excel": ("Techcombank", parse_techcombank_excel),
    "techcombank_pdf": ("Techcombank", parse_techcombank_pdf),
    "payoneer": ("Payoneer", parse_payoneer_csv),
}


class StatementImportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _category_id(self, name: Optional[str], type: CategoryType) -> Optional[int]:
        if not name:
            return None
        return self.session.scalar(
            select(FinanceCategory.id).where(
                FinanceCategory.user_id == self.user_id,
                FinanceCategory.type == type,
                func.lower(FinanceCategory.name) == name.lower(),
            )
        )

    def _exists(self, account_id: int, row: StatementRow, amount: int) -> bool:
        stmt = (
            select(Transaction.id)
            .where(
                Transaction.account_id == account_id,
                Transaction.transaction_date == row.transaction_date,
                Transaction.amount == amount,
                Transaction.description == row.description,
                Transaction.deleted_at.is_(None),
            )
            .limit(1)
        )
        return self.session.execute(stmt).first() is not None

    def import_file(self, source: str, content: bytes, account_id: int) -> dict[str, object]:
        if source not in SOURCES:
            raise ValueError(f"Unsupported statement source: {source}")
        label, parser = SOURCES[source]
        AccountService(self.session, self.user_id).get(account_id)
        return self.import_rows(parser(content), account_id, label)

    def import_rows(
        self,
        rows: list[StatementRow],
        account_id: int,
        label: str,
        skip_duplicates: bool = True,
    ) -> dict[str, object]:
        account = AccountService(self.session, self.user_id).get(account_id)
        places = decimal_places(account.currency_code, self.session)
        txn_service = TransactionService(self.session, self.user_id)
        summary = {"imported": 0, "skipped": 0, "failed": 0, "errors": [], "total": len(rows)}
        for row in rows:
            amount = to_minor(row.amount, places)
            try:
                if row.currency and row.currency != account.currency_code:
                    raise ValueError(
                        f"Currency {row.currency} does not match account {account.currency_code}"
                    )
                if skip_duplicates and self._exists(account.id, row, amount):
                    summary["skipped"] += 1
                    continue
                note = f"Imported from {label}"
                if row.reference:
                    note += f" (Ref: {row.reference})"
                txn_service.post(
                    account_id=account.id,
                    transaction_type=TransactionType(row.type.value),
                    amount=amount,
                    transaction_date=row.transaction_date,
                    category_id=self._category_id(row.suggested_category, row.type),
                    description=row.description,
                    notes=note,
                )
            except ValueError as exc:
                summary["failed"] += 1
                summary["errors"].append(
                    {
                        "date": row.transaction_date,
                        "description": row.description,
                        "error": str(exc),
                    }
                )
                continue
            summary["imported"] += 1
        self.session.commit()
        logger.info(
            f"statement_import: account_id={account.id} source={label} "
            f"imported={summary['imported']} skipped={summary['skipped']} "
            f"failed={summary['failed']}"
        )
        return summary
