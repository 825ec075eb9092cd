import csv
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Sequence

from pydantic import ValidationError

from models import CategoryType, Transaction
from money import to_major
from schemas import CSVRow


CSV_COLUMNS = ["Date", "Type", "Amount", "Category", "Description"]

_FORMULA_TRIGGERS = ("=", "+", "-", "@", "\t", "\r")
_DANGEROUS_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    )
]


def sanitize_csv_value(value: str) -> str:
    """Prefix spreadsheet-formula-like cells with a tab so they render as text."""
    value = (value or "").strip()
    if not value:
        return ""
    if value.startswith(_FORMULA_TRIGGERS):
        return "\t" + value
    if any(pattern.match(value) for pattern in _DANGEROUS_PATTERNS):
        return "\t" + value
    return value


def parse_date(value: str) -> date:
    value = value.strip()
    for fmt in ("%Y-%m-%d", "%d.%m.%Y", "%d/%m/%Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date '{value}'")


def parse_amount(value: str) -> Decimal:
    clean = value.strip()
    for symbol in ("€", "$", "£", "¥", "₫", "₩", " "):
        clean = clean.replace(symbol, "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    return abs(amount)


def parse_csv(content: str) -> tuple[list[tuple[int, CSVRow]], list[str]]:
    """Parse an import file, returning (row_number, row) pairs and per-row errors."""
    reader = csv.DictReader(StringIO(content.lstrip("\ufeff")))
    missing = [col for col in ("Date", "Type", "Amount") if col not in (reader.fieldnames or [])]
    if missing:
        return [], [f"Missing columns: {', '.join(missing)}"]

    rows: list[tuple[int, CSVRow]] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=2):
        try:
            type_raw = (raw.get("Type") or "").strip().lower()
            try:
                type_value = CategoryType(type_raw)
            except ValueError:
                raise ValueError(f"Unknown type '{type_raw}'") from None
            amount = parse_amount(raw.get("Amount") or "")
            if amount == 0:
                raise ValueError("Amount must be greater than zero")
            description = (raw.get("Description") or "").strip()
            rows.append(
                (
                    idx,
                    CSVRow(
                        date=parse_date(raw.get("Date") or ""),
                        type=type_value,
                        amount=amount,
                        category=(raw.get("Category") or "").strip(),
                        description=description or None,
                    ),
                )
            )
        except (ValueError, ValidationError) as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def export_transactions(transactions: Sequence[Transaction], places: dict[str, int]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["Date", "Type", "Amount", "Currency", "Account", "Category", "Description"])
    for txn in transactions:
        digits = places.get(txn.currency_code, 2)
        writer.writerow(
            [
                txn.transaction_date.isoformat(),
                txn.transaction_type.value,
                f"{to_major(txn.signed_amount, digits):.{digits}f}",
                txn.currency_code,
                sanitize_csv_value(txn.account.name if txn.account else ""),
                sanitize_csv_value(txn.category.name if txn.category else ""),
                sanitize_csv_value(txn.description or ""),
            ]
        )
    return output.getvalue()
