from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from sqlalchemy.orm import Session

from models import Currency


# Seed data for the currencies table; also used when a code has no row yet.
CURRENCIES: dict[str, tuple[str, str, int]] = {
    "USD": ("US Dollar", "$", 2),
    "EUR": ("Euro", "€", 2),
    "GBP": ("British Pound", "£", 2),
    "VND": ("Vietnamese Dong", "₫", 0),
    "JPY": ("Japanese Yen", "¥", 0),
    "CNY": ("Chinese Yuan", "¥", 2),
    "KRW": ("South Korean Won", "₩", 0),
    "AUD": ("Australian Dollar", "A$", 2),
    "CAD": ("Canadian Dollar", "C$", 2),
    "SGD": ("Singapore Dollar", "S$", 2),
}


def decimal_places(code: str, session: Optional[Session] = None) -> int:
    code = code.upper()
    if session is not None:
        currency = session.get(Currency, code)
        if currency is not None:
            return currency.decimal_places
    if code in CURRENCIES:
        return CURRENCIES[code][2]
    return 2


def to_minor(amount: Union[Decimal, str, int, float], places: int) -> int:
    scaled = Decimal(str(amount)) * (Decimal(10) ** places)
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major(minor: int, places: int) -> Decimal:
    return Decimal(minor) / (Decimal(10) ** places)


def convert_minor(
    amount_minor: int, rate: Decimal, from_places: int, to_places: int
) -> int:
    major = to_major(amount_minor, from_places) * Decimal(rate)
    return to_minor(major, to_places)


def format_money(minor: int, code: str, places: Optional[int] = None) -> str:
    code = code.upper()
    if places is None:
        places = decimal_places(code)
    symbol = CURRENCIES.get(code, (code, code, places))[1]
    major = to_major(minor, places)
    sign = "-" if major < 0 else ""
    return f"{sign}{symbol}{abs(major):,.{places}f}"
