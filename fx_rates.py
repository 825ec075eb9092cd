from __future__ import annotations

import json
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Iterable, Optional
from urllib.error import URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import Account, Currency, ExchangeRate
from money import convert_minor, decimal_places


logger = logging.getLogger(__name__)

PAYONEER_FEE_PERCENT = Decimal("0.5")
PAYONEER_CURRENCIES = ("USD", "EUR", "GBP", "CAD", "AUD", "JPY", "CNH", "VND")
PROVIDERS = (
    "frankfurter",
    "exchangerate_api",
    "open_exchange_rates",
    "vietcombank",
    "payoneer",
)


@dataclass(frozen=True)
class FxQuote:
    provider: str
    base: str
    quote: str
    rate: Decimal  # quote per 1 base
    rate_date: date
    fetched_at: datetime
    bid: Optional[Decimal] = None
    ask: Optional[Decimal] = None


class ProviderError(RuntimeError):
    pass


class ExchangeRateService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.settings = get_settings()

    # --- lookups ---------------------------------------------------------

    def _latest(
        self, base: str, target: str, source: Optional[str]
    ) -> Optional[ExchangeRate]:
        stmt = select(ExchangeRate).where(
            ExchangeRate.base_currency == base,
            ExchangeRate.target_currency == target,
        )
        if source:
            stmt = stmt.where(ExchangeRate.source == source)
        stmt = stmt.order_by(ExchangeRate.rate_date.desc(), ExchangeRate.id.desc()).limit(1)
        return self.session.scalars(stmt).first()

    def get_rate(
        self, from_code: str, to_code: str, source: Optional[str] = None
    ) -> Optional[Decimal]:
        from_code, to_code = from_code.upper(), to_code.upper()
        if from_code == to_code:
            return Decimal("1")

        direct = self._latest(from_code, to_code, source)
        if direct is not None:
            return Decimal(direct.rate)

        reverse = self._latest(to_code, from_code, source)
        if reverse is not None and reverse.rate > 0:
            return Decimal("1") / Decimal(reverse.rate)

        if source is not None:
            return self.get_rate(from_code, to_code, None)
        return None

    def convert(
        self,
        amount_minor: int,
        from_code: str,
        to_code: str,
        source: Optional[str] = None,
    ) -> Optional[int]:
        if from_code.upper() == to_code.upper():
            return amount_minor
        rate = self.get_rate(from_code, to_code, source)
        if rate is None:
            return None
        return convert_minor(
            amount_minor,
            rate,
            decimal_places(from_code, self.session),
            decimal_places(to_code, self.session),
        )

    def preview(
        self,
        amount_minor: int,
        from_code: str,
        to_code: str,
        source: Optional[str] = None,
    ) -> dict[str, object]:
        result: dict[str, object] = {
            "same_currency": from_code == to_code,
            "amount": amount_minor,
            "from_currency": from_code,
            "to_currency": to_code,
            "rate_source": source,
        }
        if from_code == to_code:
            result.update(converted_amount=amount_minor, exchange_rate=Decimal("1"))
            return result
        rate = self.get_rate(from_code, to_code, source)
        if rate is None:
            result.update(
                converted_amount=None,
                exchange_rate=None,
                error=f"Exchange rate not found for {from_code}/{to_code}",
            )
            return result
        result.update(
            converted_amount=convert_minor(
                amount_minor,
                rate,
                decimal_places(from_code, self.session),
                decimal_places(to_code, self.session),
            ),
            exchange_rate=rate,
        )
        return result

    def latest_rates(self, base: Optional[str] = None) -> list[ExchangeRate]:
        stmt = select(ExchangeRate).order_by(
            ExchangeRate.rate_date.desc(),
            ExchangeRate.base_currency,
            ExchangeRate.target_currency,
        )
        if base:
            stmt = stmt.where(ExchangeRate.base_currency == base.upper())
        seen: set[tuple[str, str, str]] = set()
        rows: list[ExchangeRate] = []
        for row in self.session.scalars(stmt):
            key = (row.base_currency, row.target_currency, row.source)
            if key in seen:
                continue
            seen.add(key)
            rows.append(row)
        return rows

    def account_currencies(self, user_id: Optional[int] = None) -> list[str]:
        stmt = select(Account.currency_code).distinct()
        if user_id is not None:
            stmt = stmt.where(Account.user_id == user_id)
        codes = set(self.session.scalars(stmt).all())
        default = self.session.scalar(
            select(Currency.code).where(Currency.is_default.is_(True))
        )
        codes.add(default or self.settings.default_currency)
        return sorted(codes)

    # --- writes ----------------------------------------------------------

    def set_rate(
        self,
        base: str,
        target: str,
        rate: Decimal,
        source: str = "manual",
        rate_date: Optional[date] = None,
        bid: Optional[Decimal] = None,
        ask: Optional[Decimal] = None,
    ) -> ExchangeRate:
        if rate <= 0:
            raise ValueError("Exchange rate must be positive")
        rate_date = rate_date or date.today()
        row = self.session.scalars(
            select(ExchangeRate).where(
                ExchangeRate.base_currency == base.upper(),
                ExchangeRate.target_currency == target.upper(),
                ExchangeRate.source == source,
                ExchangeRate.rate_date == rate_date,
            )
        ).first()
        if row is None:
            row = ExchangeRate(
                base_currency=base.upper(),
                target_currency=target.upper(),
                source=source,
                rate_date=rate_date,
                rate=rate,
            )
            self.session.add(row)
        row.rate = rate
        row.bid_rate = bid
        row.ask_rate = ask
        self.session.flush()
        return row

    def update_rates(
        self,
        provider: Optional[str] = None,
        currencies: Optional[Iterable[str]] = None,
        account_only: bool = False,
    ) -> int:
        provider = (provider or self.settings.fx_provider or "frankfurter").lower()
        if provider not in PROVIDERS:
            raise ValueError(f"Unsupported FX provider: {provider}")

        if currencies is not None:
            allowed = sorted({code.upper() for code in currencies})
        elif account_only:
            allowed = self.account_currencies()
        else:
            allowed = sorted(self.session.scalars(select(Currency.code)).all())
        if not allowed:
            return 0

        try:
            quotes = self.fetch_quotes(provider, allowed)
        except ProviderError as exc:
            logger.warning(f"fx_refresh_failed: provider={provider} error={exc}")
            return 0

        markup_bps = self.settings.fx_markup_bps
        factor = Decimal("1") - (Decimal(markup_bps) / Decimal("10000"))
        count = 0
        for quote in quotes:
            rate = quote.rate * factor if markup_bps else quote.rate
            self.set_rate(
                quote.base,
                quote.quote,
                rate,
                source=provider,
                rate_date=quote.rate_date,
                bid=quote.bid,
                ask=quote.ask,
            )
            count += 1
        self.session.commit()
        logger.info(f"fx_refresh: provider={provider} rates={count}")
        return count

    def fetch_quotes(self, provider: str, allowed: list[str]) -> list[FxQuote]:
        timeout = self.settings.fx_timeout_secs
        base = self.settings.default_currency
        if provider == "frankfurter":
            return _fetch_frankfurter(base, tuple(allowed), date.today(), timeout=timeout)
        if provider == "exchangerate_api":
            key = self.settings.exchangerate_api_key
            if not key:
                logger.warning("fx_refresh_skipped: provider=exchangerate_api reason=no_api_key")
                return []
            quotes = _fetch_exchangerate_api(key, base, date.today(), timeout=timeout)
            return [q for q in quotes if q.quote in allowed]
        if provider == "open_exchange_rates":
            key = self.settings.exchangerate_api_key
            if not key:
                logger.warning(
                    "fx_refresh_skipped: provider=open_exchange_rates reason=no_api_key"
                )
                return []
            quotes = _fetch_open_exchange_rates(key, base, date.today(), timeout=timeout)
            return [q for q in quotes if q.quote in allowed]
        if provider == "vietcombank":
            if "VND" not in allowed:
                return []
            quotes = _fetch_vietcombank(date.today(), timeout=timeout)
            return [q for q in quotes if q.base in allowed]
        return self._payoneer_quotes(allowed)

    def _payoneer_quotes(self, allowed: list[str]) -> list[FxQuote]:
        supported = [code for code in PAYONEER_CURRENCIES if code in allowed]
        key = self.settings.exchangerate_api_key
        quotes: list[FxQuote] = []
        if not key:
            logger.warning("fx_payoneer: reason=no_api_key using=existing_rates")
            seen: set[tuple[str, str]] = set()
            stmt = (
                select(ExchangeRate)
                .where(
                    ExchangeRate.base_currency.in_(supported),
                    ExchangeRate.target_currency.in_(supported),
                    ExchangeRate.source != "payoneer",
                )
                .order_by(ExchangeRate.rate_date.desc(), ExchangeRate.id.desc())
            )
            now = datetime.now(timezone.utc)
            for row in self.session.scalars(stmt):
                pair = (row.base_currency, row.target_currency)
                if pair in seen:
                    continue
                seen.add(pair)
                quotes.append(
                    FxQuote(
                        provider="payoneer",
                        base=row.base_currency,
                        quote=row.target_currency,
                        rate=apply_payoneer_fee(Decimal(row.rate)),
                        rate_date=date.today(),
                        fetched_at=now,
                    )
                )
            return quotes

        for base in ("USD", "EUR"):
            if base not in supported:
                continue
            try:
                market = _fetch_exchangerate_api(
                    key, base, date.today(), timeout=self.settings.fx_timeout_secs
                )
            except ProviderError as exc:
                logger.warning(f"fx_payoneer_base_failed: base={base} error={exc}")
                continue
            for quote in market:
                if quote.quote not in supported or quote.quote == base:
                    continue
                quotes.append(
                    FxQuote(
                        provider="payoneer",
                        base=base,
                        quote=quote.quote,
                        rate=apply_payoneer_fee(quote.rate),
                        rate_date=quote.rate_date,
                        fetched_at=quote.fetched_at,
                    )
                )
        return quotes


def apply_payoneer_fee(rate: Decimal) -> Decimal:
    return rate * (Decimal("1") - PAYONEER_FEE_PERCENT / Decimal("100"))


def _get(url: str, *, timeout: float, accept: str = "application/json") -> bytes:
    req = Request(url, headers={"Accept": accept})
    try:
        with urlopen(req, timeout=timeout) as resp:
            return resp.read()
    except (URLError, TimeoutError) as exc:
        raise ProviderError(f"Request failed: {url.split('?')[0]}") from exc


def _get_json(url: str, *, timeout: float) -> dict:
    try:
        return json.loads(_get(url, timeout=timeout).decode("utf-8"))
    except json.JSONDecodeError as exc:
        raise ProviderError("Unexpected FX provider response") from exc


def _decimal(value) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ProviderError(f"Invalid rate value: {value!r}") from exc


def _quotes_from_map(
    provider: str, base: str, rates: dict, rate_date: date
) -> list[FxQuote]:
    fetched_at = datetime.now(timezone.utc)
    return [
        FxQuote(
            provider=provider,
            base=base,
            quote=code,
            rate=_decimal(value),
            rate_date=rate_date,
            fetched_at=fetched_at,
        )
        for code, value in sorted(rates.items())
        if code != base
    ]


@lru_cache(maxsize=256)
def _fetch_frankfurter(
    base: str, symbols: tuple[str, ...], on_date: date, *, timeout: float
) -> list[FxQuote]:
    # unsupported codes in ?to= fail the whole request, so filter locally
    query = urlencode({"from": base})
    payload = _get_json(f"https://api.frankfurter.app/latest?{query}", timeout=timeout)
    try:
        rates = payload["rates"]
        effective_date = date.fromisoformat(payload["date"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ProviderError("Unexpected FX provider response") from exc
    wanted = {code: value for code, value in rates.items() if code in symbols}
    return _quotes_from_map("frankfurter", base, wanted, effective_date)


@lru_cache(maxsize=64)
def _fetch_exchangerate_api(
    api_key: str, base: str, on_date: date, *, timeout: float
) -> list[FxQuote]:
    payload = _get_json(
        f"https://v6.exchangerate-api.com/v6/{api_key}/latest/{base}", timeout=timeout
    )
    if payload.get("result") not in (None, "success"):
        raise ProviderError(f"Provider error: {payload.get('error-type', 'unknown')}")
    try:
        rates = payload["conversion_rates"]
    except KeyError as exc:
        raise ProviderError("Unexpected FX provider response") from exc
    return _quotes_from_map("exchangerate_api", base, rates, on_date)


@lru_cache(maxsize=64)
def _fetch_open_exchange_rates(
    app_id: str, base: str, on_date: date, *, timeout: float
) -> list[FxQuote]:
    query = urlencode({"app_id": app_id, "base": base})
    payload = _get_json(f"https://openexchangerates.org/api/latest.json?{query}", timeout=timeout)
    try:
        rates = payload["rates"]
    except KeyError as exc:
        raise ProviderError("Unexpected FX provider response") from exc
    return _quotes_from_map("open_exchange_rates", base, rates, on_date)


@lru_cache(maxsize=16)
def _fetch_vietcombank(on_date: date, *, timeout: float) -> list[FxQuote]:
    body = _get(
        "https://portal.vietcombank.com.vn/Usercontrols/TVPortal.TyGia/pXML.aspx",
        timeout=timeout,
        accept="application/xml",
    )
    try:
        root = ET.fromstring(body)
    except ET.ParseError as exc:
        raise ProviderError("Failed to parse Vietcombank XML response") from exc

    def number(raw: Optional[str]) -> Optional[Decimal]:
        raw = (raw or "").replace(",", "").strip()
        if not raw or raw == "-":
            return None
        return _decimal(raw)

    fetched_at = datetime.now(timezone.utc)
    quotes: list[FxQuote] = []
    for node in root.iter("Exrate"):
        code = (node.get("CurrencyCode") or "").strip()
        transfer = number(node.get("Transfer"))
        if not code or transfer is None:
            continue
        quotes.append(
            FxQuote(
                provider="vietcombank",
                base=code,
                quote="VND",
                rate=transfer,
                rate_date=on_date,
                fetched_at=fetched_at,
                bid=number(node.get("Buy")),
                ask=number(node.get("Sell")),
            )
        )
    return quotes
