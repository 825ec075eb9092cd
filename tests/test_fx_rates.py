from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

import fx_rates
from database import Base
from fx_rates import ExchangeRateService, FxQuote, ProviderError, apply_payoneer_fee
from models import ExchangeRate
from services import seed_currencies


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine)
    seed_currencies(session, "USD")
    return session


def test_latest_direct_rate_wins():
    with _session() as session:
        service = ExchangeRateService(session)
        service.set_rate("USD", "EUR", Decimal("0.8"), rate_date=date(2024, 1, 1))
        service.set_rate("USD", "EUR", Decimal("0.9"), rate_date=date(2024, 5, 1))

        assert service.get_rate("usd", "eur") == Decimal("0.9")
        assert service.get_rate("USD", "USD") == Decimal("1")
        assert service.get_rate("USD", "GBP") is None


def test_reverse_rate_is_inverted():
    with _session() as session:
        service = ExchangeRateService(session)
        service.set_rate("USD", "EUR", Decimal("0.8"), rate_date=date(2024, 1, 1))

        assert service.get_rate("EUR", "USD") == Decimal("1.25")
        assert service.convert(10_000, "EUR", "USD") == 12_500


def test_unknown_source_falls_back_to_any_source():
    with _session() as session:
        service = ExchangeRateService(session)
        service.set_rate("USD", "VND", Decimal("25000"), source="vietcombank", rate_date=date(2024, 5, 1))

        assert service.get_rate("USD", "VND", "payoneer") == Decimal("25000")
        # VND has no minor unit
        assert service.convert(150, "USD", "VND", "payoneer") == 37_500


def test_set_rate_upserts_per_day_and_rejects_non_positive():
    with _session() as session:
        service = ExchangeRateService(session)
        service.set_rate("USD", "EUR", Decimal("0.8"), rate_date=date(2024, 5, 1))
        service.set_rate("USD", "EUR", Decimal("0.85"), rate_date=date(2024, 5, 1))

        assert session.scalar(select(func.count(ExchangeRate.id))) == 1
        assert service.get_rate("USD", "EUR") == Decimal("0.85")
        with pytest.raises(ValueError):
            service.set_rate("USD", "EUR", Decimal("0"))


def test_preview_reports_missing_rate():
    with _session() as session:
        preview = ExchangeRateService(session).preview(1_000, "USD", "JPY")

        assert preview["converted_amount"] is None
        assert preview["error"] == "Exchange rate not found for USD/JPY"


def test_update_rates_rejects_unknown_provider():
    with _session() as session:
        with pytest.raises(ValueError, match="Unsupported FX provider"):
            ExchangeRateService(session).update_rates("bank-of-nowhere")


def test_update_rates_stores_quotes_with_markup(monkeypatch):
    with _session() as session:
        service = ExchangeRateService(session)
        seen = {}

        def fake_fetch(provider, allowed):
            seen["provider"], seen["allowed"] = provider, allowed
            return [
                FxQuote(
                    provider=provider,
                    base="USD",
                    quote="EUR",
                    rate=Decimal("0.9"),
                    rate_date=date(2024, 5, 2),
                    fetched_at=None,
                )
            ]

        monkeypatch.setattr(service, "fetch_quotes", fake_fetch)
        monkeypatch.setattr(service.settings, "fx_markup_bps", 100)

        assert service.update_rates("frankfurter", currencies=["eur", "usd"]) == 1
        assert seen == {"provider": "frankfurter", "allowed": ["EUR", "USD"]}
        row = session.scalars(select(ExchangeRate)).one()
        assert (row.source, row.rate_date) == ("frankfurter", date(2024, 5, 2))
        assert row.rate == Decimal("0.891")


def test_provider_failure_keeps_existing_rates(monkeypatch):
    with _session() as session:
        service = ExchangeRateService(session)
        service.set_rate("USD", "EUR", Decimal("0.9"), rate_date=date(2024, 5, 1))
        session.commit()

        def failing(provider, allowed):
            raise ProviderError("Request failed")

        monkeypatch.setattr(service, "fetch_quotes", failing)

        assert service.update_rates() == 0
        assert service.get_rate("USD", "EUR") == Decimal("0.9")


def test_frankfurter_response_is_filtered_to_wanted_codes(monkeypatch):
    fx_rates._fetch_frankfurter.cache_clear()
    payload = {"base": "USD", "date": "2024-05-03", "rates": {"EUR": 0.93, "GBP": 0.8, "CHF": 0.91}}
    monkeypatch.setattr(fx_rates, "_get_json", lambda url, timeout: payload)

    quotes = fx_rates._fetch_frankfurter("USD", ("EUR", "GBP"), date(2024, 5, 3), timeout=1)

    assert [(q.quote, q.rate, q.rate_date) for q in quotes] == [
        ("EUR", Decimal("0.93"), date(2024, 5, 3)),
        ("GBP", Decimal("0.8"), date(2024, 5, 3)),
    ]
    fx_rates._fetch_frankfurter.cache_clear()


def test_malformed_frankfurter_response_raises_provider_error(monkeypatch):
    fx_rates._fetch_frankfurter.cache_clear()
    monkeypatch.setattr(fx_rates, "_get_json", lambda url, timeout: {"message": "not found"})

    with pytest.raises(ProviderError):
        fx_rates._fetch_frankfurter("USD", ("EUR",), date(2024, 5, 3), timeout=1)


def test_payoneer_fee_is_half_a_percent():
    assert apply_payoneer_fee(Decimal("1.0")) == Decimal("0.995")
