import json
import logging
from decimal import Decimal
from urllib.error import HTTPError

import pytest

import fx_rates
from config import Settings
from fx_rates import (
    ExchangeRateHostProvider,
    FawazProvider,
    FrankfurterProvider,
    OpenExchangeRatesApiProvider,
    ProviderError,
    RateResolver,
    RateUnavailable,
    build_rate_resolver,
    parse_rate,
)


class FakeProvider:
    def __init__(self, name, result) -> None:
        self.name = name
        self.result = result
        self.calls = []

    def quote(self, base, quote, *, timeout):
        self.calls.append((base, quote, timeout))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeResponse:
    def __init__(self, payload) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


def fake_urlopen(responses, seen):
    """Serve canned payloads keyed by URL; an Exception value is raised."""

    def _urlopen(req, timeout):
        url = req.full_url
        seen.append((url, timeout))
        result = responses[url]
        if isinstance(result, Exception):
            raise result
        return FakeResponse(result)

    return _urlopen


def _settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite://",
        timezone="UTC",
        default_currency="USD",
        fx_providers=["frankfurter", "open_er_api", "fawaz", "exchangerate_host"],
        fx_timeout_secs=5,
        exchangerate_host_api_key=None,
    )
    values.update(overrides)
    return Settings(**values)


def test_same_currency_returns_one_without_calling_providers() -> None:
    provider = FakeProvider("first", Decimal("2"))
    resolver = RateResolver([provider], timeout=3)

    assert resolver.resolve("usd", " USD ") == Decimal("1")
    assert provider.calls == []


def test_falls_back_to_third_provider_and_logs_failures(caplog) -> None:
    first = FakeProvider("first", ProviderError("HTTP 503"))
    second = FakeProvider("second", TimeoutError("timed out"))
    third = FakeProvider("third", Decimal("1.08"))
    fourth = FakeProvider("fourth", Decimal("9"))
    resolver = RateResolver([first, second, third, fourth], timeout=3)

    with caplog.at_level(logging.WARNING, logger="fx_rates"):
        rate = resolver.resolve("USD", "EUR")

    assert rate == Decimal("1.08")
    assert first.calls == [("USD", "EUR", 3)]
    assert second.calls == [("USD", "EUR", 3)]
    assert fourth.calls == []
    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 2
    assert "provider=first" in warnings[0]
    assert "provider=second" in warnings[1]


@pytest.mark.parametrize(
    "bad_rate", [Decimal("0"), Decimal("-1.2"), Decimal("NaN"), float("inf"), None, "abc", True]
)
def test_unusable_rates_count_as_failures(bad_rate) -> None:
    resolver = RateResolver(
        [FakeProvider("bad", bad_rate), FakeProvider("good", 0.92)], timeout=3
    )
    assert resolver.resolve("USD", "EUR") == Decimal("0.92")


def test_all_providers_failing_raises_with_every_failure() -> None:
    resolver = RateResolver(
        [
            FakeProvider("first", ProviderError("HTTP 500")),
            FakeProvider("second", Decimal("0")),
        ],
        timeout=3,
    )

    with pytest.raises(RateUnavailable) as excinfo:
        resolver.resolve("USD", "EUR")

    failures = excinfo.value.failures
    assert [f.provider for f in failures] == ["first", "second"]
    assert "HTTP 500" in failures[0].error
    assert excinfo.value.base == "USD"
    assert excinfo.value.quote == "EUR"


def test_resolver_queries_again_on_every_call() -> None:
    provider = FakeProvider("only", Decimal("1.1"))
    resolver = RateResolver([provider], timeout=3)

    resolver.resolve("USD", "EUR")
    resolver.resolve("USD", "EUR")

    assert len(provider.calls) == 2


def test_invalid_currency_code_is_rejected() -> None:
    resolver = RateResolver([FakeProvider("only", Decimal("1.1"))], timeout=3)
    with pytest.raises(ValueError):
        resolver.resolve("US", "EUR")


def test_frankfurter_reads_rate_for_target(monkeypatch) -> None:
    seen = []
    url = "https://api.frankfurter.app/latest?from=USD&to=EUR"
    monkeypatch.setattr(
        fx_rates,
        "urlopen",
        fake_urlopen({url: {"amount": 1.0, "base": "USD", "rates": {"EUR": 0.9234}}}, seen),
    )

    assert FrankfurterProvider().quote("USD", "EUR", timeout=4) == Decimal("0.9234")
    assert seen == [(url, 4)]


def test_frankfurter_http_error_is_provider_error(monkeypatch) -> None:
    url = "https://api.frankfurter.app/latest?from=USD&to=EUR"
    error = HTTPError(url, 500, "Internal Server Error", hdrs=None, fp=None)
    monkeypatch.setattr(fx_rates, "urlopen", fake_urlopen({url: error}, []))

    with pytest.raises(ProviderError):
        FrankfurterProvider().quote("USD", "EUR", timeout=4)


def test_open_er_api_error_result_is_provider_error(monkeypatch) -> None:
    url = "https://open.er-api.com/v6/latest/USD"
    monkeypatch.setattr(
        fx_rates,
        "urlopen",
        fake_urlopen({url: {"result": "error", "error-type": "unsupported-code"}}, []),
    )

    with pytest.raises(ProviderError, match="unsupported-code"):
        OpenExchangeRatesApiProvider().quote("USD", "EUR", timeout=4)


def test_fawaz_uses_mirror_when_cdn_fails(monkeypatch) -> None:
    seen = []
    cdn = "https://cdn.jsdelivr.net/npm/@fawazahmed0/currency-api@latest/v1/currencies/usd.json"
    mirror = "https://latest.currency-api.pages.dev/v1/currencies/usd.json"
    monkeypatch.setattr(
        fx_rates,
        "urlopen",
        fake_urlopen(
            {cdn: TimeoutError("timed out"), mirror: {"usd": {"eur": 0.91}}}, seen
        ),
    )

    assert FawazProvider().quote("USD", "EUR", timeout=2) == Decimal("0.91")
    assert [url for url, _ in seen] == [cdn, mirror]


def test_exchangerate_host_reads_info_rate(monkeypatch) -> None:
    url = (
        "https://api.exchangerate.host/convert?from=USD&to=EUR&amount=1"
        "&access_key=secret"
    )
    monkeypatch.setattr(
        fx_rates,
        "urlopen",
        fake_urlopen({url: {"success": True, "info": {"quote": 0.93}, "result": 0.93}}, []),
    )

    assert ExchangeRateHostProvider("secret").quote("USD", "EUR", timeout=2) == Decimal(
        "0.93"
    )


def test_build_rate_resolver_skips_keyed_provider_without_key() -> None:
    resolver = build_rate_resolver(_settings())
    assert [p.name for p in resolver.providers] == ["frankfurter", "open_er_api", "fawaz"]
    assert resolver.timeout == 5

    keyed = build_rate_resolver(_settings(exchangerate_host_api_key="secret"))
    assert [p.name for p in keyed.providers][-1] == "exchangerate_host"


def test_build_rate_resolver_rejects_unknown_provider() -> None:
    with pytest.raises(ValueError):
        build_rate_resolver(_settings(fx_providers=["frankfurter", "bogus"]))


def test_settings_reject_long_timeouts() -> None:
    with pytest.raises(ValueError):
        _settings(fx_timeout_secs=30)


def test_parse_rate_keeps_small_rates_exact() -> None:
    assert parse_rate("0.0000393") == Decimal("0.0000393")
    assert parse_rate(0.0000393) == Decimal("0.0000393")
    assert parse_rate(Decimal("0.1234567890125")) == Decimal("0.123456789013")


def test_parse_rate_rejects_rates_that_round_to_zero() -> None:
    with pytest.raises(ProviderError):
        parse_rate("0.0000000000004")
