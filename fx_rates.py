from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional, Protocol, Sequence
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import Settings, get_settings
from currencies import normalize_currency

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """A single provider could not produce a usable rate."""


@dataclass(frozen=True)
class ProviderFailure:
    provider: str
    error: str


class RateUnavailable(RuntimeError):
    def __init__(
        self, base: str, quote: str, failures: Sequence[ProviderFailure]
    ) -> None:
        self.base = base
        self.quote = quote
        self.failures = list(failures)
        last = self.failures[-1].error if self.failures else "no providers configured"
        super().__init__(
            f"No exchange rate for {base}->{quote} after trying "
            f"{len(self.failures)} provider(s). Last error: {last}"
        )


class RateProvider(Protocol):
    name: str

    def quote(self, base: str, quote: str, *, timeout: float) -> Decimal: ...


RATE_PLACES = 12


def quantize_rate(rate: Decimal) -> Decimal:
    """Round ``rate`` to the places the rate columns keep; shorter rates pass as-is."""
    if rate.as_tuple().exponent >= -RATE_PLACES:
        return rate
    return rate.quantize(Decimal(1).scaleb(-RATE_PLACES), rounding=ROUND_HALF_UP)


def parse_rate(value: Any) -> Decimal:
    """Coerce a payload value to a strictly positive, finite Decimal."""
    if isinstance(value, bool) or value is None:
        raise ProviderError(f"Invalid rate in response: {value!r}")
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ProviderError(f"Invalid rate in response: {value!r}") from exc
    if rate.is_finite():
        rate = quantize_rate(rate)
    if not rate.is_finite() or rate <= 0:
        raise ProviderError(f"Invalid rate in response: {value!r}")
    return rate


def _get_json(url: str, *, timeout: float) -> Any:
    req = Request(url, headers={"Accept": "application/json"})
    try:
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except (URLError, TimeoutError, OSError, ValueError) as exc:
        # HTTPError is a URLError, so non-2xx statuses land here too.
        raise ProviderError(f"Request to {url} failed: {exc}") from exc


class FrankfurterProvider:
    name = "frankfurter"
    base_url = "https://api.frankfurter.app"

    def quote(self, base: str, quote: str, *, timeout: float) -> Decimal:
        payload = _get_json(
            f"{self.base_url}/latest?from={base}&to={quote}", timeout=timeout
        )
        try:
            value = payload["rates"][quote]
        except (KeyError, TypeError) as exc:
            raise ProviderError("Unexpected Frankfurter response") from exc
        return parse_rate(value)


class OpenExchangeRatesApiProvider:
    name = "open_er_api"
    base_url = "https://open.er-api.com/v6/latest"

    def quote(self, base: str, quote: str, *, timeout: float) -> Decimal:
        payload = _get_json(f"{self.base_url}/{base}", timeout=timeout)
        if not isinstance(payload, dict):
            raise ProviderError("Unexpected ExchangeRate-API response")
        if payload.get("result") == "error":
            raise ProviderError(payload.get("error-type") or "API error")
        try:
            value = payload["rates"][quote]
        except (KeyError, TypeError) as exc:
            raise ProviderError("Unexpected ExchangeRate-API response") from exc
        return parse_rate(value)


class FawazProvider:
    name = "fawaz"
    urls = (
        "https://cdn.jsdelivr.net/npm/@fawazahmed0/currency-api@latest/v1/currencies/{base}.json",
        "https://latest.currency-api.pages.dev/v1/currencies/{base}.json",
    )

    def quote(self, base: str, quote: str, *, timeout: float) -> Decimal:
        base_lower = base.lower()
        quote_lower = quote.lower()
        last_error: Optional[ProviderError] = None
        # The second URL mirrors the same dataset; both belong to one attempt.
        for template in self.urls:
            try:
                payload = _get_json(template.format(base=base_lower), timeout=timeout)
                try:
                    value = payload[base_lower][quote_lower]
                except (KeyError, TypeError) as exc:
                    raise ProviderError("Unexpected Fawaz response") from exc
                return parse_rate(value)
            except ProviderError as exc:
                logger.info(f"fx_mirror_failed: provider={self.name} error={exc}")
                last_error = exc
        raise ProviderError(f"All Fawaz mirrors failed: {last_error}")


class ExchangeRateHostProvider:
    name = "exchangerate_host"
    base_url = "https://api.exchangerate.host/convert"

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    def quote(self, base: str, quote: str, *, timeout: float) -> Decimal:
        payload = _get_json(
            f"{self.base_url}?from={base}&to={quote}&amount=1"
            f"&access_key={self.api_key}",
            timeout=timeout,
        )
        if not isinstance(payload, dict):
            raise ProviderError("Unexpected exchangerate.host response")
        if payload.get("success") is False:
            info = (payload.get("error") or {}).get("info")
            raise ProviderError(info or "API error")
        info = payload.get("info") or {}
        value = info.get("rate")
        if value is None:
            value = info.get("quote")
        if value is None:
            value = payload.get("result")
        return parse_rate(value)


class RateResolver:
    """Ask providers in order for a rate; the first usable answer wins.

    Nothing is cached: a caller that needs one rate across several steps must
    resolve once and pass the value along.
    """

    def __init__(self, providers: Sequence[RateProvider], *, timeout: float) -> None:
        self.providers = tuple(providers)
        self.timeout = timeout

    def resolve(self, from_currency: str, to_currency: str) -> Decimal:
        base = normalize_currency(from_currency)
        quote = normalize_currency(to_currency)
        if base == quote:
            return Decimal("1")

        failures: list[ProviderFailure] = []
        for provider in self.providers:
            logger.info(f"fx_quote: provider={provider.name} pair={base}->{quote}")
            try:
                rate = parse_rate(provider.quote(base, quote, timeout=self.timeout))
            except Exception as exc:
                logger.warning(
                    f"fx_quote_failed: provider={provider.name} pair={base}->{quote} "
                    f"error={exc}"
                )
                failures.append(ProviderFailure(provider.name, str(exc)))
                continue
            logger.info(
                f"fx_quote_ok: provider={provider.name} pair={base}->{quote} rate={rate}"
            )
            return rate

        logger.error(
            f"fx_unavailable: pair={base}->{quote} "
            f"failures={[(f.provider, f.error) for f in failures]}"
        )
        raise RateUnavailable(base, quote, failures)


def build_rate_resolver(settings: Optional[Settings] = None) -> RateResolver:
    settings = settings or get_settings()
    providers: list[RateProvider] = []
    for name in settings.fx_providers:
        if name == FrankfurterProvider.name:
            providers.append(FrankfurterProvider())
        elif name == OpenExchangeRatesApiProvider.name:
            providers.append(OpenExchangeRatesApiProvider())
        elif name == FawazProvider.name:
            providers.append(FawazProvider())
        elif name == ExchangeRateHostProvider.name:
            if settings.exchangerate_host_api_key:
                providers.append(
                    ExchangeRateHostProvider(settings.exchangerate_host_api_key)
                )
        else:
            raise ValueError(f"Unsupported FX provider: {name}")
    return RateResolver(providers, timeout=settings.fx_timeout_secs)
