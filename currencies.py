import re
from typing import Mapping, Optional

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")

SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "NGN": "₦",
    "JPY": "¥",
    "CAD": "$",
    "AUD": "$",
}

COUNTRY_TO_CURRENCY = {
    # Africa
    "NG": "NGN",
    "ZA": "ZAR",
    "KE": "KES",
    "GH": "GHS",
    "EG": "EGP",
    # Americas
    "US": "USD",
    "CA": "CAD",
    "MX": "MXN",
    "BR": "BRL",
    "AR": "ARS",
    # Europe
    "GB": "GBP",
    "DE": "EUR",
    "FR": "EUR",
    "IT": "EUR",
    "ES": "EUR",
    "NL": "EUR",
    "BE": "EUR",
    "AT": "EUR",
    "PT": "EUR",
    "IE": "EUR",
    "FI": "EUR",
    "GR": "EUR",
    "CH": "CHF",
    "SE": "SEK",
    "NO": "NOK",
    "DK": "DKK",
    "PL": "PLN",
    "CZ": "CZK",
    "HU": "HUF",
    "RO": "RON",
    # Asia
    "JP": "JPY",
    "CN": "CNY",
    "IN": "INR",
    "KR": "KRW",
    "SG": "SGD",
    "HK": "HKD",
    "TW": "TWD",
    "TH": "THB",
    "MY": "MYR",
    "ID": "IDR",
    "PH": "PHP",
    "VN": "VND",
    "PK": "PKR",
    "BD": "BDT",
    "AE": "AED",
    "SA": "SAR",
    "IL": "ILS",
    "TR": "TRY",
    # Oceania
    "AU": "AUD",
    "NZ": "NZD",
}

# Checked in order; "XX" is Cloudflare's marker for an unknown country.
COUNTRY_HEADERS = (
    "cf-ipcountry",
    "x-country-code",
    "x-vercel-ip-country",
    "x-appengine-country",
)


def is_valid_currency(code: object) -> bool:
    return isinstance(code, str) and CURRENCY_PATTERN.match(code) is not None


def normalize_currency(code: Optional[str]) -> str:
    normalized = (code or "").strip().upper()
    if not is_valid_currency(normalized):
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def symbol_for(code: Optional[str]) -> str:
    if not code:
        return ""
    normalized = code.strip().upper()
    return SYMBOLS.get(normalized, normalized)


def currency_from_headers(headers: Mapping[str, str]) -> Optional[str]:
    lowered = {key.lower(): value for key, value in headers.items()}
    for header in COUNTRY_HEADERS:
        country = (lowered.get(header) or "").strip().upper()
        if not country or country == "XX":
            continue
        return COUNTRY_TO_CURRENCY.get(country)
    return None
