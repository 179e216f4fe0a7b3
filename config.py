import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

DEFAULT_FX_PROVIDERS = "frankfurter,open_er_api,fawaz,exchangerate_host"


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_currency: str,
        fx_providers: list[str],
        fx_timeout_secs: float,
        exchangerate_host_api_key: Optional[str],
    ) -> None:
        if not 0 < fx_timeout_secs < 10:
            raise ValueError("FX provider timeout must be between 0 and 10 seconds")
        self.database_url = database_url
        self.timezone = timezone
        self.default_currency = default_currency
        self.fx_providers = fx_providers
        self.fx_timeout_secs = fx_timeout_secs
        self.exchangerate_host_api_key = exchangerate_host_api_key


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _split_names(raw: str) -> list[str]:
    return [name.strip().lower() for name in raw.split(",") if name.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    default_currency = os.getenv("LEDGER_DEFAULT_CURRENCY", "USD").strip().upper()
    fx_providers = _split_names(os.getenv("LEDGER_FX_PROVIDERS", DEFAULT_FX_PROVIDERS))
    fx_timeout_secs = float(os.getenv("LEDGER_FX_TIMEOUT_SECS", "5"))
    api_key = os.getenv("LEDGER_EXCHANGERATE_HOST_API_KEY") or None
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_currency=default_currency,
        fx_providers=fx_providers,
        fx_timeout_secs=fx_timeout_secs,
        exchangerate_host_api_key=api_key,
    )
