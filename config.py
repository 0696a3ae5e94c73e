import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        push_provider: str,
        firebase_credentials: str,
        push_timeout_secs: float,
        currency_symbol: str,
        deep_link_base: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.push_provider = push_provider
        self.firebase_credentials = firebase_credentials
        self.push_timeout_secs = push_timeout_secs
        self.currency_symbol = currency_symbol
        self.deep_link_base = deep_link_base


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_ALERTS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget_alerts.db"
    database_url = os.getenv("BUDGET_ALERTS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_ALERTS_TIMEZONE", "Europe/Berlin")
    push_provider = os.getenv("BUDGET_ALERTS_PUSH_PROVIDER", "fcm")
    firebase_credentials = os.getenv(
        "BUDGET_ALERTS_FIREBASE_CREDENTIALS", "./serviceAccountKey.json"
    )
    push_timeout_secs = float(os.getenv("BUDGET_ALERTS_PUSH_TIMEOUT_SECS", "10"))
    currency_symbol = os.getenv("BUDGET_ALERTS_CURRENCY_SYMBOL", "€")
    deep_link_base = os.getenv("BUDGET_ALERTS_DEEP_LINK_BASE", "zen://app")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        push_provider=push_provider,
        firebase_credentials=firebase_credentials,
        push_timeout_secs=push_timeout_secs,
        currency_symbol=currency_symbol,
        deep_link_base=deep_link_base,
    )
