import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        net_worth_months: int,
        recalc_hour: int,
        recalc_minute: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.net_worth_months = net_worth_months
        self.recalc_hour = recalc_hour
        self.recalc_minute = recalc_minute
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    net_worth_months = int(os.getenv("LEDGER_NET_WORTH_MONTHS", "12"))
    recalc_hour = int(os.getenv("LEDGER_RECALC_HOUR", "3"))
    recalc_minute = int(os.getenv("LEDGER_RECALC_MINUTE", "30"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        net_worth_months=net_worth_months,
        recalc_hour=recalc_hour,
        recalc_minute=recalc_minute,
        log_level=log_level,
    )
