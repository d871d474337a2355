import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        rollover_hour: int,
        rollover_minute: int,
        default_alert_threshold: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.rollover_hour = rollover_hour
        self.rollover_minute = rollover_minute
        self.default_alert_threshold = default_alert_threshold


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "America/Mexico_City")
    rollover_hour = int(os.getenv("BUDGET_ROLLOVER_HOUR", "0"))
    rollover_minute = int(os.getenv("BUDGET_ROLLOVER_MINUTE", "5"))
    default_alert_threshold = float(
        os.getenv("BUDGET_DEFAULT_ALERT_THRESHOLD", "0.8")
    )
    if not 0 <= default_alert_threshold <= 1:
        raise ValueError("BUDGET_DEFAULT_ALERT_THRESHOLD must be between 0 and 1")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        rollover_hour=rollover_hour,
        rollover_minute=rollover_minute,
        default_alert_threshold=default_alert_threshold,
    )
