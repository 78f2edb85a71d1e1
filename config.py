import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        attention_days: int,
        attention_ratio: Decimal,
        goal_risk_days: int,
        goal_risk_percent: Decimal,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.attention_days = attention_days
        self.attention_ratio = attention_ratio
        self.goal_risk_days = goal_risk_days
        self.goal_risk_percent = goal_risk_percent
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SPENDGUARD_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("SPENDGUARD_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "spendguard.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("SPENDGUARD_TIMEZONE", "Europe/Berlin")
    attention_days = int(os.getenv("SPENDGUARD_ATTENTION_DAYS", "7"))
    attention_ratio = Decimal(os.getenv("SPENDGUARD_ATTENTION_RATIO", "0.80"))
    goal_risk_days = int(os.getenv("SPENDGUARD_GOAL_RISK_DAYS", "30"))
    goal_risk_percent = Decimal(os.getenv("SPENDGUARD_GOAL_RISK_PERCENT", "25"))
    scheduler_enabled = _env_flag("SPENDGUARD_SCHEDULER_ENABLED", "true")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        attention_days=attention_days,
        attention_ratio=attention_ratio,
        goal_risk_days=goal_risk_days,
        goal_risk_percent=goal_risk_percent,
        scheduler_enabled=scheduler_enabled,
    )
