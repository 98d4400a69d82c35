import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        recurring_job_schedule: str,
        safety_net_minutes: int,
        run_on_startup: bool,
        enable_scheduler: bool,
        log_level: str,
        first_run_on_start: bool = False,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.recurring_job_schedule = recurring_job_schedule
        self.safety_net_minutes = safety_net_minutes
        self.run_on_startup = run_on_startup
        self.enable_scheduler = enable_scheduler
        self.log_level = log_level
        self.first_run_on_start = first_run_on_start


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    # Crontab syntax: minute hour day month day-of-week
    recurring_job_schedule = os.getenv("RECURRING_JOB_SCHEDULE", "0 2 * * *")
    safety_net_minutes = int(os.getenv("LEDGER_SAFETY_NET_MINUTES", "60"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        recurring_job_schedule=recurring_job_schedule,
        safety_net_minutes=safety_net_minutes,
        run_on_startup=_env_flag("LEDGER_RUN_ON_STARTUP", True),
        enable_scheduler=_env_flag("LEDGER_ENABLE_SCHEDULER", True),
        log_level=os.getenv("LEDGER_LOG_LEVEL", "INFO").upper(),
        # Off: a new rule first fires one full period after its start date.
        first_run_on_start=_env_flag("LEDGER_FIRST_RUN_ON_START", False),
    )
