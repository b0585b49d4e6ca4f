import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_user_id: str,
        bill_reminder_days: list[int],
        budget_warning_pct: float,
        budget_exceeded_pct: float,
        catch_up_mode: str,
        max_catch_up: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_user_id = default_user_id
        self.bill_reminder_days = bill_reminder_days
        self.budget_warning_pct = budget_warning_pct
        self.budget_exceeded_pct = budget_exceeded_pct
        self.catch_up_mode = catch_up_mode
        self.max_catch_up = max_catch_up
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINTRACK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_days(raw: str) -> list[int]:
    days = {int(part) for part in raw.split(",") if part.strip()}
    if any(d <= 0 for d in days):
        raise ValueError(f"Reminder days must be positive: {raw}")
    return sorted(days)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINTRACK_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINTRACK_TIMEZONE", "Asia/Manila")
    default_user_id = os.getenv("FINTRACK_DEFAULT_USER_ID", "local")
    bill_reminder_days = _parse_days(os.getenv("FINTRACK_BILL_REMINDER_DAYS", "1,3,7"))
    budget_warning_pct = float(os.getenv("FINTRACK_BUDGET_WARNING_PCT", "80"))
    budget_exceeded_pct = float(os.getenv("FINTRACK_BUDGET_EXCEEDED_PCT", "100"))
    catch_up_mode = os.getenv("FINTRACK_CATCH_UP_MODE", "single").lower()
    if catch_up_mode not in ("single", "all"):
        raise ValueError(f"Unsupported catch-up mode: {catch_up_mode}")
    max_catch_up = int(os.getenv("FINTRACK_MAX_CATCH_UP", "366"))
    scheduler_enabled = os.getenv("FINTRACK_SCHEDULER_ENABLED", "1") not in (
        "0",
        "false",
        "no",
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_user_id=default_user_id,
        bill_reminder_days=bill_reminder_days,
        budget_warning_pct=budget_warning_pct,
        budget_exceeded_pct=budget_exceeded_pct,
        catch_up_mode=catch_up_mode,
        max_catch_up=max_catch_up,
        scheduler_enabled=scheduler_enabled,
    )
