from typing import Dict, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./outreach.db"
    credential_key: str = ""  # Fernet key; empty stores credentials as-is (dev only)

    # Batch runner
    time_budget_seconds: float = 55.0  # keep under the host's 60s execution ceiling
    max_batches: int = 50
    sync_lock_timeout_seconds: float = 30.0

    # Self-continuation
    continuation_mode: str = "local"  # "local" | "http"
    continuation_base_url: str = "http://127.0.0.1:8000"
    continuation_token: str = ""
    continuation_delay_seconds: float = 1.0
    chain_after: Dict[str, str] = {"smartlead": "replyio"}

    # Historical backfill
    historical_lookback_days: int = 730
    historical_chunk_days: int = 90

    # Stuck-sync recovery sweep
    recovery_enabled: bool = True
    recovery_in_api: bool = False  # run the sweep inside the API process instead of `python -m outreach`
    recovery_interval_minutes: int = 5
    stuck_syncing_minutes: int = 5
    stuck_partial_minutes: int = 10
    stuck_give_up_minutes: int = 30

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
