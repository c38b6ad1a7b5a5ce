"""Application settings

All environment values are managed through the .env file. Never hard-code them.
"""

from pathlib import Path

from pydantic_settings import BaseSettings

# Project root: the parent of backend/
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Environment-backed settings"""

    # DB
    DATABASE_URL: str = "sqlite:///./historical.db"
    DB_ECHO: bool = False           # SQLAlchemy SQL logging
    DB_POOL_SIZE: int = 5           # connection pool size
    DB_MAX_OVERFLOW: int = 10       # pool overflow allowance

    # Historical pull admission policy
    PUBLIC_HISTORICAL_MAX_RANGE_DAYS: int = 30
    ADMIN_HISTORICAL_MAX_RANGE_DAYS: int = 365
    PUBLIC_HISTORICAL_COOLDOWN_SECONDS: int = 300  # 0 disables the cooldown

    # Task leases / batch ingestion
    HISTORICAL_TASK_CLAIM_TTL_SECONDS: int = 900   # floor of 60s enforced by the lease store
    HISTORICAL_MAX_BATCH_ROWS: int = 50
    HISTORICAL_MAX_TASK_ATTEMPTS: int = 3          # only used by the expired-lease sweep
    HISTORICAL_RECENT_TASK_LIMIT: int = 30

    # Admin routes (Bearer token). Empty string rejects every admin call.
    ADMIN_API_TOKEN: str = ""

    # Reference worker
    HISTORICAL_API_BASE: str = "http://localhost:8000/api"
    HISTORICAL_WORKER_BATCH_SIZE: int = 50
    HISTORICAL_WORKER_MAX_RETRIES: int = 4
    HISTORICAL_WORKER_BACKOFF_BASE: float = 0.5   # seconds
    HISTORICAL_WORKER_BACKOFF_MAX: float = 10.0   # seconds
    HISTORICAL_WORKER_POLL_INTERVAL: float = 5.0  # wait between empty claims (seconds)
    HISTORICAL_WORKER_TIMEOUT: int = 30           # request timeout (seconds)

    # Wayback CDR replay collector
    WAYBACK_TIMEOUT: int = 30
    WAYBACK_MAX_SNAPSHOTS: int = 2
    COLLECTOR_PRODUCT_CAP: int = 80

    model_config = {
        "env_file": str(_PROJECT_ROOT / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


# singleton instance
settings = Settings()
