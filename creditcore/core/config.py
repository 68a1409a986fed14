from functools import lru_cache
from typing import Any, List

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_csv_list(v: Any, default: List[str]) -> List[str]:
    try:
        if v is None or v == "":
            return default.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return default.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or default.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or default.copy()
    except Exception:
        return default.copy()


class PlanLimits(BaseModel):
    """Per-plan usage policy. max_daily=None means unlimited."""
    max_daily: int | None = None
    cooldown_minutes: int = 0


def _default_usage_limits() -> dict[str, PlanLimits]:
    return {
        "trial": PlanLimits(max_daily=5, cooldown_minutes=1),
        "basic": PlanLimits(max_daily=20),
        "pro": PlanLimits(max_daily=30),
        "elite": PlanLimits(max_daily=None),
    }


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="creditcore", alias="MONGODB_DB_NAME")

    # Redis (arq worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_csv_list(getattr(self, "cors_origins_raw", None), _DEFAULT_CORS)

    # Wallets
    trial_starting_balance: int = Field(default=0, alias="TRIAL_STARTING_BALANCE")
    admin_emails_raw: str = Field(default="", alias="ADMIN_EMAILS", description="Comma-separated or JSON list")
    admin_welcome_bonus: int = Field(default=5000, alias="ADMIN_WELCOME_BONUS")

    @property
    def admin_emails(self) -> List[str]:
        return [e.lower() for e in _parse_csv_list(getattr(self, "admin_emails_raw", None), [])]

    # Usage policy per plan (trial, basic, pro, elite)
    usage_limits: dict[str, PlanLimits] = Field(default_factory=_default_usage_limits, alias="USAGE_LIMITS")

    # Ledger
    pending_order_timeout_minutes: int = Field(default=15, alias="PENDING_ORDER_TIMEOUT_MINUTES")
    balance_change_stream: bool = Field(default=False, alias="BALANCE_CHANGE_STREAM")


@lru_cache
def get_settings() -> Settings:
    return Settings()
