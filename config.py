import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        jwt_secret: str,
        jwt_refresh_secret: str,
        access_token_ttl_secs: int,
        refresh_token_ttl_secs: int,
        cookie_secure: bool,
        cookie_samesite: str,
        cors_origin: str,
        frontend_url: str,
        google_client_id: Optional[str],
        google_client_secret: Optional[str],
        google_callback_url: str,
        http_timeout_secs: float,
        scheduler_enabled: bool,
        token_retention_days: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.jwt_secret = jwt_secret
        self.jwt_refresh_secret = jwt_refresh_secret
        self.access_token_ttl_secs = access_token_ttl_secs
        self.refresh_token_ttl_secs = refresh_token_ttl_secs
        self.cookie_secure = cookie_secure
        self.cookie_samesite = cookie_samesite
        self.cors_origin = cors_origin
        self.frontend_url = frontend_url
        self.google_client_id = google_client_id
        self.google_client_secret = google_client_secret
        self.google_callback_url = google_callback_url
        self.http_timeout_secs = http_timeout_secs
        self.scheduler_enabled = scheduler_enabled
        self.token_retention_days = token_retention_days
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "UTC")
    jwt_secret = os.getenv(
        "FINANCE_JWT_SECRET",
        "0f6c1d3a9b2e4f7a8c5d6e1f2a3b4c5d6e7f8091a2b3c4d5e6f708192a3b4c5d",
    )
    jwt_refresh_secret = os.getenv(
        "FINANCE_JWT_REFRESH_SECRET",
        "9e8d7c6b5a4f3e2d1c0b9a8f7e6d5c4b3a2f1e0d9c8b7a6f5e4d3c2b1a0f9e8d",
    )
    access_token_ttl_secs = int(os.getenv("FINANCE_ACCESS_TOKEN_TTL_SECS", "900"))
    refresh_token_ttl_secs = int(
        os.getenv("FINANCE_REFRESH_TOKEN_TTL_SECS", str(7 * 24 * 3600))
    )
    cookie_secure = _env_flag("FINANCE_COOKIE_SECURE", "1")
    cookie_samesite = os.getenv("FINANCE_COOKIE_SAMESITE", "none").lower()
    cors_origin = os.getenv("FINANCE_CORS_ORIGIN", "http://localhost:5173")
    frontend_url = os.getenv("FINANCE_FRONTEND_URL", "http://localhost:5173")
    google_client_id = os.getenv("FINANCE_GOOGLE_CLIENT_ID") or None
    google_client_secret = os.getenv("FINANCE_GOOGLE_CLIENT_SECRET") or None
    google_callback_url = os.getenv(
        "FINANCE_GOOGLE_CALLBACK_URL",
        "http://localhost:3000/api/auth/google/callback",
    )
    http_timeout_secs = float(os.getenv("FINANCE_HTTP_TIMEOUT_SECS", "10"))
    scheduler_enabled = _env_flag("FINANCE_SCHEDULER_ENABLED", "1")
    token_retention_days = int(os.getenv("FINANCE_TOKEN_RETENTION_DAYS", "30"))
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        jwt_secret=jwt_secret,
        jwt_refresh_secret=jwt_refresh_secret,
        access_token_ttl_secs=access_token_ttl_secs,
        refresh_token_ttl_secs=refresh_token_ttl_secs,
        cookie_secure=cookie_secure,
        cookie_samesite=cookie_samesite,
        cors_origin=cors_origin,
        frontend_url=frontend_url,
        google_client_id=google_client_id,
        google_client_secret=google_client_secret,
        google_callback_url=google_callback_url,
        http_timeout_secs=http_timeout_secs,
        scheduler_enabled=scheduler_enabled,
        token_retention_days=token_retention_days,
        log_level=log_level,
    )
