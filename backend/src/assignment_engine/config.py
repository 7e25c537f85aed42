from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from urllib.parse import urlparse

from .rate_limit import RateLimitBudget


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def normalize_app_url(value: str | None, default: str = "http://localhost:3000") -> str:
    raw = (value or "").strip() or default
    if not raw.startswith(("http://", "https://")):
        raw = f"https://{raw}"
    return raw.rstrip("/")


@dataclass(frozen=True)
class Settings:
    app_name: str = "VoiceJournal Assignments"
    api_prefix: str = "/v1"
    app_env: str = "development"
    web_app_url: str = "http://localhost:3000"
    assignment_store_backend: str = "inmemory"
    database_url: str = ""
    notifier_sender_type: str = "stub"
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    notifier_timeout_seconds: float = 10
    notifier_max_workers: int = 8
    rate_limit_general_per_minute: int = 100
    rate_limit_auth_per_minute: int = 10
    rate_limit_upload_per_minute: int = 20
    rate_limit_send_per_hour: int = 30
    trust_proxy_headers: bool = False
    trusted_proxy_ips: tuple[str, ...] = ()
    runtime_secret_guard_mode: str = "warn"
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    def rate_limit_budgets(self) -> dict[str, RateLimitBudget]:
        minute = timedelta(minutes=1)
        return {
            "general": RateLimitBudget(max_requests=self.rate_limit_general_per_minute, window=minute),
            "auth": RateLimitBudget(max_requests=self.rate_limit_auth_per_minute, window=minute),
            "upload": RateLimitBudget(max_requests=self.rate_limit_upload_per_minute, window=minute),
            "send": RateLimitBudget(max_requests=self.rate_limit_send_per_hour, window=timedelta(hours=1)),
        }


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("ASSIGNMENTS_APP_NAME", "VoiceJournal Assignments"),
        api_prefix=os.getenv("ASSIGNMENTS_API_PREFIX", "/v1"),
        app_env=os.getenv("APP_ENV", "development").strip().lower(),
        web_app_url=normalize_app_url(os.getenv("WEB_APP_URL")),
        assignment_store_backend=os.getenv("ASSIGNMENT_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        notifier_sender_type=os.getenv("NOTIFIER_SENDER_TYPE", "stub"),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        notifier_timeout_seconds=_as_float(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 10),
        notifier_max_workers=_as_int(os.getenv("NOTIFIER_MAX_WORKERS"), 8),
        rate_limit_general_per_minute=_as_int(os.getenv("RATE_LIMIT_GENERAL_PER_MINUTE"), 100),
        rate_limit_auth_per_minute=_as_int(os.getenv("RATE_LIMIT_AUTH_PER_MINUTE"), 10),
        rate_limit_upload_per_minute=_as_int(os.getenv("RATE_LIMIT_UPLOAD_PER_MINUTE"), 20),
        rate_limit_send_per_hour=_as_int(os.getenv("RATE_LIMIT_SEND_PER_HOUR"), 30),
        trust_proxy_headers=_as_bool(os.getenv("TRUST_PROXY_HEADERS"), False),
        trusted_proxy_ips=_as_csv_tuple(os.getenv("TRUSTED_PROXY_IPS")),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.notifier_sender_type.strip().lower() == "http":
        if not settings.notifier_api_base_url.strip():
            issues.append("NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http")
        if not settings.notifier_api_key.strip():
            issues.append("NOTIFIER_API_KEY is required when NOTIFIER_SENDER_TYPE=http")
    if settings.assignment_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when ASSIGNMENT_STORE_BACKEND=postgres")
    if settings.is_production:
        hostname = (urlparse(settings.web_app_url).hostname or "").lower()
        if hostname in {"localhost", "127.0.0.1", "0.0.0.0"}:
            issues.append("WEB_APP_URL points at a local host while APP_ENV=production")
    if any(value <= 0 for value in (
        settings.rate_limit_general_per_minute,
        settings.rate_limit_auth_per_minute,
        settings.rate_limit_upload_per_minute,
        settings.rate_limit_send_per_hour,
    )):
        issues.append("RATE_LIMIT_* budgets must be positive integers")
    return tuple(issues)
