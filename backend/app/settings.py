from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _list_env(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values = [item.strip() for item in raw.split(",") if item.strip()]
    return values or default


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    remote_url_api: str
    remote_api_key: str
    remote_timeout_seconds: float
    webhook_auth_secret: str
    contacts_response_limit: int
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    cors_allow_origins: list[str]


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/wa_gateway.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        remote_url_api=os.getenv("REMOTE_URL_API", "").strip().rstrip("/"),
        remote_api_key=os.getenv("REMOTE_API_KEY", "").strip(),
        remote_timeout_seconds=max(1.0, min(120.0, _float_env("REMOTE_TIMEOUT_SECONDS", 15.0))),
        webhook_auth_secret=os.getenv("WHATSAPP_WEBHOOK_AUTH", "").strip(),
        contacts_response_limit=max(1, _int_env("CONTACTS_RESPONSE_LIMIT", 10)),
        auth_enabled=_bool_env("AUTH_ENABLED", True),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        cors_allow_origins=_list_env("CORS_ALLOW_ORIGINS", ["*"]),
    )
