from __future__ import annotations

from dataclasses import dataclass
import os


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    app_env: str
    database_url: str
    sql_echo: bool
    jwt_secret: str
    jwt_algorithm: str
    access_token_ttl_minutes: int
    cors_origins: list[str]
    log_level: str
    whatsapp_verify_token: str
    public_base_url: str
    logo_fetch_timeout_seconds: float
    currency_label: str
    default_company_name: str


def load_settings() -> Settings:
    app_env = os.getenv("APP_ENV", "development")
    return Settings(
        app_env=app_env,
        database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./autoinvoice.db"),
        sql_echo=_parse_bool(os.getenv("SQL_ECHO"), False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret"),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        access_token_ttl_minutes=int(os.getenv("ACCESS_TOKEN_TTL_MINUTES", "30")),
        cors_origins=_parse_csv(os.getenv("CORS_ORIGINS", "http://localhost:5173")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN", "autoinvoice_verify_token"),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:5000").rstrip("/"),
        logo_fetch_timeout_seconds=float(os.getenv("LOGO_FETCH_TIMEOUT_SECONDS", "10")),
        currency_label=os.getenv("CURRENCY_LABEL", "RM"),
        default_company_name=os.getenv("DEFAULT_COMPANY_NAME", "My Company"),
    )


settings = load_settings()
