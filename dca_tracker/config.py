from __future__ import annotations

import logging
import os
from dataclasses import dataclass

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

DEFAULT_DATABASE_URL = "sqlite:///./dca_tracker.db"
DEFAULT_FRONTEND_ORIGIN = "http://localhost:3000"
DEFAULT_PRICE_API_URL = "https://api.coingecko.com/api/v3"
DEFAULT_PRICE_CURRENCY = "brl"


@dataclass(frozen=True)
class Settings:
    """Runtime settings read from the environment.

    Invalid values fall back to the defaults instead of failing startup.
    """

    database_url: str = DEFAULT_DATABASE_URL
    frontend_origin: str = DEFAULT_FRONTEND_ORIGIN
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    oauth_provider: str = "google"
    price_api_url: str = DEFAULT_PRICE_API_URL
    price_currency: str = DEFAULT_PRICE_CURRENCY
    cookie_secure: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", DEFAULT_FRONTEND_ORIGIN),
            supabase_url=os.getenv("SUPABASE_URL") or None,
            supabase_anon_key=os.getenv("SUPABASE_ANON_KEY") or None,
            oauth_provider=os.getenv("OAUTH_PROVIDER", "google").strip() or "google",
            price_api_url=os.getenv("PRICE_API_URL", DEFAULT_PRICE_API_URL).rstrip("/"),
            price_currency=_parse_currency(os.getenv("PRICE_CURRENCY")),
            cookie_secure=_parse_bool(os.getenv("COOKIE_SECURE")),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )


def configure_logging(level: str = "INFO") -> None:
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logging.basicConfig(level=resolved, format=LOG_FORMAT)


def _parse_currency(value: str | None) -> str:
    if not value:
        return DEFAULT_PRICE_CURRENCY
    normalized = value.strip().lower()
    if len(normalized) != 3 or not normalized.isalpha():
        return DEFAULT_PRICE_CURRENCY
    return normalized


def _parse_bool(value: str | None) -> bool:
    if not value:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}
