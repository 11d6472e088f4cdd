"""Configuration loader.

Reads environment variables and `.env` to configure the service.
Durations are human-readable strings such as ``45s``, ``1h30m`` or ``500ms``.
"""

from __future__ import annotations

import datetime as _dt
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv

# Load variables from a .env file if present (project root).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _parse_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|us|µs|ns|h|m|s)")
_DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 1e-3,
    "us": 1e-6,
    "µs": 1e-6,
    "ns": 1e-9,
}


def parse_duration(value: str) -> _dt.timedelta:
    """Parse ``1h30m``-style strings into a timedelta.

    A bare ``0`` is accepted; anything else must be a sequence of
    number+unit pairs covering the whole string.
    """
    text = (value or "").strip()
    if text == "0":
        return _dt.timedelta(0)
    if not text:
        raise ValueError("empty duration")
    pos = 0
    seconds = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return _dt.timedelta(seconds=seconds)


def _get_duration(name: str, default: str) -> _dt.timedelta:
    raw = _get_env(name, default) or default
    try:
        return parse_duration(raw)
    except ValueError as e:
        raise ValueError(f"{name}: {e}") from e


def _get_list(name: str) -> List[str]:
    raw = _get_env(name, "") or ""
    return [s.strip() for s in raw.split(",") if s.strip()]


# ---- Accounts ----------------------------------------------------------------

# Comma-separated. Each entry is `email` or `email|fixed user agent`.
_ACCOUNTS_RAW: List[str] = _get_list("TGTG_ACCOUNTS")

# Accept-Language sent with every request.
LANGUAGE: str = _get_env("TGTG_LANGUAGE", "en-GB") or "en-GB"

# Base URL of the mobile API. Keep the trailing slash.
BASE_URL: str = _get_env("TGTG_BASE_URL", "https://apptoogoodtogo.com/api/") or ""

# Optional app version used in generated user agents (skips Play Store scraping).
APK_VERSION: Optional[str] = _get_env("APK_VERSION")

# ---- Remote endpoints (relative to BASE_URL) ---------------------------------

AUTH_BY_EMAIL_ENDPOINT = "auth/v4/authByEmail"
AUTH_BY_POLLING_ID_ENDPOINT = "auth/v4/authByRequestPollingId"
REFRESH_TOKEN_ENDPOINT = "auth/v3/token/refresh"
USER_INFORMATION_ENDPOINT = "user/v2"
ITEM_ENDPOINT = "item/v7/"
ACTIVE_ORDERS_ENDPOINT = "order/v7/active"
CREATE_ORDER_ENDPOINT = "order/v7/create"
ORDER_ENDPOINT = "order/v7"
PAYMENT_METHODS_ENDPOINT = "paymentMethod/v1/"
PAYMENT_ENDPOINT = "payment/v3"

# Challenge pages served instead of an API answer.
CAPTCHA_URL_PREFIX = "https://geo.captcha-delivery.com"

DEVICE_TYPE = "ANDROID"

# ---- Pacing & sessions -------------------------------------------------------

AVERAGE_REQUESTS_PERIOD = _get_duration("AVERAGE_REQUESTS_PERIOD", "45s")
TOO_MANY_REQUESTS_PAUSE_PERIOD = _get_duration("TOO_MANY_REQUESTS_PAUSE_PERIOD", "1h30m")
ACTIVE_ORDERS_REMINDER_PERIOD = _get_duration("ACTIVE_ORDERS_REMINDER_PERIOD", "10m")
LOGIN_EMAIL_VALIDATION_REQUESTS_PERIOD = _get_duration("LOGIN_EMAIL_VALIDATION_REQUESTS_PERIOD", "15s")
LOGIN_EMAIL_VALIDATION_TIMEOUT = _get_duration("LOGIN_EMAIL_VALIDATION_TIMEOUT", "30m")
LOGIN_VALIDITY_DURATION = _get_duration("LOGIN_VALIDITY_DURATION", "48h")
TOKEN_VALIDITY_DURATION = _get_duration("TOKEN_VALIDITY_DURATION", "8h")
HTTP_TIMEOUT = _get_duration("HTTP_TIMEOUT", "15s")

# Directory holding one session snapshot per account.
SESSION_DIR: str = _get_env("SESSION_DIR", "secrets") or "secrets"

# ---- Search ------------------------------------------------------------------

SEARCH_LATITUDE: float = _parse_float(_get_env("SEARCH_LATITUDE"), 0.0)
SEARCH_LONGITUDE: float = _parse_float(_get_env("SEARCH_LONGITUDE"), 0.0)
SEARCH_RADIUS_KM: int = _parse_int(_get_env("SEARCH_RADIUS_KM"), 3)
SEARCH_MAX_RESULTS: int = _parse_int(_get_env("SEARCH_MAX_RESULTS"), 20)
SEARCH_FAVORITES_ONLY: bool = _parse_bool(_get_env("SEARCH_FAVORITES_ONLY"), True)
SEARCH_WITH_STOCK_ONLY: bool = _parse_bool(_get_env("SEARCH_WITH_STOCK_ONLY"), True)

# ---- Logging -----------------------------------------------------------------

# Logging level: DEBUG, INFO, WARNING, ERROR.
LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO") or "INFO"

# Log request/response headers.
VERBOSE: bool = _parse_bool(_get_env("VERBOSE", "false"), False)

# ---- Notifications -----------------------------------------------------------

# "", "email" or "discord"
SEND_ACTION: str = (_get_env("SEND_ACTION", "") or "").strip().lower()

DISCORD_WEBHOOK_URL: Optional[str] = _get_env("DISCORD_WEBHOOK_URL")

EMAIL_SMTP_HOST: str = _get_env("EMAIL_SMTP_HOST", "smtp.gmail.com") or "smtp.gmail.com"
EMAIL_SMTP_PORT: int = _parse_int(_get_env("EMAIL_SMTP_PORT"), 587)  # 587 (TLS) or 465 (SSL)
EMAIL_USE_TLS: bool = _parse_bool(_get_env("EMAIL_USE_TLS", "true"), True)
EMAIL_USERNAME: Optional[str] = _get_env("EMAIL_USERNAME")
EMAIL_PASSWORD: Optional[str] = _get_env("EMAIL_PASSWORD")  # app password if using Gmail
EMAIL_FROM: Optional[str] = _get_env("EMAIL_FROM")
EMAIL_TO: List[str] = _get_list("EMAIL_TO")  # comma-separated
EMAIL_SUBJECT: str = _get_env("EMAIL_SUBJECT", "[Too good to go] - Available bags!") or ""


# ---- Immutable client configuration -----------------------------------------

@dataclass(frozen=True)
class Account:
    email: str
    user_agent: str = ""


@dataclass(frozen=True)
class Endpoints:
    auth_by_email: str = AUTH_BY_EMAIL_ENDPOINT
    auth_by_polling_id: str = AUTH_BY_POLLING_ID_ENDPOINT
    refresh_token: str = REFRESH_TOKEN_ENDPOINT
    user_information: str = USER_INFORMATION_ENDPOINT
    items: str = ITEM_ENDPOINT
    active_orders: str = ACTIVE_ORDERS_ENDPOINT
    create_order: str = CREATE_ORDER_ENDPOINT
    order: str = ORDER_ENDPOINT
    payment_methods: str = PAYMENT_METHODS_ENDPOINT
    payment: str = PAYMENT_ENDPOINT


@dataclass(frozen=True)
class SearchConfig:
    latitude: float = 0.0
    longitude: float = 0.0
    radius_km: int = 3
    max_results: int = 20
    favorites_only: bool = True
    with_stock_only: bool = True


@dataclass(frozen=True)
class ClientConfig:
    """Everything the client needs that never changes while it runs."""

    accounts: Tuple[Account, ...]
    language: str = "en-GB"
    base_url: str = "https://apptoogoodtogo.com/api/"
    average_requests_period: _dt.timedelta = _dt.timedelta(seconds=45)
    too_many_requests_pause_period: _dt.timedelta = _dt.timedelta(minutes=90)
    active_orders_reminder_period: _dt.timedelta = _dt.timedelta(minutes=10)
    login_email_validation_requests_period: _dt.timedelta = _dt.timedelta(seconds=15)
    login_email_validation_timeout: _dt.timedelta = _dt.timedelta(minutes=30)
    login_validity_duration: _dt.timedelta = _dt.timedelta(hours=48)
    token_validity_duration: _dt.timedelta = _dt.timedelta(hours=8)
    http_timeout: _dt.timedelta = _dt.timedelta(seconds=15)
    session_dir: str = "secrets"
    captcha_url_prefix: str = CAPTCHA_URL_PREFIX
    device_type: str = DEVICE_TYPE
    search: SearchConfig = field(default_factory=SearchConfig)
    endpoints: Endpoints = field(default_factory=Endpoints)

    def __post_init__(self) -> None:
        if not self.accounts:
            raise ValueError("at least one account is required")


def parse_accounts(entries: List[str]) -> Tuple[Account, ...]:
    accounts = []
    for entry in entries:
        email, _, user_agent = entry.partition("|")
        if email.strip():
            accounts.append(Account(email=email.strip(), user_agent=user_agent.strip()))
    return tuple(accounts)


ACCOUNTS: Tuple[Account, ...] = parse_accounts(_ACCOUNTS_RAW)


def load_client_config() -> ClientConfig:
    """Build the immutable client configuration from the module settings."""
    return ClientConfig(
        accounts=ACCOUNTS,
        language=LANGUAGE,
        base_url=BASE_URL,
        average_requests_period=AVERAGE_REQUESTS_PERIOD,
        too_many_requests_pause_period=TOO_MANY_REQUESTS_PAUSE_PERIOD,
        active_orders_reminder_period=ACTIVE_ORDERS_REMINDER_PERIOD,
        login_email_validation_requests_period=LOGIN_EMAIL_VALIDATION_REQUESTS_PERIOD,
        login_email_validation_timeout=LOGIN_EMAIL_VALIDATION_TIMEOUT,
        login_validity_duration=LOGIN_VALIDITY_DURATION,
        token_validity_duration=TOKEN_VALIDITY_DURATION,
        http_timeout=HTTP_TIMEOUT,
        session_dir=SESSION_DIR,
        search=SearchConfig(
            latitude=SEARCH_LATITUDE,
            longitude=SEARCH_LONGITUDE,
            radius_km=SEARCH_RADIUS_KM,
            max_results=SEARCH_MAX_RESULTS,
            favorites_only=SEARCH_FAVORITES_ONLY,
            with_stock_only=SEARCH_WITH_STOCK_ONLY,
        ),
    )


# ---- Validation --------------------------------------------------------------

def validate() -> None:
    """Validate required configuration parameters."""
    if not ACCOUNTS:
        raise RuntimeError(
            "TGTG_ACCOUNTS must list at least one account email. See .env.example for details."
        )
    if SEND_ACTION not in ("", "email", "discord"):
        raise RuntimeError(f"unknown SEND_ACTION {SEND_ACTION!r}")
    if SEND_ACTION == "discord" and not DISCORD_WEBHOOK_URL:
        raise RuntimeError("DISCORD_WEBHOOK_URL must be set when SEND_ACTION=discord.")
    if SEND_ACTION == "email" and not (EMAIL_USERNAME and EMAIL_PASSWORD and EMAIL_TO):
        raise RuntimeError("EMAIL_USERNAME, EMAIL_PASSWORD and EMAIL_TO must be set when SEND_ACTION=email.")


__all__ = [
    # Accounts & API
    "ACCOUNTS",
    "LANGUAGE",
    "BASE_URL",
    "APK_VERSION",
    "CAPTCHA_URL_PREFIX",
    # Pacing & sessions
    "AVERAGE_REQUESTS_PERIOD",
    "TOO_MANY_REQUESTS_PAUSE_PERIOD",
    "ACTIVE_ORDERS_REMINDER_PERIOD",
    "LOGIN_EMAIL_VALIDATION_REQUESTS_PERIOD",
    "LOGIN_EMAIL_VALIDATION_TIMEOUT",
    "LOGIN_VALIDITY_DURATION",
    "TOKEN_VALIDITY_DURATION",
    "HTTP_TIMEOUT",
    "SESSION_DIR",
    # Search
    "SEARCH_LATITUDE",
    "SEARCH_LONGITUDE",
    "SEARCH_RADIUS_KM",
    "SEARCH_MAX_RESULTS",
    "SEARCH_FAVORITES_ONLY",
    "SEARCH_WITH_STOCK_ONLY",
    # Logging
    "LOG_LEVEL",
    "VERBOSE",
    # Notifications
    "SEND_ACTION",
    "DISCORD_WEBHOOK_URL",
    "EMAIL_SMTP_HOST", "EMAIL_SMTP_PORT", "EMAIL_USE_TLS",
    "EMAIL_USERNAME", "EMAIL_PASSWORD", "EMAIL_FROM", "EMAIL_TO", "EMAIL_SUBJECT",
    # Types & helpers
    "Account",
    "Endpoints",
    "SearchConfig",
    "ClientConfig",
    "parse_duration",
    "parse_accounts",
    "load_client_config",
    "validate",
]
