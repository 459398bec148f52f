import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from forwarder.signing import HMAC_SHA256, SCHEMES
from models.data_models import WebhookConfig

load_dotenv()


def _require(key: str) -> str:
    val = os.getenv(key)
    if not val:
        raise EnvironmentError(f"Missing required environment variable: {key}")
    return val


def _optional(key: str, default: str = "") -> str:
    return os.getenv(key, default)


def _bounded(key: str, default: str, low: float, high: float) -> float:
    value = float(_optional(key, default))
    if not low <= value <= high:
        raise EnvironmentError(f"{key} must be between {low:g} and {high:g}, got {value:g}")
    return value


def _load_imap_account() -> Optional[dict]:
    """IMAP account for the SMS-to-email mailbox, or None if IMAP_HOST is unset."""
    host = os.getenv("IMAP_HOST")
    if not host:
        return None
    return {
        "host": host,
        "port": int(os.getenv("IMAP_PORT", "993")),
        "username": _require("IMAP_USERNAME"),
        "password": _require("IMAP_PASSWORD"),
        "mailbox": os.getenv("IMAP_MAILBOX", "INBOX"),
    }


@dataclass
class Settings:
    # Webhook
    webhook_url: str
    webhook_secret: str
    signature_scheme: str       # "hmac-sha256" or "legacy"
    webhook_timeout_seconds: float

    # Inbox
    inbox_source: str           # "imap" or "memory"
    imap_account: Optional[dict]

    # Polling
    fast_poll_interval_ms: int
    fast_phase_seconds: float
    poll_interval_seconds: float
    fetch_safety_margin: int
    recency_window_minutes: float

    # Health
    stale_activity_hours: float
    error_window_minutes: float

    # Storage
    state_db_path: str
    status_file: str

    # Logging
    log_level: str
    log_file: str

    def webhook_config(self) -> Optional[WebhookConfig]:
        if not self.webhook_url:
            return None
        return WebhookConfig(url=self.webhook_url, secret=self.webhook_secret or None)


def load_settings() -> Settings:
    inbox_source = _optional("INBOX_SOURCE", "imap").lower()
    if inbox_source not in ("imap", "memory"):
        raise EnvironmentError(f"INBOX_SOURCE must be 'imap' or 'memory', got {inbox_source!r}")
    imap_account = _load_imap_account()
    if inbox_source == "imap" and imap_account is None:
        raise EnvironmentError("No IMAP account configured. Set IMAP_HOST, IMAP_USERNAME, IMAP_PASSWORD.")

    signature_scheme = _optional("SIGNATURE_SCHEME", HMAC_SHA256).lower()
    if signature_scheme not in SCHEMES:
        raise EnvironmentError(f"SIGNATURE_SCHEME must be one of {', '.join(SCHEMES)}")

    return Settings(
        webhook_url=_optional("WEBHOOK_URL"),
        webhook_secret=_optional("WEBHOOK_SECRET"),
        signature_scheme=signature_scheme,
        webhook_timeout_seconds=_bounded("WEBHOOK_TIMEOUT_SECONDS", "15", 10, 15),
        inbox_source=inbox_source,
        imap_account=imap_account,
        fast_poll_interval_ms=int(_optional("FAST_POLL_INTERVAL_MS", "200")),
        fast_phase_seconds=float(_optional("FAST_PHASE_SECONDS", "30")),
        poll_interval_seconds=_bounded("POLL_INTERVAL_SECONDS", "2", 1, 3),
        fetch_safety_margin=int(_optional("FETCH_SAFETY_MARGIN", "5")),
        recency_window_minutes=float(_optional("RECENCY_WINDOW_MINUTES", "5")),
        stale_activity_hours=float(_optional("STALE_ACTIVITY_HOURS", "24")),
        error_window_minutes=float(_optional("ERROR_WINDOW_MINUTES", "60")),
        state_db_path=_optional("STATE_DB_PATH", "data/relay_state.db"),
        status_file=_optional("STATUS_FILE", "data/relay.status.json"),
        log_level=_optional("LOG_LEVEL", "INFO"),
        log_file=_optional("LOG_FILE", ""),
    )
