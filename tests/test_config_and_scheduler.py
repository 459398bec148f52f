from __future__ import annotations

import logging
import threading
import time
from logging.handlers import RotatingFileHandler

import pytest

from config import load_settings
from utils.logger import NOISY_LOGGERS, get_logger, setup_logging
from utils.scheduler import Scheduler

BASE_ENV = {
    "INBOX_SOURCE": "memory",
    "WEBHOOK_URL": "https://x.test/webhook",
}


@pytest.fixture
def env(monkeypatch):
    for key in (
        "IMAP_HOST", "WEBHOOK_SECRET", "SIGNATURE_SCHEME", "POLL_INTERVAL_SECONDS",
        "WEBHOOK_TIMEOUT_SECONDS", "FAST_POLL_INTERVAL_MS", "ERROR_WINDOW_MINUTES",
    ):
        monkeypatch.delenv(key, raising=False)
    for key, value in BASE_ENV.items():
        monkeypatch.setenv(key, value)
    return monkeypatch


def test_defaults(env) -> None:
    settings = load_settings()
    assert settings.inbox_source == "memory"
    assert settings.poll_interval_seconds == 2
    assert settings.fast_poll_interval_ms == 200
    assert settings.webhook_timeout_seconds == 15
    assert settings.signature_scheme == "hmac-sha256"
    assert settings.error_window_minutes == 60
    config = settings.webhook_config()
    assert config.url == "https://x.test/webhook"
    assert config.secret is None


@pytest.mark.parametrize(("key", "value"), [("POLL_INTERVAL_SECONDS", "10"), ("WEBHOOK_TIMEOUT_SECONDS", "60")])
def test_out_of_range_values_rejected(env, key: str, value: str) -> None:
    env.setenv(key, value)
    with pytest.raises(EnvironmentError):
        load_settings()


def test_imap_requires_account(env) -> None:
    env.setenv("INBOX_SOURCE", "imap")
    with pytest.raises(EnvironmentError):
        load_settings()


def test_imap_account_loaded(env) -> None:
    env.setenv("INBOX_SOURCE", "imap")
    env.setenv("IMAP_HOST", "imap.example.test")
    env.setenv("IMAP_USERNAME", "relay")
    env.setenv("IMAP_PASSWORD", "pw")
    account = load_settings().imap_account
    assert account == {
        "host": "imap.example.test",
        "port": 993,
        "username": "relay",
        "password": "pw",
        "mailbox": "INBOX",
    }


def test_scheduler_repeats_until_cancelled() -> None:
    calls = []
    three = threading.Event()

    def job() -> None:
        calls.append(1)
        if len(calls) >= 3:
            three.set()

    handle = Scheduler().schedule_repeating(0.01, job, name="test")
    assert three.wait(2)
    handle.cancel()
    count = len(calls)
    time.sleep(0.05)
    assert len(calls) <= count + 1


def test_scheduler_survives_failing_job() -> None:
    calls = []
    second = threading.Event()

    def job() -> None:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first run fails")
        second.set()

    handle = Scheduler().schedule_repeating(0.01, job, name="flaky")
    assert second.wait(2)
    handle.cancel()


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    saved_library = {name: logging.getLogger(name).level for name in NOISY_LOGGERS}
    yield
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    for name, level in saved_library.items():
        logging.getLogger(name).setLevel(level)


def test_setup_logging_writes_rotating_file_and_quiets_libraries(tmp_path, restore_logging) -> None:
    log_file = tmp_path / "logs" / "relay.log"
    setup_logging(log_level="info", log_file=str(log_file))

    assert logging.getLogger().level == logging.INFO
    assert logging.getLogger("httpx").level == logging.WARNING
    assert any(isinstance(h, RotatingFileHandler) for h in logging.getLogger().handlers)

    get_logger("tests.logging").info("relay started")
    for handler in logging.getLogger().handlers:
        handler.flush()
    line = log_file.read_text().strip()
    assert line.endswith("| tests.logging | relay started")
    assert "| INFO     |" in line


def test_setup_logging_debug_keeps_library_loggers(restore_logging) -> None:
    setup_logging(log_level="DEBUG")
    assert logging.getLogger("imapclient").level == logging.DEBUG
