"""
SMS Webhook Relay: entry point.

Watches an SMS inbox (an SMS-to-email mailbox over IMAP, or an in-memory
inbox in simulation mode) and forwards every new message once to the
configured webhook, signed.

    python main.py run            monitor until Ctrl+C
    python main.py test-webhook   send one synthetic message and exit
    python main.py power          show or change the power-optimization state

With INBOX_SOURCE=memory the relay simulates incoming SMS instead.

Monitoring state survives restarts: if the relay was running when the
process died, `run` resumes the same session.
"""

import argparse
import itertools
import signal
import sys
import threading
from datetime import timedelta

from config import Settings, load_settings
from forwarder.dispatcher import WebhookDispatcher
from forwarder.lifecycle import LifecycleManager
from host.persistent_context import select_persistent_context
from host.power import PowerManager, UnmanagedPowerManager
from inbox.base_source import InboxSource
from inbox.imap_source import IMAPInboxSource
from inbox.memory_source import SAMPLE_MESSAGES, MemoryInboxSource
from models.data_models import Verdict
from models.errors import InvalidConfiguration, PermissionDenied
from utils.logger import get_logger, setup_logging
from utils.scheduler import Scheduler
from utils.state_store import StateStore

HEALTH_INTERVAL_SECONDS = 5 * 60
SIMULATION_INTERVAL_SECONDS = 10


def build_source(settings: Settings) -> InboxSource:
    if settings.inbox_source == "memory":
        return MemoryInboxSource()
    return IMAPInboxSource(**settings.imap_account)


def build_manager(settings: Settings, source: InboxSource, scheduler: Scheduler) -> LifecycleManager:
    dispatcher = WebhookDispatcher(
        timeout=settings.webhook_timeout_seconds,
        scheme=settings.signature_scheme,
    )
    return LifecycleManager(
        source=source,
        dispatcher=dispatcher,
        context=select_persistent_context(settings.status_file),
        store=StateStore(db_path=settings.state_db_path),
        scheduler=scheduler,
        power=UnmanagedPowerManager(),
        config=settings.webhook_config(),
        stale_after=timedelta(hours=settings.stale_activity_hours),
        error_window=timedelta(minutes=settings.error_window_minutes),
        fast_interval=settings.fast_poll_interval_ms / 1000,
        fast_phase_seconds=settings.fast_phase_seconds,
        steady_interval=settings.poll_interval_seconds,
        safety_margin=settings.fetch_safety_margin,
        recency_window=timedelta(minutes=settings.recency_window_minutes),
    )


def run(settings: Settings) -> int:
    logger = get_logger("main")
    scheduler = Scheduler()

    # ── 1. Build the inbox source and the relay ─────────────────────────────
    source = build_source(settings)
    manager = build_manager(settings, source, scheduler)
    manager.subscribe(
        lambda m: logger.info(f"Received from {m.sender}: {m.body[:50]}{'...' if len(m.body) > 50 else ''}")
    )

    # ── 2. Resume the previous session, or start a new one ──────────────────
    try:
        if not manager.resume():
            manager.start()
    except (InvalidConfiguration, PermissionDenied) as e:
        logger.error(f"Cannot start monitoring: {e}")
        return 1

    # ── 3. Background jobs: health report and, if asked, fake SMS traffic ───
    def report_health() -> None:
        report = manager.health()
        if report.verdict == Verdict.HEALTHY:
            logger.info("Health: healthy")
            return
        logger.warning(f"Health: {report.verdict.value} ({len(report.issues)} issue(s))")
        for issue in report.issues:
            logger.warning(f"  {issue.problem} → {issue.recommendation}")

    jobs = [scheduler.schedule_repeating(HEALTH_INTERVAL_SECONDS, report_health, name="health")]

    if isinstance(source, MemoryInboxSource):
        samples = itertools.cycle(SAMPLE_MESSAGES)

        def simulate_sms() -> None:
            sender, body = next(samples)
            source.deliver(sender, body)

        jobs.append(scheduler.schedule_repeating(SIMULATION_INTERVAL_SECONDS, simulate_sms, name="simulate"))
        logger.info(f"Simulation mode: a sample SMS arrives every {SIMULATION_INTERVAL_SECONDS}s")

    # ── 4. Wait until Ctrl+C / SIGTERM, then shut down cleanly ──────────────
    stop_event = threading.Event()
    received: list[int] = []

    def shutdown(sig, frame):
        logger.info("Shutting down…")
        received.append(sig)
        stop_event.set()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    logger.info("Relay running. Press Ctrl+C to stop.")
    while not stop_event.wait(1):
        pass

    for job in jobs:
        job.cancel()
    if received and received[0] == signal.SIGTERM:
        # A supervisor is restarting us: leave the session persisted so it resumes
        manager.poller.stop()
    else:
        manager.stop()
    manager.dispatcher.close()
    source.close()
    manager.store.close()
    logger.info(f"Final status: {manager.status()}")
    return 0


def test_webhook(settings: Settings) -> int:
    logger = get_logger("main")
    config = settings.webhook_config()
    if config is None:
        logger.error("WEBHOOK_URL is not set")
        return 1
    dispatcher = WebhookDispatcher(timeout=settings.webhook_timeout_seconds, scheme=settings.signature_scheme)
    try:
        result = dispatcher.test_delivery(config)
    except InvalidConfiguration as e:
        logger.error(str(e))
        return 1
    finally:
        dispatcher.close()
    if result.ok:
        logger.info(f"Test delivery succeeded (HTTP {result.status_code})")
        return 0
    logger.error(f"Test delivery failed: {result.error}")
    return 1


def check_power(manager: PowerManager, open_settings: bool = False, request_exemption: bool = False) -> int:
    logger = get_logger("main")
    state = manager.state()
    logger.info(f"Power optimization: {state.value}")
    if open_settings:
        manager.open_settings()
    if request_exemption:
        if not manager.request_exemption():
            logger.warning("Power-management exemption was not granted")
            return 1
        logger.info("Power-management exemption granted")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Forward new SMS messages to a webhook.")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="monitor the inbox until stopped (default)")
    sub.add_parser("test-webhook", help="send a synthetic message to the webhook")
    power_parser = sub.add_parser("power", help="show the host power-optimization state")
    power_parser.add_argument("--open-settings", action="store_true", help="open the host power settings")
    power_parser.add_argument("--request-exemption", action="store_true", help="ask the host to stop throttling the relay")
    args = parser.parse_args(argv)

    # ── Load config from .env ────────────────────────────────────────────────
    settings = load_settings()
    setup_logging(log_level=settings.log_level, log_file=settings.log_file or "")
    get_logger("main").info("SMS Webhook Relay starting…")

    if args.command == "test-webhook":
        return test_webhook(settings)
    if args.command == "power":
        return check_power(UnmanagedPowerManager(), open_settings=args.open_settings, request_exemption=args.request_exemption)
    return run(settings)


if __name__ == "__main__":
    sys.exit(main())
