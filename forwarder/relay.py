import itertools
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Callable

from forwarder.dispatcher import WebhookDispatcher
from models.data_models import DeliveryResult, DeliveryStatus, HistoryEntry, Message, WebhookConfig
from utils.logger import get_logger

logger = get_logger(__name__)

HISTORY_SIZE = 100
ERROR_LOG_SIZE = 20

Subscriber = Callable[[Message], None]


class SubscriberRegistry:
    """Callbacks told about every message once it is marked processed."""

    def __init__(self):
        self._subscribers: dict[int, Subscriber] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add(self, callback: Subscriber) -> int:
        """Register a callback; returns the handle to pass to remove()."""
        with self._lock:
            handle = next(self._ids)
            self._subscribers[handle] = callback
        logger.debug(f"Subscriber {handle} added, total: {len(self)}")
        return handle

    def remove(self, handle: int) -> bool:
        with self._lock:
            removed = self._subscribers.pop(handle, None) is not None
        return removed

    def __len__(self) -> int:
        return len(self._subscribers)

    def notify(self, message: Message) -> None:
        with self._lock:
            subscribers = list(self._subscribers.items())
        for handle, callback in subscribers:
            try:
                callback(message)
            except Exception as e:
                logger.error(f"Subscriber {handle} failed on message {message.id}: {e}", exc_info=True)


class MessageRelay:
    """Takes messages the poller has already deduplicated and:

    1. Records them in the newest-first history
    2. Tells subscribers
    3. Hands them to the dispatcher
    4. Updates history and counters when delivery completes
    """

    def __init__(self, dispatcher: WebhookDispatcher, clock: Callable[[], datetime] | None = None):
        self.dispatcher = dispatcher
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.config: WebhookConfig | None = None
        self.subscribers = SubscriberRegistry()

        self.processed_total = 0
        self.delivered_total = 0
        self.failed_total = 0
        self.last_processed_at: datetime | None = None
        self._today = None
        self._today_count = 0

        self._history: deque[HistoryEntry] = deque(maxlen=HISTORY_SIZE)
        self._errors: deque[tuple[datetime, str]] = deque(maxlen=ERROR_LOG_SIZE)
        self._lock = threading.Lock()

    def handle(self, messages: list[Message]) -> int:
        """Process a batch of new messages. Returns how many were handled."""
        for message in messages:
            self._handle_one(message)
        return len(messages)

    def _handle_one(self, message: Message) -> None:
        logger.info(f"Processing message {message.id} from {message.sender} ({len(message.body)} chars)")
        entry = HistoryEntry(message=message)
        now = self.clock()
        with self._lock:
            self._history.appendleft(entry)
            self.processed_total += 1
            self.last_processed_at = now
            if self._today != now.date():
                self._today = now.date()
                self._today_count = 0
            self._today_count += 1

        self.subscribers.notify(message)

        config = self.config
        if config is None:
            logger.warning(f"No webhook configured, message {message.id} not forwarded")
            self._finish(entry, DeliveryResult(message_id=str(message.id), ok=False, error="No webhook configured"))
            return
        self.dispatcher.submit(message, config, on_result=lambda m, result: self._finish(entry, result))

    def _finish(self, entry: HistoryEntry, result: DeliveryResult) -> None:
        if result.skipped:
            return
        with self._lock:
            entry.status = DeliveryStatus.SUCCESS if result.ok else DeliveryStatus.FAILED
            entry.status_code = result.status_code
            entry.error = result.error
            if result.ok:
                self.delivered_total += 1
            else:
                self.failed_total += 1
        if not result.ok:
            self.record_error(f"Delivery of message {result.message_id} failed: {result.error}")

    # ── Status ───────────────────────────────────────────────────────────

    def record_error(self, reason: str) -> None:
        with self._lock:
            self._errors.append((self.clock(), reason))

    def recent_errors(self, since: datetime | None = None) -> list[str]:
        """Oldest first. With `since`, only errors recorded at or after it."""
        with self._lock:
            return [reason for at, reason in self._errors if since is None or at >= since]

    def history(self) -> list[HistoryEntry]:
        """Newest first."""
        with self._lock:
            return list(self._history)

    def today_count(self) -> int:
        with self._lock:
            if self._today != self.clock().date():
                return 0
            return self._today_count
