import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from inbox.base_source import InboxSource
from models.data_models import Message, ServiceState
from models.errors import PermissionDenied, RelayError
from utils.dedup_store import DedupStore
from utils.logger import get_logger
from utils.scheduler import CancelHandle, Scheduler

logger = get_logger(__name__)

FAST_INTERVAL_SECONDS = 0.2
FAST_PHASE_SECONDS = 30.0
STEADY_INTERVAL_SECONDS = 2.0
FETCH_SAFETY_MARGIN = 5
RECENCY_WINDOW = timedelta(minutes=5)


class InboxPoller:
    """Detects new messages by comparing the inbox count against a baseline.

    Right after start() it polls every 200ms for 30s (an OTP usually lands
    within seconds of the user switching monitoring on), then drops to a
    steady interval for as long as monitoring lasts.

    Two cycles can overlap, and consecutive fetch windows overlap on purpose,
    so every new message passes the dedup store before it is emitted. All
    reads and writes of ServiceState and the dedup store happen under
    self._lock.
    """

    def __init__(
        self,
        source: InboxSource,
        dedup: DedupStore,
        scheduler: Scheduler,
        state: ServiceState,
        on_messages: Callable[[list[Message]], None],
        on_error: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        fast_interval: float = FAST_INTERVAL_SECONDS,
        fast_phase_seconds: float = FAST_PHASE_SECONDS,
        steady_interval: float = STEADY_INTERVAL_SECONDS,
        safety_margin: int = FETCH_SAFETY_MARGIN,
        recency_window: timedelta = RECENCY_WINDOW,
    ):
        self.source = source
        self.dedup = dedup
        self.scheduler = scheduler
        self.state = state
        self.on_messages = on_messages
        self.on_error = on_error or (lambda reason: None)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.monotonic = monotonic
        self.fast_interval = fast_interval
        self.fast_phase_seconds = fast_phase_seconds
        self.steady_interval = steady_interval
        self.safety_margin = safety_margin
        self.recency_window = recency_window

        self.phase = "stopped"
        self.permission_failures = 0
        self._permission_rerequested = False
        self._catch_up_pending = False
        self._lock = threading.Lock()
        self._timer_lock = threading.Lock()
        self._handle: CancelHandle | None = None
        self._started_at = 0.0

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self) -> None:
        """Take the baseline and begin the fast phase."""
        with self._timer_lock:
            if self._handle is not None:
                logger.debug("Poller already running")
                return
            self._permission_rerequested = False
            self.permission_failures = 0
            try:
                self.establish_baseline()
            except RelayError as e:
                # The first successful cycle takes the baseline instead
                logger.warning(f"Baseline read failed, deferring to first poll: {e}")
                self.on_error(f"Baseline read failed: {e}")
            self._started_at = self.monotonic()
            self.phase = "fast"
            self._handle = self.scheduler.schedule_repeating(
                self.fast_interval, self._fast_tick, name="poll-fast"
            )
        logger.info(
            f"Polling every {self.fast_interval * 1000:.0f}ms for {self.fast_phase_seconds:.0f}s, "
            f"then every {self.steady_interval:g}s"
        )

    def stop(self) -> None:
        """Cancel every timer. Safe to call more than once."""
        with self._timer_lock:
            if self._handle is None:
                return
            self._handle.cancel()
            self._handle = None
            self.phase = "stopped"
        logger.info("Poller stopped")

    @property
    def running(self) -> bool:
        return self._handle is not None

    # ── Polling ──────────────────────────────────────────────────────────

    def establish_baseline(self) -> None:
        """Record the highest id and the current count; nothing at or below
        that id is ever delivered.

        The newest message is read before the count, so the count always
        covers it. A message landing between the two reads is counted but
        sits above last_seen_id; the first cycle after the baseline fetches
        regardless of the count to pick it up.
        """
        newest = self.source.get_messages(max_count=1)
        count = self.source.get_count()
        highest = max((m.id for m in newest), default=0)
        with self._lock:
            self.state.last_seen_count = count
            self.state.last_seen_id = highest
            self.state.baseline_established = True
            self._catch_up_pending = True
            for message in newest:
                self.dedup.mark_processed(message.id)
        logger.info(f"Baseline established: count={count} last_id={highest}")

    def poll_once(self) -> list[Message]:
        """Run one detection cycle and return the messages it emitted.

        Errors are logged and reported through on_error; they never escape,
        so a bad cycle cannot kill the timer loop.
        """
        try:
            fresh = self._detect()
        except PermissionDenied as e:
            self._handle_permission_failure(e)
            return []
        except RelayError as e:
            logger.warning(f"Poll cycle skipped: {e}")
            self.on_error(f"Poll failed: {e}")
            return []
        except Exception as e:
            logger.error(f"Unexpected error during poll: {e}", exc_info=True)
            self.on_error(f"Poll failed: {e}")
            return []

        if fresh:
            logger.info(f"Detected {len(fresh)} new message(s): ids={[m.id for m in fresh]}")
            self.on_messages(fresh)
        return fresh

    def _detect(self) -> list[Message]:
        if not self.state.baseline_established:
            self.establish_baseline()
            return []

        count = self.source.get_count()
        with self._lock:
            last_count = self.state.last_seen_count
            catch_up = self._catch_up_pending
        if count <= last_count and not catch_up:
            return []

        delta = max(count - last_count, 0)
        batch = self.source.get_messages(
            max_count=delta + self.safety_margin,
            min_date=self.clock() - self.recency_window,
        )

        with self._lock:
            self._catch_up_pending = False
            fresh = []
            for message in sorted(batch, key=lambda m: m.id):
                if message.id <= self.state.last_seen_id or self.dedup.has(message.id):
                    continue
                self.dedup.mark_processed(message.id)
                fresh.append(message)
            if batch:
                self.state.last_seen_id = max(self.state.last_seen_id, max(m.id for m in batch))
            self.state.last_seen_count = max(self.state.last_seen_count, count)
        return fresh

    def _handle_permission_failure(self, error: PermissionDenied) -> None:
        self.permission_failures += 1
        logger.warning(f"Inbox permission denied during poll ({self.permission_failures}x): {error}")
        self.on_error(f"Inbox permission denied: {error}")
        if self._permission_rerequested:
            return
        self._permission_rerequested = True
        try:
            result = self.source.request_permission()
            logger.info(f"Re-requested inbox permission: {result.value}")
        except Exception as e:
            logger.error(f"Permission re-request failed: {e}")

    # ── Timers ───────────────────────────────────────────────────────────

    def _fast_tick(self) -> None:
        self.poll_once()
        if self.monotonic() - self._started_at >= self.fast_phase_seconds:
            self._enter_steady_phase()

    def _enter_steady_phase(self) -> None:
        with self._timer_lock:
            if self._handle is None or self.phase != "fast":
                return
            self._handle.cancel()
            self.phase = "steady"
            self._handle = self.scheduler.schedule_repeating(
                self.steady_interval, self.poll_once, name="poll-steady"
            )
        logger.info(f"Fast polling window over, now polling every {self.steady_interval:g}s")
