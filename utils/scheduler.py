import threading
from typing import Callable

from utils.logger import get_logger

logger = get_logger(__name__)


class CancelHandle:
    """Returned by Scheduler.schedule_repeating; cancel() stops the job."""

    def __init__(self, name: str):
        self.name = name
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


class Scheduler:
    """Runs callbacks repeatedly on daemon threads.

    Each job gets its own thread, so a slow callback only delays its own
    next tick. Exceptions from a callback are logged and the job keeps
    running.
    """

    def __init__(self):
        self._threads: list[threading.Thread] = []

    def schedule_repeating(self, interval: float, fn: Callable[[], None], name: str = "job") -> CancelHandle:
        """Call fn every `interval` seconds until the handle is cancelled.

        The first call happens immediately.
        """
        handle = CancelHandle(name)

        def loop() -> None:
            while not handle.cancelled:
                try:
                    fn()
                except Exception as e:
                    logger.error(f"Scheduled job '{name}' failed: {e}", exc_info=True)
                if handle.wait(interval):
                    break

        thread = threading.Thread(target=loop, daemon=True, name=f"scheduler-{name}")
        self._threads = [t for t in self._threads if t.is_alive()]
        self._threads.append(thread)
        thread.start()
        return handle
