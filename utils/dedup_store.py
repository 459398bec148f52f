from collections import OrderedDict

from utils.logger import get_logger

logger = get_logger(__name__)

MAX_IDS = 1000
RETAIN_IDS = 500


class DedupStore:
    """In-memory record of message IDs already handed to the dispatcher.

    Bounded: once more than `max_size` IDs are held, the oldest insertions
    are dropped until only the `retain` most recent remain. That is plenty to
    absorb the poller's overlapping fetch windows.

    Not thread-safe on its own; the poller serializes access.
    """

    def __init__(self, max_size: int = MAX_IDS, retain: int = RETAIN_IDS):
        if retain > max_size:
            raise ValueError("retain must not exceed max_size")
        self.max_size = max_size
        self.retain = retain
        self._ids: OrderedDict[int, None] = OrderedDict()

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, message_id: int) -> bool:
        return self.has(message_id)

    def has(self, message_id: int) -> bool:
        """Return True if this message_id has been seen before."""
        return message_id in self._ids

    def mark_processed(self, message_id: int) -> None:
        """Record that this message_id has been handed downstream.

        Marking an ID that is already present keeps its original position.
        """
        if message_id in self._ids:
            return
        self._ids[message_id] = None
        if len(self._ids) > self.max_size:
            self._evict()

    def ids(self) -> list[int]:
        """IDs in insertion order, oldest first."""
        return list(self._ids)

    def _evict(self) -> None:
        drop = len(self._ids) - self.retain
        for _ in range(drop):
            self._ids.popitem(last=False)
        logger.debug(f"Dedup store trimmed {drop} oldest id(s), {len(self._ids)} kept")
