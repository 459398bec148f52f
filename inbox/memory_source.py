import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from inbox.base_source import InboxSource
from models.data_models import Message, PermissionState
from models.errors import PermissionDenied
from utils.logger import get_logger

logger = get_logger(__name__)

SAMPLE_MESSAGES = [
    ("+6281234567890", "Your OTP code is 123456. Valid for 5 minutes."),
    ("BANK-BCA", "Transaction alert: Rp 50,000 has been debited from your account."),
    ("OTP-SERVICE", "Your verification code: 789012"),
    ("+628987654321", "Hello, this is a test message from simulation."),
    ("GOJEK", "GOJEK: Your driver is arriving in 2 minutes."),
]


class MemoryInboxSource(InboxSource):
    """An inbox held in process memory.

    Used for simulation runs and tests: call deliver() to make a message
    "arrive". Permission can be revoked to exercise the denied paths.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None, granted: bool = True):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._messages: list[Message] = []
        self._next_id = 1
        self._lock = threading.Lock()
        self.granted = granted
        self.permission_requests = 0

    def deliver(self, sender: str, body: str, received_at: Optional[datetime] = None) -> Message:
        """Append a new message with the next id and return it."""
        with self._lock:
            message = Message(
                id=self._next_id,
                sender=sender,
                body=body,
                received_at=received_at or self._clock(),
            )
            self._next_id += 1
            self._messages.append(message)
        logger.debug(f"Simulated message {message.id} from {sender}")
        return message

    def get_count(self) -> int:
        self._require_permission()
        with self._lock:
            return len(self._messages)

    def get_messages(self, max_count: int, min_date: Optional[datetime] = None) -> list[Message]:
        self._require_permission()
        with self._lock:
            newest_first = list(reversed(self._messages))
        if min_date is not None:
            newest_first = [m for m in newest_first if m.received_at >= min_date]
        return newest_first[:max(max_count, 0)]

    def check_permission(self) -> PermissionState:
        return PermissionState.GRANTED if self.granted else PermissionState.DENIED

    def request_permission(self) -> PermissionState:
        self.permission_requests += 1
        return self.check_permission()

    def _require_permission(self) -> None:
        if not self.granted:
            raise PermissionDenied("Inbox access not granted")
