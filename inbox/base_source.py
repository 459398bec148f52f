from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.data_models import Message, PermissionState


class InboxSource(ABC):
    """Abstract base class that every inbox source must implement.

    The poller only ever counts and reads; any backend (IMAP mailbox,
    in-memory simulation, a phone bridge, etc.) plugs in by implementing
    these four calls. Message ids must increase monotonically.
    """

    @abstractmethod
    def get_count(self) -> int:
        """Total number of messages currently in the inbox.

        Raises:
            PermissionDenied:   access was revoked.
            TransientPollError: the inbox could not be read this time.
        """
        ...

    @abstractmethod
    def get_messages(self, max_count: int, min_date: Optional[datetime] = None) -> list[Message]:
        """Return up to `max_count` of the newest messages, newest first.

        Args:
            max_count: Upper bound on how many messages to return.
            min_date:  If given, only messages received at or after this time.
        """
        ...

    @abstractmethod
    def check_permission(self) -> PermissionState:
        ...

    @abstractmethod
    def request_permission(self) -> PermissionState:
        """Ask the host for access again. Returns the resulting state."""
        ...

    def close(self) -> None:
        """Release any connection held by the source."""
