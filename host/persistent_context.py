import json
import os
import socket
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

from models.data_models import StatusDescriptor
from models.errors import PlatformCapabilityFailure
from utils.logger import get_logger

logger = get_logger(__name__)


class PersistentContext(ABC):
    """A host facility that keeps the relay alive in the background and shows
    a status line to the user. Every call may raise PlatformCapabilityFailure.

    update() must be idempotent and must fail when no context is active:
    the lifecycle manager uses it after a restart to probe whether a context
    from the previous process is still there.
    """

    name = "abstract"

    @abstractmethod
    def activate(self, descriptor: StatusDescriptor) -> None:
        ...

    @abstractmethod
    def update(self, descriptor: StatusDescriptor) -> None:
        ...

    @abstractmethod
    def deactivate(self) -> None:
        ...


class StatusFileContext(PersistentContext):
    """Publishes status to a JSON file that outlives the process.

    Meant for supervisors (cron, launchd, a process manager) that restart
    the relay: the file survives, so a restarted relay can pick the session
    up without announcing a new one.
    """

    name = "status-file"

    def __init__(self, path: str):
        self.path = Path(path)

    def activate(self, descriptor: StatusDescriptor) -> None:
        self._write(descriptor)
        logger.info(f"Status file context activated at {self.path}")

    def update(self, descriptor: StatusDescriptor) -> None:
        if not self.path.exists():
            raise PlatformCapabilityFailure(f"No active status file at {self.path}")
        self._write(descriptor)

    def deactivate(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise PlatformCapabilityFailure(f"Could not remove {self.path}: {e}") from e
        logger.info("Status file context deactivated")

    def _write(self, descriptor: StatusDescriptor) -> None:
        record = {
            "pid": os.getpid(),
            "written_at": datetime.now(timezone.utc).isoformat(),
            **descriptor.to_dict(),
        }
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(record, indent=2))
            tmp.replace(self.path)
        except OSError as e:
            raise PlatformCapabilityFailure(f"Could not write {self.path}: {e}") from e


class SystemdNotifyContext(PersistentContext):
    """Talks to systemd through $NOTIFY_SOCKET (Type=notify units).

    READY=1 on activate, STATUS= on every update, STOPPING=1 on deactivate.
    systemd starts a fresh unit instance on every restart, so a context never
    survives the process: update() fails until activate() has been called.
    """

    name = "systemd"

    def __init__(self, notify_socket: str):
        self.address = "\0" + notify_socket[1:] if notify_socket.startswith("@") else notify_socket
        self._active = False

    def activate(self, descriptor: StatusDescriptor) -> None:
        self._send(f"READY=1\nSTATUS={descriptor.text}")
        self._active = True
        logger.info("systemd notified: READY")

    def update(self, descriptor: StatusDescriptor) -> None:
        if not self._active:
            raise PlatformCapabilityFailure("systemd context not activated by this process")
        self._send(f"STATUS={descriptor.text}")

    def deactivate(self) -> None:
        self._send("STOPPING=1")
        self._active = False

    def _send(self, state: str) -> None:
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM) as sock:
                sock.connect(self.address)
                sock.sendall(state.encode("utf-8"))
        except OSError as e:
            raise PlatformCapabilityFailure(f"sd_notify failed: {e}") from e


def select_persistent_context(status_file: str) -> PersistentContext:
    """Pick the backing the host supports: systemd when run as a notify unit,
    otherwise a status file."""
    notify_socket = os.getenv("NOTIFY_SOCKET")
    if notify_socket:
        logger.info("Using systemd notify persistent context")
        return SystemdNotifyContext(notify_socket)
    logger.info(f"Using status file persistent context: {status_file}")
    return StatusFileContext(status_file)
