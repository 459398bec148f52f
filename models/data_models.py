from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

from models.errors import InvalidConfiguration


@dataclass(frozen=True)
class Message:
    """One inbound text message as read from the inbox source."""
    id: int
    sender: str
    body: str
    received_at: datetime


@dataclass
class WebhookConfig:
    """Where to forward messages and the secret used to sign them."""
    url: str
    secret: Optional[str] = None

    def validate(self) -> None:
        """Raise InvalidConfiguration unless url is an absolute http(s) URL."""
        parsed = urlparse(self.url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidConfiguration(f"Webhook URL must be http(s): {self.url!r}")

    def to_dict(self) -> dict:
        return {"url": self.url, "secret": self.secret}

    @classmethod
    def from_dict(cls, data: dict) -> "WebhookConfig":
        return cls(url=data.get("url", ""), secret=data.get("secret"))


@dataclass
class WebhookPayload:
    """The JSON body POSTed to the webhook."""
    message: str
    sender: str
    timestamp: int        # epoch milliseconds
    signature: str

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "sender": self.sender,
            "timestamp": self.timestamp,
            "signature": self.signature,
        }


@dataclass
class ServiceState:
    is_listening: bool = False
    last_seen_id: int = 0
    last_seen_count: int = 0
    is_persistent_context_active: bool = False
    baseline_established: bool = False


class MonitorState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class PermissionState(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"


class PowerState(str, Enum):
    OPTIMIZED = "optimized"       # host may throttle or suspend us
    UNOPTIMIZED = "unoptimized"   # exempt from power management
    UNKNOWN = "unknown"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class DeliveryResult:
    """Outcome of one webhook POST."""
    message_id: str           # str(message.id) or "TEST"
    ok: bool
    status_code: Optional[int] = None
    error: str = ""
    skipped: bool = False     # True when the id was already in flight


@dataclass
class HistoryEntry:
    message: Message
    status: DeliveryStatus = DeliveryStatus.PENDING
    status_code: Optional[int] = None
    error: str = ""


@dataclass
class StatusDescriptor:
    """What the persistent execution context shows to the user."""
    title: str
    text: str
    processed_count: int = 0
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "text": self.text,
            "processed_count": self.processed_count,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class Verdict(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class HealthIssue:
    check: str
    problem: str
    recommendation: str


@dataclass
class HealthReport:
    verdict: Verdict
    issues: list[HealthIssue] = field(default_factory=list)
