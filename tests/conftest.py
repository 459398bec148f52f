from __future__ import annotations

import json
from collections.abc import Iterator
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from forwarder.dispatcher import WebhookDispatcher
from host.persistent_context import PersistentContext
from inbox.base_source import InboxSource
from models.data_models import Message, PermissionState, StatusDescriptor
from models.errors import PlatformCapabilityFailure
from utils.scheduler import CancelHandle

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = NOW) -> None:
        self.now = start
        self.seconds = 0.0

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.seconds

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
        self.seconds += seconds


class FakeScheduler:
    """Records jobs instead of starting threads; tests drive them with tick()."""

    def __init__(self) -> None:
        self.jobs: list[tuple[float, object, CancelHandle]] = []

    def schedule_repeating(self, interval, fn, name="job") -> CancelHandle:
        handle = CancelHandle(name)
        self.jobs.append((interval, fn, handle))
        return handle

    def active(self) -> list[tuple[float, object, CancelHandle]]:
        return [job for job in self.jobs if not job[2].cancelled]

    def tick(self) -> None:
        for _, fn, _ in self.active():
            fn()


class ImmediateExecutor(Executor):
    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:  # noqa: BLE001
            future.set_exception(e)
        return future


class ScriptedSource(InboxSource):
    """Inbox whose count and next batch are set directly by the test."""

    def __init__(self, count: int = 0, batch: list[Message] | None = None) -> None:
        self.count = count
        self.batch = batch or []
        self.error: Exception | None = None
        self.permission = PermissionState.GRANTED
        self.permission_requests = 0
        self.fetches: list[tuple[int, datetime | None]] = []

    def get_count(self) -> int:
        if self.error is not None:
            raise self.error
        return self.count

    def get_messages(self, max_count, min_date=None) -> list[Message]:
        if self.error is not None:
            raise self.error
        self.fetches.append((max_count, min_date))
        return list(self.batch)[:max_count]

    def check_permission(self) -> PermissionState:
        return self.permission

    def request_permission(self) -> PermissionState:
        self.permission_requests += 1
        return self.permission


class RecordingContext(PersistentContext):
    name = "recording"

    def __init__(self, active: bool = False, fail_activate: bool = False) -> None:
        self.active = active
        self.fail_activate = fail_activate
        self.calls: list[str] = []
        self.descriptors: list[StatusDescriptor] = []

    def activate(self, descriptor: StatusDescriptor) -> None:
        self.calls.append("activate")
        if self.fail_activate:
            raise PlatformCapabilityFailure("activation refused")
        self.active = True
        self.descriptors.append(descriptor)

    def update(self, descriptor: StatusDescriptor) -> None:
        self.calls.append("update")
        if not self.active:
            raise PlatformCapabilityFailure("not active")
        self.descriptors.append(descriptor)

    def deactivate(self) -> None:
        self.calls.append("deactivate")
        self.active = False


class WebhookRecorder:
    """httpx.MockTransport handler that records requests."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, text="ok")

    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


def make_message(message_id: int, sender: str = "BANK", body: str | None = None, received_at: datetime = NOW) -> Message:
    return Message(id=message_id, sender=sender, body=body or f"message {message_id}", received_at=received_at)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def recorder() -> WebhookRecorder:
    return WebhookRecorder()


@pytest.fixture
def dispatcher(recorder: WebhookRecorder) -> Iterator[WebhookDispatcher]:
    client = httpx.Client(transport=httpx.MockTransport(recorder))
    d = WebhookDispatcher(client=client, executor=ImmediateExecutor())
    yield d
    d.close()

