from __future__ import annotations

from datetime import timedelta

from conftest import FakeClock, FakeScheduler, ScriptedSource, make_message

from inbox.poller import InboxPoller
from models.data_models import Message, ServiceState
from models.errors import PermissionDenied, TransientPollError
from utils.dedup_store import DedupStore


def make_poller(
    source: ScriptedSource,
    scheduler: FakeScheduler,
    clock: FakeClock,
    emitted: list[Message],
    errors: list[str] | None = None,
) -> InboxPoller:
    return InboxPoller(
        source=source,
        dedup=DedupStore(),
        scheduler=scheduler,
        state=ServiceState(),
        on_messages=emitted.extend,
        on_error=(errors.append if errors is not None else None),
        clock=clock,
        monotonic=clock.monotonic,
    )


def test_baseline_marks_existing_messages_seen(scheduler: FakeScheduler, clock: FakeClock) -> None:
    source = ScriptedSource(count=3, batch=[make_message(12), make_message(11), make_message(10)])
    emitted: list[Message] = []
    poller = make_poller(source, scheduler, clock, emitted)

    poller.start()

    assert poller.state.last_seen_count == 3
    assert poller.state.last_seen_id == 12
    assert poller.poll_once() == []
    assert emitted == []


def test_overlapping_batches_emit_each_message_once(scheduler: FakeScheduler, clock: FakeClock) -> None:
    source = ScriptedSource(count=0)
    emitted: list[Message] = []
    poller = make_poller(source, scheduler, clock, emitted)
    poller.start()

    source.count = 3
    source.batch = [make_message(3), make_message(2), make_message(1)]
    poller.poll_once()
    source.count = 4
    source.batch = [make_message(4), make_message(3), make_message(2)]
    poller.poll_once()
    # same window again, e.g. an overlapping cycle
    source.count = 5
    poller.poll_once()

    assert [m.id for m in emitted] == [1, 2, 3, 4]


def test_skips_cycle_when_count_has_not_grown(scheduler: FakeScheduler, clock: FakeClock) -> None:
    source = ScriptedSource(count=2, batch=[make_message(2), make_message(1)])
    emitted: list[Message] = []
    poller = make_poller(source, scheduler, clock, emitted)
    poller.start()
    poller.poll_once()  # one catch-up fetch after the baseline
    fetches_before = len(source.fetches)

    source.batch = [make_message(3)]
    poller.poll_once()

    assert emitted == []
    assert len(source.fetches) == fetches_before


class ArrivingSource(ScriptedSource):
    """A message lands right after the first fetch, before the next count read."""

    def __init__(self, arrival: Message, **kwargs) -> None:
        super().__init__(**kwargs)
        self.arrival: Message | None = arrival

    def get_messages(self, max_count, min_date=None) -> list[Message]:
        result = super().get_messages(max_count, min_date)
        if self.arrival is not None:
            self.batch.insert(0, self.arrival)
            self.count += 1
            self.arrival = None
        return result


def test_message_arriving_during_baseline_is_delivered(scheduler: FakeScheduler, clock: FakeClock) -> None:
    source = ArrivingSource(make_message(3), count=2, batch=[make_message(2), make_message(1)])
    emitted: list[Message] = []
    poller = make_poller(source, scheduler, clock, emitted)

    poller.start()
    assert poller.state.last_seen_id == 2
    assert poller.state.last_seen_count == 3
    assert 3 not in poller.dedup

    poller.poll_once()
    poller.poll_once()
    poller.poll_once()

    assert [m.id for m in emitted] == [3]


def test_baseline_reads_newest_before_count(scheduler: FakeScheduler, clock: FakeClock) -> None:
    calls: list[str] = []

    class OrderedSource(ScriptedSource):
        def get_count(self) -> int:
            calls.append("count")
            return super().get_count()

        def get_messages(self, max_count, min_date=None) -> list[Message]:
            calls.append("messages")
            return super().get_messages(max_count, min_date)

    poller = make_poller(OrderedSource(count=1, batch=[make_message(1)]), scheduler, clock, [])
    poller.establish_baseline()

    assert calls == ["messages", "count"]


def test_fetch_window_is_delta_plus_margin_within_recency(scheduler: FakeScheduler, clock: FakeClock) -> None:
    source = ScriptedSource(count=10)
    poller = make_poller(source, scheduler, clock, [])
    poller.start()

    source.count = 13
    poller.poll_once()

    max_count, min_date = source.fetches[-1]
    assert max_count == 3 + poller.safety_margin
    assert min_date == clock() - timedelta(minutes=5)


def test_baseline_is_monotonic_with_out_of_order_batches(scheduler: FakeScheduler, clock: FakeClock) -> None:
    source = ScriptedSource(count=0)
    emitted: list[Message] = []
    poller = make_poller(source, scheduler, clock, emitted)
    poller.start()

    history = []
    steps = [
        (3, [make_message(7), make_message(5), make_message(6)]),
        (2, [make_message(4)]),
        (5, [make_message(2), make_message(3)]),
        (6, [make_message(9), make_message(8)]),
    ]
    for count, batch in steps:
        source.count = count
        source.batch = batch
        poller.poll_once()
        history.append((poller.state.last_seen_id, poller.state.last_seen_count))

    ids = [h[0] for h in history]
    counts = [h[1] for h in history]
    assert ids == sorted(ids)
    assert counts == sorted(counts)
    assert history[-1] == (9, 6)
    assert [m.id for m in emitted] == [5, 6, 7, 8, 9]


def test_fetch_error_is_reported_not_raised(scheduler: FakeScheduler, clock: FakeClock) -> None:
    source = ScriptedSource(count=0)
    errors: list[str] = []
    emitted: list[Message] = []
    poller = make_poller(source, scheduler, clock, emitted, errors)
    poller.start()

    source.error = TransientPollError("connection reset")
    assert poller.poll_once() == []
    assert errors and "connection reset" in errors[0]

    source.error = None
    source.count = 1
    source.batch = [make_message(1)]
    assert [m.id for m in poller.poll_once()] == [1]


def test_permission_is_rerequested_only_once(scheduler: FakeScheduler, clock: FakeClock) -> None:
    source = ScriptedSource(count=0)
    errors: list[str] = []
    poller = make_poller(source, scheduler, clock, [], errors)
    poller.start()

    source.error = PermissionDenied("revoked")
    poller.poll_once()
    poller.poll_once()
    poller.poll_once()

    assert source.permission_requests == 1
    assert poller.permission_failures == 3
    assert len(errors) == 3


def test_failed_baseline_is_taken_on_first_successful_cycle(scheduler: FakeScheduler, clock: FakeClock) -> None:
    source = ScriptedSource(count=4, batch=[make_message(4)])
    source.error = TransientPollError("down")
    errors: list[str] = []
    emitted: list[Message] = []
    poller = make_poller(source, scheduler, clock, emitted, errors)

    poller.start()
    assert not poller.state.baseline_established
    assert poller.running

    source.error = None
    poller.poll_once()
    assert poller.state.baseline_established
    assert poller.state.last_seen_id == 4
    assert emitted == []


def test_fast_phase_switches_to_steady_after_window(scheduler: FakeScheduler, clock: FakeClock) -> None:
    poller = make_poller(ScriptedSource(count=0), scheduler, clock, [])
    poller.start()

    assert poller.phase == "fast"
    assert [job[0] for job in scheduler.active()] == [0.2]

    clock.advance(10)
    scheduler.tick()
    assert poller.phase == "fast"

    clock.advance(25)
    scheduler.tick()
    assert poller.phase == "steady"
    assert [job[0] for job in scheduler.active()] == [2.0]
    assert len(scheduler.jobs) == 2


def test_stop_cancels_timers_and_is_idempotent(scheduler: FakeScheduler, clock: FakeClock) -> None:
    poller = make_poller(ScriptedSource(count=0), scheduler, clock, [])
    poller.start()

    poller.stop()
    poller.stop()

    assert scheduler.active() == []
    assert not poller.running
    assert poller.phase == "stopped"
