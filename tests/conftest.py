import datetime
import threading
from collections import deque

import pytest

from logtrace.broker import QueueError
from logtrace.config import Config
from logtrace.loki import SinkError
from logtrace.models import LogRecord


class FakeMessage:
    def __init__(self, data: bytes):
        self.data = data
        self.ack_count = 0

    def ack(self):
        self.ack_count += 1

    def __repr__(self):
        return f"FakeMessage({self.data[:20]!r})"


class FakeSubscription:
    """In-memory stand-in for PullSubscription."""

    def __init__(self):
        self._pending: deque = deque()
        self._lock = threading.Lock()
        self._arrived = threading.Event()
        self.fetch_calls = 0
        self.errors_to_raise = 0

    def push(self, *payloads: bytes) -> list[FakeMessage]:
        msgs = [FakeMessage(p) for p in payloads]
        with self._lock:
            self._pending.extend(msgs)
            self._arrived.set()
        return msgs

    def fetch(self, max_count, max_wait):
        self.fetch_calls += 1
        if self.errors_to_raise:
            self.errors_to_raise -= 1
            raise QueueError("broker unavailable")
        self._arrived.wait(max_wait)
        with self._lock:
            batch = []
            while self._pending and len(batch) < max_count:
                batch.append(self._pending.popleft())
            if not self._pending:
                self._arrived.clear()
        return batch


class RecordingSink:
    """Sink that records calls and can be told to fail."""

    def __init__(self, fail_batch=False, fail_one=None):
        self.fail_batch = fail_batch
        self.fail_one = fail_one or (lambda record: False)
        self.batches: list[list[LogRecord]] = []
        self.singles: list[LogRecord] = []
        self.lock = threading.Lock()

    def send_batch(self, groups):
        records = [r for g in groups for r in g.records]
        with self.lock:
            self.batches.append(records)
        if self.fail_batch:
            raise SinkError("batch rejected", status=500)

    def send_one(self, record):
        with self.lock:
            self.singles.append(record)
        if self.fail_one(record):
            raise SinkError("record rejected", status=400)


class RecordingPublisher:
    def __init__(self, fail=False):
        self.fail = fail
        self.published: list[tuple[str, bytes]] = []

    def publish(self, subject, payload):
        if self.fail:
            raise QueueError("broker unreachable")
        self.published.append((subject, payload))

    def records(self) -> list[LogRecord]:
        return [LogRecord.from_json(p) for _, p in self.published]


def make_record(i: int = 0, **overrides) -> LogRecord:
    defaults = dict(
        trace_id=f"trace-{i}",
        span_id="",
        timestamp=datetime.datetime(2024, 1, 15, 10, 30, 0, i, tzinfo=datetime.timezone.utc),
        method="GET",
        path=f"/api/v1/users/{i}",
        status=200,
        latency_ms=1.5,
        client_ip="127.0.0.1",
        user_agent="pytest",
        service_name="svc",
        environment="test",
    )
    defaults.update(overrides)
    return LogRecord(**defaults)


@pytest.fixture
def config():
    return Config(
        service_name="svc",
        environment="test",
        batch_size=100,
        batch_timeout=0.3,
        fetch_wait=0.05,
    )


@pytest.fixture
def subscription():
    return FakeSubscription()


@pytest.fixture
def publisher():
    return RecordingPublisher()
