"""Durable queue adapter on top of Redis Streams.

A *topic* is one Redis stream plus a small configuration hash. Publishers
tag every entry with a hierarchical subject (``logs.<service>``); consumers
are Redis consumer groups that read with an optional subject filter and
acknowledge each entry explicitly.

Entries that are read but never acknowledged stay in the group's pending
list and are reclaimed by the next fetch once they have been idle for
``ack_wait`` seconds, so redelivery is unlimited.

Under work-queue retention the last group to settle an entry deletes it.
Entries outside a group's subject filter are settled for that group too,
so filtered groups sharing a stream each still receive their own entries.
Two groups settling the same entry at once may both leave it in place;
``max_age`` trimming removes it later.
"""

import logging
import os
import socket
import time
from dataclasses import dataclass, field

import redis
from redis.exceptions import RedisError, ResponseError

logger = logging.getLogger(__name__)

RETENTION_WORKQUEUE = "workqueue"
RETENTION_LIMITS = "limits"
STORAGE_TYPES = ("file", "memory")

# Timeout for WAIT when a topic asks for more than one replica.
REPLICA_WAIT_MS = 1000


class QueueError(Exception):
    """Raised when the broker is unreachable or rejects an operation."""


def subject_matches(pattern: str, subject: str) -> bool:
    """Return True if *subject* matches the hierarchical *pattern*.

    Tokens are separated by ``.``; ``*`` matches exactly one token and
    ``>`` (only valid as the last token) matches one or more tokens.
    """
    p_tokens = pattern.split(".")
    s_tokens = subject.split(".")
    for i, token in enumerate(p_tokens):
        if token == ">":
            return i == len(p_tokens) - 1 and len(s_tokens) > i
        if i >= len(s_tokens):
            return False
        if token != "*" and token != s_tokens[i]:
            return False
    return len(p_tokens) == len(s_tokens)


@dataclass(frozen=True)
class TopicConfig:
    name: str
    subjects: tuple = ("logs.>",)
    retention: str = RETENTION_WORKQUEUE
    storage: str = "file"
    max_age: float = 7 * 24 * 3600.0
    replicas: int = 1

    def to_hash(self) -> dict:
        return {
            "subjects": ",".join(self.subjects),
            "retention": self.retention,
            "storage": self.storage,
            "max_age": repr(float(self.max_age)),
            "replicas": str(self.replicas),
        }

    @classmethod
    def from_hash(cls, name: str, data: dict) -> "TopicConfig":
        data = {_text(k): _text(v) for k, v in data.items()}
        return cls(
            name=name,
            subjects=tuple(s for s in data.get("subjects", "").split(",") if s),
            retention=data.get("retention", RETENTION_WORKQUEUE),
            storage=data.get("storage", "file"),
            max_age=float(data.get("max_age", 0) or 0),
            replicas=int(data.get("replicas", 1) or 1),
        )


@dataclass(frozen=True)
class PubAck:
    stream: str
    sequence: str


def _text(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class QueueMessage:
    """A fetched entry together with its acknowledgement handle."""

    def __init__(self, subscription: "PullSubscription", msg_id: str,
                 subject: str, data: bytes):
        self._subscription = subscription
        self.msg_id = msg_id
        self.subject = subject
        self.data = data
        self.acked = False

    def ack(self) -> None:
        """Acknowledge the entry so it is never redelivered to this group."""
        self._subscription.ack(self.msg_id)
        self.acked = True

    def nak(self) -> None:
        """Leave the entry pending; it is redelivered after ``ack_wait``."""
        logger.debug("Message %s left pending for redelivery", self.msg_id)

    def __repr__(self) -> str:
        return f"QueueMessage(id={self.msg_id!r}, subject={self.subject!r}, size={len(self.data)})"


class LogQueue:
    """Publisher and consumer factory for one durable topic."""

    def __init__(self, client, stream_name: str, ack_wait: float = 30.0):
        self._redis = client
        self._stream = stream_name
        self._ack_wait = ack_wait
        self._topic: TopicConfig | None = None

    @classmethod
    def connect(cls, url: str, stream_name: str, timeout: float | None = 2.0,
                client_name: str | None = None, **kwargs) -> "LogQueue":
        """Open a Redis connection and verify it with PING.

        Raises QueueError if the broker cannot be reached.
        """
        client = redis.Redis.from_url(
            url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            client_name=client_name,
        )
        try:
            client.ping()
        except RedisError as exc:
            raise QueueError(f"failed to connect to broker at {url}: {exc}") from exc
        return cls(client, stream_name, **kwargs)

    @property
    def stream_name(self) -> str:
        return self._stream

    @property
    def topic(self) -> TopicConfig | None:
        return self._topic

    def close(self) -> None:
        self._redis.close()

    # ------------------------------------------------------------------
    # Topic management
    # ------------------------------------------------------------------

    def ensure_topic(self, name: str, subjects, retention: str = RETENTION_WORKQUEUE,
                     storage: str = "file", max_age: float = 7 * 24 * 3600.0,
                     replicas: int = 1) -> TopicConfig:
        """Create the topic if absent, otherwise reconcile its configuration.

        Safe to call from several processes at once: every caller writes
        the same desired configuration.
        """
        if retention not in (RETENTION_WORKQUEUE, RETENTION_LIMITS):
            raise ValueError(f"unknown retention policy: {retention!r}")
        if storage not in STORAGE_TYPES:
            raise ValueError(f"unknown storage type: {storage!r}")
        if replicas < 1:
            raise ValueError("replicas must be at least 1")

        desired = TopicConfig(
            name=name,
            subjects=tuple(subjects),
            retention=retention,
            storage=storage,
            max_age=float(max_age),
            replicas=int(replicas),
        )
        key = f"{name}:config"
        try:
            current = self._redis.hgetall(key)
            if not current:
                self._redis.hset(key, mapping=desired.to_hash())
                logger.info("Topic %s created (subjects=%s)", name, ",".join(desired.subjects))
            elif TopicConfig.from_hash(name, current) != desired:
                self._redis.hset(key, mapping=desired.to_hash())
                logger.info("Topic %s updated", name)
            else:
                logger.debug("Topic %s already up to date", name)
        except RedisError as exc:
            raise QueueError(f"failed to ensure topic {name}: {exc}") from exc

        self._stream = name
        self._topic = desired
        return desired

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish(self, subject: str, payload: bytes) -> PubAck:
        """Append *payload* to the topic under *subject*.

        Synchronous round-trip; raises QueueError on any broker failure.
        """
        topic = self._topic
        if topic is not None and not any(subject_matches(p, subject) for p in topic.subjects):
            raise QueueError(f"no topic subject matches {subject!r}")

        kwargs = {}
        if topic is not None and topic.max_age > 0:
            cutoff_ms = int((time.time() - topic.max_age) * 1000)
            kwargs["minid"] = f"{max(cutoff_ms, 0)}-0"
            kwargs["approximate"] = True

        try:
            msg_id = self._redis.xadd(
                self._stream, {"subject": subject, "data": payload}, **kwargs
            )
            if topic is not None and topic.replicas > 1:
                acked = self._redis.wait(topic.replicas - 1, REPLICA_WAIT_MS)
                if acked < topic.replicas - 1:
                    logger.warning(
                        "Entry %s reached %d of %d replicas",
                        _text(msg_id), acked + 1, topic.replicas,
                    )
        except RedisError as exc:
            raise QueueError(f"publish to {subject} failed: {exc}") from exc

        return PubAck(stream=self._stream, sequence=_text(msg_id))

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    def ensure_consumer(self, durable_name: str, filter_subject: str = ">") -> "PullSubscription":
        """Create (or bind to) a durable pull consumer on the topic."""
        try:
            self._redis.xgroup_create(self._stream, durable_name, id="0", mkstream=True)
            logger.info("Consumer %s created on %s", durable_name, self._stream)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise QueueError(f"failed to create consumer {durable_name}: {exc}") from exc
            logger.debug("Consumer %s already exists", durable_name)
        except RedisError as exc:
            raise QueueError(f"failed to create consumer {durable_name}: {exc}") from exc

        return PullSubscription(
            self._redis,
            self._stream,
            durable_name,
            filter_subject,
            ack_wait=self._ack_wait,
            delete_on_ack=self._topic is not None and self._topic.retention == RETENTION_WORKQUEUE,
        )


class PullSubscription:
    """Pull-based reader bound to one consumer group."""

    def __init__(self, client, stream: str, group: str, filter_subject: str = ">",
                 ack_wait: float = 30.0, delete_on_ack: bool = False,
                 consumer_id: str | None = None):
        self._redis = client
        self._stream = stream
        self._group = group
        self._filter = filter_subject
        self._ack_wait = ack_wait
        self._delete_on_ack = delete_on_ack
        self._consumer = consumer_id or f"{socket.gethostname()}-{os.getpid()}"

    @property
    def group(self) -> str:
        return self._group

    def fetch(self, max_count: int, max_wait: float) -> list[QueueMessage]:
        """Fetch up to *max_count* entries, blocking at most *max_wait* seconds.

        Returns an empty list when the wait elapses with nothing available.
        Raises QueueError for broker failures.
        """
        try:
            entries = self._reclaim(max_count)
            if len(entries) < max_count:
                result = self._redis.xreadgroup(
                    self._group,
                    self._consumer,
                    {self._stream: ">"},
                    count=max_count - len(entries),
                    block=max(int(max_wait * 1000), 1),
                )
                entries.extend(_stream_entries(result))
        except RedisError as exc:
            raise QueueError(f"fetch from {self._stream} failed: {exc}") from exc

        messages = []
        for raw_id, raw_fields in entries:
            msg = self._to_message(raw_id, raw_fields)
            if msg is None:
                continue
            messages.append(msg)
        return messages

    def ack(self, msg_id: str) -> None:
        """Settle *msg_id* for this group.

        Under work-queue retention the entry is deleted once every other
        group on the stream has read and settled it as well.
        """
        try:
            self._redis.xack(self._stream, self._group, msg_id)
            if self._delete_on_ack and self._settled_by_other_groups(msg_id):
                self._redis.xdel(self._stream, msg_id)
        except RedisError as exc:
            raise QueueError(f"ack of {msg_id} failed: {exc}") from exc

    def _settled_by_other_groups(self, msg_id: str) -> bool:
        target = _parse_id(msg_id)
        for raw in self._redis.xinfo_groups(self._stream):
            info = {_text(k): v for k, v in raw.items()}
            name = _text(info.get("name", ""))
            if name == self._group:
                continue
            if _parse_id(_text(info.get("last-delivered-id", "0-0"))) < target:
                return False
            if info.get("pending") and self._redis.xpending_range(
                self._stream, name, min=msg_id, max=msg_id, count=1
            ):
                return False
        return True

    def _reclaim(self, max_count: int) -> list:
        """Claim entries another delivery left unacknowledged for too long."""
        if self._ack_wait <= 0:
            return []
        result = self._redis.xautoclaim(
            self._stream,
            self._group,
            self._consumer,
            min_idle_time=int(self._ack_wait * 1000),
            start_id="0-0",
            count=max_count,
        )
        claimed = result[1] if result and len(result) > 1 else []
        # Deleted entries come back with empty field sets.
        return [entry for entry in claimed if entry and entry[1]]

    def _to_message(self, raw_id, raw_fields) -> QueueMessage | None:
        msg_id = _text(raw_id)
        fields_ = {_text(k): v for k, v in (raw_fields or {}).items()}
        subject = _text(fields_.get("subject", b""))
        data = fields_.get("data", b"")
        if isinstance(data, str):
            data = data.encode("utf-8")

        if self._filter and not subject_matches(self._filter, subject):
            # Not for this consumer; settle it so it is not redelivered here.
            self.ack(msg_id)
            return None
        return QueueMessage(self, msg_id, subject, data)


def _parse_id(entry_id: str) -> tuple[int, int]:
    ms, _, seq = entry_id.partition("-")
    return int(ms), int(seq or 0)


def _stream_entries(result) -> list:
    """Flatten an XREADGROUP reply (RESP2 list or RESP3 dict) into entries."""
    if not result:
        return []
    if isinstance(result, dict):
        # RESP3: {stream: [[entry, ...]]}
        batches = [entries[0] if entries else [] for entries in result.values()]
    else:
        batches = [entries for _, entries in result]
    return [entry for entries in batches for entry in entries]
