"""Forwarder: drains the durable queue and ships batches to the log store.

Entries are acknowledged as soon as they are appended to the in-memory
batch, before the log store has accepted them. A crash between the ack
and the flush loses those records, and a record that still fails after
the per-record fallback is dropped. Redelivery only covers entries that
were never acknowledged.
"""

import logging
import threading
import time

from logtrace.batch_buffer import BatchBuffer
from logtrace.broker import QueueError
from logtrace.config import Config
from logtrace.loki import SinkError, group_records
from logtrace.metrics import ForwarderMetrics
from logtrace.models import LogRecord, RecordDecodeError

logger = logging.getLogger(__name__)


class Forwarder:
    """Drain loop wired to a BatchBuffer and a log-store sink.

    *subscription* needs ``fetch(max_count, max_wait)`` returning messages
    with ``data`` and ``ack()``; *sink* needs ``send_batch(groups)`` and
    ``send_one(record)`` raising SinkError on failure.
    """

    def __init__(self, subscription, sink, config: Config,
                 shutdown_event: threading.Event, retry_delay: float = 1.0):
        self._subscription = subscription
        self._sink = sink
        self._config = config
        self._shutdown = shutdown_event
        self._retry_delay = retry_delay
        self._metrics = ForwarderMetrics()
        self._buffer = BatchBuffer(
            batch_size=config.batch_size,
            batch_timeout=config.batch_timeout,
            on_flush=self._flush,
            timer_mode=config.timer_mode,
        )

    @property
    def metrics(self) -> ForwarderMetrics:
        return self._metrics

    @property
    def pending_count(self) -> int:
        return self._buffer.pending_count

    def run(self) -> None:
        """Fetch until the shutdown event is set, then flush once and return."""
        logger.info(
            "Forwarder started (batch_size=%d, batch_timeout=%.3fs, fetch_wait=%.3fs)",
            self._config.batch_size,
            self._config.batch_timeout,
            self._config.fetch_wait,
        )
        try:
            while not self._shutdown.is_set():
                self.drain_once()
        finally:
            self._buffer.stop()
            logger.info("Forwarder stopped. Metrics: %s", self._metrics.snapshot())

    def drain_once(self) -> int:
        """One fetch-and-append cycle. Returns the number of records batched."""
        try:
            messages = self._subscription.fetch(
                self._config.batch_size, self._config.fetch_wait
            )
        except QueueError as exc:
            self._metrics.record_fetch_error()
            logger.error("Error fetching messages: %s", exc)
            self._shutdown.wait(self._retry_delay)
            return 0

        batched = 0
        for msg in messages:
            try:
                record = LogRecord.from_json(msg.data)
            except RecordDecodeError as exc:
                self._metrics.record_decode_failure()
                logger.warning("Dropping undecodable message %r: %s", msg, exc)
                self._ack(msg)
                continue

            self._buffer.add(record)
            self._ack(msg)
            batched += 1

        if batched:
            self._metrics.record_received(batched)
        return batched

    def _ack(self, msg) -> None:
        try:
            msg.ack()
        except QueueError as exc:
            logger.error("Failed to acknowledge %r: %s", msg, exc)

    def _flush(self, batch: list[LogRecord], trigger: str) -> None:
        """Send a batch, falling back to one request per record on failure."""
        logger.info("Processing batch of %d logs (%s)", len(batch), trigger)
        start = time.monotonic()
        try:
            self._sink.send_batch(group_records(batch))
        except SinkError as exc:
            logger.error("Error sending batch to log store: %s", exc)
            logger.info("Attempting to send %d logs individually", len(batch))
            delivered = 0
            for record in batch:
                try:
                    self._sink.send_one(record)
                    delivered += 1
                except SinkError as one_exc:
                    logger.error(
                        "Dropping log %s %s (trace %s): %s",
                        record.method, record.path, record.trace_id, one_exc,
                    )
            self._metrics.record_flush(
                trigger,
                delivered=delivered,
                dropped=len(batch) - delivered,
                send_time_ms=(time.monotonic() - start) * 1000,
                fallback=True,
            )
            return

        self._metrics.record_flush(
            trigger,
            delivered=len(batch),
            dropped=0,
            send_time_ms=(time.monotonic() - start) * 1000,
        )
        logger.info("Successfully sent %d logs", len(batch))
