"""Forwarder metrics: thread-safe counters and send-time percentiles."""

import threading
import time

FLUSH_TRIGGERS = ("size", "timer", "shutdown")


class ForwarderMetrics:
    """Collects counters about draining, flushing and delivery."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records_received: int = 0
        self._decode_failures: int = 0
        self._batches_flushed: int = 0
        self._records_delivered: int = 0
        self._records_dropped: int = 0
        self._fallbacks: int = 0
        self._fetch_errors: int = 0
        self._send_times: list[float] = []
        self._flush_triggers: dict = {trigger: 0 for trigger in FLUSH_TRIGGERS}
        self._start_time = time.monotonic()

    def record_received(self, count: int = 1) -> None:
        with self._lock:
            self._records_received += count

    def record_decode_failure(self) -> None:
        with self._lock:
            self._decode_failures += 1

    def record_fetch_error(self) -> None:
        with self._lock:
            self._fetch_errors += 1

    def record_flush(self, trigger: str, delivered: int, dropped: int,
                     send_time_ms: float, fallback: bool = False) -> None:
        """Record the outcome of one flush.

        Args:
            trigger: What caused the flush: "size", "timer" or "shutdown".
            delivered: Records the log store accepted.
            dropped: Records lost after the per-record fallback.
            send_time_ms: Wall time spent delivering, in milliseconds.
            fallback: Whether the batch request failed and records were
                sent one by one.
        """
        with self._lock:
            self._batches_flushed += 1
            self._records_delivered += delivered
            self._records_dropped += dropped
            self._send_times.append(send_time_ms)
            self._flush_triggers[trigger] = self._flush_triggers.get(trigger, 0) + 1
            if fallback:
                self._fallbacks += 1

    def snapshot(self) -> dict:
        """Return a point-in-time copy of every counter."""
        with self._lock:
            send_times = list(self._send_times)
            avg_send = sum(send_times) / len(send_times) if send_times else 0.0
            return {
                "records_received": self._records_received,
                "decode_failures": self._decode_failures,
                "fetch_errors": self._fetch_errors,
                "batches_flushed": self._batches_flushed,
                "records_delivered": self._records_delivered,
                "records_dropped": self._records_dropped,
                "fallbacks": self._fallbacks,
                "avg_send_time_ms": avg_send,
                "p95_send_time_ms": self._percentile(send_times, 95),
                "flush_triggers": dict(self._flush_triggers),
                "uptime_seconds": time.monotonic() - self._start_time,
            }

    @staticmethod
    def _percentile(data: list, pct: float) -> float:
        """Interpolated percentile of *data*, or 0.0 if it is empty."""
        if not data:
            return 0.0

        sorted_data = sorted(data)
        n = len(sorted_data)
        if n == 1:
            return float(sorted_data[0])

        idx = (pct / 100) * (n - 1)
        lower = int(idx)
        upper = lower + 1
        fraction = idx - lower
        if upper >= n:
            return float(sorted_data[-1])
        return float(sorted_data[lower] + fraction * (sorted_data[upper] - sorted_data[lower]))
