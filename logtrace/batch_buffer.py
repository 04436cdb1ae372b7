"""BatchBuffer: accumulates records and flushes on size, age, or stop."""

import logging
import threading
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

TIMER_MODES = ("age", "debounce")


class BatchBuffer:
    """Bounded batch shared between a producer thread and an age timer.

    ``add()`` flushes inline when the batch reaches ``batch_size``. A
    background timer thread flushes a non-empty batch once its deadline
    passes. In ``age`` mode the deadline is set by the first record of a
    batch; in ``debounce`` mode every append pushes it back.
    The default ``age`` mode bounds how long any record waits to
    ``batch_timeout``. ``debounce`` does not: a steady trickle of appends
    keeps postponing the flush until the batch fills.

    The batch is swapped out under ``_lock`` and handed to ``on_flush``
    while holding ``_flush_lock``, which is taken before ``_lock`` is
    released. Each trigger therefore flushes a batch exactly once and
    batches reach ``on_flush`` in order. ``on_flush`` must not call back
    into the buffer.
    """

    def __init__(
        self,
        batch_size: int,
        batch_timeout: float,
        on_flush: Callable[[list, str], None],
        timer_mode: str = "age",
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if timer_mode not in TIMER_MODES:
            raise ValueError(f"unknown timer mode: {timer_mode!r}")

        self._batch_size = batch_size
        self._batch_timeout = batch_timeout
        self._on_flush = on_flush
        self._timer_mode = timer_mode

        self._lock = threading.Lock()
        self._wakeup = threading.Condition(self._lock)
        self._flush_lock = threading.Lock()
        self._batch: list = []
        self._deadline: float | None = None
        self._stopped = False

        self._timer = threading.Thread(
            target=self._timer_loop, name="batch-age-timer", daemon=True
        )
        self._timer.start()

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def batch_timeout(self) -> float:
        return self._batch_timeout

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._batch)

    def add(self, record) -> None:
        """Append one record, flushing inline if the batch is now full."""
        with self._lock:
            if self._stopped:
                raise RuntimeError("BatchBuffer is stopped")
            self._batch.append(record)
            if len(self._batch) < self._batch_size:
                if self._deadline is None or self._timer_mode == "debounce":
                    self._deadline = time.monotonic() + self._batch_timeout
                    self._wakeup.notify()
                return
            batch = self._take()
            self._flush_lock.acquire()
        self._deliver(batch, "size")

    def stop(self) -> None:
        """Stop the timer and flush whatever is left, exactly once."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            self._wakeup.notify_all()
            batch = self._take()
            self._flush_lock.acquire()
        self._deliver(batch, "shutdown")
        self._timer.join(timeout=5.0)

    def _take(self) -> list:
        """Swap out the current batch and disarm the timer. Caller holds _lock."""
        batch = self._batch
        self._batch = []
        self._deadline = None
        return batch

    def _deliver(self, batch: list, trigger: str) -> None:
        """Hand *batch* to on_flush. Caller holds _flush_lock."""
        try:
            if batch:
                logger.debug("Flushing %d records (%s)", len(batch), trigger)
                self._on_flush(batch, trigger)
        except Exception:
            logger.exception("Flush of %d records failed", len(batch))
        finally:
            self._flush_lock.release()

    def _timer_loop(self) -> None:
        while True:
            with self._lock:
                while not self._stopped:
                    if self._deadline is None:
                        self._wakeup.wait()
                        continue
                    remaining = self._deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    self._wakeup.wait(remaining)
                if self._stopped:
                    return
                batch = self._take()
                self._flush_lock.acquire()
            self._deliver(batch, "timer")
