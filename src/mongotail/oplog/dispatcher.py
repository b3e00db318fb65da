"""
Per-entry dispatch of oplog entries to a handler.

Entries are fed through bounded queues to a small pool of worker threads.
The checkpoint is advanced only after handler calls complete, and only up
to the low watermark: the newest position P such that every entry fetched
at or before P has been handled. A slow handler for entry N therefore holds
the checkpoint behind N even if entry N+1 finished first.
"""

import contextvars
import logging
import queue
import threading
import time
import zlib
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from bson import Timestamp

from . import metrics
from .checkpoint_store import CheckpointStore
from .errors import CheckpointError
from .handlers import OpLogHandler
from .models import LogEntry, Operation, TailerCheckpoint

logger = logging.getLogger(__name__)

_STOP = object()

_CALLBACKS = {
    Operation.INSERT: "on_insert",
    Operation.UPDATE: "on_update",
    Operation.DELETE: "on_delete",
}


class CompletionTracker:
    """
    Tracks fetched entries until they are handled.

    Entries are registered in fetch order and may complete in any order.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._pending: "OrderedDict[int, List[Any]]" = OrderedDict()
        self._next_seq = 0

    def register(self, position: Timestamp) -> int:
        with self._cond:
            seq = self._next_seq
            self._next_seq += 1
            self._pending[seq] = [position, False]
            return seq

    def complete(self, seq: int) -> Optional[Timestamp]:
        """
        Mark an entry handled.

        Returns:
            The new low watermark if it moved, None otherwise
        """
        with self._cond:
            self._pending[seq][1] = True
            watermark = None
            while self._pending:
                first = next(iter(self._pending))
                position, done = self._pending[first]
                if not done:
                    break
                del self._pending[first]
                watermark = position
            if not self._pending:
                self._cond.notify_all()
            return watermark

    @property
    def in_flight(self) -> int:
        with self._cond:
            return len(self._pending)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending, timeout=timeout)


class Dispatcher:
    """
    Hands oplog entries to an OpLogHandler and advances the checkpoint.

    Thread Safety: ``submit`` must be called from a single thread (the
    tailing loop) so that registration order matches fetch order.

    Example:
        >>> dispatcher = Dispatcher(handler, store, checkpoint, worker_count=4)
        >>> dispatcher.start()
        >>> dispatcher.submit(entry)
        >>> dispatcher.drain(timeout=30)
    """

    def __init__(
        self,
        handler: OpLogHandler,
        checkpoint_store: CheckpointStore,
        checkpoint: TailerCheckpoint,
        worker_count: int = 1,
        queue_size: int = 1000
    ):
        if worker_count <= 0:
            raise ValueError("worker_count must be positive")
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")

        self.handler = handler
        self.checkpoint_store = checkpoint_store
        self.worker_count = worker_count
        self.label = checkpoint.label

        self._checkpoint = checkpoint
        self._checkpoint_lock = threading.Lock()
        self._pending_position: Optional[Timestamp] = None
        self._tracker = CompletionTracker()
        # queue_size is the total bound across partitions
        per_queue = max(1, queue_size // worker_count)
        self._queues = [queue.Queue(maxsize=per_queue) for _ in range(worker_count)]
        self._workers: List[threading.Thread] = []
        self._counts_lock = threading.Lock()
        self._counts: Dict[str, int] = {"dispatched": 0, "skipped": 0, "handler_errors": 0}

    @property
    def checkpoint(self) -> TailerCheckpoint:
        """Last checkpoint persisted by this dispatcher."""
        with self._checkpoint_lock:
            return self._checkpoint

    @property
    def in_flight(self) -> int:
        return self._tracker.in_flight

    def stats(self) -> Dict[str, int]:
        with self._counts_lock:
            counts = dict(self._counts)
        counts["in_flight"] = self.in_flight
        return counts

    def start(self) -> None:
        for index, q in enumerate(self._queues):
            # workers inherit the caller's logging context
            ctx = contextvars.copy_context()
            worker = threading.Thread(
                target=ctx.run,
                args=(self._work, q),
                name=f"mongotail-{self.label}-worker-{index}",
                daemon=True
            )
            worker.start()
            self._workers.append(worker)
        logger.info(
            f"Started {self.worker_count} dispatcher worker(s)",
            extra={"label": self.label, "worker_count": self.worker_count}
        )

    def submit(self, entry: LogEntry) -> None:
        """
        Queue an entry for handling. Blocks while the target queue is full.
        """
        seq = self._tracker.register(entry.position)
        metrics.dispatch_queue_depth.labels(label=self.label).set(self._tracker.in_flight)

        if entry.kind is None:
            logger.debug(
                f"Skipping oplog entry with unrecognized operation [{entry.operation}]",
                extra={"label": self.label, "namespace": entry.namespace, "position": str(entry.position)}
            )
            metrics.entries_skipped_total.labels(label=self.label, operation=entry.operation or "none").inc()
            self._bump("skipped")
            self._complete(seq)
            return

        self._queues[self._partition(entry)].put((seq, entry))

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for in-flight entries, then stop the workers.

        Returns:
            True if every submitted entry completed within ``timeout``
        """
        idle = self._tracker.wait_idle(timeout)
        if not idle:
            logger.warning(
                f"Dispatcher drain timed out with {self._tracker.in_flight} entries in flight",
                extra={"label": self.label}
            )

        for q in self._queues:
            try:
                q.put(_STOP, timeout=timeout)
            except queue.Full:
                logger.warning("Dispatcher worker queue still full, abandoning worker", extra={"label": self.label})
        for worker in self._workers:
            worker.join(timeout=timeout)
        self._workers = []

        # retry a checkpoint write that failed on the last completion
        self._flush_pending()
        logger.info(
            "Dispatcher drained",
            extra={"label": self.label, "position": str(self.checkpoint.position), **self.stats()}
        )
        return idle

    def _partition(self, entry: LogEntry) -> int:
        if self.worker_count == 1:
            return 0
        key = repr(entry.document_id).encode("utf-8")
        return zlib.crc32(key) % self.worker_count

    def _work(self, q: queue.Queue) -> None:
        while True:
            item = q.get()
            try:
                if item is _STOP:
                    return
                seq, entry = item
                self._invoke(entry)
                self._complete(seq)
            finally:
                q.task_done()

    def _invoke(self, entry: LogEntry) -> None:
        operation = entry.kind
        try:
            getattr(self.handler, _CALLBACKS[operation])(entry.payload)
            metrics.entries_dispatched_total.labels(label=self.label, operation=operation.name.lower()).inc()
            self._bump("dispatched")
        except Exception as e:
            logger.exception(
                f"Handler failed for {operation.name.lower()} at {entry.position}: {e}",
                extra={
                    "label": self.label,
                    "namespace": entry.namespace,
                    "document_id": str(entry.document_id),
                    "error_type": type(e).__name__
                }
            )
            metrics.handler_errors_total.labels(label=self.label, operation=operation.name.lower()).inc()
            self._bump("handler_errors")

    def _complete(self, seq: int) -> None:
        watermark = self._tracker.complete(seq)
        metrics.dispatch_queue_depth.labels(label=self.label).set(self._tracker.in_flight)
        if watermark is not None:
            self._advance(watermark)

    def _advance(self, position: Timestamp) -> None:
        with self._checkpoint_lock:
            if position <= self._checkpoint.position:
                return
            current = self._checkpoint

        # store write runs unlocked; stores only move forward, so concurrent
        # writes cannot regress the durable record
        try:
            self.checkpoint_store.advance(current, position)
        except CheckpointError as e:
            logger.error(
                f"Failed to advance checkpoint to {position}: {e}",
                extra={"label": self.label}
            )
            metrics.checkpoint_advances_total.labels(label=self.label, status="error").inc()
            with self._checkpoint_lock:
                if position > self._checkpoint.position and (
                    self._pending_position is None or position > self._pending_position
                ):
                    self._pending_position = position
            return

        with self._checkpoint_lock:
            self._checkpoint = self._checkpoint.advanced_to(position)
            if self._pending_position is not None and self._pending_position <= position:
                self._pending_position = None
            metrics.checkpoint_advances_total.labels(label=self.label, status="success").inc()
            metrics.checkpoint_lag_seconds.labels(label=self.label).set(max(0.0, time.time() - position.time))

    def _flush_pending(self) -> None:
        with self._checkpoint_lock:
            pending = self._pending_position
        if pending is not None:
            self._advance(pending)

    def _bump(self, key: str) -> None:
        with self._counts_lock:
            self._counts[key] += 1
