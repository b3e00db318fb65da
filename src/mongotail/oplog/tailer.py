"""
MongoDB oplog tailer with resumable checkpoints.

Must implement:
1. Attach to ``local.oplog.rs`` with a tailable, await-data cursor
2. Select entries after the checkpoint whose namespace matches a regex
3. Dispatch inserts, updates and deletes to an OpLogHandler
4. Persist the resume position once entries have been handled
5. Reconnect with bounded exponential backoff on cursor failure
6. Stop cleanly on request (drain handlers, save checkpoint)
"""

import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pymongo.errors import OperationFailure, PyMongoError

from . import metrics
from .checkpoint_store import CheckpointStore
from .dispatcher import Dispatcher
from .errors import TailerError
from .handlers import OpLogHandler
from .models import LogEntry, TailerCheckpoint
from .selectors import build_oplog_selector
from .source import OpLogSource
from ..utils.logging import TailerLogContext

logger = logging.getLogger(__name__)

# BadValue, Unauthorized, AuthenticationFailed, InvalidRegex-family codes
NON_RECOVERABLE_CODES = frozenset({2, 13, 18, 51091, 51108})


@dataclass
class TailerConfig:
    """Configuration for OpLogTailer."""
    reconnect_await_seconds: float = 5.0  # Bounded wait on reconnect cursors
    retry_backoff_base: float = 2.0  # Exponential backoff: base^(attempt-1) seconds
    max_retry_delay: float = 60.0  # Max seconds between reconnects
    exhausted_pause_seconds: float = 1.0  # Pause before reopening a cursor the server closed
    max_retries: Optional[int] = None  # None = retry forever
    worker_count: int = 1
    queue_size: int = 1000
    drain_timeout: float = 30.0

    def __post_init__(self):
        """Validate configuration values."""
        if self.reconnect_await_seconds <= 0:
            raise ValueError("reconnect_await_seconds must be positive")
        if self.retry_backoff_base < 1:
            raise ValueError("retry_backoff_base must be at least 1")
        if self.max_retry_delay < 0:
            raise ValueError("max_retry_delay must be non-negative")
        if self.exhausted_pause_seconds < 0:
            raise ValueError("exhausted_pause_seconds must be non-negative")
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.worker_count <= 0:
            raise ValueError("worker_count must be positive")
        if self.queue_size <= 0:
            raise ValueError("queue_size must be positive")
        if self.drain_timeout < 0:
            raise ValueError("drain_timeout must be non-negative")


class TailerState(str, Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    TERMINATED = "terminated"


class OpLogTailer:
    """
    Tail the oplog for one namespace filter and dispatch to a handler.

    One tailer binds to exactly one (filter_regex, label) pair; changing
    either starts an independent checkpoint lineage.

    Thread Safety: ``start`` blocks the calling thread; ``stop`` may be
    called from any thread.

    Example:
        >>> tailer = OpLogTailer(
        ...     source=OpLogSource.from_url(url),
        ...     checkpoint_store=MongoCheckpointStore(client),
        ...     filter_regex="orders.*",
        ...     label="etl1",
        ...     handler=MyHandler()
        ... )
        >>> tailer.start()
    """

    def __init__(
        self,
        source: OpLogSource,
        checkpoint_store: CheckpointStore,
        filter_regex: str,
        label: str,
        handler: OpLogHandler,
        config: Optional[TailerConfig] = None
    ):
        """
        Initialize tailer.

        Args:
            source: Oplog cursor factory
            checkpoint_store: Store for resume position persistence
            filter_regex: Regex matched against entry namespaces
            label: Name of this tailer's checkpoint lineage
            handler: Receives insert/update/delete payloads
            config: Tailer configuration

        Raises:
            TypeError: If a collaborator lacks the required methods
            ValueError: If filter_regex is not a valid regex
        """
        for method in ('open_cursor', 'ping'):
            if not callable(getattr(source, method, None)):
                raise TypeError(f"source must provide {method}()")
        if not hasattr(checkpoint_store, 'initialize') or not hasattr(checkpoint_store, 'advance'):
            raise TypeError("checkpoint_store must be a CheckpointStore instance")
        for method in ('on_insert', 'on_update', 'on_delete'):
            if not callable(getattr(handler, method, None)):
                raise TypeError(f"handler must implement {method}()")
        try:
            re.compile(filter_regex)
        except re.error as e:
            raise ValueError(f"Invalid filter_regex [{filter_regex}]: {e}") from e

        self.source = source
        self.checkpoint_store = checkpoint_store
        self.filter_regex = filter_regex
        self.label = label
        self.handler = handler
        self.config = config or TailerConfig()

        self.state = TailerState.CONNECTING
        self._stop_event = threading.Event()
        self._checkpoint: Optional[TailerCheckpoint] = None
        self._read_checkpoint: Optional[TailerCheckpoint] = None
        self._dispatcher: Optional[Dispatcher] = None
        self.entries_fetched = 0
        self.reconnects = 0

    @property
    def checkpoint(self) -> Optional[TailerCheckpoint]:
        """Last checkpoint persisted by this tailer (None before start)."""
        if self._dispatcher is not None:
            return self._dispatcher.checkpoint
        return self._checkpoint

    def stats(self) -> Dict[str, Any]:
        checkpoint = self.checkpoint
        stats = {
            "label": self.label,
            "filter_regex": self.filter_regex,
            "state": self.state.value,
            "entries_fetched": self.entries_fetched,
            "reconnects": self.reconnects,
            "checkpoint": str(checkpoint.position) if checkpoint else None,
        }
        if self._dispatcher is not None:
            stats.update(self._dispatcher.stats())
        return stats

    def start(self, stop_event: Optional[threading.Event] = None) -> None:
        """
        Start tailing (blocking call).

        This method:
        1. Verifies the log source is reachable
        2. Loads or creates the checkpoint
        3. Opens a tailable cursor after the checkpoint position
        4. Hands each entry to the dispatcher in arrival order
        5. Reconnects when the cursor fails or is exhausted
        6. Drains in-flight entries when stopped

        Args:
            stop_event: Optional event that stops the tailer when set

        Raises:
            SourceUnavailableError: If the log source cannot be reached
            MultipleCheckpointsError: If the checkpoint store is inconsistent
            CheckpointError: If the checkpoint cannot be initialized
            TailerError: On unrecoverable oplog errors
        """
        if stop_event is not None:
            self._stop_event = stop_event

        with TailerLogContext(self.label, self.filter_regex):
            self.state = TailerState.CONNECTING
            try:
                # find() is lazy, so reachability has to be checked up front
                self.source.ping()
                self._checkpoint = self.checkpoint_store.initialize(self.filter_regex, self.label)
            except Exception:
                self.state = TailerState.TERMINATED
                raise
            self._read_checkpoint = self._checkpoint

            self._dispatcher = Dispatcher(
                handler=self.handler,
                checkpoint_store=self.checkpoint_store,
                checkpoint=self._checkpoint,
                worker_count=self.config.worker_count,
                queue_size=self.config.queue_size
            )
            self._dispatcher.start()

            logger.info(
                f"Starting oplog tailer for filter [{self.filter_regex}] and label [{self.label}]",
                extra={"position": str(self._checkpoint.position), "worker_count": self.config.worker_count}
            )

            try:
                self._run()
            except TailerError:
                raise
            except PyMongoError as e:
                logger.error(f"Unrecoverable oplog error: {e}", extra={"error_type": type(e).__name__})
                raise TailerError(f"Unrecoverable oplog error: {e}") from e
            finally:
                self.state = TailerState.TERMINATED
                self._dispatcher.drain(self.config.drain_timeout)
                logger.info("Oplog tailer terminated", extra=self.stats())

    def stop(self) -> None:
        """Request a graceful stop; ``start`` returns after draining."""
        logger.info(
            f"Stopping oplog tailer for label [{self.label}]",
            extra={"label": self.label}
        )
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def _run(self) -> None:
        cursor = self._open_cursor(await_time_ms=None)
        attempt = 0

        while not self.stop_requested:
            try:
                doc = cursor.next()
            except StopIteration:
                if cursor.alive:
                    # soft timeout, no new entries yet
                    attempt = 0
                    continue
                # the server closes tailable cursors that match nothing; not a failure
                self._close_cursor(cursor)
                cursor = self._reopen("exhausted", self.config.exhausted_pause_seconds)
            except PyMongoError as e:
                self._check_recoverable(e)
                logger.warning(f"Oplog cursor error: {e}", extra={"error_type": type(e).__name__})
                self._close_cursor(cursor)
                attempt += 1
                cursor = self._handle_error(type(e).__name__, attempt)
            else:
                attempt = 0
                self._dispatch(doc)
                continue

            if cursor is None:
                return

        self._close_cursor(cursor)

    def _dispatch(self, doc: Dict[str, Any]) -> None:
        entry = LogEntry.from_oplog(doc)
        self.entries_fetched += 1
        logger.debug(
            f"Fetched oplog entry {entry.operation} {entry.namespace}",
            extra={"position": str(entry.position)}
        )
        self._read_checkpoint = self._read_checkpoint.advanced_to(entry.position)
        self._dispatcher.submit(entry)

    def _open_cursor(self, await_time_ms: Optional[int]):
        selector = build_oplog_selector(self._read_checkpoint)
        cursor = self.source.open_cursor(selector, await_time_ms=await_time_ms)
        self.state = TailerState.STREAMING
        return cursor

    def _handle_error(self, reason: str, attempt: int):
        """
        Back off after failed ``attempt`` and reopen the cursor.

        The first reconnect is immediate; later ones wait
        ``min(base ** (attempt - 1), max_retry_delay)`` seconds.

        Raises:
            TailerError: If max_retries is exceeded
        """
        if self.config.max_retries is not None and attempt > self.config.max_retries:
            logger.error(
                "Max retries exceeded reopening oplog cursor",
                extra={"attempt": attempt, "reason": reason}
            )
            raise TailerError(f"Max retries exceeded reopening oplog cursor ({reason})")

        delay = 0.0
        if attempt > 1:
            delay = min(
                self.config.retry_backoff_base ** (attempt - 1),
                self.config.max_retry_delay
            )
        logger.warning(
            f"Reopening oplog cursor in {delay}s (attempt {attempt})",
            extra={"attempt": attempt, "max_retries": self.config.max_retries, "reason": reason}
        )
        return self._reopen(reason, delay)

    def _reopen(self, reason: str, delay: float):
        """
        Reopen the cursor from the last fetched position after ``delay``.

        Returns:
            New cursor, or None if a stop was requested while waiting
        """
        self.state = TailerState.RECONNECTING
        self.reconnects += 1
        metrics.reconnects_total.labels(label=self.label, reason=reason).inc()
        logger.info(
            f"Reopening oplog cursor ({reason})",
            extra={
                "reason": reason,
                "delay_seconds": delay,
                "position": str(self._read_checkpoint.position)
            }
        )
        if delay > 0:
            self._wait(delay)
        if self.stop_requested:
            return None
        return self._open_cursor(await_time_ms=int(self.config.reconnect_await_seconds * 1000))

    def _wait(self, seconds: float) -> None:
        self._stop_event.wait(seconds)

    def _check_recoverable(self, error: PyMongoError) -> None:
        """Raise TailerError for errors that retrying cannot fix."""
        if isinstance(error, OperationFailure) and error.code in NON_RECOVERABLE_CODES:
            logger.error(
                f"Non-recoverable oplog error: {error}",
                extra={"error_type": type(error).__name__, "code": error.code}
            )
            raise TailerError(f"Non-recoverable error: {error}") from error

    def _close_cursor(self, cursor) -> None:
        try:
            cursor.close()
        except PyMongoError as e:
            logger.debug(f"Error closing oplog cursor: {e}")
