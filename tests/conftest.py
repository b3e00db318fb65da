"""Shared fixtures for mongotail tests."""

import threading
import time
from typing import Any, Dict, List, Optional

import pytest
from bson import Timestamp

from mongotail.oplog.checkpoint_store import SqlCheckpointStore
from mongotail.oplog.handlers import OpLogHandler
from mongotail.oplog.models import LogEntry, TailerCheckpoint
from mongotail.oplog.selectors import matches_oplog_selector


def future_ts(offset: int, inc: int = 1) -> Timestamp:
    """Oplog timestamp ``offset`` seconds after now (always after a fresh checkpoint)."""
    return Timestamp(int(time.time()) + offset, inc)


def oplog_doc(ts: Timestamp, op: str, ns: str, payload: Dict[str, Any], o2: Optional[Dict] = None) -> Dict[str, Any]:
    doc = {"ts": ts, "v": 2, "op": op, "ns": ns, "o": payload}
    if o2 is not None:
        doc["o2"] = o2
    return doc


class RecordingHandler(OpLogHandler):
    """Handler that records every call."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.lock = threading.Lock()

    def _record(self, kind, payload):
        with self.lock:
            self.calls.append((kind, payload))

    def on_insert(self, inserted):
        self._record("insert", inserted)

    def on_update(self, updated):
        self._record("update", updated)

    def on_delete(self, deleted):
        self._record("delete", deleted)


class FakeCursor:
    """
    Stand-in for a tailable ``pymongo.cursor.Cursor`` (``next``, ``alive``, ``close``).

    Yields its documents, then either raises ``fail_with``, dies (exhausted),
    or reports a soft timeout and tells the source it went idle. Like the
    driver, it raises StopIteration when no document is available.
    """

    def __init__(self, docs, source, fail_with=None, die_when_empty=False):
        self._docs = list(docs)
        self._source = source
        self._fail_with = fail_with
        self._die_when_empty = die_when_empty
        self.alive = True
        self.closed = False

    def next(self):
        if self._docs:
            return self._docs.pop(0)
        if self._fail_with is not None:
            error, self._fail_with = self._fail_with, None
            raise error
        if self._die_when_empty:
            self.alive = False
            raise StopIteration
        self._source.idle()
        raise StopIteration

    def close(self):
        self.closed = True
        self.alive = False


class FakeOplogSource:
    """
    In-memory oplog honouring the tailer's selector.

    ``plan`` holds one dict per cursor to open, with optional keys
    ``limit``, ``fail_with`` and ``die_when_empty``. Opening never fails,
    as with the lazy driver; errors surface on fetch. ``ping_error`` is
    raised by ``ping``. When a cursor has nothing left it sets
    ``stop_event`` so the tailer under test returns.
    """

    def __init__(self, docs=(), plan=None, ping_error=None):
        self.oplog = list(docs)
        self.plan = list(plan or [])
        self.ping_error = ping_error
        self.opened: List[tuple] = []
        self.stop_event = threading.Event()

    def ping(self):
        if self.ping_error is not None:
            raise self.ping_error

    def open_cursor(self, selector, await_time_ms=None):
        self.opened.append((selector, await_time_ms))
        step = self.plan.pop(0) if self.plan else {}

        after = selector["$and"][0]["ts"]["$gt"]
        pattern = selector["$and"][1]["ns"]["$regex"]
        bound = TailerCheckpoint(filter_regex=pattern, label="selector", position=after)
        docs = [d for d in self.oplog if matches_oplog_selector(bound, LogEntry.from_oplog(d))]
        if step.get("limit") is not None:
            docs = docs[:step["limit"]]
        return FakeCursor(
            docs,
            self,
            fail_with=step.get("fail_with"),
            die_when_empty=step.get("die_when_empty", False)
        )

    def idle(self):
        self.stop_event.set()


@pytest.fixture
def handler():
    return RecordingHandler()


@pytest.fixture
def sql_store(tmp_path):
    store = SqlCheckpointStore(f"sqlite:///{tmp_path / 'checkpoints.db'}")
    yield store
    store.close()
