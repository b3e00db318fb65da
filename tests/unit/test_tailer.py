"""Unit tests for the tailing loop."""

import threading
from unittest.mock import Mock

import pytest
from pymongo.cursor import Cursor
from pymongo.errors import AutoReconnect, OperationFailure, ServerSelectionTimeoutError

from mongotail.oplog.checkpoint_store import CheckpointStore
from mongotail.oplog.errors import MultipleCheckpointsError, SourceUnavailableError, TailerError
from mongotail.oplog.tailer import OpLogTailer, TailerConfig, TailerState

from conftest import FakeCursor, FakeOplogSource, RecordingHandler, future_ts, oplog_doc


def make_tailer(source, store, handler, filter_regex="orders.*", label="etl1", **config):
    return OpLogTailer(
        source=source,
        checkpoint_store=store,
        filter_regex=filter_regex,
        label=label,
        handler=handler,
        config=TailerConfig(**config)
    )


def run(tailer, source):
    tailer.start(stop_event=source.stop_event)


class TestTailerConfig:
    """Test TailerConfig validation."""

    def test_defaults(self):
        config = TailerConfig()
        assert config.reconnect_await_seconds == 5.0
        assert config.max_retries is None
        assert config.worker_count == 1

    def test_invalid_reconnect_await(self):
        with pytest.raises(ValueError, match="reconnect_await_seconds must be positive"):
            TailerConfig(reconnect_await_seconds=0)

    def test_invalid_max_retries(self):
        with pytest.raises(ValueError, match="max_retries must be non-negative"):
            TailerConfig(max_retries=-1)

    def test_invalid_worker_count(self):
        with pytest.raises(ValueError, match="worker_count must be positive"):
            TailerConfig(worker_count=0)

    def test_invalid_exhausted_pause(self):
        with pytest.raises(ValueError, match="exhausted_pause_seconds must be non-negative"):
            TailerConfig(exhausted_pause_seconds=-1)


class TestTailerInit:
    """Test OpLogTailer construction."""

    def test_rejects_invalid_regex(self, sql_store, handler):
        with pytest.raises(ValueError, match="Invalid filter_regex"):
            make_tailer(FakeOplogSource(), sql_store, handler, filter_regex="orders[")

    def test_rejects_incomplete_handler(self, sql_store):
        class NoDelete:
            def on_insert(self, payload): pass
            def on_update(self, payload): pass

        with pytest.raises(TypeError, match="on_delete"):
            make_tailer(FakeOplogSource(), sql_store, NoDelete())

    def test_rejects_invalid_store(self, handler):
        with pytest.raises(TypeError, match="checkpoint_store must be a CheckpointStore"):
            make_tailer(FakeOplogSource(), "not_a_store", handler)

    def test_rejects_source_without_ping(self, sql_store, handler):
        class CursorsOnly:
            def open_cursor(self, selector, await_time_ms=None): pass

        with pytest.raises(TypeError, match="source must provide ping"):
            make_tailer(CursorsOnly(), sql_store, handler)


class TestCursorContract:
    """The in-memory cursor only uses what the driver cursor provides."""

    @pytest.mark.parametrize("name", ["next", "close", "alive"])
    def test_driver_cursor_has_member(self, name):
        assert hasattr(Cursor, name)
        assert hasattr(FakeCursor([], None), name)

    def test_no_document_raises_stop_iteration(self):
        source = FakeOplogSource()
        cursor = FakeCursor([], source)
        with pytest.raises(StopIteration):
            cursor.next()
        assert cursor.alive


class TestTailerStreaming:
    """Test the streaming path."""

    def test_end_to_end_scenario(self, sql_store, handler):
        t1, t2, t3 = future_ts(10), future_ts(20), future_ts(30)
        source = FakeOplogSource([
            oplog_doc(t1, "i", "orders.created", {"_id": 1, "total": 10}),
            oplog_doc(t2, "i", "users.created", {"_id": 2, "name": "bob"}),
            oplog_doc(t3, "u", "orders.updated", {"$set": {"total": 12}}, o2={"_id": 1}),
        ])
        tailer = make_tailer(source, sql_store, handler)

        run(tailer, source)

        assert handler.calls == [
            ("insert", {"_id": 1, "total": 10}),
            ("update", {"$set": {"total": 12}}),
        ]
        assert sql_store.load("orders.*", "etl1").position == t3
        assert tailer.checkpoint.position == t3
        assert tailer.state is TailerState.TERMINATED

    def test_first_cursor_uses_checkpoint_and_unbounded_wait(self, sql_store, handler):
        source = FakeOplogSource()
        tailer = make_tailer(source, sql_store, handler)

        run(tailer, source)

        selector, await_time_ms = source.opened[0]
        stored = sql_store.load("orders.*", "etl1")
        assert selector == {"$and": [{"ts": {"$gt": stored.position}}, {"ns": {"$regex": "orders.*"}}]}
        assert await_time_ms is None

    def test_resumes_from_previous_run(self, sql_store, handler):
        t1, t2 = future_ts(10), future_ts(20)
        docs = [
            oplog_doc(t1, "i", "orders.created", {"_id": 1}),
            oplog_doc(t2, "i", "orders.created", {"_id": 2}),
        ]
        first = FakeOplogSource(docs[:1])
        run(make_tailer(first, sql_store, handler), first)

        second = FakeOplogSource(docs)
        restarted = RecordingHandler()
        run(make_tailer(second, sql_store, restarted), second)

        assert handler.calls == [("insert", {"_id": 1})]
        assert restarted.calls == [("insert", {"_id": 2})]
        assert second.opened[0][0]["$and"][0] == {"ts": {"$gt": t1}}

    def test_stop_from_another_thread(self, sql_store, handler):
        source = FakeOplogSource()
        source.idle = lambda: None  # never stops by itself
        tailer = make_tailer(source, sql_store, handler)

        thread = threading.Thread(target=tailer.start)
        thread.start()
        tailer.stop()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert tailer.state is TailerState.TERMINATED

    def test_multiple_checkpoints_abort_before_streaming(self, handler):
        store = Mock(spec=CheckpointStore)
        store.initialize.side_effect = MultipleCheckpointsError("orders.*", "etl1", 2)
        source = FakeOplogSource()
        tailer = make_tailer(source, store, handler)

        with pytest.raises(MultipleCheckpointsError):
            run(tailer, source)

        assert source.opened == []
        assert tailer.state is TailerState.TERMINATED


class TestTailerReconnect:
    """Test reconnect and backoff."""

    def test_reconnect_resumes_after_last_entry(self, sql_store, handler):
        ts = [future_ts(10 * i) for i in range(1, 5)]
        source = FakeOplogSource(
            [oplog_doc(t, "i", "orders.created", {"_id": n}) for n, t in enumerate(ts)],
            plan=[{"limit": 2, "fail_with": AutoReconnect("primary stepped down")}, {}]
        )
        tailer = make_tailer(source, sql_store, handler, reconnect_await_seconds=3)

        run(tailer, source)

        # no duplicates and no gap
        assert handler.calls == [("insert", {"_id": n}) for n in range(4)]
        reopened_selector, await_time_ms = source.opened[1]
        assert reopened_selector["$and"][0] == {"ts": {"$gt": ts[1]}}
        assert await_time_ms == 3000
        assert tailer.reconnects == 1
        assert sql_store.load("orders.*", "etl1").position == ts[3]

    def test_exhausted_cursor_is_reopened(self, sql_store, handler):
        t1 = future_ts(10)
        source = FakeOplogSource(
            [oplog_doc(t1, "d", "orders.deleted", {"_id": 1})],
            plan=[{"limit": 0, "die_when_empty": True}, {}]
        )
        tailer = make_tailer(source, sql_store, handler)
        tailer._wait = lambda seconds: None

        run(tailer, source)

        assert len(source.opened) == 2
        assert handler.calls == [("delete", {"_id": 1})]

    def test_backoff_is_exponential_and_capped(self, sql_store, handler):
        failure = AutoReconnect("connection refused")
        source = FakeOplogSource(plan=[{"fail_with": failure}] * 5 + [{}])
        tailer = make_tailer(source, sql_store, handler, retry_backoff_base=2, max_retry_delay=5)
        delays = []
        tailer._wait = delays.append

        run(tailer, source)

        # first reconnect is immediate, then 2, 4, then capped at 5
        assert delays == [2, 4, 5, 5]
        assert len(source.opened) == 6

    def test_max_retries_exceeded_is_fatal(self, sql_store, handler):
        failure = AutoReconnect("connection refused")
        source = FakeOplogSource(plan=[{"fail_with": failure}] * 6)
        tailer = make_tailer(source, sql_store, handler, max_retries=2)
        tailer._wait = lambda seconds: None

        with pytest.raises(TailerError, match="Max retries exceeded"):
            run(tailer, source)
        assert tailer.state is TailerState.TERMINATED
        assert len(source.opened) == 3

    def test_quiet_oplog_does_not_escalate_backoff(self, sql_store, handler):
        t1 = future_ts(10)
        source = FakeOplogSource(
            [oplog_doc(t1, "i", "orders.created", {"_id": 1})],
            plan=[{"limit": 0, "die_when_empty": True}] * 4 + [{}]
        )
        tailer = make_tailer(source, sql_store, handler, max_retries=1, exhausted_pause_seconds=0.5)
        delays = []
        tailer._wait = delays.append

        run(tailer, source)

        # server-closed cursors are reopened at a fixed pause and never use up retries
        assert delays == [0.5] * 4
        assert tailer.reconnects == 4
        assert handler.calls == [("insert", {"_id": 1})]

    def test_non_recoverable_error_is_fatal(self, sql_store, handler):
        source = FakeOplogSource(plan=[
            {"fail_with": OperationFailure("not authorized on local", code=13)}
        ])
        tailer = make_tailer(source, sql_store, handler)

        with pytest.raises(TailerError, match="Non-recoverable"):
            run(tailer, source)
        assert len(source.opened) == 1

    def test_unreachable_source_at_startup_is_fatal(self, sql_store, handler):
        source = FakeOplogSource(ping_error=SourceUnavailableError("Can't open connection to log source"))
        tailer = make_tailer(source, sql_store, handler)

        with pytest.raises(SourceUnavailableError):
            run(tailer, source)

        assert source.opened == []
        assert tailer.state is TailerState.TERMINATED
        # no checkpoint is created for a source that was never reached
        assert sql_store.load("orders.*", "etl1") is None

    def test_fetch_error_after_startup_is_retried(self, sql_store, handler):
        t1 = future_ts(10)
        source = FakeOplogSource(
            [oplog_doc(t1, "i", "orders.created", {"_id": 1})],
            plan=[{"limit": 0, "fail_with": ServerSelectionTimeoutError("no primary")}, {}]
        )
        tailer = make_tailer(source, sql_store, handler)

        run(tailer, source)

        assert tailer.reconnects == 1
        assert handler.calls == [("insert", {"_id": 1})]

    def test_stop_during_backoff(self, sql_store, handler):
        failure = AutoReconnect("connection refused")
        source = FakeOplogSource(plan=[{"fail_with": failure}] * 4)
        tailer = make_tailer(source, sql_store, handler, retry_backoff_base=2)
        tailer._wait = lambda seconds: tailer.stop()

        run(tailer, source)

        assert tailer.state is TailerState.TERMINATED
        assert len(source.opened) == 2
