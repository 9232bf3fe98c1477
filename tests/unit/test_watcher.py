"""Unit tests for ChangeStreamWatcher (session lifecycle, dispatch, reconnection)."""

import logging
import time
from unittest.mock import Mock

import pytest
from pymongo.errors import ConnectionFailure, OperationFailure

from fakes import FakeChangeStream, FakeCollection, RecordingHandler, insert_change, wait_for
from mongocdc.connectors.cdc import (
    CDCConfig, ChangeNormalizationError, ChangeOperationType, ChangeStreamWatcher, OperationHooks,
    ReconnectExhaustedError, SubscriptionClosedError, WatchState
)


class TestInit:
    """Test construction."""

    def test_rejects_object_without_watch(self):
        with pytest.raises(TypeError, match="collection must be a PyMongo Collection"):
            ChangeStreamWatcher("not_a_collection")

    def test_rejects_non_positive_queue_size(self, collection):
        with pytest.raises(ValueError, match="queue_size must be positive"):
            ChangeStreamWatcher(collection, queue_size=0)

    def test_initial_state(self, make_watcher):
        watcher = make_watcher()
        assert watcher.state == WatchState.STOPPED
        assert not watcher.is_watching()
        assert watcher.get_resume_token() is None
        assert watcher.collection_name == "users"

    def test_handlers_registered_from_constructor(self, make_watcher):
        handler = RecordingHandler()
        watcher = make_watcher(handlers=[handler, handler])
        assert watcher.get_status()["handlers"] == 1


class TestStartStop:
    """Test start()/stop() semantics."""

    def test_start_opens_one_stream(self, make_watcher, collection):
        watcher = make_watcher()
        watcher.start()

        assert watcher.is_watching()
        assert len(collection.watch_calls) == 1
        assert collection.watch_calls[0]["full_document"] == "updateLookup"

    def test_second_start_is_ignored(self, make_watcher, collection, caplog):
        watcher = make_watcher()
        watcher.start()

        with caplog.at_level(logging.WARNING):
            watcher.start()

        assert len(collection.watch_calls) == 1
        assert "already watching" in caplog.text

    def test_stop_when_not_watching_is_ignored(self, make_watcher, collection, caplog):
        stream = FakeChangeStream()
        collection.streams.append(stream)
        watcher = make_watcher()

        with caplog.at_level(logging.WARNING):
            watcher.stop()

        assert stream.close_calls == 0
        assert collection.watch_calls == []
        assert "is not watching" in caplog.text

    def test_stop_closes_stream(self, make_watcher, collection):
        stream = FakeChangeStream()
        collection.streams.append(stream)
        watcher = make_watcher()
        watcher.start()

        watcher.stop()

        assert watcher.state == WatchState.STOPPED
        assert stream.close_calls == 1
        assert watcher.join(timeout=1)

    def test_stop_then_start_resumes_from_last_token(self, make_watcher, collection):
        collection.streams.append(FakeChangeStream([insert_change("t1")]))
        handler = RecordingHandler()
        watcher = make_watcher(handlers=[handler])

        watcher.start()
        assert wait_for(lambda: len(handler.events) == 1)
        watcher.stop()
        watcher.start()

        assert collection.watch_calls[1]["resume_after"] == {"_data": "t1"}

    def test_start_failure_leaves_watcher_stopped(self, make_watcher, collection):
        collection.streams.append(OperationFailure("The $changeStream stage is only supported on replica sets"))
        watcher = make_watcher()

        with pytest.raises(OperationFailure):
            watcher.start()

        assert watcher.state == WatchState.STOPPED

        watcher.start()
        assert watcher.is_watching()

    def test_context_manager(self, make_watcher, collection):
        stream = FakeChangeStream()
        collection.streams.append(stream)

        with make_watcher() as watcher:
            assert watcher.is_watching()

        assert watcher.state == WatchState.STOPPED
        assert stream.close_calls == 1

    def test_stop_from_inside_handler(self, make_watcher, collection):
        collection.streams.append(FakeChangeStream([insert_change("t1"), insert_change("t2")]))
        watcher = make_watcher()
        seen = []

        class Stopper:
            def on_event(self, event):
                seen.append(event)
                watcher.stop()

        watcher.register_handler(Stopper())
        watcher.start()

        assert wait_for(lambda: watcher.state == WatchState.STOPPED)
        time.sleep(0.05)
        assert len(seen) == 1


class TestDispatch:
    """Test delivery of changes to hooks and handlers."""

    def test_handler_receives_insert(self, make_watcher, collection):
        collection.streams.append(FakeChangeStream([insert_change("t1", name="test")]))
        handler = RecordingHandler()
        watcher = make_watcher(handlers=[handler])

        watcher.start()

        assert wait_for(lambda: len(handler.events) == 1)
        event = handler.events[0]
        assert event.operation_type == ChangeOperationType.INSERT
        assert event.full_document["name"] == "test"

    def test_resume_token_updated_before_handler(self, make_watcher, collection):
        collection.streams.append(FakeChangeStream([insert_change("t1"), insert_change("t2")]))
        watcher = make_watcher()
        tokens = []

        class TokenChecker:
            def on_event(self, event):
                tokens.append(watcher.get_resume_token())

        watcher.register_handler(TokenChecker())
        watcher.start()

        assert wait_for(lambda: len(tokens) == 2)
        assert tokens == [{"_data": "t1"}, {"_data": "t2"}]

    def test_unregistered_handler_not_invoked(self, make_watcher, collection):
        stream = FakeChangeStream()
        collection.streams.append(stream)
        kept, removed = RecordingHandler(), RecordingHandler()
        watcher = make_watcher(handlers=[kept, removed])

        watcher.unregister_handler(removed)
        watcher.start()
        stream.push(insert_change("t1"))

        assert wait_for(lambda: len(kept.events) == 1)
        assert removed.events == []

    def test_changes_delivered_in_order(self, make_watcher, collection):
        changes = [insert_change(f"t{i}", doc_id=i) for i in range(50)]
        collection.streams.append(FakeChangeStream(changes))
        handler = RecordingHandler()
        watcher = make_watcher(handlers=[handler])

        watcher.start()

        assert wait_for(lambda: len(handler.events) == 50)
        assert [e.document_key["_id"] for e in handler.events] == list(range(50))
        assert watcher.get_resume_token() == {"_data": "t49"}

    def test_handler_failure_does_not_interrupt_stream(self, make_watcher, collection):
        collection.streams.append(FakeChangeStream([insert_change("t1"), insert_change("t2")]))
        broken = Mock()
        broken.on_event.side_effect = RuntimeError("handler bug")
        healthy = RecordingHandler()
        watcher = make_watcher(handlers=[broken, healthy])

        watcher.start()

        assert wait_for(lambda: len(healthy.events) == 2)
        assert watcher.is_watching()
        assert len(collection.watch_calls) == 1

    def test_operation_hooks_called(self, make_watcher, collection):
        collection.streams.append(FakeChangeStream([
            insert_change("t1"),
            {"_id": {"_data": "t2"}, "operationType": "delete", "documentKey": {"_id": 1}},
            {"_id": {"_data": "t3"}, "operationType": "drop", "ns": {"db": "testdb", "coll": "users"}},
        ]))
        calls = []

        class Hooks(OperationHooks):
            def on_insert(self, event):
                calls.append("insert")

            def on_delete(self, event):
                calls.append("delete")

            def on_other(self, event):
                calls.append(event.raw_operation_type)

        watcher = make_watcher(hooks=Hooks())
        watcher.start()

        assert wait_for(lambda: len(calls) == 3)
        assert calls == ["insert", "delete", "drop"]


class TestReconnection:
    """Test recovery after stream errors and closes."""

    def test_no_reconnect_when_disabled(self, make_watcher, collection):
        error = ConnectionFailure("connection reset")
        collection.streams.append(FakeChangeStream(error=error))
        handler = RecordingHandler()
        watcher = make_watcher(CDCConfig(auto_reconnect=False, reconnect_delay=0.01), handlers=[handler])

        watcher.start()

        assert wait_for(lambda: watcher.state == WatchState.STOPPED)
        assert handler.errors == [error]
        time.sleep(0.05)
        assert len(collection.watch_calls) == 1
        assert watcher.join(timeout=1)

    def test_single_reconnect_after_delay(self, make_watcher, collection):
        collection.streams.extend([
            FakeChangeStream(error=ConnectionFailure("connection reset")),
            FakeChangeStream(),
        ])
        watcher = make_watcher(CDCConfig(max_reconnect_attempts=1, reconnect_delay=0.01))

        watcher.start()

        assert wait_for(lambda: len(collection.watch_calls) == 2)
        assert wait_for(watcher.is_watching)
        assert collection.watch_times[1] - collection.watch_times[0] >= 0.01
        assert watcher.reconnect_attempts == 0
        assert collection.opened[0].close_calls == 1

    def test_successful_reopen_restores_full_budget(self, make_watcher, collection):
        collection.streams.extend([
            FakeChangeStream(end=True),
            FakeChangeStream(end=True),
            FakeChangeStream(),
        ])
        handler = RecordingHandler()
        watcher = make_watcher(CDCConfig(max_reconnect_attempts=1, reconnect_delay=0.01), handlers=[handler])

        watcher.start()

        assert wait_for(lambda: len(collection.watch_calls) == 3)
        assert wait_for(watcher.is_watching)
        assert handler.closes == 2
        assert watcher.reconnect_attempts == 0

    def test_reconnect_resumes_after_last_token(self, make_watcher, collection):
        collection.streams.extend([
            FakeChangeStream([insert_change("t1"), insert_change("t2")], error=ConnectionFailure("reset")),
            FakeChangeStream(),
        ])
        handler = RecordingHandler()
        watcher = make_watcher(handlers=[handler])

        watcher.start()

        assert wait_for(lambda: len(collection.watch_calls) == 2)
        assert collection.watch_calls[1]["resume_after"] == {"_data": "t2"}
        assert "start_at_operation_time" not in collection.watch_calls[1]
        assert len(handler.events) == 2

    def test_unsolicited_close_notifies_and_reconnects(self, make_watcher, collection):
        collection.streams.extend([FakeChangeStream(end=True), FakeChangeStream()])
        handler = RecordingHandler()
        watcher = make_watcher(handlers=[handler])

        watcher.start()

        assert wait_for(lambda: len(collection.watch_calls) == 2)
        assert wait_for(watcher.is_watching)
        assert handler.closes == 1
        assert handler.errors == []
        assert isinstance(watcher._controller.last_error, SubscriptionClosedError)

    def test_gives_up_after_max_attempts(self, make_watcher, collection):
        collection.streams.extend([
            FakeChangeStream(error=ConnectionFailure("reset")),
            ConnectionFailure("refused"),
            ConnectionFailure("refused"),
        ])
        watcher = make_watcher(CDCConfig(max_reconnect_attempts=2, reconnect_delay=0))

        watcher.start()

        assert watcher.join(timeout=2)
        assert len(collection.watch_calls) == 3
        assert isinstance(watcher._controller.last_error, ReconnectExhaustedError)
        assert watcher.get_status()["last_error"] == "Maximum reconnection attempts reached (2/2)"

    def test_stop_during_reconnect_cancels_it(self, make_watcher, collection):
        collection.streams.append(FakeChangeStream(error=ConnectionFailure("reset")))
        watcher = make_watcher(CDCConfig(reconnect_delay=10, max_reconnect_attempts=3))

        watcher.start()
        assert wait_for(lambda: watcher.state == WatchState.RECONNECTING)
        assert not watcher.is_watching()

        started = time.monotonic()
        watcher.stop()

        assert time.monotonic() - started < 2
        assert watcher.state == WatchState.STOPPED
        time.sleep(0.05)
        assert len(collection.watch_calls) == 1

    def test_hook_failure_treated_as_feed_error(self, make_watcher, collection):
        collection.streams.extend([FakeChangeStream([insert_change("t1")]), FakeChangeStream()])

        class Hooks(OperationHooks):
            def on_insert(self, event):
                raise RuntimeError("hook bug")

        handler = RecordingHandler()
        watcher = make_watcher(hooks=Hooks(), handlers=[handler])

        watcher.start()

        assert wait_for(lambda: len(collection.watch_calls) == 2)
        assert len(handler.events) == 1
        assert len(handler.errors) == 1
        assert collection.watch_calls[1]["resume_after"] == {"_data": "t1"}

    def test_malformed_change_treated_as_feed_error(self, make_watcher, collection):
        collection.streams.extend([
            FakeChangeStream([
                {"_id": {"_data": "t1"}, "operationType": "insert", "ns": "testdb.users"},
                insert_change("t2"),
            ]),
            FakeChangeStream([insert_change("t3", name="after")]),
        ])
        handler = RecordingHandler()
        watcher = make_watcher(handlers=[handler])

        watcher.start()

        assert wait_for(lambda: len(handler.events) == 1)
        assert len(handler.errors) == 1
        assert isinstance(handler.errors[0], ChangeNormalizationError)
        assert handler.events[0].full_document["name"] == "after"
        assert collection.watch_calls[1]["resume_after"] == {"_data": "t1"}
        assert watcher.is_watching()
        assert watcher._worker.is_alive()

    def test_unexpected_dispatch_error_does_not_kill_worker(self, make_watcher, collection):
        collection.streams.extend([
            FakeChangeStream([insert_change("t1")]),
            FakeChangeStream([insert_change("t2")]),
        ])
        hooks = Mock(spec=OperationHooks)
        hooks.hook_for.side_effect = [KeyError("no hook"), lambda event: None]
        handler = RecordingHandler()
        watcher = make_watcher(hooks=hooks, handlers=[handler])

        watcher.start()

        assert wait_for(lambda: len(handler.events) == 1)
        assert len(handler.errors) == 1
        assert isinstance(handler.errors[0], KeyError)
        assert handler.events[0].document_key == {"_id": 1}
        assert len(collection.watch_calls) == 2
        assert watcher.is_watching()

    def test_restart_after_giving_up(self, make_watcher, collection):
        collection.streams.append(FakeChangeStream(error=ConnectionFailure("reset")))
        watcher = make_watcher(CDCConfig(auto_reconnect=False))

        watcher.start()
        assert watcher.join(timeout=2)

        watcher.start()
        assert watcher.is_watching()
        assert len(collection.watch_calls) == 2


class TestStatus:
    """Test get_status()."""

    def test_status_fields(self, make_watcher, collection):
        collection.streams.append(FakeChangeStream([insert_change("t1")]))
        watcher = make_watcher(CDCConfig(max_reconnect_attempts=0), handlers=[RecordingHandler()])
        watcher.start()
        assert wait_for(lambda: watcher.get_status()["events_dispatched"] == 1)

        status = watcher.get_status()

        assert status["collection"] == "users"
        assert status["state"] == "watching"
        assert status["watching"] is True
        assert status["max_reconnect_attempts"] == 0
        assert status["handlers"] == 1
        assert status["resume_token"] == {"_data": "t1"}
        assert status["last_error"] is None
