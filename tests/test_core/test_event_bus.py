from __future__ import annotations
import threading
import pytest
from arc_weld_master.core.event_bus import EventBus

class TestEventBus:
    def test_subscribe_and_emit(self):
        bus = EventBus(threaded=False)
        received = []
        bus.subscribe("test.event", lambda data: received.append(data))
        bus.emit("test.event", {"key": "value"})
        assert len(received) == 1
        assert received[0]["key"] == "value"

    def test_multiple_subscribers(self):
        bus = EventBus(threaded=False)
        results = []
        bus.subscribe("calc.done", lambda d: results.append("A"))
        bus.subscribe("calc.done", lambda d: results.append("B"))
        bus.emit("calc.done", {})
        assert results == ["A", "B"]

    def test_unsubscribe(self):
        bus = EventBus(threaded=False)
        received = []
        handler = lambda d: received.append(d)
        bus.subscribe("ev", handler)
        bus.unsubscribe("ev", handler)
        bus.emit("ev", {"x": 1})
        assert len(received) == 0

    def test_emit_unregistered_event(self):
        bus = EventBus(threaded=False)
        bus.emit("no.listener", {})

    def test_event_history(self):
        bus = EventBus(keep_history=True, threaded=False)
        bus.emit("a", {"v": 1})
        bus.emit("b", {"v": 2})
        history = bus.get_history()
        assert len(history) == 2
        assert history[0]["event"] == "a"
        bus.clear_history()
        assert bus.get_history() == []

    def test_wildcard_subscribe(self):
        bus = EventBus(threaded=False)
        received = []
        bus.subscribe("*", lambda d: received.append(d))
        bus.emit("any.event", {"x": 1})
        assert len(received) == 1

    def test_handler_error_does_not_stop_others(self):
        bus = EventBus(threaded=False)
        received = []

        def bad(_):
            raise RuntimeError("boom")

        bus.subscribe("ev", bad)
        bus.subscribe("ev", lambda d: received.append(d))
        bus.emit("ev", {"x": 1})
        assert received == [{"x": 1}]


class TestThreadedDispatch:
    def test_delivers_in_order_off_thread(self):
        bus = EventBus()
        received = []
        threads = set()

        def handler(d):
            received.append(d["i"])
            threads.add(threading.current_thread().name)

        bus.subscribe("step", handler)
        for i in range(50):
            bus.emit("step", {"i": i})
        assert bus.flush(timeout=5.0)
        assert received == list(range(50))
        assert threading.current_thread().name not in threads
        bus.close()

    def test_slow_subscriber_drops_instead_of_blocking(self):
        bus = EventBus(max_pending=2)
        gate = threading.Event()
        bus.subscribe("step", lambda d: gate.wait(5.0))
        for i in range(20):
            bus.emit("step", {"i": i})
        assert bus.dropped > 0
        gate.set()
        assert bus.flush(timeout=5.0)
        bus.close()

    def test_flush_without_dispatcher(self):
        assert EventBus().flush(timeout=0.1)

    def test_emit_after_close_is_ignored(self):
        bus = EventBus()
        received = []
        bus.subscribe("ev", lambda d: received.append(d))
        bus.close()
        bus.emit("ev", {"x": 1})
        assert received == []
