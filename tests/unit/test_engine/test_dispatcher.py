"""
Unit tests for the EngineDispatcher.
"""

import asyncio
import threading

import pytest

from engine.dispatcher import EngineDispatcher
from engine.error_handler import EngineError


@pytest.fixture
def dispatcher():
    d = EngineDispatcher("test-dispatcher")
    d.start()
    yield d
    d.stop()


class TestDispatcher:
    """Tests for submitting work."""

    def test_call_runs_on_worker(self, dispatcher):
        """Test that work runs on the owning thread."""
        name = dispatcher.call(lambda: threading.current_thread().name, timeout=5)
        assert name == "test-dispatcher"

    def test_future_result(self, dispatcher):
        """Test that submit returns a future with the result."""
        future = dispatcher.submit(sum, [1, 2, 3])
        assert future.result(timeout=5) == 6

    def test_exception_travels_to_caller(self, dispatcher):
        """Test that a failing task raises at the caller."""
        def boom():
            raise ValueError("bad input")
        with pytest.raises(ValueError):
            dispatcher.call(boom, timeout=5)

    def test_nested_submit_runs_inline(self, dispatcher):
        """Test that submitting from the worker does not deadlock."""
        def outer():
            return dispatcher.call(lambda: 41) + 1
        assert dispatcher.call(outer, timeout=5) == 42

    def test_await_result(self, dispatcher):
        """Test awaiting from asyncio code."""
        async def main():
            return await dispatcher.run(lambda x: x * 2, 21)
        assert asyncio.run(main()) == 42

    def test_order_preserved(self, dispatcher):
        """Test that tasks run in submission order."""
        seen = []
        futures = [dispatcher.submit(seen.append, i) for i in range(20)]
        for future in futures:
            future.result(timeout=5)
        assert seen == list(range(20))

    def test_not_running(self):
        """Test that submitting to a stopped dispatcher fails."""
        d = EngineDispatcher()
        with pytest.raises(EngineError):
            d.submit(lambda: None)

    def test_stop_drains_queue(self):
        """Test that queued work completes before stop returns."""
        d = EngineDispatcher()
        d.start()
        futures = [d.submit(lambda i=i: i) for i in range(5)]
        d.stop()
        assert not d.running
        assert [f.result(timeout=0) for f in futures] == list(range(5))

    def test_submit_rejected_once_stop_begins(self):
        """Test that work cannot be queued behind the stop marker."""
        d = EngineDispatcher()
        d.start()
        release = threading.Event()
        blocker = d.submit(release.wait, 5)
        stopper = threading.Thread(target=d.stop)
        stopper.start()
        while d.running:
            threading.Event().wait(0.01)
        with pytest.raises(EngineError):
            d.submit(lambda: 1)
        release.set()
        stopper.join(5)
        assert blocker.result(timeout=0) is True

    def test_stranded_task_fails_on_stop(self):
        """Test that a task left after the stop marker fails instead of hanging."""
        from concurrent.futures import Future
        d = EngineDispatcher()
        d.start()
        release = threading.Event()
        d.submit(release.wait, 5)
        stopper = threading.Thread(target=d.stop)
        stopper.start()
        while d.running:
            threading.Event().wait(0.01)
        stranded = Future()
        with d._lock:
            d._queue.put((stranded, lambda: 1, (), {}))
        release.set()
        stopper.join(5)
        with pytest.raises(EngineError):
            stranded.result(timeout=1)
