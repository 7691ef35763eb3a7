"""
Task/result dispatcher.

Runs engine calls on a single owning worker thread and hands back a
``concurrent.futures.Future``. Callers pick how to wait: block with
``call``, await with ``run``, or keep the future. Work submitted from the
owning thread itself runs inline so nested calls cannot deadlock.
"""

from __future__ import annotations

import asyncio
import queue
import threading
from concurrent.futures import Future
from typing import Any, Callable, Optional, Tuple, TypeVar

from engine.error_handler import EngineError, get_logger

T = TypeVar("T")

log = get_logger("dispatcher")

_Task = Tuple[Future, Callable[..., Any], tuple, dict]


class EngineDispatcher:
    """Single-threaded executor that owns engine-facing work for callers on other threads."""

    def __init__(self, name: str = "faction-engine") -> None:
        self.name = name
        self._queue: "queue.Queue[Optional[_Task]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._accepting = False
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._accepting and self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
            self._thread.start()
            self._accepting = True
        log.debug(f"Dispatcher '{self.name}' started")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Finish queued work, then stop the worker. Nothing is accepted once stopping starts."""
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._accepting = False
            self._queue.put(None)
        thread.join(timeout)
        with self._lock:
            self._thread = None
            if not thread.is_alive():
                self._fail_pending()
        log.debug(f"Dispatcher '{self.name}' stopped")

    def is_owner_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> "Future[T]":
        """Queue ``fn`` for the owning thread and return its future."""
        future: "Future[T]" = Future()
        if self.is_owner_thread():
            self._execute(future, fn, args, kwargs)
            return future
        with self._lock:
            if not self.running:
                raise EngineError(f"Dispatcher '{self.name}' is not running")
            self._queue.put((future, fn, args, kwargs))
        return future

    def call(self, fn: Callable[..., T], *args: Any, timeout: Optional[float] = None, **kwargs: Any) -> T:
        """Submit and block until the result is ready."""
        return self.submit(fn, *args, **kwargs).result(timeout)

    async def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Submit and await the single result from asyncio code."""
        return await asyncio.wrap_future(self.submit(fn, *args, **kwargs))

    def _loop(self) -> None:
        while True:
            task = self._queue.get()
            if task is None:
                break
            future, fn, args, kwargs = task
            self._execute(future, fn, args, kwargs)

    @staticmethod
    def _execute(future: Future, fn: Callable[..., Any], args: tuple, kwargs: dict) -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn(*args, **kwargs)
        except Exception as e:
            future.set_exception(e)
        else:
            future.set_result(result)

    def _fail_pending(self) -> None:
        """Fail anything left in the queue after the worker exited."""
        while True:
            try:
                task = self._queue.get_nowait()
            except queue.Empty:
                return
            if task is None:
                continue
            future = task[0]
            if future.set_running_or_notify_cancel():
                future.set_exception(EngineError(f"Dispatcher '{self.name}' stopped before the task ran"))
