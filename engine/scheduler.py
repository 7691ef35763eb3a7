"""
Background scheduling.

Each repeating task runs on its own daemon thread and sleeps on an Event,
so stopping the scheduler wakes every task immediately.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional

from engine.error_handler import get_logger, log_error

log = get_logger("scheduler")


class RepeatingTask:
    """Calls ``action`` every ``interval`` seconds until stopped."""

    def __init__(self, name: str, interval: float, action: Callable[[], object]) -> None:
        self.name = name
        self.interval = interval
        self.action = action
        self.runs = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None or self.interval <= 0:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"task-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_once(self) -> object:
        """Run the action now. Failures are logged and swallowed so the schedule keeps going."""
        try:
            result = self.action()
        except Exception as e:
            log_error(e, f"scheduled_task:{self.name}")
            return None
        self.runs += 1
        return result

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()


class EngineScheduler:
    """Owns the engine's periodic jobs."""

    def __init__(self) -> None:
        self._tasks: Dict[str, RepeatingTask] = {}
        self._started = False

    def add(self, name: str, interval: float, action: Callable[[], object]) -> RepeatingTask:
        if name in self._tasks:
            raise ValueError(f"Task already scheduled: {name}")
        task = RepeatingTask(name, interval, action)
        self._tasks[name] = task
        if self._started:
            task.start()
        return task

    def get(self, name: str) -> Optional[RepeatingTask]:
        return self._tasks.get(name)

    def run_now(self, name: str) -> object:
        task = self._tasks.get(name)
        if task is None:
            raise KeyError(name)
        return task.run_once()

    def task_names(self) -> List[str]:
        return list(self._tasks)

    def start(self) -> None:
        self._started = True
        for task in self._tasks.values():
            task.start()
        log.info(f"Scheduler started {len(self._tasks)} tasks")

    def stop(self) -> None:
        self._started = False
        for task in self._tasks.values():
            task.stop()
        log.info("Scheduler stopped")
