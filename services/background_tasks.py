"""Background task manager for cache refresh and production sync timers.

Each registered task gets a daemon worker thread that calls it on a fixed
interval. Task callables run outside any request; a failing run is counted
and logged, and the worker waits for the next tick.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class ScheduledTask:
    name: str
    func: Callable[[], Any]
    interval: float
    start_immediately: bool = False
    last_run: Optional[datetime] = None
    last_error: Optional[str] = None
    failures: int = 0
    runs: int = 0
    busy_ms: float = 0.0

    def to_dict(self, running: bool) -> Dict[str, Any]:
        return {
            "interval_seconds": self.interval,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
            "total_runs": self.runs,
            "failures": self.failures,
            "avg_time_ms": round(self.busy_ms / self.runs, 2) if self.runs else 0.0,
            "status": "running" if running else "stopped",
        }


class BackgroundTaskManager:
    """Runs registered callables on fixed intervals in worker threads."""

    def __init__(self, join_timeout: float = 5.0):
        self.tasks: Dict[str, ScheduledTask] = {}
        self.join_timeout = join_timeout
        self._threads: Dict[str, threading.Thread] = {}
        self._stop_event = threading.Event()
        self._running = False
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._running

    def register_task(
        self,
        task_name: str,
        task_func: Callable[[], Any],
        interval_seconds: float,
        start_immediately: bool = False,
    ) -> bool:
        """Add a task to the schedule.

        Args:
            task_name: Name used in logs and stats; must be unique
            task_func: Zero-argument callable
            interval_seconds: Pause between runs
            start_immediately: Run once as soon as the worker starts instead of
                after the first interval

        Returns:
            False if a task with that name exists
        """
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive for {task_name}")

        with self._lock:
            if task_name in self.tasks:
                logger.warning(f"Duplicate task name ignored: {task_name}")
                return False
            self.tasks[task_name] = ScheduledTask(
                task_name, task_func, interval_seconds, start_immediately
            )

        logger.info(f"Scheduled {task_name} every {interval_seconds}s")
        return True

    def start(self) -> None:
        with self._lock:
            if self._running:
                logger.warning("Task manager is already started")
                return
            self._running = True
            self._stop_event.clear()
            scheduled = list(self.tasks.values())

        for task in scheduled:
            worker = threading.Thread(
                target=self._task_worker,
                args=(task,),
                daemon=True,
                name=f"rei-task-{task.name}",
            )
            self._threads[task.name] = worker
            worker.start()

        logger.info(f"Started {len(scheduled)} background tasks")

    def stop(self) -> None:
        """Signal workers to stop and wait briefly for them.

        A task that is mid-run finishes its current call first.
        """
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()

        for name, worker in self._threads.items():
            worker.join(timeout=self.join_timeout)
            if worker.is_alive():
                logger.warning(f"Task {name} did not stop within {self.join_timeout}s")

        self._threads.clear()
        logger.info("Background tasks stopped")

    def run_task_now(self, task_name: str) -> bool:
        """Run a task once in the calling thread.

        Returns:
            True if the run completed without raising
        """
        if task_name not in self.tasks:
            raise KeyError(f"Unknown task: {task_name}")
        return self._execute(self.tasks[task_name])

    def _execute(self, task: ScheduledTask) -> bool:
        started = time.monotonic()
        error: Optional[Exception] = None
        try:
            task.func()
        except Exception as e:
            error = e
            logger.error(f"Task {task.name} raised: {e}")

        with self._lock:
            task.last_run = datetime.now()
            task.runs += 1
            task.busy_ms += (time.monotonic() - started) * 1000
            if error is not None:
                task.failures += 1
                task.last_error = str(error)
        return error is None

    def _task_worker(self, task: ScheduledTask) -> None:
        logger.info(f"Worker for {task.name} started")
        # wait() returns True once stop() has been called
        if not task.start_immediately and self._stop_event.wait(task.interval):
            return
        while not self._stop_event.is_set():
            self._execute(task)
            if self._stop_event.wait(task.interval):
                break
        logger.info(f"Worker for {task.name} exited")

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "running": self._running,
                "total_tasks": len(self.tasks),
                "tasks": {name: task.to_dict(self._running) for name, task in self.tasks.items()},
            }


def build_task_manager(cache, sync_job, settings) -> Optional[BackgroundTaskManager]:
    """Register the cache refresh and sync timers enabled in settings.

    Returns:
        A manager with the enabled tasks registered, or None if none are
    """
    manager = BackgroundTaskManager()
    if settings.cache_refresh_enabled:
        manager.register_task(
            "cache_refresh",
            cache.refresh_quietly,
            settings.cache_ttl_seconds,
            start_immediately=True,
        )
    if settings.sync_enabled:
        manager.register_task(
            "production_sync",
            sync_job.run_sync_quietly,
            settings.sync_interval_seconds,
            start_immediately=False,
        )
    return manager if manager.tasks else None
