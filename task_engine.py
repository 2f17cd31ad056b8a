"""
Bounded-concurrency task engine.

Tasks are keyed by id. Submitting an id that is already queued or running is a
no-op. A dispatcher thread admits queued tasks (FIFO) into a fixed number of worker
slots, as long as the engine is not paused and every running filter of the task
accepts the set of tasks currently running. Failed tasks go back to the end of the
queue until they exhaust `max_retry` or disable their own retry.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from archiver_errors import Interrupted
from archiver_settings import ENGINE_NAME, LOGGER_NAME, MAX_RETRY, MAX_SIMULTANEOUS_TASKS, RERUN_COOLDOWN_HOURS, STATUS_LOG_INTERVAL_SEC
from archiver_utils import accurate_humanize

Process = Callable[["Task"], None]
RunningFilter = Callable[["Task", List["Task"]], bool]


class TaskState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


FINAL_STATES = (TaskState.COMPLETED, TaskState.FAILED, TaskState.INTERRUPTED)


def _ts_to_iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


class Task:
    def __init__(self, task_id: str, args: Optional[Dict[str, Any]] = None):
        self.id = task_id
        self.args: Dict[str, Any] = dict(args or {})
        self.retry_count = 0
        self.retry_disabled = False
        self.state = TaskState.QUEUED
        self.steps: List[Tuple[str, float]] = []
        self.created_at = time.time()
        self.started_at: Optional[float] = None
        self.ended_at: Optional[float] = None
        self.last_error: Optional[BaseException] = None
        self.status_formatter: Optional[Callable[["Task"], str]] = None
        self._stats: Dict[str, float] = {}
        self._size = [0, 0]
        self._processes: List[Process] = []
        self._filters: List[RunningFilter] = []
        self._success_callbacks: List[Process] = []
        self._interrupt = threading.Event()
        self._engine: Optional[Engine] = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Task({self.id!r}, state={self.state.value})"

    # -- construction --

    def add_process(self, process: Process) -> "Task":
        self._processes.append(process)
        return self

    def add_running_filter(self, flt: RunningFilter) -> "Task":
        self._filters.append(flt)
        return self

    def on_success(self, callback: Process) -> "Task":
        self._success_callbacks.append(callback)
        return self

    # -- progress --

    def add_step(self, name: str) -> None:
        with self._lock:
            self.steps.append((name, time.time()))

    def current_step(self) -> Optional[str]:
        with self._lock:
            return self.steps[-1][0] if self.steps else None

    def set_stat_value(self, key: str, value: float) -> None:
        with self._lock:
            self._stats[key] = value

    def increment_stat_value(self, key: str, delta: float = 1) -> None:
        with self._lock:
            self._stats[key] = self._stats.get(key, 0) + delta

    def stat_value(self, key: str, default: float = 0) -> float:
        with self._lock:
            return self._stats.get(key, default)

    def set_size(self, current: Optional[int] = None, max: Optional[int] = None) -> None:
        with self._lock:
            if current is not None:
                self._size[0] = current
            if max is not None:
                self._size[1] = max

    def increment_size(self, delta: int) -> None:
        with self._lock:
            self._size[0] += delta

    @property
    def size(self) -> Tuple[int, int]:
        with self._lock:
            return self._size[0], self._size[1]

    # -- control --

    def disable_retry(self) -> None:
        self.retry_disabled = True

    def interrupt(self) -> None:
        self._interrupt.set()

    def must_interrupt(self) -> bool:
        if self._interrupt.is_set():
            return True
        return self._engine is not None and self._engine.is_quitting()

    def is_done(self) -> bool:
        return self.state in FINAL_STATES

    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return (self.ended_at or time.time()) - self.started_at

    def status_line(self) -> str:
        if self.status_formatter is not None:
            return self.status_formatter(self)
        step = self.current_step() or "-"
        return f"{self.id} | {self.state.value} | step={step} | elapsed={accurate_humanize(self.elapsed())}"

    def to_dict(self) -> Dict[str, Any]:
        current, maximum = self.size
        with self._lock:
            stats = dict(self._stats)
            steps = [name for name, _ in self.steps]
        return {
            "id": self.id,
            "state": self.state.value,
            "args": {k: (v.value if isinstance(v, Enum) else v) for k, v in self.args.items() if isinstance(v, (str, int, float, Enum))},
            "retry_count": self.retry_count,
            "retry_disabled": self.retry_disabled,
            "steps": steps,
            "stats": stats,
            "size": {"current": current, "max": maximum},
            "created_at": _ts_to_iso(self.created_at),
            "started_at": _ts_to_iso(self.started_at),
            "ended_at": _ts_to_iso(self.ended_at),
            "error": str(self.last_error) if self.last_error is not None else None,
        }


def conflicts_on(*arg_names: str) -> RunningFilter:
    """Running filter rejecting a task while another task with the same args runs."""

    def _filter(task: Task, running: List[Task]) -> bool:
        key = tuple(task.args.get(name) for name in arg_names)
        for other in running:
            if other is task:
                continue
            if tuple(other.args.get(name) for name in arg_names) == key:
                return False
        return True

    return _filter


def cooldown(hours: float) -> Callable[[str, float], bool]:
    """should_run_again predicate: a key may run again `hours` after its last success."""

    def _should_run_again(_key: str, last_success_ts: float) -> bool:
        return (time.time() - last_success_ts) >= hours * 3600

    return _should_run_again


@dataclass
class EngineOptions:
    name: str = ENGINE_NAME
    max_concurrent: int = MAX_SIMULTANEOUS_TASKS
    max_retry: int = MAX_RETRY
    should_run_again: Optional[Callable[[str, float], bool]] = cooldown(RERUN_COOLDOWN_HOURS)
    dispatch_interval: float = 0.5
    status_log_interval: float = STATUS_LOG_INTERVAL_SEC
    history_size: int = 500


class Engine:
    def __init__(self, options: Optional[EngineOptions] = None, logger: Optional[logging.Logger] = None):
        self.options = options or EngineOptions()
        if self.options.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._cond = threading.Condition()
        self._queued: "OrderedDict[str, Task]" = OrderedDict()
        self._running: Dict[str, Task] = {}
        self._history: "OrderedDict[str, Task]" = OrderedDict()
        self._last_success: Dict[str, float] = {}
        self._counters = {"completed": 0, "failed": 0, "interrupted": 0, "retried": 0}
        self._paused_until = 0.0
        self._settling = 0  # finished tasks whose success callbacks are still running
        self._quitting = threading.Event()
        self._executor = ThreadPoolExecutor(
            max_workers=self.options.max_concurrent,
            thread_name_prefix=self.options.name.lower(),
        )
        self._dispatcher: Optional[threading.Thread] = None
        self._status_thread: Optional[threading.Thread] = None

    # --------------------------
    # Lifecycle
    # --------------------------

    def start(self) -> "Engine":
        if self._dispatcher is not None:
            return self
        self._dispatcher = threading.Thread(target=self._dispatch_loop, name=f"{self.options.name}-dispatcher", daemon=True)
        self._dispatcher.start()
        if self.options.status_log_interval and self.options.status_log_interval > 0:
            self._status_thread = threading.Thread(target=self._status_loop, name=f"{self.options.name}-status", daemon=True)
            self._status_thread.start()
        self.logger.info(f"{self.options.name} engine started (slots={self.options.max_concurrent}, max_retry={self.options.max_retry})")
        return self

    def is_quitting(self) -> bool:
        return self._quitting.is_set()

    def quit(self, timeout: Optional[float] = None) -> bool:
        """Interrupt every task, drop the queue and wait for workers to exit.

        Returns False when running tasks did not stop within `timeout`.
        """
        with self._cond:
            if self._quitting.is_set() and self._dispatcher is None:
                return True
            self._quitting.set()
            for task in self._queued.values():
                task.state = TaskState.INTERRUPTED
                self._remember(task)
            dropped = len(self._queued)
            self._queued.clear()
            for task in self._running.values():
                task.interrupt()
            self._cond.notify_all()
            if self._running:
                self.logger.info(f"Waiting for {len(self._running)} running task(s) to stop ({dropped} queued dropped)")
            stopped = self._cond.wait_for(lambda: not self._running, timeout)
        if self._dispatcher is not None:
            self._dispatcher.join(timeout=5)
            self._dispatcher = None
        self._executor.shutdown(wait=stopped)
        self.logger.info(f"{self.options.name} engine stopped")
        return stopped

    # --------------------------
    # Submission and control
    # --------------------------

    def submit(self, task: Task) -> bool:
        with self._cond:
            if self._quitting.is_set():
                return False
            if task.id in self._queued or task.id in self._running:
                return False
            last = self._last_success.get(task.id)
            should_run_again = self.options.should_run_again
            if last is not None and should_run_again is not None and not should_run_again(task.id, last):
                return False
            task._engine = self
            task.state = TaskState.QUEUED
            self._history.pop(task.id, None)
            self._queued[task.id] = task
            self._cond.notify_all()
            return True

    def pause(self, seconds: float) -> None:
        """Stop admitting any task for `seconds`. Overlapping pauses keep the later end."""
        with self._cond:
            until = time.time() + max(0.0, seconds)
            if until > self._paused_until:
                self._paused_until = until
                self.logger.warning(f"{self.options.name} paused for {accurate_humanize(seconds)} (until {_ts_to_iso(until)})")
            self._cond.notify_all()

    def resume(self) -> None:
        with self._cond:
            self._paused_until = 0.0
            self._cond.notify_all()

    def is_paused(self) -> bool:
        return time.time() < self._paused_until

    @property
    def paused_until(self) -> Optional[float]:
        return self._paused_until if self.is_paused() else None

    def cancel(self, predicate: Callable[[Task], bool]) -> int:
        """Drop matching queued tasks and interrupt matching running ones."""
        canceled = 0
        with self._cond:
            for task_id, task in list(self._queued.items()):
                if predicate(task):
                    del self._queued[task_id]
                    task.state = TaskState.INTERRUPTED
                    self._remember(task)
                    canceled += 1
            for task in self._running.values():
                if predicate(task):
                    task.interrupt()
                    canceled += 1
            self._cond.notify_all()
        return canceled

    def cancel_by_prefix(self, *prefixes: str) -> int:
        return self.cancel(lambda t: any(t.id.startswith(p) for p in prefixes))

    # --------------------------
    # Introspection
    # --------------------------

    def find(self, task_id: str) -> Optional[Task]:
        with self._cond:
            return self._queued.get(task_id) or self._running.get(task_id) or self._history.get(task_id)

    def last_success(self, task_id: str) -> Optional[float]:
        with self._cond:
            return self._last_success.get(task_id)

    def count_queued(self) -> int:
        with self._cond:
            return len(self._queued)

    def count_running(self) -> int:
        with self._cond:
            return len(self._running)

    def counts(self) -> Dict[str, int]:
        with self._cond:
            out = {"queued": len(self._queued), "running": len(self._running)}
            out.update(self._counters)
            return out

    def running_tasks(self) -> List[Task]:
        with self._cond:
            return list(self._running.values())

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._cond:
            tasks = list(self._running.values()) + list(self._queued.values()) + list(reversed(self._history.values()))
        return [t.to_dict() for t in tasks]

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: not self._queued and not self._running and not self._settling, timeout)

    def print_status(self) -> None:
        c = self.counts()
        paused = f" | paused until {_ts_to_iso(self._paused_until)}" if self.is_paused() else ""
        self.logger.info(
            f"{self.options.name} status: queued={c['queued']} running={c['running']} "
            f"completed={c['completed']} failed={c['failed']} retried={c['retried']}{paused}"
        )
        for task in self.running_tasks():
            self.logger.info(f"  {task.status_line()}")

    # --------------------------
    # Internals
    # --------------------------

    def _prune_last_success(self) -> None:
        # caller holds self._cond
        should_run_again = self.options.should_run_again
        if should_run_again is not None:
            for key, ts in list(self._last_success.items()):
                if should_run_again(key, ts):
                    del self._last_success[key]
            return
        while len(self._last_success) > self.options.history_size:
            del self._last_success[next(iter(self._last_success))]

    def _remember(self, task: Task) -> None:
        if task.ended_at is None:
            task.ended_at = time.time()
        self._history[task.id] = task
        self._history.move_to_end(task.id)
        while len(self._history) > self.options.history_size:
            self._history.popitem(last=False)

    def _status_loop(self) -> None:
        interval = self.options.status_log_interval
        while not self._quitting.wait(interval):
            if self.count_queued() > 0:
                self.print_status()

    def _dispatch_loop(self) -> None:
        with self._cond:
            while not self._quitting.is_set():
                remaining = self._paused_until - time.time()
                if remaining > 0:
                    self._cond.wait(min(remaining, self.options.dispatch_interval))
                    continue
                self._admit_ready()
                self._cond.wait(self.options.dispatch_interval)

    def _admit_ready(self) -> None:
        # caller holds self._cond
        for task_id, task in list(self._queued.items()):
            if len(self._running) >= self.options.max_concurrent:
                return
            running = list(self._running.values())
            if not all(flt(task, running) for flt in task._filters):
                continue
            del self._queued[task_id]
            task.state = TaskState.RUNNING
            task.started_at = time.time()
            task.ended_at = None
            task.steps = []
            self._running[task_id] = task
            self._executor.submit(self._run_task, task)

    def _run_task(self, task: Task) -> None:
        error: Optional[BaseException] = None
        try:
            for process in task._processes:
                if task.must_interrupt():
                    raise Interrupted(f"Task {task.id} interrupted")
                process(task)
        except Exception as exc:
            error = exc
        callbacks = self._finish(task, error)
        if not callbacks:
            return
        try:
            for callback in callbacks:
                try:
                    callback(task)
                except Exception:
                    self.logger.exception(f"Success callback failed rid={task.id}")
        finally:
            with self._cond:
                self._settling -= 1
                self._cond.notify_all()

    def _finish(self, task: Task, error: Optional[BaseException]) -> List[Process]:
        callbacks: List[Process] = []
        with self._cond:
            self._running.pop(task.id, None)
            task.ended_at = time.time()
            duration = accurate_humanize(task.elapsed())
            if error is None:
                task.state = TaskState.COMPLETED
                task.last_error = None
                self._last_success.pop(task.id, None)
                self._last_success[task.id] = task.ended_at
                self._prune_last_success()
                self._counters["completed"] += 1
                self._remember(task)
                callbacks = list(task._success_callbacks)
                if callbacks:
                    self._settling += 1
                self.logger.info(f"Task completed rid={task.id} duration={duration}")
            elif isinstance(error, Interrupted):
                task.state = TaskState.INTERRUPTED
                self._counters["interrupted"] += 1
                self._remember(task)
                self.logger.info(f"Task interrupted rid={task.id} duration={duration}")
            else:
                task.last_error = error
                if task.retry_disabled or task.retry_count >= self.options.max_retry or self._quitting.is_set():
                    task.state = TaskState.FAILED
                    self._counters["failed"] += 1
                    self._remember(task)
                    self.logger.error(
                        f"Task failed rid={task.id} retries={task.retry_count} "
                        f"({type(error).__name__}): {error}"
                    )
                else:
                    task.retry_count += 1
                    task.state = TaskState.QUEUED
                    self._counters["retried"] += 1
                    self._queued[task.id] = task
                    self.logger.warning(
                        f"Task will retry rid={task.id} attempt={task.retry_count}/{self.options.max_retry} "
                        f"({type(error).__name__}): {error}"
                    )
            self._cond.notify_all()
        return callbacks
