"""
Randomized-Interval Task Scheduler

Runs named recurring tasks where every gap between two executions is drawn
independently and uniformly from [min_time_seconds, max_time_seconds]
(whole seconds). Used to place orders at irregular intervals: the task
function is opaque to the scheduler and usually calls into the exchange
manager.

Task lifecycle:
    absent -> start_task() -> scheduled -> timer fires -> executing
           -> scheduled -> ... -> stop_task() / force_clean_all_tasks() -> absent

Guarantees:
    - At most one live timer per task id: start_task() on an existing id
      stops the old registration first
    - Executions of one task never overlap: the next timer is armed only
      after the current run (sync or async) has finished
    - stop_task() flips the running flag before cancelling the timer, and
      the flag is checked right before running and right before re-arming,
      so a stopped task is never re-armed
    - A failing task function is logged; the loop keeps going

Stopping does not interrupt a run that is already executing.

Usage:
    scheduler = TaskScheduler()
    scheduler.start_task(SchedulerConfig(
        task_id="btc-buyer",
        min_time_seconds=30,
        max_time_seconds=90,
        task_function=place_random_order,
    ))
    ...
    scheduler.stop_task("btc-buyer")
"""

import asyncio
import inspect
import math
import random
from datetime import timedelta
from typing import Any, Dict, List, Optional

from core.config import Settings, settings as default_settings
from core.logging import get_logger
from core.schemas import SchedulerConfig, TaskStatus
from core.utils.time import current_utc_datetime


class ScheduledTask:
    """
    State record of one registration.

    The record, not its id, is what timers and executions hold on to; a
    replaced registration keeps its own (stopped) record.
    """

    def __init__(self, config: SchedulerConfig):
        self.config = config
        self.is_running = True
        self.start_time = current_utc_datetime()
        self.last_execution_time = None
        self.next_execution_time = None
        self.execution_count = 0
        self.timer: Optional[asyncio.TimerHandle] = None
        self.execution: Optional[asyncio.Future] = None

    @property
    def task_id(self) -> str:
        return self.config.task_id

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def snapshot(self) -> TaskStatus:
        return TaskStatus(
            task_id=self.task_id,
            is_running=self.is_running,
            start_time=self.start_time,
            last_execution_time=self.last_execution_time,
            next_execution_time=self.next_execution_time,
            execution_count=self.execution_count,
        )


class TaskScheduler:
    """
    Registry of randomized recurring tasks driven by event-loop timers.

    Must be used from inside a running asyncio event loop.

    Args:
        settings: Stale thresholds for cleanup_stale_error()
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or default_settings
        self._tasks: Dict[str, ScheduledTask] = {}
        self._logger = get_logger(__name__)

    # ============================================
    # Registration
    # ============================================

    def start_task(self, config: SchedulerConfig) -> bool:
        """
        Register a task and arm its first timer.

        Bounds are trusted: callers guarantee 0 < min < max.

        Returns:
            bool: False if the task could not be scheduled (e.g. no running loop)
        """
        if config.task_id in self._tasks:
            self._logger.info(f"Task {config.task_id} already exists, stopping it first")
            self.stop_task(config.task_id)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            self._logger.error(f"Failed to start task {config.task_id}: {e}")
            return False

        record = ScheduledTask(config)
        self._tasks[config.task_id] = record
        self._arm(record, loop)

        self._logger.info(
            f"Task {config.task_id} started, interval "
            f"{config.min_time_seconds}-{config.max_time_seconds}s"
        )
        return True

    def stop_task(self, task_id: str) -> bool:
        """
        Stop and unregister a task.

        Returns:
            bool: False if no such task is registered
        """
        record = self._tasks.get(task_id)
        if record is None:
            self._logger.warning(f"Tried to stop unknown task {task_id}")
            return False

        record.is_running = False
        record.next_execution_time = None
        record.cancel_timer()
        del self._tasks[task_id]

        self._logger.info(f"Task {task_id} stopped after {record.execution_count} executions")
        return True

    def stop_all_tasks(self) -> None:
        task_ids = list(self._tasks)
        self._logger.info(f"Stopping all tasks ({len(task_ids)})")
        for task_id in task_ids:
            self.stop_task(task_id)

    def force_clean_all_tasks(self) -> None:
        """
        Emergency reset: cancel every timer and empty the registry.

        Runs that are executing right now finish, but never re-arm.
        """
        self._logger.warning(f"Force cleaning {len(self._tasks)} task(s)")
        for record in self._tasks.values():
            record.is_running = False
            record.next_execution_time = None
            record.cancel_timer()
        self._tasks.clear()

    def cleanup_stale_error(self) -> List[str]:
        """
        Stop tasks that look hung.

        A task is stale when its last execution is older than
        stale_after_execution_seconds, or when it never executed and was
        started more than stale_before_first_run_seconds ago.

        Returns:
            List[str]: Ids of the stopped tasks
        """
        now = current_utc_datetime()
        after_run = self.settings.stale_after_execution_seconds
        before_run = self.settings.stale_before_first_run_seconds

        stale = []
        for task_id, record in self._tasks.items():
            if record.last_execution_time is not None:
                if (now - record.last_execution_time).total_seconds() > after_run:
                    stale.append(task_id)
            elif (now - record.start_time).total_seconds() > before_run:
                stale.append(task_id)

        if stale:
            self._logger.warning(f"Found {len(stale)} stale task(s): {', '.join(stale)}")
        for task_id in stale:
            self.stop_task(task_id)
        return stale

    # ============================================
    # Queries
    # ============================================

    def get_task_status(self, task_id: str) -> Optional[TaskStatus]:
        record = self._tasks.get(task_id)
        return record.snapshot() if record else None

    def get_all_tasks_status(self) -> List[TaskStatus]:
        return [record.snapshot() for record in self._tasks.values()]

    def is_task_running(self, task_id: str) -> bool:
        record = self._tasks.get(task_id)
        return record.is_running if record else False

    def get_debug_info(self) -> Dict[str, Dict[str, Any]]:
        return {
            task_id: {
                "config": {
                    "min_time_seconds": record.config.min_time_seconds,
                    "max_time_seconds": record.config.max_time_seconds,
                },
                "status": record.snapshot().model_dump(),
                "has_timer": record.timer is not None,
                "executing": record.execution is not None and not record.execution.done(),
            }
            for task_id, record in self._tasks.items()
        }

    def __len__(self) -> int:
        return len(self._tasks)

    # ============================================
    # Timer Handling
    # ============================================

    @staticmethod
    def _generate_random_interval(min_seconds: int, max_seconds: int) -> int:
        """Uniform integer in [min_seconds, max_seconds]."""
        return math.floor(random.random() * (max_seconds - min_seconds + 1)) + min_seconds

    def _arm(self, record: ScheduledTask, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        delay = self._generate_random_interval(
            record.config.min_time_seconds, record.config.max_time_seconds
        )
        record.next_execution_time = current_utc_datetime() + timedelta(seconds=delay)
        record.timer = loop.call_later(delay, self._fire, record)
        self._logger.debug(f"[{record.task_id}] next run in {delay}s")

    def _fire(self, record: ScheduledTask) -> None:
        record.timer = None
        if not record.is_running:
            self._logger.debug(f"[{record.task_id}] stopped before firing, skipping")
            return

        try:
            result = record.config.task_function()
        except Exception as e:
            self._logger.error(f"[{record.task_id}] task raised: {e}")
            self._rearm(record)
            return

        if inspect.isawaitable(result):
            record.execution = asyncio.ensure_future(result)
            record.execution.add_done_callback(lambda fut: self._on_execution_done(record, fut))
            return

        self._record_execution(record)
        self._rearm(record)

    def _on_execution_done(self, record: ScheduledTask, future: asyncio.Future) -> None:
        record.execution = None
        if future.cancelled():
            self._logger.warning(f"[{record.task_id}] execution cancelled")
        elif future.exception() is not None:
            self._logger.error(f"[{record.task_id}] task raised: {future.exception()}")
        else:
            self._record_execution(record)
        self._rearm(record)

    def _record_execution(self, record: ScheduledTask) -> None:
        record.last_execution_time = current_utc_datetime()
        record.execution_count += 1
        self._logger.debug(f"[{record.task_id}] executed, count={record.execution_count}")

    def _rearm(self, record: ScheduledTask) -> None:
        if record.is_running:
            self._arm(record)
        else:
            self._logger.debug(f"[{record.task_id}] stopped during execution, not rescheduling")
