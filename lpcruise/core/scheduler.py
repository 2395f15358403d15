"""ScheduledTaskManager — cooperative per-agent task scheduler.

One asyncio loop ticks every ``tick_seconds``. Due tasks are dispatched in
insertion order as tracked asyncio tasks, so a handler waiting on the chain
never holds up another agent. A task whose previous run is still in flight
is skipped for that tick. Recurring tasks are rescheduled from the tick
time before their handler runs; missed ticks are never replayed.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from lpcruise.config import settings

logger = logging.getLogger(__name__)

Handler = Callable[[], Awaitable[Any]]


@dataclass
class ScheduledTask:
    id: str
    handler: Handler
    next_run: float
    interval: float | None = None
    last_run: float | None = None
    tags: frozenset[str] = field(default_factory=frozenset)
    enabled: bool = True

    @property
    def is_recurring(self) -> bool:
        return self.interval is not None


class ScheduledTaskManager:
    def __init__(
        self,
        tick_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tick_seconds = tick_seconds or settings.scheduler_tick_seconds
        self._clock = clock
        # dicts keep insertion order, which is the dispatch order
        self._tasks: dict[str, ScheduledTask] = {}
        self._running: dict[str, asyncio.Task] = {}
        self._loop_task: asyncio.Task | None = None

    # ── scheduling ────────────────────────────────────────────────────────────

    def schedule_task(
        self, task_id: str, handler: Handler, delay: float = 0, tags: Iterable[str] = ()
    ) -> ScheduledTask:
        """One-shot task, removed once it has run."""
        task = ScheduledTask(
            id=task_id, handler=handler, next_run=self._clock() + delay, tags=frozenset(tags)
        )
        self._replace(task)
        return task

    def schedule_recurring_task(
        self,
        task_id: str,
        handler: Handler,
        interval: float,
        start_delay: float | None = None,
        tags: Iterable[str] = (),
    ) -> ScheduledTask:
        """Recurring task; first run after ``start_delay`` (default one interval)."""
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        delay = interval if start_delay is None else start_delay
        task = ScheduledTask(
            id=task_id,
            handler=handler,
            next_run=self._clock() + delay,
            interval=interval,
            tags=frozenset(tags),
        )
        self._replace(task)
        return task

    def _replace(self, task: ScheduledTask) -> None:
        if task.id in self._tasks:
            logger.debug("Replacing scheduled task %s", task.id)
            del self._tasks[task.id]
        self._tasks[task.id] = task

    def cancel_task(self, task_id: str) -> bool:
        """Drop the task. A run already in flight is left to finish."""
        return self._tasks.pop(task_id, None) is not None

    def cancel_tasks_by_tag(self, tag: str) -> int:
        ids = [t.id for t in self._tasks.values() if tag in t.tags]
        for task_id in ids:
            del self._tasks[task_id]
        if ids:
            logger.debug("Cancelled %d task(s) tagged %s", len(ids), tag)
        return len(ids)

    def enable_task(self, task_id: str) -> bool:
        return self._set_enabled(task_id, True)

    def disable_task(self, task_id: str) -> bool:
        return self._set_enabled(task_id, False)

    def _set_enabled(self, task_id: str, enabled: bool) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            return False
        task.enabled = enabled
        return True

    def enable_tasks_by_tag(self, tag: str) -> int:
        return self._set_enabled_by_tag(tag, True)

    def disable_tasks_by_tag(self, tag: str) -> int:
        return self._set_enabled_by_tag(tag, False)

    def _set_enabled_by_tag(self, tag: str, enabled: bool) -> int:
        count = 0
        for task in self._tasks.values():
            if tag in task.tags:
                task.enabled = enabled
                count += 1
        return count

    # ── introspection ─────────────────────────────────────────────────────────

    def get_task(self, task_id: str) -> ScheduledTask | None:
        return self._tasks.get(task_id)

    def task_count(self) -> int:
        return len(self._tasks)

    def enabled_task_count(self) -> int:
        return sum(1 for t in self._tasks.values() if t.enabled)

    def task_count_by_tag(self, tag: str) -> int:
        return sum(1 for t in self._tasks.values() if tag in t.tags)

    def enabled_task_count_by_tag(self, tag: str) -> int:
        return sum(1 for t in self._tasks.values() if t.enabled and tag in t.tags)

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    # ── loop ──────────────────────────────────────────────────────────────────

    def _dispatch_due(self) -> list[asyncio.Task]:
        now = self._clock()
        due = [t for t in self._tasks.values() if t.enabled and t.next_run <= now]
        dispatched = []
        for task in due:
            in_flight = self._running.get(task.id)
            if in_flight is not None and not in_flight.done():
                logger.debug("Task %s still running, skipping this tick", task.id)
                continue

            task.last_run = now
            if task.is_recurring:
                task.next_run = now + task.interval
            else:
                self._tasks.pop(task.id, None)

            runner = asyncio.create_task(self._run(task), name=f"sched:{task.id}")
            self._running[task.id] = runner
            dispatched.append(runner)
        return dispatched

    async def _run(self, task: ScheduledTask) -> None:
        try:
            await task.handler()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Scheduled task %s failed: %s", task.id, exc, exc_info=True)
        finally:
            if self._running.get(task.id) is asyncio.current_task():
                self._running.pop(task.id, None)

    async def run_due_tasks(self) -> int:
        """Run one tick and wait for every handler it started."""
        dispatched = self._dispatch_due()
        if dispatched:
            await asyncio.gather(*dispatched, return_exceptions=True)
        return len(dispatched)

    async def _loop(self) -> None:
        logger.info("Scheduler started (tick %ss)", self.tick_seconds)
        while True:
            try:
                self._dispatch_due()
            except Exception as exc:
                logger.error("Scheduler tick failed: %s", exc, exc_info=True)
            await asyncio.sleep(self.tick_seconds)

    def start(self) -> None:
        if self.is_running:
            return
        self._loop_task = asyncio.create_task(self._loop(), name="scheduler")

    async def stop(self) -> None:
        """Stop ticking and wait for handlers already in flight."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        in_flight = [t for t in self._running.values() if not t.done()]
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        logger.info("Scheduler stopped")
