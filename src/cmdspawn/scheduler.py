"""Schedulers decide when the asynchronous launch step actually runs.

The engine never runs the async path inline. It hands a job (a zero-argument
coroutine function covering the whole child lifecycle, launch to close) to
``ctx.scheduler.schedule(job, ctx)``. Swapping the scheduler changes the
dispatch strategy without touching the engine:

- TickScheduler: next tick of the running event loop; when no loop runs in
  the calling thread, a dedicated background thread with its own loop
- ThreadScheduler: a bounded thread pool, each job in its own event loop
- SerialScheduler: one job at a time, the next starts after the previous
  execution has ended
- InlineScheduler: runs the job to completion in the calling thread (tests)
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Awaitable, Callable, Protocol

from .errors import SchedulerError

if TYPE_CHECKING:
    from .context import ExecContext

__all__ = [
    "Job",
    "Scheduler",
    "TickScheduler",
    "ThreadScheduler",
    "SerialScheduler",
    "InlineScheduler",
    "get_default_scheduler",
]

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]


class Scheduler(Protocol):
    """Dispatch strategy for the asynchronous path."""

    def schedule(self, job: Job, ctx: "ExecContext") -> None:
        ...


class TickScheduler:
    """Defer the job to the next scheduling tick.

    Inside a running event loop the job becomes a task created via
    ``loop.call_soon``. Without one, the job runs on a daemon thread under
    ``asyncio.run`` so synchronous callers can still use async mode and wait
    on ``ctx.result()``.
    """

    def __init__(self) -> None:
        # Strong references so pending tasks are not garbage collected
        self._tasks: set[asyncio.Task[None]] = set()

    def schedule(self, job: Job, ctx: "ExecContext") -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            loop.call_soon(self._start_task, loop, job, ctx.id)
            return

        thread = threading.Thread(
            target=self._run_in_thread,
            args=(job, ctx.id),
            name=f"cmdspawn-{ctx.id[:8]}",
            daemon=True,
        )
        thread.start()
        logger.debug(f"Dispatched ctx={ctx.id} to background thread {thread.name}")

    def _start_task(self, loop: asyncio.AbstractEventLoop, job: Job, ctx_id: str) -> None:
        task = loop.create_task(job(), name=f"cmdspawn-{ctx_id[:8]}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    def _run_in_thread(job: Job, ctx_id: str) -> None:
        try:
            asyncio.run(job())
        except Exception:
            logger.exception(f"Background execution failed ctx={ctx_id}")


class ThreadScheduler:
    """Run each job in a worker thread with its own event loop.

    Attributes:
        max_workers: Upper bound of concurrently running executions
    """

    def __init__(self, max_workers: int | None = None) -> None:
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="cmdspawn",
        )

    def schedule(self, job: Job, ctx: "ExecContext") -> None:
        try:
            self._executor.submit(self._run, job, ctx.id)
        except RuntimeError as e:
            # submit() after shutdown()
            raise SchedulerError(f"scheduler is shut down: {e}") from e

    @staticmethod
    def _run(job: Job, ctx_id: str) -> None:
        try:
            asyncio.run(job())
        except Exception:
            logger.exception(f"Worker execution failed ctx={ctx_id}")

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "ThreadScheduler":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown(wait=True)


class SerialScheduler(ThreadScheduler):
    """Sequence executions: each launch waits for the previous one to end."""

    def __init__(self) -> None:
        super().__init__(max_workers=1)


class InlineScheduler:
    """Run the job to completion before schedule() returns.

    Only usable from threads without a running event loop.
    """

    def schedule(self, job: Job, ctx: "ExecContext") -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(job())
            return
        raise SchedulerError("InlineScheduler cannot run inside a running event loop")


_default_scheduler: TickScheduler | None = None


def get_default_scheduler() -> TickScheduler:
    """获取默认调度器实例（延迟创建）。"""
    global _default_scheduler
    if _default_scheduler is None:
        _default_scheduler = TickScheduler()
    return _default_scheduler
