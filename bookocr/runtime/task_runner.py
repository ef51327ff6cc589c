from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from bookocr.core.config import Settings
from bookocr.core.models import DeadLetter, RunnerStatusResponse, Task
from bookocr.runtime.dispatcher import JobDispatcher
from bookocr.runtime.instance_manager import InstanceLifecycleManager
from bookocr.runtime.task_discovery import BookKey, TaskDiscovery


logger = logging.getLogger(__name__)


class TaskRunner:
    """Drives discovery, instance readiness and dispatch until no OCR work is left.

    ``check()`` is the only trigger. It starts a pass when none is active and is a
    no-op otherwise, so the periodic timer and upload events can call it freely.
    A pass is one asyncio task running a plain loop; there is never more than one.
    """

    def __init__(
        self,
        settings: Settings,
        instance_manager: InstanceLifecycleManager,
        discovery: TaskDiscovery,
        dispatcher: JobDispatcher,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.instance_manager = instance_manager
        self.discovery = discovery
        self.dispatcher = dispatcher
        self._sleep = sleep

        self._active = False
        self._pass_task: asyncio.Task[None] | None = None
        self._periodic_task: asyncio.Task[None] | None = None

        self._failures: dict[BookKey, int] = {}
        self._dead_letters: dict[BookKey, DeadLetter] = {}
        self._last_error: str | None = None
        self._last_success_at: datetime | None = None

    @property
    def active(self) -> bool:
        return self._active

    def check(self) -> bool:
        if self._active:
            return False
        self._active = True
        self._pass_task = asyncio.get_running_loop().create_task(self._run_pass())
        return True

    async def join(self) -> None:
        if self._pass_task is not None:
            await self._pass_task

    def start_periodic(self) -> None:
        if self._periodic_task is None or self._periodic_task.done():
            self._periodic_task = asyncio.get_running_loop().create_task(self.run_periodic())

    async def run_periodic(self) -> None:
        while True:
            self.check()
            await asyncio.sleep(self.settings.check_interval_seconds)

    async def shutdown(self) -> None:
        for task in (self._periodic_task, self._pass_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._active = False

    def _excluded(self) -> frozenset[BookKey]:
        return frozenset(self._dead_letters)

    async def _has_work(self) -> bool:
        return await asyncio.to_thread(self.discovery.has_unfinished_work, self._excluded())

    async def _run_pass(self) -> None:
        try:
            while True:
                try:
                    has_work = await self._has_work()
                except Exception as exc:  # noqa: BLE001
                    self._last_error = f"work discovery failed: {exc}"
                    logger.exception("[Task runner] could not read task state, ending pass")
                    return
                if not has_work:
                    logger.info("[Task runner] no task")
                    return
                await self._run_once()
        finally:
            self._active = False

    async def _run_once(self) -> None:
        task: Task | None = None
        try:
            # the lease keeps idle teardown away until the batch is over
            async with self.instance_manager.busy():
                logger.info("[Task runner] has task, wait for remote server")
                address = await self.instance_manager.wait_until_ready()
                logger.info("[Task runner] remote server ready")

                task = await asyncio.to_thread(self.discovery.next_task, self._excluded())
                if task is None:
                    return
                await self.dispatcher.dispatch(task, address)
        except Exception as exc:  # noqa: BLE001
            self._last_error = str(exc)
            if task is not None:
                self._record_failure(task, exc)
            logger.exception(
                "[Task runner] task failed, retry in %.0f seconds",
                self.settings.retry_delay_seconds,
            )
            await self._sleep(self.settings.retry_delay_seconds)
            return

        self._failures.pop(task.key, None)
        self._last_success_at = datetime.now(UTC)
        logger.info("[Task runner] single task done: %s/%s (%d page(s))", task.owner, task.book, len(task.pages))

    def _record_failure(self, task: Task, exc: Exception) -> None:
        limit = self.settings.max_task_attempts
        if limit <= 0:
            return
        attempts = self._failures.get(task.key, 0) + 1
        self._failures[task.key] = attempts
        if attempts >= limit:
            self._dead_letters[task.key] = DeadLetter(
                owner=task.owner,
                book=task.book,
                attempts=attempts,
                last_error=str(exc),
            )
            self._failures.pop(task.key, None)
            logger.error(
                "[Task runner] giving up on %s/%s after %d failed attempt(s)",
                task.owner,
                task.book,
                attempts,
            )

    def reset_dead_letters(self) -> int:
        count = len(self._dead_letters)
        self._dead_letters.clear()
        self._failures.clear()
        return count

    def status(self) -> RunnerStatusResponse:
        return RunnerStatusResponse(
            active=self._active,
            last_error=self._last_error,
            last_success_at=self._last_success_at,
            dead_letters=list(self._dead_letters.values()),
            instance=self.instance_manager.snapshot(),
        )
