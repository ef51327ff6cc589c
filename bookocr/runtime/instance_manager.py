from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import httpx

from bookocr.core.config import Settings
from bookocr.core.errors import InstanceTimeoutError, ProvisioningError
from bookocr.core.models import InstanceRecord, InstanceStatus
from bookocr.runtime.cloud import CloudProvider, InstanceInfo
from bookocr.runtime.cloud_init import build_user_data


logger = logging.getLogger(__name__)


class InstanceLifecycleManager:
    """Owns the single ephemeral OCR instance: provisioning, readiness and idle teardown.

    ``wait_until_ready`` is serialised by a lock, so concurrent callers share one
    instance. A ``FAILED`` record is discarded on the next call and provisioning is
    attempted again from scratch.
    """

    def __init__(
        self,
        settings: Settings,
        provider: CloudProvider,
        *,
        http_client: httpx.AsyncClient | None = None,
        user_data_factory: Callable[[Settings], str] = build_user_data,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.provider = provider
        self._http = http_client or httpx.AsyncClient()
        self._user_data_factory = user_data_factory
        self._sleep = sleep
        self._clock = clock

        self._lock = asyncio.Lock()
        self._record = InstanceRecord()
        self._idle_handle: asyncio.TimerHandle | None = None
        self._teardown_task: asyncio.Task[None] | None = None
        self._leases = 0

    @property
    def status(self) -> InstanceStatus:
        return self._record.status

    def snapshot(self) -> InstanceRecord:
        return self._record.model_copy(deep=True)

    async def wait_until_ready(self) -> str:
        async with self._lock:
            if self._record.status == InstanceStatus.FAILED:
                await self._discard_failed()

            if self._record.status == InstanceStatus.READY:
                address = self._record.address
                if address and await self._probe(address):
                    self._reset_idle_timer()
                    return address
                await self._handle_unhealthy_ready()

            if self._record.status == InstanceStatus.NOT_EXIST:
                await self._provision()

            address = await self._wait_for_health()
            self._reset_idle_timer()
            return address

    @asynccontextmanager
    async def busy(self) -> AsyncIterator[None]:
        """Lease the instance for a batch; the idle timer is suspended until every lease ends."""
        self._leases += 1
        self._cancel_idle_timer()
        try:
            yield
        finally:
            self._leases -= 1
            if not self._leases and self._record.status == InstanceStatus.READY:
                self._reset_idle_timer()

    async def destroy(self) -> None:
        async with self._lock:
            self._cancel_idle_timer()
            await self._delete_current()

    async def shutdown(self) -> None:
        self._cancel_idle_timer()
        if self._teardown_task and not self._teardown_task.done():
            self._teardown_task.cancel()
            try:
                await self._teardown_task
            except asyncio.CancelledError:
                pass
        await self._http.aclose()
        await self.provider.close()

    async def _provision(self) -> None:
        label = self.settings.instance_label
        try:
            existing: list[InstanceInfo] = []
            for candidate in await self.provider.list_instances(label=label):
                if candidate.halted:
                    # a halted worker never boots its programs again
                    logger.info("[Instance] deleting halted instance %s", candidate.id)
                    await self.provider.delete_instance(candidate.id)
                else:
                    existing.append(candidate)
            if existing:
                info = existing[0]
                logger.info("[Instance] adopting existing instance %s (%s)", info.id, info.address or "no address yet")
            else:
                logger.info("[Instance] creating instance with label %s", label)
                info = await self.provider.create_instance(
                    label=label,
                    user_data=self._user_data_factory(self.settings),
                )
        except ProvisioningError as exc:
            self._fail(str(exc))
            raise

        self._record = InstanceRecord(
            id=info.id,
            address=info.address,
            status=InstanceStatus.STARTING,
            created_at=datetime.now(UTC),
        )

    async def _wait_for_health(self) -> str:
        deadline = self._clock() + self.settings.ready_timeout_seconds

        while True:
            if not self._record.address:
                await self._refresh_address()

            address = self._record.address
            if address and await self._probe(address):
                self._record.status = InstanceStatus.READY
                self._record.ready_at = datetime.now(UTC)
                logger.info("[Instance] %s ready at %s", self._record.id, address)
                return address

            if self._clock() >= deadline:
                message = (
                    f"Timed out after {self.settings.ready_timeout_seconds:.0f}s waiting for instance "
                    f"{self._record.id} to pass its health check"
                )
                self._fail(message)
                raise InstanceTimeoutError(message)

            logger.debug("[Instance] %s still starting", self._record.id)
            await self._sleep(self.settings.poll_interval_seconds)

    async def _refresh_address(self) -> None:
        instance_id = self._record.id
        if instance_id is None:
            return
        try:
            info = await self.provider.get_instance(instance_id)
        except ProvisioningError as exc:
            logger.warning("[Instance] lookup of %s failed, still waiting: %s", instance_id, exc)
            return
        if info is None:
            message = f"Instance {instance_id} disappeared while starting"
            self._fail(message)
            raise ProvisioningError(message)
        self._record.address = info.address

    async def _probe(self, address: str) -> bool:
        url = f"http://{address}:{self.settings.worker_port}{self.settings.health_path}"
        try:
            response = await self._http.get(url, timeout=self.settings.health_timeout_seconds)
            if response.status_code != 200:
                return False
            payload = response.json()
        except (httpx.HTTPError, ValueError):
            return False
        return isinstance(payload, dict) and payload.get("status") == "ok"

    async def _handle_unhealthy_ready(self) -> None:
        instance_id = self._record.id
        info = None
        if instance_id is not None:
            try:
                info = await self.provider.get_instance(instance_id)
                if info is not None and info.halted:
                    logger.info("[Instance] %s halted itself, deleting it", instance_id)
                    await self.provider.delete_instance(instance_id)
                    info = None
            except ProvisioningError as exc:
                self._fail(str(exc))
                raise

        if info is None:
            logger.info("[Instance] %s is gone, provisioning a new one", instance_id)
            self._cancel_idle_timer()
            self._record = InstanceRecord()
            return

        logger.warning("[Instance] %s stopped answering health checks, waiting for it again", instance_id)
        self._record.status = InstanceStatus.STARTING
        self._record.address = info.address

    async def _discard_failed(self) -> None:
        logger.info("[Instance] recovering from failed state: %s", self._record.error)
        try:
            await self._delete_current()
        except ProvisioningError as exc:
            logger.warning("[Instance] could not delete failed instance %s: %s", self._record.id, exc)
            self._record = InstanceRecord()

    async def _delete_current(self) -> None:
        instance_id = self._record.id
        if instance_id is not None:
            logger.info("[Instance] deleting instance %s", instance_id)
            await self.provider.delete_instance(instance_id)
        self._record = InstanceRecord()

    def _fail(self, message: str) -> None:
        logger.error("[Instance] failed: %s", message)
        self._cancel_idle_timer()
        self._record.status = InstanceStatus.FAILED
        self._record.error = message

    def _reset_idle_timer(self) -> None:
        self._cancel_idle_timer()
        if self._leases:
            return
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(self.settings.idle_timeout_seconds, self._on_idle_timeout)

    def _cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _on_idle_timeout(self) -> None:
        self._idle_handle = None
        self._teardown_task = asyncio.get_running_loop().create_task(self._teardown_idle())

    async def _teardown_idle(self) -> None:
        async with self._lock:
            # re-armed by a later wait_until_ready(), or a batch is still running
            if self._idle_handle is not None or self._leases:
                return
            if self._record.status != InstanceStatus.READY:
                return
            logger.info("[Instance] idle for %.0fs, tearing down", self.settings.idle_timeout_seconds)
            try:
                await self._delete_current()
            except ProvisioningError as exc:
                self._fail(f"idle teardown failed: {exc}")
