from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI

from bookocr.core.config import Settings, get_settings
from bookocr.core.models import CheckResponse, RunnerStatusResponse
from bookocr.runtime.cloud import build_cloud_provider
from bookocr.runtime.dispatcher import JobDispatcher
from bookocr.runtime.instance_manager import InstanceLifecycleManager
from bookocr.runtime.object_store import build_object_store
from bookocr.runtime.task_discovery import TaskDiscovery
from bookocr.runtime.task_runner import TaskRunner


logger = logging.getLogger(__name__)


def build_runner(settings: Settings) -> TaskRunner:
    store = build_object_store(settings)
    return TaskRunner(
        settings,
        InstanceLifecycleManager(settings, build_cloud_provider(settings)),
        TaskDiscovery(store),
        JobDispatcher(settings, store),
    )


def create_app(settings: Settings | None = None, runner: TaskRunner | None = None) -> FastAPI:
    settings = settings or get_settings()
    runner = runner or build_runner(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        runner.start_periodic()
        logger.info("[API] task runner armed, checking every %.0fs", settings.check_interval_seconds)
        try:
            yield
        finally:
            await runner.shutdown()
            await runner.instance_manager.shutdown()
            await runner.dispatcher.close()

    app = FastAPI(title="bookocr", version="0.1.0", lifespan=lifespan)
    app.state.runner = runner

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "time": datetime.now(UTC).isoformat()}

    @app.post("/api/ocr/check", response_model=CheckResponse)
    async def trigger_check() -> CheckResponse:
        triggered = runner.check()
        return CheckResponse(triggered=triggered, active=runner.active)

    @app.get("/api/ocr/status", response_model=RunnerStatusResponse)
    def runner_status() -> RunnerStatusResponse:
        return runner.status()

    @app.post("/api/ocr/dead-letters/reset")
    async def reset_dead_letters() -> dict[str, int]:
        cleared = runner.reset_dead_letters()
        if cleared:
            runner.check()
        return {"cleared": cleared}

    return app
