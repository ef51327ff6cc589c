from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from fastapi import FastAPI, File, Form, HTTPException, UploadFile

from bookocr.core.config import Settings
from bookocr.core.errors import InferenceError
from bookocr.core.models import result_name
from bookocr.worker.engine import InferenceEngine


logger = logging.getLogger(__name__)


def _image_suffix(filename: str | None) -> str:
    if filename and "." in filename:
        return filename.rsplit(".", 1)[-1].lower()
    return "jpg"


def build_worker_app(settings: Settings, engine: InferenceEngine) -> FastAPI:
    app = FastAPI(title="bookocr worker", version="0.1.0")

    def run_batch(buffer: Path, images: list[tuple[str, bytes]]) -> dict[str, Any]:
        engine.prepare(buffer)
        for index, (suffix, data) in enumerate(images):
            engine.input_path(buffer, index, suffix).write_bytes(data)
        engine.run(buffer)
        return {
            result_name(index): engine.read_result(buffer, index).model_dump(mode="json")
            for index in range(len(images))
        }

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "time": datetime.now(UTC).isoformat()}

    @app.post("/start-ocr")
    async def start_ocr(
        bookName: str = Form(...),  # noqa: N803
        image: list[UploadFile] = File(...),
    ) -> dict[str, Any]:
        if not image:
            raise HTTPException(status_code=400, detail="at least one image is required")

        images = [(_image_suffix(upload.filename), await upload.read()) for upload in image]
        buffer = settings.worker_buffer_path / f"batch-{uuid.uuid4().hex}"
        logger.info("[Worker API] OCR batch for %s: %d image(s)", bookName, len(images))
        try:
            result = await asyncio.to_thread(run_batch, buffer, images)
        except InferenceError as exc:
            logger.error("[Worker API] batch for %s failed: %s", bookName, exc)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        finally:
            await asyncio.to_thread(shutil.rmtree, buffer, True)

        return {"status": "ok", "result": result}

    return app
