from __future__ import annotations

import asyncio
import logging
import mimetypes

import httpx
from pydantic import ValidationError

from bookocr.core.config import Settings
from bookocr.core.errors import DispatchError, StorageError
from bookocr.core.models import BatchResponse, OCRArtifact, PageRef, Task, result_name
from bookocr.runtime.object_store import ObjectStore, put_json


logger = logging.getLogger(__name__)

BATCH_PATH = "/start-ocr"


class JobDispatcher:
    def __init__(self, settings: Settings, store: ObjectStore, http_client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.store = store
        self._http = http_client or httpx.AsyncClient()

    def batch_url(self, address: str) -> str:
        return f"http://{address}:{self.settings.worker_port}{BATCH_PATH}"

    async def dispatch(self, task: Task, address: str) -> None:
        if not task.pages:
            raise DispatchError(f"Task for {task.owner}/{task.book} has no pages")

        logger.info("[Dispatcher] sending %d page(s) of %s/%s to %s", len(task.pages), task.owner, task.book, address)
        try:
            images = await asyncio.to_thread(self._read_images, task.pages)
        except StorageError as exc:
            raise DispatchError(f"Could not read source images for {task.owner}/{task.book}: {exc}") from exc

        files = [
            ("image", (f"{index}.{page.image_suffix}", data, self._content_type(page)))
            for index, (page, data) in enumerate(zip(task.pages, images))
        ]
        try:
            response = await self._http.post(
                self.batch_url(address),
                data={"bookName": task.book},
                files=files,
                timeout=self.settings.dispatch_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise DispatchError(f"Batch request to {address} failed: {exc}") from exc

        artifacts = self._validate(task, response)

        try:
            await asyncio.to_thread(self._write_results, task.pages, artifacts)
        except StorageError as exc:
            raise DispatchError(f"Could not store OCR results for {task.owner}/{task.book}: {exc}") from exc
        logger.info("[Dispatcher] stored %d result(s) for %s/%s", len(artifacts), task.owner, task.book)

    async def close(self) -> None:
        await self._http.aclose()

    @staticmethod
    def _content_type(page: PageRef) -> str:
        guessed, _ = mimetypes.guess_type(page.image_name)
        return guessed or "application/octet-stream"

    def _read_images(self, pages: tuple[PageRef, ...]) -> list[bytes]:
        return [self.store.get(page.image_key) for page in pages]

    def _write_results(self, pages: tuple[PageRef, ...], artifacts: list[OCRArtifact]) -> None:
        for page, artifact in zip(pages, artifacts):
            put_json(self.store, page.ocr_key, artifact.model_dump(mode="json"))

    @staticmethod
    def _validate(task: Task, response: httpx.Response) -> list[OCRArtifact]:
        if not response.is_success:
            detail = response.text.strip()[:500]
            raise DispatchError(f"Batch endpoint answered HTTP {response.status_code}: {detail}")

        try:
            batch = BatchResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise DispatchError(f"Malformed batch response: {exc}") from exc

        if batch.status != "ok":
            raise DispatchError(f"Batch job reported status {batch.status!r}: {batch.detail or 'no detail'}")

        artifacts: list[OCRArtifact] = []
        for index, page in enumerate(task.pages):
            name = result_name(index)
            raw = batch.result.get(name)
            if raw is None:
                raise DispatchError(f"Batch result is missing {name} for page {page.page_prefix}")
            try:
                artifact = OCRArtifact.model_validate(raw)
            except ValidationError as exc:
                raise DispatchError(f"Malformed OCR result {name} for page {page.page_prefix}: {exc}") from exc
            if artifact.txt is None:
                artifact = artifact.with_text()
            artifacts.append(artifact)
        return artifacts
