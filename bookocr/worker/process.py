from __future__ import annotations

import logging
from pathlib import Path

from bookocr.core.config import Settings
from bookocr.core.models import PageRef
from bookocr.runtime.cloud import SelfTerminator
from bookocr.runtime.object_store import ObjectStore, load_tree, put_json
from bookocr.runtime.task_discovery import find_unfinished_pages
from bookocr.worker.engine import InferenceEngine


logger = logging.getLogger(__name__)


class WorkerProcess:
    """One pass over every unfinished page in the store, then the host shuts itself down.

    Errors are not caught here. A failed pass leaves the instance running and the
    process exits non-zero.
    """

    def __init__(
        self,
        settings: Settings,
        store: ObjectStore,
        engine: InferenceEngine,
        terminator: SelfTerminator,
    ):
        self.settings = settings
        self.store = store
        self.engine = engine
        self.terminator = terminator

    @property
    def buffer(self) -> Path:
        return self.settings.worker_buffer_path / "boot"

    def run(self) -> list[PageRef]:
        pages = find_unfinished_pages(load_tree(self.store))
        logger.info("[Worker] %d unfinished page(s) found", len(pages))

        if pages:
            self.engine.prepare(self.buffer)
            self._download(pages)
            self.engine.run(self.buffer)
            self._upload(pages)

        action = self.settings.worker_self_action
        # wait out a batch the worker server may be running
        with self.engine.exclusive():
            instance_id = self.terminator.terminate(action)
        logger.info("[Worker] requested %s of instance %s", action, instance_id)
        return pages

    def _download(self, pages: list[PageRef]) -> None:
        for index, page in enumerate(pages):
            target = self.engine.input_path(self.buffer, index, page.image_suffix)
            target.write_bytes(self.store.get(page.image_key))
            logger.debug("[Worker] %s -> %s", page.image_key, target.name)

    def _upload(self, pages: list[PageRef]) -> None:
        for index, page in enumerate(pages):
            artifact = self.engine.read_result(self.buffer, index)
            put_json(self.store, page.ocr_key, artifact.model_dump(mode="json"))
            logger.info("[Worker] uploaded %s", page.ocr_key)
