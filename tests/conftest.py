from __future__ import annotations

from pathlib import Path

import pytest

from bookocr.core.config import Settings
from bookocr.core.errors import StorageError


class MemoryObjectStore:
    def __init__(self, objects: dict[str, bytes] | None = None):
        self.objects: dict[str, bytes] = dict(objects or {})
        self.list_calls = 0

    def list_keys(self, prefix: str = "") -> list[str]:
        self.list_calls += 1
        return sorted(key for key in self.objects if key.startswith(prefix))

    def get(self, key: str) -> bytes:
        try:
            return self.objects[key]
        except KeyError as exc:
            raise StorageError(f"Object not found: {key}") from exc

    def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        self.objects[key] = data

    def delete(self, prefix: str) -> int:
        keys = [key for key in self.objects if key.startswith(prefix)]
        for key in keys:
            del self.objects[key]
        return len(keys)


@pytest.fixture
def store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        OCR_LOG_DIR=str(tmp_path / "logs"),
        OCR_LOCAL_STORAGE_DIR=str(tmp_path / "assets"),
        OCR_WORKER_BUFFER_DIR=str(tmp_path / "buffer"),
        OCR_VULTR_API_KEY="test-key",
        OCR_WORKER_REQUIRE_GPU="false",
    )
