from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from bookocr.core.config import Settings
from bookocr.core.errors import StorageError
from bookocr.core.storage_layout import DirectoryTree, build_directory_tree


logger = logging.getLogger(__name__)

_DELETE_BATCH = 1000


class ObjectStore(Protocol):
    def list_keys(self, prefix: str = "") -> list[str]: ...

    def get(self, key: str) -> bytes: ...

    def put(self, key: str, data: bytes, content_type: str | None = None) -> None: ...

    def delete(self, prefix: str) -> int: ...


def put_json(store: ObjectStore, key: str, payload: dict[str, Any]) -> None:
    data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    store.put(key, data, content_type="application/json")


def load_tree(store: ObjectStore, prefix: str = "") -> DirectoryTree:
    return build_directory_tree(store.list_keys(prefix))


class S3ObjectStore:
    def __init__(self, bucket: str, region: str, client: Any | None = None):
        self.bucket = bucket
        self.client = client or boto3.client("s3", region_name=region)

    def list_keys(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        paginator = self.client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []) if obj.get("Key"))
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to list s3://{self.bucket}/{prefix}: {exc}") from exc
        return keys

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in {"NoSuchKey", "404"}:
                raise StorageError(f"Object not found: {key}") from exc
            raise StorageError(f"Failed to read s3://{self.bucket}/{key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to read s3://{self.bucket}/{key}: {exc}") from exc

    def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        extra: dict[str, Any] = {}
        if content_type:
            extra["ContentType"] = content_type
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to write s3://{self.bucket}/{key}: {exc}") from exc

    def delete(self, prefix: str) -> int:
        keys = self.list_keys(prefix)
        for start in range(0, len(keys), _DELETE_BATCH):
            batch = keys[start : start + _DELETE_BATCH]
            try:
                self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
            except (BotoCoreError, ClientError) as exc:
                raise StorageError(f"Failed to delete under s3://{self.bucket}/{prefix}: {exc}") from exc
        return len(keys)


class LocalObjectStore:
    """Filesystem-backed store; keys map to paths below ``root``."""

    def __init__(self, root: Path):
        self.root = root

    def _path(self, key: str) -> Path:
        root = self.root.resolve()
        candidate = (root / key.lstrip("/")).resolve()
        try:
            candidate.relative_to(root)
        except ValueError as exc:
            raise StorageError(f"Key escapes storage root: {key}") from exc
        return candidate

    def list_keys(self, prefix: str = "") -> list[str]:
        if not self.root.exists():
            return []
        keys = [
            path.relative_to(self.root).as_posix()
            for path in self.root.rglob("*")
            if path.is_file()
        ]
        return sorted(key for key in keys if key.startswith(prefix))

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise StorageError(f"Object not found: {key}")
        return path.read_bytes()

    def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)

    def delete(self, prefix: str) -> int:
        keys = self.list_keys(prefix)
        for key in keys:
            self._path(key).unlink(missing_ok=True)
        target = self._path(prefix) if prefix else None
        if target is not None and target.is_dir() and not any(path.is_file() for path in target.rglob("*")):
            shutil.rmtree(target, ignore_errors=True)
        return len(keys)


def build_object_store(settings: Settings) -> ObjectStore:
    if settings.storage_backend == "local":
        logger.info("Using local object store at %s", settings.local_storage_path)
        return LocalObjectStore(settings.local_storage_path)
    return S3ObjectStore(bucket=settings.bucket_name, region=settings.aws_region)
