from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


OCR_RESULT_NAME = "ocr.json"
IMAGE_PREFIX = "img."


class InstanceStatus(str, Enum):
    NOT_EXIST = "not_exist"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"


class InstanceRecord(BaseModel):
    id: str | None = None
    address: str | None = None
    status: InstanceStatus = InstanceStatus.NOT_EXIST
    created_at: datetime | None = None
    ready_at: datetime | None = None
    error: str | None = None


class PageRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str
    book: str
    page: str
    image_name: str

    @property
    def page_prefix(self) -> str:
        return f"{self.owner}/{self.book}/{self.page}"

    @property
    def image_key(self) -> str:
        return f"{self.page_prefix}/{self.image_name}"

    @property
    def ocr_key(self) -> str:
        return f"{self.page_prefix}/{OCR_RESULT_NAME}"

    @property
    def image_suffix(self) -> str:
        return self.image_name.rsplit(".", 1)[-1]


class Task(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str
    book: str
    pages: tuple[PageRef, ...]

    @property
    def key(self) -> tuple[str, str]:
        return (self.owner, self.book)

    @property
    def page_names(self) -> list[str]:
        return [page.page for page in self.pages]


def flatten_text(contents: list[list[Any]]) -> str:
    return "\n".join(str(row[4]) for row in contents)


class OCRArtifact(BaseModel):
    model_config = ConfigDict(extra="allow")

    contents: list[list[Any]] = Field(default_factory=list)
    imginfo: dict[str, Any] = Field(default_factory=dict)
    txt: str | None = None

    @field_validator("contents")
    @classmethod
    def validate_rows(cls, value: list[list[Any]]) -> list[list[Any]]:
        for row in value:
            if len(row) < 5:
                raise ValueError("every content row must be [x0, y0, x1, y1, text]")
        return value

    def with_text(self) -> "OCRArtifact":
        return self.model_copy(update={"txt": flatten_text(self.contents)})


class BatchResponse(BaseModel):
    status: str
    result: dict[str, dict[str, Any]] = Field(default_factory=dict)
    detail: str | None = None


def result_name(index: int) -> str:
    return f"{index}.json"


class DeadLetter(BaseModel):
    owner: str
    book: str
    attempts: int
    last_error: str | None = None


class RunnerStatusResponse(BaseModel):
    active: bool
    last_error: str | None = None
    last_success_at: datetime | None = None
    dead_letters: list[DeadLetter] = Field(default_factory=list)
    instance: InstanceRecord


class CheckResponse(BaseModel):
    triggered: bool
    active: bool
    time: datetime = Field(default_factory=lambda: datetime.now(UTC))
