from __future__ import annotations

import fcntl
import json
import logging
import shutil
import subprocess
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError

from bookocr.core.config import Settings
from bookocr.core.errors import InferenceError
from bookocr.core.models import OCRArtifact, result_name
from bookocr.worker.gpu import require_gpu


logger = logging.getLogger(__name__)

CONTAINER_BUFFER = "/images_buffer"
LOCK_NAME = "engine.lock"


class InferenceEngine:
    """Runs the containerized OCR CLI over a numbered buffer directory.

    Inputs live at ``<buffer>/input/img/<i>.<ext>``; the CLI writes
    ``<buffer>/output/input/json/<i>.json`` for each of them.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def lock_path(self) -> Path:
        return self.settings.worker_buffer_path / LOCK_NAME

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Host-wide engine lock shared by ``worker-run`` and ``worker-serve``.

        Both programs drive the same GPU. The lock is a ``flock`` on a file in the
        buffer root, so it also serialises threads of one process.
        """
        path = self.lock_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    @staticmethod
    def prepare(buffer: Path) -> None:
        shutil.rmtree(buffer, ignore_errors=True)
        (buffer / "input" / "img").mkdir(parents=True, exist_ok=True)
        (buffer / "output").mkdir(parents=True, exist_ok=True)

    @staticmethod
    def input_path(buffer: Path, index: int, suffix: str) -> Path:
        return buffer / "input" / "img" / f"{index}.{suffix}"

    @staticmethod
    def output_path(buffer: Path, index: int) -> Path:
        return buffer / "output" / "input" / "json" / result_name(index)

    def command(self, buffer: Path) -> list[str]:
        return [
            "docker",
            "run",
            "--rm",
            "--gpus",
            "all",
            "-v",
            f"{buffer.resolve()}:{CONTAINER_BUFFER}",
            "-w",
            self.settings.worker_docker_workdir,
            self.settings.worker_docker_image,
            "python",
            "main.py",
            "infer",
            f"{CONTAINER_BUFFER}/input",
            f"{CONTAINER_BUFFER}/output",
            "-a",
        ]

    @staticmethod
    def _tail_log_lines(path: Path, max_lines: int = 40) -> str:
        try:
            lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError:
            return ""
        return "\n".join(lines[-max_lines:])

    def run(self, buffer: Path) -> None:
        if self.settings.worker_require_gpu:
            gpus = require_gpu()
            logger.info("[Engine] GPUs: %s", ", ".join(f"{gpu.index}:{gpu.name}" for gpu in gpus))

        log_dir = self.settings.log_path
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / f"engine-{int(time.time())}.log"
        cmd = self.command(buffer)
        logger.info("[Engine] running: %s", " ".join(cmd))

        with self.exclusive(), log_path.open("w", encoding="utf-8") as log_file:
            try:
                completed = subprocess.run(cmd, stdout=log_file, stderr=subprocess.STDOUT, text=True)
            except FileNotFoundError as exc:
                raise InferenceError("docker executable not found in PATH") from exc

        if completed.returncode != 0:
            detail = f"OCR container exited with code {completed.returncode}. Log: {log_path}"
            recent = self._tail_log_lines(log_path)
            if recent:
                detail += f"\nRecent log lines:\n{recent}"
            raise InferenceError(detail)

    def read_result(self, buffer: Path, index: int) -> OCRArtifact:
        path = self.output_path(buffer, index)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            artifact = OCRArtifact.model_validate(payload)
        except FileNotFoundError as exc:
            raise InferenceError(f"OCR container produced no result for input {index}") from exc
        except (json.JSONDecodeError, ValidationError) as exc:
            raise InferenceError(f"Unreadable OCR result {path}: {exc}") from exc
        return artifact.with_text()
