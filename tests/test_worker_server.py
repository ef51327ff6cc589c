from __future__ import annotations

import asyncio
import json
from pathlib import Path

from fastapi.testclient import TestClient

from bookocr.core.errors import InferenceError
from bookocr.worker.engine import InferenceEngine
from bookocr.worker.server import build_worker_app


class EchoEngine(InferenceEngine):
    def __init__(self, settings, fail: bool = False):
        super().__init__(settings)
        self.fail = fail
        self.seen: list[str] = []
        self.buffers: list[Path] = []

    def run(self, buffer: Path) -> None:
        self.buffers.append(buffer)
        if self.fail:
            raise InferenceError("OCR container exited with code 137")
        for path in sorted((buffer / "input" / "img").iterdir()):
            self.seen.append(path.name)
            output = self.output_path(buffer, int(path.stem))
            output.parent.mkdir(parents=True, exist_ok=True)
            text = path.read_bytes().decode("utf-8")
            output.write_text(json.dumps({"contents": [[0, 0, 1, 1, text]], "imginfo": {}}), encoding="utf-8")


def test_health_reports_ok(settings) -> None:
    client = TestClient(build_worker_app(settings, EchoEngine(settings)))

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_start_ocr_returns_one_result_per_image(settings) -> None:
    engine = EchoEngine(settings)
    client = TestClient(build_worker_app(settings, engine))

    response = client.post(
        "/start-ocr",
        data={"bookName": "b1"},
        files=[
            ("image", ("0.png", b"first", "image/png")),
            ("image", ("1.avif", b"second", "image/avif")),
        ],
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert sorted(payload["result"]) == ["0.json", "1.json"]
    assert payload["result"]["1.json"]["txt"] == "second"
    assert engine.seen == ["0.png", "1.avif"]
    assert not engine.buffers[0].exists()


def test_start_ocr_reports_engine_failure(settings) -> None:
    engine = EchoEngine(settings, fail=True)
    client = TestClient(build_worker_app(settings, engine))

    response = client.post(
        "/start-ocr",
        data={"bookName": "b1"},
        files=[("image", ("0.png", b"first", "image/png"))],
    )

    assert response.status_code == 500
    assert "137" in response.json()["detail"]
    assert not engine.buffers[0].exists()


def test_start_ocr_requires_images(settings) -> None:
    client = TestClient(build_worker_app(settings, EchoEngine(settings)))

    response = client.post("/start-ocr", data={"bookName": "b1"})

    assert response.status_code == 422


def _on_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class ThreadCheckingEngine(EchoEngine):
    def __init__(self, settings):
        super().__init__(settings)
        self.loop_calls: list[tuple[str, bool]] = []

    def prepare(self, buffer: Path) -> None:
        self.loop_calls.append(("prepare", _on_event_loop()))
        super().prepare(buffer)

    def run(self, buffer: Path) -> None:
        self.loop_calls.append(("run", _on_event_loop()))
        super().run(buffer)


def test_start_ocr_stages_and_runs_off_the_event_loop(settings) -> None:
    engine = ThreadCheckingEngine(settings)
    client = TestClient(build_worker_app(settings, engine))

    response = client.post(
        "/start-ocr",
        data={"bookName": "b1"},
        files=[("image", ("0.png", b"first", "image/png"))],
    )

    assert response.status_code == 200
    assert engine.loop_calls == [("prepare", False), ("run", False)]
    assert engine.seen == ["0.png"]
