from __future__ import annotations

import fcntl
import json
import threading
from pathlib import Path
from types import SimpleNamespace

import pytest

from bookocr.core.errors import InferenceError
from bookocr.worker import engine as engine_module
from bookocr.worker.engine import InferenceEngine


def _write_result(buffer: Path, index: int, payload: dict) -> None:
    path = InferenceEngine.output_path(buffer, index)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")


def test_prepare_resets_the_buffer(tmp_path: Path) -> None:
    buffer = tmp_path / "buffer"
    (buffer / "stale").mkdir(parents=True)
    (buffer / "stale" / "old.json").write_text("{}", encoding="utf-8")

    InferenceEngine.prepare(buffer)

    assert sorted(path.relative_to(buffer).as_posix() for path in buffer.rglob("*")) == [
        "input",
        "input/img",
        "output",
    ]
    assert InferenceEngine.input_path(buffer, 3, "avif") == buffer / "input" / "img" / "3.avif"


def test_command_mounts_buffer_into_container(settings, tmp_path: Path) -> None:
    cmd = InferenceEngine(settings).command(tmp_path / "buffer")

    assert cmd[:5] == ["docker", "run", "--rm", "--gpus", "all"]
    assert f"{(tmp_path / 'buffer').resolve()}:/images_buffer" in cmd
    assert settings.worker_docker_image in cmd
    assert cmd[-4:] == ["infer", "/images_buffer/input", "/images_buffer/output", "-a"]


def test_run_logs_container_output(settings, tmp_path: Path, monkeypatch) -> None:
    calls = []

    def fake_run(cmd, stdout, stderr, text):
        calls.append(cmd)
        stdout.write("inference finished\n")
        return SimpleNamespace(returncode=0)

    monkeypatch.setattr(engine_module.subprocess, "run", fake_run)

    InferenceEngine(settings).run(tmp_path / "buffer")

    assert len(calls) == 1
    [log_file] = list(settings.log_path.glob("engine-*.log"))
    assert "inference finished" in log_file.read_text(encoding="utf-8")


def test_run_failure_includes_log_tail(settings, tmp_path: Path, monkeypatch) -> None:
    def fake_run(cmd, stdout, stderr, text):
        stdout.write("CUDA error: out of memory\n")
        return SimpleNamespace(returncode=1)

    monkeypatch.setattr(engine_module.subprocess, "run", fake_run)

    with pytest.raises(InferenceError, match="out of memory"):
        InferenceEngine(settings).run(tmp_path / "buffer")


def test_run_checks_for_a_gpu_when_required(settings, tmp_path: Path, monkeypatch) -> None:
    settings = settings.model_copy(update={"worker_require_gpu": True})
    def no_gpu():
        raise InferenceError("No GPU")

    monkeypatch.setattr(engine_module, "require_gpu", no_gpu)
    monkeypatch.setattr(engine_module.subprocess, "run", lambda *args, **kwargs: pytest.fail("docker must not run"))

    with pytest.raises(InferenceError, match="No GPU"):
        InferenceEngine(settings).run(tmp_path / "buffer")


def test_read_result_fills_text(settings, tmp_path: Path) -> None:
    buffer = tmp_path / "buffer"
    _write_result(buffer, 0, {"contents": [[0, 0, 1, 1, "上"], [0, 2, 1, 3, "下"]], "imginfo": {}})

    artifact = InferenceEngine(settings).read_result(buffer, 0)

    assert artifact.txt == "上\n下"


def test_read_result_missing_output(settings, tmp_path: Path) -> None:
    with pytest.raises(InferenceError, match="no result"):
        InferenceEngine(settings).read_result(tmp_path / "buffer", 0)


def test_read_result_rejects_short_rows(settings, tmp_path: Path) -> None:
    buffer = tmp_path / "buffer"
    _write_result(buffer, 0, {"contents": [[0, 0, 1]]})

    with pytest.raises(InferenceError, match="Unreadable"):
        InferenceEngine(settings).read_result(buffer, 0)


def _lock_is_free(path: Path) -> bool:
    with path.open("a") as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        return True


def test_run_holds_the_host_engine_lock(settings, tmp_path: Path, monkeypatch) -> None:
    engine = InferenceEngine(settings)
    held = []

    def fake_run(cmd, stdout, stderr, text):
        held.append(not _lock_is_free(engine.lock_path))
        return SimpleNamespace(returncode=0)

    monkeypatch.setattr(engine_module.subprocess, "run", fake_run)

    engine.run(tmp_path / "buffer")

    assert held == [True]
    assert _lock_is_free(engine.lock_path)


def test_exclusive_blocks_a_second_holder_until_release(settings) -> None:
    engine = InferenceEngine(settings)
    entered = threading.Event()

    def second_holder() -> None:
        with engine.exclusive():
            entered.set()

    with engine.exclusive():
        thread = threading.Thread(target=second_holder)
        thread.start()
        assert not entered.wait(0.2)

    thread.join(timeout=5)
    assert entered.is_set()
