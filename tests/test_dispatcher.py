from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from bookocr.core.errors import DispatchError
from bookocr.core.models import PageRef, Task
from bookocr.runtime.dispatcher import JobDispatcher


def _task(*pages: tuple[str, str]) -> Task:
    return Task(
        owner="alice",
        book="b1",
        pages=tuple(PageRef(owner="alice", book="b1", page=page, image_name=name) for page, name in pages),
    )


def _artifact(text: str) -> dict:
    return {"contents": [[0, 0, 10, 40, text]], "imginfo": {"img_width": 800, "img_height": 1200}}


def _dispatch(settings, store, handler, task: Task) -> list[httpx.Request]:
    seen: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        request.read()
        seen.append(request)
        return handler(request)

    async def scenario() -> None:
        dispatcher = JobDispatcher(
            settings,
            store,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(recording)),
        )
        try:
            await dispatcher.dispatch(task, "10.0.0.1")
        finally:
            await dispatcher.close()

    asyncio.run(scenario())
    return seen


def test_dispatch_uploads_pages_and_stores_each_result(settings, store) -> None:
    store.put("alice/b1/p1/img.avif", b"first-image")
    store.put("alice/b1/p2/img.png", b"second-image")
    store.put("alice/b1/p2/ocr.json", b"not json at all")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"status": "ok", "result": {"0.json": _artifact("一行目"), "1.json": _artifact("二行目")}},
        )

    task = _task(("p1", "img.avif"), ("p2", "img.png"))
    [request] = _dispatch(settings, store, handler, task)

    assert str(request.url) == "http://10.0.0.1:8080/start-ocr"
    body = request.content
    assert b'name="bookName"' in body
    assert b'filename="0.avif"' in body
    assert b'filename="1.png"' in body
    assert b"first-image" in body
    assert b"second-image" in body

    first = json.loads(store.get("alice/b1/p1/ocr.json"))
    second = json.loads(store.get("alice/b1/p2/ocr.json"))
    assert first["contents"][0][4] == "一行目"
    assert first["txt"] == "一行目"
    assert first["imginfo"]["img_width"] == 800
    assert second["txt"] == "二行目"


def test_dispatch_keeps_worker_supplied_text(settings, store) -> None:
    store.put("alice/b1/p1/img.jpg", b"image")
    payload = dict(_artifact("raw"), txt="corrected")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "ok", "result": {"0.json": payload}})

    _dispatch(settings, store, handler, _task(("p1", "img.jpg")))

    assert json.loads(store.get("alice/b1/p1/ocr.json"))["txt"] == "corrected"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="engine crashed"),
        httpx.Response(200, json={"status": "error", "detail": "docker failed"}),
        httpx.Response(200, json={"status": "ok", "result": {"0.json": _artifact("only one")}}),
        httpx.Response(200, json={"status": "ok", "result": {"0.json": {"contents": [[1, 2]]}, "1.json": {}}}),
        httpx.Response(200, text="<html>proxy error</html>"),
    ],
)
def test_failed_batches_raise_and_write_nothing(settings, store, response) -> None:
    store.put("alice/b1/p1/img.png", b"1")
    store.put("alice/b1/p2/img.png", b"2")
    before = dict(store.objects)

    with pytest.raises(DispatchError):
        _dispatch(settings, store, lambda request: response, _task(("p1", "img.png"), ("p2", "img.png")))

    assert store.objects == before


def test_transport_errors_become_dispatch_errors(settings, store) -> None:
    store.put("alice/b1/p1/img.png", b"1")

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("worker took too long", request=request)

    with pytest.raises(DispatchError, match="failed"):
        _dispatch(settings, store, handler, _task(("p1", "img.png")))


def test_missing_source_image_fails_before_any_request(settings, store) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(DispatchError, match="source images"):
        _dispatch(settings, store, handler, _task(("p1", "img.png")))


def test_empty_task_is_rejected(settings, store) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(DispatchError, match="no pages"):
        _dispatch(settings, store, handler, Task(owner="alice", book="b1", pages=()))
