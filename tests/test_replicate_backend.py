from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import httpx
import pytest

from src.bridge.backends import BackendError, ReplicateBackend

BASE_URL = "https://api.replicate.com/v1"
STREAM_URL = "https://stream.replicate.com/v1/files/abc"

Handler = Callable[[httpx.Request], httpx.Response]


def _backend(handler: Handler) -> ReplicateBackend:
    return ReplicateBackend(
        "r8_test_token_123",
        base_url=BASE_URL,
        poll_interval=0,
        transport=httpx.MockTransport(handler),
    )


def _collect_stream(backend: ReplicateBackend, model_id: str = "anthropic/claude-3.7-sonnet") -> list[Any]:
    async def consume() -> list[Any]:
        return [event async for event in backend.stream(model_id, {"prompt": "hi"})]

    return asyncio.run(consume())


def test_run_waits_and_returns_output() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.method == "POST":
            return httpx.Response(
                201,
                json={
                    "id": "p1",
                    "status": "processing",
                    "urls": {"get": f"{BASE_URL}/predictions/p1"},
                },
            )
        return httpx.Response(200, json={"id": "p1", "status": "succeeded", "output": ["Hel", "lo"]})

    output = asyncio.run(_backend(handler).run("anthropic/claude-3.7-sonnet", {"prompt": "hi"}))

    assert output == ["Hel", "lo"]
    create = calls[0]
    assert create.url == httpx.URL(f"{BASE_URL}/models/anthropic/claude-3.7-sonnet/predictions")
    assert create.headers["Authorization"] == "Bearer r8_test_token_123"
    assert create.headers["Prefer"] == "wait"
    assert json.loads(create.content) == {"input": {"prompt": "hi"}}
    assert calls[1].method == "GET"
    assert calls[1].url == httpx.URL(f"{BASE_URL}/predictions/p1")


def test_versioned_model_posts_to_predictions() -> None:
    bodies: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url == httpx.URL(f"{BASE_URL}/predictions")
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json={"id": "p2", "status": "succeeded", "output": "ok"})

    output = asyncio.run(_backend(handler).run("owner/model:abc123", {"prompt": "hi"}))

    assert output == "ok"
    assert bodies == [{"input": {"prompt": "hi"}, "version": "abc123"}]


def test_failed_prediction_raises_backend_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"id": "p3", "status": "failed", "error": "CUDA OOM"})

    with pytest.raises(BackendError) as excinfo:
        asyncio.run(_backend(handler).run("a/b", {"prompt": "hi"}))

    assert excinfo.value.status == 500
    assert "CUDA OOM" in excinfo.value.message
    assert excinfo.value.raw_response["id"] == "p3"


def test_create_error_surfaces_http_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"detail": "Invalid token."})

    with pytest.raises(httpx.HTTPStatusError) as excinfo:
        asyncio.run(_backend(handler).run("a/b", {"prompt": "hi"}))

    assert excinfo.value.response.status_code == 401


def test_stream_yields_sse_events_until_done() -> None:
    body = (
        b"event: output\nid: 1\ndata: Hel\n\n"
        b": keep-alive\n\n"
        b"event: output\ndata: lo\n\n"
        b"data: bare\n\n"
        b"event: done\ndata: {}\n\n"
        b"event: output\ndata: ignored\n\n"
    )
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "POST":
            return httpx.Response(
                201, json={"id": "p4", "status": "starting", "urls": {"stream": STREAM_URL}}
            )
        return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})

    events = _collect_stream(_backend(handler))

    assert events == [
        {"event": "output", "data": "Hel", "id": "1"},
        {"event": "output", "data": "lo"},
        {"data": "bare"},
        {"event": "done", "data": "{}"},
    ]
    assert json.loads(requests[0].content)["stream"] is True
    assert "Prefer" not in requests[0].headers
    assert requests[1].headers["Accept"] == "text/event-stream"


def test_stream_multiline_data_is_joined() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"id": "p5", "urls": {"stream": STREAM_URL}})
        return httpx.Response(200, content=b"event: output\ndata: line one\ndata: line two\n\n")

    assert _collect_stream(_backend(handler)) == [
        {"event": "output", "data": "line one\nline two"}
    ]


def test_stream_error_event_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"id": "p6", "urls": {"stream": STREAM_URL}})
        return httpx.Response(
            200, content=b'event: output\ndata: a\n\nevent: error\ndata: {"detail": "model crashed"}\n\n'
        )

    with pytest.raises(BackendError) as excinfo:
        _collect_stream(_backend(handler))

    assert excinfo.value.message == "model crashed"


def test_stream_requires_stream_url() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"id": "p7", "urls": {}})

    with pytest.raises(BackendError) as excinfo:
        _collect_stream(_backend(handler))

    assert excinfo.value.status == 422


def test_stream_http_error_body_is_readable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"id": "p8", "urls": {"stream": STREAM_URL}})
        return httpx.Response(404, json={"detail": "stream expired"})

    with pytest.raises(httpx.HTTPStatusError) as excinfo:
        _collect_stream(_backend(handler))

    assert excinfo.value.response.json() == {"detail": "stream expired"}
