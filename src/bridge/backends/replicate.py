from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

import httpx

from . import BackendError

logger = logging.getLogger(__name__)

__all__ = ["ReplicateBackend"]

DEFAULT_BASE_URL = "https://api.replicate.com/v1"
TERMINAL_STATUSES = frozenset({"succeeded", "failed", "canceled"})


class ReplicateBackend:
    """Minimal client for Replicate's predictions API.

    ``run`` creates a prediction in synchronous mode (``Prefer: wait``) and
    polls until it reaches a terminal state. ``stream`` creates a streaming
    prediction and yields the server-sent events from its ``urls.stream``
    endpoint as ``{"event", "data", "id"}`` mappings, or ``{"data"}`` when the
    frame carries no event name.
    """

    def __init__(
        self,
        api_token: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 120.0,
        poll_interval: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._transport = transport

    def _client(self, *, timeout: float | httpx.Timeout | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout if timeout is None else timeout,
            transport=self._transport,
        )

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._api_token}",
            "Content-Type": "application/json",
        }
        headers.update(extra)
        return headers

    def _prediction_request(
        self, model_id: str, payload: dict[str, Any], *, stream: bool
    ) -> tuple[str, dict[str, Any]]:
        model_ref, _, version = model_id.partition(":")
        body: dict[str, Any] = {"input": payload}
        if version:
            url = f"{self.base_url}/predictions"
            body["version"] = version
        else:
            owner, _, name = model_ref.partition("/")
            url = f"{self.base_url}/models/{owner}/{name}/predictions"
        if stream:
            body["stream"] = True
        return url, body

    async def _create_prediction(
        self,
        client: httpx.AsyncClient,
        model_id: str,
        payload: dict[str, Any],
        *,
        stream: bool,
    ) -> dict[str, Any]:
        url, body = self._prediction_request(model_id, payload, stream=stream)
        headers = self._headers() if stream else self._headers(Prefer="wait")
        response = await client.post(url, headers=headers, json=body)
        response.raise_for_status()
        prediction = response.json()
        if not isinstance(prediction, dict):
            raise BackendError(502, "unexpected prediction payload from backend")
        return prediction

    async def _wait_for_prediction(
        self, client: httpx.AsyncClient, prediction: dict[str, Any]
    ) -> dict[str, Any]:
        while prediction.get("status") not in TERMINAL_STATUSES:
            urls = prediction.get("urls") or {}
            poll_url = urls.get("get") or f"{self.base_url}/predictions/{prediction.get('id')}"
            await asyncio.sleep(self.poll_interval)
            response = await client.get(poll_url, headers=self._headers())
            response.raise_for_status()
            prediction = response.json()
        return prediction

    async def run(self, model_id: str, payload: dict[str, Any]) -> Any:
        async with self._client() as client:
            prediction = await self._create_prediction(client, model_id, payload, stream=False)
            prediction = await self._wait_for_prediction(client, prediction)
        status = prediction.get("status")
        if status == "failed":
            detail = prediction.get("error") or "prediction failed"
            raise BackendError(500, f"Prediction failed: {detail}", raw_response=prediction)
        if status == "canceled":
            raise BackendError(500, "Prediction canceled", raw_response=prediction)
        return prediction.get("output")

    async def stream(self, model_id: str, payload: dict[str, Any]) -> AsyncIterator[Any]:
        # Streams stay open for as long as the model is generating.
        async with self._client(timeout=httpx.Timeout(self.timeout, read=None)) as client:
            prediction = await self._create_prediction(client, model_id, payload, stream=True)
            stream_url = (prediction.get("urls") or {}).get("stream")
            if not stream_url:
                raise BackendError(422, f"model {model_id} does not support streaming")
            headers = {
                "Authorization": f"Bearer {self._api_token}",
                "Accept": "text/event-stream",
                "Cache-Control": "no-store",
            }
            async with client.stream("GET", stream_url, headers=headers) as response:
                if response.is_error:
                    await response.aread()
                response.raise_for_status()
                async for event in _iter_sse(response):
                    if event.get("event") == "error":
                        raise BackendError(500, _stream_error_message(event.get("data")))
                    yield event
                    if event.get("event") == "done":
                        return


def _stream_error_message(data: Any) -> str:
    if isinstance(data, str) and data:
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            return data
        if isinstance(parsed, dict):
            detail = parsed.get("detail") or parsed.get("error")
            if isinstance(detail, str) and detail:
                return detail
    return "stream reported an error"


def _build_event(event_name: str | None, data_lines: list[str], event_id: str | None) -> dict[str, Any]:
    data_text = "\n".join(data_lines)
    if event_name is None:
        return {"data": data_text}
    event: dict[str, Any] = {"event": event_name, "data": data_text}
    if event_id is not None:
        event["id"] = event_id
    return event


async def _iter_sse(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    data_lines: list[str] = []
    event_name: str | None = None
    event_id: str | None = None
    has_fields = False
    async for raw_line in response.aiter_lines():
        if raw_line is None:
            continue
        line = raw_line.rstrip("\r")
        if line == "":
            if has_fields:
                yield _build_event(event_name, data_lines, event_id)
            data_lines = []
            event_name = None
            event_id = None
            has_fields = False
            continue
        if line.startswith(":"):
            continue
        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field_name == "event":
            event_name = value or None
            has_fields = True
        elif field_name == "data":
            data_lines.append(value)
            has_fields = True
        elif field_name == "id":
            event_id = value
    if has_fields:
        yield _build_event(event_name, data_lines, event_id)
