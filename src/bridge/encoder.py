from __future__ import annotations

import asyncio
import json
import time
from typing import Any, AsyncIterator, Callable

from .types import DoneEvent, OutputEvent, zero_usage

DONE_FRAME = b"data: [DONE]\n\n"


def sse_frame(payload: Any) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


class ChunkEncoder:
    """Renders ``chat.completion.chunk`` frames for one completion id."""

    def __init__(
        self,
        completion_id: str,
        model: str,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.completion_id = completion_id
        self.model = model
        self._clock = clock

    def _chunk(
        self,
        delta: dict[str, Any],
        *,
        finish_reason: str | None = None,
        usage: dict[str, int] | None = None,
    ) -> bytes:
        chunk: dict[str, Any] = {
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": int(self._clock()),
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "delta": delta,
                    "finish_reason": finish_reason,
                    "logprobs": None,
                }
            ],
        }
        if usage is not None:
            chunk["usage"] = usage
        return sse_frame(chunk)

    def role_chunk(self) -> bytes:
        return self._chunk({"role": "assistant"})

    def content_chunk(self, text: str) -> bytes:
        return self._chunk({"content": text})

    def finish_chunk(self) -> bytes:
        return self._chunk({}, finish_reason="stop", usage=zero_usage())

    @staticmethod
    def error_frame(message: str, *, code: str, error_type: str = "api_error") -> bytes:
        return sse_frame(
            {"error": {"message": message, "type": error_type, "param": None, "code": code}}
        )


async def encode_events(
    events: AsyncIterator[OutputEvent | DoneEvent],
    encoder: ChunkEncoder,
    *,
    pacing: float = 0.0,
) -> AsyncIterator[bytes]:
    started = False
    async for event in events:
        if not started:
            started = True
            yield encoder.role_chunk()
        if isinstance(event, OutputEvent):
            yield encoder.content_chunk(event.text)
            if pacing > 0:
                await asyncio.sleep(pacing)
        elif isinstance(event, DoneEvent):
            yield encoder.finish_chunk()
            yield DONE_FRAME
            return


def render_completion(
    completion_id: str,
    model: str,
    content: str,
    *,
    created: int | None = None,
) -> dict[str, Any]:
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": int(time.time()) if created is None else created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
                "logprobs": None,
            }
        ],
        "usage": zero_usage(),
    }
