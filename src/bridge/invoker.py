from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from contextlib import aclosing
from enum import Enum
from typing import Any, AsyncIterator

from .backends import BackendError, BaseBackend, classify_backend_error
from .types import (
    DONE,
    BackendEvent,
    DoneEvent,
    IgnoredEvent,
    OutputEvent,
    ParsedEvent,
    RequestContext,
)

logger = logging.getLogger(__name__)

INVALID_TEXT_SENTINELS: frozenset[str] = frozenset({"{}", "[]", "null", "undefined"})
DONE_EVENT_NAMES: frozenset[str] = frozenset({"done", "completed"})
FALLBACK_CHUNK_SIZE = 15
FALLBACK_CHUNK_DELAY_S = 0.03
_MISSING = object()


class StreamPhase(str, Enum):
    STREAMING = "streaming"
    FALLBACK_SYNC = "fallback_sync"


def is_valid_text(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    return value.strip() not in INVALID_TEXT_SENTINELS


def _field(raw: Any, name: str) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(name, _MISSING)
    return getattr(raw, name, _MISSING)


def parse_raw_event(raw: Any) -> ParsedEvent:
    """Reduce one raw backend stream item to ``Output``, ``Done`` or ``Ignored``."""
    if isinstance(raw, str):
        if is_valid_text(raw):
            return OutputEvent(raw)
        return IgnoredEvent("invalid_text")
    if raw is None or isinstance(raw, (bytes, bytearray, int, float, bool, list, tuple)):
        return IgnoredEvent("unsupported_type")
    event_name = _field(raw, "event")
    data = _field(raw, "data")
    if event_name is not _MISSING and data is not _MISSING:
        if event_name == "output":
            if is_valid_text(data):
                return OutputEvent(data)
            return IgnoredEvent("invalid_output_data")
        if event_name in DONE_EVENT_NAMES:
            return DONE
        return IgnoredEvent("unhandled_event")
    if data is not _MISSING:
        if is_valid_text(data):
            return OutputEvent(data)
        return IgnoredEvent("invalid_data")
    return IgnoredEvent("unrecognized_shape")


def chunk_text(text: str, size: int = FALLBACK_CHUNK_SIZE) -> list[str]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [text[index : index + size] for index in range(0, len(text), size)]


def coerce_output(prediction: Any) -> str:
    if prediction is None:
        return ""
    if isinstance(prediction, (list, tuple)):
        return "".join("" if item is None else str(item) for item in prediction)
    return str(prediction)


class BackendInvoker:
    """Runs one request's backend calls for a fixed credential and model."""

    def __init__(
        self,
        backend: BaseBackend,
        model_id: str,
        *,
        context: RequestContext,
        chunk_size: int = FALLBACK_CHUNK_SIZE,
        chunk_delay: float = FALLBACK_CHUNK_DELAY_S,
    ) -> None:
        self.backend = backend
        self.model_id = model_id
        self.context = context
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self.phase = StreamPhase.STREAMING

    def _log(self, level: int, event: str, **fields: Any) -> None:
        details = " ".join(f"{key}={value}" for key, value in fields.items())
        message = f"{event} req_id={self.context.req_id} backend_model={self.model_id}"
        if details:
            message = f"{message} {details}"
        logger.log(level, message)

    def _log_input(self, payload: dict[str, Any]) -> None:
        prompt = payload.get("prompt") or ""
        system_prompt = payload.get("system_prompt") or ""
        self._log(
            logging.INFO,
            "backend.input",
            prompt_chars=len(prompt),
            system_prompt_chars=len(system_prompt),
            max_tokens=payload.get("max_tokens"),
            has_image=bool(payload.get("image")),
        )

    async def stream_response(self, payload: dict[str, Any]) -> AsyncIterator[BackendEvent]:
        self._log_input(payload)
        self.phase = StreamPhase.STREAMING
        while True:
            if self.phase is StreamPhase.STREAMING:
                try:
                    async for event in self._stream_events(payload):
                        yield event
                except Exception as exc:
                    self._log(
                        logging.WARNING,
                        "backend.stream_failed",
                        error_type=type(exc).__name__,
                        chunks=self.context.chunks,
                    )
                    self.phase = StreamPhase.FALLBACK_SYNC
                    self.context.fallback_used = True
                    continue
                return
            async for event in self._fallback_events(payload):
                yield event
            return

    async def _stream_events(self, payload: dict[str, Any]) -> AsyncIterator[BackendEvent]:
        async with aclosing(self.backend.stream(self.model_id, payload)) as source:
            async for raw in source:
                parsed = parse_raw_event(raw)
                if isinstance(parsed, OutputEvent):
                    self.context.record_output(parsed.text)
                    if self.context.chunks % 20 == 0:
                        self._log(
                            logging.DEBUG,
                            "backend.stream_progress",
                            chunks=self.context.chunks,
                            chars=self.context.output_chars,
                        )
                    yield parsed
                elif isinstance(parsed, DoneEvent):
                    self._log_stream_complete()
                    yield parsed
                    return
                else:
                    self.context.ignored_events += 1
                    self._log(
                        logging.DEBUG,
                        "backend.event_ignored",
                        reason=parsed.reason,
                        raw_type=type(raw).__name__,
                    )
        self._log_stream_complete()
        yield DONE

    def _log_stream_complete(self) -> None:
        self._log(
            logging.INFO,
            "backend.stream_complete",
            chunks=self.context.chunks,
            chars=self.context.output_chars,
            ignored=self.context.ignored_events,
        )

    async def _fallback_events(self, payload: dict[str, Any]) -> AsyncIterator[BackendEvent]:
        self._log(logging.INFO, "backend.fallback_sync")
        content = await self._run(payload)
        emitted = 0
        if is_valid_text(content):
            for piece in chunk_text(content, self.chunk_size):
                if not is_valid_text(piece):
                    continue
                self.context.record_output(piece)
                emitted += 1
                yield OutputEvent(piece)
                await asyncio.sleep(self.chunk_delay)
        self._log(logging.INFO, "backend.fallback_complete", chunks=emitted, chars=len(content))
        yield DONE

    async def _run(self, payload: dict[str, Any]) -> str:
        started = time.perf_counter()
        try:
            prediction = await self.backend.run(self.model_id, payload)
        except Exception as exc:
            error = classify_backend_error(exc)
            self._log(
                logging.ERROR,
                "backend.request_failed",
                status=error.status,
                error_type=type(exc).__name__,
            )
            if error is exc:
                raise
            raise error from exc
        content = coerce_output(prediction)
        self._log(
            logging.INFO,
            "backend.response",
            output_type=type(prediction).__name__,
            chars=len(content),
            latency_ms=int((time.perf_counter() - started) * 1000),
        )
        return content

    async def get_response(self, payload: dict[str, Any]) -> str:
        self._log_input(payload)
        content = await self._run(payload)
        self.context.output_chars = len(content)
        return content


__all__ = [
    "BackendError",
    "BackendInvoker",
    "StreamPhase",
    "chunk_text",
    "coerce_output",
    "is_valid_text",
    "parse_raw_event",
]
