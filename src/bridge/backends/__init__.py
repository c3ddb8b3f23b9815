from __future__ import annotations

from typing import Any, AsyncIterator, Protocol

import httpx

__all__ = [
    "BackendError",
    "BaseBackend",
    "ReplicateBackend",
    "classify_backend_error",
]


class BackendError(Exception):
    """A backend failure reduced to an HTTP status and a message."""

    def __init__(
        self,
        status: int,
        message: str,
        *,
        raw_response: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.raw_response = raw_response

    def __repr__(self) -> str:
        return f"BackendError(status={self.status!r}, message={self.message!r})"


class BaseBackend(Protocol):
    def stream(self, model_id: str, payload: dict[str, Any]) -> AsyncIterator[Any]:
        ...

    async def run(self, model_id: str, payload: dict[str, Any]) -> Any:
        ...


def _message_from_payload(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in ("detail", "error", "message"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
        if isinstance(value, dict):
            nested = value.get("message")
            if isinstance(nested, str) and nested:
                return nested
    title = payload.get("title")
    if isinstance(title, str) and title:
        return title
    return None


def _response_details(response: Any) -> tuple[int | None, str | None, Any]:
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(response, "status", None)
    payload: Any = None
    json_method = getattr(response, "json", None)
    if callable(json_method):
        try:
            payload = json_method()
        except (ValueError, httpx.StreamError):
            payload = None
    elif isinstance(getattr(response, "data", None), dict):
        payload = response.data
    message = _message_from_payload(payload)
    if message is None:
        try:
            text = getattr(response, "text", None)
        except httpx.StreamError:
            text = None
        if isinstance(text, str) and text:
            message = text
    if message is None:
        reason = getattr(response, "reason_phrase", None) or getattr(response, "status_text", None)
        if isinstance(reason, str) and reason:
            message = reason
    return (status if isinstance(status, int) else None), message, payload


def classify_backend_error(exc: BaseException) -> BackendError:
    if isinstance(exc, BackendError):
        return exc
    response = getattr(exc, "response", None)
    if isinstance(exc, httpx.HTTPStatusError) or (
        response is not None and not isinstance(exc, httpx.RequestError)
    ):
        status, message, payload = _response_details(response)
        if status is not None:
            return BackendError(
                status,
                message or str(exc) or "backend error",
                raw_response=payload if payload is not None else {"status": status},
            )
    for attribute in ("status", "status_code"):
        status = getattr(exc, attribute, None)
        if isinstance(status, int) and not isinstance(status, bool):
            return BackendError(status, str(exc) or "backend error")
    return BackendError(500, str(exc) or type(exc).__name__)


from .replicate import ReplicateBackend  # noqa: E402
