import asyncio
import json
import logging
import os
import time
import uuid
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .backends import BackendError, BaseBackend, ReplicateBackend, classify_backend_error
from .config import LoadedConfig, load_config
from .encoder import ChunkEncoder, encode_events, render_completion
from .invoker import BackendInvoker
from .messages import build_model_input, process_messages
from .metrics import PROM_CONTENT_TYPE, MetricsLogger
from .types import BackendInput, ChatRequest, ModelInfo, ModelListResponse, RequestContext

logger = logging.getLogger(__name__)

app = FastAPI(title="replicate-bridge")

_PROJECT_ROOT = os.path.join(os.path.dirname(os.path.dirname(__file__)), "..")
CONFIG_DIR = os.environ.get("BRIDGE_CONFIG_DIR", os.path.join(_PROJECT_ROOT, "config"))
METRICS_DIR = os.environ.get("BRIDGE_METRICS_DIR", os.path.join(_PROJECT_ROOT, "metrics"))
ENVIRONMENT = os.environ.get("BRIDGE_ENV", "production").strip().lower() or "production"


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


ALLOWED_ORIGINS = _parse_env_list(os.environ.get("BRIDGE_CORS_ALLOW_ORIGINS", ""))

REQUEST_ID_HEADER = "x-bridge-request-id"
MIN_API_KEY_LENGTH = 10
AUTH_CHALLENGE = 'Bearer realm="API Access"'
GENERIC_BACKEND_ERROR = "Backend request failed"
GENERIC_INTERNAL_ERROR = "Internal Server Error"
TIMEOUT_MESSAGE = "Request timed out after {seconds:g} seconds, please retry later"

CORS_HEADERS: dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS, GET",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Max-Age": "86400",
}


class ErrorCode:
    MISSING_AUTH_HEADER = "missing_or_invalid_header"
    INVALID_AUTH_KEY = "invalid_auth_key"
    INVALID_JSON = "invalid_json"
    INVALID_REQUEST = "invalid_request"
    INVALID_MESSAGES = "invalid_messages"
    MODEL_NOT_FOUND = "model_not_found"
    NOT_FOUND = "not_found"
    REQUEST_TIMEOUT = "request_timeout"
    STREAM_TIMEOUT = "stream_timeout"
    STREAM_ERROR = "stream_error"
    INTERNAL_ERROR = "internal_error"


_BACKEND_ERROR_TYPES: dict[int, tuple[str, str]] = {
    400: ("invalid_request_error", "invalid_request"),
    401: ("authentication_error", "invalid_api_key"),
    403: ("permission_error", "insufficient_quota"),
    404: ("invalid_request_error", "model_not_found"),
    429: ("rate_limit_error", "rate_limit_exceeded"),
}
_DEFAULT_BACKEND_ERROR_TYPE = ("api_error", "replicate_error")


cfg: LoadedConfig = load_config(CONFIG_DIR)
metrics = MetricsLogger(METRICS_DIR)

if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_methods=["POST", "OPTIONS", "GET"],
        allow_headers=["Content-Type", "Authorization"],
        expose_headers=[REQUEST_ID_HEADER],
        max_age=86400,
    )


@app.on_event("shutdown")
async def _flush_metrics() -> None:
    await metrics.flush()


def backend_factory(api_key: str) -> BaseBackend:
    settings = cfg.settings.backend
    return ReplicateBackend(
        api_key,
        base_url=settings.base_url,
        timeout=settings.timeout_s,
        poll_interval=settings.poll_interval_s,
    )


def _new_request_id() -> str:
    return uuid.uuid4().hex


def _log_request_event(
    level: int,
    *,
    event: str,
    req_id: str,
    model: str | None,
    detail: str | None = None,
    **fields: Any,
) -> None:
    message = f"{event} req_id={req_id} model={model or 'unknown'}"
    for key, value in fields.items():
        message = f"{message} {key}={value}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


def _make_error_body(*, message: str, error_type: str, code: str) -> dict[str, Any]:
    return {
        "error": {
            "message": message,
            "type": error_type,
            "param": None,
            "code": code,
        }
    }


def _error_response(
    status_code: int,
    *,
    message: str,
    error_type: str,
    code: str,
    req_id: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    response_headers = {"Access-Control-Allow-Origin": "*"}
    if req_id:
        response_headers[REQUEST_ID_HEADER] = req_id
    if headers:
        response_headers.update(headers)
    return JSONResponse(
        _make_error_body(message=message, error_type=error_type, code=code),
        status_code=status_code,
        headers=response_headers,
    )


def _safe_backend_message(error: BackendError) -> str:
    message = error.message or ""
    marker = message.find("Traceback (most recent call last)")
    if marker != -1:
        message = message[:marker]
    message = message.strip()
    if not message:
        return GENERIC_BACKEND_ERROR
    if error.status >= 500 and error.raw_response is None:
        return GENERIC_BACKEND_ERROR
    return message


def _backend_error_type(status: int) -> tuple[str, str]:
    return _BACKEND_ERROR_TYPES.get(status, _DEFAULT_BACKEND_ERROR_TYPE)


def _backend_error_response(error: BackendError, *, req_id: str) -> JSONResponse:
    error_type, code = _backend_error_type(error.status)
    status_code = error.status if 400 <= error.status <= 599 else 500
    return _error_response(
        status_code,
        message=_safe_backend_message(error),
        error_type=error_type,
        code=code,
        req_id=req_id,
    )


def _timeout_response(*, req_id: str) -> JSONResponse:
    return _error_response(
        408,
        message=TIMEOUT_MESSAGE.format(seconds=cfg.settings.request_timeout_s),
        error_type="timeout_error",
        code=ErrorCode.REQUEST_TIMEOUT,
        req_id=req_id,
    )


def _internal_error_response(*, req_id: str) -> JSONResponse:
    return _error_response(
        500,
        message=GENERIC_INTERNAL_ERROR,
        error_type="internal_error",
        code=ErrorCode.INTERNAL_ERROR,
        req_id=req_id,
    )


class AuthenticationError(Exception):
    """Rejected ``Authorization`` header; rendered as a 401 by its handler."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def _require_api_key(req: Request) -> str:
    auth_header = req.headers.get("authorization")
    if not auth_header or not auth_header.lower().startswith("bearer "):
        raise AuthenticationError(
            ErrorCode.MISSING_AUTH_HEADER,
            "Unauthorized: Missing or invalid Authorization header. "
            "Use 'Bearer <YOUR_REPLICATE_API_KEY>' format.",
        )
    api_key = auth_header[7:].strip()
    if len(api_key) < MIN_API_KEY_LENGTH:
        raise AuthenticationError(
            ErrorCode.INVALID_AUTH_KEY,
            "Unauthorized: Invalid Replicate API Key provided.",
        )
    return api_key


def _log_request_body_safely(req_id: str, body: ChatRequest) -> None:
    messages = body.messages if isinstance(body.messages, list) else []
    roles = [
        str(message.get("role")) if isinstance(message, dict) else type(message).__name__
        for message in messages
    ]
    _log_request_event(
        logging.INFO,
        event="chat.completions request",
        req_id=req_id,
        model=body.model,
        stream=bool(body.stream),
        max_tokens=body.max_tokens if body.max_tokens is not None else "unset",
        messages=len(messages),
        roles=",".join(roles) or "-",
    )


async def _record_request(
    context: RequestContext,
    *,
    backend_model: str | None,
    ok: bool,
    status: int,
    error: str | None = None,
) -> None:
    record: dict[str, Any] = {
        "req_id": context.req_id,
        "ts": time.time(),
        "model": context.model,
        "backend_model": backend_model,
        "stream": context.stream,
        "latency_ms": int((time.perf_counter() - context.start) * 1000),
        "ok": ok,
        "status": status,
        "fallback": context.fallback_used,
        "chunks": context.chunks,
        "output_chars": context.output_chars,
        "usage_prompt": 0,
        "usage_completion": 0,
    }
    if error is not None:
        record["error"] = error
    await metrics.write(record)


def _remaining(deadline: float) -> float:
    return max(deadline - asyncio.get_running_loop().time(), 0.0)


@app.exception_handler(AuthenticationError)
async def _authentication_error_handler(req: Request, exc: AuthenticationError) -> JSONResponse:
    req_id = getattr(req.state, "req_id", None) or _new_request_id()
    _log_request_event(
        logging.WARNING,
        event="chat.completions unauthorized",
        req_id=req_id,
        model=None,
        code=exc.code,
    )
    return _error_response(
        401,
        message=exc.message,
        error_type="invalid_request_error",
        code=exc.code,
        req_id=req_id,
        headers={"WWW-Authenticate": AUTH_CHALLENGE},
    )


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(_req: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code in (404, 405):
        return _error_response(
            404,
            message="Not Found or Method Not Allowed",
            error_type="invalid_request_error",
            code=ErrorCode.NOT_FOUND,
        )
    detail = exc.detail if isinstance(exc.detail, str) else "request failed"
    return _error_response(
        exc.status_code,
        message=detail,
        error_type="invalid_request_error",
        code=ErrorCode.INVALID_REQUEST,
    )


@app.options("/{path:path}")
async def cors_preflight(path: str) -> Response:
    _ = path
    return Response(status_code=204, headers=CORS_HEADERS)


@app.get("/v1/models", response_model=ModelListResponse)
async def list_models() -> ModelListResponse:
    models = [
        ModelInfo(id=alias.name, owned_by=alias.owned_by, root=alias.name)
        for alias in cfg.listed_models()
    ]
    return ModelListResponse(data=models)


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    return {
        "status": "ok",
        "environment": ENVIRONMENT,
        "models": [alias.name for alias in cfg.listed_models()],
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    return Response(metrics.render_prometheus(), media_type=PROM_CONTENT_TYPE)


@app.post("/v1/chat/completions")
async def chat_completions(req: Request) -> Response:
    req_id = _new_request_id()
    start = time.perf_counter()
    deadline = asyncio.get_running_loop().time() + cfg.settings.request_timeout_s
    req.state.req_id = req_id
    api_key = _require_api_key(req)
    try:
        return await _handle_chat_completion(
            req, api_key=api_key, req_id=req_id, start=start, deadline=deadline
        )
    except Exception as exc:
        _log_request_event(
            logging.ERROR,
            event="chat.completions failure",
            req_id=req_id,
            model=None,
            detail=type(exc).__name__,
        )
        logger.debug("unhandled error req_id=%s", req_id, exc_info=True)
        return _internal_error_response(req_id=req_id)


async def _handle_chat_completion(
    req: Request,
    *,
    api_key: str,
    req_id: str,
    start: float,
    deadline: float,
) -> Response:
    try:
        raw_body = await req.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        _log_request_event(logging.WARNING, event="chat.completions invalid_json", req_id=req_id, model=None)
        return _error_response(
            400,
            message="Invalid JSON in request body",
            error_type="invalid_request_error",
            code=ErrorCode.INVALID_JSON,
            req_id=req_id,
        )
    if not isinstance(raw_body, dict):
        return _error_response(
            400,
            message="Request body must be a JSON object",
            error_type="invalid_request_error",
            code=ErrorCode.INVALID_JSON,
            req_id=req_id,
        )
    try:
        body = ChatRequest.model_validate(raw_body)
    except ValidationError as exc:
        fields = sorted({str(error.get("loc", ("?",))[0]) for error in exc.errors()})
        return _error_response(
            400,
            message=f"Invalid request body: check field(s) {', '.join(fields)}",
            error_type="invalid_request_error",
            code=ErrorCode.INVALID_REQUEST,
            req_id=req_id,
        )
    _log_request_body_safely(req_id, body)

    model_name = body.model or cfg.settings.default_model
    alias = cfg.resolve(model_name)
    if alias is None:
        _log_request_event(logging.WARNING, event="chat.completions unsupported_model", req_id=req_id, model=model_name)
        return _error_response(
            400,
            message=(
                f"Model '{model_name}' is not supported. "
                f"Available models: {', '.join(cfg.models)}"
            ),
            error_type="invalid_request_error",
            code=ErrorCode.MODEL_NOT_FOUND,
            req_id=req_id,
        )

    processed = process_messages(body.messages)
    if not processed.conversation:
        _log_request_event(logging.WARNING, event="chat.completions invalid_messages", req_id=req_id, model=model_name)
        return _error_response(
            400,
            message="Request body must contain a non-empty 'messages' array.",
            error_type="invalid_request_error",
            code=ErrorCode.INVALID_MESSAGES,
            req_id=req_id,
        )

    model_input = build_model_input(
        processed.conversation,
        processed.system_prompt,
        processed.image_urls,
        body.max_tokens,
        cfg.settings.max_tokens,
    )
    context = RequestContext(req_id=req_id, model=model_name, start=start, stream=bool(body.stream))
    invoker = BackendInvoker(
        backend_factory(api_key),
        alias.replicate,
        context=context,
        chunk_size=cfg.settings.stream.fallback_chunk_size,
        chunk_delay=cfg.settings.stream.fallback_chunk_delay_s,
    )
    _log_request_event(
        logging.INFO,
        event="chat.completions dispatch",
        req_id=req_id,
        model=model_name,
        backend_model=alias.replicate,
        stream=context.stream,
    )
    completion_id = f"chatcmpl-{uuid.uuid4()}"
    if context.stream:
        return await _stream_chat_response(
            invoker=invoker,
            model_input=model_input,
            context=context,
            completion_id=completion_id,
            deadline=deadline,
        )
    return await _sync_chat_response(
        invoker=invoker,
        model_input=model_input,
        context=context,
        completion_id=completion_id,
        deadline=deadline,
    )


async def _sync_chat_response(
    *,
    invoker: BackendInvoker,
    model_input: BackendInput,
    context: RequestContext,
    completion_id: str,
    deadline: float,
) -> Response:
    try:
        content = await asyncio.wait_for(
            invoker.get_response(model_input.to_payload()), timeout=_remaining(deadline)
        )
    except asyncio.TimeoutError:
        await _record_request(
            context, backend_model=invoker.model_id, ok=False, status=408, error="timeout"
        )
        _log_request_event(logging.ERROR, event="chat.completions timeout", req_id=context.req_id, model=context.model)
        return _timeout_response(req_id=context.req_id)
    except BackendError as exc:
        await _record_request(
            context, backend_model=invoker.model_id, ok=False, status=exc.status, error=exc.message
        )
        _log_request_event(
            logging.ERROR,
            event="chat.completions backend_error",
            req_id=context.req_id,
            model=context.model,
            status=exc.status,
        )
        return _backend_error_response(exc, req_id=context.req_id)
    await _record_request(context, backend_model=invoker.model_id, ok=True, status=200)
    _log_request_event(
        logging.INFO,
        event="chat.completions success",
        req_id=context.req_id,
        model=context.model,
        chars=len(content),
    )
    return JSONResponse(
        render_completion(completion_id, context.model, content),
        headers={REQUEST_ID_HEADER: context.req_id, "Access-Control-Allow-Origin": "*"},
    )


async def _next_signal(
    queue: "asyncio.Queue[tuple[str, Any]]", deadline: float
) -> tuple[str, Any]:
    return await asyncio.wait_for(queue.get(), timeout=_remaining(deadline))


async def _stop_task(task: "asyncio.Task[None]") -> None:
    if not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def _stream_chat_response(
    *,
    invoker: BackendInvoker,
    model_input: BackendInput,
    context: RequestContext,
    completion_id: str,
    deadline: float,
) -> Response:
    # Size one keeps at most one event buffered ahead of the client.
    queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue(maxsize=1)
    payload = model_input.to_payload()

    async def producer() -> None:
        try:
            async for event in invoker.stream_response(payload):
                await queue.put(("event", event))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await queue.put(("error", exc))
        else:
            await queue.put(("end", None))

    producer_task = asyncio.create_task(producer())
    try:
        first_kind, first_payload = await _next_signal(queue, deadline)
    except asyncio.TimeoutError:
        await _stop_task(producer_task)
        await _record_request(
            context, backend_model=invoker.model_id, ok=False, status=408, error="timeout"
        )
        _log_request_event(logging.ERROR, event="chat.completions timeout", req_id=context.req_id, model=context.model)
        return _timeout_response(req_id=context.req_id)
    if first_kind == "error":
        await _stop_task(producer_task)
        error = classify_backend_error(first_payload)
        await _record_request(
            context, backend_model=invoker.model_id, ok=False, status=error.status, error=error.message
        )
        _log_request_event(
            logging.ERROR,
            event="chat.completions backend_error",
            req_id=context.req_id,
            model=context.model,
            status=error.status,
        )
        return _backend_error_response(error, req_id=context.req_id)

    async def events() -> Any:
        kind, item = first_kind, first_payload
        while True:
            if kind == "event":
                yield item
            elif kind == "error":
                raise item
            else:
                return
            kind, item = await _next_signal(queue, deadline)

    encoder = ChunkEncoder(completion_id, context.model)

    async def event_source() -> Any:
        ok = True
        status = 200
        error_text: str | None = None
        try:
            async for frame in encode_events(
                events(), encoder, pacing=cfg.settings.stream.chunk_delay_s
            ):
                yield frame
        except asyncio.TimeoutError:
            ok, status, error_text = False, 408, "timeout"
            yield encoder.error_frame(
                "Streaming response timed out, please retry later",
                code=ErrorCode.STREAM_TIMEOUT,
            )
        except BackendError as exc:
            ok, status, error_text = False, exc.status, exc.message
            yield encoder.error_frame(
                _safe_backend_message(exc),
                code=ErrorCode.STREAM_ERROR,
            )
        except Exception as exc:
            ok, status, error_text = False, 500, type(exc).__name__
            yield encoder.error_frame("Stream processing failed", code=ErrorCode.STREAM_ERROR)
        finally:
            await _stop_task(producer_task)
            level = logging.INFO
            event_name = "chat.completions stream_complete"
            if not ok:
                level, event_name = logging.ERROR, "chat.completions stream_failed"
            elif context.fallback_used:
                level, event_name = logging.WARNING, "chat.completions fallback"
            _log_request_event(
                level,
                event=event_name,
                req_id=context.req_id,
                model=context.model,
                chunks=context.chunks,
                chars=context.output_chars,
            )
            await _record_request(
                context, backend_model=invoker.model_id, ok=ok, status=status, error=error_text
            )

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "Access-Control-Allow-Origin": "*",
            REQUEST_ID_HEADER: context.req_id,
        },
    )
