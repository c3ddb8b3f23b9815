"""Per-request metrics for the bridge.

Each finished request produces one record (ids, model, stream flag, status,
latency, fallback flag, chunk and character counts; never prompt or output
text). ``MetricsLogger.write`` appends it to a daily JSONL file and folds it
into the exporters selected by ``BRIDGE_METRICS_EXPORT_MODE``:

``prom`` (default)
    Prometheus text served on ``GET /metrics`` and mirrored to
    ``prometheus.prom`` in the metrics directory.
``otel``
    OpenTelemetry instruments on a private ``MeterProvider``; needs the
    ``otel`` extra.
``both``
    Both of the above.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
import time
from collections import defaultdict
from typing import Any, ClassVar, Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from opentelemetry.sdk.metrics.export import MetricReader  # type: ignore[import-not-found]

PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

_MODE_ENV = "BRIDGE_METRICS_EXPORT_MODE"
_PROM_FILE = "prometheus.prom"
_EXPORT_MODES = {"prom": (True, False), "otel": (False, True), "both": (True, True)}
_DEFAULT_MODE = "prom"

# Requests may legitimately run for the full 600 s deadline.
_LATENCY_BUCKETS_S: tuple[float, ...] = (0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0)
_CHUNK_BUCKETS: tuple[float, ...] = (1, 5, 10, 25, 50, 100, 250, 500, 1000)


def export_mode_from_env() -> str:
    raw = (os.environ.get(_MODE_ENV) or "").strip().lower()
    return raw if raw in _EXPORT_MODES else _DEFAULT_MODE


def _labels(**values: str) -> str:
    return ",".join(f'{key}="{value}"' for key, value in values.items())


class _Histogram:
    """Cumulative-bucket histogram keyed by a label tuple."""

    __slots__ = ("bounds", "series")

    def __init__(self, bounds: tuple[float, ...]) -> None:
        self.bounds = bounds
        self.series: dict[tuple[str, ...], list[float]] = {}

    def observe(self, key: tuple[str, ...], value: float) -> None:
        # Layout: one slot per bound, then +Inf, count and sum.
        slots = self.series.setdefault(key, [0.0] * (len(self.bounds) + 3))
        for index, bound in enumerate(self.bounds):
            if value <= bound:
                slots[index] += 1
        slots[-3] += 1
        slots[-2] += 1
        slots[-1] += value

    def render(self, name: str, label_names: tuple[str, ...]) -> list[str]:
        lines: list[str] = []
        for key, slots in sorted(self.series.items()):
            base = _labels(**dict(zip(label_names, key)))
            for index, bound in enumerate(self.bounds):
                lines.append(f'{name}_bucket{{{base},le="{bound:g}"}} {int(slots[index])}')
            lines.append(f'{name}_bucket{{{base},le="+Inf"}} {int(slots[-3])}')
            lines.append(f"{name}_count{{{base}}} {int(slots[-2])}")
            lines.append(f"{name}_sum{{{base}}} {slots[-1]:g}")
        return lines


class PrometheusExporter:
    """In-process Prometheus registry for the bridge's request records."""

    def __init__(self, dirpath: str, *, write_file: bool) -> None:
        self._path = os.path.join(dirpath, _PROM_FILE)
        self._write_file = write_file
        self._lock = threading.Lock()
        self._requests: defaultdict[tuple[str, str, str, str], int] = defaultdict(int)
        self._fallbacks: defaultdict[str, int] = defaultdict(int)
        self._output_chars: defaultdict[tuple[str, str], int] = defaultdict(int)
        self._latency = _Histogram(_LATENCY_BUCKETS_S)
        self._chunks = _Histogram(_CHUNK_BUCKETS)

    def record(self, record: dict[str, Any]) -> None:
        model = str(record.get("model") or "unknown")
        mode = "stream" if record.get("stream") else "sync"
        status = str(record.get("status") or "0")
        ok = "true" if record.get("ok") else "false"
        latency_s = max(float(record.get("latency_ms") or 0) / 1000.0, 0.0)
        with self._lock:
            self._requests[(model, mode, status, ok)] += 1
            self._latency.observe((model, mode), latency_s)
            self._output_chars[(model, mode)] += int(record.get("output_chars") or 0)
            if record.get("fallback"):
                self._fallbacks[model] += 1
            if record.get("stream"):
                self._chunks.observe((model,), float(record.get("chunks") or 0))
            if self._write_file:
                self._dump_locked()

    def render(self) -> str:
        with self._lock:
            return self._render_locked()

    def _render_locked(self) -> str:
        lines = [
            "# HELP bridge_requests_total Chat completion requests handled by the bridge",
            "# TYPE bridge_requests_total counter",
        ]
        for (model, mode, status, ok), count in sorted(self._requests.items()):
            lines.append(f"bridge_requests_total{{{_labels(model=model, mode=mode, status=status, ok=ok)}}} {count}")
        lines += [
            "# HELP bridge_stream_fallbacks_total Streams that fell back to a synchronous prediction",
            "# TYPE bridge_stream_fallbacks_total counter",
        ]
        for model, count in sorted(self._fallbacks.items()):
            lines.append(f"bridge_stream_fallbacks_total{{{_labels(model=model)}}} {count}")
        lines += [
            "# HELP bridge_output_chars_total Characters of model output returned to clients",
            "# TYPE bridge_output_chars_total counter",
        ]
        for (model, mode), count in sorted(self._output_chars.items()):
            lines.append(f"bridge_output_chars_total{{{_labels(model=model, mode=mode)}}} {count}")
        lines += [
            "# HELP bridge_request_latency_seconds End-to-end request latency",
            "# TYPE bridge_request_latency_seconds histogram",
        ]
        lines += self._latency.render("bridge_request_latency_seconds", ("model", "mode"))
        lines += [
            "# HELP bridge_stream_chunks Output chunks sent per streamed response",
            "# TYPE bridge_stream_chunks histogram",
        ]
        lines += self._chunks.render("bridge_stream_chunks", ("model",))
        return "\n".join(lines) + "\n"

    def _dump_locked(self) -> None:
        os.makedirs(os.path.dirname(self._path), exist_ok=True)
        staging = f"{self._path}.tmp"
        with open(staging, "w", encoding="utf-8") as handle:
            handle.write(self._render_locked())
        os.replace(staging, self._path)


class OtelExporter:
    """OpenTelemetry instruments bound to a private ``MeterProvider``.

    The provider is never installed as the global one, so exporters can be
    rebuilt (for a new reader) within one process.
    """

    def __init__(self, reader: Optional["MetricReader"] = None) -> None:
        from opentelemetry.sdk.metrics import MeterProvider  # type: ignore[import-not-found]
        from opentelemetry.sdk.metrics.export import InMemoryMetricReader
        from opentelemetry.sdk.resources import Resource  # type: ignore[import-not-found]

        self.reader = reader or InMemoryMetricReader()
        self._provider = MeterProvider(
            resource=Resource.create({"service.name": "replicate-bridge"}),
            metric_readers=[self.reader],
        )
        meter = self._provider.get_meter("bridge.metrics")
        self._requests = meter.create_counter(
            "bridge.requests", unit="{request}", description="Chat completion requests handled."
        )
        self._duration = meter.create_histogram(
            "bridge.request.duration", unit="ms", description="End-to-end request latency."
        )
        self._fallbacks = meter.create_counter(
            "bridge.stream.fallbacks", unit="{stream}", description="Streams that fell back to a sync prediction."
        )
        self._output_chars = meter.create_counter(
            "bridge.output.chars", unit="{char}", description="Characters of model output returned."
        )
        self._chunks = meter.create_histogram(
            "bridge.stream.chunks", unit="{chunk}", description="Output chunks per streamed response."
        )
        self._closed = False

    def record(self, record: dict[str, Any]) -> None:
        model = str(record.get("model") or "unknown")
        stream = bool(record.get("stream"))
        attrs: dict[str, Any] = {"model": model, "stream": stream, "ok": bool(record.get("ok"))}
        status = record.get("status")
        if isinstance(status, int) and not isinstance(status, bool):
            attrs["status"] = status
        self._requests.add(1, attributes=attrs)
        latency = record.get("latency_ms")
        if isinstance(latency, (int, float)):
            self._duration.record(float(latency), attributes=attrs)
        self._output_chars.add(int(record.get("output_chars") or 0), attributes={"model": model, "stream": stream})
        if record.get("fallback"):
            self._fallbacks.add(1, attributes={"model": model})
        if stream:
            self._chunks.record(int(record.get("chunks") or 0), attributes={"model": model})

    async def flush(self) -> None:
        if not self._closed:
            await asyncio.get_running_loop().run_in_executor(None, self._provider.force_flush)

    def shutdown(self) -> None:
        if not self._closed:
            self._closed = True
            self._provider.shutdown()


class MetricsLogger:
    _otel_lock: ClassVar[threading.Lock] = threading.Lock()
    _otel_exporter: ClassVar[Optional[OtelExporter]] = None
    _otel_unavailable: ClassVar[bool] = False
    _metric_reader: ClassVar[Optional["MetricReader"]] = None

    def __init__(self, dirpath: str):
        self.dir = dirpath
        os.makedirs(self.dir, exist_ok=True)
        self.mode = export_mode_from_env()
        use_prom, self._use_otel = _EXPORT_MODES[self.mode]
        self._write_lock: Optional[asyncio.Lock] = None
        self._prom = PrometheusExporter(self.dir, write_file=use_prom)

    @classmethod
    def configure_metric_reader(cls, reader: Optional["MetricReader"]) -> None:
        """Route OpenTelemetry data to ``reader``; the next export rebuilds the provider."""
        with cls._otel_lock:
            if cls._otel_exporter is not None:
                cls._otel_exporter.shutdown()
            cls._otel_exporter = None
            cls._otel_unavailable = False
            cls._metric_reader = reader

    @classmethod
    def _shared_otel(cls) -> Optional[OtelExporter]:
        with cls._otel_lock:
            if cls._otel_exporter is None and not cls._otel_unavailable:
                try:
                    cls._otel_exporter = OtelExporter(cls._metric_reader)
                except ImportError:
                    cls._otel_unavailable = True
            return cls._otel_exporter

    @property
    def otel(self) -> Optional[OtelExporter]:
        return self._shared_otel() if self._use_otel else None

    def _file(self) -> str:
        return os.path.join(self.dir, f"requests-{time.strftime('%Y%m%d')}.jsonl")

    async def write(self, record: dict[str, Any]) -> None:
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        async with self._write_lock:
            with open(self._file(), "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        self._prom.record(record)
        otel = self.otel
        if otel is not None:
            otel.record(record)

    def render_prometheus(self) -> bytes:
        return self._prom.render().encode("utf-8")

    async def flush(self) -> None:
        otel = self.otel
        if otel is not None:
            await otel.flush()
