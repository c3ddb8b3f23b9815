"""MetricsLogger JSONL, Prometheus and OpenTelemetry export tests."""

import json
from pathlib import Path
from typing import Any

import pytest

from src.bridge.metrics import MetricsLogger


def _sample_record(**overrides: Any) -> dict[str, Any]:
    record: dict[str, Any] = {
        "req_id": "req-1",
        "ts": 1.0,
        "model": "claude-3-7-sonnet-20250219",
        "backend_model": "anthropic/claude-3.7-sonnet",
        "stream": True,
        "latency_ms": 1500,
        "ok": True,
        "status": 200,
        "fallback": False,
        "chunks": 3,
        "output_chars": 12,
        "usage_prompt": 0,
        "usage_completion": 0,
    }
    record.update(overrides)
    return record


def _otel_points(reader: Any) -> dict[str, list[Any]]:
    points: dict[str, list[Any]] = {}
    metrics_data = reader.get_metrics_data()
    assert metrics_data is not None
    for resource_metrics in metrics_data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                points.setdefault(metric.name, []).extend(metric.data.data_points)
    return points


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_export_env(monkeypatch):
    monkeypatch.delenv("BRIDGE_METRICS_EXPORT_MODE", raising=False)
    MetricsLogger.configure_metric_reader(None)
    yield
    MetricsLogger.configure_metric_reader(None)


@pytest.mark.anyio
async def test_metrics_logger_appends_jsonl(tmp_path):
    logger = MetricsLogger(str(tmp_path))
    await logger.write(_sample_record())
    await logger.write(_sample_record(req_id="req-2", ok=False, status=429))

    files = list(Path(tmp_path).glob("requests-*.jsonl"))
    assert len(files) == 1
    lines = files[0].read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["req_id"] for line in lines] == ["req-1", "req-2"]


@pytest.mark.anyio
async def test_metrics_logger_prometheus_only_mode(tmp_path, monkeypatch):
    monkeypatch.setenv("BRIDGE_METRICS_EXPORT_MODE", "prom")

    logger = MetricsLogger(str(tmp_path))
    await logger.write(_sample_record())

    prom_path = Path(tmp_path) / "prometheus.prom"
    assert prom_path.exists(), "Prometheus output should be generated in prom mode"
    prom_text = prom_path.read_text(encoding="utf-8")
    assert (
        'bridge_requests_total{model="claude-3-7-sonnet-20250219",mode="stream",status="200",ok="true"} 1'
        in prom_text
    )
    assert 'le="2.5"} 1' in prom_text
    assert 'le="1"} 0' in prom_text
    assert logger.otel is None


@pytest.mark.anyio
async def test_prometheus_tracks_fallbacks_and_output(tmp_path):
    logger = MetricsLogger(str(tmp_path))
    await logger.write(_sample_record(fallback=True, chunks=4, output_chars=60))
    await logger.write(_sample_record(req_id="req-2", chunks=2, output_chars=20))
    await logger.write(_sample_record(req_id="req-3", stream=False, chunks=1, output_chars=5))

    rendered = logger.render_prometheus().decode("utf-8")
    model = 'model="claude-3-7-sonnet-20250219"'
    assert f"bridge_stream_fallbacks_total{{{model}}} 1" in rendered
    assert f'bridge_output_chars_total{{{model},mode="stream"}} 80' in rendered
    assert f'bridge_output_chars_total{{{model},mode="sync"}} 5' in rendered
    # Sync responses do not contribute to the per-stream chunk histogram.
    assert f"bridge_stream_chunks_count{{{model}}} 2" in rendered
    assert f"bridge_stream_chunks_sum{{{model}}} 6" in rendered
    assert f'bridge_stream_chunks_bucket{{{model},le="1"}} 0' in rendered
    assert f'bridge_stream_chunks_bucket{{{model},le="5"}} 2' in rendered


@pytest.mark.anyio
async def test_render_prometheus_matches_exported_file(tmp_path):
    logger = MetricsLogger(str(tmp_path))
    await logger.write(_sample_record(stream=False))

    rendered = logger.render_prometheus().decode("utf-8")
    assert 'mode="sync"' in rendered
    assert rendered == (Path(tmp_path) / "prometheus.prom").read_text(encoding="utf-8")


@pytest.mark.anyio
async def test_metrics_logger_records_opentelemetry_samples(tmp_path, monkeypatch):
    pytest.importorskip("opentelemetry.sdk.metrics")
    from opentelemetry.sdk.metrics.export import InMemoryMetricReader

    monkeypatch.setenv("BRIDGE_METRICS_EXPORT_MODE", "both")
    reader = InMemoryMetricReader()
    MetricsLogger.configure_metric_reader(reader)

    logger = MetricsLogger(str(tmp_path))
    await logger.write(_sample_record(fallback=True))
    await logger.flush()

    points = _otel_points(reader)
    assert any(
        dp.value == 1 and dp.attributes.get("stream") is True and dp.attributes.get("status") == 200
        for dp in points["bridge.requests"]
    )
    assert any(dp.count == 1 and dp.sum == pytest.approx(1500.0) for dp in points["bridge.request.duration"])
    assert [dp.value for dp in points["bridge.stream.fallbacks"]] == [1]
    assert [dp.value for dp in points["bridge.output.chars"]] == [12]
    assert [(dp.count, dp.sum) for dp in points["bridge.stream.chunks"]] == [(1, 3)]
    assert (Path(tmp_path) / "prometheus.prom").exists()


@pytest.mark.anyio
async def test_metrics_logger_otel_only_mode(tmp_path, monkeypatch):
    pytest.importorskip("opentelemetry.sdk.metrics")
    from opentelemetry.sdk.metrics.export import InMemoryMetricReader

    monkeypatch.setenv("BRIDGE_METRICS_EXPORT_MODE", "otel")
    reader = InMemoryMetricReader()
    MetricsLogger.configure_metric_reader(reader)

    logger = MetricsLogger(str(tmp_path))
    await logger.write(_sample_record())
    await logger.flush()

    assert not (Path(tmp_path) / "prometheus.prom").exists()
    assert "bridge.requests" in _otel_points(reader)


@pytest.mark.anyio
async def test_each_configured_reader_receives_its_own_samples(tmp_path, monkeypatch):
    pytest.importorskip("opentelemetry.sdk.metrics")
    from opentelemetry import metrics as otel_metrics
    from opentelemetry.sdk.metrics.export import InMemoryMetricReader

    monkeypatch.setenv("BRIDGE_METRICS_EXPORT_MODE", "otel")
    global_provider = otel_metrics.get_meter_provider()

    for req_id in ("first", "second"):
        reader = InMemoryMetricReader()
        MetricsLogger.configure_metric_reader(reader)
        logger = MetricsLogger(str(tmp_path / req_id))
        await logger.write(_sample_record(req_id=req_id, stream=False))
        await logger.flush()

        requests = _otel_points(reader)["bridge.requests"]
        assert sum(dp.value for dp in requests) == 1

    assert otel_metrics.get_meter_provider() is global_provider


def test_unknown_export_mode_falls_back_to_prometheus(tmp_path, monkeypatch):
    monkeypatch.setenv("BRIDGE_METRICS_EXPORT_MODE", "statsd")
    monkeypatch.setenv("BRIDGE_OTEL_METRICS_EXPORT", "yes")

    logger = MetricsLogger(str(tmp_path))

    assert logger.mode == "prom"
    assert logger.otel is None
