"""Tests for calsync.core.telemetry: tracer initialization and sync spans."""

import asyncio

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

import calsync.core.telemetry as _telemetry_mod
from calsync.core.telemetry import get_tracer, init_telemetry, sync_span
from calsync.models import SyncStatus

pytestmark = pytest.mark.unit


def _reset_otel_global_state():
    """Fully reset the OpenTelemetry global tracer provider state."""
    trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
    trace._TRACER_PROVIDER = None
    _telemetry_mod._tracer_provider_installed = False


@pytest.fixture(autouse=True)
def _clean_tracer_provider():
    _reset_otel_global_state()
    yield
    _reset_otel_global_state()


@pytest.fixture
def exporter() -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    return exporter


class TestInitTelemetry:
    def test_noop_without_endpoint(self, monkeypatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        tracer = init_telemetry("calsync-test")
        with tracer.start_as_current_span("noop") as span:
            assert span is not None
        assert _telemetry_mod._tracer_provider_installed is False

    def test_installs_provider_once(self, monkeypatch):
        monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
        init_telemetry("calsync-test")
        provider = trace.get_tracer_provider()
        assert isinstance(provider, TracerProvider)
        assert provider.resource.attributes["service.name"] == "calsync-test"

        init_telemetry("calsync-other")
        assert trace.get_tracer_provider() is provider

    def test_get_tracer(self):
        assert get_tracer() is not None


class TestSyncSpan:
    def test_context_manager_sets_attributes(self, exporter):
        with sync_span("calendar_pass", calendar_id="cal-1", provider="google") as span:
            span.set_attribute("calsync.status", "success")

        (finished,) = exporter.get_finished_spans()
        assert finished.name == "calsync.calendar_pass"
        assert finished.attributes["calsync.calendar_id"] == "cal-1"
        assert finished.attributes["calsync.provider"] == "google"
        assert finished.attributes["calsync.status"] == "success"

    def test_exception_marks_span_as_error(self, exporter):
        with pytest.raises(RuntimeError):
            with sync_span("fetch"):
                raise RuntimeError("boom")

        (finished,) = exporter.get_finished_spans()
        assert finished.status.status_code is trace.StatusCode.ERROR
        assert finished.events[0].name == "exception"

    def test_nested_spans_share_trace(self, exporter):
        with sync_span("outer"):
            with sync_span("inner"):
                pass

        inner, outer = exporter.get_finished_spans()
        assert inner.parent is not None
        assert inner.parent.span_id == outer.context.span_id

    async def test_decorator_on_concurrent_calls(self, exporter):
        @sync_span("resolve_conflict", calendar_id="cal-1")
        async def _work(delay: float) -> float:
            await asyncio.sleep(delay)
            return delay

        assert await asyncio.gather(_work(0.01), _work(0)) == [0.01, 0]
        spans = exporter.get_finished_spans()
        assert [s.name for s in spans] == ["calsync.resolve_conflict"] * 2
        assert spans[0].context.span_id != spans[1].context.span_id

    async def test_orchestrator_pass_span(self, exporter, orchestrator, calendar):
        result = await orchestrator.sync_calendar("cal-1")

        names = [s.name for s in exporter.get_finished_spans()]
        assert "calsync.calendar_pass" in names
        pass_span = next(
            s for s in exporter.get_finished_spans() if s.name == "calsync.calendar_pass"
        )
        assert pass_span.attributes["calsync.calendar_id"] == "cal-1"
        assert pass_span.attributes["calsync.status"] == str(result.status)
        assert result.status is SyncStatus.SUCCESS
