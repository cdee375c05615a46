"""OpenTelemetry metrics instruments for calendar sync passes.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
  calsync.sync.passes_total          Counter  (labels: provider, status)
      Finished sync passes per terminal status.

  calsync.sync.pass_duration_ms      Histogram (label: provider)
      Wall-clock duration of one calendar pass.

  calsync.sync.active_passes         UpDownCounter (gauge semantics)
      Passes currently running.

  calsync.sync.mutations_total       Counter  (labels: provider, kind)
      Local and remote writes applied (create/update/delete, local/remote).

  calsync.sync.conflicts_total       Counter  (label: provider)
      Conflict records detected.

  calsync.resilience.retries_total   Counter  (labels: provider, operation)
      Retry attempts scheduled by the retry wrapper.

  calsync.resilience.circuit_transitions_total  Counter (labels: provider, state)
      Circuit breaker state changes.

  calsync.tokens.refresh_total       Counter  (labels: provider, outcome)
      Token refresh exchanges (ok / reauth / error).
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "calsync"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.

    Args:
        service_name: Service name reported in the metrics resource.

    Returns:
        A Meter instance bound to the global MeterProvider.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


class SyncMetrics:
    """Convenience wrapper around the sync engine's instruments.

    Instruments are created on first use so constructing this object before
    ``init_metrics`` is safe; recordings are no-ops until a real provider is
    installed.

    Typical usage::

        _metrics = SyncMetrics()
        _metrics.active_passes_inc("google")
        try:
            ...
            _metrics.record_pass("google", "success", duration_ms)
        finally:
            _metrics.active_passes_dec("google")
    """

    def __init__(self) -> None:
        self._counters: dict[str, metrics.Counter] = {}
        self.__duration: metrics.Histogram | None = None
        self.__active: metrics.UpDownCounter | None = None

    def _counter(self, name: str, description: str, unit: str) -> metrics.Counter:
        counter = self._counters.get(name)
        if counter is None:
            counter = get_meter().create_counter(name=name, description=description, unit=unit)
            self._counters[name] = counter
        return counter

    @property
    def _duration(self) -> metrics.Histogram:
        if self.__duration is None:
            self.__duration = get_meter().create_histogram(
                name="calsync.sync.pass_duration_ms",
                description="Duration of one calendar sync pass",
                unit="ms",
            )
        return self.__duration

    @property
    def _active(self) -> metrics.UpDownCounter:
        if self.__active is None:
            self.__active = get_meter().create_up_down_counter(
                name="calsync.sync.active_passes",
                description="Calendar sync passes currently running",
                unit="passes",
            )
        return self.__active

    # -- pass lifecycle ------------------------------------------------------

    def active_passes_inc(self, provider: str) -> None:
        self._active.add(1, {"provider": provider})

    def active_passes_dec(self, provider: str) -> None:
        self._active.add(-1, {"provider": provider})

    def record_pass(self, provider: str, status: str, duration_ms: float) -> None:
        self._counter(
            "calsync.sync.passes_total", "Finished calendar sync passes", "passes"
        ).add(1, {"provider": provider, "status": status})
        self._duration.record(duration_ms, {"provider": provider})

    def record_mutations(self, provider: str, kind: str, count: int) -> None:
        if count <= 0:
            return
        self._counter(
            "calsync.sync.mutations_total", "Event writes applied by sync passes", "events"
        ).add(count, {"provider": provider, "kind": kind})

    def record_conflicts(self, provider: str, count: int) -> None:
        if count <= 0:
            return
        self._counter(
            "calsync.sync.conflicts_total", "Conflict records detected", "conflicts"
        ).add(count, {"provider": provider})

    # -- resilience / tokens -------------------------------------------------

    def record_retry(self, provider: str, operation: str) -> None:
        self._counter(
            "calsync.resilience.retries_total", "Retry attempts scheduled", "retries"
        ).add(1, {"provider": provider, "operation": operation})

    def record_circuit_transition(self, provider: str, state: str) -> None:
        self._counter(
            "calsync.resilience.circuit_transitions_total",
            "Circuit breaker state changes",
            "transitions",
        ).add(1, {"provider": provider, "state": state})

    def record_token_refresh(self, provider: str, outcome: str) -> None:
        self._counter(
            "calsync.tokens.refresh_total", "OAuth token refresh exchanges", "refreshes"
        ).add(1, {"provider": provider, "outcome": outcome})
