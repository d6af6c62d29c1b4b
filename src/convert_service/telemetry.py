"""Telemetry sink backed by ``prometheus_client``.

The pipeline emits named events (see the constants below); this module maps
them onto predeclared Prometheus metrics. Emission is fire-and-forget: the
pipeline goes through ``best_effort`` so a broken sink never fails a request.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- A registry is kept per sink instance (inject one for testing)
- Optional Pushgateway export runs as a background task
"""

import asyncio
from typing import Any, Callable, Mapping, Optional

import psutil
import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest, push_to_gateway

logger = structlog.get_logger(__name__)

REQUESTS_RECEIVED = "requests_received"
REQUESTS_IN_FLIGHT = "requests_in_flight"
CONVERSION_SUCCESS = "conversions_success"
CONVERSION_FAILURE = "conversions_failure"
CONVERSION_DURATION = "conversion_duration_seconds"
REQUEST_DURATION = "request_duration_seconds"
PROCESS_MEMORY = "process_memory_bytes"
ACTIVE_CONVERSIONS = "active_conversions"

DURATION_BUCKETS = (0.005, 0.01, 0.05, 0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600)


def best_effort(action: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    """Run a non-critical side effect.

    Exceptions are logged at warning level and never propagated; callers use
    this for telemetry, never for anything a request depends on.
    """
    try:
        fn(*args, **kwargs)
    except Exception as exc:
        logger.warning("side_effect.failed", action=action, error=str(exc))


class NullTelemetry:
    """Sink that drops every event."""

    def counter_inc(self, name: str, value: float = 1, labels: Mapping[str, str] | None = None) -> None:
        pass

    def gauge_inc(self, name: str, value: float = 1, labels: Mapping[str, str] | None = None) -> None:
        pass

    def gauge_dec(self, name: str, value: float = 1, labels: Mapping[str, str] | None = None) -> None:
        pass

    def gauge_set(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None:
        pass

    def histogram_observe(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None:
        pass


class PrometheusTelemetry:
    """Prometheus-backed telemetry sink.

    Parameters
    - namespace: metric name prefix
    - registry: optional custom ``CollectorRegistry`` (e.g. for testing)
    """

    def __init__(self, namespace: str = "convert", registry: Optional[CollectorRegistry] = None) -> None:
        self.namespace = namespace
        self.registry = registry or CollectorRegistry()

        self.counters: dict[str, Counter] = {
            REQUESTS_RECEIVED: Counter(
                "requests_received", "Conversion requests received", ["endpoint"],
                namespace=namespace, registry=self.registry,
            ),
            CONVERSION_SUCCESS: Counter(
                "conversions_success", "Conversions that produced an artifact", ["endpoint"],
                namespace=namespace, registry=self.registry,
            ),
            CONVERSION_FAILURE: Counter(
                "conversions_failure", "Conversions that failed or timed out", ["endpoint"],
                namespace=namespace, registry=self.registry,
            ),
        }
        self.gauges: dict[str, Gauge] = {
            REQUESTS_IN_FLIGHT: Gauge(
                "requests_in_flight", "Requests currently being orchestrated", ["endpoint"],
                namespace=namespace, registry=self.registry,
            ),
            PROCESS_MEMORY: Gauge(
                "process_memory_bytes", "Resident memory of the service process", ["endpoint"],
                namespace=namespace, registry=self.registry,
            ),
            ACTIVE_CONVERSIONS: Gauge(
                "active_conversions", "Live converter subprocesses", ["endpoint"],
                namespace=namespace, registry=self.registry,
            ),
        }
        self.histograms: dict[str, Histogram] = {
            CONVERSION_DURATION: Histogram(
                "conversion_duration_seconds", "Converter run time", ["endpoint"],
                namespace=namespace, registry=self.registry, buckets=DURATION_BUCKETS,
            ),
            REQUEST_DURATION: Histogram(
                "request_duration_seconds", "End-to-end request orchestration time", ["endpoint"],
                namespace=namespace, registry=self.registry, buckets=DURATION_BUCKETS,
            ),
        }

    @staticmethod
    def _endpoint(labels: Mapping[str, str] | None) -> str:
        return (labels or {}).get("endpoint", "")

    def counter_inc(self, name: str, value: float = 1, labels: Mapping[str, str] | None = None) -> None:
        self.counters[name].labels(endpoint=self._endpoint(labels)).inc(value)

    def gauge_inc(self, name: str, value: float = 1, labels: Mapping[str, str] | None = None) -> None:
        self.gauges[name].labels(endpoint=self._endpoint(labels)).inc(value)

    def gauge_dec(self, name: str, value: float = 1, labels: Mapping[str, str] | None = None) -> None:
        self.gauges[name].labels(endpoint=self._endpoint(labels)).dec(value)

    def gauge_set(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None:
        self.gauges[name].labels(endpoint=self._endpoint(labels)).set(value)

    def histogram_observe(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None:
        self.histograms[name].labels(endpoint=self._endpoint(labels)).observe(value)

    def sample_process_memory(self, labels: Mapping[str, str] | None = None) -> None:
        self.gauge_set(PROCESS_MEMORY, psutil.Process().memory_info().rss, labels)

    def render(self) -> bytes:
        """Metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry)


class MetricsPusher:
    """Periodically pushes a registry to a Prometheus Pushgateway.

    Push failures are logged and otherwise ignored.
    """

    def __init__(
        self,
        registry: CollectorRegistry,
        gateway: str,
        job: str,
        instance: str,
        *,
        interval_seconds: float = 15.0,
        final_push_timeout: float = 8.0,
    ) -> None:
        self.registry = registry
        self.gateway = gateway.rstrip("/")
        self.job = job
        self.instance = instance
        self.interval_seconds = interval_seconds
        self.final_push_timeout = final_push_timeout
        self._task: asyncio.Task | None = None

    def _push_blocking(self) -> None:
        push_to_gateway(self.gateway, job=self.job, registry=self.registry, grouping_key={"instance": self.instance})

    async def push_once(self) -> None:
        try:
            await asyncio.to_thread(self._push_blocking)
        except Exception as exc:
            logger.warning("metrics.push_failed", gateway=self.gateway, error=str(exc))

    async def _loop(self) -> None:
        while True:
            await self.push_once()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())
            logger.info("metrics.push_started", gateway=self.gateway, job=self.job)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        try:
            await asyncio.wait_for(self.push_once(), self.final_push_timeout)
        except asyncio.TimeoutError:
            logger.warning("metrics.final_push_timeout", timeout=self.final_push_timeout)
