"""Metrics emission for scan processing (structured log lines, optional StatsD)."""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from app.config import Settings, settings

try:  # pragma: no cover - optional dependency
    from statsd import StatsClient
except Exception:  # pragma: no cover - optional dependency guard
    StatsClient = None  # type: ignore[assignment]

logger = logging.getLogger("app.metrics")

Tags = dict[str, Any]


class MetricsReporter:
    """Emits counters, gauges and timings for the scan pipeline.

    Every metric is logged as an ``idea_scan.metric`` event carrying its tags.
    When the StatsD backend is selected the metric is also forwarded, with the
    tag values folded into the metric path since plain StatsD has no tags.
    """

    def __init__(self, source: Settings | None = None) -> None:
        source = source or settings
        self._disabled = source.metrics_disable
        self._namespace = (source.metrics_namespace or "idea_scan").strip(".")
        self._backend = (source.metrics_backend or "stdout").lower()
        self._sample_rate = max(0.0, min(source.metrics_sample_rate, 1.0))
        self._statsd: StatsClient | None = None
        if self._backend != "statsd" or self._disabled:
            return
        if StatsClient is None:
            logger.warning("metrics.statsd_unavailable")
            return
        try:
            self._statsd = StatsClient(
                host=source.metrics_statsd_host,
                port=source.metrics_statsd_port,
                prefix=self._namespace,
            )
        except Exception as exc:  # pragma: no cover - socket setup failure
            self._report_backend_error("statsd.init", exc)

    def increment(self, metric: str, value: float = 1.0, *, tags: Tags | None = None) -> None:
        self._emit("counter", metric, value, tags)

    def gauge(self, metric: str, value: float, *, tags: Tags | None = None) -> None:
        self._emit("gauge", metric, value, tags)

    def timing(self, metric: str, value_ms: float, *, tags: Tags | None = None) -> None:
        self._emit("timing", metric, value_ms, tags)

    @contextmanager
    def timer(self, metric: str, *, tags: Tags | None = None) -> Iterator[None]:
        """Record the wall-clock duration of the block in milliseconds, even on error."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timing(metric, (time.perf_counter() - start) * 1000, tags=tags)

    def _emit(self, kind: str, metric: str, value: float | None, tags: Tags | None) -> None:
        if self._disabled or value is None:
            return
        rate = 1.0 if kind == "gauge" else self._sample_rate
        if rate < 1.0 and secrets.randbelow(1_000_000) / 1_000_000 > rate:
            return

        name = metric.strip().strip(".")
        logger.info(
            "idea_scan.metric",
            extra={
                "metrics": {
                    "metric": f"{self._namespace}.{name}",
                    "type": kind,
                    "value": round(float(value), 4),
                    "tags": dict(tags or {}),
                    "sample_rate": rate,
                }
            },
        )
        if self._statsd is None:
            return
        path = _statsd_path(name, tags)
        try:
            if kind == "timing":
                self._statsd.timing(path, value, rate=rate)
            elif kind == "gauge":
                self._statsd.gauge(path, value)
            else:
                self._statsd.incr(path, int(value), rate=rate)
        except Exception as exc:  # pragma: no cover - UDP send failure
            self._report_backend_error(path, exc)

    def _report_backend_error(self, metric: str, exc: Exception) -> None:
        logger.warning(
            "metrics.backend_error",
            extra={"metric": metric, "backend": self._backend, "error": type(exc).__name__},
        )


def _statsd_path(name: str, tags: Tags | None) -> str:
    if not tags:
        return name
    suffix = ".".join(
        f"{key}_{str(value).replace('.', '_').replace(' ', '_')}" for key, value in sorted(tags.items())
    )
    return f"{name}.{suffix}"


metrics = MetricsReporter()
