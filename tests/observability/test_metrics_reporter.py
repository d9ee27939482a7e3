from __future__ import annotations

import logging

import pytest

from app.config import Settings
from app.observability import metrics as metrics_module
from app.observability.metrics import MetricsReporter


class _RecordingStatsClient:
    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.calls: list[tuple] = []

    def timing(self, name, value, rate=1):
        self.calls.append(("timing", name, value))

    def gauge(self, name, value):
        self.calls.append(("gauge", name, value))

    def incr(self, name, value=1, rate=1):
        self.calls.append(("incr", name, value))


@pytest.fixture
def statsd_reporter(monkeypatch) -> MetricsReporter:
    clients: list[_RecordingStatsClient] = []

    def factory(**kwargs):
        client = _RecordingStatsClient(**kwargs)
        clients.append(client)
        return client

    monkeypatch.setattr(metrics_module, "StatsClient", factory)
    reporter = MetricsReporter(Settings(metrics_backend="statsd", metrics_namespace="scan_test"))
    reporter.client = clients[0]
    return reporter


def test_metric_is_logged_with_namespace_and_tags(caplog):
    reporter = MetricsReporter(Settings(metrics_namespace="scan_test"))

    with caplog.at_level(logging.INFO, logger="app.metrics"):
        reporter.increment("scan.source.errors", tags={"source": "ai_news"})

    payload = caplog.records[-1].metrics
    assert payload["metric"] == "scan_test.scan.source.errors"
    assert payload["type"] == "counter"
    assert payload["tags"] == {"source": "ai_news"}


def test_disabled_reporter_emits_nothing(caplog):
    reporter = MetricsReporter(Settings(metrics_disable=True))

    with caplog.at_level(logging.INFO, logger="app.metrics"):
        reporter.gauge("scan.queue.depth", 3)

    assert caplog.records == []


def test_statsd_paths_fold_tags(statsd_reporter):
    statsd_reporter.increment("scan.source.errors", tags={"source": "ai_news", "code": "SOURCE_TIMEOUT"})

    client = statsd_reporter.client
    assert client.kwargs["prefix"] == "scan_test"
    assert client.calls == [("incr", "scan.source.errors.code_SOURCE_TIMEOUT.source_ai_news", 1)]


def test_timer_records_duration_even_on_error(statsd_reporter):
    with pytest.raises(RuntimeError):
        with statsd_reporter.timer("scan.pipeline.latency_ms", tags={"strategy": "lexical"}):
            raise RuntimeError("boom")

    kind, name, value = statsd_reporter.client.calls[0]
    assert (kind, name) == ("timing", "scan.pipeline.latency_ms.strategy_lexical")
    assert value >= 0
