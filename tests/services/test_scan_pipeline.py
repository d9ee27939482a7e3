from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from app.clients.ai_gateway import AIGatewayError, AIGatewayTimeoutError
from app.config import Settings
from app.models.scan import Scan, ScanReport, ScanStatus, SourceKind
from app.services.scan import pipeline as pipeline_module
from app.services.scan.aggregator import SourceAggregator
from app.services.scan.errors import (
    InvalidRequestError,
    PersistenceFailureError,
    ScanAlreadyProcessedError,
    ScanNotFoundError,
    ServiceUnavailableError,
)
from app.services.scan.extractor import FingerprintExtractor
from app.services.scan.pipeline import PipelineConfig, ScanPipeline, build_sources
from app.services.scan.repositories import InMemoryScanRepository, SqlScanRepository
from app.services.scan.scorer import LexicalScorer, VectorScorer
from app.services.scan.sources import AIDiscoverySource, PatentRegistrySource
from tests.helpers.fakes import (
    StaticSource,
    StubChatClient,
    StubEmbedder,
    StubPatentClient,
    discovery_payload,
    make_candidate,
    patent_hit,
)
from tests.helpers.metrics_stub import StubMetrics

IRRIGATION_TEXT = "smart irrigation controller using soil moisture sensors"


@pytest.fixture(autouse=True)
def stub_metrics(monkeypatch) -> StubMetrics:
    stub = StubMetrics()
    monkeypatch.setattr(pipeline_module, "metrics", stub)
    return stub


def _pipeline(
    sources,
    *,
    chat: StubChatClient | None = None,
    repository: InMemoryScanRepository | None = None,
    scorer=None,
    config: PipelineConfig | None = None,
) -> ScanPipeline:
    chat = chat or StubChatClient(keywords=["irrigation", "soil moisture", "controller"])
    return ScanPipeline(
        repository=repository or InMemoryScanRepository(),
        extractor=FingerprintExtractor(chat, timeout_seconds=1.0),
        aggregator=SourceAggregator(sources, per_source_limit=5, timeout_seconds=1.0),
        scorer=scorer or LexicalScorer(jitter=0),
        config=config,
    )


def _create(pipeline: ScanPipeline, text: str = IRRIGATION_TEXT) -> Scan:
    return pipeline.repository.create_scan(Scan(text_input=text))


def _irrigation_sources(chat: StubChatClient):
    patents = PatentRegistrySource(
        StubPatentClient(
            hits=[
                patent_hit("10001", "Irrigation controller", "Soil moisture driven valve control."),
                patent_hit("10002", "Greenhouse misting system"),
            ]
        )
    )
    startups = AIDiscoverySource(chat, kind=SourceKind.STARTUP)
    failing = StaticSource("ai_research", error=AIGatewayTimeoutError())
    return [patents, startups, failing]


def _startup_responder(prompt: str) -> str:
    return discovery_payload(
        {"name": "SoilSense", "snippet": "Soil moisture irrigation controller.", "url": "https://soilsense.example.com"},
        {"name": "RainLogic", "snippet": "Weather-aware sprinklers.", "url": "https://rainlogic.example.com"},
        {"name": "AgroPulse", "snippet": "Crop analytics.", "url": "https://agropulse.example.com"},
    )


@pytest.mark.asyncio
async def test_irrigation_scan_completes_with_ranked_results(stub_metrics):
    chat = StubChatClient(
        keywords=["irrigation", "soil moisture", "controller"], responder=_startup_responder
    )
    pipeline = _pipeline(_irrigation_sources(chat), chat=chat, config=PipelineConfig(score_jitter=0))
    scan = _create(pipeline)

    report = await pipeline.process(str(scan.id))

    assert report.success is True
    assert report.status is ScanStatus.COMPLETED
    results = pipeline.repository.list_results(scan.id)
    assert report.results_count == len(results) == 5
    assert pipeline.repository.get_scan(scan.id).status is ScanStatus.COMPLETED
    scores = [result.similarity_score for result in results]
    assert scores == sorted(scores, reverse=True)
    assert all(30 <= score <= 95 for score in scores)
    assert results[0].title == "Irrigation controller"
    assert [result.rank for result in results] == list(range(5))
    assert all(result.url.startswith("https://") for result in results)
    assert "scan.pipeline.latency_ms" in stub_metrics.metric_names()


@pytest.mark.asyncio
async def test_all_sources_failing_completes_with_zero_results():
    sources = [
        StaticSource("patent_registry", error=RuntimeError("down")),
        StaticSource("ai_startup", error=AIGatewayError("down")),
    ]
    pipeline = _pipeline(sources)
    scan = _create(pipeline)

    report = await pipeline.process(scan.id)

    assert report.status is ScanStatus.COMPLETED
    assert report.results_count == 0
    assert pipeline.repository.list_results(scan.id) == []


@pytest.mark.asyncio
async def test_extraction_failure_marks_scan_failed(stub_metrics):
    source = StaticSource("ai_startup", [make_candidate("Irrigation kit")])
    chat = StubChatClient(keyword_error=AIGatewayTimeoutError())
    pipeline = _pipeline([source], chat=chat)
    scan = _create(pipeline)

    with pytest.raises(ServiceUnavailableError):
        await pipeline.process(scan.id)

    assert pipeline.repository.get_scan(scan.id).status is ScanStatus.FAILED
    assert pipeline.repository.list_results(scan.id) == []
    assert source.calls == 0
    errors = [call for call in stub_metrics.increment_calls if call["metric"] == "scan.pipeline.errors"]
    assert errors[0]["tags"]["code"] == "502_EXTRACTION_UNAVAILABLE"


@pytest.mark.asyncio
async def test_empty_text_is_rejected_without_contacting_sources():
    source = StaticSource("ai_startup", [make_candidate("Irrigation kit")])
    chat = StubChatClient()
    pipeline = _pipeline([source], chat=chat)
    scan = _create(pipeline, text="   ")

    with pytest.raises(InvalidRequestError):
        await pipeline.process(scan.id)

    assert source.calls == 0
    assert chat.prompts == []
    assert pipeline.repository.get_scan(scan.id).status is ScanStatus.PROCESSING


@pytest.mark.asyncio
@pytest.mark.parametrize("scan_id", [None, "", "not-a-uuid"])
async def test_missing_or_malformed_id_is_invalid_request(scan_id):
    with pytest.raises(InvalidRequestError) as excinfo:
        await _pipeline([]).process(scan_id)
    assert excinfo.value.code == "422_INVALID_REQUEST"


@pytest.mark.asyncio
async def test_unknown_scan_is_not_found():
    with pytest.raises(ScanNotFoundError):
        await _pipeline([]).process(uuid4())


@pytest.mark.asyncio
async def test_terminal_scan_is_not_reprocessed():
    source = StaticSource("ai_startup", [make_candidate("Irrigation kit")])
    pipeline = _pipeline([source])
    scan = _create(pipeline)
    await pipeline.process(scan.id)

    with pytest.raises(ScanAlreadyProcessedError) as excinfo:
        await pipeline.process(scan.id)

    assert excinfo.value.code == "409_SCAN_ALREADY_PROCESSED"
    assert source.calls == 1
    assert len(pipeline.repository.list_results(scan.id)) == 1


@pytest.mark.asyncio
async def test_concurrent_invocations_process_once():
    source = StaticSource("ai_startup", [make_candidate("Irrigation kit")], delay=0.05)
    pipeline = _pipeline([source])
    scan = _create(pipeline)

    outcomes = await asyncio.gather(
        pipeline.process(scan.id), pipeline.process(scan.id), return_exceptions=True
    )

    rejected = [outcome for outcome in outcomes if isinstance(outcome, ScanAlreadyProcessedError)]
    assert len(rejected) == 1
    assert source.calls == 1
    assert len(pipeline.repository.list_results(scan.id)) == 1


@pytest.mark.asyncio
async def test_persistence_failure_marks_scan_failed():
    class FailingRepository(InMemoryScanRepository):
        def complete_scan(self, scan_id, results):
            raise PersistenceFailureError("disk full")

    repository = FailingRepository()
    pipeline = _pipeline(
        [StaticSource("ai_startup", [make_candidate("Irrigation kit")])], repository=repository
    )
    scan = _create(pipeline)

    with pytest.raises(PersistenceFailureError):
        await pipeline.process(scan.id)

    assert repository.get_scan(scan.id).status is ScanStatus.FAILED


@pytest.mark.asyncio
async def test_second_worker_does_not_fail_a_completed_scan():
    repository = InMemoryScanRepository()
    first = _pipeline(
        [StaticSource("ai_startup", [make_candidate("Irrigation kit")], delay=0.05)],
        repository=repository,
    )
    second = _pipeline(
        [StaticSource("ai_startup", [make_candidate("Drip valve")], delay=0.05)],
        repository=repository,
    )
    scan = _create(first)

    outcomes = await asyncio.gather(
        first.process(scan.id), second.process(scan.id), return_exceptions=True
    )

    reports = [outcome for outcome in outcomes if isinstance(outcome, ScanReport)]
    conflicts = [outcome for outcome in outcomes if isinstance(outcome, PersistenceFailureError)]
    assert len(reports) == 1
    assert [conflict.code for conflict in conflicts] == ["409_RESULTS_ALREADY_PERSISTED"]
    assert repository.get_scan(scan.id).status is ScanStatus.COMPLETED
    assert len(repository.list_results(scan.id)) == 1


@pytest.mark.asyncio
async def test_failed_completion_commit_leaves_no_results(tmp_path, monkeypatch):
    repository = SqlScanRepository(f"sqlite:///{tmp_path / 'scans.db'}", auto_create_schema=True)
    transition = SqlScanRepository._transition

    def failing_transition(session, scan_id, status):
        if status is ScanStatus.COMPLETED:
            raise OperationalError("UPDATE scans", {}, Exception("database is locked"))
        return transition(session, scan_id, status)

    monkeypatch.setattr(SqlScanRepository, "_transition", staticmethod(failing_transition))
    pipeline = _pipeline(
        [StaticSource("ai_startup", [make_candidate("Irrigation kit")])], repository=repository
    )
    scan = _create(pipeline)

    try:
        with pytest.raises(PersistenceFailureError):
            await pipeline.process(scan.id)

        assert repository.get_scan(scan.id).status is ScanStatus.FAILED
        assert repository.list_results(scan.id) == []
    finally:
        repository.dispose()


@pytest.mark.asyncio
async def test_vector_strategy_caches_scan_embedding():
    chat = StubChatClient(embedding=[1.0, 0.0])
    embedder = StubEmbedder({"Irrigation": [1.0, 0.0]}, default=[0.0, 1.0])
    pipeline = _pipeline(
        [StaticSource("ai_startup", [make_candidate("Irrigation kit"), make_candidate("Drone")])],
        chat=chat,
        scorer=VectorScorer(embedder, concurrency=2),
        config=PipelineConfig(scoring_strategy="vector"),
    )
    scan = _create(pipeline)

    report = await pipeline.process(scan.id)

    assert report.results_count == 2
    assert pipeline.repository.get_scan(scan.id).text_embedding == [1.0, 0.0]
    results = pipeline.repository.list_results(scan.id)
    assert [result.title for result in results] == ["Irrigation kit", "Drone"]
    assert results[0].similarity_score == 100.0


def test_pipeline_config_validation():
    with pytest.raises(ValueError):
        PipelineConfig(scoring_strategy="random")
    with pytest.raises(ValueError):
        PipelineConfig(snippet_max_length=501)
    assert PipelineConfig(scoring_strategy="vector").uses_embeddings is True


def test_build_sources_skips_patent_registry_without_key():
    source = Settings(
        ai_gateway_api_key="test-key",
        patent_registry_api_key=None,
        scan_discovery_kinds=["startup", "news"],
    )

    sources = build_sources(PipelineConfig.from_settings(source), source)

    assert [entry.name for entry in sources] == ["ai_startup", "ai_news"]


def test_build_sources_includes_patent_registry_with_key():
    source = Settings(ai_gateway_api_key="test-key", patent_registry_api_key="registry-key")

    sources = build_sources(PipelineConfig.from_settings(source), source)

    assert sources[0].name == "patent_registry"
    assert len(sources) == 1 + len(source.scan_discovery_kinds)
