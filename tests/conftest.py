import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.services.scan.aggregator import SourceAggregator
from app.services.scan.extractor import FingerprintExtractor
from app.services.scan.pipeline import ScanPipeline, get_scan_pipeline, get_scan_repository
from app.services.scan.repositories import InMemoryScanRepository
from app.services.scan.scorer import LexicalScorer
from tests.helpers.fakes import StaticSource, StubChatClient, make_candidate


class _SyncASGIClient:
    """Minimal synchronous wrapper around httpx.AsyncClient for ASGI apps."""

    def __init__(self, app):
        transport = httpx.ASGITransport(app=app)
        self._client = httpx.AsyncClient(transport=transport, base_url="http://testserver")

    def request(self, method: str, url: str, **kwargs):
        return asyncio.run(self._client.request(method, url, **kwargs))

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        asyncio.run(self._client.aclose())


@pytest.fixture
def client():
    """Create test client compatible with older/newer httpx releases."""
    try:
        test_client = TestClient(app)
        yield test_client
    except TypeError:
        fallback_client = _SyncASGIClient(app)
        try:
            yield fallback_client
        finally:
            fallback_client.close()


@pytest.fixture
def scan_pipeline() -> ScanPipeline:
    """In-memory pipeline with one deterministic discovery source."""
    source = StaticSource(
        "ai_startup",
        [
            make_candidate("Solar irrigation kit", snippet="Solar powered drip irrigation."),
            make_candidate("Sensor hub", snippet="Soil sensor gateway."),
        ],
    )
    return ScanPipeline(
        repository=InMemoryScanRepository(),
        extractor=FingerprintExtractor(StubChatClient()),
        aggregator=SourceAggregator([source]),
        scorer=LexicalScorer(jitter=0),
    )


@pytest.fixture
def override_pipeline(scan_pipeline):
    app.dependency_overrides[get_scan_pipeline] = lambda: scan_pipeline
    app.dependency_overrides[get_scan_repository] = lambda: scan_pipeline.repository
    try:
        yield scan_pipeline
    finally:
        app.dependency_overrides.pop(get_scan_pipeline, None)
        app.dependency_overrides.pop(get_scan_repository, None)
