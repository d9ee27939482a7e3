from __future__ import annotations

import logging
from uuid import uuid4

import pytest

from app.api.routes import scans as scans_routes
from app.models.scan import Scan, ScanStatus
from app.services.scan.errors import ServiceUnavailableError


def test_create_scan_runs_pipeline_in_background(client, override_pipeline):
    response = client.post("/api/scans", json={"text_input": "  Solar irrigation with soil sensors "})

    assert response.status_code == 202
    created = response.json()
    assert created["status"] == "processing"
    assert created["text_input"] == "Solar irrigation with soil sensors"
    assert "text_embedding" not in created

    fetched = client.get(f"/api/scans/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["status"] == "completed"

    results = client.get(f"/api/scans/{created['id']}/results").json()
    assert [result["rank"] for result in results] == [0, 1]
    assert results[0]["title"] == "Solar irrigation kit"
    assert results[0]["similarity_score"] >= results[1]["similarity_score"]


def test_create_scan_rejects_blank_text(client, override_pipeline):
    response = client.post("/api/scans", json={"text_input": "   "})

    assert response.status_code == 422
    assert response.json() == {"error": "text_input must be non-empty.", "code": "422_INVALID_REQUEST"}


def test_process_endpoint_returns_report(client, override_pipeline):
    scan = override_pipeline.repository.create_scan(Scan(text_input="Solar irrigation"))

    response = client.post("/api/scans/process", json={"scan_id": str(scan.id)})

    assert response.status_code == 200
    body = response.json()
    assert body == {
        "success": True,
        "scan_id": str(scan.id),
        "status": "completed",
        "results_count": 2,
    }

    again = client.post("/api/scans/process", json={"scan_id": str(scan.id)})
    assert again.status_code == 409
    assert again.json()["code"] == "409_SCAN_ALREADY_PROCESSED"


def test_process_endpoint_error_bodies(client, override_pipeline):
    missing_id = client.post("/api/scans/process", json={})
    assert missing_id.status_code == 422
    assert missing_id.json()["code"] == "422_INVALID_REQUEST"

    unknown = client.post("/api/scans/process", json={"scan_id": str(uuid4())})
    assert unknown.status_code == 404
    assert unknown.json()["code"] == "404_SCAN_NOT_FOUND"


def test_process_endpoint_reports_failed_scan(client, override_pipeline, monkeypatch):
    async def unavailable(*args, **kwargs):
        raise ServiceUnavailableError("gateway down")

    monkeypatch.setattr(override_pipeline._extractor, "extract", unavailable)
    scan = override_pipeline.repository.create_scan(Scan(text_input="Solar irrigation"))

    response = client.post("/api/scans/process", json={"scan_id": str(scan.id)})

    assert response.status_code == 502
    assert response.json() == {"error": "gateway down", "code": "502_EXTRACTION_UNAVAILABLE"}
    assert override_pipeline.repository.get_scan(scan.id).status is ScanStatus.FAILED


def test_unknown_scan_returns_404(client, override_pipeline):
    scan_id = uuid4()

    assert client.get(f"/api/scans/{scan_id}").status_code == 404
    response = client.get(f"/api/scans/{scan_id}/results")
    assert response.status_code == 404
    assert response.json()["code"] == "404_SCAN_NOT_FOUND"


@pytest.mark.asyncio
async def test_background_run_logs_unexpected_errors(scan_pipeline, monkeypatch, caplog):
    async def crash(*args, **kwargs):
        raise KeyError("fingerprint")

    monkeypatch.setattr(scan_pipeline._extractor, "extract", crash)
    scan = scan_pipeline.repository.create_scan(Scan(text_input="Solar irrigation"))

    with caplog.at_level(logging.ERROR, logger=scans_routes.logger.name):
        await scans_routes._process_in_background(scan_pipeline, scan.id)

    failures = [record for record in caplog.records if record.getMessage() == "scan.api.background_failed"]
    assert len(failures) == 1
    assert failures[0].code == "500_INTERNAL"
    assert scan_pipeline.repository.get_scan(scan.id).status is ScanStatus.FAILED
