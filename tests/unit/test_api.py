"""Tests for the HTTP API (FastAPI TestClient, real SQLite)."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from leadpipe.api.app import create_app
from leadpipe.core.config import Settings
from leadpipe.core.db import (
    create_job,
    get_enrichment,
    get_job,
    get_qualification_results,
    init_db,
    insert_profile,
    insert_rubric,
)
from leadpipe.core.schemas import JobRequest, JobState, PdlEnrichmentResult, SweepResult

KEY = {"X-Internal-Key": "secret"}


@pytest.fixture()
def db(tmp_path):  # type: ignore[no-untyped-def]
    return init_db(tmp_path / "api.db", check_same_thread=False)


@pytest.fixture()
def client(db):  # type: ignore[no-untyped-def]
    with patch.dict("os.environ", {"INTERNAL_API_KEY": "secret"}):
        yield TestClient(create_app(db, Settings()))


def _job(db, job_id: str = "job-1") -> None:  # type: ignore[no-untyped-def]
    create_job(
        db,
        JobRequest(
            job_id=job_id,
            profile_ids=[1],
            profile_urls=["https://linkedin.com/in/jane"],
            organization_id="org-1",
        ),
    )


class TestPublicRoutes:
    def test_health(self, client) -> None:  # type: ignore[no-untyped-def]
        assert client.get("/health").json() == {"status": "ok"}

    def test_enrich_queues_job(self, db, client) -> None:  # type: ignore[no-untyped-def]
        a = insert_profile(db, "org-1", "https://linkedin.com/in/a")
        resp = client.post(
            "/api/enrichment/enrich",
            json={"profileIds": [a], "organizationId": "org-1", "jobId": "job-42"},
        )
        assert resp.status_code == 202
        assert resp.json() == {"success": True, "data": {"jobId": "job-42"}}
        job = get_job(db, "job-42")
        assert job is not None and job.profile_urls == ["https://linkedin.com/in/a"]
        assert db.execute("SELECT COUNT(*) FROM job_messages").fetchone()[0] == 1

    def test_enrich_unknown_profile(self, client) -> None:  # type: ignore[no-untyped-def]
        resp = client.post(
            "/api/enrichment/enrich", json={"profileIds": [999], "organizationId": "org-1"}
        )
        assert resp.status_code == 404
        assert "999" in resp.json()["detail"]

    def test_enrich_rubric_of_other_org(self, db, client) -> None:  # type: ignore[no-untyped-def]
        a = insert_profile(db, "org-1", "https://linkedin.com/in/a")
        rid = insert_rubric(db, "org-2", "Theirs")
        resp = client.post(
            "/api/enrichment/enrich",
            json={"profileIds": [a], "organizationId": "org-1", "qualificationId": rid},
        )
        assert resp.status_code == 404

    def test_enrich_requires_profiles(self, client) -> None:  # type: ignore[no-untyped-def]
        resp = client.post(
            "/api/enrichment/enrich", json={"profileIds": [], "organizationId": "org-1"}
        )
        assert resp.status_code == 422

    def test_read_job(self, db, client) -> None:  # type: ignore[no-untyped-def]
        _job(db)
        data = client.get("/api/jobs/job-1").json()["data"]
        assert data["state"] == "pending"
        assert data["coverage"] is None

    def test_read_job_missing(self, client) -> None:  # type: ignore[no-untyped-def]
        assert client.get("/api/jobs/nope").status_code == 404

    def test_read_enrichment_empty(self, client) -> None:  # type: ignore[no-untyped-def]
        assert client.get("/api/enrichment/profiles/1").json() == {"success": True, "data": None}


class TestInternalAuth:
    def test_missing_key(self, client) -> None:  # type: ignore[no-untyped-def]
        assert client.post("/api/internal/jobs/complete", json={"jobId": "x"}).status_code == 401

    def test_wrong_key(self, client) -> None:  # type: ignore[no-untyped-def]
        resp = client.post(
            "/api/internal/jobs/complete",
            json={"jobId": "x"},
            headers={"X-Internal-Key": "guess"},
        )
        assert resp.status_code == 401

    def test_key_not_configured(self, db) -> None:  # type: ignore[no-untyped-def]
        with patch.dict("os.environ", {}, clear=True):
            client = TestClient(create_app(db, Settings()))
            resp = client.post("/api/internal/jobs/complete", json={"jobId": "x"}, headers=KEY)
        assert resp.status_code == 503


class TestInternalJobRoutes:
    def test_status_update_records_snapshot(self, db, client) -> None:  # type: ignore[no-untyped-def]
        _job(db)
        resp = client.post(
            "/api/internal/jobs/status",
            json={"jobId": "job-1", "status": "scraping", "snapshotId": "s_9"},
            headers=KEY,
        )
        assert resp.status_code == 200
        job = get_job(db, "job-1")
        assert job is not None
        assert job.state is JobState.SCRAPING
        assert job.snapshot_id == "s_9"

    def test_backward_status_conflict(self, db, client) -> None:  # type: ignore[no-untyped-def]
        _job(db)
        for status in ("scraping", "enriching"):
            client.post(
                "/api/internal/jobs/status", json={"jobId": "job-1", "status": status}, headers=KEY
            )
        resp = client.post(
            "/api/internal/jobs/status", json={"jobId": "job-1", "status": "scraping"}, headers=KEY
        )
        assert resp.status_code == 409

    def test_status_unknown_job(self, client) -> None:  # type: ignore[no-untyped-def]
        resp = client.post(
            "/api/internal/jobs/status", json={"jobId": "nope", "status": "scraping"}, headers=KEY
        )
        assert resp.status_code == 404

    def test_complete(self, db, client) -> None:  # type: ignore[no-untyped-def]
        _job(db)
        for status in ("scraping", "enriching"):
            client.post(
                "/api/internal/jobs/status", json={"jobId": "job-1", "status": status}, headers=KEY
            )
        resp = client.post("/api/internal/jobs/complete", json={"jobId": "job-1"}, headers=KEY)
        assert resp.status_code == 200
        job = get_job(db, "job-1")
        assert job is not None and job.state is JobState.COMPLETED

    def test_complete_from_pending_conflicts(self, db, client) -> None:  # type: ignore[no-untyped-def]
        _job(db)
        resp = client.post("/api/internal/jobs/complete", json={"jobId": "job-1"}, headers=KEY)
        assert resp.status_code == 409


class TestInternalEnrichmentRoutes:
    def test_store_by_profile_id(self, db, client) -> None:  # type: ignore[no-untyped-def]
        pid = insert_profile(db, "org-1", "https://linkedin.com/in/jane")
        resp = client.post(
            "/api/internal/enrichments",
            json={"profileId": pid, "connectionCount": 321, "skills": ["Go"]},
            headers=KEY,
        )
        assert resp.status_code == 200
        e = get_enrichment(db, pid)
        assert e is not None
        assert e.connection_count == 321
        assert e.skills == ["Go"]

        data = client.get(f"/api/enrichment/profiles/{pid}").json()["data"]
        assert data["connection_count"] == 321

    def test_store_by_handle(self, db, client) -> None:  # type: ignore[no-untyped-def]
        a = insert_profile(db, "org-1", "https://linkedin.com/in/jane", handle="jane")
        b = insert_profile(db, "org-2", "https://linkedin.com/in/jane", handle="jane")
        resp = client.post(
            "/api/internal/enrichments/by-handle",
            json={"vanityName": "JANE", "about": "Hello"},
            headers=KEY,
        )
        assert resp.json() == {"success": True, "data": {"profilesUpdated": 2}}
        for pid in (a, b):
            e = get_enrichment(db, pid)
            assert e is not None and e.about == "Hello"

    def test_store_by_unknown_handle(self, client) -> None:  # type: ignore[no-untyped-def]
        resp = client.post(
            "/api/internal/enrichments/by-handle", json={"handle": "ghost"}, headers=KEY
        )
        assert resp.status_code == 404


class TestInternalQualificationRoutes:
    def test_result_normalized(self, db, client) -> None:  # type: ignore[no-untyped-def]
        pid = insert_profile(db, "org-1", "https://linkedin.com/in/jane")
        rid = insert_rubric(db, "org-1", "Senior")
        resp = client.post(
            "/api/internal/qualifications/result",
            json={
                "profileId": pid,
                "qualificationId": rid,
                "score": 85.7,
                "reasoning": "Strong",
                "passed": False,
            },
            headers=KEY,
        )
        assert resp.json()["data"] == {"score": 86, "reasoning": "Strong", "passed": True}
        results = get_qualification_results(db, pid)
        assert [(r.score, r.passed) for r in results] == [(86, True)]

        listed = client.get(f"/api/enrichment/profiles/{pid}/qualifications").json()["data"]
        assert listed[0]["qualification_id"] == rid

    def test_read_rubric(self, db, client) -> None:  # type: ignore[no-untyped-def]
        rid = insert_rubric(db, "org-1", "Senior", {"minConnections": 500})
        data = client.get(f"/api/internal/qualifications/{rid}", headers=KEY).json()["data"]
        assert data["name"] == "Senior"
        assert data["criteria"]["minConnections"] == 500

    def test_read_rubric_missing(self, client) -> None:  # type: ignore[no-untyped-def]
        assert client.get("/api/internal/qualifications/999", headers=KEY).status_code == 404


class TestInternalSweep:
    def test_unavailable_without_orchestrator(self, client) -> None:  # type: ignore[no-untyped-def]
        assert client.post("/api/internal/sweep", headers=KEY).status_code == 503

    def test_runs_sweep(self, db) -> None:  # type: ignore[no-untyped-def]
        orchestrator = MagicMock()
        orchestrator.sweep = AsyncMock(return_value=SweepResult(objects_seen=2, objects_processed=2))
        with patch.dict("os.environ", {"INTERNAL_API_KEY": "secret"}):
            client = TestClient(create_app(db, Settings(), orchestrator))
            resp = client.post("/api/internal/sweep", headers=KEY)
        assert resp.status_code == 200
        assert resp.json()["data"]["objects_processed"] == 2
        orchestrator.sweep.assert_awaited_once()


class TestInternalPdl:
    def test_unavailable_without_orchestrator(self, client) -> None:  # type: ignore[no-untyped-def]
        assert client.post("/api/internal/enrich-pdl", headers=KEY).status_code == 503

    def test_passes_limit(self, db) -> None:  # type: ignore[no-untyped-def]
        orchestrator = MagicMock()
        orchestrator.enrich_with_pdl = AsyncMock(
            return_value=PdlEnrichmentResult(attempted=3, enriched=2, not_found=1)
        )
        with patch.dict("os.environ", {"INTERNAL_API_KEY": "secret"}):
            client = TestClient(create_app(db, Settings(), orchestrator))
            resp = client.post("/api/internal/enrich-pdl?limit=3", headers=KEY)
        assert resp.status_code == 200
        assert resp.json()["data"]["enriched"] == 2
        orchestrator.enrich_with_pdl.assert_awaited_once_with(3)
