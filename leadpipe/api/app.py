"""HTTP surface: job/enrichment reads, enqueueing and internal worker callbacks.

Internal routes require the ``X-Internal-Key`` pre-shared secret.
Handlers are ``async`` so every SQLite call runs on the event loop thread.
"""

import hmac
import logging
import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from leadpipe.core.config import Settings
from leadpipe.core.db import (
    get_enrichment,
    get_job,
    get_qualification_results,
    get_rubric,
    upsert_qualification_result,
)
from leadpipe.core.errors import ConfigurationError, InvalidStateTransition
from leadpipe.core.schemas import EnrichmentAttributes, JobState, ScoringResult
from leadpipe.pipeline.enrichment_store import EnrichmentStore
from leadpipe.pipeline.orchestrator import EnrichmentOrchestrator
from leadpipe.pipeline.queue import JobQueue, request_for_profiles
from leadpipe.pipeline.state_machine import JobStateMachine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request bodies (camelCase on the wire)
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class EnrichRequest(_CamelModel):
    profile_ids: list[int] = Field(alias="profileIds", min_length=1)
    organization_id: str = Field(alias="organizationId")
    qualification_id: int | None = Field(default=None, alias="qualificationId")
    job_id: str | None = Field(default=None, alias="jobId")


class JobStatusUpdate(_CamelModel):
    job_id: str = Field(alias="jobId")
    status: JobState
    snapshot_id: str | None = Field(default=None, alias="snapshotId")
    error: str | None = None


class JobCompleteRequest(_CamelModel):
    job_id: str = Field(alias="jobId")


class EnrichmentBody(_CamelModel):
    connection_count: int | None = Field(default=None, alias="connectionCount")
    follower_count: int | None = Field(default=None, alias="followerCount")
    about: str | None = None
    experience: list[Any] = Field(default_factory=list)
    education: list[Any] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    certifications: list[Any] = Field(default_factory=list)
    languages: list[Any] = Field(default_factory=list)
    raw_response: dict[str, Any] = Field(default_factory=dict, alias="rawResponse")

    def attributes(self) -> EnrichmentAttributes:
        return EnrichmentAttributes.model_validate(self.model_dump())


class ProfileEnrichmentRequest(EnrichmentBody):
    profile_id: int = Field(alias="profileId")


class HandleEnrichmentRequest(EnrichmentBody):
    handle: str = Field(validation_alias=AliasChoices("handle", "vanityName"), min_length=1)


class QualificationResultRequest(_CamelModel):
    profile_id: int = Field(alias="profileId")
    qualification_id: int = Field(alias="qualificationId")
    score: float
    reasoning: str = ""
    # Accepted for compatibility, recomputed from score.
    passed: bool | None = None


def _ok(data: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    return body


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    conn: sqlite3.Connection,
    settings: Settings,
    orchestrator: EnrichmentOrchestrator | None = None,
) -> FastAPI:
    """Build the API app around an open database connection."""
    app = FastAPI(title="Lead Enrichment Pipeline")
    queue = JobQueue(conn, settings.queue)
    enrichments = EnrichmentStore(conn)

    def require_internal_key(x_internal_key: str | None = Header(default=None)) -> None:
        try:
            expected = settings.api.internal_key()
        except ConfigurationError as e:
            logger.error("Internal route called but %s", e)
            raise HTTPException(status_code=503, detail="Internal API key not configured") from e
        if not x_internal_key or not hmac.compare_digest(x_internal_key, expected):
            raise HTTPException(status_code=401, detail="Invalid internal key")

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    # -- public reads -------------------------------------------------------

    @app.get("/api/jobs/{job_id}")
    async def read_job(job_id: str) -> dict[str, Any]:
        job = get_job(conn, job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        data = job.model_dump(mode="json")
        data["coverage"] = job.summary.coverage if job.summary else None
        return _ok(data)

    @app.get("/api/enrichment/profiles/{profile_id}")
    async def read_enrichment(profile_id: int) -> dict[str, Any]:
        enrichment = get_enrichment(conn, profile_id)
        return {"success": True, "data": enrichment.model_dump(mode="json") if enrichment else None}

    @app.get("/api/enrichment/profiles/{profile_id}/qualifications")
    async def read_qualifications(profile_id: int) -> dict[str, Any]:
        results = get_qualification_results(conn, profile_id)
        return _ok([r.model_dump(mode="json") for r in results])

    @app.post("/api/enrichment/enrich", status_code=202)
    async def enrich(body: EnrichRequest) -> dict[str, Any]:
        if body.qualification_id is not None:
            rubric = get_rubric(conn, body.qualification_id)
            if rubric is None or rubric.organization_id != body.organization_id:
                raise HTTPException(status_code=404, detail="Qualification not found")
        try:
            request = request_for_profiles(
                conn,
                body.profile_ids,
                body.organization_id,
                qualification_id=body.qualification_id,
                job_id=body.job_id,
            )
        except LookupError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        job_id = queue.enqueue(request)
        return _ok({"jobId": job_id})

    # -- internal callbacks -------------------------------------------------

    internal = APIRouter(prefix="/api/internal", dependencies=[Depends(require_internal_key)])

    @internal.post("/jobs/status")
    async def update_job_status(body: JobStatusUpdate) -> dict[str, Any]:
        try:
            machine = JobStateMachine.load(conn, body.job_id)
            machine.transition(body.status, snapshot_id=body.snapshot_id, error=body.error)
        except KeyError as e:
            raise HTTPException(status_code=404, detail="Job not found") from e
        except InvalidStateTransition as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return _ok()

    @internal.post("/jobs/complete")
    async def complete_job(body: JobCompleteRequest) -> dict[str, Any]:
        try:
            machine = JobStateMachine.load(conn, body.job_id)
            machine.transition(JobState.COMPLETED)
        except KeyError as e:
            raise HTTPException(status_code=404, detail="Job not found") from e
        except InvalidStateTransition as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return _ok()

    @internal.post("/enrichments")
    async def store_enrichment(body: ProfileEnrichmentRequest) -> dict[str, Any]:
        enrichments.upsert(body.profile_id, body.attributes())
        return _ok()

    @internal.post("/enrichments/by-handle")
    async def store_enrichment_by_handle(body: HandleEnrichmentRequest) -> dict[str, Any]:
        profile_ids = enrichments.upsert_by_handle(body.handle.lower(), body.attributes())
        if not profile_ids:
            raise HTTPException(
                status_code=404, detail=f"No profile found with handle: {body.handle}"
            )
        return _ok({"profilesUpdated": len(profile_ids)})

    @internal.post("/qualifications/result")
    async def store_qualification_result(body: QualificationResultRequest) -> dict[str, Any]:
        result = ScoringResult.normalized(body.score, body.reasoning)
        upsert_qualification_result(conn, body.profile_id, body.qualification_id, result)
        return _ok(result.model_dump())

    @internal.get("/qualifications/{qualification_id}")
    async def read_rubric(qualification_id: int) -> dict[str, Any]:
        rubric = get_rubric(conn, qualification_id)
        if rubric is None:
            raise HTTPException(status_code=404, detail="Qualification not found")
        return _ok(rubric.model_dump(mode="json", by_alias=True))

    @internal.post("/sweep")
    async def run_sweep() -> dict[str, Any]:
        if orchestrator is None:
            raise HTTPException(status_code=503, detail="Sweep is not available on this server")
        result = await orchestrator.sweep()
        return _ok(result.model_dump())

    @internal.post("/enrich-pdl")
    async def run_enrich_pdl(limit: int = 50) -> dict[str, Any]:
        if orchestrator is None:
            raise HTTPException(
                status_code=503, detail="PDL enrichment is not available on this server"
            )
        result = await orchestrator.enrich_with_pdl(limit)
        return _ok(result.model_dump())

    app.include_router(internal)
    return app
