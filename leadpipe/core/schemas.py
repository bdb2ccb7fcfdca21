"""Core data models for the enrichment pipeline."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

PASS_THRESHOLD = 70


class JobState(str, Enum):
    """Lifecycle states of an enrichment job."""

    PENDING = "pending"
    SCRAPING = "scraping"
    ENRICHING = "enriching"
    QUALIFYING = "qualifying"
    COMPLETED = "completed"
    FAILED = "failed"


class JobRequest(BaseModel):
    """A queued enrichment job message.

    Accepts the camelCase wire names used by enqueuing callers as well as
    snake_case field names.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    job_id: str = Field(alias="jobId")
    profile_ids: list[int] = Field(alias="profileIds")
    profile_urls: list[str] = Field(alias="profileUrls")
    qualification_id: int | None = Field(default=None, alias="qualificationId")
    organization_id: str = Field(alias="organizationId")

    @model_validator(mode="after")
    def parallel_lists(self) -> "JobRequest":
        if len(self.profile_ids) != len(self.profile_urls):
            msg = (
                f"profileIds ({len(self.profile_ids)}) and profileUrls "
                f"({len(self.profile_urls)}) must have the same length"
            )
            raise ValueError(msg)
        if not self.profile_ids:
            msg = "a job needs at least one profile"
            raise ValueError(msg)
        return self


class JobSummary(BaseModel):
    """Per-record outcome counts for one job run."""

    total: int = 0
    enriched: int = 0
    failed: int = 0
    skipped: int = 0
    scored: int = 0
    score_failed: int = 0

    @property
    def coverage(self) -> str:
        return f"{self.enriched} of {self.total} enriched"


class EnrichmentJob(BaseModel):
    """Persisted view of an enrichment job."""

    id: str
    profile_ids: list[int]
    profile_urls: list[str]
    qualification_id: int | None = None
    organization_id: str
    state: JobState = JobState.PENDING
    snapshot_id: str | None = None
    error: str | None = None
    attempt: int = 0
    summary: JobSummary | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class VendorRecord(BaseModel):
    """One per-URL outcome from a vendor delivery: a profile or an error."""

    model_config = ConfigDict(frozen=True)

    url: str | None = None
    error: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return "error" in self.payload or "warning" in self.payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "VendorRecord":
        """Build a record from a raw vendor dict (success or error shape)."""
        url = payload.get("url")
        if not url:
            nested = payload.get("input")
            if isinstance(nested, dict):
                url = nested.get("url")
        error = payload.get("error") or payload.get("warning")
        return cls(
            url=str(url) if url else None,
            error=str(error) if error else None,
            payload=payload,
        )


class EnrichmentAttributes(BaseModel):
    """Typed enrichment core plus the untouched vendor payload."""

    connection_count: int | None = None
    follower_count: int | None = None
    about: str | None = None
    experience: list[Any] = Field(default_factory=list)
    education: list[Any] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    certifications: list[Any] = Field(default_factory=list)
    languages: list[Any] = Field(default_factory=list)
    raw_response: dict[str, Any] = Field(default_factory=dict)


class Enrichment(EnrichmentAttributes):
    """Stored enrichment row for a profile."""

    profile_id: int
    enriched_at: datetime


class QualificationCriteria(BaseModel):
    """Structured rubric criteria. Accepts camelCase keys from the CRUD app."""

    model_config = ConfigDict(populate_by_name=True)

    min_connections: int | None = Field(default=None, alias="minConnections")
    min_followers: int | None = Field(default=None, alias="minFollowers")
    required_skills: list[str] = Field(default_factory=list, alias="requiredSkills")
    preferred_skills: list[str] = Field(default_factory=list, alias="preferredSkills")
    required_titles: list[str] = Field(default_factory=list, alias="requiredTitles")
    preferred_titles: list[str] = Field(default_factory=list, alias="preferredTitles")
    required_companies: list[str] = Field(default_factory=list, alias="requiredCompanies")
    preferred_companies: list[str] = Field(default_factory=list, alias="preferredCompanies")
    required_education: list[str] = Field(default_factory=list, alias="requiredEducation")
    min_experience_years: int | None = Field(default=None, alias="minExperienceYears")
    custom_prompt: str | None = Field(default=None, alias="customPrompt")


class QualificationRubric(BaseModel):
    """A named set of criteria owned by an organization."""

    id: int
    organization_id: str
    name: str
    description: str | None = None
    criteria: QualificationCriteria = Field(default_factory=QualificationCriteria)


class ScoringResult(BaseModel):
    """Normalized judge verdict. ``passed`` is always derived from ``score``."""

    model_config = ConfigDict(frozen=True)

    score: int = Field(ge=0, le=100)
    reasoning: str
    passed: bool

    @classmethod
    def normalized(cls, raw_score: float, reasoning: str) -> "ScoringResult":
        """Clamp to [0, 100], round half up, and recompute the pass flag."""
        clamped = max(0.0, min(100.0, float(raw_score)))
        score = int(clamped + 0.5)
        return cls(
            score=score,
            reasoning=reasoning or "No reasoning provided",
            passed=score >= PASS_THRESHOLD,
        )


class QualificationResult(BaseModel):
    """Stored score for a (profile, rubric) pair."""

    profile_id: int
    qualification_id: int
    score: int
    reasoning: str
    passed: bool
    evaluated_at: datetime


class FanOutResult(BaseModel):
    """Counts from scoring one or more profiles against a set of rubrics."""

    scored: int = 0
    failed: int = 0


class SweepResult(BaseModel):
    """Outcome of one out-of-band delivery sweep."""

    objects_seen: int = 0
    objects_processed: int = 0
    objects_failed: int = 0
    objects_in_flight: int = 0
    records_stored: int = 0
    records_failed: int = 0
    profiles_updated: int = 0
    scoring: FanOutResult = Field(default_factory=FanOutResult)


class PendingScoringResult(BaseModel):
    """Outcome of a pending-scoring pass."""

    scored: int = 0
    failed: int = 0
    remaining: int = 0


class PdlEnrichmentResult(BaseModel):
    """Outcome of one People Data Labs pass over unenriched profiles."""

    attempted: int = 0
    enriched: int = 0
    not_found: int = 0
    failed: int = 0


class ScheduledRunResult(BaseModel):
    """One scheduled tick: sweep, PDL pass and pending scoring, each optional on failure."""

    sweep: SweepResult | None = None
    pdl: PdlEnrichmentResult | None = None
    pending: PendingScoringResult | None = None
    errors: dict[str, str] = Field(default_factory=dict)
