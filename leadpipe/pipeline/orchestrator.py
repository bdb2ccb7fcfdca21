"""Orchestrator: drives enrichment jobs, delivery sweeps and pending scoring.

Job path:
  1. Resolve the requested rubric (if any)
  2. Trigger the vendor scrape → snapshot id
  3. Poll the object store until the delivery lands
  4. Reconcile each record by URL and store its enrichment
  5. Score enriched profiles against the rubric
  6. Complete with a per-record summary

Sweep path:
  1. List undelivered ``*.json.gz`` objects, leaving those a running job still awaits
  2. Reconcile each record by public handle, store for every match
  3. Score each updated profile against all of its organization's rubrics
  4. Delete the object only after it was processed

Scheduled run: sweep, PDL fallback enrichment, pending scoring. A failing step
is logged and the next one still runs.
"""

import asyncio
import logging
import sqlite3
from collections import defaultdict
from typing import Any

from leadpipe.core.config import PollerConfig, Settings, SweepConfig
from leadpipe.core.db import (
    count_pending_scoring,
    create_job,
    get_profile,
    get_rubric,
    list_active_snapshot_ids,
    list_pending_scoring,
    list_rubrics,
    list_unenriched_profiles,
    record_pdl_miss,
)
from leadpipe.core.errors import (
    ConfigurationError,
    DeliveryTimeoutError,
    InvalidStateTransition,
    ReconciliationError,
)
from leadpipe.core.schemas import (
    FanOutResult,
    JobRequest,
    JobState,
    JobSummary,
    PdlEnrichmentResult,
    PendingScoringResult,
    QualificationRubric,
    ScheduledRunResult,
    SweepResult,
    VendorRecord,
)
from leadpipe.llm import get_provider
from leadpipe.pipeline.enrichment_store import EnrichmentStore, attributes_from_record
from leadpipe.pipeline.llm_scorer import QualificationScorer
from leadpipe.pipeline.poller import ResultPoller
from leadpipe.pipeline.reconciler import HandleReconciler, JobReconciler
from leadpipe.pipeline.state_machine import JobStateMachine
from leadpipe.vendor.object_store import ObjectStore, get_object_store
from leadpipe.vendor.pdl_client import PdlClient, attributes_from_pdl
from leadpipe.vendor.records import DELIVERY_SUFFIX, decode_delivery, snapshot_id_from_key
from leadpipe.vendor.scrape_client import ScrapeClient

logger = logging.getLogger(__name__)


class EnrichmentOrchestrator:
    """Wires scrape client, poller, reconciler, store and scorer together."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        scrape_client: ScrapeClient,
        object_store: ObjectStore,
        scorer: QualificationScorer,
        poller_config: PollerConfig,
        sweep_config: SweepConfig | None = None,
        poller: ResultPoller | None = None,
        pdl_client: PdlClient | None = None,
    ) -> None:
        self._conn = conn
        self._scrape_client = scrape_client
        self._object_store = object_store
        self._scorer = scorer
        self._poller_config = poller_config
        self._sweep_config = sweep_config or SweepConfig()
        self._poller = poller or ResultPoller(
            object_store, poller_config, key_for=scrape_client.delivery_key
        )
        self._pdl_client = pdl_client
        self._enrichments = EnrichmentStore(conn)

    @classmethod
    def from_settings(cls, conn: sqlite3.Connection, settings: Settings) -> "EnrichmentOrchestrator":
        """Build an orchestrator from loaded settings.

        Credentials are read lazily, so a missing key only fails the job that needs it.
        """
        object_store = get_object_store(settings.object_store)
        provider = get_provider(settings.scoring.llm_provider)
        return cls(
            conn,
            ScrapeClient(settings.vendor),
            object_store,
            QualificationScorer(conn, provider, settings.scoring),
            settings.poller,
            settings.sweep,
            pdl_client=PdlClient(settings.pdl),
        )

    # ------------------------------------------------------------------
    # Job path
    # ------------------------------------------------------------------

    async def process_job(self, request: JobRequest) -> JobSummary:
        """Run one enrichment job to ``completed`` and return its summary.

        Redelivering a completed job is a no-op returning the stored summary.
        Stage-level errors mark the job ``failed`` and are re-raised so the
        queue can apply its retry policy.
        """
        job = create_job(self._conn, request)
        machine = JobStateMachine(self._conn, job)
        if machine.state is JobState.COMPLETED:
            logger.info("Job %s already completed, skipping", job.id)
            return job.summary or JobSummary(total=len(request.profile_ids))

        machine.begin_attempt()
        summary = JobSummary(total=len(request.profile_ids))

        try:
            rubric = self._load_rubric(request)

            machine.transition(JobState.SCRAPING)
            snapshot_id = await self._scrape_client.trigger(request.profile_urls)
            machine.transition(JobState.SCRAPING, snapshot_id=snapshot_id)

            records = await self._wait_for_delivery(snapshot_id)
            machine.transition(JobState.ENRICHING)
            enriched = self._store_job_records(request, records, summary)
            await self._object_store.delete(self._scrape_client.delivery_key(snapshot_id))

            if rubric is not None:
                machine.transition(JobState.QUALIFYING, summary=summary)
                fan_out = await self._scorer.fan_out(list(enriched), [rubric], payloads=enriched)
                summary.scored = fan_out.scored
                summary.score_failed = fan_out.failed

            machine.transition(JobState.COMPLETED, summary=summary)
        except InvalidStateTransition:
            raise
        except Exception as e:
            category = getattr(e, "category", type(e).__name__)
            logger.error("Job %s failed [%s]: %s", request.job_id, category, e)
            machine.fail(str(e), summary)
            raise

        logger.info(
            "Job %s completed: %s, %d failed, %d skipped, %d scored",
            request.job_id, summary.coverage, summary.failed, summary.skipped, summary.scored,
        )
        return summary

    def _load_rubric(self, request: JobRequest) -> QualificationRubric | None:
        if request.qualification_id is None:
            return None
        rubric = get_rubric(self._conn, request.qualification_id)
        if rubric is None:
            msg = f"Qualification rubric {request.qualification_id} not found"
            raise ConfigurationError(msg)
        return rubric

    async def _wait_for_delivery(self, snapshot_id: str) -> list[VendorRecord]:
        try:
            return await asyncio.wait_for(
                self._poller.poll(snapshot_id), timeout=self._poller_config.job_timeout_s
            )
        except asyncio.TimeoutError:
            msg = (
                f"Snapshot {snapshot_id} not delivered within "
                f"{self._poller_config.job_timeout_s:.0f}s"
            )
            raise DeliveryTimeoutError(msg) from None

    def _store_job_records(
        self,
        request: JobRequest,
        records: list[VendorRecord],
        summary: JobSummary,
    ) -> dict[int, dict[str, Any]]:
        """Store every success record; returns enriched profile id → payload."""
        reconciler = JobReconciler(request.profile_urls, request.profile_ids)
        enriched: dict[int, dict[str, Any]] = {}
        failed = 0
        skipped = 0

        for record in records:
            if record.is_error:
                logger.warning("Vendor could not scrape %s: %s", record.url, record.error)
                failed += 1
                continue
            try:
                profile_ids = reconciler.resolve(record)
            except ReconciliationError as e:
                logger.warning("Skipping delivered record: %s", e)
                skipped += 1
                continue
            attrs = attributes_from_record(record.payload)
            for profile_id in profile_ids:
                self._enrichments.upsert(profile_id, attrs)
                enriched[profile_id] = record.payload

        undelivered = summary.total - len(enriched) - failed - skipped
        if undelivered > 0:
            logger.warning(
                "Job %s: %d requested profiles missing from delivery",
                request.job_id, undelivered,
            )
            failed += undelivered

        summary.enriched = len(enriched)
        summary.failed = failed
        summary.skipped = skipped
        return enriched

    # ------------------------------------------------------------------
    # Sweep path
    # ------------------------------------------------------------------

    async def sweep(self) -> SweepResult:
        """Process every undelivered object in the store once.

        Objects that fail stay in place for the next sweep. Snapshots that a
        job which has not finished yet is polling for are left to that job.
        """
        result = SweepResult()
        keys = await self._object_store.list_keys()
        in_flight = list_active_snapshot_ids(self._conn)

        for key in keys:
            if not key.endswith(DELIVERY_SUFFIX):
                logger.debug("Sweep: ignoring %s", key)
                continue
            result.objects_seen += 1
            if snapshot_id_from_key(key) in in_flight:
                logger.debug("Sweep: %s belongs to a running job, leaving it", key)
                result.objects_in_flight += 1
                continue
            try:
                outcome = await self._process_delivery(key)
            except Exception:
                logger.exception("Sweep: failed to process %s, keeping it", key)
                result.objects_failed += 1
                continue
            if outcome is None:
                continue

            await self._object_store.delete(key)
            result.objects_processed += 1
            result.records_stored += outcome.records_stored
            result.records_failed += outcome.records_failed
            result.profiles_updated += outcome.profiles_updated
            result.scoring.scored += outcome.scoring.scored
            result.scoring.failed += outcome.scoring.failed

        logger.info(
            "Sweep: %d/%d objects processed (%d in flight), %d records stored, %d failed, "
            "%d profiles updated",
            result.objects_processed, result.objects_seen, result.objects_in_flight,
            result.records_stored, result.records_failed, result.profiles_updated,
        )
        return result

    async def _process_delivery(self, key: str) -> SweepResult | None:
        data = await self._object_store.get(key)
        if data is None:
            logger.debug("Sweep: %s disappeared before it was read", key)
            return None

        records = decode_delivery(data, source=key)
        reconciler = HandleReconciler(self._conn)
        outcome = SweepResult()
        enriched: dict[int, dict[str, Any]] = {}

        for record in records:
            if record.is_error:
                logger.warning("Sweep: vendor error for %s: %s", record.url, record.error)
                outcome.records_failed += 1
                continue
            try:
                profile_ids = reconciler.resolve(record)
            except ReconciliationError as e:
                logger.warning("Sweep: discarding record from %s: %s", key, e)
                outcome.records_failed += 1
                continue

            attrs = attributes_from_record(record.payload)
            for profile_id in profile_ids:
                self._enrichments.upsert(profile_id, attrs)
                enriched[profile_id] = record.payload
            outcome.records_stored += 1

        outcome.profiles_updated = len(enriched)
        outcome.scoring = await self._score_for_organizations(enriched)
        logger.info(
            "Sweep: %s stored %d records across %d profiles",
            key, outcome.records_stored, outcome.profiles_updated,
        )
        return outcome

    async def _score_for_organizations(self, enriched: dict[int, dict[str, Any]]) -> FanOutResult:
        """Score each profile against every rubric of its organization."""
        by_org: dict[str, list[int]] = defaultdict(list)
        for profile_id in enriched:
            profile = get_profile(self._conn, profile_id)
            if profile is not None:
                by_org[profile["organization_id"]].append(profile_id)

        total = FanOutResult()
        for organization_id, profile_ids in by_org.items():
            rubrics = list_rubrics(self._conn, organization_id)
            if not rubrics:
                continue
            result = await self._scorer.fan_out(profile_ids, rubrics, payloads=enriched)
            total.scored += result.scored
            total.failed += result.failed
        return total

    # ------------------------------------------------------------------
    # Pending scoring
    # ------------------------------------------------------------------

    async def score_pending(self, limit: int | None = None) -> PendingScoringResult:
        """Score enriched profiles that lack a result for one of their org's rubrics."""
        limit = limit or self._sweep_config.pending_limit
        pairs = list_pending_scoring(self._conn, limit)

        by_rubric: dict[int, list[int]] = defaultdict(list)
        for profile_id, rubric_id in pairs:
            by_rubric[rubric_id].append(profile_id)

        result = PendingScoringResult()
        for rubric_id, profile_ids in by_rubric.items():
            rubric = get_rubric(self._conn, rubric_id)
            if rubric is None:
                continue
            fan_out = await self._scorer.fan_out(profile_ids, [rubric])
            result.scored += fan_out.scored
            result.failed += fan_out.failed

        result.remaining = count_pending_scoring(self._conn)
        logger.info(
            "Pending scoring: %d scored, %d failed, %d remaining",
            result.scored, result.failed, result.remaining,
        )
        return result

    # ------------------------------------------------------------------
    # PDL fallback enrichment
    # ------------------------------------------------------------------

    async def enrich_with_pdl(self, limit: int | None = None) -> PdlEnrichmentResult:
        """Look up still-unenriched profiles on People Data Labs.

        Does nothing when no PDL key is configured. Matches are written through
        the enrichment store and picked up by pending scoring; misses are
        remembered so the next pass moves on to other profiles.
        """
        result = PdlEnrichmentResult()
        if self._pdl_client is None or not self._pdl_client.is_configured():
            logger.debug("PDL: not configured, skipping")
            return result

        limit = limit or self._pdl_client.batch_limit
        for profile in list_unenriched_profiles(self._conn, limit):
            result.attempted += 1
            try:
                person = await self._pdl_client.enrich_person(profile["profile_url"])
            except Exception as e:
                logger.warning("PDL: lookup failed for profile %d: %s", profile["id"], e)
                result.failed += 1
                continue
            if person is None:
                record_pdl_miss(self._conn, profile["id"])
                result.not_found += 1
                continue
            self._enrichments.upsert(profile["id"], attributes_from_pdl(person))
            result.enriched += 1

        logger.info(
            "PDL: %d enriched, %d not found, %d failed of %d attempted",
            result.enriched, result.not_found, result.failed, result.attempted,
        )
        return result

    # ------------------------------------------------------------------
    # Scheduled run
    # ------------------------------------------------------------------

    async def run_scheduled(self) -> ScheduledRunResult:
        """One scheduler tick. Each step runs even if an earlier one raised."""
        run = ScheduledRunResult()

        try:
            run.sweep = await self.sweep()
        except Exception as e:
            logger.exception("Scheduled run: sweep failed")
            run.errors["sweep"] = str(e)

        try:
            run.pdl = await self.enrich_with_pdl()
        except Exception as e:
            logger.exception("Scheduled run: PDL enrichment failed")
            run.errors["pdl"] = str(e)

        try:
            run.pending = await self.score_pending()
        except Exception as e:
            logger.exception("Scheduled run: pending scoring failed")
            run.errors["pending"] = str(e)

        return run
