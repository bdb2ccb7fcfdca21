"""SQLite-backed job queue with visibility timeouts, plus its consumer.

Delivery rules:
  * a received message is owned by one consumer until acked or until its
    visibility timeout expires, after which it is redelivered
  * acked messages are never redelivered
  * retryable failures are redelivered until ``max_attempts`` deliveries
    were used; everything else goes to the dead-letter list at once
"""

import asyncio
import logging
import sqlite3
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import BaseModel

from leadpipe.core.config import QueueConfig
from leadpipe.core.db import (
    claim_message,
    create_job,
    get_profiles_by_ids,
    insert_message,
    list_messages,
    next_visible_message,
    set_message_status,
)
from leadpipe.core.schemas import JobRequest
from leadpipe.pipeline.orchestrator import EnrichmentOrchestrator

logger = logging.getLogger(__name__)

READY = "ready"
IN_FLIGHT = "in_flight"
ACKED = "acked"
DEAD = "dead"


def request_for_profiles(
    conn: sqlite3.Connection,
    profile_ids: list[int],
    organization_id: str,
    qualification_id: int | None = None,
    job_id: str | None = None,
) -> JobRequest:
    """Build a job request from stored profiles, pairing each id with its URL.

    Raises:
        LookupError: A profile id does not exist in the organization.
    """
    rows = get_profiles_by_ids(conn, profile_ids, organization_id)
    urls = {row["id"]: row["profile_url"] for row in rows}
    missing = [pid for pid in profile_ids if pid not in urls]
    if missing:
        msg = f"Profiles not found: {missing}"
        raise LookupError(msg)
    return JobRequest(
        job_id=job_id or uuid.uuid4().hex,
        profile_ids=profile_ids,
        profile_urls=[urls[pid] for pid in profile_ids],
        qualification_id=qualification_id,
        organization_id=organization_id,
    )


class QueueMessage(BaseModel):
    """A received job message. ``attempts`` counts this delivery."""

    id: int
    job_id: str
    request: JobRequest
    attempts: int
    last_error: str | None = None


class JobQueue:
    """At-least-once delivery of enrichment job requests."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: QueueConfig,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._conn = conn
        self._config = config
        self._clock = clock

    def enqueue(self, request: JobRequest) -> str:
        """Create the job row and queue a message for it. Returns the job id."""
        create_job(self._conn, request)
        insert_message(
            self._conn,
            request.job_id,
            request.model_dump_json(by_alias=True),
            self._clock(),
        )
        logger.info("Enqueued job %s (%d profiles)", request.job_id, len(request.profile_ids))
        return request.job_id

    def receive(self) -> QueueMessage | None:
        """Claim the next visible message, or return None when the queue is idle."""
        while True:
            now = self._clock()
            row = next_visible_message(self._conn, now)
            if row is None:
                return None

            if row["attempts"] >= self._config.max_attempts:
                # Visibility expired on the last allowed delivery.
                set_message_status(
                    self._conn, row["id"], DEAD, now,
                    error=row["last_error"] or "delivery attempts exhausted",
                )
                logger.error("Job %s dead-lettered after %d deliveries", row["job_id"], row["attempts"])
                continue

            visible_until = now + timedelta(seconds=self._config.visibility_timeout_s)
            if not claim_message(self._conn, row["id"], row["attempts"], now, visible_until):
                continue

            try:
                request = JobRequest.model_validate_json(row["body"])
            except ValueError as e:
                set_message_status(self._conn, row["id"], DEAD, now, error=f"invalid message: {e}")
                logger.error("Message %d has an invalid body, dead-lettered", row["id"])
                continue

            return QueueMessage(
                id=row["id"],
                job_id=row["job_id"],
                request=request,
                attempts=row["attempts"] + 1,
                last_error=row["last_error"],
            )

    def ack(self, message: QueueMessage) -> None:
        set_message_status(self._conn, message.id, ACKED, self._clock())

    def retry(self, message: QueueMessage, error: str) -> None:
        """Make the message visible again for another delivery."""
        now = self._clock()
        set_message_status(self._conn, message.id, READY, now, error=error, visible_at=now)

    def dead_letter(self, message: QueueMessage, error: str) -> None:
        set_message_status(self._conn, message.id, DEAD, self._clock(), error=error)

    def dead_letters(self) -> list[QueueMessage]:
        """Messages routed to manual inspection."""
        return [
            QueueMessage(
                id=row["id"],
                job_id=row["job_id"],
                request=JobRequest.model_validate_json(row["body"]),
                attempts=row["attempts"],
                last_error=row["last_error"],
            )
            for row in list_messages(self._conn, DEAD)
        ]


class QueueConsumer:
    """Runs queued jobs through the orchestrator and applies the retry policy."""

    def __init__(
        self,
        queue: JobQueue,
        orchestrator: EnrichmentOrchestrator,
        config: QueueConfig,
    ) -> None:
        self._queue = queue
        self._orchestrator = orchestrator
        self._config = config

    async def consume_once(self) -> bool:
        """Process at most one message. Returns False when nothing was visible."""
        message = self._queue.receive()
        if message is None:
            return False

        logger.info("Processing job %s (delivery %d)", message.job_id, message.attempts)
        try:
            await self._orchestrator.process_job(message.request)
        except Exception as e:
            error = str(e) or type(e).__name__
            if getattr(e, "retryable", False) and message.attempts < self._config.max_attempts:
                logger.warning(
                    "Job %s failed on delivery %d/%d, will retry: %s",
                    message.job_id, message.attempts, self._config.max_attempts, error,
                )
                self._queue.retry(message, error)
            else:
                logger.error("Job %s dead-lettered: %s", message.job_id, error)
                self._queue.dead_letter(message, error)
            return True

        self._queue.ack(message)
        return True

    async def run(self, workers: int | None = None, stop_event: asyncio.Event | None = None) -> None:
        """Run ``workers`` independent consumer loops until ``stop_event`` is set."""
        stop = stop_event or asyncio.Event()
        count = workers or self._config.workers
        logger.info("Starting %d queue worker(s)", count)
        await asyncio.gather(*(self._worker_loop(i, stop) for i in range(count)))

    async def _worker_loop(self, worker_id: int, stop: asyncio.Event) -> None:
        while not stop.is_set():
            if await self.consume_once():
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._config.poll_interval_s)
            except asyncio.TimeoutError:
                pass
        logger.debug("Queue worker %d stopped", worker_id)
