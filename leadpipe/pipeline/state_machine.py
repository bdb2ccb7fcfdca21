"""Job state machine: the single place job state is validated and written.

Forward order within an attempt::

    pending -> scraping -> enriching -> [qualifying] -> completed

``failed`` is reachable from any non-terminal state. Re-recording the
current state is allowed (attaching the snapshot id while scraping).
A redelivered job begins a new attempt, which is the only move back to
``pending``; a completed job is never restarted.
"""

import logging
import sqlite3

from leadpipe.core.db import get_job, save_job_state
from leadpipe.core.errors import InvalidStateTransition
from leadpipe.core.schemas import EnrichmentJob, JobState, JobSummary

logger = logging.getLogger(__name__)

_FORWARD: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.SCRAPING}),
    JobState.SCRAPING: frozenset({JobState.ENRICHING}),
    JobState.ENRICHING: frozenset({JobState.QUALIFYING, JobState.COMPLETED}),
    JobState.QUALIFYING: frozenset({JobState.COMPLETED}),
}

# Rank used to check that a recorded sequence never moves backwards.
STATE_RANK = {
    JobState.PENDING: 0,
    JobState.SCRAPING: 1,
    JobState.ENRICHING: 2,
    JobState.QUALIFYING: 3,
    JobState.COMPLETED: 4,
}

TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


def can_transition(current: JobState, target: JobState) -> bool:
    """Return True if ``current -> target`` is a legal move within one attempt."""
    if current in TERMINAL_STATES:
        return False
    if target is JobState.FAILED or target is current:
        return True
    return target in _FORWARD[current]


class JobStateMachine:
    """Validates and persists transitions for one job.

    Only the orchestrator drives a given job, so the in-memory ``state``
    mirrors the stored row for the lifetime of this object.
    """

    def __init__(self, conn: sqlite3.Connection, job: EnrichmentJob) -> None:
        self._conn = conn
        self.job_id = job.id
        self.state = job.state
        self.attempt = job.attempt

    @classmethod
    def load(cls, conn: sqlite3.Connection, job_id: str) -> "JobStateMachine":
        job = get_job(conn, job_id)
        if job is None:
            msg = f"Unknown enrichment job '{job_id}'"
            raise KeyError(msg)
        return cls(conn, job)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def begin_attempt(self) -> None:
        """Start a fresh delivery attempt, resetting the job to pending."""
        if self.state is JobState.COMPLETED:
            msg = f"Job {self.job_id} is completed and cannot be restarted"
            raise InvalidStateTransition(msg)
        self.attempt += 1
        self.state = JobState.PENDING
        save_job_state(self._conn, self.job_id, JobState.PENDING, attempt=self.attempt)
        logger.debug("Job %s: attempt %d started", self.job_id, self.attempt)

    def transition(
        self,
        target: JobState,
        *,
        snapshot_id: str | None = None,
        error: str | None = None,
        summary: JobSummary | None = None,
    ) -> None:
        """Move to ``target`` or raise InvalidStateTransition."""
        if not can_transition(self.state, target):
            msg = f"Job {self.job_id}: illegal transition {self.state.value} -> {target.value}"
            raise InvalidStateTransition(msg)
        save_job_state(
            self._conn,
            self.job_id,
            target,
            attempt=self.attempt,
            snapshot_id=snapshot_id,
            error=error,
            summary=summary,
            completed=target in TERMINAL_STATES,
        )
        logger.info("Job %s: %s -> %s", self.job_id, self.state.value, target.value)
        self.state = target

    def fail(self, error: str, summary: JobSummary | None = None) -> None:
        self.transition(JobState.FAILED, error=error, summary=summary)
