"""SQLite database layer for profiles, jobs, enrichments, rubrics, results and the job queue."""

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from leadpipe.core.schemas import (
    Enrichment,
    EnrichmentAttributes,
    EnrichmentJob,
    JobRequest,
    JobState,
    JobSummary,
    QualificationCriteria,
    QualificationResult,
    QualificationRubric,
    ScoringResult,
)
from leadpipe.core.urls import extract_handle

_PROFILES_TABLE = """
CREATE TABLE IF NOT EXISTS profiles (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id TEXT    NOT NULL,
    profile_url     TEXT    NOT NULL,
    handle          TEXT,
    display_name    TEXT,
    raw_attributes  TEXT    NOT NULL DEFAULT '{}',
    captured_at     TEXT    NOT NULL,
    UNIQUE(organization_id, profile_url)
);
"""

_JOBS_TABLE = """
CREATE TABLE IF NOT EXISTS enrichment_jobs (
    id               TEXT PRIMARY KEY,
    profile_ids      TEXT NOT NULL,
    profile_urls     TEXT NOT NULL,
    qualification_id INTEGER,
    organization_id  TEXT NOT NULL,
    state            TEXT NOT NULL DEFAULT 'pending',
    snapshot_id      TEXT,
    error            TEXT,
    attempt          INTEGER NOT NULL DEFAULT 0,
    summary          TEXT,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    completed_at     TEXT
);
"""

_JOB_HISTORY_TABLE = """
CREATE TABLE IF NOT EXISTS job_state_history (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id      TEXT    NOT NULL,
    attempt     INTEGER NOT NULL,
    state       TEXT    NOT NULL,
    recorded_at TEXT    NOT NULL
);
"""

_ENRICHMENTS_TABLE = """
CREATE TABLE IF NOT EXISTS profile_enrichments (
    profile_id       INTEGER PRIMARY KEY REFERENCES profiles(id),
    connection_count INTEGER,
    follower_count   INTEGER,
    about            TEXT,
    experience       TEXT NOT NULL DEFAULT '[]',
    education        TEXT NOT NULL DEFAULT '[]',
    skills           TEXT NOT NULL DEFAULT '[]',
    certifications   TEXT NOT NULL DEFAULT '[]',
    languages        TEXT NOT NULL DEFAULT '[]',
    raw_response     TEXT NOT NULL DEFAULT '{}',
    enriched_at      TEXT NOT NULL
);
"""

_RUBRICS_TABLE = """
CREATE TABLE IF NOT EXISTS job_qualifications (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id TEXT NOT NULL,
    name            TEXT NOT NULL,
    description     TEXT,
    criteria        TEXT NOT NULL DEFAULT '{}',
    created_at      TEXT NOT NULL
);
"""

_RESULTS_TABLE = """
CREATE TABLE IF NOT EXISTS qualification_results (
    profile_id       INTEGER NOT NULL,
    qualification_id INTEGER NOT NULL,
    score            INTEGER NOT NULL CHECK (score >= 0 AND score <= 100),
    reasoning        TEXT    NOT NULL DEFAULT '',
    passed           INTEGER NOT NULL,
    evaluated_at     TEXT    NOT NULL,
    PRIMARY KEY (profile_id, qualification_id)
);
"""

_MESSAGES_TABLE = """
CREATE TABLE IF NOT EXISTS job_messages (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id      TEXT    NOT NULL,
    body        TEXT    NOT NULL,
    status      TEXT    NOT NULL DEFAULT 'ready',
    attempts    INTEGER NOT NULL DEFAULT 0,
    visible_at  TEXT    NOT NULL,
    last_error  TEXT,
    created_at  TEXT    NOT NULL,
    updated_at  TEXT    NOT NULL
);
"""

_PDL_MISSES_TABLE = """
CREATE TABLE IF NOT EXISTS pdl_misses (
    profile_id   INTEGER PRIMARY KEY,
    looked_up_at TEXT    NOT NULL
);
"""

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_profiles_handle ON profiles(handle COLLATE NOCASE)",
    "CREATE INDEX IF NOT EXISTS idx_rubrics_org ON job_qualifications(organization_id)",
    "CREATE INDEX IF NOT EXISTS idx_history_job ON job_state_history(job_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_status ON job_messages(status, visible_at)",
)


def _ts(dt: datetime) -> str:
    return dt.isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def init_db(path: str | Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Create the database and tables, returning a connection.

    Pass ``check_same_thread=False`` when the connection is handed to a server
    whose event loop runs outside the creating thread.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    for ddl in (
        _PROFILES_TABLE,
        _JOBS_TABLE,
        _JOB_HISTORY_TABLE,
        _ENRICHMENTS_TABLE,
        _RUBRICS_TABLE,
        _RESULTS_TABLE,
        _MESSAGES_TABLE,
        _PDL_MISSES_TABLE,
        *_INDEXES,
    ):
        conn.execute(ddl)
    conn.commit()
    return conn


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def insert_profile(
    conn: sqlite3.Connection,
    organization_id: str,
    profile_url: str,
    *,
    handle: str | None = None,
    display_name: str | None = None,
    raw_attributes: dict[str, Any] | None = None,
) -> int:
    """Insert a captured profile, returning its id (existing id on duplicate URL).

    Without an explicit ``handle`` it is derived from the ``/in/`` segment of
    the URL, so every stored profile can be matched by handle.
    """
    if handle is None:
        handle = extract_handle(profile_url)
    conn.execute(
        """
        INSERT INTO profiles
            (organization_id, profile_url, handle, display_name, raw_attributes, captured_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(organization_id, profile_url) DO NOTHING
        """,
        (
            organization_id,
            profile_url,
            handle,
            display_name,
            json.dumps(raw_attributes or {}),
            _ts(datetime.now()),
        ),
    )
    conn.commit()
    row = conn.execute(
        "SELECT id FROM profiles WHERE organization_id = ? AND profile_url = ?",
        (organization_id, profile_url),
    ).fetchone()
    return int(row["id"])


def get_profile(conn: sqlite3.Connection, profile_id: int) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM profiles WHERE id = ?", (profile_id,)).fetchone()


def get_profiles_by_handle(conn: sqlite3.Connection, handle: str) -> list[sqlite3.Row]:
    """Return every profile sharing a handle, case-insensitively, across organizations."""
    return conn.execute(
        "SELECT * FROM profiles WHERE handle = ? COLLATE NOCASE ORDER BY id",
        (handle,),
    ).fetchall()


def get_profiles_by_ids(
    conn: sqlite3.Connection,
    profile_ids: list[int],
    organization_id: str,
) -> list[sqlite3.Row]:
    if not profile_ids:
        return []
    placeholders = ", ".join("?" for _ in profile_ids)
    return conn.execute(
        f"SELECT * FROM profiles WHERE organization_id = ? AND id IN ({placeholders}) ORDER BY id",
        (organization_id, *profile_ids),
    ).fetchall()


# ---------------------------------------------------------------------------
# Enrichment jobs
# ---------------------------------------------------------------------------


def _row_to_job(row: sqlite3.Row) -> EnrichmentJob:
    summary = json.loads(row["summary"]) if row["summary"] else None
    return EnrichmentJob(
        id=row["id"],
        profile_ids=json.loads(row["profile_ids"]),
        profile_urls=json.loads(row["profile_urls"]),
        qualification_id=row["qualification_id"],
        organization_id=row["organization_id"],
        state=JobState(row["state"]),
        snapshot_id=row["snapshot_id"],
        error=row["error"],
        attempt=row["attempt"],
        summary=JobSummary.model_validate(summary) if summary else None,
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        completed_at=_parse_ts(row["completed_at"]),
    )


def create_job(conn: sqlite3.Connection, request: JobRequest) -> EnrichmentJob:
    """Insert a pending job. Re-creating an existing job id is a no-op."""
    now = _ts(datetime.now())
    cursor = conn.execute(
        """
        INSERT INTO enrichment_jobs
            (id, profile_ids, profile_urls, qualification_id, organization_id,
             state, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO NOTHING
        """,
        (
            request.job_id,
            json.dumps(request.profile_ids),
            json.dumps(request.profile_urls),
            request.qualification_id,
            request.organization_id,
            JobState.PENDING.value,
            now,
            now,
        ),
    )
    if cursor.rowcount:
        conn.execute(
            "INSERT INTO job_state_history (job_id, attempt, state, recorded_at) VALUES (?, ?, ?, ?)",
            (request.job_id, 0, JobState.PENDING.value, now),
        )
    conn.commit()
    row = conn.execute("SELECT * FROM enrichment_jobs WHERE id = ?", (request.job_id,)).fetchone()
    return _row_to_job(row)


def get_job(conn: sqlite3.Connection, job_id: str) -> EnrichmentJob | None:
    row = conn.execute("SELECT * FROM enrichment_jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def save_job_state(
    conn: sqlite3.Connection,
    job_id: str,
    state: JobState,
    *,
    attempt: int,
    snapshot_id: str | None = None,
    error: str | None = None,
    summary: JobSummary | None = None,
    completed: bool = False,
) -> None:
    """Write one state transition and append it to the job's history.

    ``snapshot_id`` and ``summary`` keep their stored value when None.
    ``error`` is always overwritten so a successful retry clears it.
    """
    now = _ts(datetime.now())
    conn.execute(
        """
        UPDATE enrichment_jobs SET
            state = ?,
            attempt = ?,
            snapshot_id = COALESCE(?, snapshot_id),
            error = ?,
            summary = COALESCE(?, summary),
            updated_at = ?,
            completed_at = ?
        WHERE id = ?
        """,
        (
            state.value,
            attempt,
            snapshot_id,
            error,
            summary.model_dump_json() if summary is not None else None,
            now,
            now if completed else None,
            job_id,
        ),
    )
    conn.execute(
        "INSERT INTO job_state_history (job_id, attempt, state, recorded_at) VALUES (?, ?, ?, ?)",
        (job_id, attempt, state.value, now),
    )
    conn.commit()


def get_job_history(conn: sqlite3.Connection, job_id: str) -> list[tuple[int, JobState]]:
    """Return the recorded (attempt, state) sequence for a job, oldest first."""
    rows = conn.execute(
        "SELECT attempt, state FROM job_state_history WHERE job_id = ? ORDER BY id",
        (job_id,),
    ).fetchall()
    return [(row["attempt"], JobState(row["state"])) for row in rows]


def list_active_snapshot_ids(conn: sqlite3.Connection) -> set[str]:
    """Snapshot ids still owned by a job that has not reached a terminal state."""
    rows = conn.execute(
        "SELECT snapshot_id FROM enrichment_jobs"
        " WHERE snapshot_id IS NOT NULL AND state NOT IN (?, ?)",
        (JobState.COMPLETED.value, JobState.FAILED.value),
    ).fetchall()
    return {row["snapshot_id"] for row in rows}


# ---------------------------------------------------------------------------
# Enrichments
# ---------------------------------------------------------------------------


def upsert_enrichment(
    conn: sqlite3.Connection,
    profile_id: int,
    attrs: EnrichmentAttributes,
) -> None:
    """Insert or overwrite the enrichment row for a profile (last write wins)."""
    conn.execute(
        """
        INSERT INTO profile_enrichments
            (profile_id, connection_count, follower_count, about, experience,
             education, skills, certifications, languages, raw_response, enriched_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(profile_id) DO UPDATE SET
            connection_count = excluded.connection_count,
            follower_count   = excluded.follower_count,
            about            = excluded.about,
            experience       = excluded.experience,
            education        = excluded.education,
            skills           = excluded.skills,
            certifications   = excluded.certifications,
            languages        = excluded.languages,
            raw_response     = excluded.raw_response,
            enriched_at      = excluded.enriched_at
        """,
        (
            profile_id,
            attrs.connection_count,
            attrs.follower_count,
            attrs.about,
            json.dumps(attrs.experience),
            json.dumps(attrs.education),
            json.dumps(attrs.skills),
            json.dumps(attrs.certifications),
            json.dumps(attrs.languages),
            json.dumps(attrs.raw_response),
            _ts(datetime.now()),
        ),
    )
    conn.commit()


def get_enrichment(conn: sqlite3.Connection, profile_id: int) -> Enrichment | None:
    row = conn.execute(
        "SELECT * FROM profile_enrichments WHERE profile_id = ?", (profile_id,)
    ).fetchone()
    if row is None:
        return None
    return Enrichment(
        profile_id=row["profile_id"],
        connection_count=row["connection_count"],
        follower_count=row["follower_count"],
        about=row["about"],
        experience=json.loads(row["experience"]),
        education=json.loads(row["education"]),
        skills=json.loads(row["skills"]),
        certifications=json.loads(row["certifications"]),
        languages=json.loads(row["languages"]),
        raw_response=json.loads(row["raw_response"]),
        enriched_at=datetime.fromisoformat(row["enriched_at"]),
    )


# ---------------------------------------------------------------------------
# Rubrics (owned by the CRUD app; written here for local use and tests)
# ---------------------------------------------------------------------------


def insert_rubric(
    conn: sqlite3.Connection,
    organization_id: str,
    name: str,
    criteria: QualificationCriteria | dict[str, Any] | None = None,
    description: str | None = None,
) -> int:
    if isinstance(criteria, QualificationCriteria):
        criteria_json = criteria.model_dump_json(by_alias=True)
    else:
        criteria_json = json.dumps(criteria or {})
    cursor = conn.execute(
        """
        INSERT INTO job_qualifications (organization_id, name, description, criteria, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (organization_id, name, description, criteria_json, _ts(datetime.now())),
    )
    conn.commit()
    return cursor.lastrowid or 0


def _row_to_rubric(row: sqlite3.Row) -> QualificationRubric:
    return QualificationRubric(
        id=row["id"],
        organization_id=row["organization_id"],
        name=row["name"],
        description=row["description"],
        criteria=QualificationCriteria.model_validate(json.loads(row["criteria"])),
    )


def get_rubric(conn: sqlite3.Connection, rubric_id: int) -> QualificationRubric | None:
    row = conn.execute("SELECT * FROM job_qualifications WHERE id = ?", (rubric_id,)).fetchone()
    return _row_to_rubric(row) if row else None


def list_rubrics(conn: sqlite3.Connection, organization_id: str) -> list[QualificationRubric]:
    rows = conn.execute(
        "SELECT * FROM job_qualifications WHERE organization_id = ? ORDER BY id",
        (organization_id,),
    ).fetchall()
    return [_row_to_rubric(r) for r in rows]


# ---------------------------------------------------------------------------
# Qualification results
# ---------------------------------------------------------------------------


def upsert_qualification_result(
    conn: sqlite3.Connection,
    profile_id: int,
    qualification_id: int,
    result: ScoringResult,
) -> None:
    """Insert or overwrite the score for a (profile, rubric) pair."""
    conn.execute(
        """
        INSERT INTO qualification_results
            (profile_id, qualification_id, score, reasoning, passed, evaluated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(profile_id, qualification_id) DO UPDATE SET
            score        = excluded.score,
            reasoning    = excluded.reasoning,
            passed       = excluded.passed,
            evaluated_at = excluded.evaluated_at
        """,
        (
            profile_id,
            qualification_id,
            result.score,
            result.reasoning,
            int(result.passed),
            _ts(datetime.now()),
        ),
    )
    conn.commit()


def get_qualification_results(
    conn: sqlite3.Connection,
    profile_id: int,
) -> list[QualificationResult]:
    rows = conn.execute(
        """
        SELECT * FROM qualification_results
        WHERE profile_id = ?
        ORDER BY qualification_id
        """,
        (profile_id,),
    ).fetchall()
    return [
        QualificationResult(
            profile_id=r["profile_id"],
            qualification_id=r["qualification_id"],
            score=r["score"],
            reasoning=r["reasoning"],
            passed=bool(r["passed"]),
            evaluated_at=datetime.fromisoformat(r["evaluated_at"]),
        )
        for r in rows
    ]


_PENDING_SCORING_SQL = """
FROM profile_enrichments e
JOIN profiles p ON p.id = e.profile_id
JOIN job_qualifications q ON q.organization_id = p.organization_id
LEFT JOIN qualification_results r
    ON r.profile_id = e.profile_id AND r.qualification_id = q.id
WHERE r.profile_id IS NULL
"""


def list_pending_scoring(conn: sqlite3.Connection, limit: int) -> list[tuple[int, int]]:
    """Return (profile_id, rubric_id) pairs of enriched profiles not yet scored."""
    rows = conn.execute(
        f"SELECT e.profile_id, q.id AS qualification_id {_PENDING_SCORING_SQL}"
        " ORDER BY e.enriched_at, q.id LIMIT ?",
        (limit,),
    ).fetchall()
    return [(r["profile_id"], r["qualification_id"]) for r in rows]


def count_pending_scoring(conn: sqlite3.Connection) -> int:
    row = conn.execute(f"SELECT COUNT(*) {_PENDING_SCORING_SQL}").fetchone()
    return int(row[0])


def list_unenriched_profiles(conn: sqlite3.Connection, limit: int) -> list[sqlite3.Row]:
    """Return profiles with no enrichment row and no recorded PDL miss, oldest first."""
    return conn.execute(
        "SELECT p.* FROM profiles p"
        " LEFT JOIN profile_enrichments e ON e.profile_id = p.id"
        " LEFT JOIN pdl_misses m ON m.profile_id = p.id"
        " WHERE e.profile_id IS NULL AND m.profile_id IS NULL"
        " ORDER BY p.captured_at, p.id LIMIT ?",
        (limit,),
    ).fetchall()


def record_pdl_miss(conn: sqlite3.Connection, profile_id: int) -> None:
    """Remember that PDL had no match so later passes move on to other profiles."""
    conn.execute(
        "INSERT INTO pdl_misses (profile_id, looked_up_at) VALUES (?, ?)"
        " ON CONFLICT(profile_id) DO UPDATE SET looked_up_at = excluded.looked_up_at",
        (profile_id, _ts(datetime.now())),
    )
    conn.commit()


# ---------------------------------------------------------------------------
# Job queue messages
# ---------------------------------------------------------------------------


def insert_message(conn: sqlite3.Connection, job_id: str, body: str, now: datetime) -> int:
    ts = _ts(now)
    cursor = conn.execute(
        """
        INSERT INTO job_messages (job_id, body, status, attempts, visible_at, created_at, updated_at)
        VALUES (?, ?, 'ready', 0, ?, ?, ?)
        """,
        (job_id, body, ts, ts, ts),
    )
    conn.commit()
    return cursor.lastrowid or 0


def next_visible_message(conn: sqlite3.Connection, now: datetime) -> sqlite3.Row | None:
    """Oldest message that is ready, or in flight with an expired visibility timeout."""
    return conn.execute(
        """
        SELECT * FROM job_messages
        WHERE status IN ('ready', 'in_flight') AND visible_at <= ?
        ORDER BY visible_at, id
        LIMIT 1
        """,
        (_ts(now),),
    ).fetchone()


def claim_message(
    conn: sqlite3.Connection,
    message_id: int,
    expected_attempts: int,
    now: datetime,
    visible_until: datetime,
) -> bool:
    """Mark a message in flight. Returns False if another consumer claimed it first."""
    cursor = conn.execute(
        """
        UPDATE job_messages
        SET status = 'in_flight', attempts = attempts + 1, visible_at = ?, updated_at = ?
        WHERE id = ? AND attempts = ? AND status IN ('ready', 'in_flight') AND visible_at <= ?
        """,
        (_ts(visible_until), _ts(now), message_id, expected_attempts, _ts(now)),
    )
    conn.commit()
    return cursor.rowcount == 1


def set_message_status(
    conn: sqlite3.Connection,
    message_id: int,
    status: str,
    now: datetime,
    *,
    error: str | None = None,
    visible_at: datetime | None = None,
) -> None:
    conn.execute(
        """
        UPDATE job_messages
        SET status = ?, last_error = COALESCE(?, last_error),
            visible_at = COALESCE(?, visible_at), updated_at = ?
        WHERE id = ?
        """,
        (status, error, _ts(visible_at) if visible_at else None, _ts(now), message_id),
    )
    conn.commit()


def get_message(conn: sqlite3.Connection, message_id: int) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM job_messages WHERE id = ?", (message_id,)).fetchone()


def list_messages(conn: sqlite3.Connection, status: str) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM job_messages WHERE status = ? ORDER BY id", (status,)
    ).fetchall()
