"""Enrichment store: idempotent, last-write-wins persistence of vendor data."""

import logging
import sqlite3
from typing import Any

from leadpipe.core.db import get_profiles_by_handle, upsert_enrichment
from leadpipe.core.schemas import EnrichmentAttributes

logger = logging.getLogger(__name__)


def _first_int(payload: dict[str, Any], *keys: str) -> int | None:
    for key in keys:
        value = payload.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def attributes_from_record(payload: dict[str, Any]) -> EnrichmentAttributes:
    """Map a vendor payload onto the typed core, keeping the raw payload.

    The vendor has shipped both ``connection_count``/``follower_count`` and
    ``connections``/``followers``; either is accepted.
    """
    about = payload.get("about")
    return EnrichmentAttributes(
        connection_count=_first_int(payload, "connection_count", "connections"),
        follower_count=_first_int(payload, "follower_count", "followers"),
        about=str(about) if about else None,
        experience=_as_list(payload.get("experience")),
        education=_as_list(payload.get("education")),
        skills=[str(s) for s in _as_list(payload.get("skills"))],
        certifications=_as_list(payload.get("certifications")),
        languages=_as_list(payload.get("languages")),
        raw_response=payload,
    )


class EnrichmentStore:
    """Writes enrichment rows keyed by profile id or by public handle."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def upsert(self, profile_id: int, attrs: EnrichmentAttributes) -> None:
        upsert_enrichment(self._conn, profile_id, attrs)
        logger.debug("Stored enrichment for profile %d", profile_id)

    def upsert_by_handle(self, handle: str, attrs: EnrichmentAttributes) -> list[int]:
        """Store ``attrs`` for every profile sharing ``handle``.

        Returns the updated profile ids; empty when nothing matches.
        """
        profile_ids = [row["id"] for row in get_profiles_by_handle(self._conn, handle)]
        for profile_id in profile_ids:
            upsert_enrichment(self._conn, profile_id, attrs)
        logger.debug("Stored enrichment for handle '%s' on %d profiles", handle, len(profile_ids))
        return profile_ids
