"""Identity reconciliation: map delivered vendor records back to profile ids.

Two modes:
  * job-scoped: exact match on the normalized URL among the job's requested URLs
  * handle-scoped: every stored profile sharing the record's public handle
"""

import logging
import sqlite3
from collections import defaultdict
from typing import Any

from leadpipe.core.db import get_profiles_by_handle, insert_profile
from leadpipe.core.errors import ReconciliationError
from leadpipe.core.schemas import VendorRecord
from leadpipe.core.urls import extract_handle, normalize_url

__all__ = [
    "HandleReconciler",
    "JobReconciler",
    "capture_profiles",
    "extract_handle",
    "normalize_url",
]

logger = logging.getLogger(__name__)


class JobReconciler:
    """Resolves records against one job's parallel URL / profile id lists."""

    def __init__(self, profile_urls: list[str], profile_ids: list[int]) -> None:
        if len(profile_urls) != len(profile_ids):
            msg = "profile_urls and profile_ids must be parallel lists"
            raise ValueError(msg)
        self._by_url: dict[str, list[int]] = defaultdict(list)
        for url, profile_id in zip(profile_urls, profile_ids):
            try:
                self._by_url[normalize_url(url)].append(profile_id)
            except ValueError:
                logger.warning("Requested URL %r for profile %d is unparseable", url, profile_id)

    def resolve(self, record: VendorRecord) -> list[int]:
        """Return every profile id in the job that requested ``record``.

        The same person captured twice (URLs differing only by host prefix,
        case or trailing slash) maps to several profile rows.

        Raises:
            ReconciliationError: The URL is missing, unparseable or unknown.
        """
        if not record.url:
            msg = "record has no URL"
            raise ReconciliationError(msg)
        try:
            key = normalize_url(record.url)
        except ValueError as e:
            raise ReconciliationError(str(e)) from e
        profile_ids = self._by_url.get(key)
        if not profile_ids:
            msg = f"no requested profile matches {record.url}"
            raise ReconciliationError(msg)
        return list(profile_ids)


class HandleReconciler:
    """Resolves records by public handle across every stored profile."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def handle_for(self, record: VendorRecord) -> str:
        handle = extract_handle(record.url)
        if handle is None:
            msg = f"cannot extract a handle from {record.url!r}"
            raise ReconciliationError(msg)
        return handle

    def resolve(self, record: VendorRecord) -> list[int]:
        """Return every profile id sharing the record's handle (at least one).

        Raises:
            ReconciliationError: No handle can be parsed or nothing matches.
        """
        handle = self.handle_for(record)
        rows = get_profiles_by_handle(self._conn, handle)
        if not rows:
            msg = f"no profile found with handle '{handle}'"
            raise ReconciliationError(msg)
        return [row["id"] for row in rows]


def capture_profiles(
    conn: sqlite3.Connection,
    organization_id: str,
    captures: list[tuple[str, str | None, dict[str, Any]]],
) -> list[int]:
    """Store ``(profile_url, display_name, raw_attributes)`` tuples from the capture engine.

    The public handle is derived from each URL on insert so out-of-band
    deliveries can find the profile later. Returns profile ids in input order.
    """
    ids = []
    for profile_url, display_name, raw_attributes in captures:
        ids.append(
            insert_profile(
                conn,
                organization_id,
                profile_url,
                display_name=display_name,
                raw_attributes=raw_attributes,
            )
        )
    logger.info("Captured %d profiles for organization %s", len(ids), organization_id)
    return ids
