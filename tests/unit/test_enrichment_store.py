"""Tests for mapping vendor payloads and storing enrichments."""

import pytest

from leadpipe.core.db import get_enrichment, init_db, insert_profile
from leadpipe.core.schemas import EnrichmentAttributes
from leadpipe.pipeline.enrichment_store import EnrichmentStore, attributes_from_record


@pytest.fixture()
def db(tmp_path):  # type: ignore[no-untyped-def]
    return init_db(tmp_path / "test.db")


class TestAttributesFromRecord:
    def test_full_payload(self) -> None:
        payload = {
            "url": "https://linkedin.com/in/jane",
            "connections": 500,
            "followers": "1200",
            "about": "Builds things.",
            "experience": [{"title": "CTO", "company": "Acme"}],
            "education": [{"school": "MIT"}],
            "skills": ["Python", 42],
            "certifications": [{"name": "AWS"}],
            "languages": [{"language": "English"}],
        }
        attrs = attributes_from_record(payload)
        assert attrs.connection_count == 500
        assert attrs.follower_count == 1200
        assert attrs.about == "Builds things."
        assert attrs.experience == [{"title": "CTO", "company": "Acme"}]
        assert attrs.skills == ["Python", "42"]
        assert attrs.raw_response == payload

    def test_count_key_precedence(self) -> None:
        attrs = attributes_from_record({"connection_count": 10, "connections": 99})
        assert attrs.connection_count == 10

    def test_unusable_counts_are_none(self) -> None:
        attrs = attributes_from_record({"connections": "500+", "followers": True})
        assert attrs.connection_count is None
        assert attrs.follower_count is None

    def test_missing_fields_default(self) -> None:
        attrs = attributes_from_record({"skills": "Python"})
        assert attrs.about is None
        assert attrs.skills == []
        assert attrs.experience == []


class TestEnrichmentStore:
    def test_upsert_last_write_wins(self, db) -> None:  # type: ignore[no-untyped-def]
        pid = insert_profile(db, "org-1", "https://linkedin.com/in/jane", handle="jane")
        store = EnrichmentStore(db)
        store.upsert(pid, EnrichmentAttributes(about="first"))
        store.upsert(pid, EnrichmentAttributes(about="second"))
        e = get_enrichment(db, pid)
        assert e is not None and e.about == "second"

    def test_upsert_by_handle_updates_every_match(self, db) -> None:  # type: ignore[no-untyped-def]
        a = insert_profile(db, "org-1", "https://linkedin.com/in/jane", handle="jane")
        b = insert_profile(db, "org-2", "https://linkedin.com/in/jane", handle="jane")
        updated = EnrichmentStore(db).upsert_by_handle("jane", EnrichmentAttributes(about="hi"))
        assert sorted(updated) == sorted([a, b])
        for pid in (a, b):
            e = get_enrichment(db, pid)
            assert e is not None and e.about == "hi"

    def test_upsert_by_handle_no_match(self, db) -> None:  # type: ignore[no-untyped-def]
        assert EnrichmentStore(db).upsert_by_handle("ghost", EnrichmentAttributes()) == []
