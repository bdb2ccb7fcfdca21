"""Tests for the result poller with a fake sleep clock."""

import gzip
import json

import pytest

from leadpipe.core.config import PollerConfig
from leadpipe.core.errors import DeliveryParseError, DeliveryTimeoutError
from leadpipe.pipeline.poller import ResultPoller, backoff_schedule
from leadpipe.vendor.object_store import LocalObjectStore
from leadpipe.vendor.scrape_client import delivery_key


class FakeSleep:
    """Records requested sleeps; optionally runs a hook after the n-th one."""

    def __init__(self, on_call=None) -> None:  # type: ignore[no-untyped-def]
        self.calls: list[float] = []
        self._on_call = on_call

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self._on_call is not None:
            await self._on_call(len(self.calls))


class TestBackoffSchedule:
    def test_default_schedule_capped(self) -> None:
        delays = list(backoff_schedule(PollerConfig()))
        assert len(delays) == 60
        assert delays[:4] == pytest.approx([5.0, 7.5, 11.25, 16.875])
        assert max(delays) == 30.0
        assert all(d <= 30.0 for d in delays)

    def test_cap_reached_and_held(self) -> None:
        cfg = PollerConfig(initial_delay_s=1, backoff_factor=2, max_delay_s=4, max_attempts=5)
        assert list(backoff_schedule(cfg)) == [1, 2, 4, 4, 4]


class TestResultPoller:
    async def test_timeout_after_full_schedule(self, tmp_path) -> None:  # type: ignore[no-untyped-def]
        cfg = PollerConfig(initial_delay_s=1, backoff_factor=1.5, max_delay_s=3, max_attempts=6)
        sleep = FakeSleep()
        poller = ResultPoller(LocalObjectStore(tmp_path), cfg, delivery_key, sleep=sleep)

        with pytest.raises(DeliveryTimeoutError, match="after 6 attempts"):
            await poller.poll("s_1")

        assert len(sleep.calls) == 6
        assert sleep.calls == pytest.approx([1, 1.5, 2.25, 3, 3, 3])
        assert sum(sleep.calls) == pytest.approx(sum(backoff_schedule(cfg)))

    async def test_returns_records_when_object_appears(self, tmp_path) -> None:  # type: ignore[no-untyped-def]
        store = LocalObjectStore(tmp_path)
        payload = gzip.compress(json.dumps([{"url": "https://linkedin.com/in/a"}]).encode())

        async def deliver_on_third(n: int) -> None:
            if n == 3:
                await store.put(delivery_key("s_1"), payload)

        sleep = FakeSleep(on_call=deliver_on_third)
        poller = ResultPoller(store, PollerConfig(), delivery_key, sleep=sleep)

        records = await poller.poll("s_1")
        assert [r.url for r in records] == ["https://linkedin.com/in/a"]
        assert len(sleep.calls) == 3

    async def test_present_on_first_check_never_sleeps(self, tmp_path) -> None:  # type: ignore[no-untyped-def]
        store = LocalObjectStore(tmp_path)
        await store.put(delivery_key("s_1"), gzip.compress(b"[]"))
        sleep = FakeSleep()
        poller = ResultPoller(store, PollerConfig(), delivery_key, sleep=sleep)
        assert await poller.poll("s_1") == []
        assert sleep.calls == []

    async def test_corrupt_object_is_parse_error(self, tmp_path) -> None:  # type: ignore[no-untyped-def]
        store = LocalObjectStore(tmp_path)
        await store.put(delivery_key("s_1"), b"not gzip")
        poller = ResultPoller(store, PollerConfig(), delivery_key, sleep=FakeSleep())
        with pytest.raises(DeliveryParseError):
            await poller.poll("s_1")
