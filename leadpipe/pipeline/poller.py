"""Result poller: waits for a snapshot's delivery object with exponential backoff.

Attempt ``i`` checks the store, then sleeps ``delay_i`` on a miss, where
``delay_0 = initial_delay_s`` and ``delay_{i+1} = min(delay_i * factor, cap)``.
Giving up after ``max_attempts`` misses therefore takes exactly
``sum(backoff_schedule(config))`` seconds of sleep.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator

from leadpipe.core.config import PollerConfig
from leadpipe.core.errors import DeliveryTimeoutError
from leadpipe.core.schemas import VendorRecord
from leadpipe.vendor.object_store import ObjectStore
from leadpipe.vendor.records import decode_delivery

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def backoff_schedule(config: PollerConfig) -> Iterator[float]:
    """Yield the sleep after each miss, one per attempt."""
    delay = config.initial_delay_s
    for _ in range(config.max_attempts):
        yield min(delay, config.max_delay_s)
        delay = min(delay * config.backoff_factor, config.max_delay_s)


class ResultPoller:
    """Polls an object store for a delivery key and decodes it on arrival."""

    def __init__(
        self,
        store: ObjectStore,
        config: PollerConfig,
        key_for: Callable[[str], str],
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._config = config
        self._key_for = key_for
        self._sleep = sleep

    async def poll(self, snapshot_id: str) -> list[VendorRecord]:
        """Block until the snapshot's delivery exists, then return its records.

        Raises:
            DeliveryTimeoutError: The object never appeared within the budget.
            DeliveryParseError: The object arrived but could not be decoded.
        """
        key = self._key_for(snapshot_id)
        for attempt, delay in enumerate(backoff_schedule(self._config), start=1):
            data = await self._store.get(key)
            if data is not None:
                logger.info("Delivery %s found on attempt %d", key, attempt)
                return decode_delivery(data, source=key)
            logger.debug(
                "Delivery %s not ready (attempt %d/%d), sleeping %.1fs",
                key, attempt, self._config.max_attempts, delay,
            )
            await self._sleep(delay)

        msg = (
            f"Snapshot {snapshot_id} was not delivered to {key} "
            f"after {self._config.max_attempts} attempts"
        )
        raise DeliveryTimeoutError(msg)
