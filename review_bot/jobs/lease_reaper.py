from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time

from review_bot.services.queue import ACTIVE, DurableQueue, QueueEntry

logger = logging.getLogger(__name__)


def lease_expired(entry: QueueEntry, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    lease = entry.lease_expires_at
    if not lease:
        return False

    if isinstance(lease, str):
        lease = datetime.fromisoformat(lease.replace("Z", "+00:00"))

    return lease <= now


def should_requeue(entry: QueueEntry, now: datetime | None = None) -> bool:
    return entry.state == ACTIVE and lease_expired(entry, now=now)


@dataclass(frozen=True, slots=True)
class HousekeepingResult:
    requeued: int = 0
    purged: int = 0


class Housekeeper:
    """Periodic queue maintenance: expired-lease recovery and retention purge."""

    def __init__(
        self,
        queue: DurableQueue,
        *,
        reap_interval_seconds: float = 15.0,
        reap_batch_size: int = 100,
        retention_interval_seconds: float = 300.0,
    ) -> None:
        self.queue = queue
        self.reap_interval_seconds = reap_interval_seconds
        self.reap_batch_size = reap_batch_size
        self.retention_interval_seconds = retention_interval_seconds
        self._last_reap_at: float | None = None
        self._last_purge_at: float | None = None

    async def run_once(self, now: float | None = None) -> HousekeepingResult:
        now = time.monotonic() if now is None else now
        requeued = 0
        purged = 0

        if self._last_reap_at is None or now - self._last_reap_at >= self.reap_interval_seconds:
            requeued = await self.queue.requeue_expired_leases(limit=self.reap_batch_size)
            if requeued:
                logger.info("requeued expired leases: %s", requeued)
            self._last_reap_at = now

        if self._last_purge_at is None or now - self._last_purge_at >= self.retention_interval_seconds:
            purged = await self.queue.purge_retained()
            if purged:
                logger.info("purged retained queue entries: %s", purged)
            self._last_purge_at = now

        return HousekeepingResult(requeued=requeued, purged=purged)
