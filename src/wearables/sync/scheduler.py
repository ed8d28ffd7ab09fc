"""Batch sync runner for all active Whoop connections.

Invoked by the cron route.  Every active connection gets one
``SyncOrchestrator.sync_user`` run, at most ``max_concurrent`` at a time:

1. List active connections
2. Run each user's sync under a shared semaphore
3. Await every task independently — one failure never aborts the rest
4. Summarize outcomes and per-metric totals

Users whose sync is already running (a manual trigger, say) are skipped.
The per-user locks live in ``UserSyncLocks``, shared with the manual route.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator
from uuid import UUID

from src.wearables.base import RecordType, utc_now
from src.wearables.errors import SyncInProgressError
from src.wearables.sync.orchestrator import (
    FAILED_MESSAGE,
    SyncContext,
    SyncOrchestrator,
    SyncOutcome,
    UserSyncResult,
)

logger = logging.getLogger("prime.wearables.sync.scheduler")

ALREADY_RUNNING_MESSAGE = "A sync is already running for this user."


class UserSyncLocks:
    """Per-user ``asyncio.Lock`` registry.

    A lock is registered only while its sync runs and is dropped on release.
    A second caller for the same user is refused, never queued, so no task
    is ever left waiting on a dropped lock.

    Usage::

        locks = UserSyncLocks()
        if not locks.is_running(user_id):
            async with locks.hold(user_id):
                ...
    """

    def __init__(self) -> None:
        self._locks: dict[UUID, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def is_running(self, user_id: UUID) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, user_id: UUID) -> AsyncIterator[None]:
        """Hold the user's lock for the duration of the block.

        Raises:
            SyncInProgressError: A sync for ``user_id`` is already running.
        """
        if self.is_running(user_id):
            raise SyncInProgressError(ALREADY_RUNNING_MESSAGE)
        lock = self._locks[user_id] = asyncio.Lock()
        try:
            async with lock:
                yield
        finally:
            if self._locks.get(user_id) is lock:
                del self._locks[user_id]


@dataclass
class BatchSummary:
    """Result of one batch run.

    Attributes:
        total:      Active connections found.
        successful: Runs that ended in SUCCESS.
        skipped:    Users whose sync was already running elsewhere.
        failed:     Every other run.
        results:    One UserSyncResult per connection.
        started_at: When the batch began.
    """

    total: int = 0
    successful: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[UserSyncResult] = field(default_factory=list)
    started_at: datetime | None = None

    def totals_by_metric(self) -> dict[str, int]:
        totals = {rt.value: 0 for rt in RecordType}
        for r in self.results:
            for metric, count in r.counts.items():
                totals[metric] = totals.get(metric, 0) + count
        return totals

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "skipped": self.skipped,
            "failed": self.failed,
            "totals": self.totals_by_metric(),
            "results": [r.to_dict() for r in self.results],
        }


class BatchRunner:
    """Sync every active Whoop connection with bounded concurrency.

    Usage::

        runner = BatchRunner(ctx)
        summary = await runner.sync_all_active()
    """

    def __init__(
        self,
        ctx: SyncContext,
        max_concurrent: int | None = None,
        locks: UserSyncLocks | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            ctx:            Shared sync dependencies.
            max_concurrent: Maximum simultaneous user syncs
                            (``batch.max_concurrent`` in sync_config.yaml by default).
            locks:          Per-user locks shared with the manual trigger.
        """
        self._ctx = ctx
        self._orchestrator = SyncOrchestrator(ctx)
        self._max_concurrent = max_concurrent or ctx.config.max_concurrent
        self._locks = locks if locks is not None else UserSyncLocks()

    async def sync_all_active(self) -> BatchSummary:
        summary = BatchSummary(started_at=self._ctx.now())
        connections = await self._ctx.repository.list_active_connections()
        summary.total = len(connections)

        if not connections:
            logger.info("BatchRunner: no active Whoop connections")
            return summary

        logger.info(
            "BatchRunner: syncing %d connection(s), max %d concurrent",
            len(connections), self._max_concurrent,
        )
        semaphore = asyncio.Semaphore(self._max_concurrent)
        tasks = [self._run_one(c.user_id, semaphore) for c in connections]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        for conn, outcome in zip(connections, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Sync task for user %s raised: %r", conn.user_id, outcome
                )
                outcome = UserSyncResult(
                    user_id=conn.user_id, outcome=SyncOutcome.FAILED, message=FAILED_MESSAGE
                )
            summary.results.append(outcome)

        summary.successful = sum(1 for r in summary.results if r.success)
        summary.skipped = sum(1 for r in summary.results if r.message == ALREADY_RUNNING_MESSAGE)
        summary.failed = summary.total - summary.successful - summary.skipped

        totals = summary.totals_by_metric()
        logger.info(
            "BatchRunner: %d/%d succeeded, %d skipped, %d failed; records %s (total %d)",
            summary.successful, summary.total, summary.skipped, summary.failed,
            totals, sum(totals.values()),
        )
        return summary

    async def _run_one(self, user_id: UUID, semaphore: asyncio.Semaphore) -> UserSyncResult:
        async with semaphore:
            if self._locks.is_running(user_id):
                logger.info("BatchRunner: sync already running for user %s; skipping", user_id)
                return UserSyncResult(
                    user_id=user_id,
                    outcome=SyncOutcome.RETRY_LATER,
                    message=ALREADY_RUNNING_MESSAGE,
                )
            async with self._locks.hold(user_id):
                return await self._orchestrator.sync_user(user_id)


async def sync_all_active(
    ctx: SyncContext,
    max_concurrent: int | None = None,
    locks: UserSyncLocks | None = None,
) -> BatchSummary:
    """Convenience wrapper around ``BatchRunner(ctx).sync_all_active()``."""
    return await BatchRunner(ctx, max_concurrent, locks).sync_all_active()
