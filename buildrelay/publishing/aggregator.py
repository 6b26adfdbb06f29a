"""Per-check-suite buffering of accepted uploads.

A check suite completes independently of any single upload, so uploads
are held here, keyed by suite id, until GitHub reports the suite as
completed. The aggregator is created by ``create_app()`` and injected into
the routers; nothing else shares its state.

Known gap: an upload that arrives after its suite's completion webhook has
already drained the batch starts a new batch that is only drained if the
suite reports completion again.
"""

from __future__ import annotations

import asyncio
import logging

from buildrelay.publishing.types import UploadContext

logger = logging.getLogger(__name__)


class SuiteAggregator:
    """Suite id -> pending UploadContexts, guarded by one asyncio lock.

    ``enqueue`` and ``drain`` are each atomic with respect to the other.
    Publishing a drained batch happens outside the lock.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._batches: dict[int, list[UploadContext]] = {}

    async def enqueue(self, suite_id: int, context: UploadContext) -> int:
        """Append an upload to its suite's batch. Returns the new batch size."""
        async with self._lock:
            batch = self._batches.setdefault(suite_id, [])
            batch.append(context)
            size = len(batch)
        logger.info(
            "Queued upload from job '%s' (%s) for check suite %d (%d pending)",
            context.job_name, context.full_name, suite_id, size,
        )
        return size

    async def drain(self, suite_id: int) -> list[UploadContext]:
        """Remove and return the suite's batch; empty if nothing is queued."""
        async with self._lock:
            batch = self._batches.pop(suite_id, [])
        logger.info("Drained %d upload(s) for check suite %d", len(batch), suite_id)
        return batch

    # Inspection helpers for tests and operators; the request path only
    # enqueues and drains.

    async def pending(self, suite_id: int) -> int:
        """Number of uploads queued for the suite."""
        async with self._lock:
            return len(self._batches.get(suite_id, ()))

    async def suite_ids(self) -> list[int]:
        """Suite ids with at least one queued upload."""
        async with self._lock:
            return list(self._batches)
