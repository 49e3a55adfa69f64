"""Recurring aggregation passes.

``TopologyWatcher`` runs ``Fetcher.fetch()`` on an interval and publishes
the result.  A pass either replaces the published snapshot with a complete
new one, or fails and leaves the previous snapshot in place.  Nothing from
a failed, timed-out or cancelled pass is ever observable.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from clusterscope.models.state import Cluster
from clusterscope.observability.logging import get_logger
from clusterscope.observability.metrics import (
    aggregation_duration_seconds,
    aggregation_passes_total,
    snapshot_entities,
)
from clusterscope.topology.fetcher import Fetcher, ListingError

_logger = get_logger("topology.watcher")

SnapshotCallback = Callable[[Cluster], Awaitable[None] | None]


class TopologyWatcher:
    """Owns the latest published Cluster snapshot.

    Args:
        fetcher:       Builds one snapshot per call.
        interval:      Seconds between the start of consecutive passes.
        pass_timeout:  Deadline for a single pass, in seconds.
        on_snapshot:   Called with every newly published snapshot.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        interval: float = 30.0,
        pass_timeout: float = 20.0,
        on_snapshot: SnapshotCallback | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._interval = interval
        self._pass_timeout = pass_timeout
        self._on_snapshot = on_snapshot
        self._snapshot: Cluster | None = None
        self._last_success: datetime | None = None
        self._last_error: str | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def snapshot(self) -> Cluster | None:
        """The last successfully built snapshot, or None before the first one."""
        return self._snapshot

    @property
    def last_success(self) -> datetime | None:
        return self._last_success

    @property
    def last_error(self) -> str | None:
        """Error of the most recent pass, or None if it succeeded."""
        return self._last_error

    async def run_pass(self) -> Cluster:
        """Run one aggregation pass and publish its snapshot.

        Raises:
            ListingError: a resource kind could not be listed.
            TimeoutError: the pass exceeded its deadline.
        """
        started = time.monotonic()
        try:
            async with asyncio.timeout(self._pass_timeout):
                cluster = await self._fetcher.fetch()
        except ListingError as exc:
            aggregation_passes_total.labels(result="listing_error").inc()
            self._last_error = str(exc)
            _logger.error("aggregation_pass_failed", kind=str(exc.kind), error=str(exc.cause))
            raise
        except TimeoutError:
            aggregation_passes_total.labels(result="timeout").inc()
            self._last_error = f"aggregation pass exceeded {self._pass_timeout}s"
            _logger.error("aggregation_pass_timed_out", timeout=self._pass_timeout)
            raise
        except asyncio.CancelledError:
            aggregation_passes_total.labels(result="cancelled").inc()
            _logger.info("aggregation_pass_cancelled")
            raise

        self._publish(cluster)
        duration = time.monotonic() - started
        aggregation_passes_total.labels(result="success").inc()
        aggregation_duration_seconds.observe(duration)
        _logger.info("aggregation_pass_completed", duration_ms=round(duration * 1000, 1), **cluster.entity_counts())

        if self._on_snapshot is not None:
            await self._notify(self._on_snapshot, cluster)
        return cluster

    def _publish(self, cluster: Cluster) -> None:
        self._snapshot = cluster
        self._last_success = datetime.now(tz=UTC)
        self._last_error = None
        for kind, count in cluster.entity_counts().items():
            snapshot_entities.labels(kind=kind).set(count)

    async def _notify(self, callback: SnapshotCallback, cluster: Cluster) -> None:
        try:
            result = callback(cluster)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            # The snapshot stays published; delivery is the consumer's concern.
            _logger.warning("snapshot_callback_failed", error=str(exc))

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start running passes in the background."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(), name="topology-watcher")

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to exit."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            started = time.monotonic()
            try:
                await self.run_pass()
            except (ListingError, TimeoutError):
                pass  # already logged, the previous snapshot stays published
            except Exception as exc:
                self._last_error = str(exc)
                _logger.error("aggregation_pass_crashed", error=str(exc))
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(self._interval - elapsed, 0.0))
