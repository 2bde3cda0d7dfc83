"""
Expiry sweeper.

Background loop that destroys clusters whose TTL has elapsed.

Each sweep:
1. Fails transient records that have no task behind them (their final write
   was lost)
2. Lists expired clusters (provision_success, provision_failed and
   destroy_failed with retries left)
3. Destroys them one by one, inline, each in its own transaction
4. Purges destroyed records
5. Reports destroy_failed clusters that ran out of attempts

A failure on one cluster is logged and never stops the sweep. Sweeps do not
overlap: a tick that fires while the previous sweep is still running is
dropped.

Usage:
    reaper = ClusterReaper(service, settings.reap_interval)
    reaper.start()
    ...
    await reaper.stop()

For testing:
    report = await reaper.reap_clusters()
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta

from tfcluster.config import parse_positive_duration
from tfcluster.db_service.connection import session_scope
from tfcluster.domain import ClusterStatus
from tfcluster.exceptions import ServiceError
from tfcluster.services.cluster_service import UNRECORDED_MESSAGE, ClusterService


@dataclass
class ReapReport:
    """Outcome of one sweep."""
    request_id: str
    attempted: list[str] = field(default_factory=list)
    destroyed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    purged: list[str] = field(default_factory=list)
    abandoned: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"attempted={len(self.attempted)} destroyed={len(self.destroyed)} "
            f"failed={len(self.failed)} skipped={len(self.skipped)} "
            f"purged={len(self.purged)} abandoned={len(self.abandoned)} recovered={len(self.recovered)}"
        )


class ClusterReaper:
    def __init__(
        self,
        service: ClusterService,
        interval: timedelta | str,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.service = service
        self.interval = parse_positive_duration(interval, name="reap interval")
        self._logger = logger or logging.getLogger(__name__)
        self._sweep_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            self._logger.warning("reaper_already_running")
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="cluster-reaper")
        self._logger.info("reaper_started interval_seconds=%s", self.interval.total_seconds())

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._logger.info("reaper_stopped")

    async def _run(self) -> None:
        seconds = self.interval.total_seconds()
        while True:
            await asyncio.sleep(seconds)
            if self._sweep_lock.locked():
                self._logger.warning("reap_tick_skipped reason=previous_sweep_running")
                continue
            try:
                await self.reap_clusters()
            except Exception:
                # next tick retries
                self._logger.exception("reap_sweep_failed")

    async def reap_clusters(self) -> ReapReport:
        """Run one sweep and return what it did."""
        async with self._sweep_lock:
            return await self._sweep()

    async def _sweep(self) -> ReapReport:
        request_id = str(uuid.uuid4())
        report = ReapReport(request_id=request_id)
        self._logger.info("reap_start request_id=%s", request_id)

        try:
            with session_scope(self.service.session_factory) as session:
                recovered = self.service.recover_interrupted_clusters(session, message=UNRECORDED_MESSAGE)
            report.recovered = [c.id for c in recovered]
        except Exception:
            self._logger.exception("reap_recover_failed request_id=%s", request_id)

        with session_scope(self.service.session_factory) as session:
            expired = self.service.get_expired_clusters(session, request_id=request_id)
            abandoned = self.service.get_abandoned_clusters(session)

        for cluster in expired:
            report.attempted.append(cluster.id)
            try:
                with session_scope(self.service.session_factory) as session:
                    result = await self.service.delete_cluster(
                        session, cluster.id, wait=True, request_id=request_id
                    )
            except ServiceError as e:
                report.skipped.append(cluster.id)
                self._logger.warning(
                    "reap_cluster_skipped request_id=%s cluster_id=%s error=%s", request_id, cluster.id, e
                )
                continue
            except Exception:
                report.failed.append(cluster.id)
                self._logger.exception("reap_cluster_error request_id=%s cluster_id=%s", request_id, cluster.id)
                continue

            if result.status is ClusterStatus.DESTROYED:
                report.destroyed.append(cluster.id)
            else:
                report.failed.append(cluster.id)
                self._logger.warning(
                    "reap_destroy_failed request_id=%s cluster_id=%s attempts=%d message=%s",
                    request_id,
                    cluster.id,
                    result.destroy_attempts,
                    result.message,
                )
                if result.destroy_attempts >= self.service.max_destroy_attempts:
                    abandoned.append(result)

        try:
            with session_scope(self.service.session_factory) as session:
                report.purged = self.service.purge_destroyed_clusters(session, request_id=request_id)
        except Exception:
            self._logger.exception("reap_purge_failed request_id=%s", request_id)

        for cluster in abandoned:
            report.abandoned.append(cluster.id)
            self._logger.error(
                "reap_cluster_abandoned request_id=%s cluster_id=%s attempts=%d message=%s",
                request_id,
                cluster.id,
                cluster.destroy_attempts,
                cluster.message,
            )

        self._logger.info("reap_done request_id=%s %s", request_id, report.summary())
        return report
