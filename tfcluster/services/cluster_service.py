from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Coroutine

from sqlalchemy.orm import Session, sessionmaker

from tfcluster.db_service.cluster_repository import ClusterRepository
from tfcluster.db_service.connection import session_scope
from tfcluster.db_service.models import ClusterOperation
from tfcluster.db_service.operation_audit import OperationAudit
from tfcluster.domain import REAPABLE_STATUSES, TRANSIENT_STATUSES, Cluster, ClusterStatus
from tfcluster.exceptions import InvalidConfig, NotFound, ServiceError
from tfcluster.services.lock_manager import InFlightRegistry
from tfcluster.services.terraform_client import TerraformClient

INTERRUPTED_MESSAGE = "interrupted by service restart"
CANCELLED_MESSAGE = "cancelled before completion"
UNRECORDED_MESSAGE = "outcome of the last operation could not be recorded"

_FAILED_STATUSES = frozenset({ClusterStatus.PROVISION_FAILED, ClusterStatus.DESTROY_FAILED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _failure_message(exc: BaseException) -> str:
    if isinstance(exc, ServiceError):
        return str(exc)
    return f"UNEXPECTED_ERROR: {exc}"


def _fail_transient(cluster: Cluster, message: str) -> None:
    if cluster.status is ClusterStatus.DESTROYING:
        cluster.mark_destroy_failed(message)
    else:
        cluster.mark_provision_failed(message)


class ClusterService:
    """
    Cluster lifecycle: create/delete requests, background apply/destroy, reads.

    Foreground calls run inside the caller's session; background work always
    opens its own session through ``session_factory``. At most one apply or
    destroy runs per cluster id, enforced by the in-flight registry.

    Background tasks work on their own copy of the record, so what a caller
    gets back from ``create_cluster``/``delete_cluster`` is a snapshot.
    """

    def __init__(
        self,
        client: TerraformClient,
        session_factory: sessionmaker,
        *,
        cluster_ttl: timedelta,
        max_destroy_attempts: int = 3,
        persist_attempts: int = 3,
        persist_retry_delay: float = 0.5,
        registry: InFlightRegistry | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.client = client
        self.session_factory = session_factory
        self.cluster_ttl = cluster_ttl
        self.max_destroy_attempts = max_destroy_attempts
        self.persist_attempts = max(1, persist_attempts)
        self.persist_retry_delay = persist_retry_delay
        self.registry = registry or InFlightRegistry()
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()

    # ========================================================================
    # Background task bookkeeping
    # ========================================================================

    def _spawn(
        self,
        coro: Coroutine[None, None, Cluster],
        cluster: Cluster,
        *,
        operation: str,
        request_id: str,
        name: str,
    ) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            # Cancelled before its first step: the worker's own cleanup never ran.
            if finished.cancelled() and cluster.is_transient:
                try:
                    self._abort(cluster, operation=operation, request_id=request_id)
                finally:
                    self.registry.release(cluster.id)

        task.add_done_callback(_done)
        return task

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every background apply/destroy has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_pending(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()

    def _write_outcome(
        self,
        cluster: Cluster,
        *,
        operation: str,
        start_time: float,
        error: str | None,
        output: str | None,
        request_id: str,
    ) -> None:
        with session_scope(self.session_factory) as session:
            ClusterRepository(session).update(cluster)
            audit = OperationAudit(db=session, request_id=request_id)
            if error is None:
                audit.success(
                    cluster_id=cluster.id,
                    operation=operation,
                    start_time=start_time,
                    message=cluster.message,
                    output=output,
                )
            else:
                audit.failed(cluster_id=cluster.id, operation=operation, start_time=start_time, error=error)

    async def _persist(
        self,
        cluster: Cluster,
        *,
        operation: str,
        start_time: float,
        error: str | None,
        output: str | None,
        request_id: str,
    ) -> bool:
        """
        Write an orchestration outcome in a fresh transaction, retrying a few times.

        Returns False when every attempt failed. The row is then still
        transient with no task behind it; the reaper's next sweep moves it
        to a terminal failure through ``recover_interrupted_clusters``.
        """
        for attempt in range(1, self.persist_attempts + 1):
            try:
                self._write_outcome(
                    cluster,
                    operation=operation,
                    start_time=start_time,
                    error=error,
                    output=output,
                    request_id=request_id,
                )
                return True
            except Exception:
                self._logger.exception(
                    "persist_failed request_id=%s cluster_id=%s status=%s attempt=%d/%d",
                    request_id,
                    cluster.id,
                    cluster.status.value,
                    attempt,
                    self.persist_attempts,
                )
            if attempt < self.persist_attempts:
                await asyncio.sleep(self.persist_retry_delay * attempt)

        self._logger.error(
            "persist_abandoned request_id=%s cluster_id=%s status=%s", request_id, cluster.id, cluster.status.value
        )
        return False

    def _abort(self, cluster: Cluster, *, operation: str, request_id: str) -> None:
        """Record a cancelled apply/destroy; must not await."""
        if cluster.is_transient:
            _fail_transient(cluster, CANCELLED_MESSAGE)
        self._logger.warning(
            "%s_cancelled request_id=%s cluster_id=%s status=%s",
            operation,
            request_id,
            cluster.id,
            cluster.status.value,
        )
        try:
            self._write_outcome(
                cluster,
                operation=operation,
                start_time=OperationAudit.start(),
                error=cluster.message if cluster.status in _FAILED_STATUSES else None,
                output=None,
                request_id=request_id,
            )
        except Exception:
            self._logger.exception("persist_failed request_id=%s cluster_id=%s", request_id, cluster.id)

    # ========================================================================
    # Reads
    # ========================================================================

    def get_cluster(self, session: Session, cluster_id: str, *, request_id: str = "") -> Cluster:
        self._logger.info("get_cluster request_id=%s cluster_id=%s", request_id, cluster_id)
        if not cluster_id:
            raise NotFound("Cluster id is required")
        return ClusterRepository(session).get(cluster_id)

    def get_clusters(self, session: Session, *, request_id: str = "") -> list[Cluster]:
        self._logger.info("get_clusters request_id=%s", request_id)
        return ClusterRepository(session).get_all()

    def get_expired_clusters(self, session: Session, *, request_id: str = "") -> list[Cluster]:
        """Expired clusters the reaper may destroy; never ones already being worked on."""
        expired = ClusterRepository(session).find_expired(
            self._clock(),
            REAPABLE_STATUSES,
            max_destroy_attempts=self.max_destroy_attempts,
        )
        in_flight = self.registry.snapshot()
        expired = [c for c in expired if c.id not in in_flight]
        self._logger.info("get_expired_clusters request_id=%s count=%d", request_id, len(expired))
        return expired

    def get_abandoned_clusters(self, session: Session) -> list[Cluster]:
        """destroy_failed clusters that ran out of destroy attempts."""
        return [
            c
            for c in ClusterRepository(session).find_by_status([ClusterStatus.DESTROY_FAILED])
            if c.destroy_attempts >= self.max_destroy_attempts
        ]

    def get_operations(self, session: Session, cluster_id: str, *, limit: int = 100) -> list[ClusterOperation]:
        ClusterRepository(session).get(cluster_id)
        return OperationAudit(db=session).history(cluster_id, limit=limit)

    async def terraform_version(self) -> str:
        return await self.client.version()

    # ========================================================================
    # Create / provision
    # ========================================================================

    async def create_cluster(
        self,
        session: Session,
        config: bytes,
        *,
        name: str | None = None,
        ttl: timedelta | None = None,
        request_id: str = "",
    ) -> Cluster:
        """Persist a requested cluster and start provisioning it in the background."""
        if not config or not config.strip():
            raise InvalidConfig("Missing required terraform configuration")

        cluster = Cluster.new(config, ttl=ttl or self.cluster_ttl, name=name, now=self._clock())
        self._logger.info("create_cluster request_id=%s cluster_id=%s name=%s", request_id, cluster.id, cluster.name)

        self.registry.acquire(cluster.id)
        try:
            created = ClusterRepository(session).insert(cluster)
            session.commit()
        except BaseException:
            self.registry.release(cluster.id)
            raise

        work = dataclasses.replace(created)
        self._spawn(
            self._provision(work, request_id),
            work,
            operation="apply",
            request_id=request_id,
            name=f"provision-{created.id}",
        )
        return created

    async def _provision(self, cluster: Cluster, request_id: str) -> Cluster:
        try:
            cluster.begin_provisioning()
            try:
                with session_scope(self.session_factory) as session:
                    ClusterRepository(session).update(cluster)
            except Exception:
                self._logger.exception("provision_start_failed request_id=%s cluster_id=%s", request_id, cluster.id)
                cluster.mark_provision_failed("failed to record provisioning start")
                await self._persist(
                    cluster,
                    operation="apply",
                    start_time=OperationAudit.start(),
                    error=cluster.message,
                    output=None,
                    request_id=request_id,
                )
                return cluster

            self._logger.info("provisioning request_id=%s cluster_id=%s", request_id, cluster.id)
            start_time = OperationAudit.start()
            error: str | None = None
            output: str | None = None
            try:
                result = await self.client.apply(cluster.config)
            except Exception as e:
                error = _failure_message(e)
                if isinstance(e, ServiceError):
                    self._logger.error(
                        "provision_failed request_id=%s cluster_id=%s error=%s", request_id, cluster.id, error
                    )
                else:
                    self._logger.exception("provision_failed request_id=%s cluster_id=%s", request_id, cluster.id)
                cluster.mark_provision_failed(error)
            else:
                output = result.output
                cluster.mark_provisioned(state=result.state, outputs=result.outputs, message=result.message)
                self._logger.info(
                    "provision_success request_id=%s cluster_id=%s message=%s", request_id, cluster.id, result.message
                )

            await self._persist(
                cluster,
                operation="apply",
                start_time=start_time,
                error=error,
                output=output,
                request_id=request_id,
            )
            return cluster
        except asyncio.CancelledError:
            self._abort(cluster, operation="apply", request_id=request_id)
            raise
        finally:
            self.registry.release(cluster.id)

    # ========================================================================
    # Delete / destroy
    # ========================================================================

    async def delete_cluster(
        self,
        session: Session,
        cluster_id: str,
        *,
        wait: bool = False,
        request_id: str = "",
    ) -> Cluster:
        """
        Move a cluster to destroying and run terraform destroy.

        With ``wait=False`` the destroy runs in the background and the
        destroying record is returned; with ``wait=True`` the terminal record
        is returned. Deleting an already destroyed cluster is a no-op.
        """
        if not cluster_id or not cluster_id.strip():
            raise NotFound("Cluster id is required")

        self._logger.info("delete_cluster request_id=%s cluster_id=%s", request_id, cluster_id)
        self.registry.acquire(cluster_id)
        try:
            repo = ClusterRepository(session)
            cluster = repo.get(cluster_id)
            if cluster.status is ClusterStatus.DESTROYED:
                self.registry.release(cluster_id)
                self._logger.info("delete_cluster_noop request_id=%s cluster_id=%s", request_id, cluster_id)
                return cluster
            cluster.begin_destroy()
            cluster = repo.update(cluster)
            session.commit()
        except BaseException:
            self.registry.release(cluster_id)
            raise

        if wait:
            return await self._destroy(cluster, request_id)
        work = dataclasses.replace(cluster)
        self._spawn(
            self._destroy(work, request_id),
            work,
            operation="destroy",
            request_id=request_id,
            name=f"destroy-{cluster.id}",
        )
        return cluster

    async def _destroy(self, cluster: Cluster, request_id: str) -> Cluster:
        try:
            self._logger.info(
                "destroying request_id=%s cluster_id=%s attempt=%d",
                request_id,
                cluster.id,
                cluster.destroy_attempts,
            )
            start_time = OperationAudit.start()
            error: str | None = None
            output: str | None = None
            try:
                result = await self.client.destroy(cluster.config, cluster.state)
            except Exception as e:
                error = _failure_message(e)
                if isinstance(e, ServiceError):
                    self._logger.error(
                        "destroy_failed request_id=%s cluster_id=%s error=%s", request_id, cluster.id, error
                    )
                else:
                    self._logger.exception("destroy_failed request_id=%s cluster_id=%s", request_id, cluster.id)
                cluster.mark_destroy_failed(error)
            else:
                output = result.output
                cluster.mark_destroyed(state=result.state, message=result.message)
                self._logger.info(
                    "destroy_success request_id=%s cluster_id=%s message=%s", request_id, cluster.id, result.message
                )

            await self._persist(
                cluster,
                operation="destroy",
                start_time=start_time,
                error=error,
                output=output,
                request_id=request_id,
            )
            return cluster
        except asyncio.CancelledError:
            self._abort(cluster, operation="destroy", request_id=request_id)
            raise
        finally:
            self.registry.release(cluster.id)

    # ========================================================================
    # Maintenance
    # ========================================================================

    def purge_destroyed_clusters(self, session: Session, *, request_id: str = "") -> list[str]:
        """Physically remove destroyed clusters."""
        repo = ClusterRepository(session)
        purged: list[str] = []
        for cluster in repo.find_by_status([ClusterStatus.DESTROYED]):
            if self.registry.is_in_flight(cluster.id):
                continue
            repo.delete(cluster.id)
            purged.append(cluster.id)
        if purged:
            self._logger.info("purge_destroyed request_id=%s count=%d", request_id, len(purged))
        return purged

    def recover_interrupted_clusters(self, session: Session, *, message: str = INTERRUPTED_MESSAGE) -> list[Cluster]:
        """
        Move transient clusters with no task behind them into a terminal failure.

        Runs at startup for records left by a previous process, and on every
        reaper sweep for records whose final write was lost.
        """
        repo = ClusterRepository(session)
        recovered: list[Cluster] = []
        for cluster in repo.find_by_status(TRANSIENT_STATUSES):
            if self.registry.is_in_flight(cluster.id):
                continue
            _fail_transient(cluster, message)
            recovered.append(repo.update(cluster))
            self._logger.warning(
                "recovered_interrupted cluster_id=%s status=%s", cluster.id, cluster.status.value
            )
        return recovered
