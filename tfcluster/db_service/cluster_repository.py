"""
Repository for cluster records.

Every method runs against the caller's session; writes are flushed but never
committed here. Commit/rollback belongs to ``session_scope``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from tfcluster.db_service.models import ClusterRecord
from tfcluster.domain import Cluster, ClusterOutput, ClusterStatus
from tfcluster.exceptions import NotFound


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class ClusterRepository:
    def __init__(self, db: Session) -> None:
        self.db = db

    @staticmethod
    def _to_domain(orm: ClusterRecord) -> Cluster:
        return Cluster(
            id=orm.id,
            name=orm.name,
            status=ClusterStatus(orm.status),
            config=orm.config,
            state=orm.state,
            outputs=[ClusterOutput.from_dict(o) for o in (orm.outputs or [])],
            message=orm.message or "",
            created_at=_as_utc(orm.created_at),
            expires_at=_as_utc(orm.expires_at),
            destroy_attempts=orm.destroy_attempts or 0,
        )

    @staticmethod
    def _to_orm(cluster: Cluster) -> ClusterRecord:
        return ClusterRecord(
            id=cluster.id,
            name=cluster.name,
            status=cluster.status.value,
            config=cluster.config,
            state=cluster.state,
            outputs=[o.to_dict() for o in cluster.outputs] if cluster.outputs else None,
            message=cluster.message or None,
            created_at=cluster.created_at,
            expires_at=cluster.expires_at,
            destroy_attempts=cluster.destroy_attempts,
        )

    def get(self, cluster_id: str) -> Cluster:
        orm = self.db.query(ClusterRecord).filter(ClusterRecord.id == cluster_id).first()
        if orm is None:
            raise NotFound(f"Cluster {cluster_id!r} not found")
        return self._to_domain(orm)

    def get_all(self) -> list[Cluster]:
        orms = (
            self.db.query(ClusterRecord)
            .order_by(ClusterRecord.created_at.asc(), ClusterRecord.id.asc())
            .all()
        )
        return [self._to_domain(orm) for orm in orms]

    def find_by_status(self, statuses: Iterable[ClusterStatus]) -> list[Cluster]:
        values = [s.value for s in statuses]
        orms = (
            self.db.query(ClusterRecord)
            .filter(ClusterRecord.status.in_(values))
            .order_by(ClusterRecord.created_at.asc())
            .all()
        )
        return [self._to_domain(orm) for orm in orms]

    def find_expired(
        self,
        now: datetime,
        statuses: Iterable[ClusterStatus],
        *,
        max_destroy_attempts: int,
    ) -> list[Cluster]:
        """Expired clusters in ``statuses``; destroy_failed ones only while retries remain."""
        wanted = set(statuses)
        values = [s.value for s in wanted if s is not ClusterStatus.DESTROY_FAILED]
        retry_clause = and_(
            ClusterRecord.status == ClusterStatus.DESTROY_FAILED.value,
            ClusterRecord.destroy_attempts < max_destroy_attempts,
        )
        status_clause = ClusterRecord.status.in_(values)
        if ClusterStatus.DESTROY_FAILED in wanted:
            status_clause = or_(status_clause, retry_clause)

        orms = (
            self.db.query(ClusterRecord)
            .filter(ClusterRecord.expires_at <= now, status_clause)
            .order_by(ClusterRecord.expires_at.asc())
            .all()
        )
        return [self._to_domain(orm) for orm in orms]

    def insert(self, cluster: Cluster) -> Cluster:
        orm = self._to_orm(cluster)
        self.db.add(orm)
        self.db.flush()
        return self._to_domain(orm)

    def update(self, cluster: Cluster) -> Cluster:
        merged = self.db.merge(self._to_orm(cluster))
        self.db.flush()
        return self._to_domain(merged)

    def delete(self, cluster_id: str) -> int:
        count = (
            self.db.query(ClusterRecord)
            .filter(ClusterRecord.id == cluster_id)
            .delete(synchronize_session=False)
        )
        self.db.flush()
        return count
