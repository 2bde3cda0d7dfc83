"""SQLAlchemy models for clusters and their operation audit trail."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB

from tfcluster.db_service.connection import Base
from tfcluster.domain import ClusterStatus

_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in ClusterStatus)


class ClusterRecord(Base):
    """One provisioned cluster and its lifecycle status."""

    __tablename__ = "clusters"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    status = Column(String(32), nullable=False, index=True)
    config = Column(LargeBinary, nullable=False)
    state = Column(LargeBinary, nullable=True)
    outputs = Column(JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql"), nullable=True)
    message = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
    expires_at = Column(DateTime(timezone=True), nullable=False)
    destroy_attempts = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_clusters_status_expires", "status", "expires_at"),
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="ck_cluster_status"),
    )


class ClusterOperation(Base):
    """Records a single apply or destroy attempt."""

    __tablename__ = "cluster_operations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cluster_id = Column(String(36), nullable=False, index=True)
    operation = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)
    message = Column(Text, nullable=True)
    output = Column(Text, nullable=True)
    duration_ms = Column(Float, nullable=True)
    request_id = Column(String(64), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_cluster_ops_cluster_operation", "cluster_id", "operation"),
    )
