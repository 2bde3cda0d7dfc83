"""
Helper for recording cluster operations.

One call = one row in the cluster_operations table.
"""

from __future__ import annotations

import time

from sqlalchemy.orm import Session

from tfcluster.db_service.models import ClusterOperation

# Terraform output can be very long; keep the tail, which carries the errors
MAX_OUTPUT_CHARS = 64_000


class OperationAudit:
    """Record and query apply/destroy attempts for clusters."""

    def __init__(self, *, db: Session, request_id: str | None = None) -> None:
        self._db = db
        self._request_id = request_id

    @staticmethod
    def start() -> float:
        return time.monotonic()

    @staticmethod
    def _duration_ms(start_time: float) -> float:
        return (time.monotonic() - start_time) * 1000

    def _record(
        self,
        *,
        cluster_id: str,
        operation: str,
        status: str,
        start_time: float,
        message: str | None,
        output: str | None,
    ) -> ClusterOperation:
        if output and len(output) > MAX_OUTPUT_CHARS:
            output = output[-MAX_OUTPUT_CHARS:]
        record = ClusterOperation(
            cluster_id=cluster_id,
            operation=operation,
            status=status,
            message=message,
            output=output,
            duration_ms=self._duration_ms(start_time),
            request_id=self._request_id,
        )
        self._db.add(record)
        self._db.flush()
        return record

    def success(
        self,
        *,
        cluster_id: str,
        operation: str,
        start_time: float,
        message: str | None = None,
        output: str | None = None,
    ) -> ClusterOperation:
        return self._record(
            cluster_id=cluster_id,
            operation=operation,
            status="success",
            start_time=start_time,
            message=message,
            output=output,
        )

    def failed(
        self,
        *,
        cluster_id: str,
        operation: str,
        start_time: float,
        error: str,
    ) -> ClusterOperation:
        return self._record(
            cluster_id=cluster_id,
            operation=operation,
            status="failed",
            start_time=start_time,
            message=error,
            output=None,
        )

    def history(self, cluster_id: str, *, limit: int = 100) -> list[ClusterOperation]:
        return (
            self._db.query(ClusterOperation)
            .filter(ClusterOperation.cluster_id == cluster_id)
            .order_by(ClusterOperation.created_at.desc(), ClusterOperation.id.desc())
            .limit(limit)
            .all()
        )
