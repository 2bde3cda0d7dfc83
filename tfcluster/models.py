from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from tfcluster.domain import Cluster


class ErrorResponse(BaseModel):
    code: str
    message: str
    request_id: str | None = None


class OutputResponse(BaseModel):
    name: str
    sensitive: bool = False
    type: Any = None
    value: Any = None


class ClusterBody(BaseModel):
    id: str
    name: str
    status: str
    message: str = ""
    outputs: list[OutputResponse] = Field(default_factory=list)
    created_at: datetime
    expires_at: datetime
    destroy_attempts: int = 0

    @classmethod
    def from_domain(cls, cluster: Cluster) -> "ClusterBody":
        outputs = [OutputResponse(**o.to_dict()) for o in cluster.outputs]
        return cls(
            id=cluster.id,
            name=cluster.name,
            status=cluster.status.value,
            message=cluster.message,
            outputs=outputs,
            created_at=cluster.created_at,
            expires_at=cluster.expires_at,
            destroy_attempts=cluster.destroy_attempts,
        )


class ClusterResponse(BaseModel):
    request_id: str
    cluster: ClusterBody


class ClustersResponse(BaseModel):
    request_id: str
    total_count: int
    clusters: list[ClusterBody] = Field(default_factory=list)


class OperationResponse(BaseModel):
    id: int
    cluster_id: str
    operation: str
    status: str
    message: str | None = None
    duration_ms: float | None = None
    request_id: str | None = None
    created_at: datetime


class OperationListResponse(BaseModel):
    request_id: str
    cluster_id: str
    operations: list[OperationResponse] = Field(default_factory=list)


class VersionResponse(BaseModel):
    request_id: str
    terraform_version: str


class HealthResponse(BaseModel):
    status: str
    reaper_running: bool
    in_flight: int = 0
