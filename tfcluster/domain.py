"""
Cluster domain model.

A cluster is one unit of infrastructure provisioned from a caller-supplied
terraform configuration. Its status only moves along ALLOWED_TRANSITIONS:

    requested -> provisioning -> provision_success | provision_failed
    provision_success | provision_failed -> destroying
    destroying -> destroyed | destroy_failed
    destroy_failed -> destroying  (retry)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any

from tfcluster.exceptions import InvalidStateTransition


class ClusterStatus(Enum):
    """Cluster lifecycle states."""
    REQUESTED = "requested"
    PROVISIONING = "provisioning"
    PROVISION_SUCCESS = "provision_success"
    PROVISION_FAILED = "provision_failed"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    DESTROY_FAILED = "destroy_failed"


ALLOWED_TRANSITIONS = MappingProxyType(
    {
        ClusterStatus.REQUESTED: frozenset({ClusterStatus.PROVISIONING, ClusterStatus.PROVISION_FAILED}),
        ClusterStatus.PROVISIONING: frozenset({ClusterStatus.PROVISION_SUCCESS, ClusterStatus.PROVISION_FAILED}),
        ClusterStatus.PROVISION_SUCCESS: frozenset({ClusterStatus.DESTROYING}),
        ClusterStatus.PROVISION_FAILED: frozenset({ClusterStatus.DESTROYING}),
        ClusterStatus.DESTROYING: frozenset({ClusterStatus.DESTROYED, ClusterStatus.DESTROY_FAILED}),
        ClusterStatus.DESTROY_FAILED: frozenset({ClusterStatus.DESTROYING}),
        ClusterStatus.DESTROYED: frozenset(),
    }
)

TRANSIENT_STATUSES = frozenset(
    {ClusterStatus.REQUESTED, ClusterStatus.PROVISIONING, ClusterStatus.DESTROYING}
)

# Statuses the reaper may pick up once a cluster has expired.
REAPABLE_STATUSES = frozenset(
    {ClusterStatus.PROVISION_SUCCESS, ClusterStatus.PROVISION_FAILED, ClusterStatus.DESTROY_FAILED}
)

# Lifetime given to records built without an explicit expiry.
DEFAULT_CLUSTER_TTL = timedelta(hours=2)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ClusterOutput:
    """One exposed terraform output value."""
    name: str
    sensitive: bool
    type: Any
    value: Any

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "sensitive": self.sensitive, "type": self.type, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClusterOutput":
        return cls(
            name=data["name"],
            sensitive=bool(data.get("sensitive", False)),
            type=data.get("type"),
            value=data.get("value"),
        )


@dataclass
class Cluster:
    """
    Cluster entity.

    ``state`` and ``outputs`` are only written together by ``mark_provisioned``
    (or ``mark_destroyed`` for state); failures only touch ``status`` and
    ``message``.
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    status: ClusterStatus = ClusterStatus.REQUESTED
    config: bytes = b""
    state: bytes | None = None
    outputs: list[ClusterOutput] = field(default_factory=list)
    message: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    expires_at: datetime = None  # type: ignore[assignment]
    destroy_attempts: int = 0

    def __post_init__(self) -> None:
        if not self.name:
            self.name = f"cluster-{self.id.replace('-', '')[:8]}"
        if self.expires_at is None:
            self.expires_at = self.created_at + DEFAULT_CLUSTER_TTL

    @classmethod
    def new(cls, config: bytes, *, ttl: timedelta, name: str | None = None, now: datetime | None = None) -> "Cluster":
        created_at = now or _utcnow()
        return cls(
            name=name or "",
            config=config,
            created_at=created_at,
            expires_at=created_at + ttl,
        )

    def can_transition(self, to_status: ClusterStatus) -> bool:
        return to_status in ALLOWED_TRANSITIONS[self.status]

    def _transition(self, to_status: ClusterStatus) -> None:
        if not self.can_transition(to_status):
            raise InvalidStateTransition(self.status.value, to_status.value)
        self.status = to_status

    @property
    def is_transient(self) -> bool:
        return self.status in TRANSIENT_STATUSES

    def begin_provisioning(self) -> None:
        self._transition(ClusterStatus.PROVISIONING)

    def mark_provisioned(self, *, state: bytes, outputs: list[ClusterOutput], message: str) -> None:
        self._transition(ClusterStatus.PROVISION_SUCCESS)
        self.state = state
        self.outputs = list(outputs)
        self.message = message

    def mark_provision_failed(self, message: str) -> None:
        self._transition(ClusterStatus.PROVISION_FAILED)
        self.message = message

    def begin_destroy(self) -> None:
        self._transition(ClusterStatus.DESTROYING)
        self.destroy_attempts += 1

    def mark_destroyed(self, *, state: bytes | None, message: str) -> None:
        self._transition(ClusterStatus.DESTROYED)
        if state:
            self.state = state
        self.message = message

    def mark_destroy_failed(self, message: str) -> None:
        self._transition(ClusterStatus.DESTROY_FAILED)
        self.message = message
