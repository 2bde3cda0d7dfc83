from __future__ import annotations

import threading

from tfcluster.exceptions import ConflictInProgress


class InFlightRegistry:
    """Each cluster_id with a running apply/destroy holds one token."""

    def __init__(self) -> None:
        self._in_flight: set[str] = set()
        self._guard = threading.Lock()

    def acquire(self, cluster_id: str) -> None:
        with self._guard:
            if cluster_id in self._in_flight:
                raise ConflictInProgress(f"An operation is already in progress for cluster {cluster_id!r}")
            self._in_flight.add(cluster_id)

    def release(self, cluster_id: str) -> None:
        with self._guard:
            self._in_flight.discard(cluster_id)

    def is_in_flight(self, cluster_id: str) -> bool:
        with self._guard:
            return cluster_id in self._in_flight

    def snapshot(self) -> frozenset[str]:
        with self._guard:
            return frozenset(self._in_flight)
