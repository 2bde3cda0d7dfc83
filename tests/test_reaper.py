from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from tfcluster.db_service.cluster_repository import ClusterRepository
from tfcluster.db_service.connection import session_scope
from tfcluster.domain import Cluster, ClusterStatus
from tfcluster.exceptions import ConfigurationError
from tfcluster.services.cluster_service import ClusterService
from tfcluster.services.reaper import ClusterReaper
from tfcluster.services.terraform_client import TerraformClient

from fake_terraform import FAIL_DESTROY, SAMPLE_CONFIG, FakeTerraformExecutor

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> _Clock:
    return _Clock(NOW)


@pytest.fixture
def service(client: TerraformClient, session_factory, clock: _Clock) -> ClusterService:
    return ClusterService(client, session_factory, cluster_ttl=timedelta(hours=1), max_destroy_attempts=2, clock=clock)


async def _provisioned(service: ClusterService, config: bytes = SAMPLE_CONFIG) -> Cluster:
    with session_scope(service.session_factory) as session:
        created = await service.create_cluster(session, config)
    await service.wait_idle()
    return created


def _status(session_factory, cluster_id: str) -> ClusterStatus | None:
    with session_scope(session_factory) as session:
        found = [c for c in ClusterRepository(session).get_all() if c.id == cluster_id]
    return found[0].status if found else None


@pytest.mark.parametrize("interval", ["0s", "-5m", "soon", timedelta(0)])
def test_invalid_interval_is_configuration_error(service: ClusterService, interval) -> None:
    with pytest.raises(ConfigurationError):
        ClusterReaper(service, interval)


def test_interval_accepts_duration_string(service: ClusterService) -> None:
    assert ClusterReaper(service, "1m30s").interval == timedelta(seconds=90)


@pytest.mark.anyio
async def test_sweep_destroys_only_expired(service: ClusterService, session_factory, clock: _Clock) -> None:
    old = await _provisioned(service)
    clock.now = NOW + timedelta(minutes=30)
    young = await _provisioned(service)

    clock.now = NOW + timedelta(minutes=61)
    report = await ClusterReaper(service, "15m").reap_clusters()

    assert report.attempted == [old.id]
    assert report.destroyed == [old.id]
    assert report.failed == []
    # destroyed records are purged in the same sweep
    assert report.purged == [old.id]
    assert _status(session_factory, old.id) is None
    assert _status(session_factory, young.id) is ClusterStatus.PROVISION_SUCCESS


@pytest.mark.anyio
async def test_sweep_with_nothing_expired(service: ClusterService, executor: FakeTerraformExecutor) -> None:
    await _provisioned(service)
    calls = len(executor.calls)

    report = await ClusterReaper(service, "15m").reap_clusters()

    assert report.attempted == []
    assert len(executor.calls) == calls
    assert report.request_id


@pytest.mark.anyio
async def test_one_failure_does_not_stop_the_sweep(
    service: ClusterService, session_factory, clock: _Clock
) -> None:
    first = await _provisioned(service)
    broken = await _provisioned(service, SAMPLE_CONFIG + FAIL_DESTROY.encode())
    last = await _provisioned(service)

    clock.now = NOW + timedelta(hours=2)
    report = await ClusterReaper(service, "15m").reap_clusters()

    assert set(report.attempted) == {first.id, broken.id, last.id}
    assert set(report.destroyed) == {first.id, last.id}
    assert report.failed == [broken.id]
    assert _status(session_factory, broken.id) is ClusterStatus.DESTROY_FAILED


@pytest.mark.anyio
async def test_destroy_failed_is_retried_then_abandoned(
    service: ClusterService, session_factory, clock: _Clock, caplog: pytest.LogCaptureFixture
) -> None:
    broken = await _provisioned(service, SAMPLE_CONFIG + FAIL_DESTROY.encode())
    clock.now = NOW + timedelta(hours=2)
    reaper = ClusterReaper(service, "15m")

    first = await reaper.reap_clusters()
    assert first.failed == [broken.id]
    assert first.abandoned == []

    with caplog.at_level(logging.ERROR):
        second = await reaper.reap_clusters()
    assert second.failed == [broken.id]
    assert second.abandoned == [broken.id]
    assert any("reap_cluster_abandoned" in r.getMessage() for r in caplog.records)

    third = await reaper.reap_clusters()
    assert third.attempted == []
    assert third.abandoned == [broken.id]
    with session_scope(session_factory) as session:
        assert ClusterRepository(session).get(broken.id).destroy_attempts == 2


@pytest.mark.anyio
async def test_sweep_recovers_records_left_transient(
    service: ClusterService, session_factory, clock: _Clock
) -> None:
    # a provisioning row with no task behind it, as left when the final write is lost
    stranded = Cluster(
        config=SAMPLE_CONFIG,
        status=ClusterStatus.PROVISIONING,
        created_at=NOW,
        expires_at=NOW + timedelta(hours=1),
    )
    with session_scope(session_factory) as session:
        ClusterRepository(session).insert(stranded)

    report = await ClusterReaper(service, "15m").reap_clusters()
    assert report.recovered == [stranded.id]
    assert report.attempted == []
    assert _status(session_factory, stranded.id) is ClusterStatus.PROVISION_FAILED
    assert "recovered=1" in report.summary()

    clock.now = NOW + timedelta(hours=2)
    report = await ClusterReaper(service, "15m").reap_clusters()
    assert report.recovered == []
    assert report.destroyed == [stranded.id]
    assert _status(session_factory, stranded.id) is None


@pytest.mark.anyio
async def test_cluster_in_flight_is_not_reaped(
    service: ClusterService, session_factory, clock: _Clock, executor: FakeTerraformExecutor
) -> None:
    cluster = await _provisioned(service)
    clock.now = NOW + timedelta(hours=2)

    executor.gate = asyncio.Event()
    with session_scope(session_factory) as session:
        await service.delete_cluster(session, cluster.id)

    report = await ClusterReaper(service, "15m").reap_clusters()
    assert report.attempted == []

    executor.gate.set()
    await service.wait_idle()
    assert _status(session_factory, cluster.id) is ClusterStatus.DESTROYED


@pytest.mark.anyio
async def test_sweeps_do_not_overlap(service: ClusterService, clock: _Clock, executor: FakeTerraformExecutor) -> None:
    await _provisioned(service)
    clock.now = NOW + timedelta(hours=2)
    reaper = ClusterReaper(service, "15m")

    executor.gate = asyncio.Event()
    first = asyncio.create_task(reaper.reap_clusters())
    for _ in range(100):
        await asyncio.sleep(0)
        if executor.calls and executor.calls[-1][0] == "apply":
            break
    second = asyncio.create_task(reaper.reap_clusters())
    await asyncio.sleep(0)
    assert not second.done()

    executor.gate.set()
    first_report, second_report = await asyncio.gather(first, second)
    assert len(first_report.destroyed) == 1
    assert second_report.attempted == []


@pytest.mark.anyio
async def test_start_and_stop_loop(service: ClusterService, clock: _Clock) -> None:
    cluster = await _provisioned(service)
    clock.now = NOW + timedelta(hours=2)
    reaper = ClusterReaper(service, "10ms")

    reaper.start()
    assert reaper.running
    for _ in range(200):
        await asyncio.sleep(0.01)
        if _status(service.session_factory, cluster.id) is None:
            break
    await reaper.stop()

    assert not reaper.running
    assert _status(service.session_factory, cluster.id) is None


@pytest.mark.anyio
async def test_stop_without_start(service: ClusterService) -> None:
    reaper = ClusterReaper(service, "15m")
    await reaper.stop()
    assert not reaper.running
