from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from tfcluster.config import Settings
from tfcluster.db_service.connection import build_engine, build_session_factory, init_db
from tfcluster.services.cluster_service import ClusterService
from tfcluster.services.terraform_client import TerraformClient

from fake_terraform import FakeTerraformExecutor


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def engine():
    eng = build_engine("sqlite://")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def executor() -> FakeTerraformExecutor:
    return FakeTerraformExecutor()


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def settings(workspace_root: Path) -> Settings:
    return Settings(
        database_url="sqlite://",
        server_host="127.0.0.1",
        server_port=8080,
        reap_interval=timedelta(minutes=15),
        cluster_ttl=timedelta(hours=2),
        terraform_bin="terraform",
        command_timeout_seconds=30,
        credentials_file=None,
        workspace_root=workspace_root,
        max_destroy_attempts=3,
        log_level="INFO",
    )


@pytest.fixture
def client(executor: FakeTerraformExecutor, workspace_root: Path) -> TerraformClient:
    return TerraformClient(executor, workspace_root=workspace_root)


@pytest.fixture
def service(client: TerraformClient, session_factory) -> ClusterService:
    return ClusterService(client, session_factory, cluster_ttl=timedelta(hours=2), max_destroy_attempts=3)
