from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from tfcluster.domain import ClusterOutput
from tfcluster.exceptions import (
    EngineError,
    InvalidEngineConfig,
    MissingConfig,
    MissingOutputs,
    StateRefreshError,
)
from tfcluster.services.terraform_client import TerraformClient, parse_outputs

from fake_terraform import FAIL_APPLY, FAIL_DESTROY, FAIL_INIT, FAIL_PLAN, SAMPLE_CONFIG, FakeTerraformExecutor


def _leftovers(root: Path) -> list[Path]:
    return list(root.iterdir())


def test_parse_outputs_v4() -> None:
    state = json.dumps(
        {
            "version": 4,
            "outputs": {
                "b": {"value": "2", "type": "string", "sensitive": True},
                "a": {"value": ["x"], "type": ["list", "string"]},
            },
        }
    ).encode()
    assert parse_outputs(state) == [
        ClusterOutput(name="a", sensitive=False, type=["list", "string"], value=["x"]),
        ClusterOutput(name="b", sensitive=True, type="string", value="2"),
    ]


def test_parse_outputs_v3_root_module() -> None:
    state = (
        b'{"version":3,"terraform_version":"0.11.3","serial":2,'
        b'"modules":[{"path":["root","child"],"outputs":{"ignored":{"value":"x"}}},'
        b'{"path":["root"],"outputs":{"foo":{"sensitive":false,"type":"string","value":"bar"}}}]}'
    )
    assert parse_outputs(state) == [ClusterOutput(name="foo", sensitive=False, type="string", value="bar")]


def test_parse_outputs_empty_and_invalid() -> None:
    assert parse_outputs(None) == []
    assert parse_outputs(b'{"version": 4, "outputs": {}}') == []
    with pytest.raises(EngineError, match="not valid JSON"):
        parse_outputs(b"not json")


@pytest.mark.anyio
async def test_apply_runs_init_plan_apply(
    client: TerraformClient, executor: FakeTerraformExecutor, workspace_root: Path
) -> None:
    result = await client.apply(SAMPLE_CONFIG)

    assert [call[0] for call in executor.calls] == ["init", "plan", "apply"]
    assert executor.calls[1] == ["plan", "-input=false", "-out=terraform.plan"]
    assert executor.calls[2] == ["apply", "-input=false", "-auto-approve", "terraform.plan"]
    assert result.message == "Apply complete! Resources: 1 added, 0 changed, 0 destroyed."
    assert json.loads(result.state)["serial"] == 1
    assert [o.name for o in result.outputs] == ["endpoint", "password"]
    assert result.outputs[1].sensitive is True
    assert "Terraform has been successfully initialized!" in result.output
    assert _leftovers(workspace_root) == []


@pytest.mark.anyio
async def test_apply_and_destroy_log_resource_counts(
    client: TerraformClient, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.INFO):
        applied = await client.apply(SAMPLE_CONFIG)
        await client.destroy(SAMPLE_CONFIG, applied.state)

    messages = [r.getMessage() for r in caplog.records]
    assert any(
        m.startswith("terraform_apply_complete")
        and "up_to_date=False" in m
        and "'added': 1" in m
        for m in messages
    )
    assert any(m.startswith("terraform_destroy_complete") and "'destroyed': 1" in m for m in messages)


@pytest.mark.anyio
async def test_apply_with_prior_state(client: TerraformClient, executor: FakeTerraformExecutor) -> None:
    first = await client.apply(SAMPLE_CONFIG)
    second = await client.apply(SAMPLE_CONFIG, first.state)
    assert executor.prior_states == [None, first.state]
    assert json.loads(second.state)["serial"] == 2


@pytest.mark.anyio
async def test_destroy_plans_with_destroy_flag(
    client: TerraformClient, executor: FakeTerraformExecutor, workspace_root: Path
) -> None:
    applied = await client.apply(SAMPLE_CONFIG)
    executor.calls.clear()

    result = await client.destroy(SAMPLE_CONFIG, applied.state)

    assert executor.calls[1] == ["plan", "-input=false", "-out=terraform.plan", "-destroy"]
    assert executor.prior_states[-1] == applied.state
    assert result.message == "Destroy complete! Resources: 1 destroyed."
    assert json.loads(result.state)["outputs"] == {}
    assert _leftovers(workspace_root) == []


@pytest.mark.anyio
async def test_missing_config(client: TerraformClient, executor: FakeTerraformExecutor) -> None:
    with pytest.raises(MissingConfig):
        await client.apply(b"")
    assert executor.calls == []


@pytest.mark.anyio
async def test_init_failure_is_invalid_engine_config(
    client: TerraformClient, executor: FakeTerraformExecutor, workspace_root: Path
) -> None:
    with pytest.raises(InvalidEngineConfig, match="Invalid block definition"):
        await client.apply(SAMPLE_CONFIG + FAIL_INIT.encode())
    assert [call[0] for call in executor.calls] == ["init"]
    assert _leftovers(workspace_root) == []


@pytest.mark.anyio
async def test_plan_failure_stops_before_apply(
    client: TerraformClient, executor: FakeTerraformExecutor, workspace_root: Path
) -> None:
    with pytest.raises(InvalidEngineConfig, match="Unsupported argument"):
        await client.apply(SAMPLE_CONFIG + FAIL_PLAN.encode())
    assert [call[0] for call in executor.calls] == ["init", "plan"]
    assert _leftovers(workspace_root) == []


@pytest.mark.anyio
async def test_apply_failure_is_engine_error(client: TerraformClient, workspace_root: Path) -> None:
    with pytest.raises(EngineError, match="quota exceeded") as exc_info:
        await client.apply(SAMPLE_CONFIG + FAIL_APPLY.encode())
    assert exc_info.value.code == "ENGINE_ERROR"
    assert _leftovers(workspace_root) == []


@pytest.mark.anyio
async def test_destroy_failure(client: TerraformClient) -> None:
    config = SAMPLE_CONFIG + FAIL_DESTROY.encode()
    applied = await client.apply(config)
    with pytest.raises(EngineError, match="permission denied"):
        await client.destroy(config, applied.state)


@pytest.mark.anyio
async def test_corrupt_prior_state(client: TerraformClient) -> None:
    with pytest.raises(StateRefreshError):
        await client.destroy(SAMPLE_CONFIG, b'{"version": 99, "CORRUPT_STATE": true}')


@pytest.mark.anyio
async def test_expected_outputs_missing(client: TerraformClient) -> None:
    config = b'resource "null_resource" "node" {}\n'
    result = await client.apply(config)
    assert result.outputs == []
    with pytest.raises(MissingOutputs):
        await client.apply(config, expect_outputs=True)


@pytest.mark.anyio
async def test_json_config_written_as_tf_json(client: TerraformClient, executor: FakeTerraformExecutor) -> None:
    config = b'{"output": {"endpoint": {"value": "10.0.0.1"}}}'
    seen: list[list[str]] = []
    original_run = executor.run

    async def _record(args, *, cwd=None, timeout_seconds=None):
        if args[0] == "init":
            seen.append(sorted(p.name for p in cwd.iterdir()))
        return await original_run(args, cwd=cwd, timeout_seconds=timeout_seconds)

    executor.run = _record
    await client.apply(config)
    assert seen == [["terraform.tf.json"]]


@pytest.mark.anyio
async def test_version(client: TerraformClient) -> None:
    assert await client.version() == "Terraform v1.5.7"
