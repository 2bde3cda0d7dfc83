from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tfcluster.domain import ClusterOutput
from tfcluster.exceptions import EngineError, InvalidEngineConfig, MissingOutputs
from tfcluster.services.terraform_executor import TerraformCommandExecutor, TerraformResult
from tfcluster.services.terraform_markers import (
    INIT_SUCCESS_MARKER,
    classify_failure,
    completion_counts,
    initialized_empty_directory,
    is_up_to_date,
    summarize_output,
)
from tfcluster.services.workspace import PLAN_FILE_NAME, Workspace, terraform_workspace


@dataclass(frozen=True, slots=True)
class ApplyResult:
    state: bytes
    outputs: list[ClusterOutput]
    message: str
    output: str = ""


@dataclass(frozen=True, slots=True)
class DestroyResult:
    state: bytes | None
    message: str
    output: str = ""


@dataclass(slots=True)
class _RunLog:
    """Combined output of every command in one orchestration."""
    parts: list[str] = field(default_factory=list)

    def add(self, result: TerraformResult) -> None:
        if result.output:
            self.parts.append(result.output)

    def text(self) -> str:
        return "\n".join(self.parts)


def parse_outputs(state: bytes | None) -> list[ClusterOutput]:
    """Root-module outputs from a terraform state snapshot (format v3 or v4)."""
    if not state:
        return []
    try:
        data = json.loads(state)
    except (UnicodeDecodeError, ValueError) as e:
        raise EngineError(f"terraform state is not valid JSON: {e}") from e

    raw: dict[str, Any] = {}
    if isinstance(data.get("outputs"), dict):
        raw = data["outputs"]
    else:
        for module in data.get("modules") or []:
            if module.get("path") == ["root"]:
                raw = module.get("outputs") or {}
                break

    return [
        ClusterOutput(
            name=name,
            sensitive=bool(spec.get("sensitive", False)),
            type=spec.get("type"),
            value=spec.get("value"),
        )
        for name, spec in sorted(raw.items())
    ]


class TerraformClient:
    """Runs init -> plan -> apply/destroy for one configuration in a throwaway workspace."""

    def __init__(
        self,
        executor: TerraformCommandExecutor,
        *,
        workspace_root: Path | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.executor = executor
        self.workspace_root = workspace_root
        self._logger = logger or logging.getLogger(__name__)

    async def _run_checked(self, args: list[str], ws: Workspace, fallback: str, log: _RunLog) -> TerraformResult:
        result = await self.executor.run(args, cwd=ws.path)
        log.add(result)
        if result.exit_code != 0:
            raise classify_failure(result.output, fallback)
        return result

    async def _init(self, ws: Workspace, log: _RunLog) -> TerraformResult:
        result = await self._run_checked(
            ["init", "-input=false", "-backend=false"], ws, "terraform init failed", log
        )
        # terraform exits 0 here, but a workspace without configuration is unusable
        if initialized_empty_directory(result.output):
            raise InvalidEngineConfig("terraform init found no configuration in the workspace")
        if INIT_SUCCESS_MARKER not in result.output:
            self._logger.warning("terraform_init_unrecognized_output workspace=%s", ws.path)
        return result

    async def _plan(self, ws: Workspace, log: _RunLog, *, destroy: bool) -> TerraformResult:
        args = ["plan", "-input=false", f"-out={PLAN_FILE_NAME}"]
        if destroy:
            args.append("-destroy")
        return await self._run_checked(args, ws, "terraform plan failed", log)

    async def _apply_plan(self, ws: Workspace, log: _RunLog, fallback: str) -> TerraformResult:
        return await self._run_checked(
            ["apply", "-input=false", "-auto-approve", PLAN_FILE_NAME], ws, fallback, log
        )

    async def apply(
        self,
        config: bytes,
        prior_state: bytes | None = None,
        *,
        expect_outputs: bool = False,
    ) -> ApplyResult:
        log = _RunLog()
        with terraform_workspace(config, prior_state, root=self.workspace_root, logger=self._logger) as ws:
            await self._init(ws, log)
            await self._plan(ws, log, destroy=False)
            result = await self._apply_plan(ws, log, "terraform apply failed")

            state = ws.read_state()
            if state is None:
                raise EngineError("terraform apply finished without writing a state file")
            outputs = parse_outputs(state)

        if expect_outputs and not outputs:
            raise MissingOutputs()
        message = summarize_output(result.output)
        self._logger.info(
            "terraform_apply_complete outputs=%d up_to_date=%s resources=%s message=%s",
            len(outputs),
            is_up_to_date(log.text()),
            completion_counts(result.output),
            message,
        )
        return ApplyResult(state=state, outputs=outputs, message=message, output=log.text())

    async def destroy(self, config: bytes, prior_state: bytes | None = None) -> DestroyResult:
        log = _RunLog()
        with terraform_workspace(config, prior_state, root=self.workspace_root, logger=self._logger) as ws:
            await self._init(ws, log)
            await self._plan(ws, log, destroy=True)
            result = await self._apply_plan(ws, log, "terraform destroy failed")
            state = ws.read_state()

        message = summarize_output(result.output)
        self._logger.info(
            "terraform_destroy_complete resources=%s message=%s", completion_counts(result.output), message
        )
        return DestroyResult(state=state, message=message, output=log.text())

    async def version(self) -> str:
        result = await self.executor.run(["-version"])
        if result.exit_code != 0:
            raise classify_failure(result.output, "failed to retrieve terraform version")
        # Later lines carry provider versions and upgrade notices
        lines = result.stdout.strip().splitlines()
        if not lines:
            raise EngineError("terraform -version produced no output")
        return lines[0].strip()
