from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from tfcluster.exceptions import EngineError, EngineTimeout

DEFAULT_ARGS = ("-no-color",)


@dataclass(frozen=True, slots=True)
class TerraformResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def output(self) -> str:
        """Combined stdout/stderr as terraform users see it."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class TerraformCommandExecutor:
    """Terraform CLI wrapper running every command in an isolated environment."""

    def __init__(
        self,
        terraform_bin: str = "terraform",
        *,
        credentials_file: str | None = None,
        timeout_seconds: int | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.terraform_bin = terraform_bin
        self.credentials_file = credentials_file
        self.timeout_seconds = timeout_seconds
        self._logger = logger or logging.getLogger(__name__)

    def build_env(self) -> dict[str, str]:
        """The complete environment terraform sees; nothing else is inherited."""
        env = {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": os.environ.get("HOME", "/tmp"),
            # Disable the upgrade/security-bulletin phone-home
            "CHECKPOINT_DISABLE": "1",
            "TF_IN_AUTOMATION": "1",
            "TF_INPUT": "0",
        }
        if self.credentials_file:
            env["GOOGLE_APPLICATION_CREDENTIALS"] = self.credentials_file
        return env

    async def run(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        timeout_seconds: int | None = None,
    ) -> TerraformResult:
        """Execute one terraform subcommand, killing it on timeout or cancellation."""
        cmd = [self.terraform_bin, *args, *DEFAULT_ARGS]
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds

        self._logger.info("terraform_exec cmd=%s cwd=%s", cmd, cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=self.build_env(),
            )
        except OSError as e:
            raise EngineError(f"failed to start {self.terraform_bin}: {e}") from e

        try:
            stdout_b, stderr_b = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            await self._kill(process)
            raise EngineTimeout(f"terraform {args[0] if args else ''} timed out after {timeout}s".strip()) from e
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        stdout = stdout_b.decode(errors="replace")
        stderr = stderr_b.decode(errors="replace")
        self._logger.info("terraform_exit cmd=%s code=%s", args[0] if args else "", process.returncode)
        return TerraformResult(stdout=stdout, stderr=stderr, exit_code=process.returncode or 0)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()
