from __future__ import annotations

import json
import logging
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from tfcluster.exceptions import CleanupFailed, MissingConfig

WORKSPACE_PREFIX = "tfcluster_workspace_"
CONFIG_FILE_NAME = "terraform.tf"
JSON_CONFIG_FILE_NAME = "terraform.tf.json"
STATE_FILE_NAME = "terraform.tfstate"
PLAN_FILE_NAME = "terraform.plan"

_logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Workspace:
    path: Path
    config_file: Path

    @property
    def state_file(self) -> Path:
        return self.path / STATE_FILE_NAME

    @property
    def plan_file(self) -> Path:
        return self.path / PLAN_FILE_NAME

    def read_state(self) -> bytes | None:
        """The state terraform left behind, or None when it wrote nothing."""
        if not self.state_file.exists():
            return None
        return self.state_file.read_bytes()


def config_file_name(config: bytes) -> str:
    """Terraform only parses JSON configuration from files ending in .tf.json."""
    try:
        parsed = json.loads(config)
    except (UnicodeDecodeError, ValueError):
        return CONFIG_FILE_NAME
    return JSON_CONFIG_FILE_NAME if isinstance(parsed, dict) else CONFIG_FILE_NAME


def remove_workspace(path: Path, *, logger: logging.Logger | None = None) -> None:
    log = logger or _logger
    if not path.exists():
        log.warning("workspace_missing path=%s", path)
        return
    try:
        shutil.rmtree(path)
    except OSError as e:
        raise CleanupFailed(f"Failed to remove workspace {path}: {e}") from e
    log.debug("workspace_removed path=%s", path)


@contextmanager
def terraform_workspace(
    config: bytes,
    state: bytes | None = None,
    *,
    root: Path | None = None,
    logger: logging.Logger | None = None,
) -> Iterator[Workspace]:
    """
    Materialize config/state into a disposable directory for one orchestration.

    The directory is removed on every exit path. A removal failure raises
    CleanupFailed only when nothing else is already propagating; otherwise it is
    logged and the original error wins.
    """
    log = logger or _logger
    if not config:
        raise MissingConfig()

    path = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=str(root) if root else None))
    log.debug("workspace_created path=%s", path)
    try:
        config_file = path / config_file_name(config)
        config_file.write_bytes(config)
        if state:
            (path / STATE_FILE_NAME).write_bytes(state)
        yield Workspace(path=path, config_file=config_file)
    except BaseException:
        try:
            remove_workspace(path, logger=log)
        except CleanupFailed as cleanup_error:
            log.error("workspace_cleanup_failed path=%s error=%s", path, cleanup_error.message)
        raise
    remove_workspace(path, logger=log)
