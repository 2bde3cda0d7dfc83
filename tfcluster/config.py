from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from tfcluster.exceptions import ConfigurationError

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> timedelta:
    """Parse a Go-style duration string such as ``90s``, ``15m`` or ``1h30m``."""
    text = (value or "").strip()
    if not text:
        raise ConfigurationError("duration must not be empty")
    if text == "0":
        return timedelta(0)

    seconds = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART_RE.match(text, pos)
        if match is None:
            raise ConfigurationError(f"invalid duration {value!r}")
        seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    return timedelta(seconds=seconds)


def parse_positive_duration(value: str | timedelta, *, name: str) -> timedelta:
    duration = value if isinstance(value, timedelta) else parse_duration(value)
    if duration <= timedelta(0):
        raise ConfigurationError(f"{name} must be a positive duration, got {value!r}")
    return duration


@dataclass(frozen=True, slots=True)
class Settings:
    database_url: str
    server_host: str
    server_port: int
    reap_interval: timedelta
    cluster_ttl: timedelta
    terraform_bin: str
    command_timeout_seconds: int
    credentials_file: str | None
    workspace_root: Path | None
    max_destroy_attempts: int
    log_level: str

    def validate(self) -> None:
        if self.reap_interval <= timedelta(0):
            raise ConfigurationError("reap_interval must be a positive duration")
        if self.cluster_ttl <= timedelta(0):
            raise ConfigurationError("cluster_ttl must be a positive duration")
        if not 0 < self.server_port < 65536:
            raise ConfigurationError(f"server_port out of range: {self.server_port}")
        if self.command_timeout_seconds <= 0:
            raise ConfigurationError("command_timeout_seconds must be positive")
        if self.max_destroy_attempts < 1:
            raise ConfigurationError("max_destroy_attempts must be >= 1")
        if self.workspace_root is not None and not self.workspace_root.is_dir():
            raise ConfigurationError(f"workspace_root {self.workspace_root} is not a directory")


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    workspace_root = os.getenv("TFCLUSTER_WORKSPACE_ROOT")

    settings = Settings(
        database_url=os.getenv("TFCLUSTER_DATABASE_URL", "sqlite:///./tfcluster.db"),
        server_host=os.getenv("TFCLUSTER_SERVER_HOST", "0.0.0.0"),
        server_port=_env_int("TFCLUSTER_SERVER_PORT", "8080"),
        reap_interval=parse_positive_duration(
            os.getenv("TFCLUSTER_REAP_INTERVAL", "15m"), name="TFCLUSTER_REAP_INTERVAL"
        ),
        cluster_ttl=parse_positive_duration(
            os.getenv("TFCLUSTER_CLUSTER_TTL", "2h"), name="TFCLUSTER_CLUSTER_TTL"
        ),
        terraform_bin=os.getenv("TFCLUSTER_TERRAFORM_BIN", "terraform"),
        command_timeout_seconds=_env_int("TFCLUSTER_COMMAND_TIMEOUT", "1800"),
        credentials_file=os.getenv("GOOGLE_APPLICATION_CREDENTIALS") or None,
        workspace_root=Path(workspace_root) if workspace_root else None,
        max_destroy_attempts=_env_int("TFCLUSTER_MAX_DESTROY_ATTEMPTS", "3"),
        log_level=os.getenv("TFCLUSTER_LOG_LEVEL", "INFO").upper(),
    )
    settings.validate()
    return settings
