"""
Terraform output markers and failure classification.

Terraform reports most failures only as human-readable text, so the error
taxonomy is recovered by matching known substrings. The markers below are
checked against the terraform releases listed in MARKERS_TERRAFORM_VERSIONS;
tests/test_terraform_markers.py pins each of them so output drift shows up
as a failing test instead of a silent misclassification.
"""

from __future__ import annotations

import re

from tfcluster.exceptions import EngineError, InvalidEngineConfig, ServiceError, StateRefreshError

MARKERS_TERRAFORM_VERSIONS = ">=0.11,<2.0"

INIT_SUCCESS_MARKER = "Terraform has been successfully initialized!"
INIT_EMPTY_DIRECTORY_MARKER = "Terraform initialized in an empty directory!"

UP_TO_DATE_MARKERS = (
    "No changes. Your infrastructure matches the configuration.",
    "No changes. Infrastructure is up-to-date.",
)

STATE_REFRESH_MARKERS = (
    "Error refreshing state",
    "Error loading state",
    "Failed to load state",
    "Error: Failed to load state",
    "state snapshot was created by Terraform v",
    "Unsupported state file format",
)

INVALID_CONFIG_MARKERS = (
    "Error parsing",
    "Error loading configuration",
    "Error: Invalid",
    "Error: Unsupported argument",
    "Error: Unsupported block type",
    "Error: Missing required argument",
    "Error: Argument or block definition required",
    "Error: Unclosed configuration block",
    "Error: Syntax error",
    "Error: Reference to undeclared",
    "Error: Duplicate",
    "Error: Incorrect attribute value type",
    "Error: Module not installed",
)

APPLY_COMPLETE_RE = re.compile(
    r"Apply complete! Resources: (?P<added>\d+) added, (?P<changed>\d+) changed, (?P<destroyed>\d+) destroyed\."
)
DESTROY_COMPLETE_RE = re.compile(r"Destroy complete! Resources: (?P<destroyed>\d+) destroyed\.")


def is_up_to_date(output: str) -> bool:
    return any(marker in output for marker in UP_TO_DATE_MARKERS)


def initialized_empty_directory(output: str) -> bool:
    return INIT_EMPTY_DIRECTORY_MARKER in output


def completion_counts(output: str) -> dict[str, int] | None:
    """Resource counts from the apply/destroy completion line, if present."""
    match = APPLY_COMPLETE_RE.search(output)
    if match:
        return {k: int(v) for k, v in match.groupdict().items()}
    match = DESTROY_COMPLETE_RE.search(output)
    if match:
        return {"added": 0, "changed": 0, "destroyed": int(match.group("destroyed"))}
    return None


def summarize_output(output: str) -> str:
    """One human-readable line describing how a terraform run ended."""
    for regex in (APPLY_COMPLETE_RE, DESTROY_COMPLETE_RE):
        match = regex.search(output)
        if match:
            return match.group(0)
    for marker in UP_TO_DATE_MARKERS:
        if marker in output:
            return marker
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    return lines[-1] if lines else ""


def classify_failure(output: str, fallback: str) -> ServiceError:
    """Translate failed terraform output into the typed error taxonomy."""
    message = output.strip() or fallback
    if any(marker in output for marker in STATE_REFRESH_MARKERS):
        return StateRefreshError(message)
    if initialized_empty_directory(output) or any(marker in output for marker in INVALID_CONFIG_MARKERS):
        return InvalidEngineConfig(message)
    return EngineError(message)
