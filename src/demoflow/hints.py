# hints.py
from __future__ import annotations

from typing import List

from .model import CommandSpec, StepResult, StepStatus

# (command type, stderr fragment) -> hint; None matches any type
ERROR_HINTS = [
    ("auth", None, "Check your APS credentials and run 'raps auth login'."),
    ("bucket", "already exists", "Bucket name already exists, try a different name."),
    ("bucket", "permission", "Check that your APS app has OSS permissions."),
    ("object", "not found", "Verify the bucket exists and the object key is correct."),
    ("object", "file", "Check that the file path exists and is readable."),
    ("translate", "urn", "Verify the URN is valid and the file was uploaded successfully."),
    ("translate", "format", "Check that the requested output format is supported."),
    (None, "network", "Check your internet connection and try again."),
    (None, "timeout", "Check your internet connection and try again."),
]

GENERIC_HINTS = [
    "Check the raps CLI documentation for this command.",
    "Verify your APS permissions and authentication.",
]


def recovery_hints(spec: CommandSpec, result: StepResult) -> List[str]:
    """Suggestions for a failed command, keyed on command type and error text."""
    if result.ok or result.status is StepStatus.SKIPPED:
        return []

    text = f"{result.error or ''}\n{result.output}".lower()
    hints: List[str] = []
    for type_, fragment, hint in ERROR_HINTS:
        if type_ is not None and type_ != spec.type:
            continue
        if fragment is not None and fragment not in text:
            continue
        if hint not in hints:
            hints.append(hint)

    if result.status is StepStatus.TIMED_OUT:
        hints.append("The command hit its timeout; raise the step 'timeout' if it is expected to be slow.")
    if result.exit_code is None and result.status is StepStatus.FAILED and "could not start" in text:
        hints.append("Install the raps CLI or point DEMOFLOW_CLI_PATH at it.")
    if not hints:
        hints.extend(GENERIC_HINTS)
    return hints
