# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class DemoflowError(Exception):
    """Base class for every error demoflow raises or records."""


@dataclass
class UnresolvedPlaceholder(DemoflowError):
    """A `{name}` token has no value in the execution context."""
    token: str
    where: str = ""

    def __str__(self) -> str:
        if self.where:
            return f"unresolved placeholder {{{self.token}}} in {self.where}"
        return f"unresolved placeholder {{{self.token}}}"


@dataclass
class UnknownCommand(DemoflowError):
    type: str
    action: str

    def __str__(self) -> str:
        return f"unknown command: {self.type}/{self.action}"


@dataclass
class CommandFailed(DemoflowError):
    step: str
    command: str
    exit_code: Optional[int]
    stderr: str = ""
    attempts: int = 1
    hints: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [f"step '{self.step}' failed (exit={self.exit_code}, attempts={self.attempts}): {self.command}"]
        if self.stderr.strip():
            lines.append(self.stderr.strip().splitlines()[-1])
        return "\n".join(lines)


@dataclass
class CommandTimedOut(DemoflowError):
    step: str
    command: str
    timeout: float
    attempts: int = 1
    hints: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"step '{self.step}' timed out after {self.timeout:g}s (attempts={self.attempts}): {self.command}"


@dataclass
class CleanupFailed(DemoflowError):
    command: str
    target: str
    detail: str = ""

    def __str__(self) -> str:
        msg = f"cleanup '{self.command}' failed for {self.target}"
        if self.detail:
            msg += f": {self.detail.strip()}"
        return msg


@dataclass
class PrerequisiteNotMet(DemoflowError):
    prerequisites: List[str]
    step: Optional[str] = None

    def __str__(self) -> str:
        where = f"step '{self.step}'" if self.step else "workflow"
        return f"{where} prerequisites not met: {', '.join(self.prerequisites)}"


@dataclass
class WorkflowLoadError(DemoflowError):
    path: str
    problems: List[str]

    def __str__(self) -> str:
        lines = [f"invalid workflow definition: {self.path}"]
        lines.extend(f"  {p}" for p in self.problems)
        return "\n".join(lines)
