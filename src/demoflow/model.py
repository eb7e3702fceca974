# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import CleanupFailed


class StepStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"


class RunStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.ABORTED)


# ---------------------------------------------------------------------
# Definition side (immutable, loaded once per run)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CommandSpec:
    """
    One external tool operation: (type, action, params).

    The engine never interprets params beyond placeholder expansion; the
    command registry turns the triple into an argv.
    """
    type: str
    action: str
    params: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> Tuple[str, str]:
        return self.type, self.action

    def __str__(self) -> str:
        return f"{self.type} {self.action}"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Fixed-attempt retry policy attached to a step.

    Retries reuse the already-resolved command; placeholders are never
    re-resolved between attempts.
    """
    max_attempts: int = 1
    backoff_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_seconds < 0:
            raise ValueError(f"backoff_seconds must be >= 0, got {self.backoff_seconds}")

    def should_retry(self, status: StepStatus, attempt: int) -> bool:
        if status not in (StepStatus.FAILED, StepStatus.TIMED_OUT):
            return False
        return attempt < self.max_attempts


@dataclass(frozen=True)
class StepDefinition:
    id: str
    name: str
    command: CommandSpec
    description: str = ""
    expected_duration: Optional[float] = None   # advisory only, never enforced
    timeout: Optional[float] = None             # hard limit per attempt; None -> settings default
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    requires: Tuple[str, ...] = ()
    outputs: Dict[str, str] = field(default_factory=dict)   # alias -> key in JSON output


@dataclass(frozen=True)
class CleanupDefinition:
    """A cleanup command template. May reference tracked-resource attributes."""
    command: CommandSpec
    name: str = ""

    @property
    def label(self) -> str:
        return self.name or str(self.command)


@dataclass(frozen=True)
class Prerequisite:
    kind: str
    description: str = ""


@dataclass(frozen=True)
class CostEstimate:
    description: str
    max_cost_usd: float


@dataclass(frozen=True)
class WorkflowDefinition:
    id: str
    name: str
    steps: Tuple[StepDefinition, ...]
    cleanup: Tuple[CleanupDefinition, ...] = ()
    description: str = ""
    category: str = ""
    prerequisites: Tuple[Prerequisite, ...] = ()
    required_assets: Tuple[Path, ...] = ()
    estimated_duration: float = 0.0
    cost_estimate: Optional[CostEstimate] = None
    variables: Dict[str, str] = field(default_factory=dict)
    source_path: Optional[Path] = None

    def __post_init__(self) -> None:
        seen = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id in workflow '{self.id}': {step.id}")
            seen.add(step.id)

    def step(self, step_id: str) -> StepDefinition:
        for s in self.steps:
            if s.id == step_id:
                return s
        raise KeyError(step_id)


# ---------------------------------------------------------------------
# Execution side
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepResult:
    """Outcome of one step (or one cleanup attempt). Immutable once recorded."""
    step_id: str
    status: StepStatus
    output: str = ""
    error: Optional[str] = None
    exit_code: Optional[int] = None
    attempts: int = 0
    duration: float = 0.0
    data: Dict[str, Any] = field(default_factory=dict)   # parsed JSON stdout, if any

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.SUCCEEDED


@dataclass(frozen=True)
class TrackedResource:
    resource_id: str
    run_id: str
    kind: str
    identifier: str
    step_id: str
    created_at: datetime
    attributes: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.kind}:{self.identifier}"


@dataclass(frozen=True)
class CleanupAttempt:
    definition: CleanupDefinition
    command: CommandSpec
    result: StepResult
    resource: Optional[TrackedResource] = None
    released: bool = False

    @property
    def target(self) -> str:
        return str(self.resource) if self.resource else "(global)"


@dataclass(frozen=True)
class CleanupReport:
    attempts: Tuple[CleanupAttempt, ...] = ()
    leftovers: Tuple[TrackedResource, ...] = ()
    instructions: Tuple[str, ...] = ()   # one manual cleanup instruction per leftover

    @property
    def failures(self) -> List[CleanupAttempt]:
        return [a for a in self.attempts if not a.result.ok]

    @property
    def complete(self) -> bool:
        return not self.failures and not self.leftovers

    @property
    def errors(self) -> List[CleanupFailed]:
        return [
            CleanupFailed(command=str(a.command), target=a.target, detail=a.result.error or "")
            for a in self.failures
        ]


@dataclass(frozen=True)
class RunResult:
    """
    Final result of one run. Always carries the cleanup report: cleanup is a
    phase of every run, not an optional afterthought.
    """
    run_id: str
    workflow_id: str
    status: RunStatus
    steps: Tuple[StepResult, ...]
    cleanup: CleanupReport
    failure: Optional[Exception] = None
    duration: float = 0.0
    cost: CostSummary = field(default_factory=lambda: CostSummary())

    @property
    def cleanup_complete(self) -> bool:
        return self.cleanup.complete

    @property
    def steps_completed(self) -> int:
        return sum(1 for s in self.steps if s.ok)


@dataclass(frozen=True)
class CostSummary:
    """Estimated spend of the resources a run created, in USD."""
    total_usd: float = 0.0
    by_kind: Dict[str, float] = field(default_factory=dict)
    by_resource: Dict[str, float] = field(default_factory=dict)   # resource_id -> cost

    def exceeds(self, threshold: float) -> bool:
        return self.total_usd > threshold


@dataclass(frozen=True)
class PlannedCommand:
    """One command a dry run would execute. `argv` may still hold {placeholders}."""
    phase: str            # "step" or "cleanup"
    label: str
    argv: Tuple[str, ...]
    target: str = ""
