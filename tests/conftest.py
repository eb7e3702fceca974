from __future__ import annotations

import itertools
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from demoflow.commands import default_registry
from demoflow.events import EventBus
from demoflow.loader import parse_workflow
from demoflow.model import CommandSpec, StepResult, StepStatus
from demoflow.placeholders import PlaceholderResolver
from demoflow.tracker import ResourceTracker


def ok(data: Optional[dict] = None, output: str = "") -> StepResult:
    return StepResult(step_id="", status=StepStatus.SUCCEEDED, output=output, exit_code=0, attempts=1, duration=0.01, data=data or {})


def fail(error: str = "boom", exit_code: int = 1) -> StepResult:
    return StepResult(step_id="", status=StepStatus.FAILED, error=error, exit_code=exit_code, attempts=1, duration=0.01)


def timed_out(timeout: float = 1.0) -> StepResult:
    return StepResult(step_id="", status=StepStatus.TIMED_OUT, error=f"timed out after {timeout:g}s", attempts=1, duration=timeout)


Responder = Callable[[CommandSpec], StepResult]


class FakeInvoker:
    """
    Records every invocation and answers from a script.

    `script` maps (type, action) to either a list of results consumed in
    order (the last one repeats) or a callable taking the resolved spec.
    Anything unscripted succeeds with no output.
    """

    def __init__(self, script: Optional[Dict[Tuple[str, str], object]] = None):
        self.registry = default_registry()
        self.script = dict(script or {})
        self.calls: List[Tuple[CommandSpec, float]] = []

    def argv(self, spec: CommandSpec) -> List[str]:
        return ["raps", *self.registry.build_args(spec)]

    def invoke(self, spec, timeout, *, abort=None, step_id=""):
        self.calls.append((spec, timeout))
        answer = self.script.get(spec.key)
        if answer is None:
            return ok()
        if callable(answer):
            return answer(spec)
        if len(answer) > 1:
            return answer.pop(0)
        return answer[0]

    @property
    def specs(self) -> List[CommandSpec]:
        return [spec for spec, _ in self.calls]

    def keys(self) -> List[Tuple[str, str]]:
        return [spec.key for spec in self.specs]


def counter_uuids() -> Callable[[], str]:
    n = itertools.count(1)
    return lambda: f"u{next(n)}"


def custom_step(step_id: str, **extra) -> dict:
    step = {"id": step_id, "name": f"Step {step_id}", "command": {"type": "custom", "command": f"echo {step_id}"}}
    step.update(extra)
    return step


def workflow_doc(steps: list, cleanup: Optional[list] = None, **metadata) -> dict:
    meta = {"id": "wf", "name": "Test workflow"}
    meta.update(metadata)
    return {"metadata": meta, "steps": steps, "cleanup": cleanup or []}


def make_workflow(steps: list, cleanup: Optional[list] = None, **metadata):
    return parse_workflow(workflow_doc(steps, cleanup, **metadata))


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def tracker() -> ResourceTracker:
    return ResourceTracker()


@pytest.fixture
def resolver() -> PlaceholderResolver:
    return PlaceholderResolver(uuid_factory=counter_uuids())
