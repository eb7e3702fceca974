"""Console output formatting utilities for demoflow."""

from __future__ import annotations

import shlex
import sys
from typing import Iterable, Optional

from ..events import (
    CleanupResult,
    CleanupStarted,
    Event,
    ResourceTracked,
    RunCompleted,
    RunStarted,
    StepCompleted,
    StepStarted,
)
from ..model import PlannedCommand, RunResult, RunStatus, StepStatus, WorkflowDefinition


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, workflow: str, name: str, step_count: int, run_id: str) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Workflow: {workflow} ({name})")
        print(f"Run ID: {run_id}")
        print(f"Steps: {step_count}")
        print()

    def print_step(self, index: int, total: int, name: str) -> None:
        """Print step start message."""
        print(f"STEP [{index}/{total}]: {name}")

    def print_success(self, duration: float, attempts: int) -> None:
        """Print success message."""
        retried = f", {attempts} attempts" if attempts > 1 else ""
        print(f"STATUS: success ({duration:.1f}s{retried})")

    def print_skipped(self, reason: str) -> None:
        print(f"STATUS: skipped ({reason})")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hints: Iterable[str] = (),
        timed_out: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Step id
            reason: Failure reason/error message
            exit_code: Optional exit code
            hints: Recovery suggestions for the user
            timed_out: If True, print "STEP TIMED OUT" instead of "STEP FAILED"
        """
        prefix = "STEP TIMED OUT" if timed_out else "STEP FAILED"
        print(f"{prefix}: {name}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        for hint in hints:
            print(f"Hint: {hint}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            # Show last line of error for non-debug mode, that is where tools put the cause
            lines = [l for l in (reason or "").strip().splitlines() if l.strip()]
            print(f"Error: {lines[-1] if lines else 'Unknown error'}")

    def print_resource(self, kind: str, identifier: str) -> None:
        print(f"RESOURCE: {kind} {identifier}")

    def print_cleanup_started(self, resources: int, definitions: int) -> None:
        print(f"\nCLEANUP STARTED ({resources} tracked resource(s), {definitions} command(s))")

    def print_cleanup_result(self, command: str, target: str, ok: bool, error: Optional[str] = None) -> None:
        status = "ok" if ok else "FAILED"
        print(f"  {command} -> {target}: {status}")
        if not ok and error:
            print(f"    {error.strip().splitlines()[-1] if error.strip() else error}")

    def print_results(self, result: RunResult, budget: Optional[float] = None) -> None:
        """
        Print final results summary.

        Args:
            result: The finished run
            budget: Spend the workflow declared it stays under, if any
        """
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for step in result.steps:
            print(f"  {step.step_id}: {step.status.value.upper()}")
        print(f"Run: {result.status.value.upper()} ({result.steps_completed}/{len(result.steps)} steps ok, {result.duration:.1f}s)")
        if result.cleanup_complete:
            print("Cleanup: complete")
        else:
            print("Cleanup: INCOMPLETE - manual cleanup may be needed")
            for err in result.cleanup.errors:
                print(f"  {err}")
            for r in result.cleanup.leftovers:
                print(f"  left behind: {r} (created by step '{r.step_id}')")
            if result.cleanup.instructions:
                print("To clean up manually:")
                for line in result.cleanup.instructions:
                    print(f"  {line}")
        cost = result.cost
        if cost.by_kind:
            breakdown = ", ".join(f"{kind} ${usd:.2f}" for kind, usd in sorted(cost.by_kind.items()))
            print(f"Estimated cost: ${cost.total_usd:.2f} ({breakdown})")
            if budget is not None and cost.exceeds(budget):
                print(f"WARNING: estimated cost exceeds the workflow's ${budget:.2f} estimate")
        if result.failure is not None and result.status is RunStatus.FAILED:
            print(f"Failure: {str(result.failure).splitlines()[0]}")

    def print_plan(self, workflow: WorkflowDefinition, items: Iterable[PlannedCommand]) -> None:
        """Print the commands a dry run would execute, in order."""
        self.print_header(f"DRY RUN: {workflow.name} ({workflow.id})")
        phase = None
        for item in items:
            if item.phase != phase:
                phase = item.phase
                print("\nSteps:" if phase == "step" else "\nCleanup:")
            target = f" [{item.target}]" if item.target else ""
            print(f"  {item.label}{target}")
            print(f"    $ {shlex.join(item.argv)}")
        print("\nNothing was executed.")

    def print_workflow(self, wf: WorkflowDefinition) -> None:
        """Print a workflow's metadata, steps and cleanup commands."""
        self.print_header(f"{wf.name} ({wf.id})")
        if wf.description:
            print(wf.description)
        if wf.category:
            print(f"Category: {wf.category}")
        if wf.estimated_duration:
            print(f"Estimated duration: {wf.estimated_duration:g}s")
        if wf.cost_estimate is not None:
            print(f"Cost estimate: up to ${wf.cost_estimate.max_cost_usd:.2f} ({wf.cost_estimate.description})")
        for p in wf.prerequisites:
            print(f"Prerequisite: {p.kind} {p.description}".rstrip())
        for a in wf.required_assets:
            print(f"Asset: {a}")
        print("\nSteps:")
        for i, s in enumerate(wf.steps, start=1):
            print(f"  {i}. {s.id}: {s.name} [{s.command}]")
        if wf.cleanup:
            print("\nCleanup:")
            for c in wf.cleanup:
                print(f"  - {c.label}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


class ConsoleReporter:
    """Event subscriber that renders a run on a Console, non-interactively."""

    def __init__(self, console: Console, workflow: WorkflowDefinition):
        self.console = console
        self.workflow = workflow

    def __call__(self, event: Event) -> None:
        c = self.console
        if isinstance(event, RunStarted):
            c.print_run_started(self.workflow.id, self.workflow.name, event.total_steps, event.run_id)
        elif isinstance(event, StepStarted):
            c.print_step(event.index, event.total, event.step.name)
        elif isinstance(event, StepCompleted):
            r = event.result
            if r.ok:
                c.print_success(r.duration, r.attempts)
            elif r.status is StepStatus.SKIPPED:
                c.print_skipped(r.error or "prerequisites not met")
            else:
                c.print_failure(
                    r.step_id,
                    r.error or "",
                    exit_code=r.exit_code,
                    hints=event.hints,
                    timed_out=r.status is StepStatus.TIMED_OUT,
                )
        elif isinstance(event, ResourceTracked):
            c.print_resource(event.resource.kind, event.resource.identifier)
        elif isinstance(event, CleanupStarted):
            c.print_cleanup_started(event.resources, event.definitions)
        elif isinstance(event, CleanupResult):
            a = event.attempt
            c.print_cleanup_result(a.definition.label, a.target, a.result.ok, a.result.error)
        elif isinstance(event, RunCompleted):
            c.print_debug(f"run {event.run_id} completed: {event.status.value}")


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
