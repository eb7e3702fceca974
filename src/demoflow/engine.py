# engine.py
from __future__ import annotations

import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

from . import costs
from . import settings as settings_mod
from .cleanup import CleanupRunner
from .commands import CommandRegistry
from .errors import (
    CommandFailed,
    CommandTimedOut,
    DemoflowError,
    PrerequisiteNotMet,
    UnresolvedPlaceholder,
)
from .events import EventBus, ResourceTracked, RunCompleted, RunStarted, StepCompleted, StepStarted
from .hints import recovery_hints
from .invoker import CommandInvoker
from .loader import missing_assets
from .log import get_logger
from .model import (
    CleanupDefinition,
    CleanupReport,
    CommandSpec,
    PlannedCommand,
    RunResult,
    RunStatus,
    StepDefinition,
    StepResult,
    StepStatus,
    WorkflowDefinition,
)
from .placeholders import ExecutionContext, PlaceholderResolver
from .tracker import ResourceTracker, new_resource

log = get_logger("engine")

PrerequisiteCheck = Callable[[str], bool]


class ToolPrerequisites:
    """
    Default prerequisite check backed by the external tool.

    Known kinds: authentication, external-tool, assets. Anything else is
    informational and passes.
    """

    def __init__(self, invoker: CommandInvoker, definition: WorkflowDefinition | None = None, base_dir: Path | None = None):
        self.invoker = invoker
        self.definition = definition
        self.base_dir = base_dir
        self._cache: Dict[str, bool] = {}

    def __call__(self, name: str) -> bool:
        kind = name.strip().lower()
        if kind not in self._cache:
            self._cache[kind] = self._check(kind)
        return self._cache[kind]

    def _check(self, kind: str) -> bool:
        if kind in ("authentication", "auth"):
            return self.invoker.authenticated()
        if kind in ("external-tool", "tool"):
            return self.invoker.tool_available()
        if kind in ("assets", "files") and self.definition is not None:
            return not missing_assets(self.definition, self.base_dir)
        return True


class WorkflowEngine:
    """
    Runs one workflow definition at a time as a two-phase state machine.

      Pending -> Running -> {Completed, Failed, Aborted}, then cleanup.

    Steps run strictly in declared order on the calling thread. Whatever
    the step phase ends with, the cleanup phase runs next, and the returned
    RunResult always carries its CleanupReport.
    """

    def __init__(
        self,
        invoker: CommandInvoker,
        tracker: ResourceTracker | None = None,
        reporter: EventBus | None = None,
        resolver: PlaceholderResolver | None = None,
        registry: CommandRegistry | None = None,
        prerequisite_checker: PrerequisiteCheck | None = None,
        settings: settings_mod.Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.invoker = invoker
        self.tracker = tracker or ResourceTracker()
        self.reporter = reporter or EventBus()
        self.resolver = resolver or PlaceholderResolver()
        self.registry = registry or invoker.registry
        self.prerequisite_checker = prerequisite_checker
        self.settings = settings or settings_mod.Settings()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Pre-run checks
    # ------------------------------------------------------------------

    def _cleanup_fields(self, definition: WorkflowDefinition) -> Callable[[CleanupDefinition], Optional[Set[str]]]:
        """
        Attribute names available to each cleanup definition at runtime.

        A definition that releases a kind sees what resources of that kind
        carry: the registry's fields plus the params of the steps creating
        them. Anything else runs without a resource and gets None.
        """
        by_kind: Dict[str, Set[str]] = {}
        for step in definition.steps:
            try:
                rule = self.registry.creates(step.command)
            except DemoflowError:
                continue
            if rule is not None:
                by_kind.setdefault(rule.kind, set()).update(step.command.params)

        def fields_for(cleanup: CleanupDefinition) -> Optional[Set[str]]:
            try:
                kind = self.registry.releases(cleanup.command)
            except DemoflowError:
                return None
            if kind is None:
                return None
            return self.registry.resource_fields(kind) | by_kind.get(kind, set())

        return fields_for

    def check_placeholders(self, definition: WorkflowDefinition, variables: Mapping[str, str] | None = None) -> None:
        self.resolver.check_definition(definition, variables, cleanup_fields=self._cleanup_fields(definition))

    def unmet_prerequisites(self, definition: WorkflowDefinition) -> List[str]:
        if self.prerequisite_checker is None:
            return []
        unmet = []
        for prereq in definition.prerequisites:
            if not self.prerequisite_checker(prereq.kind):
                unmet.append(prereq.description or prereq.kind)
        return unmet

    def preflight(self, definition: WorkflowDefinition, variables: Mapping[str, str] | None = None) -> List[str]:
        """Every problem that would stop `run` before its first command."""
        problems = []
        try:
            self.check_placeholders(definition, variables)
        except UnresolvedPlaceholder as e:
            problems.append(str(e))
        problems.extend(f"prerequisite not met: {p}" for p in self.unmet_prerequisites(definition))
        return problems

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        definition: WorkflowDefinition,
        variables: Mapping[str, str] | None = None,
        abort: threading.Event | None = None,
        run_id: str | None = None,
    ) -> RunResult:
        """
        Execute `definition` and its cleanup.

        Raises UnresolvedPlaceholder or PrerequisiteNotMet before anything
        runs; after that, every outcome is reported in the RunResult.
        """
        self.check_placeholders(definition, variables)
        unmet = self.unmet_prerequisites(definition)
        if unmet:
            raise PrerequisiteNotMet(prerequisites=unmet)

        context = self.resolver.new_context(definition, variables, run_id=run_id)
        started = time.monotonic()
        log.info("run %s started: %s (%d steps)", context.run_id, definition.id, len(definition.steps))
        self.reporter.publish(
            RunStarted(run_id=context.run_id, workflow_id=definition.id, total_steps=len(definition.steps))
        )

        # phase 1: steps
        results: List[StepResult] = []
        try:
            status, failure = self._run_steps(definition, context, abort, results)
        except Exception as e:
            log.exception("run %s: step phase crashed", context.run_id)
            status, failure = RunStatus.FAILED, e

        # nothing is released before cleanup, so this is everything the run created
        cost = costs.summarize(self.tracker.list(context.run_id))

        # phase 2: cleanup, regardless of how phase 1 ended
        report = self._run_cleanup(definition, context)

        result = RunResult(
            run_id=context.run_id,
            workflow_id=definition.id,
            status=status,
            steps=tuple(results),
            cleanup=report,
            failure=failure,
            duration=time.monotonic() - started,
            cost=cost,
        )
        log.info(
            "run %s finished: %s (cleanup %s)",
            context.run_id, status.value, "complete" if report.complete else "INCOMPLETE",
        )
        self.reporter.publish(
            RunCompleted(
                run_id=context.run_id,
                workflow_id=definition.id,
                status=status,
                cleanup_complete=report.complete,
                leftovers=report.leftovers,
            )
        )
        return result

    def dry_run(self, definition: WorkflowDefinition, variables: Mapping[str, str] | None = None) -> List[PlannedCommand]:
        """
        Every command `run` would issue, in order, without issuing any.

        Step outputs and resource attributes do not exist yet, so tokens that
        depend on them stay in the argv as written. Prerequisites are not
        checked.
        """
        self.check_placeholders(definition, variables)
        context = self.resolver.new_context(definition, variables, run_id="dry-run")

        planned: List[PlannedCommand] = []
        for step in definition.steps:
            spec = self.resolver.resolve_command(step.command, context, where=f"step '{step.id}'", lenient=True)
            planned.append(PlannedCommand("step", step.name, tuple(self.invoker.argv(spec))))

        for cleanup in definition.cleanup:
            try:
                kind = self.registry.releases(cleanup.command)
            except DemoflowError:
                kind = None
            spec = self.resolver.resolve_command(cleanup.command, context, lenient=True)
            target = f"each tracked {kind}" if kind else "once"
            planned.append(PlannedCommand("cleanup", cleanup.label, tuple(self.invoker.argv(spec)), target=target))
        return planned

    def _run_steps(
        self,
        definition: WorkflowDefinition,
        context: ExecutionContext,
        abort: threading.Event | None,
        results: List[StepResult],
    ) -> Tuple[RunStatus, Optional[Exception]]:
        total = len(definition.steps)
        for index, step in enumerate(definition.steps, start=1):
            if abort is not None and abort.is_set():
                log.info("run %s aborted before step '%s'", context.run_id, step.id)
                return RunStatus.ABORTED, None

            self.reporter.publish(StepStarted(run_id=context.run_id, step=step, index=index, total=total))

            unmet = self._unmet_step_requirements(step)
            if unmet:
                result = StepResult(
                    step_id=step.id,
                    status=StepStatus.SKIPPED,
                    error=f"prerequisites not met: {', '.join(unmet)}",
                )
                results.append(result)
                self.reporter.publish(StepCompleted(run_id=context.run_id, result=result))
                if self.settings.strict_prerequisites:
                    return RunStatus.FAILED, PrerequisiteNotMet(prerequisites=unmet, step=step.id)
                continue

            try:
                spec = self.resolver.resolve_command(step.command, context, where=f"step '{step.id}'")
            except UnresolvedPlaceholder as e:
                result = StepResult(step_id=step.id, status=StepStatus.FAILED, error=str(e))
                results.append(result)
                self.reporter.publish(StepCompleted(run_id=context.run_id, result=result))
                return RunStatus.FAILED, e

            result = self._execute(step, spec, abort)
            results.append(result)
            hints = tuple(recovery_hints(spec, result))
            self.reporter.publish(StepCompleted(run_id=context.run_id, result=result, hints=hints))

            if result.ok:
                context.record_outputs(step.id, result.data, step.outputs)
                self._track(step, spec, result, context)
                continue

            if abort is not None and abort.is_set():
                return RunStatus.ABORTED, None
            return RunStatus.FAILED, self._failure(step, spec, result, list(hints))

        return RunStatus.COMPLETED, None

    def _run_cleanup(self, definition: WorkflowDefinition, context: ExecutionContext) -> CleanupReport:
        runner = CleanupRunner(
            self.invoker,
            self.tracker,
            self.reporter,
            self.resolver,
            registry=self.registry,
            timeout=self.settings.cleanup_timeout,
            max_workers=self.settings.cleanup_workers,
        )
        try:
            return runner.run(definition, context)
        finally:
            self.tracker.abandon(context.run_id)

    def _unmet_step_requirements(self, step: StepDefinition) -> List[str]:
        if not step.requires or self.prerequisite_checker is None:
            return []
        return [name for name in step.requires if not self.prerequisite_checker(name)]

    def _execute(self, step: StepDefinition, spec: CommandSpec, abort: threading.Event | None) -> StepResult:
        """Invoke `spec` under the step's retry policy. `spec` is never re-resolved."""
        timeout = step.timeout or self.settings.step_timeout
        policy = step.retry
        attempt = 1
        result = self.invoker.invoke(spec, timeout, abort=abort, step_id=step.id)
        elapsed = result.duration

        while policy.should_retry(result.status, attempt) and not (abort is not None and abort.is_set()):
            log.info(
                "step '%s' attempt %d/%d %s, retrying",
                step.id, attempt, policy.max_attempts, result.status.value,
            )
            if policy.backoff_seconds:
                self._sleep(policy.backoff_seconds)
            attempt += 1
            result = self.invoker.invoke(spec, timeout, abort=abort, step_id=step.id)
            elapsed += result.duration

        return replace(result, step_id=step.id, attempts=attempt, duration=elapsed)

    def _track(self, step: StepDefinition, spec: CommandSpec, result: StepResult, context: ExecutionContext) -> None:
        try:
            rule = self.registry.creates(spec)
        except DemoflowError:
            return
        if rule is None:
            return

        identifier = rule.identify(spec.params, result.data)
        if not identifier:
            log.warning("step '%s' created a %s but no identifier was found; not tracked", step.id, rule.kind)
            return

        attributes = dict(spec.params)
        for key in rule.id_outputs + rule.keep_outputs:
            if key in result.data and isinstance(result.data[key], (str, int)):
                attributes[key] = str(result.data[key])
        # cleanup templates address the resource by its id param name
        for name in rule.id_params:
            attributes.setdefault(name, identifier)

        resource = self.tracker.record(
            new_resource(context.run_id, rule.kind, identifier, step.id, attributes)
        )
        self.reporter.publish(ResourceTracked(run_id=context.run_id, resource=resource))

    def _failure(self, step: StepDefinition, spec: CommandSpec, result: StepResult, hints: List[str]) -> DemoflowError:
        if result.status is StepStatus.TIMED_OUT:
            return CommandTimedOut(
                step=step.id,
                command=str(spec),
                timeout=step.timeout or self.settings.step_timeout,
                attempts=result.attempts,
                hints=hints,
            )
        return CommandFailed(
            step=step.id,
            command=str(spec),
            exit_code=result.exit_code,
            stderr=result.error or "",
            attempts=result.attempts,
            hints=hints,
        )
