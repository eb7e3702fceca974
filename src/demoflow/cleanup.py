# cleanup.py
from __future__ import annotations

import shlex
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple

from . import settings
from .commands import CommandRegistry, default_registry
from .errors import DemoflowError
from .events import CleanupResult, CleanupStarted, EventBus
from .invoker import CommandInvoker
from .log import get_logger
from .model import (
    CleanupAttempt,
    CleanupDefinition,
    CleanupReport,
    CommandSpec,
    StepResult,
    StepStatus,
    TrackedResource,
    WorkflowDefinition,
)
from .placeholders import ExecutionContext, PlaceholderResolver, placeholders_in
from .tracker import ResourceTracker

log = get_logger("cleanup")

PlanItem = Tuple[CleanupDefinition, Optional[TrackedResource]]

# kinds the service deletes on its own after a while
EXPIRING_KINDS = ("translation", "work-item")


def resource_placeholders(resource: TrackedResource) -> Dict[str, str]:
    """Values a cleanup template can reference for the resource it targets."""
    values = dict(resource.attributes)
    values["resource_id"] = resource.resource_id
    values["resource_kind"] = resource.kind
    values["resource_identifier"] = resource.identifier
    return values


class CleanupRunner:
    """
    Best-effort teardown of a run's tracked resources.

    Resources are visited in reverse creation order. Every cleanup definition
    whose command releases a resource's kind is attempted once for that
    resource; definitions that release nothing run once, after the
    resource-scoped ones. No retries: a failure is recorded and the runner
    moves on. A successful attempt releases its resource from the tracker.
    """

    def __init__(
        self,
        invoker: CommandInvoker,
        tracker: ResourceTracker,
        reporter: EventBus,
        resolver: PlaceholderResolver,
        registry: CommandRegistry | None = None,
        timeout: float = settings.CLEANUP_TIMEOUT,
        max_workers: int = settings.CLEANUP_WORKERS,
    ):
        self.invoker = invoker
        self.tracker = tracker
        self.reporter = reporter
        self.resolver = resolver
        self.registry = registry or default_registry()
        self.timeout = timeout
        self.max_workers = max(1, max_workers)

    def _releases(self, definition: CleanupDefinition) -> Optional[str]:
        try:
            return self.registry.releases(definition.command)
        except DemoflowError:
            return None

    def plan(self, definition: WorkflowDefinition, run_id: str) -> List[PlanItem]:
        newest_first = list(reversed(self.tracker.list(run_id)))
        kinds = [(d, self._releases(d)) for d in definition.cleanup]

        items: List[PlanItem] = []
        for resource in newest_first:
            for d, kind in kinds:
                if kind == resource.kind:
                    items.append((d, resource))
        for d, kind in kinds:
            if kind is None:
                items.append((d, None))
        return items

    def run(self, definition: WorkflowDefinition, context: ExecutionContext) -> CleanupReport:
        items = self.plan(definition, context.run_id)
        self.reporter.publish(
            CleanupStarted(
                run_id=context.run_id,
                resources=len(self.tracker.list(context.run_id)),
                definitions=len(definition.cleanup),
            )
        )

        attempts: List[CleanupAttempt] = []
        if items:
            # submission order is the teardown order; with one worker it is strict
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = [pool.submit(self._attempt, d, r, context) for d, r in items]
                attempts = [f.result() for f in futures]

        leftovers = tuple(self.tracker.list(context.run_id))
        report = CleanupReport(
            attempts=tuple(attempts),
            leftovers=leftovers,
            instructions=tuple(self.instructions(definition, context, leftovers)),
        )
        for err in report.errors:
            log.warning("%s", err)
        for r in leftovers:
            log.warning("resource left behind, manual cleanup needed: %s", r)
        return report

    def instructions(self, definition: WorkflowDefinition, context: ExecutionContext, leftovers: Tuple[TrackedResource, ...]) -> List[str]:
        """One manual cleanup instruction per resource still tracked after cleanup."""
        return [self._instruction(definition, context, r) for r in leftovers]

    def _instruction(self, definition: WorkflowDefinition, context: ExecutionContext, resource: TrackedResource) -> str:
        what = f"{resource.kind} '{resource.identifier}'"
        spec: Optional[CommandSpec] = None
        for d in definition.cleanup:
            if self._releases(d) == resource.kind:
                resolved = self.resolver.resolve_command(
                    d.command, context, extra=resource_placeholders(resource), lenient=True
                )
                if not any(placeholders_in(v) for v in resolved.params.values()):
                    spec = resolved
                    break
        if spec is None:
            entry = self.registry.releasing(resource.kind)
            if entry is not None:
                spec = CommandSpec(entry.type, entry.action, dict(resource.attributes))

        if spec is not None:
            try:
                return f"Delete {what} using: {shlex.join(self.invoker.argv(spec))}"
            except DemoflowError as e:
                log.debug("no command line for %s: %s", resource, e)
        if resource.kind in EXPIRING_KINDS:
            return f"{what.capitalize()} will expire automatically"
        return f"Clean up {what} manually (created by step '{resource.step_id}')"

    def _attempt(
        self,
        definition: CleanupDefinition,
        resource: Optional[TrackedResource],
        context: ExecutionContext,
    ) -> CleanupAttempt:
        label = f"cleanup:{definition.label}"
        extra = resource_placeholders(resource) if resource is not None else None
        spec = definition.command
        try:
            spec = self.resolver.resolve_command(definition.command, context, extra=extra, where=label)
            result = self.invoker.invoke(spec, self.timeout, step_id=label)
        except DemoflowError as e:
            result = StepResult(step_id=label, status=StepStatus.FAILED, error=str(e), attempts=0)

        released = False
        if result.ok and resource is not None:
            try:
                self.tracker.release(resource.resource_id)
                released = True
            except KeyError:
                log.debug("%s already released by an earlier cleanup command", resource)

        attempt = CleanupAttempt(
            definition=definition,
            command=spec,
            result=result,
            resource=resource,
            released=released,
        )
        self.reporter.publish(CleanupResult(run_id=context.run_id, attempt=attempt))
        return attempt
