# placeholders.py
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Mapping, Optional, Set

from .errors import UnresolvedPlaceholder
from .model import CleanupDefinition, CommandSpec, WorkflowDefinition

PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.\-]*)\}")

BUILTINS = ("uuid", "timestamp")

# Names a cleanup template may use to address the resource it targets.
RESOURCE_FIELDS = ("resource_id", "resource_kind", "resource_identifier")

# cleanup definition -> attribute names of the resources it targets, None if global
CleanupFields = Callable[[CleanupDefinition], Optional[Iterable[str]]]


def _default_uuid() -> str:
    # uuid4 draws from os.urandom
    return str(uuid.uuid4())


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


def placeholders_in(raw: str) -> list[str]:
    """Return placeholder names referenced by `raw`, in order of appearance."""
    return PLACEHOLDER_RE.findall(raw)


@dataclass
class ExecutionContext:
    """
    Per-run state. Only the workflow engine writes to it.

    outputs holds values captured from completed steps, stored as
    "<step_id>.<key>" plus any aliases the step declared.
    """
    run_id: str
    workflow_id: str
    started_at: datetime
    variables: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)

    @property
    def timestamp(self) -> str:
        return str(int(self.started_at.timestamp()))

    def record_outputs(self, step_id: str, data: Mapping[str, object], aliases: Mapping[str, str]) -> None:
        for key, val in data.items():
            if isinstance(val, (str, int, float)) and not isinstance(val, bool):
                self.outputs[f"{step_id}.{key}"] = str(val)
        for alias, key in aliases.items():
            qualified = f"{step_id}.{key}"
            if qualified in self.outputs:
                self.outputs[alias] = self.outputs[qualified]

    def lookup(self, name: str) -> Optional[str]:
        if name in self.outputs:
            return self.outputs[name]
        return self.variables.get(name)


class PlaceholderResolver:
    """
    Expands `{uuid}`, `{timestamp}` and `{name}` tokens.

    Every `resolve_command` call is one scope: all `{uuid}` tokens inside it
    share a single generated value, and the next call draws a fresh one.
    The uuid and clock sources are injectable so tests can be deterministic.
    """

    def __init__(
        self,
        uuid_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._uuid_factory = uuid_factory or _default_uuid
        self._clock = clock or _default_clock

    def new_context(
        self,
        definition: WorkflowDefinition,
        variables: Mapping[str, str] | None = None,
        run_id: str | None = None,
    ) -> ExecutionContext:
        merged = dict(definition.variables)
        merged.update(variables or {})
        return ExecutionContext(
            run_id=run_id or str(uuid.uuid4()),
            workflow_id=definition.id,
            started_at=self._clock(),
            variables=merged,
        )

    # ------------------------------------------------------------------
    # Runtime resolution
    # ------------------------------------------------------------------

    def resolve(
        self,
        raw: str,
        context: ExecutionContext,
        scope: Dict[str, str],
        extra: Mapping[str, str] | None = None,
        where: str = "",
        lenient: bool = False,
    ) -> str:
        """
        Expand every token in `raw`.

        With lenient=True a token nothing can provide is left as written
        instead of raising; dry runs use this to preview templates.
        """
        def sub(match: re.Match) -> str:
            name = match.group(1)
            if name in scope:
                return scope[name]
            if name == "uuid":
                scope[name] = self._uuid_factory()
                return scope[name]
            if name == "timestamp":
                return context.timestamp
            if extra and name in extra:
                return extra[name]
            value = context.lookup(name)
            if value is None:
                if lenient:
                    return match.group(0)
                raise UnresolvedPlaceholder(token=name, where=where)
            return value

        return PLACEHOLDER_RE.sub(sub, raw)

    def resolve_command(
        self,
        spec: CommandSpec,
        context: ExecutionContext,
        extra: Mapping[str, str] | None = None,
        where: str = "",
        lenient: bool = False,
    ) -> CommandSpec:
        scope: Dict[str, str] = {}
        params = {
            k: self.resolve(v, context, scope, extra=extra, where=where or str(spec), lenient=lenient)
            for k, v in spec.params.items()
        }
        return replace(spec, params=params)

    # ------------------------------------------------------------------
    # Static check (before any command runs)
    # ------------------------------------------------------------------

    def check_definition(
        self,
        definition: WorkflowDefinition,
        variables: Mapping[str, str] | None = None,
        cleanup_fields: CleanupFields | None = None,
    ) -> None:
        """
        Raise UnresolvedPlaceholder if any step or cleanup template references
        a name nothing can provide.

        A step may reference built-ins, run variables, aliases declared by an
        earlier step, or "<earlier_step_id>.<key>". A cleanup template may
        reference anything a step could produce. Only a resource-scoped
        cleanup definition also sees resource attributes: `cleanup_fields`
        returns the attribute names its target resources carry, or None for
        a definition that runs once without a resource.
        """
        known: Set[str] = set(BUILTINS) | set(definition.variables) | set(variables or {})
        earlier_steps: Set[str] = set()

        for step in definition.steps:
            for pname, raw in step.command.params.items():
                for name in placeholders_in(raw):
                    if not _satisfiable(name, known, earlier_steps):
                        raise UnresolvedPlaceholder(token=name, where=f"step '{step.id}' param '{pname}'")
            known.update(step.outputs)
            earlier_steps.add(step.id)

        for idx, cleanup in enumerate(definition.cleanup):
            fields = cleanup_fields(cleanup) if cleanup_fields is not None else None
            allowed = known if fields is None else known | set(RESOURCE_FIELDS) | set(fields)
            for pname, raw in cleanup.command.params.items():
                for name in placeholders_in(raw):
                    if not _satisfiable(name, allowed, earlier_steps):
                        raise UnresolvedPlaceholder(token=name, where=f"cleanup #{idx + 1} '{cleanup.label}' param '{pname}'")


def _satisfiable(name: str, known: Set[str], earlier_steps: Set[str]) -> bool:
    if name in known:
        return True
    step_id, dot, key = name.partition(".")
    return bool(dot and key and step_id in earlier_steps)
