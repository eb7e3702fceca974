# loader.py
from __future__ import annotations

import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .commands import CommandRegistry, default_registry
from .errors import UnknownCommand, WorkflowLoadError
from .log import get_logger
from .model import (
    CleanupDefinition,
    CommandSpec,
    CostEstimate,
    Prerequisite,
    RetryPolicy,
    StepDefinition,
    WorkflowDefinition,
)

log = get_logger("loader")

CATEGORY_ALIASES = {
    "oss": "object-storage",
    "md": "model-derivative",
    "dm": "data-management",
    "da": "design-automation",
    "acc": "construction-cloud",
    "rc": "reality-capture",
    "e2e": "end-to-end",
}


# -------------------- Schemas --------------------

class CommandDoc(BaseModel):
    # params may be nested under `params` or written next to type/action
    model_config = ConfigDict(extra="allow")

    type: str
    action: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)


class CleanupDoc(CommandDoc):
    name: str = ""


class RetryDoc(BaseModel):
    max_attempts: int = Field(default=1, ge=1)
    backoff_seconds: float = Field(default=0.0, ge=0)


class StepDoc(BaseModel):
    id: str
    name: str
    description: str = ""
    command: CommandDoc
    expected_duration: Optional[float] = Field(default=None, ge=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    retry: Optional[RetryDoc] = None
    requires: List[str] = Field(default_factory=list)
    outputs: Dict[str, str] = Field(default_factory=dict)
    cleanup_commands: List[CleanupDoc] = Field(default_factory=list)


class PrerequisiteDoc(BaseModel):
    type: str
    description: str = ""


class CostDoc(BaseModel):
    description: str = ""
    max_cost_usd: float = Field(default=0.0, ge=0)


class MetadataDoc(BaseModel):
    id: str
    name: str
    description: str = ""
    category: str = ""
    prerequisites: List[PrerequisiteDoc] = Field(default_factory=list)
    estimated_duration: float = Field(default=0.0, ge=0)
    cost_estimate: Optional[CostDoc] = None
    required_assets: List[str] = Field(default_factory=list)


class WorkflowDoc(BaseModel):
    metadata: MetadataDoc
    variables: Dict[str, str] = Field(default_factory=dict)
    steps: List[StepDoc] = Field(min_length=1)
    cleanup: List[CleanupDoc] = Field(default_factory=list)


# -------------------- Conversion --------------------

def _param_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return shlex.join(str(v) for v in value)
    return str(value)


def _command(doc: CommandDoc) -> CommandSpec:
    raw = dict(doc.model_extra or {})
    raw.pop("name", None)
    raw.update(doc.params)
    action = doc.action or ("run" if doc.type == "custom" else "")
    params = {k: _param_str(v) for k, v in raw.items() if v is not None}
    return CommandSpec(type=doc.type, action=action, params=params)


def _check_command(spec: CommandSpec, where: str, registry: CommandRegistry, problems: List[str]) -> None:
    try:
        missing = registry.missing_params(spec)
    except UnknownCommand as e:
        problems.append(f"{where}: {e}")
        return
    for p in missing:
        problems.append(f"{where}: {spec} requires param '{p}'")


def parse_workflow(
    data: Any,
    source: str = "<memory>",
    registry: CommandRegistry | None = None,
) -> WorkflowDefinition:
    """
    Validate a workflow document (already parsed from YAML/JSON) and build the
    immutable definition.

    Raises:
        WorkflowLoadError: listing every problem found, not just the first
    """
    registry = registry or default_registry()
    try:
        doc = WorkflowDoc.model_validate(data)
    except ValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise WorkflowLoadError(path=source, problems=problems) from None

    problems: List[str] = []
    meta = doc.metadata
    if not meta.id.strip():
        problems.append("metadata.id cannot be empty")
    if not meta.name.strip():
        problems.append("metadata.name cannot be empty")

    steps: List[StepDefinition] = []
    cleanup: List[CleanupDefinition] = []
    step_cleanup: List[CleanupDefinition] = []
    seen = set()
    for i, s in enumerate(doc.steps):
        where = f"steps[{i}] '{s.id}'"
        if not s.id.strip():
            problems.append(f"steps[{i}]: step id cannot be empty")
        elif s.id in seen:
            problems.append(f"duplicate step id: {s.id}")
        seen.add(s.id)
        if not s.name.strip():
            problems.append(f"{where}: name cannot be empty")

        spec = _command(s.command)
        _check_command(spec, where, registry, problems)
        retry = RetryPolicy(**s.retry.model_dump()) if s.retry else RetryPolicy()
        steps.append(
            StepDefinition(
                id=s.id,
                name=s.name,
                description=s.description,
                command=spec,
                expected_duration=s.expected_duration,
                timeout=s.timeout,
                retry=retry,
                requires=tuple(s.requires),
                outputs=dict(s.outputs),
            )
        )
        for c in s.cleanup_commands:
            cspec = _command(c)
            _check_command(cspec, f"{where} cleanup_commands", registry, problems)
            step_cleanup.append(CleanupDefinition(command=cspec, name=c.name))

    for i, c in enumerate(doc.cleanup):
        spec = _command(c)
        _check_command(spec, f"cleanup[{i}]", registry, problems)
        cleanup.append(CleanupDefinition(command=spec, name=c.name))

    if problems:
        raise WorkflowLoadError(path=source, problems=problems)

    category = meta.category.strip().lower()
    return WorkflowDefinition(
        id=meta.id,
        name=meta.name,
        description=meta.description,
        category=CATEGORY_ALIASES.get(category, category),
        steps=tuple(steps),
        cleanup=tuple(cleanup + step_cleanup),
        prerequisites=tuple(Prerequisite(kind=p.type, description=p.description) for p in meta.prerequisites),
        required_assets=tuple(Path(a) for a in meta.required_assets),
        estimated_duration=meta.estimated_duration,
        cost_estimate=(
            CostEstimate(description=meta.cost_estimate.description, max_cost_usd=meta.cost_estimate.max_cost_usd)
            if meta.cost_estimate else None
        ),
        variables=dict(doc.variables),
        source_path=Path(source) if source != "<memory>" else None,
    )


def load_workflow(path: str | Path, registry: CommandRegistry | None = None) -> WorkflowDefinition:
    """
    Load a workflow definition from a YAML file.

    Raises:
        FileNotFoundError: if the file does not exist
        WorkflowLoadError: if it is not valid YAML or not a valid workflow
    """
    wf_path = Path(path).expanduser()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix not in (".yaml", ".yml"):
        raise WorkflowLoadError(path=str(wf_path), problems=[f"expected a .yaml/.yml file, got {wf_path.name}"])

    try:
        text = wf_path.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as e:
        raise WorkflowLoadError(path=str(wf_path), problems=[f"could not read file: {e}"]) from None
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise WorkflowLoadError(path=str(wf_path), problems=[f"YAML parse error: {e}"]) from None

    return parse_workflow(data, source=str(wf_path), registry=registry)


def discover_workflows(directory: str | Path, registry: CommandRegistry | None = None) -> Dict[str, WorkflowDefinition]:
    """
    Load every *.yaml / *.yml file under `directory`.

    Broken files are logged and skipped so one bad definition does not hide
    the others.
    """
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"Workflows directory does not exist: {root}")

    found: Dict[str, WorkflowDefinition] = {}
    for path in sorted(p for p in root.rglob("*") if p.suffix in (".yaml", ".yml") and p.is_file()):
        try:
            wf = load_workflow(path, registry=registry)
        except WorkflowLoadError as e:
            log.error("%s", e)
            continue
        if wf.id in found:
            log.warning("workflow id %s defined twice; using %s", wf.id, path)
        found[wf.id] = wf
    log.info("discovered %d workflow(s) in %s", len(found), root)
    return found


def missing_assets(definition: WorkflowDefinition, base_dir: str | Path | None = None) -> List[Path]:
    base = Path(base_dir) if base_dir is not None else Path(".")
    return [a for a in definition.required_assets if not (a if a.is_absolute() else base / a).exists()]
