from .commands import CommandEntry, CommandRegistry, default_registry
from .engine import ToolPrerequisites, WorkflowEngine
from .errors import (
    CleanupFailed,
    CommandFailed,
    CommandTimedOut,
    DemoflowError,
    PrerequisiteNotMet,
    UnknownCommand,
    UnresolvedPlaceholder,
    WorkflowLoadError,
)
from .events import BackgroundDispatcher, EventBus
from .invoker import CommandInvoker, InvokerConfig
from .loader import discover_workflows, load_workflow, parse_workflow
from .model import (
    CommandSpec,
    CostSummary,
    PlannedCommand,
    RetryPolicy,
    RunResult,
    RunStatus,
    StepResult,
    StepStatus,
    WorkflowDefinition,
)
from .placeholders import PlaceholderResolver
from .tracker import ResourceTracker

__all__ = [
    "CommandEntry", "CommandRegistry", "default_registry",
    "ToolPrerequisites", "WorkflowEngine",
    "CleanupFailed", "CommandFailed", "CommandTimedOut", "DemoflowError", "PrerequisiteNotMet",
    "UnknownCommand", "UnresolvedPlaceholder", "WorkflowLoadError",
    "BackgroundDispatcher", "EventBus", "CommandInvoker", "InvokerConfig",
    "discover_workflows", "load_workflow", "parse_workflow",
    "CommandSpec", "CostSummary", "PlannedCommand", "RetryPolicy", "RunResult", "RunStatus", "StepResult", "StepStatus", "WorkflowDefinition",
    "PlaceholderResolver", "ResourceTracker",
]
