# cli.py
from __future__ import annotations

import signal
import sys
import threading
from pathlib import Path

import click

from .engine import ToolPrerequisites, WorkflowEngine
from .errors import DemoflowError, PrerequisiteNotMet, UnresolvedPlaceholder, WorkflowLoadError
from .events import BackgroundDispatcher, EventBus
from .invoker import CommandInvoker, InvokerConfig
from .loader import discover_workflows, load_workflow, missing_assets
from .log import set_level
from .model import RunStatus, WorkflowDefinition
from .settings import Settings
from .ui.console import Console, ConsoleReporter, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CLEANUP_INCOMPLETE = 2
EXIT_INTERRUPTED = 130


def discover_workflow(workflow_arg: str, directory: str) -> WorkflowDefinition:
    """
    Resolve WORKFLOW as a file path first, then as a workflow id in `directory`.

    Raises:
        SystemExit: If the workflow cannot be found or fails to load
    """
    console = get_console()

    path = Path(workflow_arg)
    if path.suffix in (".yaml", ".yml") or path.exists():
        try:
            return load_workflow(path)
        except FileNotFoundError as e:
            console.print_error(
                "Workflow file not found",
                str(e),
                suggestion="Pass a workflow file path or a workflow id:\n  demoflow run workflows/oss-basics.yaml",
            )
            sys.exit(EXIT_FAILED)
        except WorkflowLoadError as e:
            console.print_error("Invalid workflow", f"Could not load {e.path}", details=e.problems)
            sys.exit(EXIT_FAILED)

    try:
        found = discover_workflows(directory)
    except FileNotFoundError as e:
        console.print_error(
            "No workflows directory",
            str(e),
            suggestion="Point --dir (or DEMOFLOW_WORKFLOWS_DIR) at a directory of workflow YAML files.",
        )
        sys.exit(EXIT_FAILED)

    if workflow_arg not in found:
        known = sorted(found) or ["(none)"]
        console.print_error(
            "Workflow not found",
            f"No workflow file or id matches: {workflow_arg}",
            details=["Known workflow ids:", *(f"  {k}" for k in known)],
            suggestion="List available workflows:\n  demoflow list",
        )
        sys.exit(EXIT_FAILED)
    return found[workflow_arg]


def _parse_vars(ctx, param, values) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", ctx=ctx, param=param)
        out[key.strip()] = value
    return out


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, debug logs and full error output)",
)
@click.pass_context
def cli(ctx, debug):
    """demoflow - run scripted demo workflows against the raps CLI."""
    console = Console(debug=debug)
    set_console(console)
    if debug:
        set_level("DEBUG")
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = Settings.from_env()


@cli.command("list")
@click.option("--dir", "directory", default=None, help="Workflows directory (defaults to DEMOFLOW_WORKFLOWS_DIR)")
@click.pass_context
def list_workflows(ctx, directory):
    """List the workflows found in the workflows directory."""
    console = get_console()
    directory = directory or ctx.obj["settings"].workflows_dir
    try:
        found = discover_workflows(directory)
    except FileNotFoundError as e:
        console.print_error("No workflows directory", str(e))
        sys.exit(EXIT_FAILED)

    if not found:
        console.print_info(f"No workflows found in {directory}")
        return
    for wf in sorted(found.values(), key=lambda w: (w.category, w.id)):
        category = f"[{wf.category}] " if wf.category else ""
        console.print_info(f"{wf.id:<30} {category}{wf.name} ({len(wf.steps)} steps)")


@cli.command()
@click.argument("workflow")
@click.option("--dir", "directory", default=None, help="Workflows directory used to resolve workflow ids")
@click.pass_context
def show(ctx, workflow, directory):
    """Print a workflow's metadata, steps and cleanup commands."""
    wf = discover_workflow(workflow, directory or ctx.obj["settings"].workflows_dir)
    get_console().print_workflow(wf)


@cli.command()
@click.argument("workflow")
@click.option("--dir", "directory", default=None, help="Workflows directory used to resolve workflow ids")
@click.option("--var", "variables", multiple=True, callback=_parse_vars, help="Run variable KEY=VALUE (repeatable)")
@click.pass_context
def validate(ctx, workflow, directory, variables):
    """Check a workflow definition without running anything."""
    console = get_console()
    wf = discover_workflow(workflow, directory or ctx.obj["settings"].workflows_dir)

    engine = WorkflowEngine(CommandInvoker())
    problems = engine.preflight(wf, variables)
    base_dir = wf.source_path.parent if wf.source_path else None
    problems.extend(f"missing asset: {a}" for a in missing_assets(wf, base_dir))
    if problems:
        console.print_error("Workflow is not runnable", f"{wf.id}: {len(problems)} problem(s)", details=problems)
        sys.exit(EXIT_FAILED)
    console.print_info(f"OK: {wf.id} ({len(wf.steps)} steps, {len(wf.cleanup)} cleanup commands)")


@cli.command()
@click.argument("workflow")
@click.option("--dir", "directory", default=None, help="Workflows directory used to resolve workflow ids")
@click.option("--var", "variables", multiple=True, callback=_parse_vars, help="Run variable KEY=VALUE (repeatable)")
@click.option("--cli-path", default=None, help="Path to the raps executable")
@click.option("--timeout", type=float, default=None, help="Default per-step timeout in seconds")
@click.option("--cleanup-timeout", type=float, default=None, help="Per-command cleanup timeout in seconds")
@click.option("--cleanup-workers", type=click.IntRange(min=1), default=None, help="Concurrent cleanup commands")
@click.option(
    "--strict-prerequisites/--no-strict-prerequisites",
    default=False,
    show_default=True,
    help="Fail the run instead of skipping steps whose prerequisites are not met",
)
@click.option("--dry-run", is_flag=True, default=False, help="Print the commands the run would execute, then exit")
@click.pass_context
def run(
    ctx, workflow, directory, variables, cli_path, timeout, cleanup_timeout, cleanup_workers, strict_prerequisites, dry_run
):
    """Run a workflow, then clean up everything it created."""
    console = get_console()
    settings = ctx.obj["settings"].override(
        cli_path=cli_path,
        step_timeout=timeout,
        cleanup_timeout=cleanup_timeout,
        cleanup_workers=cleanup_workers,
        strict_prerequisites=strict_prerequisites,
    )
    wf = discover_workflow(workflow, directory or settings.workflows_dir)
    invoker = CommandInvoker(InvokerConfig(cli_path=settings.cli_path, json_output=settings.json_output))

    if dry_run:
        try:
            plan = WorkflowEngine(invoker, settings=settings).dry_run(wf, variables)
        except UnresolvedPlaceholder as e:
            console.print_error("Workflow cannot start", str(e))
            sys.exit(EXIT_FAILED)
        except DemoflowError as e:
            console.print_exception(e)
            sys.exit(EXIT_FAILED)
        console.print_plan(wf, plan)
        return

    base_dir = wf.source_path.parent if wf.source_path else None
    missing = missing_assets(wf, base_dir)
    if missing:
        console.print_error(
            "Missing assets",
            f"Workflow {wf.id} needs files that do not exist:",
            details=[str(a) for a in missing],
        )
        sys.exit(EXIT_FAILED)

    reporter = EventBus()
    # render off the engine thread
    dispatcher = BackgroundDispatcher(ConsoleReporter(console, wf)).start()
    reporter.subscribe(dispatcher)
    engine = WorkflowEngine(
        invoker,
        reporter=reporter,
        prerequisite_checker=ToolPrerequisites(invoker, wf, base_dir),
        settings=settings,
    )

    # First Ctrl-C asks the engine to stop and clean up; a second one is a hard interrupt.
    abort = threading.Event()

    def on_sigint(signum, frame):
        if abort.is_set():
            raise KeyboardInterrupt
        console.print_info("\nInterrupt received, stopping and cleaning up (Ctrl-C again to force)")
        abort.set()

    previous = signal.signal(signal.SIGINT, on_sigint)
    try:
        result = engine.run(wf, variables, abort=abort)
    except (UnresolvedPlaceholder, PrerequisiteNotMet) as e:
        console.print_error("Workflow cannot start", str(e))
        sys.exit(EXIT_FAILED)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user, cleanup did not finish")
        sys.exit(EXIT_INTERRUPTED)
    except DemoflowError as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)
    finally:
        signal.signal(signal.SIGINT, previous)
        dispatcher.close(timeout=5.0)

    budget = wf.cost_estimate.max_cost_usd if wf.cost_estimate is not None else None
    console.print_results(result, budget=budget)

    if result.status is RunStatus.ABORTED and abort.is_set():
        sys.exit(EXIT_INTERRUPTED)
    if result.status is not RunStatus.COMPLETED:
        sys.exit(EXIT_FAILED)
    if not result.cleanup_complete:
        sys.exit(EXIT_CLEANUP_INCOMPLETE)


if __name__ == "__main__":
    cli()
