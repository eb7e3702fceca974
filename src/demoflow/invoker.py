# invoker.py
from __future__ import annotations

import json
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import psutil

from . import settings
from .commands import CommandRegistry, default_registry
from .log import get_logger
from .model import CommandSpec, StepResult, StepStatus

log = get_logger("invoker")

OUTPUT_TAIL = 4000      # keep the end of long outputs, that's where errors are
KILL_GRACE = 5.0


@dataclass(frozen=True)
class InvokerConfig:
    cli_path: str = settings.CLI_PATH
    json_output: bool = True
    non_interactive: bool = True
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    poll_interval: float = 0.1   # how often a running command checks the abort event


def _kill_tree(proc: subprocess.Popen) -> None:
    """Kill proc and every descendant, then reap proc."""
    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
    proc.kill()
    _gone, alive = psutil.wait_procs(children, timeout=KILL_GRACE)
    for p in alive:
        log.warning("process %s survived kill", p.pid)


def _parse_json(stdout: str) -> dict:
    text = stdout.strip()
    if not text:
        return {}
    try:
        data = json.loads(text)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class CommandInvoker:
    """
    Runs one external tool command per call.

    Single shot: never retries. The caller owns retry policy.
    """

    def __init__(self, config: InvokerConfig | None = None, registry: CommandRegistry | None = None):
        self.config = config or InvokerConfig()
        self.registry = registry or default_registry()

    def argv(self, spec: CommandSpec) -> List[str]:
        args = [self.config.cli_path, *self.registry.build_args(spec)]
        if self.config.non_interactive:
            args.append("--non-interactive")
        if self.config.json_output:
            args.extend(["--output", "json"])
        return args

    def invoke(
        self,
        spec: CommandSpec,
        timeout: float,
        *,
        abort: threading.Event | None = None,
        step_id: str = "",
    ) -> StepResult:
        """
        Run `spec` with a hard wall-clock timeout.

        Returns SUCCEEDED on exit code 0, FAILED on non-zero exit, a spawn
        error or an abort, and TIMED_OUT when the deadline passes. On timeout
        or abort the process tree is killed and reaped before returning.
        """
        argv = self.argv(spec)
        log.info("executing: %s", shlex.join(argv))

        env = os.environ.copy()
        env.update(self.config.env)

        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                env=env,
                cwd=self.config.cwd,
            )
        except OSError as e:
            return StepResult(
                step_id=step_id,
                status=StepStatus.FAILED,
                error=f"could not start {argv[0]}: {e}",
                attempts=1,
                duration=time.monotonic() - started,
            )

        deadline = started + timeout
        stopped: str | None = None
        stdout = stderr = ""

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                stopped = "timeout"
                break
            if abort is not None and abort.is_set():
                stopped = "aborted"
                break
            wait = remaining if abort is None else min(remaining, self.config.poll_interval)
            try:
                stdout, stderr = proc.communicate(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                continue

        if stopped is not None:
            _kill_tree(proc)
            try:
                stdout, stderr = proc.communicate(timeout=KILL_GRACE)
            except subprocess.TimeoutExpired:
                # a detached grandchild still holds the pipes open
                log.warning("output pipes of pid %s still open after kill", proc.pid)
                stdout, stderr = "", ""
            duration = time.monotonic() - started
            if stopped == "timeout":
                log.warning("command timed out after %.1fs: %s", timeout, spec)
                return StepResult(
                    step_id=step_id,
                    status=StepStatus.TIMED_OUT,
                    output=(stdout or "")[-OUTPUT_TAIL:],
                    error=f"timed out after {timeout:g}s",
                    exit_code=proc.returncode,
                    attempts=1,
                    duration=duration,
                )
            return StepResult(
                step_id=step_id,
                status=StepStatus.FAILED,
                output=(stdout or "")[-OUTPUT_TAIL:],
                error="aborted",
                exit_code=proc.returncode,
                attempts=1,
                duration=duration,
            )

        duration = time.monotonic() - started
        if proc.returncode != 0:
            log.warning("command failed (exit=%s): %s", proc.returncode, spec)
            return StepResult(
                step_id=step_id,
                status=StepStatus.FAILED,
                output=stdout[-OUTPUT_TAIL:],
                error=(stderr or stdout)[-OUTPUT_TAIL:],
                exit_code=proc.returncode,
                attempts=1,
                duration=duration,
            )

        log.debug("command ok in %.2fs: %s", duration, spec)
        return StepResult(
            step_id=step_id,
            status=StepStatus.SUCCEEDED,
            output=stdout[-OUTPUT_TAIL:],
            exit_code=0,
            attempts=1,
            duration=duration,
            data=_parse_json(stdout),
        )

    # ------------------------------------------------------------------
    # Tool checks used for workflow prerequisites
    # ------------------------------------------------------------------

    def _quick(self, args: List[str], timeout: float = 30.0) -> bool:
        try:
            proc = subprocess.run(
                [self.config.cli_path, *args],
                capture_output=True,
                text=True,
                timeout=timeout,
                env={**os.environ, **self.config.env},
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return proc.returncode == 0

    def tool_available(self) -> bool:
        return self._quick(["--version"])

    def authenticated(self) -> bool:
        return self._quick(["auth", "status"])
