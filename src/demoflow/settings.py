# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace

CLI_PATH = os.environ.get("DEMOFLOW_CLI_PATH", "raps")
STEP_TIMEOUT = float(os.environ.get("DEMOFLOW_STEP_TIMEOUT", "300"))
CLEANUP_TIMEOUT = float(os.environ.get("DEMOFLOW_CLEANUP_TIMEOUT", "60"))
CLEANUP_WORKERS = int(os.environ.get("DEMOFLOW_CLEANUP_WORKERS", "1"))
WORKFLOWS_DIR = os.environ.get("DEMOFLOW_WORKFLOWS_DIR", "workflows")
LOG_LEVEL = os.environ.get("DEMOFLOW_LOG_LEVEL", "WARNING")


@dataclass(frozen=True)
class Settings:
    cli_path: str = CLI_PATH
    step_timeout: float = STEP_TIMEOUT
    cleanup_timeout: float = CLEANUP_TIMEOUT
    cleanup_workers: int = CLEANUP_WORKERS
    workflows_dir: str = WORKFLOWS_DIR
    strict_prerequisites: bool = False
    json_output: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            cli_path=os.environ.get("DEMOFLOW_CLI_PATH", CLI_PATH),
            step_timeout=float(os.environ.get("DEMOFLOW_STEP_TIMEOUT", STEP_TIMEOUT)),
            cleanup_timeout=float(os.environ.get("DEMOFLOW_CLEANUP_TIMEOUT", CLEANUP_TIMEOUT)),
            cleanup_workers=int(os.environ.get("DEMOFLOW_CLEANUP_WORKERS", CLEANUP_WORKERS)),
            workflows_dir=os.environ.get("DEMOFLOW_WORKFLOWS_DIR", WORKFLOWS_DIR),
        )

    def override(self, **changes) -> "Settings":
        # CLI options arrive as None when not given
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
