# tracker.py
from __future__ import annotations

import threading
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional

from .log import get_logger
from .model import TrackedResource

log = get_logger("tracker")


def new_resource(
    run_id: str,
    kind: str,
    identifier: str,
    step_id: str,
    attributes: Mapping[str, str] | None = None,
    created_at: datetime | None = None,
) -> TrackedResource:
    return TrackedResource(
        resource_id=str(uuid.uuid4()),
        run_id=run_id,
        kind=kind,
        identifier=identifier,
        step_id=step_id,
        created_at=created_at or datetime.now(timezone.utc),
        attributes=dict(attributes or {}),
    )


class ResourceTracker:
    """
    In-memory set of resources created per run, in creation order.

    Safe for concurrent record/release (the cleanup phase may release from
    worker threads). Nothing is persisted across process restarts. An entry
    stays visible to list() until release() or abandon() removes it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, "OrderedDict[str, TrackedResource]"] = {}
        self._index: Dict[str, str] = {}   # resource_id -> run_id

    def record(self, resource: TrackedResource) -> TrackedResource:
        with self._lock:
            if resource.resource_id in self._index:
                raise ValueError(f"Resource already tracked: {resource.resource_id}")
            self._runs.setdefault(resource.run_id, OrderedDict())[resource.resource_id] = resource
            self._index[resource.resource_id] = resource.run_id
        log.info("tracking %s (run=%s, step=%s)", resource, resource.run_id, resource.step_id)
        return resource

    def list(self, run_id: str) -> List[TrackedResource]:
        with self._lock:
            return list(self._runs.get(run_id, {}).values())

    def get(self, resource_id: str) -> Optional[TrackedResource]:
        with self._lock:
            run_id = self._index.get(resource_id)
            if run_id is None:
                return None
            return self._runs[run_id].get(resource_id)

    def release(self, resource_id: str) -> TrackedResource:
        with self._lock:
            run_id = self._index.pop(resource_id, None)
            if run_id is None:
                raise KeyError(f"Resource not tracked: {resource_id}")
            resource = self._runs[run_id].pop(resource_id)
            if not self._runs[run_id]:
                del self._runs[run_id]
        log.info("released %s (run=%s)", resource, run_id)
        return resource

    def abandon(self, run_id: str) -> List[TrackedResource]:
        """Forget every remaining resource of a finished run and return them."""
        with self._lock:
            left = list(self._runs.pop(run_id, {}).values())
            for r in left:
                self._index.pop(r.resource_id, None)
        if left:
            log.warning("run %s abandoned %d tracked resource(s)", run_id, len(left))
        return left

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)
