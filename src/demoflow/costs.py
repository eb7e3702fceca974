# costs.py
from __future__ import annotations

from typing import Dict, Iterable

from .model import CostSummary, TrackedResource

# Rough per-resource estimates in USD. Kinds not listed are free.
RESOURCE_COSTS: Dict[str, float] = {
    "bucket": 0.01,
    "translation": 0.50,
    "work-item": 0.10,
    "photoscene": 1.00,
}

STORAGE_USD_PER_GB = 0.023
GB = 1024 ** 3


def estimate(resource: TrackedResource) -> float:
    if resource.kind == "object":
        # objects cost by size; size is only known when the upload reported it
        try:
            size = int(resource.attributes.get("size", "0"))
        except ValueError:
            size = 0
        return size / GB * STORAGE_USD_PER_GB
    return RESOURCE_COSTS.get(resource.kind, 0.0)


def summarize(resources: Iterable[TrackedResource]) -> CostSummary:
    by_kind: Dict[str, float] = {}
    by_resource: Dict[str, float] = {}
    for r in resources:
        cost = estimate(r)
        by_kind[r.kind] = by_kind.get(r.kind, 0.0) + cost
        by_resource[r.resource_id] = cost
    return CostSummary(total_usd=sum(by_resource.values()), by_kind=by_kind, by_resource=by_resource)
