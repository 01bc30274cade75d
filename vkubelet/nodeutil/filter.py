"""Pod event filters for the pod controller."""

from __future__ import annotations

from collections.abc import Callable

PodFilter = Callable[[dict], bool]


def filter_pods_for_node_name(name: str) -> PodFilter:
    """Filter that accepts pods whose ``spec.nodeName`` is name."""

    def accept(pod: dict) -> bool:
        return (pod.get("spec") or {}).get("nodeName") == name

    return accept


def pod_filters(*args: PodFilter) -> PodFilter:
    """Combine filters: a pod passes if any filter, tried in order, accepts it."""

    def accept(pod: dict) -> bool:
        return any(check(pod) for check in args)

    return accept