"""
Diff engine: planned nodes vs observed nodes, per cluster and per parameter.

Pure data in, pure data out.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .naming import Role
from .observer import ObservedNode
from .planner import ClusterPlan, NodeSpec

# declaration field -> (role, attribute)
RESOURCE_PARAMETERS = {
    "master_cpus": (Role.MASTER, "cpus"),
    "master_memory": (Role.MASTER, "memory"),
    "worker_cpus": (Role.WORKER, "cpus"),
    "worker_memory": (Role.WORKER, "memory"),
}
COUNT_PARAMETERS = {"master_count": Role.MASTER, "worker_count": Role.WORKER}


@dataclass(frozen=True)
class AttributeChange:
    node: str
    param: str
    observed: int
    declared: int


@dataclass(frozen=True)
class ParameterDiff:
    """Declaration literal vs the value implied by running nodes"""
    param: str
    declared: int
    observed: int


@dataclass(frozen=True)
class RoleInconsistency:
    """Running nodes of one role disagree on a resource value"""
    role: Role
    param: str
    values: Tuple[Tuple[str, int], ...]


@dataclass
class ClusterDiff:
    cluster: str
    declared: bool
    disabled: bool = False
    nodes_to_add: List[NodeSpec] = field(default_factory=list)
    nodes_to_remove: List[ObservedNode] = field(default_factory=list)
    attribute_changes: List[AttributeChange] = field(default_factory=list)
    parameter_diffs: List[ParameterDiff] = field(default_factory=list)
    inconsistencies: List[RoleInconsistency] = field(default_factory=list)
    observed_count: int = 0

    @property
    def has_changes(self) -> bool:
        return bool(self.nodes_to_add or self.nodes_to_remove or self.attribute_changes
                    or self.parameter_diffs or self.inconsistencies)

    def parameter(self, name: str) -> Optional[ParameterDiff]:
        return next((p for p in self.parameter_diffs if p.param == name), None)

    def observed_values(self) -> Dict[str, int]:
        """Observed values for every parameter that differs from the declaration"""
        return {p.param: p.observed for p in self.parameter_diffs}


def _attribute(resources, attribute: str) -> int:
    return resources.cpus if attribute == "cpus" else resources.memory_mb


def _compare_nodes(planned: NodeSpec, seen: ObservedNode) -> List[AttributeChange]:
    changes = []
    for attribute in ("cpus", "memory"):
        declared = _attribute(planned.resources, attribute)
        observed = _attribute(seen.resources, attribute)
        if declared != observed:
            changes.append(AttributeChange(planned.name, attribute, observed, declared))
    return changes


def _compare_aggregates(cluster_plan: ClusterPlan, observed: List[ObservedNode],
                        result: ClusterDiff) -> None:
    declared = cluster_plan.cluster.field_values()
    for param, role in COUNT_PARAMETERS.items():
        count = sum(1 for node in observed if node.role is role)
        if count != declared[param]:
            result.parameter_diffs.append(ParameterDiff(param, declared[param], count))

    for param, (role, attribute) in RESOURCE_PARAMETERS.items():
        values = [(node.name, _attribute(node.resources, attribute)) for node in observed if node.role is role]
        if not values:
            continue
        distinct = {value for _, value in values}
        if len(distinct) > 1:
            result.inconsistencies.append(RoleInconsistency(role, param, tuple(values)))
            continue
        value = distinct.pop()
        if value != declared[param]:
            result.parameter_diffs.append(ParameterDiff(param, declared[param], value))


def diff_cluster(cluster_plan: Optional[ClusterPlan], observed: List[ObservedNode],
                 cluster: Optional[str] = None, disabled: bool = False) -> ClusterDiff:
    """Without a plan every running node is to be removed; disabled marks a declared but switched-off cluster"""
    name = cluster_plan.name if cluster_plan else cluster
    result = ClusterDiff(cluster=name, declared=cluster_plan is not None or disabled, disabled=disabled,
                         observed_count=len(observed))
    if cluster_plan is None:
        result.nodes_to_remove = list(observed)
        return result

    seen = {node.name: node for node in observed}
    planned = cluster_plan.by_name()
    for node in cluster_plan.nodes:
        match = seen.get(node.name)
        if match is None:
            result.nodes_to_add.append(node)
        elif node.role is not Role.LOAD_BALANCER:
            result.attribute_changes.extend(_compare_nodes(node, match))
    result.nodes_to_remove = [node for node in observed if node.name not in planned]

    if observed:
        _compare_aggregates(cluster_plan, observed, result)
    return result


def diff(plans: List[ClusterPlan], observed: List[ObservedNode],
         disabled: Iterable[str] = ()) -> List[ClusterDiff]:
    """One ClusterDiff per cluster that is planned or has running nodes"""
    disabled = set(disabled)
    by_cluster: Dict[str, List[ObservedNode]] = {}
    for node in observed:
        by_cluster.setdefault(node.cluster, []).append(node)

    results = [diff_cluster(cluster_plan, by_cluster.get(cluster_plan.name, [])) for cluster_plan in plans]
    planned_names = {cluster_plan.name for cluster_plan in plans}
    for name, nodes in by_cluster.items():
        if name not in planned_names:
            results.append(diff_cluster(None, nodes, cluster=name, disabled=name in disabled))
    return results
