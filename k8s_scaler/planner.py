"""
Node planner: expands declared clusters into concrete NodeSpecs
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from .addressing import ip_for, vip_for
from .naming import Role, node_name
from .topology import ClusterSpec, Resources, Topology


@dataclass(frozen=True)
class NodeSpec:
    name: str
    role: Role
    index: int
    cluster: str
    resources: Resources
    ip: str
    primary: bool = False


@dataclass(frozen=True)
class ClusterPlan:
    """Planned nodes for one cluster, ordered load balancer, masters, workers"""
    cluster: ClusterSpec
    nodes: List[NodeSpec]

    @property
    def name(self) -> str:
        return self.cluster.name

    @property
    def vip(self) -> str:
        return vip_for(self.cluster.base_subnet)

    @property
    def load_balancer(self) -> Optional[NodeSpec]:
        return next((node for node in self.nodes if node.role is Role.LOAD_BALANCER), None)

    @property
    def masters(self) -> List[NodeSpec]:
        return [node for node in self.nodes if node.role is Role.MASTER]

    @property
    def workers(self) -> List[NodeSpec]:
        return [node for node in self.nodes if node.role is Role.WORKER]

    @property
    def primary(self) -> NodeSpec:
        return self.masters[0]

    @property
    def control_plane_endpoint(self) -> str:
        """VIP when a load balancer fronts the masters, otherwise the single master"""
        return self.vip if self.cluster.requires_load_balancer else self.primary.ip

    @property
    def addon_trigger(self) -> NodeSpec:
        """The single node whose join completion triggers add-on deployment"""
        if self.workers:
            return self.workers[-1]
        return self.masters[-1]

    def node(self, name: str) -> Optional[NodeSpec]:
        return next((node for node in self.nodes if node.name == name), None)

    def by_name(self) -> Dict[str, NodeSpec]:
        return {node.name: node for node in self.nodes}


def plan_cluster(cluster: ClusterSpec) -> ClusterPlan:
    nodes: List[NodeSpec] = []
    for role in (Role.LOAD_BALANCER, Role.MASTER, Role.WORKER):
        count = cluster.count_for(role)
        for index in range(1, count + 1):
            nodes.append(NodeSpec(
                name=node_name(cluster.name, role, count, index),
                role=role,
                index=index,
                cluster=cluster.name,
                resources=cluster.resources_for(role),
                ip=ip_for(cluster.base_subnet, role, index),
                primary=role is Role.MASTER and index == 1,
            ))
    return ClusterPlan(cluster=cluster, nodes=nodes)


def plan(topology: Topology, include_disabled: bool = False) -> List[ClusterPlan]:
    """Deterministic expansion of the topology, in declaration order"""
    clusters = topology.clusters if include_disabled else topology.enabled
    return [plan_cluster(cluster) for cluster in clusters]
