"""
Declared multi-cluster topology: clusters, per-role counts and resources
"""

import ipaddress
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from .addressing import MAX_NODES_PER_ROLE, validate_subnet
from .errors import ConfigurationError
from .naming import Role

DEFAULT_MASTER_CPUS = 2
DEFAULT_MASTER_MEMORY = 3072
DEFAULT_WORKER_CPUS = 1
DEFAULT_WORKER_MEMORY = 1024


@dataclass(frozen=True)
class Resources:
    cpus: int
    memory_mb: int


@dataclass(frozen=True)
class ClusterSpec:
    """One declared cluster"""
    name: str
    base_subnet: str
    master_count: int
    worker_count: int
    master_resources: Resources = Resources(DEFAULT_MASTER_CPUS, DEFAULT_MASTER_MEMORY)
    worker_resources: Resources = Resources(DEFAULT_WORKER_CPUS, DEFAULT_WORKER_MEMORY)
    metallb_ip_range: str = ""
    context: str = ""
    enabled: bool = True

    def __post_init__(self):
        self.validate()

    @property
    def requires_load_balancer(self) -> bool:
        return self.master_count > 1

    def count_for(self, role: Role) -> int:
        if role is Role.LOAD_BALANCER:
            return 1 if self.requires_load_balancer else 0
        return self.master_count if role is Role.MASTER else self.worker_count

    def resources_for(self, role: Role) -> Resources:
        # The load balancer is sized like a worker
        return self.master_resources if role is Role.MASTER else self.worker_resources

    def field_values(self) -> Dict[str, object]:
        """Literal declaration fields used for aggregate comparison"""
        return {
            "master_count": self.master_count,
            "worker_count": self.worker_count,
            "master_cpus": self.master_resources.cpus,
            "master_memory": self.master_resources.memory_mb,
            "worker_cpus": self.worker_resources.cpus,
            "worker_memory": self.worker_resources.memory_mb,
        }

    def validate(self) -> None:
        if not isinstance(self.master_count, int) or self.master_count < 1:
            raise ConfigurationError(f"must be at least 1, got {self.master_count!r}",
                                     cluster=self.name, field="master_count")
        if not isinstance(self.worker_count, int) or self.worker_count < 0:
            raise ConfigurationError(f"must be 0 or more, got {self.worker_count!r}",
                                     cluster=self.name, field="worker_count")
        if self.master_count > MAX_NODES_PER_ROLE:
            raise ConfigurationError(f"{self.master_count} exceeds the maximum of {MAX_NODES_PER_ROLE}",
                                     cluster=self.name, field="master_count")
        if self.worker_count > MAX_NODES_PER_ROLE:
            raise ConfigurationError(f"{self.worker_count} exceeds the maximum of {MAX_NODES_PER_ROLE}",
                                     cluster=self.name, field="worker_count")
        for prefix, resources in (("master", self.master_resources), ("worker", self.worker_resources)):
            if resources.cpus < 1:
                raise ConfigurationError(f"must be positive, got {resources.cpus}",
                                         cluster=self.name, field=f"{prefix}_cpus")
            if resources.memory_mb < 1:
                raise ConfigurationError(f"must be positive, got {resources.memory_mb}",
                                         cluster=self.name, field=f"{prefix}_memory")
        try:
            validate_subnet(self.base_subnet)
        except ConfigurationError as exc:
            raise ConfigurationError(str(exc), cluster=self.name, field="base_subnet") from exc
        if self.metallb_ip_range:
            try:
                ipaddress.ip_network(self.metallb_ip_range, strict=False)
            except ValueError as exc:
                raise ConfigurationError(f"invalid CIDR: {exc}",
                                         cluster=self.name, field="metallb_ip_range") from exc


@dataclass(frozen=True)
class Topology:
    """All declared clusters in declaration order"""
    clusters: List[ClusterSpec] = field(default_factory=list)

    def __post_init__(self):
        names = set()
        subnets: Dict[str, str] = {}
        for cluster in self.clusters:
            if cluster.name in names:
                raise ConfigurationError("declared more than once", cluster=cluster.name)
            names.add(cluster.name)
            owner = subnets.get(cluster.base_subnet)
            if owner is not None:
                raise ConfigurationError(
                    f"base subnet {cluster.base_subnet} already used by {owner}",
                    cluster=cluster.name, field="base_subnet",
                )
            subnets[cluster.base_subnet] = cluster.name

    def __iter__(self) -> Iterator[ClusterSpec]:
        return iter(self.clusters)

    def __len__(self) -> int:
        return len(self.clusters)

    def get(self, name: str) -> Optional[ClusterSpec]:
        for cluster in self.clusters:
            if cluster.name == name:
                return cluster
        return None

    def require(self, name: str) -> ClusterSpec:
        cluster = self.get(name)
        if cluster is None:
            known = ", ".join(c.name for c in self.clusters) or "none"
            raise ConfigurationError(f"cluster '{name}' is not declared (known: {known})")
        return cluster

    @property
    def enabled(self) -> List[ClusterSpec]:
        return [cluster for cluster in self.clusters if cluster.enabled]

    @property
    def names(self) -> List[str]:
        return [cluster.name for cluster in self.clusters]
