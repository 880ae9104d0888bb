"""
Node naming grammar: <cluster>-<role>[<index>]

The planner builds names with node_name() and the observer reads VM names back
with parse_node_name(). Both sides go through this module only.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Role(Enum):
    """Node roles and the token each one uses inside a node name"""
    LOAD_BALANCER = "lb"
    MASTER = "master"
    WORKER = "worker"

    @property
    def label(self) -> str:
        return "load-balancer" if self is Role.LOAD_BALANCER else self.value


NAME_PATTERN = re.compile(
    r"^(?P<cluster>[A-Za-z0-9][A-Za-z0-9-]*)-(?P<role>lb|master|worker)(?P<index>[1-9][0-9]*)?$"
)


@dataclass(frozen=True)
class ParsedName:
    cluster: str
    role: Role
    index: int


def node_name(cluster: str, role: Role, count: int, index: int) -> str:
    """Build the stable node name; the index suffix is dropped when count == 1"""
    if index < 1 or index > count:
        raise ValueError(f"index {index} outside 1..{count} for {cluster} {role.label}")
    base = f"{cluster}-{role.value}"
    if count == 1:
        return base
    return f"{base}{index}"


def parse_node_name(name: str) -> Optional[ParsedName]:
    """Parse a VM name back into (cluster, role, index); None when it is not one of ours"""
    match = NAME_PATTERN.match(name)
    if not match:
        return None
    index = match.group("index")
    return ParsedName(
        cluster=match.group("cluster"),
        role=Role(match.group("role")),
        index=int(index) if index else 1,
    )
