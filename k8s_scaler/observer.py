"""
State observer: what is actually running in the hypervisor right now
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from .errors import ObservationError
from .naming import Role, parse_node_name
from .topology import Resources

logger = logging.getLogger(__name__)

RUNNING = "running"


@dataclass(frozen=True)
class VmEntry:
    """One row of the hypervisor's VM listing"""
    name: str
    power_state: str


@dataclass(frozen=True)
class ObservedNode:
    name: str
    cluster: str
    role: Role
    index: int
    resources: Resources
    running: bool = True


class StateObserver:
    """Builds ObservedNode records fresh on every call; nothing is cached"""

    def __init__(self, hypervisor):
        self.hypervisor = hypervisor

    async def observe(self, cluster: Optional[str] = None) -> List[ObservedNode]:
        # A failed listing is fatal for the whole observation
        entries = await self.hypervisor.list_nodes()
        observed: List[ObservedNode] = []
        for entry in entries:
            parsed = parse_node_name(entry.name)
            if parsed is None:
                logger.debug(f"Ignoring unrelated VM {entry.name}")
                continue
            if cluster is not None and parsed.cluster != cluster:
                continue
            if entry.power_state != RUNNING:
                logger.debug(f"Ignoring {entry.name}: state {entry.power_state}")
                continue
            try:
                resources = await self.hypervisor.get_resources(entry.name)
            except ObservationError as e:
                logger.warning(f"⚠️ Could not read resources for {entry.name}, excluding it: {e}")
                continue
            observed.append(ObservedNode(
                name=entry.name,
                cluster=parsed.cluster,
                role=parsed.role,
                index=parsed.index,
                resources=resources,
            ))
        logger.debug(f"Observed {len(observed)} running node(s)")
        return observed

    async def power_state(self, name: str) -> Optional[str]:
        """Power state of one VM, None when the hypervisor does not know it"""
        for entry in await self.hypervisor.list_nodes():
            if entry.name == name:
                return entry.power_state
        return None
