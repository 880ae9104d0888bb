"""
IP allocation from a cluster base subnet and a fixed per-role offset table
"""

import ipaddress
from typing import Dict, List, Tuple

from .errors import ConfigurationError
from .naming import Role

MAX_NODES_PER_ROLE = 10

VIP_OFFSET = 10
LOAD_BALANCER_OFFSET = 20

MASTER_OFFSETS: Dict[int, int] = {index: 10 + index for index in range(1, 10)}
MASTER_OFFSETS[10] = 31

WORKER_OFFSETS: Dict[int, int] = {index: 20 + index for index in range(1, MAX_NODES_PER_ROLE + 1)}


def offset_table() -> List[Tuple[str, int, int]]:
    """Every (slot, index, offset) entry the allocator can hand out"""
    entries = [("vip", 1, VIP_OFFSET), (Role.LOAD_BALANCER.label, 1, LOAD_BALANCER_OFFSET)]
    entries.extend((Role.MASTER.label, index, offset) for index, offset in sorted(MASTER_OFFSETS.items()))
    entries.extend((Role.WORKER.label, index, offset) for index, offset in sorted(WORKER_OFFSETS.items()))
    return entries


def verify_offset_table() -> None:
    """Fail fast if two slots share an offset or an offset is not a usable host octet"""
    seen: Dict[int, Tuple[str, int]] = {}
    for slot, index, offset in offset_table():
        if not 1 <= offset <= 254:
            raise ConfigurationError(f"offset {offset} for {slot}{index} is not a usable host address")
        if offset in seen:
            other_slot, other_index = seen[offset]
            raise ConfigurationError(
                f"offset collision: {slot}{index} and {other_slot}{other_index} both map to .{offset}"
            )
        seen[offset] = (slot, index)


def validate_subnet(base_subnet: str) -> str:
    """Check a three-octet network prefix such as 192.168.51"""
    parts = base_subnet.split(".")
    if len(parts) != 3:
        raise ConfigurationError(f"base subnet '{base_subnet}' must have exactly three octets")
    try:
        ipaddress.IPv4Address(f"{base_subnet}.0")
    except ipaddress.AddressValueError as exc:
        raise ConfigurationError(f"base subnet '{base_subnet}' is invalid: {exc}") from exc
    return base_subnet


def offset_for(role: Role, index: int) -> int:
    if role is Role.LOAD_BALANCER:
        return LOAD_BALANCER_OFFSET
    table = MASTER_OFFSETS if role is Role.MASTER else WORKER_OFFSETS
    if index not in table:
        raise ConfigurationError(
            f"{role.label} index {index} exceeds the supported maximum of {MAX_NODES_PER_ROLE}"
        )
    return table[index]


def ip_for(base_subnet: str, role: Role, index: int) -> str:
    return f"{base_subnet}.{offset_for(role, index)}"


def vip_for(base_subnet: str) -> str:
    return f"{base_subnet}.{VIP_OFFSET}"


verify_offset_table()
