"""
Vagrantfile declaration: parsing ALL_CLUSTERS_DECLARATION into a Topology and
storing the file safely (backups, temp-file writes, atomic replace).

Only the pieces of Ruby the declaration actually uses are understood:

    ALL_CLUSTERS_DECLARATION = {
      "k8s-prod" => {
        master_count: 2,
        metallb_ip_range: "192.168.51.200/27",
      },
    }

    CLUSTER_BASE_SUBNETS = {
      "k8s-prod" => "192.168.51",
    }

Everything outside those two blocks is left alone.
"""

import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .errors import ConfigurationError
from .topology import (
    DEFAULT_MASTER_CPUS,
    DEFAULT_MASTER_MEMORY,
    DEFAULT_WORKER_CPUS,
    DEFAULT_WORKER_MEMORY,
    ClusterSpec,
    Resources,
    Topology,
)

logger = logging.getLogger(__name__)

DECLARATION_START = re.compile(r"^\s*ALL_CLUSTERS_DECLARATION\s*=\s*\{\s*(#.*)?$")
SUBNETS_START = re.compile(r"^\s*CLUSTER_BASE_SUBNETS\s*=\s*\{\s*(#.*)?$")
CLUSTER_START = re.compile(r'^(?P<indent>\s*)"(?P<name>[^"]+)"\s*=>\s*\{\s*(#.*)?$')
FIELD_LINE = re.compile(
    r'^(?P<indent>\s*)(?P<key>[A-Za-z_][A-Za-z0-9_]*):\s*'
    r'(?P<value>"[^"]*"|[^,#\s]+)(?P<comma>\s*,)?(?P<trailer>\s*#.*)?\s*$'
)
SUBNET_ENTRY = re.compile(
    r'^(?P<indent>\s*)"(?P<name>[^"]+)"\s*=>\s*"(?P<subnet>[^"]*)"(?P<comma>\s*,)?\s*(#.*)?$'
)
BLOCK_END = re.compile(r"^\s*\}\s*(?P<comma>,)?\s*(#.*)?$")
INTEGER = re.compile(r"^-?\d+$")

BACKUP_TIMESTAMP = "%Y%m%d_%H%M%S"


def parse_value(raw: str):
    """Turn a Ruby literal into int / str / bool; unknown literals come back as raw text"""
    if raw.startswith('"') and raw.endswith('"') and len(raw) >= 2:
        return raw[1:-1]
    if raw == "true":
        return True
    if raw == "false":
        return False
    if INTEGER.match(raw):
        return int(raw)
    return raw


def format_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    return f'"{value}"'


def _is_skippable(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith("#")


@dataclass
class FieldLine:
    key: str
    value: object
    line: int
    indent: str


@dataclass
class ClusterBlock:
    """Location of one cluster hash inside the declaration text"""
    name: str
    start: int
    end: int
    indent: str
    field_indent: str
    fields: Dict[str, FieldLine] = field(default_factory=dict)


@dataclass
class SubnetEntry:
    name: str
    subnet: str
    line: int


@dataclass
class DeclarationDocument:
    """Line-level map of the declaration; the mutator edits through it"""
    lines: List[str]
    start: int
    end: int
    clusters: List[ClusterBlock]
    subnets_start: Optional[int] = None
    subnets_end: Optional[int] = None
    subnets: Dict[str, SubnetEntry] = field(default_factory=dict)

    def cluster(self, name: str) -> Optional[ClusterBlock]:
        for block in self.clusters:
            if block.name == name:
                return block
        return None

    def raw_fields(self, name: str) -> Dict[str, object]:
        block = self.cluster(name)
        if block is None:
            return {}
        values = {key: entry.value for key, entry in block.fields.items()}
        if "base_subnet" not in values and name in self.subnets:
            values["base_subnet"] = self.subnets[name].subnet
        return values


def _parse_cluster_block(lines: List[str], start: int, name: str, indent: str) -> ClusterBlock:
    block = ClusterBlock(name=name, start=start, end=-1, indent=indent, field_indent=indent + "  ")
    seen_indent = False
    index = start + 1
    while index < len(lines):
        line = lines[index]
        if _is_skippable(line):
            index += 1
            continue
        if BLOCK_END.match(line):
            block.end = index
            return block
        match = FIELD_LINE.match(line)
        if not match:
            raise ConfigurationError(f"line {index + 1}: cannot parse '{line.strip()}'", cluster=name)
        key = match.group("key")
        if key in block.fields:
            raise ConfigurationError(f"line {index + 1}: duplicate key", cluster=name, field=key)
        block.fields[key] = FieldLine(key=key, value=parse_value(match.group("value")),
                                      line=index, indent=match.group("indent"))
        if not seen_indent:
            block.field_indent = match.group("indent")
            seen_indent = True
        index += 1
    raise ConfigurationError(f"cluster block opened on line {start + 1} is never closed", cluster=name)


def parse_document(text: str) -> DeclarationDocument:
    """Locate the declaration block, its cluster blocks and the optional subnet table"""
    lines = text.split("\n")
    start = next((i for i, line in enumerate(lines) if DECLARATION_START.match(line)), None)
    if start is None:
        raise ConfigurationError("no ALL_CLUSTERS_DECLARATION block found")

    clusters: List[ClusterBlock] = []
    end = None
    index = start + 1
    while index < len(lines):
        line = lines[index]
        if _is_skippable(line):
            index += 1
            continue
        opening = CLUSTER_START.match(line)
        if opening:
            name = opening.group("name")
            if any(block.name == name for block in clusters):
                raise ConfigurationError(f"line {index + 1}: declared more than once", cluster=name)
            block = _parse_cluster_block(lines, index, name, opening.group("indent"))
            clusters.append(block)
            index = block.end + 1
            continue
        if BLOCK_END.match(line):
            end = index
            break
        raise ConfigurationError(f"line {index + 1}: unexpected content in ALL_CLUSTERS_DECLARATION: "
                                 f"'{line.strip()}'")
    if end is None:
        raise ConfigurationError("ALL_CLUSTERS_DECLARATION block is never closed")

    document = DeclarationDocument(lines=lines, start=start, end=end, clusters=clusters)

    subnets_start = next((i for i, line in enumerate(lines) if SUBNETS_START.match(line)), None)
    if subnets_start is not None:
        document.subnets_start = subnets_start
        for index in range(subnets_start + 1, len(lines)):
            line = lines[index]
            if _is_skippable(line):
                continue
            if BLOCK_END.match(line):
                document.subnets_end = index
                break
            entry = SUBNET_ENTRY.match(line)
            if not entry:
                raise ConfigurationError(f"line {index + 1}: cannot parse subnet entry '{line.strip()}'")
            document.subnets[entry.group("name")] = SubnetEntry(
                name=entry.group("name"), subnet=entry.group("subnet"), line=index
            )
        if document.subnets_end is None:
            raise ConfigurationError("CLUSTER_BASE_SUBNETS block is never closed")
    return document


def _int_field(values: Dict[str, object], cluster: str, key: str, default: Optional[int]) -> int:
    if key not in values:
        if default is None:
            raise ConfigurationError("required field is missing", cluster=cluster, field=key)
        return default
    value = values[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"expected an integer, got {value!r}", cluster=cluster, field=key)
    return value


def _str_field(values: Dict[str, object], cluster: str, key: str, default: str) -> str:
    value = values.get(key, default)
    if not isinstance(value, str):
        raise ConfigurationError(f"expected a quoted string, got {value!r}", cluster=cluster, field=key)
    return value


def default_context(name: str) -> str:
    return name[len("k8s-"):] if name.startswith("k8s-") else name


def cluster_from_fields(name: str, values: Dict[str, object]) -> ClusterSpec:
    """Build a ClusterSpec from literal field values, applying defaults"""
    if "base_subnet" not in values:
        raise ConfigurationError("no base_subnet in the cluster block or CLUSTER_BASE_SUBNETS",
                                 cluster=name, field="base_subnet")
    base_subnet = _str_field(values, name, "base_subnet", "")
    enabled = values.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigurationError(f"expected true or false, got {enabled!r}", cluster=name, field="enabled")
    return ClusterSpec(
        name=name,
        base_subnet=base_subnet,
        master_count=_int_field(values, name, "master_count", None),
        worker_count=_int_field(values, name, "worker_count", None),
        master_resources=Resources(
            _int_field(values, name, "master_cpus", DEFAULT_MASTER_CPUS),
            _int_field(values, name, "master_memory", DEFAULT_MASTER_MEMORY),
        ),
        worker_resources=Resources(
            _int_field(values, name, "worker_cpus", DEFAULT_WORKER_CPUS),
            _int_field(values, name, "worker_memory", DEFAULT_WORKER_MEMORY),
        ),
        metallb_ip_range=_str_field(values, name, "metallb_ip_range", f"{base_subnet}.200/27"),
        context=_str_field(values, name, "context", default_context(name)),
        enabled=enabled,
    )


def topology_from_document(document: DeclarationDocument) -> Topology:
    clusters = [cluster_from_fields(block.name, document.raw_fields(block.name))
                for block in document.clusters]
    return Topology(clusters=clusters)


def parse_declaration(text: str) -> Topology:
    """Parse declaration text into a validated Topology"""
    return topology_from_document(parse_document(text))


class DeclarationStore:
    """Read/write access to the declaration file; the only place the file is touched"""

    def __init__(self, path, backup_dir=None):
        self.path = Path(path)
        self.backup_dir = Path(backup_dir) if backup_dir else self.path.parent / ".vagrant" / "backups"

    def read(self) -> str:
        try:
            return self.path.read_text()
        except FileNotFoundError as exc:
            raise ConfigurationError(f"declaration file not found: {self.path}") from exc

    def load(self) -> Tuple[str, Topology]:
        text = self.read()
        return text, parse_declaration(text)

    def write(self, text: str, verify: Optional[Callable[[str], None]] = None) -> None:
        """Write to a temp file next to the declaration, verify what landed on disk, then replace.

        If verify raises, the temp file is removed and the declaration is untouched.
        """
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent))
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            if self.path.exists():
                shutil.copymode(self.path, tmp_path)
            if verify is not None:
                verify(tmp_path.read_text())
            os.replace(tmp_path, self.path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        logger.debug(f"Wrote {self.path}")

    def backup(self) -> Path:
        """Timestamped copy of the current declaration in the backup dir"""
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime(BACKUP_TIMESTAMP)
        target = self.backup_dir / f"{self.path.name}.{stamp}"
        suffix = 1
        while target.exists():
            target = self.backup_dir / f"{self.path.name}.{stamp}_{suffix}"
            suffix += 1
        shutil.copy2(self.path, target)
        logger.info(f"Backup created: {target}")
        return target

    def list_backups(self) -> List[Path]:
        if not self.backup_dir.exists():
            return []
        return sorted(self.backup_dir.glob(f"{self.path.name}.*"), key=lambda p: p.name)

    def restore(self, name: Optional[str] = None) -> Path:
        """Restore a backup by file name (latest when omitted); the current file is backed up first"""
        backups = self.list_backups()
        if not backups:
            raise ConfigurationError(f"no backups found in {self.backup_dir}")
        if name is None:
            source = backups[-1]
        else:
            source = self.backup_dir / Path(name).name
            if not source.exists():
                raise ConfigurationError(f"backup not found: {source}")
        text = source.read_text()
        parse_declaration(text)
        if self.path.exists():
            self.backup()
        self.write(text, verify=parse_declaration)
        logger.info(f"Restored {self.path} from {source}")
        return source
