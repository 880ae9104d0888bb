"""
Declaration mutator: applies approved changes to the Vagrantfile text.

Edits are line-level: only the value of a changed field is rewritten, so
comments, ordering and spacing everywhere else survive. Every write goes
through DeclarationStore.write() with a verifier that re-parses what landed
on disk before the original file is replaced.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from .declaration import (
    FIELD_LINE,
    SUBNET_ENTRY,
    BLOCK_END,
    DeclarationDocument,
    DeclarationStore,
    format_value,
    parse_declaration,
    parse_document,
)
from .errors import ConfigurationError, VerificationFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldChange:
    cluster: str
    key: str
    value: Union[int, str, bool]

    def describe(self) -> str:
        return f"{self.cluster}: {self.key} = {format_value(self.value)}"


@dataclass(frozen=True)
class ClusterAddition:
    cluster: str
    fields: Dict[str, Union[int, str, bool]] = field(default_factory=dict)

    def describe(self) -> str:
        return f"{self.cluster}: add cluster ({', '.join(f'{k}={v}' for k, v in self.fields.items())})"


@dataclass(frozen=True)
class ClusterRemoval:
    cluster: str

    def describe(self) -> str:
        return f"{self.cluster}: remove cluster"


Change = Union[FieldChange, ClusterAddition, ClusterRemoval]


def _same(actual, expected) -> bool:
    return type(actual) is type(expected) and actual == expected


class DeclarationMutator:
    """Format-preserving edits plus re-parse verification"""

    def apply(self, text: str, changes: List[Change]) -> str:
        """Return new declaration text with every change applied"""
        for change in changes:
            document = parse_document(text)
            if isinstance(change, FieldChange):
                lines = self._set_field(document, change)
            elif isinstance(change, ClusterAddition):
                lines = self._add_cluster(document, change)
            elif isinstance(change, ClusterRemoval):
                lines = self._remove_cluster(document, change)
            else:
                raise TypeError(f"unsupported change {change!r}")
            text = "\n".join(lines)
        return text

    def _set_field(self, document: DeclarationDocument, change: FieldChange) -> List[str]:
        lines = list(document.lines)
        block = document.cluster(change.cluster)
        if block is None:
            raise ConfigurationError("cluster is not declared", cluster=change.cluster, field=change.key)
        rendered = format_value(change.value)

        entry = block.fields.get(change.key)
        if entry is not None:
            line = lines[entry.line]
            match = FIELD_LINE.match(line)
            lines[entry.line] = line[:match.start("value")] + rendered + line[match.end("value"):]
            return lines

        if change.key == "base_subnet" and change.cluster in document.subnets:
            subnet = document.subnets[change.cluster]
            line = lines[subnet.line]
            match = SUBNET_ENTRY.match(line)
            lines[subnet.line] = line[:match.start("subnet")] + str(change.value) + line[match.end("subnet"):]
            return lines

        # Missing key: insert right after the block's opening line
        lines.insert(block.start + 1, f"{block.field_indent}{change.key}: {rendered},")
        return lines

    def _add_cluster(self, document: DeclarationDocument, change: ClusterAddition) -> List[str]:
        if document.cluster(change.cluster) is not None:
            raise ConfigurationError("cluster is already declared", cluster=change.cluster)
        lines = list(document.lines)
        indent = document.clusters[0].indent if document.clusters else "  "
        field_indent = document.clusters[0].field_indent if document.clusters else indent + "  "

        if document.clusters:
            last_close = document.clusters[-1].end
            match = BLOCK_END.match(lines[last_close])
            if match and not match.group("comma"):
                close = lines[last_close]
                brace = close.index("}")
                lines[last_close] = close[:brace + 1] + "," + close[brace + 1:]

        fields = dict(change.fields)
        # files with a CLUSTER_BASE_SUBNETS table keep every subnet there
        table_entry = None
        if document.subnets_start is not None and "base_subnet" in fields:
            table_entry = self._subnet_entry(document, lines, change.cluster, str(fields.pop("base_subnet")))

        block = [f'{indent}"{change.cluster}" => {{']
        items = list(fields.items())
        for position, (key, value) in enumerate(items):
            comma = "," if position < len(items) - 1 else ""
            block.append(f"{field_indent}{key}: {format_value(value)}{comma}")
        block.append(f"{indent}}},")

        insertions = [(document.end, block)]
        if table_entry is not None:
            insertions.append((document.subnets_end, [table_entry]))
        for position, new_lines in sorted(insertions, key=lambda item: item[0], reverse=True):
            lines[position:position] = new_lines
        return lines

    def _subnet_entry(self, document: DeclarationDocument, lines: List[str], cluster: str, subnet: str) -> str:
        """Render a CLUSTER_BASE_SUBNETS row, adding a comma to the current last row if needed"""
        entries = sorted(document.subnets.values(), key=lambda entry: entry.line)
        indent = "  "
        if entries:
            last = entries[-1]
            match = SUBNET_ENTRY.match(lines[last.line])
            indent = match.group("indent")
            if not match.group("comma"):
                line = lines[last.line]
                end = match.end("subnet") + 1
                lines[last.line] = line[:end] + "," + line[end:]
        return f'{indent}"{cluster}" => "{subnet}",'

    def _remove_cluster(self, document: DeclarationDocument, change: ClusterRemoval) -> List[str]:
        block = document.cluster(change.cluster)
        if block is None:
            raise ConfigurationError("cluster is not declared", cluster=change.cluster)
        doomed = set(range(block.start, block.end + 1))
        subnet = document.subnets.get(change.cluster)
        if subnet is not None:
            doomed.add(subnet.line)
        return [line for index, line in enumerate(document.lines) if index not in doomed]

    def check(self, text: str, changes: List[Change]) -> None:
        """Re-parse text and raise VerificationFailure unless every change is present exactly"""
        try:
            parse_declaration(text)
            document = parse_document(text)
        except ConfigurationError as e:
            raise VerificationFailure(f"declaration no longer parses: {e}",
                                      cluster=e.cluster, field=e.field) from e
        for change in changes:
            if isinstance(change, ClusterRemoval):
                if document.cluster(change.cluster) is not None:
                    raise VerificationFailure("cluster is still declared", cluster=change.cluster)
                continue
            if document.cluster(change.cluster) is None:
                raise VerificationFailure("cluster missing after write", cluster=change.cluster)
            values = document.raw_fields(change.cluster)
            expected = change.fields if isinstance(change, ClusterAddition) else {change.key: change.value}
            for key, value in expected.items():
                if not _same(values.get(key), value):
                    raise VerificationFailure(
                        f"{change.cluster}.{key}: expected {value!r}, found {values.get(key)!r}",
                        cluster=change.cluster, field=key,
                    )

    def verify(self, text: str, changes: List[Change]) -> bool:
        try:
            self.check(text, changes)
        except VerificationFailure as e:
            logger.error(f"Verification failed: {e}")
            return False
        return True

    def commit(self, store: DeclarationStore, changes: List[Change]) -> Optional[Path]:
        """Back up, apply, verify on disk, atomically replace. Returns the backup path."""
        if not changes:
            return None
        original = store.read()
        updated = self.apply(original, changes)
        backup = store.backup()
        for change in changes:
            logger.info(f"Updating {change.describe()}")
        store.write(updated, verify=lambda written: self.check(written, changes))
        logger.info(f"✅ Declaration updated and verified ({len(changes)} change(s))")
        return backup


def changes_between(current_text: str, desired_text: str) -> List[Change]:
    """Field-level changes that turn the current declaration into the desired one"""
    current = parse_document(current_text)
    desired = parse_document(desired_text)
    parse_declaration(desired_text)

    changes: List[Change] = []
    for block in desired.clusters:
        wanted = desired.raw_fields(block.name)
        if current.cluster(block.name) is None:
            changes.append(ClusterAddition(block.name, wanted))
            continue
        existing = current.raw_fields(block.name)
        for key, value in wanted.items():
            if not _same(existing.get(key), value):
                changes.append(FieldChange(block.name, key, value))
    desired_names = {block.name for block in desired.clusters}
    for block in current.clusters:
        if block.name not in desired_names:
            changes.append(ClusterRemoval(block.name))
    return changes
