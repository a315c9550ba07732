# Copyright 2026 The siazfs Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Ingestion of the flat, tab-separated output of 'zfs get' into the DatasetNode graph.

Each input line describes one property of one object: ``objectName <TAB> propertyName <TAB> value <TAB> source``. Lines
of the same object need not be contiguous. The parser first collects one RawZfsObject per object name, then materializes
datasets in name order, which guarantees that parents are built before their children, and finally attaches snapshots to
their datasets. The input is consumed lazily, so parsing overlaps with the producing subprocess.

Structural problems such as a short line or an unknown property name raise ParseError and abort the whole pass, because a
partial graph is unsafe for retention decisions. An illegal value only disqualifies that property or that object; such
problems are collected as ValidationError results in the ParseResult.
"""

from __future__ import (
    annotations,
)
from collections.abc import (
    Iterable,
)
from dataclasses import (
    dataclass,
    field,
)
from logging import (
    Logger,
)
from typing import (
    Final,
)

from siazfs_main import properties as props
from siazfs_main.datasets import (
    DatasetKind,
    DatasetNode,
)
from siazfs_main.properties import (
    ParseError,
    PropertyDefinition,
    PropertySource,
    PropertyType,
    PropertyValue,
)
from siazfs_main.snapshots import (
    PeriodKind,
    SnapshotRecord,
)
from siazfs_main.utils import (
    LOG_TRACE,
    ValidationError,
    is_pool_root,
    parent_dataset,
)

__all__ = [  # ParseError is defined in properties.py and re-exported here for callers of the parser
    "ParseError",
    "ParseResult",
    "RawObjectParser",
    "RawZfsObject",
    "pool_root_property_validities",
    "split_line",
]

# constants:
_DATASET_PROPERTY_NAMES: Final[frozenset[str]] = frozenset(props.DATASET_PROPERTY_NAMES)
_DATASET_KINDS: Final[dict[str, DatasetKind]] = {kind.value: kind for kind in DatasetKind}


def split_line(line: str) -> tuple[str, str, str, str]:
    """Splits a listing line into (objectName, propertyName, value, source); the value may itself contain tabs."""
    line = line.rstrip("\r\n")
    fields: list[str] = line.split("\t", 2)
    if len(fields) == 3 and "\t" in fields[2]:
        value, source = fields[2].rsplit("\t", 1)
        return fields[0], fields[1], value, source
    num_fields: int = len(line.split("\t"))
    raise ParseError(f"Listing line requires 4 tab-separated fields but got {num_fields}: {line!r}")


#############################################################################
@dataclass
class RawZfsObject:
    """Property bag of one object, built incrementally while scanning the listing; discarded after materialization."""

    name: str
    kind: str = ""  # value of the native 'type' property, once seen
    properties: dict[str, tuple[str, str]] = field(default_factory=dict)  # short name -> (raw value, raw source)

    def add(self, name: str, value: str, source: str) -> None:
        definition: PropertyDefinition = props.get_definition(name)  # raises ParseError for names outside of the schema
        if definition.name == props.TYPE and not self.kind:
            self.kind = value
        self.properties[definition.name] = (value, source)

    def get(self, name: str) -> PropertyValue | None:
        """Returns the typed value of the given property, or None if absent; raises ValidationError if illegal."""
        raw: tuple[str, str] | None = self.properties.get(name)
        if raw is None:
            return None
        return props.parse_property(self.name, name, raw[0], raw[1])


#############################################################################
@dataclass
class ParseResult:
    """Outcome of one successful ingestion pass."""

    datasets: dict[str, DatasetNode] = field(default_factory=dict)  # all datasets, in name order
    snapshots: dict[str, SnapshotRecord] = field(default_factory=dict)  # managed snapshots, in name order
    errors: list[ValidationError] = field(default_factory=list)  # illegal values and names; the rest is still usable
    num_lines: int = 0
    num_unmanaged_snapshots: int = 0  # snapshots without period and timestamp properties, e.g. taken by other tools

    @property
    def pool_roots(self) -> list[DatasetNode]:
        return [node for node in self.datasets.values() if node.is_pool_root]


#############################################################################
class RawObjectParser:
    """Converts 'zfs get' listing lines into DatasetNode and SnapshotRecord instances."""

    def __init__(self, log: Logger) -> None:
        self.log: Final[Logger] = log

    def parse(self, lines: Iterable[str]) -> ParseResult:
        """Consumes all lines and returns the materialized graph; raises ParseError on structural problems."""
        objects: dict[str, RawZfsObject] = {}
        num_lines: int = 0
        for line in lines:
            num_lines += 1
            object_name, name, value, source = split_line(line)
            obj: RawZfsObject | None = objects.get(object_name)
            if obj is None:
                obj = RawZfsObject(object_name)
                objects[object_name] = obj
            obj.add(name, value, source)
        self.log.debug("Scanned %s listing lines describing %s objects", num_lines, len(objects))
        result = ParseResult(num_lines=num_lines)
        rejected: set[str] = set()  # names of datasets that failed validation, including their descendants
        for object_name in sorted(objects):
            obj = objects[object_name]
            if not obj.kind:
                raise ParseError(f"Object {object_name} has no '{props.TYPE}' property")
            if obj.kind != props.TYPE_SNAPSHOT:
                self._materialize_dataset(obj, result, rejected)
        for object_name in sorted(objects):
            obj = objects[object_name]
            if obj.kind == props.TYPE_SNAPSHOT:
                self._materialize_snapshot(obj, result, rejected)
        for error in result.errors:
            self.log.warning("Ignoring invalid input: %s", error)
        self.log.debug(
            "Parsed %s datasets, %s managed snapshots, %s unmanaged snapshots, %s invalid values",
            len(result.datasets),
            len(result.snapshots),
            result.num_unmanaged_snapshots,
            len(result.errors),
        )
        return result

    def _materialize_dataset(self, obj: RawZfsObject, result: ParseResult, rejected: set[str]) -> None:
        name: str = obj.name
        parent: DatasetNode | None = None
        if not is_pool_root(name):
            parent_name: str = parent_dataset(name)
            if parent_name in rejected:
                rejected.add(name)
                result.errors.append(ValidationError(f"Dataset {name} lies below invalid dataset {parent_name}"))
                return
            parent = result.datasets.get(parent_name)
            if parent is None:
                raise ParseError(f"Parent dataset {parent_name} of {name} is missing from the listing")
        try:
            kind: DatasetKind | None = _DATASET_KINDS.get(obj.kind)
            if kind is None:
                raise ValidationError(f"Object {name} has unsupported type: '{obj.kind}'")
            used_bytes: int = self._native_int(obj, props.USED, result)
            available_bytes: int = self._native_int(obj, props.AVAILABLE, result)
            values: list[PropertyValue] = []
            for prop_name in obj.properties:
                if prop_name not in _DATASET_PROPERTY_NAMES:
                    continue  # native or snapshot-only properties are reported with source '-' for datasets
                try:
                    prop: PropertyValue | None = obj.get(prop_name)
                except ValidationError as e:
                    result.errors.append(e)  # treat as absent; the value will be resolved from an ancestor
                    continue
                if prop is not None:
                    values.append(prop)
            node = DatasetNode(name, kind, parent, values, used_bytes=used_bytes, available_bytes=available_bytes)
        except ValidationError as e:
            rejected.add(name)
            result.errors.append(e)
            return
        self.log.log(LOG_TRACE, "Materialized dataset %s with %s properties", name, len(node.properties))
        result.datasets[name] = node

    @staticmethod
    def _native_int(obj: RawZfsObject, name: str, result: ParseResult) -> int:
        raw: tuple[str, str] | None = obj.properties.get(name)
        if raw is None or raw[0] == "-":
            return 0
        try:  # native values are reported with source '-', so parse the value regardless of its source
            value: PropertyType = props.parse_value(props.get_definition(name), raw[0])
        except ValidationError as e:
            result.errors.append(e)
            return 0
        assert isinstance(value, int)
        return value

    def _materialize_snapshot(self, obj: RawZfsObject, result: ParseResult, rejected: set[str]) -> None:
        dataset_name, _, _ = obj.name.partition("@")
        node: DatasetNode | None = result.datasets.get(dataset_name)
        if node is None:
            if dataset_name in rejected:
                return
            raise ParseError(f"Dataset {dataset_name} of snapshot {obj.name} is missing from the listing")
        try:
            period: PropertyValue | None = obj.get(props.SNAPSHOT_PERIOD)
            timestamp: PropertyValue | None = obj.get(props.SNAPSHOT_TIMESTAMP)
            if period is None or timestamp is None:
                self.log.log(LOG_TRACE, "Skipping unmanaged snapshot %s", obj.name)
                result.num_unmanaged_snapshots += 1
                return
            recursion: PropertyValue | None = obj.get(props.RECURSION)
            assert isinstance(period.value, str)
            record: SnapshotRecord = SnapshotRecord.create(
                name=obj.name,
                period=PeriodKind.parse(period.value),
                timestamp=timestamp.value,  # type: ignore[arg-type]  # kind TIMESTAMP guarantees a datetime
                parent=node,
                recursive=recursion is not None and recursion.value == props.RECURSION_ZFS,
            )
        except ValidationError as e:
            result.errors.append(e)
            return
        result.snapshots[obj.name] = node.add_snapshot(record)


def pool_root_property_validities(lines: Iterable[str]) -> dict[str, dict[str, bool]]:
    """Returns, per pool root, whether each required dataset property is present and valid.

    The input is the listing of ``zfs get <props> -H -p -t filesystem -d 0``. Properties that are never reported count as
    missing. Raises ParseError on structural problems.
    """
    result: dict[str, dict[str, bool]] = {}
    for line in lines:
        object_name, name, value, source = split_line(line)
        if not is_pool_root(object_name):
            continue
        validities: dict[str, bool] = result.setdefault(object_name, {n: False for n in props.DATASET_PROPERTY_NAMES})
        definition: PropertyDefinition = props.get_definition(name)
        if definition.name in validities:
            source_kind, _ = _parse_source_leniently(source)
            # a pool root cannot inherit, so only values held by the pool root itself satisfy the schema
            is_held: bool = source_kind in (PropertySource.LOCAL, PropertySource.TEMPORARY)
            validities[definition.name] = is_held and props.property_is_valid(definition.name, value, source)
    return result


def _parse_source_leniently(source: str) -> tuple[PropertySource, str]:
    try:
        return PropertySource.parse(source)
    except ValidationError:
        return PropertySource.NONE, ""
