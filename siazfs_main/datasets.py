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
"""The hierarchical dataset graph: one DatasetNode per ZFS filesystem or volume, with its properties, children and snapshots.

Purpose
-----------------
A DatasetNode answers the questions the scheduler asks about a dataset: what is the effective value of a property, when was
the last snapshot of a period observed, and which snapshots of a period exist. It also records the property changes a run
makes so that they can be written back to ZFS, which is the only durable store.

Assumptions
-----------
- The graph is built once per run by a single thread and then read and mutated sequentially, so no locking is needed.
- A dataset without a path separator is a pool root. Every pool root carries the full dataset property schema, so the
  effective value of an inheritable property is always resolvable by walking up the tree.

Design Rationale
----------------
- Parents own their children through a plain dict keyed by the last path component. Children refer to their parent through
  a weak reference, which keeps the ownership graph acyclic.
- Effective values are resolved dynamically rather than cached, so a change on an ancestor is immediately visible on all
  descendants that inherit it. Last-snapshot timestamps are informational and are never inherited.
- Equality is structural over name, kind and stored properties, which allows comparing a working copy against a base copy
  to find exactly the properties that must be written back.
"""

from __future__ import (
    annotations,
)
import enum
import weakref
from collections.abc import (
    Iterable,
    Iterator,
    Mapping,
)
from datetime import (
    datetime,
)
from types import (
    MappingProxyType,
)
from typing import (
    Final,
)

from siazfs_main import properties as props
from siazfs_main.properties import (
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
    UNIX_EPOCH,
    ValidationError,
    is_pool_root,
    parent_dataset,
    validate_dataset_name,
)

# constants:
_DATASET_PROPERTY_NAMES: Final[frozenset[str]] = frozenset(props.DATASET_PROPERTY_NAMES)


#############################################################################
class SchemaError(LookupError):
    """Indicates that a pool root lacks a required property, or that a name is not a dataset property; fatal."""


#############################################################################
class InheritanceError(RuntimeError):
    """Indicates misuse of inheritance: inheriting on a pool root or inheriting a non-inheritable property."""


#############################################################################
class DatasetKind(enum.Enum):
    """The kinds of ZFS datasets that can hold snapshots."""

    FILESYSTEM = props.TYPE_FILESYSTEM
    VOLUME = props.TYPE_VOLUME


#############################################################################
class DatasetNode:
    """A ZFS filesystem or volume within the dataset tree of one run."""

    def __init__(
        self,
        name: str,
        kind: DatasetKind = DatasetKind.FILESYSTEM,
        parent: DatasetNode | None = None,
        properties: Iterable[PropertyValue] = (),
        used_bytes: int = 0,
        available_bytes: int = 0,
    ) -> None:
        # immutable variables:
        self.name: Final[str] = validate_dataset_name(name, "dataset node")
        self.kind: Final[DatasetKind] = kind
        if parent is None and not is_pool_root(name):
            raise ValueError(f"Dataset {name} requires its parent dataset {parent_dataset(name)}")
        if parent is not None and parent_dataset(name) != parent.name:
            raise ValueError(f"Dataset {parent.name} is not the parent of {name}")
        self._parent_ref: Final[weakref.ReferenceType[DatasetNode] | None] = None if parent is None else weakref.ref(parent)

        # mutable variables:
        self._properties: dict[str, PropertyValue] = {}
        self._children: dict[str, DatasetNode] = {}
        self._snapshots: dict[PeriodKind, dict[str, SnapshotRecord]] = {period: {} for period in PeriodKind}
        self._last_observed: dict[PeriodKind, datetime] = {period: UNIX_EPOCH for period in PeriodKind.automatic()}
        self.used_bytes: int = used_bytes
        self.available_bytes: int = available_bytes
        for prop in properties:
            self._store(prop)
        if parent is not None:
            parent._attach_child(self)

    def __repr__(self) -> str:
        return f"DatasetNode(name={self.name!r}, kind={self.kind.value}, properties={len(self._properties)})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DatasetNode):
            return NotImplemented
        return self.name == other.name and self.kind == other.kind and self._properties == other._properties

    __hash__ = None  # type: ignore[assignment]  # mutable, hence unhashable

    # tree structure:

    @property
    def parent(self) -> DatasetNode | None:
        return None if self._parent_ref is None else self._parent_ref()

    @property
    def is_pool_root(self) -> bool:
        return self._parent_ref is None

    @property
    def pool_root(self) -> DatasetNode:
        node: DatasetNode = self
        while (parent := node.parent) is not None:
            node = parent
        return node

    @property
    def local_name(self) -> str:
        """Returns the last path component, which is the key of this node in the children map of its parent."""
        return self.name[self.name.rfind("/") + 1 :]

    @property
    def children(self) -> Mapping[str, DatasetNode]:
        return MappingProxyType(self._children)

    def _attach_child(self, child: DatasetNode) -> None:
        key: str = child.local_name
        if key in self._children:
            raise ValueError(f"Duplicate dataset: {child.name}")
        self._children[key] = child

    def get_child(self, relative_name: str) -> DatasetNode | None:
        """Returns the descendant at the given relative path such as 'foo' or 'foo/bar', or None if absent."""
        node: DatasetNode | None = self
        for component in relative_name.split("/"):
            if node is None:
                return None
            node = node._children.get(component)
        return node

    def sorted_children(self) -> list[tuple[str, DatasetNode]]:
        """Returns the direct children ordered lexicographically by local name."""
        return sorted(self._children.items())

    def descendants(self) -> Iterator[DatasetNode]:
        """Yields all descendants in pre-order, siblings in lexicographic order."""
        for _, child in self.sorted_children():
            yield child
            yield from child.descendants()

    # properties:

    @property
    def properties(self) -> Mapping[str, PropertyValue]:
        """Returns the properties stored on this node, keyed by short name; read-only view."""
        return MappingProxyType(self._properties)

    def _store(self, prop: PropertyValue) -> None:
        if prop.name not in _DATASET_PROPERTY_NAMES:
            raise SchemaError(f"Property {prop.name} is not a dataset property of {self.name}")
        self._properties[prop.name] = prop

    @staticmethod
    def _dataset_definition(name: str) -> PropertyDefinition:
        definition: PropertyDefinition = props.get_definition(name)
        if definition.name not in _DATASET_PROPERTY_NAMES:
            raise SchemaError(f"Property {definition.name} is not a dataset property")
        return definition

    def get_effective(self, name: str) -> PropertyValue:
        """Returns the local value if present, otherwise the value resolved from the nearest ancestor holding one.

        Non-inheritable properties fall back to their schema default instead of an ancestor's value. Raises SchemaError if
        a pool root lacks the property.
        """
        definition: PropertyDefinition = self._dataset_definition(name)
        stored: PropertyValue | None = self._properties.get(definition.name)
        if stored is not None and stored.source is not PropertySource.INHERITED:
            return stored
        parent: DatasetNode | None = self.parent
        if parent is None:
            raise SchemaError(f"Pool root {self.name} lacks required property {definition.wire_name}")
        if not definition.is_inheritable:
            return props.default_property(self.name, definition.name)
        effective: PropertyValue = parent.get_effective(definition.name)
        origin: str = effective.inherited_from if effective.is_inherited else parent.name
        return PropertyValue(
            name=definition.name,
            kind=definition.kind,
            value=effective.value,
            source=PropertySource.INHERITED,
            owner=self.name,
            inherited_from=origin,
        )

    def update_property(self, name: str, value: PropertyType, is_local: bool = True) -> PropertyValue:
        """Replaces the stored value and returns the new PropertyValue, marked LOCAL or INHERITED.

        A value stored as INHERITED only records what ZFS reports; the effective value of an inheritable property keeps
        being resolved from the ancestors.
        """
        definition: PropertyDefinition = self._dataset_definition(name)
        if not is_local and (self.is_pool_root or not definition.is_inheritable):
            raise InheritanceError(f"Property {definition.name} of {self.name} can only be set locally")
        source: PropertySource = PropertySource.LOCAL if is_local else PropertySource.INHERITED
        prop: PropertyValue = props.make_property(self.name, definition.name, value, source)
        if not is_local:
            parent = self.parent
            assert parent is not None
            effective: PropertyValue = parent.get_effective(definition.name)
            prop = prop.with_value(value, source, effective.inherited_from if effective.is_inherited else parent.name)
        self._properties[definition.name] = prop
        return prop

    def inherit_property(self, name: str) -> PropertyValue:
        """Discards the local override, if any, and returns the value now resolved from the ancestors; idempotent."""
        definition: PropertyDefinition = self._dataset_definition(name)
        if self.is_pool_root:
            raise InheritanceError(f"Cannot inherit {definition.name} on pool root {self.name}")
        if not definition.is_inheritable:
            raise InheritanceError(f"Property {definition.name} of {self.name} is informational and never inherited")
        self._properties.pop(definition.name, None)
        return self.get_effective(definition.name)

    def _bool(self, name: str) -> bool:
        value: PropertyType = self.get_effective(name).value
        assert isinstance(value, bool)
        return value

    def _int(self, name: str) -> int:
        value: PropertyType = self.get_effective(name).value
        assert isinstance(value, int) and not isinstance(value, bool)
        return value

    def _str(self, name: str) -> str:
        value: PropertyType = self.get_effective(name).value
        assert isinstance(value, str)
        return value

    @property
    def enabled(self) -> bool:
        return self._bool(props.ENABLED)

    @property
    def take_snapshots(self) -> bool:
        return self._bool(props.TAKE_SNAPSHOTS)

    @property
    def prune_snapshots(self) -> bool:
        return self._bool(props.PRUNE_SNAPSHOTS)

    @property
    def recursion(self) -> str:
        return self._str(props.RECURSION)

    @property
    def template(self) -> str:
        return self._str(props.TEMPLATE)

    @property
    def prune_deferral(self) -> int:
        return self._int(props.RETENTION_PRUNE_DEFERRAL)

    def retention(self, period: PeriodKind) -> int:
        """Returns how many snapshots of the given automatic period to keep."""
        return self._int(period.retention_property)

    def last_snapshot_timestamp_property(self, period: PeriodKind) -> datetime:
        value: PropertyType = self.get_effective(period.timestamp_property).value
        assert isinstance(value, datetime)
        return value

    @property
    def percent_bytes_used(self) -> float:
        """Returns the used share of the capacity available to this dataset, in percent."""
        total: int = self.used_bytes + self.available_bytes
        return 0.0 if total <= 0 else 100.0 * self.used_bytes / total

    # snapshots:

    def add_snapshot(self, record: SnapshotRecord) -> SnapshotRecord:
        """Inserts the snapshot and advances the last observed timestamp of its period if the snapshot is newer."""
        if record.dataset_name != self.name:
            raise ValidationError(f"Snapshot {record.name} does not belong to dataset {self.name}")
        if record.parent is not self:
            record = record.with_parent(self)
        self._snapshots[record.period][record.name] = record
        if record.period.is_automatic and record.timestamp > self._last_observed[record.period]:
            self._last_observed[record.period] = record.timestamp
        return record

    def remove_snapshot(self, record: SnapshotRecord) -> bool:
        """Removes the snapshot; returns False if it is unknown. The last observed timestamp is left unchanged."""
        return self._snapshots[record.period].pop(record.name, None) is not None

    def snapshots(self, period: PeriodKind) -> Mapping[str, SnapshotRecord]:
        """Returns the snapshots of the given period keyed by full snapshot name; read-only view."""
        return MappingProxyType(self._snapshots[period])

    def all_snapshots(self) -> list[SnapshotRecord]:
        """Returns all snapshots of all periods in ascending total order."""
        return sorted(record for by_name in self._snapshots.values() for record in by_name.values())

    def last_observed_timestamp(self, period: PeriodKind) -> datetime:
        """Returns the timestamp of the newest snapshot of the period seen during this run, or the epoch."""
        return self._last_observed[period]

    def last_snapshot_timestamp(self, period: PeriodKind) -> datetime:
        """Returns the later of the stored last-snapshot property and the newest observed snapshot of the period."""
        return max(self.last_snapshot_timestamp_property(period), self._last_observed[period])

    def out_of_sync_timestamps(self) -> list[tuple[PeriodKind, datetime]]:
        """Returns the periods whose newest observed snapshot is newer than the stored last-snapshot property."""
        result: list[tuple[PeriodKind, datetime]] = []
        for period in PeriodKind.automatic():
            observed: datetime = self._last_observed[period]
            if observed > self.last_snapshot_timestamp_property(period):
                result.append((period, observed))
        return result

    # change detection:

    def clone(self) -> DatasetNode:
        """Returns a detached copy of this node's identity and stored properties, used as the base for change detection."""
        copy = DatasetNode.__new__(DatasetNode)
        copy.name = self.name  # type: ignore[misc]
        copy.kind = self.kind  # type: ignore[misc]
        copy._parent_ref = None  # type: ignore[misc]
        copy._properties = dict(self._properties)
        copy._children = {}
        copy._snapshots = {period: dict(records) for period, records in self._snapshots.items()}
        copy._last_observed = dict(self._last_observed)
        copy.used_bytes = self.used_bytes
        copy.available_bytes = self.available_bytes
        return copy

    def changed_properties(self, base: DatasetNode) -> list[PropertyValue]:
        """Returns the local properties of this node whose value differs from the given base copy, sorted by name."""
        if base.name != self.name:
            raise ValueError(f"Cannot compare {self.name} against {base.name}")
        return sorted(
            prop for name, prop in self._properties.items() if prop.is_local and base._properties.get(name) != prop
        )
