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
"""Typed, immutable property values with provenance, plus the fixed schema of known properties.

Purpose
-----------------
All durable state of siazfs lives in ZFS user properties: whether a dataset is enabled, whether snapshots are taken and
pruned, how many snapshots of each period are retained, and when the last snapshot of each period was taken. This module
turns the raw ``(name, value, source)`` strings that ``zfs get -H -p`` prints into ``PropertyValue`` objects whose value has
a well-defined type and whose source records where the value came from.

Assumptions
-----------
- The set of known properties is fixed. A property name outside of ``PROPERTY_DEFINITIONS`` is a structural error.
- User properties live under the ``snapsinazfs.com:`` namespace prefix; the short names without prefix are accepted as well.
- A source of ``-`` means that ZFS has no value for the property on that object. Such values are not guaranteed to pass
  validation and are therefore treated as absent rather than as default.

Design Rationale
----------------
- ``PropertyValue`` is a frozen dataclass, so a "change" always produces a new object, and equality is structural over
  name, value and source. The owning object name is carried along for diagnostics but is not part of equality.
- The four value types form a closed tagged union via ``PropertyKind``. Every consumer dispatches on the kind and treats an
  unknown kind as a programming error, so adding a type fails loudly at all consumption sites.
"""

from __future__ import (
    annotations,
)
import enum
import functools
import re
from dataclasses import (
    dataclass,
    field,
)
from datetime import (
    datetime,
)
from typing import (
    Callable,
    Final,
    Union,
)

from siazfs_main.utils import (
    UNIX_EPOCH,
    ValidationError,
)

# constants:
PROPERTY_PREFIX: Final[str] = "snapsinazfs.com:"
INHERITED_FROM_PREFIX: Final[str] = "inherited from "

ENABLED: Final[str] = "enabled"
TAKE_SNAPSHOTS: Final[str] = "takesnapshots"
PRUNE_SNAPSHOTS: Final[str] = "prunesnapshots"
RECURSION: Final[str] = "recursion"
TEMPLATE: Final[str] = "template"
RETENTION_FREQUENT: Final[str] = "retention:frequent"
RETENTION_HOURLY: Final[str] = "retention:hourly"
RETENTION_DAILY: Final[str] = "retention:daily"
RETENTION_WEEKLY: Final[str] = "retention:weekly"
RETENTION_MONTHLY: Final[str] = "retention:monthly"
RETENTION_YEARLY: Final[str] = "retention:yearly"
RETENTION_PRUNE_DEFERRAL: Final[str] = "retention:prunedeferral"
LAST_FREQUENT_SNAPSHOT_TIMESTAMP: Final[str] = "lastfrequentsnapshottimestamp"
LAST_HOURLY_SNAPSHOT_TIMESTAMP: Final[str] = "lasthourlysnapshottimestamp"
LAST_DAILY_SNAPSHOT_TIMESTAMP: Final[str] = "lastdailysnapshottimestamp"
LAST_WEEKLY_SNAPSHOT_TIMESTAMP: Final[str] = "lastweeklysnapshottimestamp"
LAST_MONTHLY_SNAPSHOT_TIMESTAMP: Final[str] = "lastmonthlysnapshottimestamp"
LAST_YEARLY_SNAPSHOT_TIMESTAMP: Final[str] = "lastyearlysnapshottimestamp"
SNAPSHOT_NAME: Final[str] = "snapshot:name"
SNAPSHOT_PERIOD: Final[str] = "snapshot:period"
SNAPSHOT_TIMESTAMP: Final[str] = "snapshot:timestamp"
SOURCE_SYSTEM: Final[str] = "sourcesystem"
TYPE: Final[str] = "type"
USED: Final[str] = "used"
AVAILABLE: Final[str] = "available"

RECURSION_SIAZ: Final[str] = "siaz"  # siazfs walks the children itself
RECURSION_ZFS: Final[str] = "zfs"  # 'zfs snapshot -r' on the dataset covers all of its descendants
TYPE_FILESYSTEM: Final[str] = "filesystem"
TYPE_VOLUME: Final[str] = "volume"
TYPE_SNAPSHOT: Final[str] = "snapshot"
STANDALONE_SOURCE_SYSTEM: Final[str] = "StandaloneSiazSystem"  # tag of snapshots taken by a host that replicates nothing
PERIOD_NAMES: Final[tuple[str, ...]] = ("frequent", "hourly", "daily", "weekly", "monthly", "yearly", "manual", "temporary")

PropertyType = Union[bool, int, str, datetime]


#############################################################################
class ParseError(ValueError):
    """Indicates a malformed listing line or an unknown property; aborts the entire ingestion pass."""


#############################################################################
class PropertySource(enum.Enum):
    """Provenance of a property value, as reported in the SOURCE column of 'zfs get'."""

    LOCAL = "local"
    INHERITED = "inherited"
    DEFAULT = "default"
    TEMPORARY = "temporary"
    NONE = "-"

    @staticmethod
    def parse(raw_source: str) -> tuple[PropertySource, str]:
        """Returns the source plus the name of the dataset the value is inherited from (empty if not inherited)."""
        raw_source = raw_source.strip()
        if raw_source.startswith(INHERITED_FROM_PREFIX):
            return PropertySource.INHERITED, raw_source[len(INHERITED_FROM_PREFIX) :].strip()
        if raw_source in ("local", "received"):  # a received value overrides inheritance just like a local value
            return PropertySource.LOCAL, ""
        if raw_source == "inherited":
            return PropertySource.INHERITED, ""
        if raw_source == "default":
            return PropertySource.DEFAULT, ""
        if raw_source == "temporary":
            return PropertySource.TEMPORARY, ""
        if raw_source in ("-", "none", ""):
            return PropertySource.NONE, ""
        raise ValidationError(f"Unknown ZFS property source: '{raw_source}'")


#############################################################################
class PropertyKind(enum.Enum):
    """The closed set of value types a property can have."""

    BOOL = "bool"
    INT = "int"
    STRING = "string"
    TIMESTAMP = "timestamp"


#############################################################################
@dataclass(frozen=True)
class PropertyDefinition:
    """Schema entry for one known property."""

    name: str  # short name, without namespace prefix
    kind: PropertyKind
    default: str  # wire format of the schema default; empty if the property has no default
    is_native: bool = False  # native ZFS property such as 'type' rather than a user property
    is_inheritable: bool = True
    choices: tuple[str, ...] = ()
    min_value: int = 0
    max_value: int | None = None

    @property
    def wire_name(self) -> str:
        """Returns the full name under which the property is stored in ZFS."""
        return self.name if self.is_native else PROPERTY_PREFIX + self.name


def _bool_def(name: str) -> PropertyDefinition:
    return PropertyDefinition(name, PropertyKind.BOOL, default="false")


def _retention_def(name: str, default: int) -> PropertyDefinition:
    return PropertyDefinition(name, PropertyKind.INT, default=str(default))


def _timestamp_def(name: str) -> PropertyDefinition:
    return PropertyDefinition(name, PropertyKind.TIMESTAMP, default=UNIX_EPOCH.isoformat(), is_inheritable=False)


PROPERTY_DEFINITIONS: Final[dict[str, PropertyDefinition]] = {
    d.name: d
    for d in (
        _bool_def(ENABLED),
        _bool_def(TAKE_SNAPSHOTS),
        _bool_def(PRUNE_SNAPSHOTS),
        PropertyDefinition(RECURSION, PropertyKind.STRING, default=RECURSION_SIAZ, choices=(RECURSION_SIAZ, RECURSION_ZFS)),
        PropertyDefinition(TEMPLATE, PropertyKind.STRING, default="default"),
        _retention_def(RETENTION_FREQUENT, 4),
        _retention_def(RETENTION_HOURLY, 48),
        _retention_def(RETENTION_DAILY, 28),
        _retention_def(RETENTION_WEEKLY, 4),
        _retention_def(RETENTION_MONTHLY, 12),
        _retention_def(RETENTION_YEARLY, 0),
        PropertyDefinition(RETENTION_PRUNE_DEFERRAL, PropertyKind.INT, default="0", max_value=100),
        _timestamp_def(LAST_FREQUENT_SNAPSHOT_TIMESTAMP),
        _timestamp_def(LAST_HOURLY_SNAPSHOT_TIMESTAMP),
        _timestamp_def(LAST_DAILY_SNAPSHOT_TIMESTAMP),
        _timestamp_def(LAST_WEEKLY_SNAPSHOT_TIMESTAMP),
        _timestamp_def(LAST_MONTHLY_SNAPSHOT_TIMESTAMP),
        _timestamp_def(LAST_YEARLY_SNAPSHOT_TIMESTAMP),
        PropertyDefinition(SNAPSHOT_NAME, PropertyKind.STRING, default="", is_inheritable=False),
        PropertyDefinition(SNAPSHOT_PERIOD, PropertyKind.STRING, default="", is_inheritable=False, choices=PERIOD_NAMES),
        PropertyDefinition(SNAPSHOT_TIMESTAMP, PropertyKind.TIMESTAMP, default="", is_inheritable=False),
        PropertyDefinition(SOURCE_SYSTEM, PropertyKind.STRING, default=STANDALONE_SOURCE_SYSTEM, is_inheritable=False),
        PropertyDefinition(
            TYPE,
            PropertyKind.STRING,
            default="",
            is_native=True,
            is_inheritable=False,
            choices=(TYPE_FILESYSTEM, TYPE_VOLUME, TYPE_SNAPSHOT),
        ),
        PropertyDefinition(USED, PropertyKind.INT, default="", is_native=True, is_inheritable=False),
        PropertyDefinition(AVAILABLE, PropertyKind.INT, default="", is_native=True, is_inheritable=False),
    )
}

# The user properties every pool root must carry so that all of its descendants can resolve an effective value
DATASET_PROPERTY_NAMES: Final[tuple[str, ...]] = (
    ENABLED,
    TAKE_SNAPSHOTS,
    PRUNE_SNAPSHOTS,
    RECURSION,
    TEMPLATE,
    RETENTION_FREQUENT,
    RETENTION_HOURLY,
    RETENTION_DAILY,
    RETENTION_WEEKLY,
    RETENTION_MONTHLY,
    RETENTION_YEARLY,
    RETENTION_PRUNE_DEFERRAL,
    LAST_FREQUENT_SNAPSHOT_TIMESTAMP,
    LAST_HOURLY_SNAPSHOT_TIMESTAMP,
    LAST_DAILY_SNAPSHOT_TIMESTAMP,
    LAST_WEEKLY_SNAPSHOT_TIMESTAMP,
    LAST_MONTHLY_SNAPSHOT_TIMESTAMP,
    LAST_YEARLY_SNAPSHOT_TIMESTAMP,
)
SNAPSHOT_PROPERTY_NAMES: Final[tuple[str, ...]] = (SNAPSHOT_NAME, SNAPSHOT_PERIOD, SNAPSHOT_TIMESTAMP, SOURCE_SYSTEM)
NATIVE_PROPERTY_NAMES: Final[tuple[str, ...]] = (TYPE, AVAILABLE, USED)


def canonical_property_name(raw_name: str) -> str:
    """Maps a wire name such as 'snapsinazfs.com:Enabled' to its short lower-case schema name such as 'enabled'."""
    name: str = raw_name.strip().lower()
    if name.startswith(PROPERTY_PREFIX):
        name = name[len(PROPERTY_PREFIX) :]
    return name


def get_definition(name: str) -> PropertyDefinition:
    """Returns the schema entry for the given short or wire name; raises ParseError for names outside of the schema."""
    definition: PropertyDefinition | None = PROPERTY_DEFINITIONS.get(canonical_property_name(name))
    if definition is None:
        raise ParseError(f"Unknown property: '{name}'")
    return definition


def wire_name(name: str) -> str:
    """Returns the full ZFS name for the given short or wire name."""
    return get_definition(name).wire_name


_INT_REGEX: Final[re.Pattern[str]] = re.compile(r"[+-]?[0-9]+")
_FRACTION_REGEX: Final[re.Pattern[str]] = re.compile(r"(?<=:[0-9][0-9])\.([0-9]+)")  # fractional seconds of a timestamp


def parse_value(definition: PropertyDefinition, raw_value: str) -> PropertyType:
    """Converts the wire representation of a value to its typed form; raises ValidationError if the value is illegal."""
    kind: PropertyKind = definition.kind
    name: str = definition.name
    if kind is PropertyKind.BOOL:
        if raw_value == "true":
            return True
        if raw_value == "false":
            return False
        raise ValidationError(f"Property {name} requires 'true' or 'false' but got: '{raw_value}'")
    elif kind is PropertyKind.INT:
        if not _INT_REGEX.fullmatch(raw_value):
            raise ValidationError(f"Property {name} requires an integer but got: '{raw_value}'")
        number: int = int(raw_value)
        if number < definition.min_value or (definition.max_value is not None and number > definition.max_value):
            upper: str = "" if definition.max_value is None else f" and <= {definition.max_value}"
            raise ValidationError(f"Property {name} requires an integer >= {definition.min_value}{upper} but got: {number}")
        return number
    elif kind is PropertyKind.STRING:
        if raw_value.strip() == "":
            raise ValidationError(f"Property {name} requires a non-empty string")
        if definition.choices and raw_value not in definition.choices:
            raise ValidationError(f"Property {name} requires one of {list(definition.choices)} but got: '{raw_value}'")
        return raw_value
    elif kind is PropertyKind.TIMESTAMP:
        return parse_timestamp(raw_value, name)
    raise AssertionError(f"Unreachable: unknown property kind {kind}")


def parse_timestamp(raw_value: str, name: str = "timestamp") -> datetime:
    """Parses an ISO-8601 timestamp; naive values are interpreted in the local timezone; must not precede the epoch."""
    text: str = raw_value.strip()
    if text.endswith("Z"):  # datetime.fromisoformat() accepts 'Z' only on python >= 3.11
        text = text[0:-1] + "+00:00"
    # python < 3.11 accepts exactly 3 or 6 fractional digits, whereas other writers emit up to 7, e.g. 12:26:15.1234567
    text = _FRACTION_REGEX.sub(lambda m: "." + m.group(1)[0:6].ljust(6, "0"), text, count=1)
    try:
        dt: datetime = datetime.fromisoformat(text)
    except ValueError as e:
        raise ValidationError(f"Property {name} requires an ISO-8601 timestamp but got: '{raw_value}'") from e
    if dt.tzinfo is None:
        dt = dt.astimezone()  # interpret as local time
    if dt < UNIX_EPOCH:
        raise ValidationError(f"Property {name} requires a timestamp at or after {UNIX_EPOCH.isoformat()}: '{raw_value}'")
    return dt


def format_property_value(kind: PropertyKind, value: PropertyType) -> str:
    """Converts a typed value back to the representation that 'zfs set' accepts."""
    if kind is PropertyKind.BOOL:
        assert isinstance(value, bool)
        return "true" if value else "false"
    elif kind is PropertyKind.INT:
        assert isinstance(value, int) and not isinstance(value, bool)
        return str(value)
    elif kind is PropertyKind.STRING:
        assert isinstance(value, str)
        return value
    elif kind is PropertyKind.TIMESTAMP:
        assert isinstance(value, datetime)
        return value.isoformat()
    raise AssertionError(f"Unreachable: unknown property kind {kind}")


def property_is_valid(name: str, raw_value: str, raw_source: str) -> bool:
    """Returns True if the raw triple describes a present value that passes validation; never raises."""
    try:
        source, _ = PropertySource.parse(raw_source)
        if source is PropertySource.NONE:
            return False
        parse_value(get_definition(name), raw_value)
    except (ValidationError, ParseError):
        return False
    return True


#############################################################################
@functools.total_ordering
@dataclass(frozen=True)
class PropertyValue:
    """A typed, immutable value with provenance for one named property of one ZFS object."""

    name: str  # short schema name
    kind: PropertyKind
    value: PropertyType
    source: PropertySource
    owner: str = field(default="", compare=False)  # name of the object the value is reported for
    inherited_from: str = field(default="", compare=False)  # name of the dataset that holds the local value, if inherited

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, PropertyValue):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def _sort_key(self) -> tuple[str, str, PropertyType, str]:
        # same name implies same kind and hence comparable values; timestamps compare as instants, not as strings
        return self.name, self.kind.value, self.value, self.source.value

    @property
    def definition(self) -> PropertyDefinition:
        return get_definition(self.name)

    @property
    def wire_name(self) -> str:
        return self.definition.wire_name

    @property
    def value_string(self) -> str:
        return format_property_value(self.kind, self.value)

    @property
    def source_string(self) -> str:
        """Returns the source in the format 'zfs get' prints it."""
        if self.source is PropertySource.INHERITED and self.inherited_from:
            return INHERITED_FROM_PREFIX + self.inherited_from
        return self.source.value

    @property
    def is_local(self) -> bool:
        return self.source is PropertySource.LOCAL

    @property
    def is_inherited(self) -> bool:
        return self.source is PropertySource.INHERITED

    def with_value(self, new_value: PropertyType, new_source: PropertySource, inherited_from: str = "") -> PropertyValue:
        """Returns a new PropertyValue with the given value and source; the receiver remains unchanged."""
        _check_value_type(self.kind, new_value, self.name)
        parse_value(self.definition, format_property_value(self.kind, new_value))  # enforce the validators of the schema
        return PropertyValue(
            name=self.name,
            kind=self.kind,
            value=new_value,
            source=new_source,
            owner=self.owner,
            inherited_from=inherited_from if new_source is PropertySource.INHERITED else "",
        )

    def as_setting(self) -> str:
        """Returns the 'name=value' argument for 'zfs set'."""
        return f"{self.wire_name}={self.value_string}"

    def __str__(self) -> str:
        return f"{self.owner}\t{self.wire_name}\t{self.value_string}\t{self.source_string}"


def _check_value_type(kind: PropertyKind, value: PropertyType, name: str) -> None:
    """Rejects values whose python type does not match the kind of the property."""
    checks: dict[PropertyKind, Callable[[PropertyType], bool]] = {
        PropertyKind.BOOL: lambda v: isinstance(v, bool),
        PropertyKind.INT: lambda v: isinstance(v, int) and not isinstance(v, bool),
        PropertyKind.STRING: lambda v: isinstance(v, str),
        PropertyKind.TIMESTAMP: lambda v: isinstance(v, datetime) and v.tzinfo is not None,
    }
    if not checks[kind](value):
        raise ValidationError(f"Property {name} of kind {kind.value} cannot hold value {value!r}")


def parse_property(owner: str, raw_name: str, raw_value: str, raw_source: str) -> PropertyValue | None:
    """Parses one raw ``(name, value, source)`` triple reported for object ``owner``.

    Returns None if the source is '-', i.e. ZFS holds no value. Raises ParseError if the name is outside of the schema, and
    ValidationError if the value or source is illegal.
    """
    definition: PropertyDefinition = get_definition(raw_name)
    source, inherited_from = PropertySource.parse(raw_source)
    if source is PropertySource.NONE:
        return None
    return PropertyValue(
        name=definition.name,
        kind=definition.kind,
        value=parse_value(definition, raw_value),
        source=source,
        owner=owner,
        inherited_from=inherited_from,
    )


def make_property(owner: str, name: str, value: PropertyType, source: PropertySource = PropertySource.LOCAL) -> PropertyValue:
    """Builds a validated PropertyValue from a typed value."""
    definition: PropertyDefinition = get_definition(name)
    _check_value_type(definition.kind, value, definition.name)
    parse_value(definition, format_property_value(definition.kind, value))
    return PropertyValue(name=definition.name, kind=definition.kind, value=value, source=source, owner=owner)


def default_property(owner: str, name: str) -> PropertyValue:
    """Returns the schema default of the given property, with source DEFAULT."""
    definition: PropertyDefinition = get_definition(name)
    if not definition.default:
        raise ValidationError(f"Property {definition.name} has no default value")
    value: PropertyType = parse_value(definition, definition.default)
    return PropertyValue(name=definition.name, kind=definition.kind, value=value, source=PropertySource.DEFAULT, owner=owner)
