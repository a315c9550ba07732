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
"""Snapshot period kinds, snapshot records with their total order, and the naming scheme for new snapshots."""

from __future__ import (
    annotations,
)
import enum
import functools
import weakref
from dataclasses import (
    dataclass,
    field,
)
from datetime import (
    datetime,
)
from typing import (
    TYPE_CHECKING,
    Final,
)

from siazfs_main import properties as props
from siazfs_main.utils import (
    MAX_NAME_LENGTH,
    ValidationError,
    validate_snapshot_name,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from siazfs_main.datasets import (
        DatasetNode,
    )


#############################################################################
class PeriodKind(enum.Enum):
    """The recurrence category of a snapshot; declaration order is the rank used for ordering."""

    FREQUENT = "frequent"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    MANUAL = "manual"
    TEMPORARY = "temporary"

    @property
    def rank(self) -> int:
        return _PERIOD_RANKS[self]

    @property
    def is_automatic(self) -> bool:
        """Returns False for MANUAL and TEMPORARY snapshots, which are neither scheduled nor auto-pruned."""
        return self in _RETENTION_PROPERTIES

    @property
    def retention_property(self) -> str:
        """Returns the short name of the retention count property of this period."""
        return _RETENTION_PROPERTIES[self]

    @property
    def timestamp_property(self) -> str:
        """Returns the short name of the last-snapshot timestamp property of this period."""
        return _TIMESTAMP_PROPERTIES[self]

    @staticmethod
    def parse(value: str) -> PeriodKind:
        try:
            return PeriodKind(value.strip().lower())
        except ValueError as e:
            raise ValidationError(f"Invalid snapshot period: '{value}'") from e

    @staticmethod
    def automatic() -> tuple[PeriodKind, ...]:
        """Returns the scheduled periods, from the shortest to the longest."""
        return tuple(_RETENTION_PROPERTIES.keys())


_PERIOD_RANKS: Final[dict[PeriodKind, int]] = {period: i for i, period in enumerate(PeriodKind)}
_RETENTION_PROPERTIES: Final[dict[PeriodKind, str]] = {
    PeriodKind.FREQUENT: props.RETENTION_FREQUENT,
    PeriodKind.HOURLY: props.RETENTION_HOURLY,
    PeriodKind.DAILY: props.RETENTION_DAILY,
    PeriodKind.WEEKLY: props.RETENTION_WEEKLY,
    PeriodKind.MONTHLY: props.RETENTION_MONTHLY,
    PeriodKind.YEARLY: props.RETENTION_YEARLY,
}
_TIMESTAMP_PROPERTIES: Final[dict[PeriodKind, str]] = {
    PeriodKind.FREQUENT: props.LAST_FREQUENT_SNAPSHOT_TIMESTAMP,
    PeriodKind.HOURLY: props.LAST_HOURLY_SNAPSHOT_TIMESTAMP,
    PeriodKind.DAILY: props.LAST_DAILY_SNAPSHOT_TIMESTAMP,
    PeriodKind.WEEKLY: props.LAST_WEEKLY_SNAPSHOT_TIMESTAMP,
    PeriodKind.MONTHLY: props.LAST_MONTHLY_SNAPSHOT_TIMESTAMP,
    PeriodKind.YEARLY: props.LAST_YEARLY_SNAPSHOT_TIMESTAMP,
}


#############################################################################
@functools.total_ordering
@dataclass(frozen=True)
class SnapshotRecord:
    """One point-in-time snapshot, named ``dataset@shortname``.

    Ordered primarily by timestamp, then by period rank, then lexicographically by name. The reference to the owning
    DatasetNode is weak and excluded from equality; the record never outlives its dataset.
    """

    name: str
    period: PeriodKind
    timestamp: datetime
    recursive: bool = False  # True if taken with 'zfs snapshot -r'
    _parent_ref: weakref.ReferenceType[DatasetNode] | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        validate_snapshot_name(self.name, "snapshot record")
        assert self.timestamp.tzinfo is not None, "naive datetimes are not supported"

    @staticmethod
    def create(
        name: str, period: PeriodKind, timestamp: datetime, parent: DatasetNode | None = None, recursive: bool = False
    ) -> SnapshotRecord:
        return SnapshotRecord(
            name=name,
            period=period,
            timestamp=timestamp,
            recursive=recursive,
            _parent_ref=None if parent is None else weakref.ref(parent),
        )

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SnapshotRecord):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def sort_key(self) -> tuple[datetime, int, str]:
        return self.timestamp, self.period.rank, self.name

    @property
    def dataset_name(self) -> str:
        return self.name[0 : self.name.index("@")]

    @property
    def short_name(self) -> str:
        return self.name[self.name.index("@") + 1 :]

    @property
    def parent(self) -> DatasetNode | None:
        """Returns the owning dataset, or None if it has been discarded."""
        return None if self._parent_ref is None else self._parent_ref()

    def with_parent(self, parent: DatasetNode) -> SnapshotRecord:
        """Returns a copy of this record that refers to the given dataset."""
        return SnapshotRecord.create(self.name, self.period, self.timestamp, parent=parent, recursive=self.recursive)

    def creation_properties(self, recursion: str, source_system: str = props.STANDALONE_SOURCE_SYSTEM) -> list[str]:
        """Returns the 'name=value' user properties that 'zfs snapshot -o' attaches atomically at creation time."""
        return [
            f"{props.wire_name(props.SNAPSHOT_NAME)}={self.name}",
            f"{props.wire_name(props.SNAPSHOT_PERIOD)}={self.period.value}",
            f"{props.wire_name(props.SNAPSHOT_TIMESTAMP)}={self.timestamp.isoformat()}",
            f"{props.wire_name(props.RECURSION)}={recursion}",
            f"{props.wire_name(props.SOURCE_SYSTEM)}={source_system}",
        ]


#############################################################################
@dataclass(frozen=True)
class SnapshotNaming:
    """Naming scheme for new snapshots, for example ``tank/foo@autosnap_2024-09-03_12:26:15_hourly``."""

    prefix: str = "autosnap"
    separator: str = "_"
    timestamp_format: str = "%Y-%m-%d_%H:%M:%S"
    frequent_suffix: str = "frequently"
    hourly_suffix: str = "hourly"
    daily_suffix: str = "daily"
    weekly_suffix: str = "weekly"
    monthly_suffix: str = "monthly"
    yearly_suffix: str = "yearly"
    source_system: str = props.STANDALONE_SOURCE_SYSTEM  # name of the host that takes the snapshots

    def suffix(self, period: PeriodKind) -> str:
        suffixes: dict[PeriodKind, str] = {
            PeriodKind.FREQUENT: self.frequent_suffix,
            PeriodKind.HOURLY: self.hourly_suffix,
            PeriodKind.DAILY: self.daily_suffix,
            PeriodKind.WEEKLY: self.weekly_suffix,
            PeriodKind.MONTHLY: self.monthly_suffix,
            PeriodKind.YEARLY: self.yearly_suffix,
        }
        if period not in suffixes:
            raise ValidationError(f"Snapshots of period {period.value} are never generated")
        return suffixes[period]

    def short_name(self, period: PeriodKind, timestamp: datetime) -> str:
        sep: str = self.separator
        return f"{self.prefix}{sep}{timestamp.strftime(self.timestamp_format)}{sep}{self.suffix(period)}"

    def full_name(self, dataset: str, period: PeriodKind, timestamp: datetime) -> str:
        name: str = f"{dataset}@{self.short_name(period, timestamp)}"
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Snapshot name exceeds {MAX_NAME_LENGTH} chars: {name}")
        return name
