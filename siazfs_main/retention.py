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
"""Pure decision logic: is a periodic snapshot due, and which snapshots exceed their retention count.

Both decisions are deterministic functions of a DatasetNode, its resolved timing policy and a supplied ``now``; nothing here
reads the clock or issues commands, which makes exhaustive unit testing cheap.

A period is due iff a boundary of that period lies in the half-open interval ``(last, now]``, where ``last`` is the later of
the stored last-snapshot timestamp property and the newest snapshot of the period observed during this run. ``last``
is rounded in the timezone of the timing policy. With local time, the boundaries of daily and longer periods follow the
daylight saving rules in force on each boundary date.

Pruning keeps the newest ``retention`` snapshots of a period and returns the rest, oldest first. Whether low capacity
pressure postpones pruning is decided by an injected predicate, because operators may want either polarity.
"""

from __future__ import (
    annotations,
)
from collections.abc import (
    Callable,
)
from datetime import (
    datetime,
    timedelta,
)
from logging import (
    Logger,
)
from typing import (
    Final,
)

from siazfs_main.datasets import (
    DatasetNode,
)
from siazfs_main.period_anchors import (
    SnapshotTiming,
    round_instant_up_to_period_boundary,
)
from siazfs_main.snapshots import (
    PeriodKind,
    SnapshotRecord,
)
from siazfs_main.utils import (
    LOG_TRACE,
    human_readable_duration,
)

# constants:
_ONE_MICROSECOND: Final[timedelta] = timedelta(microseconds=1)

DeferPruningPredicate = Callable[[DatasetNode, int], bool]  # (node, deferral percent) -> True to postpone pruning


def defer_while_used_below_threshold(node: DatasetNode, deferral_percent: int) -> bool:
    """Postpones pruning while the used share of the dataset's capacity is still below the deferral percentage."""
    return deferral_percent > 0 and node.percent_bytes_used < deferral_percent


def next_due_time(node: DatasetNode, period: PeriodKind, timing: SnapshotTiming) -> datetime:
    """Returns the first boundary of the period after the last snapshot, in the timezone of the timing policy."""
    return round_instant_up_to_period_boundary(node.last_snapshot_timestamp(period) + _ONE_MICROSECOND, period, timing)


def is_snapshot_due(
    node: DatasetNode, period: PeriodKind, now: datetime, timing: SnapshotTiming, log: Logger | None = None
) -> bool:
    """Returns True if a snapshot of the given automatic period should be taken on the node at time ``now``.

    A period whose retention count is zero is never due. Manual and temporary snapshots are never scheduled.
    """
    if not period.is_automatic:
        return False
    if node.retention(period) < 1:
        return False
    due_time: datetime = next_due_time(node, period, timing)
    is_due: bool = now >= due_time
    if log is not None and log.isEnabledFor(LOG_TRACE):
        log.log(LOG_TRACE, "%s %s snapshot due at %s: %s", node.name, period.value, due_time.isoformat(), is_due)
    return is_due


def due_periods(node: DatasetNode, now: datetime, timing: SnapshotTiming, log: Logger | None = None) -> list[PeriodKind]:
    """Returns the automatic periods that are due on the node, from the shortest to the longest."""
    return [period for period in PeriodKind.automatic() if is_snapshot_due(node, period, now, timing, log)]


def snapshots_to_prune(
    node: DatasetNode,
    period: PeriodKind,
    now: datetime,
    defer_pruning: DeferPruningPredicate = defer_while_used_below_threshold,
    log: Logger | None = None,
) -> list[SnapshotRecord]:
    """Returns the snapshots of the period beyond the configured retention count, oldest first.

    Exactly ``max(0, count - retention)`` records are returned unless ``defer_pruning`` postpones pruning of the node, in
    which case nothing is returned. The prune-deferral percentage of the node is passed to the predicate; a percentage of
    zero never defers. ``now`` serves as the reference time for logging snapshot ages only.
    """
    if not period.is_automatic:
        return []  # manual and temporary snapshots are never pruned automatically
    newest_first: list[SnapshotRecord] = sorted(node.snapshots(period).values(), reverse=True)
    retention: int = node.retention(period)
    candidates: list[SnapshotRecord] = newest_first[retention:]
    if not candidates:
        return []
    deferral: int = node.prune_deferral
    if deferral > 0 and defer_pruning(node, deferral):
        if log is not None:
            log.debug(
                "Deferring pruning of %s %s snapshots of %s as %.1f%% used is below %s%%",
                len(candidates),
                period.value,
                node.name,
                node.percent_bytes_used,
                deferral,
            )
        return []
    candidates.reverse()
    if log is not None and log.isEnabledFor(LOG_TRACE):
        for record in candidates:
            age: float = (now - record.timestamp).total_seconds()
            log.log(LOG_TRACE, "Prune candidate %s with age %s", record.name, human_readable_duration(age, unit="s"))
    return candidates
