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
"""Documentation, definition of input data and ArgumentParser used by the 'siazfs' CLI."""

from __future__ import (
    annotations,
)
import argparse
import dataclasses
from datetime import (
    datetime,
)
from typing import (
    Any,
    ClassVar,
)

from siazfs_main.period_anchors import (
    SnapshotTiming,
)
from siazfs_main.snapshots import (
    PeriodKind,
    SnapshotNaming,
)
from siazfs_main.utils import (
    PROG_NAME,
)

# constants:
__version__: str = "1.0.0.dev0"
LOG_DIR_DEFAULT: str = PROG_NAME + "-logs"
LOCK_DIR_DEFAULT: str = "." + PROG_NAME + "-locks"
MUTEX_NAME_DEFAULT: str = PROG_NAME
MUTEX_TIMEOUT_MILLIS_DEFAULT: int = 1000
_TIMING_GROUPS: tuple[str, ...] = ("frequent", "hourly", "daily", "weekly", "monthly", "yearly")


def argument_parser() -> argparse.ArgumentParser:
    """Returns the CLI parser used by siazfs."""
    # fmt: off
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog=PROG_NAME,
        allow_abbrev=False,
        formatter_class=argparse.RawTextHelpFormatter,
        description=f"""
*{PROG_NAME} is a snapshot lifecycle tool that takes periodic ZFS snapshots and prunes those that have aged out of
their retention policy, using ZFS user properties in the 'snapsinazfs.com:' namespace as its configuration and as its
only durable state.*

Which datasets are managed, how many frequent, hourly, daily, weekly, monthly and yearly snapshots to keep, and whether
children are snapshotted via native 'zfs snapshot -r' or walked one by one, is configured per dataset via 'zfs set', and
inherited by descendants. Every pool root must carry the full set of properties; run once with
--prepare-zfs-properties to initialize them with defaults.

Typically, a `cron` job runs `{PROG_NAME} --take-snapshots --prune-snapshots` every few minutes. A run first acquires a
host-wide mutex so that concurrent runs never race on the same pool, then reads all properties with a single
'zfs get', takes the snapshots that are due, destroys the snapshots beyond their retention count, and writes the
timestamps of the newest snapshots back into ZFS so that the next run starts from there.
""")

    parser.add_argument(
        "--take-snapshots", action="store_true",
        help="Take the periodic snapshots that are due on all datasets with enabled=true and takesnapshots=true.\n\n")
    parser.add_argument(
        "--prune-snapshots", action="store_true",
        help="Destroy the periodic snapshots beyond their retention count on all datasets with enabled=true and "
             "prunesnapshots=true. Manual and temporary snapshots are never pruned.\n\n")
    parser.add_argument(
        "--check-zfs-properties", action="store_true",
        help="Report the required properties that are missing or invalid on any pool root, and exit with a non-zero "
             "status if any are.\n\n")
    parser.add_argument(
        "--prepare-zfs-properties", action="store_true",
        help="Set the default value of every required property that is missing or invalid on any pool root.\n\n")
    parser.add_argument(
        "--dryrun", "-n", action="store_true",
        help="Do a dry run (aka 'no-op') to print what operations would happen if the command were to be executed "
             "for real. This option treats ZFS as read-only.\n\n")
    parser.add_argument(
        "--zfs-program", default="zfs", metavar="STRING",
        help="The name of the 'zfs' executable (default: %(default)s).\n\n")
    parser.add_argument(
        "--mutex-name", default=MUTEX_NAME_DEFAULT, metavar="STRING",
        help="The name of the host-wide mutex that guards a run; all cooperating instances must use the same name "
             "(default: %(default)s).\n\n")
    parser.add_argument(
        "--mutex-timeout-millis", type=int, min=0, default=MUTEX_TIMEOUT_MILLIS_DEFAULT, action=CheckRange, metavar="INT",
        help="How long to wait for another run to release the mutex before giving up (default: %(default)s).\n\n")
    parser.add_argument(
        "--lock-dir", type=str, metavar="DIR",
        help=f"Path to the directory that holds the mutex lock files. Default: $HOME/{LOCK_DIR_DEFAULT}\n\n")
    parser.add_argument(
        "--log-dir", type=str, metavar="DIR",
        help=f"Path to the log output directory on local host (optional). Default: $HOME/{LOG_DIR_DEFAULT}. The basename "
             f"of --log-dir must contain the substring '{LOG_DIR_DEFAULT}' as this helps prevent accidents.\n\n")
    parser.add_argument(
        "--verbose", "-v", action="count", default=0,
        help="Print verbose information. This option can be specified multiple times to increase the level of "
             "verbosity. ERROR, WARN, INFO, DEBUG, TRACE output lines are identified by [E], [W], [I], [D], [T] "
             "prefixes, respectively.\n\n")
    parser.add_argument(
        "--quiet", "-q", action="store_true",
        help="Suppress non-error, info, debug, and trace output.\n\n")
    parser.add_argument(
        "--retries", type=int, min=0, default=2, action=CheckRange, metavar="INT",
        help="The maximum number of times a 'zfs' command that failed with a transient error such as 'dataset is busy' "
             "is retried (default: %(default)s).\n\n")
    parser.add_argument(
        "--retry-min-sleep-secs", type=float, min=0, default=0.125, action=CheckRange, metavar="FLOAT",
        help="The minimum duration to sleep between retries (default: %(default)s).\n\n")
    parser.add_argument(
        "--retry-max-sleep-secs", type=float, min=0, default=60, action=CheckRange, metavar="FLOAT",
        help="The maximum duration to sleep between retries initially starts with --retry-min-sleep-secs (see above), "
             "and doubles on each retry, up to the final maximum of --retry-max-sleep-secs (default: %(default)s).\n\n")
    parser.add_argument(
        "--retry-max-elapsed-secs", type=float, min=0, default=5 * 60, action=CheckRange, metavar="FLOAT",
        help="A single operation is not retried once this much time has elapsed since its initial start "
             "(default: %(default)s).\n\n")

    naming: SnapshotNaming = SnapshotNaming()
    naming_group = parser.add_argument_group(
        "Snapshot naming", "Use these options to customize the names of new snapshots, which look like "
        f"{naming.full_name('tank/foo', PeriodKind.HOURLY, datetime(2024, 9, 3, 12, 26, 15))}")
    naming_group.add_argument(
        "--snapshot-prefix", default=naming.prefix, metavar="STRING",
        help="The first component of new snapshot names (default: %(default)s).\n\n")
    naming_group.add_argument(
        "--snapshot-separator", default=naming.separator, metavar="STRING",
        help="The separator between the components of new snapshot names (default: %(default)s).\n\n")
    naming_group.add_argument(
        "--source-system", default=naming.source_system, metavar="STRING",
        help="The name of this host, attached to every new snapshot as the 'sourcesystem' user property "
             "(default: %(default)s).\n\n")

    for period in _TIMING_GROUPS:
        timing_group = parser.add_argument_group(
            f"{period.title()} timing", f"Use these options to customize when {period} snapshots of the 'default' "
            "template are due.")
        for f in [f for f in dataclasses.fields(SnapshotTiming) if f.name.startswith(period + "_")]:
            min_ = f.metadata.get("min")
            max_ = f.metadata.get("max")
            timing_group.add_argument(
                "--" + f.name.replace("_", "-"), type=int, min=min_, max=max_, default=f.default, action=CheckRange,
                metavar="INT", help=f"{f.metadata.get('help')} ({min_} ≤ x ≤ {max_}, default: %(default)s).\n\n")
    parser.add_argument(
        "--use-utc", dest="use_local_time", action="store_false",
        help="Compute the due times of all periods in UTC rather than in the local timezone.\n\n")

    parser.add_argument(
        "--version", action="version", version=f"{PROG_NAME}-{__version__}",
        help="Display version information and exit.\n\n")
    # fmt: on
    return parser


###############################################################################
class CheckRange(argparse.Action):
    """Validates closed intervals such as [min, max] on int as well as float arguments."""

    ops: ClassVar[dict[str, Any]] = {"min": lambda value, bound: value >= bound, "max": lambda value, bound: value <= bound}

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        for name in self.ops:
            if name in kwargs:
                setattr(self, name, kwargs.pop(name))
        super().__init__(*args, **kwargs)

    def interval(self) -> str:
        lo: str = f"[{self.min}" if hasattr(self, "min") else "(-infinity"
        up: str = f"{self.max}]" if hasattr(self, "max") else "+infinity)"
        return f"valid range: {lo}, {up}"

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        for name, op in self.ops.items():
            if hasattr(self, name) and not op(values, getattr(self, name)):
                raise argparse.ArgumentError(self, self.interval())
        setattr(namespace, self.dest, values)
