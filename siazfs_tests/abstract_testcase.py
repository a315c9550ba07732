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
"""Test case base class and listing fixtures used by most unit tests.

Provides shared setup for consistent CLI argument parsing, plus helpers that produce the tab-separated listing lines which
'zfs get -H -p -o name,property,value,source' would print, so tests never need a real ZFS pool.
"""

from __future__ import annotations
import argparse
import logging
import os
import shutil
import tempfile
import unittest
from datetime import datetime
from unittest.mock import MagicMock

from siazfs_main import argparse_cli, configuration, utils
from siazfs_main import properties as props
from siazfs_main.datasets import DatasetNode
from siazfs_main.snapshots import PeriodKind


#############################################################################
class AbstractTestCase(unittest.TestCase):

    def __init__(self, methodName: str = "runTest") -> None:  # noqa: N803
        super().__init__(methodName)
        # immutable variables:
        self.test_mode: str = utils.getenv_any("test_mode", "") or ""  # Consider toggling this when testing
        self.is_unit_test: bool = self.test_mode == "unit"

    def make_tmpdir(self) -> str:
        tmpdir: str = tempfile.mkdtemp(prefix="siazfs_test_")
        self.addCleanup(shutil.rmtree, tmpdir, ignore_errors=True)
        return tmpdir

    def argparser_parse_args(self, args: list[str]) -> argparse.Namespace:
        tmpdir: str = self.make_tmpdir()
        log_dir: str = os.path.join(tmpdir, argparse_cli.LOG_DIR_DEFAULT + "-test")
        lock_dir: str = os.path.join(tmpdir, "locks")
        return argparse_cli.argument_parser().parse_args(args + ["--log-dir", log_dir, "--lock-dir", lock_dir])

    @staticmethod
    def make_params(
        args: argparse.Namespace,
        log_params: configuration.LogParams | None = None,
        log: logging.Logger | None = None,
        templates: dict[str, configuration.Template] | None = None,
    ) -> configuration.Params:
        if log_params is None:
            log_params = MagicMock(spec=configuration.LogParams)
            log_params.home_dir = utils.get_home_directory()
        log = log if log is not None else MagicMock(spec=logging.Logger)
        return configuration.Params(args=args, log_params=log_params, log=log, templates=templates)


#############################################################################
def zfs_line(name: str, prop: str, value: str, source: str = "local") -> str:
    """Returns one listing line; ``prop`` may be a short or a wire name."""
    return "\t".join([name, props.wire_name(prop), value, source])


def dataset_lines(
    name: str,
    values: dict[str, str] | None = None,
    kind: str = props.TYPE_FILESYSTEM,
    used: int = 0,
    available: int = 0,
) -> list[str]:
    """Returns the listing lines of one dataset; pool roots get the schema defaults of all properties not in ``values``."""
    values = dict(values or {})
    if utils.is_pool_root(name):
        values = {**{n: props.get_definition(n).default for n in props.DATASET_PROPERTY_NAMES}, **values}
    lines: list[str] = [zfs_line(name, props.TYPE, kind, "-")]
    lines += [zfs_line(name, prop, value) for prop, value in values.items()]
    lines += [zfs_line(name, props.USED, str(used), "-"), zfs_line(name, props.AVAILABLE, str(available), "-")]
    return lines


def snapshot_lines(name: str, period: PeriodKind, timestamp: datetime, recursion: str = props.RECURSION_SIAZ) -> list[str]:
    """Returns the listing lines of one snapshot as taken by siazfs."""
    return [
        zfs_line(name, props.TYPE, props.TYPE_SNAPSHOT, "-"),
        zfs_line(name, props.SNAPSHOT_NAME, name),
        zfs_line(name, props.SNAPSHOT_PERIOD, period.value),
        zfs_line(name, props.SNAPSHOT_TIMESTAMP, timestamp.isoformat()),
        zfs_line(name, props.RECURSION, recursion),
    ]


def make_pool_root(name: str = "tank", values: dict[str, str] | None = None) -> DatasetNode:
    """Returns a pool root that carries every required property, with schema defaults unless overridden."""
    merged: dict[str, str] = {**{n: props.get_definition(n).default for n in props.DATASET_PROPERTY_NAMES}, **(values or {})}
    properties = [props.parse_property(name, n, v, "local") for n, v in merged.items()]
    return DatasetNode(name, properties=properties)  # type: ignore[arg-type]
