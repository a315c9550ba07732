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
"""Unit tests for the 'zfs' command boundary, using the deterministic double plus small real subprocesses."""

from __future__ import (
    annotations,
)
import argparse
import logging
import subprocess
import unittest
from datetime import (
    datetime,
    timezone,
)
from unittest.mock import (
    MagicMock,
    patch,
)

from siazfs_main import properties as props
from siazfs_main.command_runner import (
    ALL_TYPES,
    LISTING_COLUMNS,
    DummyCommandExecutor,
    OperationStatus,
    StatusKind,
    ZfsCommandExecutor,
)
from siazfs_main.datasets import (
    DatasetNode,
)
from siazfs_main.properties import (
    make_property,
)
from siazfs_main.retry import (
    RetryPolicy,
)
from siazfs_main.snapshots import (
    PeriodKind,
    SnapshotNaming,
    SnapshotRecord,
)
from siazfs_tests.abstract_testcase import (
    dataset_lines,
    make_pool_root,
)

T0 = datetime(2024, 9, 3, 12, 26, 15, tzinfo=timezone.utc)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestOperationStatus,
        TestQueries,
        TestMutations,
        TestZfsCommandExecutor,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


def make_executor(**kwargs: object) -> DummyCommandExecutor:
    return DummyCommandExecutor(MagicMock(logging.Logger), **kwargs)  # type: ignore[arg-type]


#############################################################################
class TestOperationStatus(unittest.TestCase):

    def test_kinds(self) -> None:
        self.assertTrue(OperationStatus.success().is_success)
        self.assertTrue(OperationStatus.read_only("nothing to do").is_success)
        self.assertEqual(StatusKind.SOURCE_IS_READ_ONLY, OperationStatus.read_only("nothing to do").kind)
        failure = OperationStatus.failure("boom")
        self.assertFalse(failure.is_success)
        self.assertEqual("boom", failure.reason)


#############################################################################
class TestQueries(unittest.TestCase):

    def test_get_all_properties(self) -> None:
        lines = dataset_lines("tank")
        executor = make_executor(property_lines=lines)
        self.assertEqual(lines, list(executor.get_all_properties(["enabled", "retention:daily"])))
        cmd = executor.queries[0]
        self.assertEqual(["zfs", "get", "-H", "-p", "-r", "-o", LISTING_COLUMNS, "-t", ALL_TYPES], cmd[0:9])
        self.assertEqual("type,snapsinazfs.com:enabled,snapsinazfs.com:retention:daily,available,used", cmd[9])
        self.assertEqual(10, len(cmd))

    def test_get_all_properties_of_roots(self) -> None:
        executor = make_executor()
        list(executor.get_all_properties(["enabled"], roots=["tank", "pool"]))
        self.assertEqual(["tank", "pool"], executor.queries[0][-2:])

    def test_get_pool_root_properties(self) -> None:
        executor = make_executor(pool_root_lines=["x"])
        self.assertEqual(["x"], list(executor.get_pool_root_properties(["enabled", "template"])))
        self.assertEqual(
            ["zfs", "get", "snapsinazfs.com:enabled,snapsinazfs.com:template", "-H", "-p", "-o", LISTING_COLUMNS]
            + ["-t", "filesystem", "-d", "0"],
            executor.queries[0],
        )

    def test_list_objects(self) -> None:
        lines = dataset_lines("tank") + dataset_lines("tank/vol", kind=props.TYPE_VOLUME)
        executor = make_executor(property_lines=lines)
        self.assertEqual(["tank", "tank/vol"], list(executor.list_objects(["filesystem", "volume"])))
        self.assertEqual(["tank/vol"], list(executor.list_objects(["volume"])))


#############################################################################
class TestMutations(unittest.TestCase):

    def test_set_properties(self) -> None:
        executor = make_executor()
        properties = [make_property("tank", "enabled", True), make_property("tank", "retention:daily", 3)]
        status = executor.set_properties(False, "tank", properties)
        self.assertEqual(StatusKind.SUCCESS, status.kind)
        self.assertEqual(
            [["zfs", "set", "snapsinazfs.com:enabled=true", "snapsinazfs.com:retention:daily=3", "tank"]], executor.commands
        )

    def test_set_properties_dry_run_issues_no_command(self) -> None:
        executor = make_executor()
        status = executor.set_properties(True, "tank", [make_property("tank", "enabled", True)])
        self.assertTrue(status.is_success)
        self.assertEqual([], executor.commands)
        executor.log.info.assert_called_once()  # type: ignore[attr-defined]
        self.assertTrue(executor.log.info.call_args[0][0].startswith("Dry "))  # type: ignore[attr-defined]

    def test_set_properties_nothing_to_do(self) -> None:
        executor = make_executor()
        self.assertEqual(StatusKind.SOURCE_IS_READ_ONLY, executor.set_properties(False, "tank", []).kind)
        self.assertEqual([], executor.commands)

    def test_set_properties_rejects_native_properties_and_invalid_paths(self) -> None:
        executor = make_executor()
        native = props.PropertyValue("used", props.PropertyKind.INT, 5, props.PropertySource.LOCAL, owner="tank")
        self.assertFalse(executor.set_properties(False, "tank", [native]).is_success)
        self.assertFalse(executor.set_properties(False, "tank//a", [make_property("tank", "enabled", True)]).is_success)
        self.assertEqual([], executor.commands)

    def test_set_properties_failure(self) -> None:
        executor = make_executor(fail_on=["set"])
        status = executor.set_properties(False, "tank", [make_property("tank", "enabled", True)])
        self.assertFalse(status.is_success)
        self.assertIn("Simulated failure", status.reason)

    def test_inherit_property(self) -> None:
        executor = make_executor()
        self.assertTrue(executor.inherit_property(False, "tank/a", "retention:daily").is_success)
        self.assertEqual([["zfs", "inherit", "snapsinazfs.com:retention:daily", "tank/a"]], executor.commands)

    def test_inherit_property_without_local_value_is_read_only(self) -> None:
        executor = make_executor()
        root = make_pool_root("tank")
        node = DatasetNode("tank/a", parent=root)
        status = executor.inherit_property(False, "tank/a", "enabled", node=node)
        self.assertEqual(StatusKind.SOURCE_IS_READ_ONLY, status.kind)
        node.update_property("enabled", True)
        self.assertEqual(StatusKind.SUCCESS, executor.inherit_property(False, "tank/a", "enabled", node=node).kind)
        self.assertEqual(1, len(executor.commands))

    def test_inherit_property_rejections(self) -> None:
        executor = make_executor()
        self.assertFalse(executor.inherit_property(False, "tank", "enabled").is_success)
        self.assertFalse(executor.inherit_property(False, "tank/a", "lastdailysnapshottimestamp").is_success)
        self.assertFalse(executor.inherit_property(False, "tank/a", "used").is_success)
        self.assertFalse(executor.inherit_property(False, "tank/a", "bogus").is_success)
        self.assertEqual([], executor.commands)

    def test_take_snapshot(self) -> None:
        executor = make_executor()
        root = make_pool_root("tank")
        node = DatasetNode("tank/a", parent=root)
        status, record = executor.take_snapshot(node, PeriodKind.HOURLY, T0, SnapshotNaming())
        self.assertTrue(status.is_success)
        assert record is not None
        self.assertEqual("tank/a@autosnap_2024-09-03_12:26:15_hourly", record.name)
        self.assertIs(node, record.parent)
        self.assertFalse(record.recursive)
        self.assertEqual(
            ["zfs", "snapshot"] + [arg for s in record.creation_properties("siaz") for arg in ("-o", s)] + [record.name],
            executor.commands[0],
        )

    def test_take_recursive_snapshot(self) -> None:
        executor = make_executor()
        root = make_pool_root("tank", {"recursion": "zfs"})
        status, record = executor.take_snapshot(root, PeriodKind.DAILY, T0, SnapshotNaming())
        assert record is not None
        self.assertTrue(record.recursive)
        self.assertEqual(["zfs", "snapshot", "-r"], executor.commands[0][0:3])

    def test_take_snapshot_tags_source_system(self) -> None:
        executor = make_executor()
        naming = SnapshotNaming(source_system="nas01")
        status, _ = executor.take_snapshot(make_pool_root("tank"), PeriodKind.DAILY, T0, naming)
        self.assertTrue(status.is_success)
        cmd = executor.commands[0]
        i = cmd.index("snapsinazfs.com:sourcesystem=nas01")
        self.assertEqual("-o", cmd[i - 1])

    def test_take_snapshot_dry_run_and_failure(self) -> None:
        root = make_pool_root("tank")
        executor = make_executor(fail_on=["snapshot"])
        status, record = executor.take_snapshot(root, PeriodKind.DAILY, T0, SnapshotNaming(), is_dry_run=True)
        self.assertTrue(status.is_success)
        self.assertIsNone(record)
        self.assertEqual([], executor.commands)
        status, record = executor.take_snapshot(root, PeriodKind.DAILY, T0, SnapshotNaming())
        self.assertFalse(status.is_success)
        self.assertIsNone(record)

    def test_take_manual_snapshot_is_rejected(self) -> None:
        executor = make_executor()
        status, record = executor.take_snapshot(make_pool_root("tank"), PeriodKind.MANUAL, T0, SnapshotNaming())
        self.assertFalse(status.is_success)
        self.assertIsNone(record)

    def test_destroy_snapshot(self) -> None:
        executor = make_executor()
        record = SnapshotRecord.create("tank@snap1", PeriodKind.DAILY, T0)
        self.assertTrue(executor.destroy_snapshot(record, is_dry_run=True).is_success)
        self.assertEqual([], executor.commands)
        self.assertTrue(executor.destroy_snapshot(record).is_success)
        self.assertEqual([["zfs", "destroy", "-d", "tank@snap1"]], executor.commands)


#############################################################################
class TestZfsCommandExecutor(unittest.TestCase):

    def test_stream_yields_lines(self) -> None:
        executor = ZfsCommandExecutor(MagicMock(logging.Logger), zfs_program="echo")
        lines = list(executor.list_objects(["filesystem"]))
        self.assertEqual(["list -H -o name -t filesystem"], lines)

    def test_stream_raises_on_nonzero_exit(self) -> None:
        executor = ZfsCommandExecutor(MagicMock(logging.Logger), zfs_program="false")
        with self.assertRaises(subprocess.CalledProcessError):
            list(executor.get_pool_root_properties(["enabled"]))

    def test_execute_success_and_failure(self) -> None:
        record = SnapshotRecord.create("tank@snap1", PeriodKind.DAILY, T0)
        self.assertTrue(ZfsCommandExecutor(MagicMock(logging.Logger), zfs_program="true").destroy_snapshot(record).is_success)
        status = ZfsCommandExecutor(MagicMock(logging.Logger), zfs_program="false").destroy_snapshot(record)
        self.assertFalse(status.is_success)
        self.assertEqual("exit code 1", status.reason)
        status = ZfsCommandExecutor(MagicMock(logging.Logger), zfs_program="/nonexistent/zfs").destroy_snapshot(record)
        self.assertFalse(status.is_success)

    def test_transient_errors_are_retried(self) -> None:
        args = argparse.Namespace(retries=2, retry_min_sleep_secs=0, retry_max_sleep_secs=0, retry_max_elapsed_secs=60)
        executor = ZfsCommandExecutor(MagicMock(logging.Logger), retry_policy=RetryPolicy(args))
        busy = subprocess.CompletedProcess([], 1, "", "cannot destroy: dataset is busy")
        ok = subprocess.CompletedProcess([], 0, "", "")
        record = SnapshotRecord.create("tank@snap1", PeriodKind.DAILY, T0)
        with patch("siazfs_main.command_runner.subprocess_run", side_effect=[busy, ok]) as run:
            self.assertTrue(executor.destroy_snapshot(record).is_success)
        self.assertEqual(2, run.call_count)
        with patch("siazfs_main.command_runner.subprocess_run", side_effect=[busy, busy, busy]) as run:
            status = executor.destroy_snapshot(record)
        self.assertFalse(status.is_success)
        self.assertEqual("cannot destroy: dataset is busy", status.reason)
        self.assertEqual(3, run.call_count)
