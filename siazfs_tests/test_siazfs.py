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
"""End-to-end tests of a siazfs run against canned 'zfs get' listings; no real ZFS pool is needed."""

from __future__ import (
    annotations,
)
import logging
import os
import signal
import unittest
from datetime import (
    datetime,
    timezone,
)
from unittest.mock import (
    MagicMock,
)

from siazfs_main import properties as props
from siazfs_main.argparse_cli import (
    MUTEX_NAME_DEFAULT,
)
from siazfs_main.command_runner import (
    DummyCommandExecutor,
)
from siazfs_main.configuration import (
    Template,
)
from siazfs_main.period_anchors import (
    SnapshotTiming,
)
from siazfs_main.process_mutex import (
    LOCK_FILE_SUFFIX,
    MutexRegistry,
    MutexState,
)
from siazfs_main.siazfs import (
    FAILURE_STATUS,
    Job,
    RunStats,
)
from siazfs_main.snapshots import (
    PeriodKind,
    SnapshotNaming,
)
from siazfs_main.utils import (
    DIE_STATUS,
    STILL_RUNNING_STATUS,
)
from siazfs_tests.abstract_testcase import (
    AbstractTestCase,
    dataset_lines,
    snapshot_lines,
)

NOW: datetime = datetime(2024, 9, 3, 12, 30, tzinfo=timezone.utc)
LAST_HOURLY: str = props.wire_name(props.LAST_HOURLY_SNAPSHOT_TIMESTAMP)
HOURLY_ONLY: dict[str, str] = {
    props.ENABLED: "true",
    props.TAKE_SNAPSHOTS: "true",
    props.PRUNE_SNAPSHOTS: "true",
    props.RETENTION_FREQUENT: "0",
    props.RETENTION_HOURLY: "2",
    props.RETENTION_DAILY: "0",
    props.RETENTION_WEEKLY: "0",
    props.RETENTION_MONTHLY: "0",
    props.RETENTION_YEARLY: "0",
}


def hourly_snapshot(dataset: str, hour: int) -> tuple[str, list[str]]:
    name: str = SnapshotNaming().full_name(dataset, PeriodKind.HOURLY, NOW.replace(hour=hour, minute=0))
    return name, snapshot_lines(name, PeriodKind.HOURLY, NOW.replace(hour=hour, minute=0))


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestTakeSnapshots,
        TestPruneSnapshots,
        TestReconcileTimestamps,
        TestPoolRootProperties,
        TestExitStatus,
        TestRunStats,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class JobTestCase(AbstractTestCase):

    def setUp(self) -> None:
        self.log = MagicMock(logging.Logger)

    def run_job(self, cli_args: list[str], executor: DummyCommandExecutor, job: Job | None = None) -> RunStats:
        args = self.argparser_parse_args(cli_args + ["--use-utc"])
        job = job if job is not None else Job(executor=executor, now_fn=lambda: NOW)
        return job.run_main(args, ["siazfs"] + cli_args, log=self.log)

    def executor(
        self, property_lines: list[str], pool_root_lines: list[str] | None = None, fail_on: list[str] | None = None
    ) -> DummyCommandExecutor:
        return DummyCommandExecutor(self.log, property_lines, pool_root_lines or [], fail_on or [])

    @staticmethod
    def commands_of(executor: DummyCommandExecutor, subcommand: str) -> list[list[str]]:
        return [cmd for cmd in executor.commands if cmd[1] == subcommand]


#############################################################################
class TestTakeSnapshots(JobTestCase):

    def test_take_due_snapshots_of_root_and_child(self) -> None:
        executor = self.executor(dataset_lines("tank", HOURLY_ONLY) + dataset_lines("tank/a"))
        old_handler = signal.getsignal(signal.SIGTERM)
        stats = self.run_job(["--take-snapshots"], executor)
        self.assertEqual(old_handler, signal.getsignal(signal.SIGTERM))

        snapshots = self.commands_of(executor, "snapshot")
        self.assertEqual(
            ["tank@autosnap_2024-09-03_12:30:00_hourly", "tank/a@autosnap_2024-09-03_12:30:00_hourly"],
            [cmd[-1] for cmd in snapshots],
        )
        self.assertNotIn("-r", snapshots[0])
        self.assertIn(f"{props.wire_name(props.SNAPSHOT_PERIOD)}=hourly", snapshots[0])
        self.assertIn(f"{props.wire_name(props.SNAPSHOT_TIMESTAMP)}={NOW.isoformat()}", snapshots[0])
        self.assertIn(f"{props.wire_name(props.RECURSION)}={props.RECURSION_SIAZ}", snapshots[0])
        self.assertEqual(
            [
                ["zfs", "set", f"{LAST_HOURLY}={NOW.isoformat()}", "tank"],
                ["zfs", "set", f"{LAST_HOURLY}={NOW.isoformat()}", "tank/a"],
            ],
            self.commands_of(executor, "set"),
        )
        self.assertEqual(2, stats.num_datasets)
        self.assertEqual(2, stats.num_snapshots_taken)
        self.assertEqual(2, stats.num_property_writes)
        self.assertEqual(0, stats.num_failures)

    def test_nothing_is_due(self) -> None:
        values = {**HOURLY_ONLY, props.LAST_HOURLY_SNAPSHOT_TIMESTAMP: "2024-09-03T12:00:00+00:00"}
        executor = self.executor(dataset_lines("tank", values))
        stats = self.run_job(["--take-snapshots"], executor)
        self.assertEqual([], executor.commands)
        self.assertEqual(0, stats.num_snapshots_taken)

    def test_snapshots_are_only_taken_when_requested(self) -> None:
        executor = self.executor(dataset_lines("tank", HOURLY_ONLY))
        self.run_job([], executor)
        self.assertEqual([], executor.commands)

    def test_disabled_datasets_are_skipped(self) -> None:
        lines = dataset_lines("tank", HOURLY_ONLY) + dataset_lines("tank/a", {props.ENABLED: "false"})
        lines += dataset_lines("tank/b", {props.TAKE_SNAPSHOTS: "false"})
        executor = self.executor(lines)
        self.run_job(["--take-snapshots"], executor)
        self.assertEqual(["tank"], [cmd[-1].split("@")[0] for cmd in self.commands_of(executor, "snapshot")])

    def test_zfs_recursion_covers_descendants(self) -> None:
        lines = dataset_lines("tank", {**HOURLY_ONLY, props.RECURSION: props.RECURSION_ZFS})
        lines += dataset_lines("tank/a") + dataset_lines("tank/b", {props.RECURSION: props.RECURSION_SIAZ})
        executor = self.executor(lines)
        stats = self.run_job(["--take-snapshots"], executor)
        snapshots = self.commands_of(executor, "snapshot")
        self.assertEqual(1, len(snapshots))
        self.assertIn("-r", snapshots[0])
        self.assertTrue(snapshots[0][-1].startswith("tank@"))
        self.assertEqual(1, stats.num_snapshots_taken)
        self.assertTrue(any("tank/b" in str(call) for call in self.log.warning.call_args_list))

    def test_unknown_template_is_skipped(self) -> None:
        lines = dataset_lines("tank", HOURLY_ONLY) + dataset_lines("tank/a", {props.TEMPLATE: "nonexistent"})
        executor = self.executor(lines)
        stats = self.run_job(["--take-snapshots"], executor)
        self.assertEqual(1, stats.num_skipped_datasets)
        self.assertEqual(1, stats.num_snapshots_taken)

    def test_custom_template(self) -> None:
        prod = Template("prod", SnapshotTiming(use_local_time=False), SnapshotNaming(prefix="prod"))
        lines = dataset_lines("tank", HOURLY_ONLY) + dataset_lines("tank/a", {props.TEMPLATE: "prod"})
        executor = self.executor(lines)
        job = Job(executor=executor, templates={"prod": prod}, now_fn=lambda: NOW)
        self.run_job(["--take-snapshots"], executor, job=job)
        self.assertEqual(
            ["tank@autosnap_2024-09-03_12:30:00_hourly", "tank/a@prod_2024-09-03_12:30:00_hourly"],
            [cmd[-1] for cmd in self.commands_of(executor, "snapshot")],
        )

    def test_dry_run_mutates_nothing(self) -> None:
        executor = self.executor(dataset_lines("tank", HOURLY_ONLY))
        stats = self.run_job(["--take-snapshots", "--dryrun"], executor)
        self.assertEqual([], executor.commands)
        self.assertEqual(1, stats.num_snapshots_taken)
        self.assertEqual(1, stats.num_property_writes)


#############################################################################
class TestPruneSnapshots(JobTestCase):

    @staticmethod
    def lines_with_four_hourly_snapshots(overrides: dict[str, str] | None = None) -> tuple[list[str], list[str]]:
        values = {**HOURLY_ONLY, **(overrides or {}), props.LAST_HOURLY_SNAPSHOT_TIMESTAMP: "2024-09-03T12:00:00+00:00"}
        lines: list[str] = dataset_lines("tank", values)
        names: list[str] = []
        for hour in [12, 9, 11, 10]:
            name, snapshot = hourly_snapshot("tank", hour)
            names.append(name)
            lines += snapshot
        return sorted(names), lines

    def test_prune_oldest_snapshots_beyond_retention(self) -> None:
        names, lines = self.lines_with_four_hourly_snapshots()
        executor = self.executor(lines)
        stats = self.run_job(["--take-snapshots", "--prune-snapshots"], executor)
        self.assertEqual(
            [["zfs", "destroy", "-d", names[0]], ["zfs", "destroy", "-d", names[1]]],
            executor.commands,
        )
        self.assertEqual(4, stats.num_snapshots)
        self.assertEqual(2, stats.num_snapshots_pruned)
        self.assertEqual(0, stats.num_snapshots_taken)

    def test_prune_dry_run(self) -> None:
        _, lines = self.lines_with_four_hourly_snapshots()
        executor = self.executor(lines)
        stats = self.run_job(["--prune-snapshots", "--dryrun"], executor)
        self.assertEqual([], executor.commands)
        self.assertEqual(2, stats.num_snapshots_pruned)

    def test_pruning_disabled(self) -> None:
        _, lines = self.lines_with_four_hourly_snapshots({props.PRUNE_SNAPSHOTS: "false"})
        executor = self.executor(lines)
        stats = self.run_job(["--prune-snapshots"], executor)
        self.assertEqual([], executor.commands)
        self.assertEqual(0, stats.num_snapshots_pruned)

    def test_prune_deferral(self) -> None:
        _, lines = self.lines_with_four_hourly_snapshots({props.RETENTION_PRUNE_DEFERRAL: "50"})
        executor = self.executor(lines)
        job = Job(executor=executor, now_fn=lambda: NOW, defer_pruning=lambda node, percent: percent == 50)
        stats = self.run_job(["--prune-snapshots"], executor, job=job)
        self.assertEqual([], executor.commands)
        self.assertEqual(0, stats.num_snapshots_pruned)

    def test_zero_deferral_never_defers(self) -> None:
        _, lines = self.lines_with_four_hourly_snapshots()
        executor = self.executor(lines)
        job = Job(executor=executor, now_fn=lambda: NOW, defer_pruning=lambda node, percent: True)
        stats = self.run_job(["--prune-snapshots"], executor, job=job)
        self.assertEqual(2, stats.num_snapshots_pruned)


#############################################################################
class TestReconcileTimestamps(JobTestCase):

    def test_newer_observed_snapshot_is_written_back(self) -> None:
        _, snapshot = hourly_snapshot("tank", 12)
        executor = self.executor(dataset_lines("tank", {**HOURLY_ONLY, props.TAKE_SNAPSHOTS: "false"}) + snapshot)
        stats = self.run_job([], executor)
        self.assertEqual([["zfs", "set", f"{LAST_HOURLY}=2024-09-03T12:00:00+00:00", "tank"]], executor.commands)
        self.assertEqual(1, stats.num_property_writes)

    def test_timestamps_never_move_backwards(self) -> None:
        _, snapshot = hourly_snapshot("tank", 11)
        values = {**HOURLY_ONLY, props.LAST_HOURLY_SNAPSHOT_TIMESTAMP: "2024-09-03T12:00:00+00:00"}
        executor = self.executor(dataset_lines("tank", values) + snapshot)
        self.run_job([], executor)
        self.assertEqual([], executor.commands)


#############################################################################
class TestPoolRootProperties(JobTestCase):

    @staticmethod
    def lines_without_template() -> list[str]:
        return [line for line in dataset_lines("tank") if props.wire_name(props.TEMPLATE) not in line]

    def test_check_passes(self) -> None:
        executor = self.executor(dataset_lines("tank"), pool_root_lines=dataset_lines("tank"))
        self.run_job(["--check-zfs-properties"], executor)
        self.assertEqual(1, len([query for query in executor.queries if "-d" in query]))
        self.assertEqual([], executor.commands)

    def test_check_fails_on_missing_property(self) -> None:
        lines = self.lines_without_template()
        executor = self.executor(lines, pool_root_lines=lines)
        with self.assertRaises(SystemExit) as e:
            self.run_job(["--check-zfs-properties"], executor)
        self.assertEqual(DIE_STATUS, e.exception.code)
        self.assertEqual([], executor.commands)

    def test_prepare_sets_missing_defaults(self) -> None:
        lines = self.lines_without_template()
        executor = self.executor(lines, pool_root_lines=lines)
        stats = self.run_job(["--prepare-zfs-properties"], executor)
        self.assertEqual([["zfs", "set", f"{props.wire_name(props.TEMPLATE)}=default", "tank"]], executor.commands)
        self.assertEqual(1, stats.num_property_writes)

    def test_prepare_dry_run(self) -> None:
        lines = self.lines_without_template()
        executor = self.executor(lines, pool_root_lines=lines)
        self.run_job(["--prepare-zfs-properties", "--dryrun"], executor)
        self.assertEqual([], executor.commands)


#############################################################################
class TestExitStatus(JobTestCase):

    def test_missing_pool_root_property_is_fatal(self) -> None:
        lines = [line for line in dataset_lines("tank", HOURLY_ONLY) if props.wire_name(props.TEMPLATE) not in line]
        executor = self.executor(lines)
        with self.assertRaises(SystemExit) as e:
            self.run_job(["--take-snapshots"], executor)
        self.assertEqual(DIE_STATUS, e.exception.code)
        self.assertEqual([], executor.commands)

    def test_malformed_listing_is_fatal(self) -> None:
        executor = self.executor(["tank\tbad"])
        with self.assertRaises(SystemExit) as e:
            self.run_job(["--take-snapshots"], executor)
        self.assertEqual(DIE_STATUS, e.exception.code)

    def test_failed_operations(self) -> None:
        executor = self.executor(dataset_lines("tank", HOURLY_ONLY), fail_on=[" snapshot "])
        with self.assertRaises(SystemExit) as e:
            self.run_job(["--take-snapshots"], executor)
        self.assertEqual(FAILURE_STATUS, e.exception.code)
        self.assertEqual(1, len(executor.commands))

    def test_mutex_held_by_another_run(self) -> None:
        args = self.argparser_parse_args(["--take-snapshots", "--mutex-timeout-millis", "0", "--use-utc"])
        other = MutexRegistry(args.lock_dir, MagicMock(logging.Logger))
        self.addCleanup(other.release_all)
        self.assertEqual(MutexState.SUCCESS, other.acquire(MUTEX_NAME_DEFAULT, 0).state)
        executor = self.executor(dataset_lines("tank", HOURLY_ONLY))
        with self.assertRaises(SystemExit) as e:
            Job(executor=executor, now_fn=lambda: NOW).run_main(args, log=self.log)
        self.assertEqual(STILL_RUNNING_STATUS, e.exception.code)
        self.assertEqual([], executor.queries)

    def test_mutex_abandoned_by_crashed_run_is_recovered(self) -> None:
        args = self.argparser_parse_args(["--take-snapshots", "--use-utc"])
        os.makedirs(args.lock_dir, mode=0o700)
        with open(os.path.join(args.lock_dir, MUTEX_NAME_DEFAULT + LOCK_FILE_SUFFIX), "w", encoding="utf-8") as fd:
            fd.write("4242\n")  # pid of the crashed holder
        executor = self.executor(dataset_lines("tank", HOURLY_ONLY))
        stats = Job(executor=executor, now_fn=lambda: NOW).run_main(args, log=self.log)
        self.assertEqual(0, stats.num_failures)
        self.assertEqual(1, len(self.commands_of(executor, "snapshot")))
        warnings = [call.args for call in self.log.warning.call_args_list]
        self.assertIn(("Recovered mutex %s abandoned by crashed process: %s", MUTEX_NAME_DEFAULT, "4242"), warnings)

    def test_invalid_mutex_name_aborts_before_any_query(self) -> None:
        executor = self.executor(dataset_lines("tank", HOURLY_ONLY))
        with self.assertRaises(SystemExit) as e:
            self.run_job(["--take-snapshots", "--mutex-name=.bad name"], executor)
        self.assertEqual(DIE_STATUS, e.exception.code)
        self.assertEqual([], executor.queries)
        self.assertEqual([], executor.commands)

    def test_unusable_lock_dir_aborts_before_any_query(self) -> None:
        args = self.argparser_parse_args(["--take-snapshots", "--use-utc"])
        not_a_dir = os.path.join(self.make_tmpdir(), "file")
        with open(not_a_dir, "w", encoding="utf-8"):
            pass
        args.lock_dir = os.path.join(not_a_dir, "locks")
        executor = self.executor(dataset_lines("tank", HOURLY_ONLY))
        with self.assertRaises(SystemExit) as e:
            Job(executor=executor, now_fn=lambda: NOW).run_main(args, log=self.log)
        self.assertEqual(DIE_STATUS, e.exception.code)
        self.assertEqual([], executor.queries)
        self.assertEqual([], executor.commands)


#############################################################################
class TestRunStats(unittest.TestCase):

    def test_num_failures(self) -> None:
        stats = RunStats(num_take_failures=1, num_prune_failures=2, num_property_write_failures=3, num_skipped_datasets=4)
        self.assertEqual(6, stats.num_failures)
        self.assertIn("take failures: 1", str(stats))
        self.assertIn("skipped datasets: 4", str(stats))
