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
"""Main CLI entry point; takes and prunes periodic ZFS snapshots as configured by ZFS user properties.

Usage: siazfs [-h] [--take-snapshots] [--prune-snapshots] [--check-zfs-properties] [--prepare-zfs-properties] [--dryrun]
    ...

A run proceeds as follows:
1. Set up logging, then acquire the host-wide mutex. If another run holds it, exit without mutating anything.
2. Optionally check or prepare the required properties of all pool roots.
3. Read all properties of all datasets and snapshots with a single streaming 'zfs get' and build the dataset graph.
4. Take the snapshots that are due, and write the new last-snapshot timestamps back into ZFS.
5. Destroy the snapshots that exceed their retention count.
6. Write back the timestamps of any newer snapshots observed in ZFS, so that the next run starts from there.
"""

from __future__ import (
    annotations,
)
import argparse
import os
import signal
import subprocess
import sys
import time
from dataclasses import (
    dataclass,
)
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    Any,
    Callable,
    Final,
)

from siazfs_main import properties as props
from siazfs_main.argparse_cli import (
    argument_parser,
)
from siazfs_main.command_runner import (
    CommandExecutor,
    OperationStatus,
    ZfsCommandExecutor,
)
from siazfs_main.configuration import (
    LogParams,
    Params,
    Template,
)
from siazfs_main.datasets import (
    DatasetNode,
    SchemaError,
)
from siazfs_main.loggers import (
    get_logger,
    get_simple_logger,
    reset_logger,
)
from siazfs_main.process_mutex import (
    MutexHandle,
    MutexRegistry,
    MutexState,
)
from siazfs_main.properties import (
    ParseError,
    PropertyValue,
)
from siazfs_main.raw_parser import (
    ParseResult,
    RawObjectParser,
    pool_root_property_validities,
)
from siazfs_main.retention import (
    DeferPruningPredicate,
    defer_while_used_below_threshold,
    due_periods,
    snapshots_to_prune,
)
from siazfs_main.snapshots import (
    PeriodKind,
    SnapshotRecord,
)
from siazfs_main.utils import (
    DIE_STATUS,
    LOG_TRACE,
    PROG_NAME,
    STILL_RUNNING_STATUS,
    die,
    getenv_bool,
    human_readable_duration,
    terminate_process_subtree,
    xfinally,
)

# constants:
FAILURE_STATUS: Final[int] = 1  # the run completed but some operations failed
_QUERIED_PROPERTY_NAMES: Final[tuple[str, ...]] = props.DATASET_PROPERTY_NAMES + props.SNAPSHOT_PROPERTY_NAMES


def main() -> None:
    """API for command line clients."""
    try:
        run_main(argument_parser().parse_args(), sys.argv)
    except subprocess.CalledProcessError as e:
        sys.exit(e.returncode)


def run_main(args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> RunStats:
    """API for Python clients; visible for testing; may become a public API eventually."""
    return Job().run_main(args, sys_argv, log)


#############################################################################
@dataclass
class RunStats:
    """Counters of one run; these are the figures a monitoring surface would expose."""

    num_datasets: int = 0
    num_snapshots: int = 0
    num_snapshots_taken: int = 0
    num_take_failures: int = 0
    num_snapshots_pruned: int = 0
    num_prune_failures: int = 0
    num_property_writes: int = 0
    num_property_write_failures: int = 0
    num_skipped_datasets: int = 0

    @property
    def num_failures(self) -> int:
        return self.num_take_failures + self.num_prune_failures + self.num_property_write_failures

    def __str__(self) -> str:
        return (
            f"datasets: {self.num_datasets}, snapshots: {self.num_snapshots}, taken: {self.num_snapshots_taken}, "
            f"take failures: {self.num_take_failures}, pruned: {self.num_snapshots_pruned}, "
            f"prune failures: {self.num_prune_failures}, property writes: {self.num_property_writes}, "
            f"property write failures: {self.num_property_write_failures}, skipped datasets: {self.num_skipped_datasets}"
        )


#############################################################################
class Job:
    """Executes one siazfs run: take, prune and reconcile periodic snapshots on all pools of the host."""

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        templates: dict[str, Template] | None = None,
        now_fn: Callable[[], datetime] | None = None,
        defer_pruning: DeferPruningPredicate = defer_while_used_below_threshold,
    ) -> None:
        """Optional collaborators are injected by Python clients and tests; by default the real 'zfs' CLI is used."""
        self.params: Params
        self.executor: CommandExecutor | None = executor
        self.templates: dict[str, Template] = templates if templates is not None else {}
        self.now_fn: Callable[[], datetime] = now_fn if now_fn is not None else lambda: datetime.now().astimezone()
        self.defer_pruning: DeferPruningPredicate = defer_pruning
        self.stats: RunStats = RunStats()
        self.is_test_mode: bool = getenv_bool("test_mode", False)  # for testing only

    def run_main(self, args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> RunStats:
        """Parses CLI arguments, sets up logging, acquires the mutex and executes the run."""
        is_own_logger: bool = log is None
        try:
            log_params = LogParams(args)
            log = get_logger(log_params, log=log, logger_name_suffix=log_params.logger_name_suffix)
            log.info("%s", f"Log file is: {log_params.log_file}")
        except BaseException as e:
            get_simple_logger(PROG_NAME).error("Log init: %s", e, exc_info=False if isinstance(e, SystemExit) else True)
            raise
        assert log is not None
        job_log: Logger = log

        def log_error_on_exit(error: Any, status_code: Any, exc_info: bool = False) -> None:
            job_log.error("%s%s", f"Exiting {PROG_NAME} with status code {status_code}. Cause: ", error, exc_info=exc_info)

        with xfinally(lambda: reset_logger(job_log) if is_own_logger else None):
            try:
                log.info("CLI arguments: %s %s", " ".join(sys_argv or []), f"[euid: {os.geteuid()}]")
                if self.is_test_mode:
                    log.log(LOG_TRACE, "Parsed CLI arguments: %s", args)
                self.params = p = Params(args, log_params, log, templates=self.templates)
                if self.executor is None:
                    self.executor = ZfsCommandExecutor(log, p.zfs_program, retry_policy=p.retry_policy)
                registry = MutexRegistry(p.lock_dir, log)
                with xfinally(registry.release_all):
                    handle: MutexHandle = registry.acquire(p.mutex_name, p.mutex_timeout_millis)
                    with handle:
                        if handle.state is MutexState.BUSY:
                            die(f"Exiting as a previous run is still holding mutex: {p.mutex_name}", STILL_RUNNING_STATUS)
                        if not handle.is_held:
                            die(f"Cannot acquire mutex {p.mutex_name}: {handle.state.value}")
                        # On SIGTERM, send signal to descendant processes to also terminate descendants
                        old_term_handler = signal.getsignal(signal.SIGTERM)
                        signal.signal(signal.SIGTERM, lambda sig, f: self.terminate(old_term_handler))
                        try:
                            self.run_tasks()
                        finally:
                            signal.signal(signal.SIGTERM, old_term_handler)  # restore original signal handler
            except SystemExit as e:
                log_error_on_exit(e, e.code)
                raise
            except (ParseError, SchemaError) as e:
                log_error_on_exit(e, DIE_STATUS)
                raise SystemExit(DIE_STATUS) from e
            except BaseException as e:
                log_error_on_exit(e, DIE_STATUS, exc_info=True)
                raise SystemExit(DIE_STATUS) from e
            finally:
                log.info("%s", f"Log file was: {log_params.log_file}")
            log.info("Success. Goodbye!")
        return self.stats

    def terminate(self, old_term_handler: Any, except_current_process: bool = True) -> None:
        """Shuts down gracefully on SIGTERM, optionally killing descendants."""
        signal.signal(signal.SIGTERM, old_term_handler)
        terminate_process_subtree(except_current_process=except_current_process)
        raise SystemExit(DIE_STATUS)

    def run_tasks(self) -> None:
        """Executes the ingestion, take, prune and reconciliation phases of one run."""
        p, log = self.params, self.params.log
        start_time_nanos: int = time.monotonic_ns()
        self.stats = RunStats()
        now: datetime = self.now_fn()
        prepared_defaults: dict[str, list[PropertyValue]] = {}
        if p.check_zfs_properties or p.prepare_zfs_properties:
            prepared_defaults = self.check_pool_roots()

        result: ParseResult = self.ingest()
        for root in result.pool_roots:  # apply the defaults set above, which a dry run did not write to ZFS
            for prop in prepared_defaults.get(root.name, []):
                root.update_property(prop.name, prop.value)
        self.validate_pool_roots(result)
        self.stats.num_datasets = len(result.datasets)
        self.stats.num_snapshots = len(result.snapshots)

        if p.take_snapshots:
            self.take_snapshots(result, now)
        if p.prune_snapshots:
            self.prune_snapshots(result, now)
        self.reconcile_timestamps(result)

        elapsed: str = human_readable_duration(time.monotonic_ns() - start_time_nanos)
        log.info("Run stats: %s, elapsed: %s", self.stats, elapsed)
        if self.stats.num_failures > 0:
            die(f"{self.stats.num_failures} operations failed", FAILURE_STATUS)

    def ingest(self) -> ParseResult:
        """Reads all properties of all datasets and snapshots and materializes the dataset graph."""
        assert self.executor is not None
        lines = self.executor.get_all_properties(_QUERIED_PROPERTY_NAMES)
        return RawObjectParser(self.params.log).parse(lines)

    def check_pool_roots(self) -> dict[str, list[PropertyValue]]:
        """Reports missing or invalid required properties of all pool roots and, if preparing, sets their defaults.

        Returns the defaults that were set (or would have been set in dry-run mode), per pool root.
        """
        p, log, executor = self.params, self.params.log, self.executor
        assert executor is not None
        validities = pool_root_property_validities(executor.get_pool_root_properties(props.DATASET_PROPERTY_NAMES))
        applied: dict[str, list[PropertyValue]] = {}
        num_missing: int = 0
        for root_name, valid_by_name in validities.items():
            missing: list[str] = [name for name, is_valid in valid_by_name.items() if not is_valid]
            num_missing += len(missing)
            if not missing:
                log.info("All required properties of pool root %s are present and valid", root_name)
                continue
            log.warning("Pool root %s lacks valid values of: %s", root_name, ", ".join(props.wire_name(n) for n in missing))
            if p.prepare_zfs_properties:
                defaults: list[PropertyValue] = [props.default_property(root_name, name) for name in missing]
                defaults = [prop.with_value(prop.value, props.PropertySource.LOCAL) for prop in defaults]
                status: OperationStatus = executor.set_properties(p.dry_run, root_name, defaults)
                self._count_property_write(status)
                if status.is_success:
                    applied[root_name] = defaults
        if num_missing > 0 and not p.prepare_zfs_properties:
            die(f"{num_missing} required pool root properties are missing or invalid; run with --prepare-zfs-properties")
        return applied

    def validate_pool_roots(self, result: ParseResult) -> None:
        """Raises SchemaError if any pool root lacks a required property, before any decision is made."""
        for root in result.pool_roots:
            for name in props.DATASET_PROPERTY_NAMES:
                root.get_effective(name)

    def take_snapshots(self, result: ParseResult, now: datetime) -> None:
        """Takes the due snapshots of all datasets in name order and writes the new timestamps back into ZFS."""
        p, log, executor = self.params, self.params.log, self.executor
        assert executor is not None
        for node in result.datasets.values():
            if not (node.enabled and node.take_snapshots):
                log.log(LOG_TRACE, "Not taking snapshots of %s", node.name)
                continue
            template: Template | None = p.template(node.template)
            if template is None:
                log.error("Skipping %s as its template '%s' is not configured", node.name, node.template)
                self.stats.num_skipped_datasets += 1
                continue
            if self.is_covered_by_ancestor(node):
                continue
            periods: list[PeriodKind] = due_periods(node, now, template.timing, log)
            if len(periods) == 0:
                continue
            base: DatasetNode = node.clone()
            for period in periods:
                status, record = executor.take_snapshot(node, period, now, template.naming, p.dry_run)
                if not status.is_success:
                    self.stats.num_take_failures += 1
                    continue
                self.stats.num_snapshots_taken += 1
                if record is not None:
                    result.snapshots[record.name] = node.add_snapshot(record)
                node.update_property(period.timestamp_property, now)
            self.write_back(node, base)

    def is_covered_by_ancestor(self, node: DatasetNode) -> bool:
        """Returns True if an ancestor takes 'zfs snapshot -r' snapshots, which already include this dataset."""
        log = self.params.log
        ancestor: DatasetNode | None = node.parent
        while ancestor is not None:
            if ancestor.enabled and ancestor.take_snapshots and ancestor.recursion == props.RECURSION_ZFS:
                if node.recursion == props.RECURSION_SIAZ:
                    log.warning(
                        "Skipping %s with recursion '%s' as ancestor %s takes recursive snapshots with recursion '%s'",
                        node.name,
                        props.RECURSION_SIAZ,
                        ancestor.name,
                        props.RECURSION_ZFS,
                    )
                else:
                    log.debug("Skipping %s as recursive snapshots of %s include it", node.name, ancestor.name)
                return True
            ancestor = ancestor.parent
        return False

    def prune_snapshots(self, result: ParseResult, now: datetime) -> None:
        """Destroys the snapshots beyond the retention count of every period of all datasets that enable pruning."""
        p, log, executor = self.params, self.params.log, self.executor
        assert executor is not None
        for node in result.datasets.values():
            if not (node.enabled and node.prune_snapshots):
                log.log(LOG_TRACE, "Not pruning snapshots of %s", node.name)
                continue
            for period in PeriodKind.automatic():
                candidates: list[SnapshotRecord] = snapshots_to_prune(node, period, now, self.defer_pruning, log)
                for record in candidates:
                    status: OperationStatus = executor.destroy_snapshot(record, p.dry_run)
                    if not status.is_success:
                        self.stats.num_prune_failures += 1
                        continue
                    self.stats.num_snapshots_pruned += 1
                    if not p.dry_run:
                        node.remove_snapshot(record)
                        result.snapshots.pop(record.name, None)

    def reconcile_timestamps(self, result: ParseResult) -> None:
        """Writes back the timestamps of snapshots that are newer than the stored last-snapshot properties."""
        for node in result.datasets.values():
            out_of_sync: list[tuple[PeriodKind, datetime]] = node.out_of_sync_timestamps()
            if len(out_of_sync) == 0:
                continue
            base: DatasetNode = node.clone()
            for period, observed in out_of_sync:
                node.update_property(period.timestamp_property, observed)
            self.write_back(node, base)

    def write_back(self, node: DatasetNode, base: DatasetNode) -> None:
        """Sets the properties that changed on the node since the base copy was taken, with a single 'zfs set'."""
        assert self.executor is not None
        changes: list[PropertyValue] = node.changed_properties(base)
        if len(changes) > 0:
            self._count_property_write(self.executor.set_properties(self.params.dry_run, node.name, changes))

    def _count_property_write(self, status: OperationStatus) -> None:
        if status.is_success:
            self.stats.num_property_writes += 1
        else:
            self.stats.num_property_write_failures += 1


#############################################################################
if __name__ == "__main__":
    main()
