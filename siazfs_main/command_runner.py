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
"""The boundary to the 'zfs' CLI: queries whose output is streamed line by line, and mutations that report an
OperationStatus instead of raising.

``CommandExecutor`` holds the validation, command construction and logging that are shared by all implementations; the
subclasses only decide how a command runs. ``ZfsCommandExecutor`` runs the real CLI and ``DummyCommandExecutor`` is a
deterministic double that records commands and replays canned listing lines. Every mutation honors a dry-run flag, in which
case the same validation and logging happen but no command is issued.
"""

from __future__ import (
    annotations,
)
import enum
import subprocess
import tempfile
from abc import (
    ABC,
    abstractmethod,
)
from collections.abc import (
    Iterable,
    Iterator,
    Sequence,
)
from dataclasses import (
    dataclass,
)
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    Final,
)

from siazfs_main import properties as props
from siazfs_main.datasets import (
    DatasetNode,
)
from siazfs_main.properties import (
    PropertyDefinition,
    PropertyValue,
)
from siazfs_main.retry import (
    Retry,
    RetryableError,
    RetryPolicy,
    run_with_retries,
)
from siazfs_main.snapshots import (
    PeriodKind,
    SnapshotNaming,
    SnapshotRecord,
)
from siazfs_main.utils import (
    LOG_TRACE,
    ValidationError,
    dry,
    is_pool_root,
    stderr_to_str,
    subprocess_run,
    validate_dataset_name,
    validate_snapshot_name,
)

# constants:
LISTING_COLUMNS: Final[str] = "name,property,value,source"
DATASET_TYPES: Final[str] = f"{props.TYPE_FILESYSTEM},{props.TYPE_VOLUME}"
ALL_TYPES: Final[str] = f"{DATASET_TYPES},{props.TYPE_SNAPSHOT}"
_TRANSIENT_ERRORS: Final[tuple[str, ...]] = ("dataset is busy", "pool is busy")


#############################################################################
class StatusKind(enum.Enum):
    """The closed set of outcomes of a mutating operation."""

    SUCCESS = "success"
    SOURCE_IS_READ_ONLY = "source_is_read_only"  # nothing needed writing; counts as success
    FAILURE = "failure"


#############################################################################
@dataclass(frozen=True)
class OperationStatus:
    """Outcome of a mutating operation; failures carry the reason, e.g. the captured stderr."""

    kind: StatusKind
    reason: str = ""

    @property
    def is_success(self) -> bool:
        return self.kind is not StatusKind.FAILURE

    @staticmethod
    def success() -> OperationStatus:
        return _SUCCESS

    @staticmethod
    def read_only(reason: str) -> OperationStatus:
        return OperationStatus(StatusKind.SOURCE_IS_READ_ONLY, reason)

    @staticmethod
    def failure(reason: str) -> OperationStatus:
        return OperationStatus(StatusKind.FAILURE, reason)


_SUCCESS: Final[OperationStatus] = OperationStatus(StatusKind.SUCCESS)


#############################################################################
class CommandExecutor(ABC):
    """Issues 'zfs' commands; queries stream their output and mutations return an OperationStatus."""

    def __init__(self, log: Logger, zfs_program: str = "zfs") -> None:
        # immutable variables:
        self.log: Final[Logger] = log
        self.zfs_program: Final[str] = zfs_program

    # queries:

    @abstractmethod
    def _stream(self, cmd: list[str]) -> Iterator[str]:
        """Yields the stdout lines of the command as they are produced; raises CalledProcessError on non-zero exit."""

    def list_objects(self, kinds: Sequence[str]) -> Iterator[str]:
        """Yields the names of all objects of the given types, e.g. ('filesystem', 'volume')."""
        yield from self._stream([self.zfs_program, "list", "-H", "-o", "name", "-t", ",".join(kinds)])

    def get_all_properties(self, property_names: Iterable[str], roots: Sequence[str] = ()) -> Iterator[str]:
        """Yields the listing lines of the given properties of all datasets and snapshots, plus type, available and used."""
        names: list[str] = [props.TYPE] + [props.wire_name(name) for name in property_names]
        names += [props.AVAILABLE, props.USED]
        cmd: list[str] = [self.zfs_program, "get", "-H", "-p", "-r", "-o", LISTING_COLUMNS, "-t", ALL_TYPES]
        yield from self._stream(cmd + [",".join(dict.fromkeys(names))] + list(roots))

    def get_pool_root_properties(self, property_names: Iterable[str]) -> Iterator[str]:
        """Yields the listing lines of the given properties of all pool roots."""
        names: str = ",".join(props.wire_name(name) for name in property_names)
        cmd: list[str] = [self.zfs_program, "get", names, "-H", "-p", "-o", LISTING_COLUMNS, "-t", "filesystem", "-d", "0"]
        yield from self._stream(cmd)

    # mutations:

    @abstractmethod
    def _execute(self, cmd: list[str]) -> OperationStatus:
        """Runs a mutating command that is known to be valid."""

    def _run(self, msg: str, cmd: list[str], is_dry_run: bool) -> OperationStatus:
        self.log.info(dry(msg + ": %s", is_dry_run), " ".join(cmd))
        if is_dry_run:
            return OperationStatus.success()
        status: OperationStatus = self._execute(cmd)
        if not status.is_success:
            self.log.error("%s failed: %s", msg, status.reason)
        return status

    def set_properties(self, is_dry_run: bool, path: str, properties: Sequence[PropertyValue]) -> OperationStatus:
        """Sets the given user properties locally on the dataset or snapshot at ``path`` with a single 'zfs set'."""
        if len(properties) == 0:
            return OperationStatus.read_only(f"No properties to set on {path}")
        try:
            _validate_path(path)
            settings: list[str] = []
            for prop in properties:
                if prop.definition.is_native:
                    raise ValidationError(f"Native property {prop.name} is read-only")
                settings.append(prop.as_setting())
        except ValidationError as e:
            return self._invalid(e)
        cmd: list[str] = [self.zfs_program, "set", *settings, path]
        return self._run(f"Setting {len(settings)} properties on {path}", cmd, is_dry_run)

    def inherit_property(
        self, is_dry_run: bool, path: str, property_name: str, node: DatasetNode | None = None
    ) -> OperationStatus:
        """Removes the local value of the property at ``path`` so that ZFS resolves it from the ancestors.

        If ``node`` is given and holds no local value of the property, nothing needs writing.
        """
        try:
            _validate_path(path)
            definition: PropertyDefinition = props.get_definition(property_name)
            if definition.is_native or not definition.is_inheritable:
                raise ValidationError(f"Property {definition.name} cannot be inherited")
            if is_pool_root(path):
                raise ValidationError(f"Cannot inherit {definition.name} on pool root {path}")
        except (ValidationError, props.ParseError) as e:
            return self._invalid(e)
        if node is not None:
            stored: PropertyValue | None = node.properties.get(definition.name)
            if stored is None or not stored.is_local:
                return OperationStatus.read_only(f"{path} holds no local value of {definition.name}")
        cmd: list[str] = [self.zfs_program, "inherit", definition.wire_name, path]
        return self._run(f"Inheriting {definition.name} on {path}", cmd, is_dry_run)

    def take_snapshot(
        self,
        node: DatasetNode,
        period: PeriodKind,
        timestamp: datetime,
        naming: SnapshotNaming,
        is_dry_run: bool = False,
    ) -> tuple[OperationStatus, SnapshotRecord | None]:
        """Creates a snapshot of the node with its name, period, timestamp and recursion embedded atomically via 'zfs
        snapshot -o'. Returns the new record on success; in dry-run mode no record is returned."""
        try:
            if not period.is_automatic:
                raise ValidationError(f"Snapshots of period {period.value} are never taken automatically")
            name: str = naming.full_name(node.name, period, timestamp)
            recursion: str = node.recursion
            record: SnapshotRecord = SnapshotRecord.create(
                name, period, timestamp, parent=node, recursive=recursion == props.RECURSION_ZFS
            )
        except ValidationError as e:
            return self._invalid(e), None
        cmd: list[str] = [self.zfs_program, "snapshot"]
        if record.recursive:
            cmd.append("-r")
        for setting in record.creation_properties(recursion, naming.source_system):
            cmd += ["-o", setting]
        cmd.append(name)
        status: OperationStatus = self._run(f"Taking {period.value} snapshot", cmd, is_dry_run)
        return status, (record if status.is_success and not is_dry_run else None)

    def destroy_snapshot(self, record: SnapshotRecord, is_dry_run: bool = False) -> OperationStatus:
        """Destroys the snapshot; 'zfs destroy -d' defers destruction of held or cloned snapshots."""
        try:
            validate_snapshot_name(record.name, "destroy")
        except ValidationError as e:
            return self._invalid(e)
        cmd: list[str] = [self.zfs_program, "destroy", "-d", record.name]
        return self._run(f"Destroying {record.period.value} snapshot", cmd, is_dry_run)

    def _invalid(self, error: Exception) -> OperationStatus:
        self.log.error("%s", error)
        return OperationStatus.failure(str(error))


def _validate_path(path: str) -> None:
    if "@" in path:
        validate_snapshot_name(path, "zfs path")
    else:
        validate_dataset_name(path, "zfs path")


#############################################################################
class ZfsCommandExecutor(CommandExecutor):
    """Runs the real 'zfs' CLI as subprocesses; retries transient failures such as 'dataset is busy'."""

    def __init__(
        self, log: Logger, zfs_program: str = "zfs", retry_policy: RetryPolicy | None = None, timeout_secs: float | None = None
    ) -> None:
        super().__init__(log, zfs_program)
        self.retry_policy: Final[RetryPolicy] = RetryPolicy.no_retries() if retry_policy is None else retry_policy
        self.timeout_secs: Final[float | None] = timeout_secs

    def _stream(self, cmd: list[str]) -> Iterator[str]:
        self.log.debug("Executing: %s", " ".join(cmd))
        with tempfile.TemporaryFile() as stderr_file:  # a file, not a pipe, so a chatty stderr can never block stdout
            with subprocess.Popen(cmd, stdin=DEVNULL, stdout=PIPE, stderr=stderr_file, text=True) as proc:
                assert proc.stdout is not None
                try:
                    for line in proc.stdout:
                        yield line.rstrip("\n")
                    returncode: int = proc.wait(timeout=self.timeout_secs)
                finally:
                    if proc.poll() is None:  # consumer stopped early or an error occurred
                        proc.kill()
            if returncode != 0:
                stderr_file.seek(0)
                stderr: str = stderr_to_str(stderr_file.read()).rstrip()
                raise subprocess.CalledProcessError(returncode, cmd, stderr=stderr)

    def _execute(self, cmd: list[str]) -> OperationStatus:
        try:
            return run_with_retries(self.log, self.retry_policy, self._execute_once, cmd)
        except subprocess.CalledProcessError as e:
            return OperationStatus.failure(stderr_to_str(e.stderr).strip() or f"exit code {e.returncode}")
        except (OSError, subprocess.TimeoutExpired) as e:
            return OperationStatus.failure(str(e))

    def _execute_once(self, cmd: list[str], retry: Retry) -> OperationStatus:
        process: subprocess.CompletedProcess = subprocess_run(
            cmd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, text=True, timeout=self.timeout_secs, check=False
        )
        if process.returncode != 0:
            stderr: str = stderr_to_str(process.stderr)
            error = subprocess.CalledProcessError(process.returncode, cmd, output=process.stdout, stderr=stderr)
            if any(msg in stderr for msg in _TRANSIENT_ERRORS):
                raise RetryableError(f"Transient failure: {stderr.strip()}") from error
            raise error
        self.log.log(LOG_TRACE, "Succeeded on attempt %s: %s", retry.count + 1, cmd[1])
        return OperationStatus.success()


#############################################################################
class DummyCommandExecutor(CommandExecutor):
    """Deterministic double: replays canned listing lines and records mutating commands instead of running them."""

    def __init__(
        self,
        log: Logger,
        property_lines: Sequence[str] = (),
        pool_root_lines: Sequence[str] = (),
        fail_on: Sequence[str] = (),
    ) -> None:
        super().__init__(log)
        self.property_lines: list[str] = list(property_lines)
        self.pool_root_lines: list[str] = list(pool_root_lines)
        self.fail_on: list[str] = list(fail_on)  # a command fails if its joined text contains any of these substrings
        self.commands: list[list[str]] = []  # mutating commands that would have run
        self.queries: list[list[str]] = []

    def _stream(self, cmd: list[str]) -> Iterator[str]:
        self.queries.append(cmd)
        if cmd[1] == "list":
            kinds: set[str] = set(cmd[cmd.index("-t") + 1].split(","))
            for line in self.property_lines:
                fields: list[str] = line.split("\t")
                if len(fields) >= 3 and fields[1] == props.TYPE and fields[2] in kinds:
                    yield fields[0]
        elif "-d" in cmd:
            yield from self.pool_root_lines
        else:
            yield from self.property_lines

    def _execute(self, cmd: list[str]) -> OperationStatus:
        self.commands.append(cmd)
        text: str = " ".join(cmd)
        for trigger in self.fail_on:
            if trigger in text:
                return OperationStatus.failure(f"Simulated failure of: {text}")
        return OperationStatus.success()
