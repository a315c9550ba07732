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
"""Helpers shared by all siazfs modules: constants and exit codes, environment variables, subprocess and process-tree
handling, ZFS name validation and the xfinally cleanup primitive."""

from __future__ import (
    annotations,
)
import contextlib
import logging
import os
import pwd
import signal
import stat
import subprocess
from collections import (
    defaultdict,
)
from collections.abc import (
    Iterator,
)
from datetime import (
    datetime,
    timezone,
)
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    Any,
    Callable,
    Final,
    NoReturn,
)

# constants:
PROG_NAME: Final[str] = "siazfs"
ENV_VAR_PREFIX: Final[str] = PROG_NAME + "_"
DIE_STATUS: Final[int] = 3
STILL_RUNNING_STATUS: Final[int] = 4
LOG_TRACE: Final[int] = logging.DEBUG // 2  # custom log level is halfway in between
SHELL_CHARS: Final[str] = '"' + "'`~!@#$%^&*()+={}[]|;<>?,\\"
FILE_PERMISSIONS: Final[int] = stat.S_IRUSR | stat.S_IWUSR  # rw------- (user read + write)
DIR_PERMISSIONS: Final[int] = stat.S_IRWXU  # rwx------ (user read + write + execute)
MAX_NAME_LENGTH: Final[int] = 255  # ZFS limit for the full name of a dataset or snapshot
UNIX_EPOCH: Final[datetime] = datetime(1970, 1, 1, tzinfo=timezone.utc)
_DURATION_UNITS: Final[tuple[tuple[str, int], ...]] = (
    ("ns", 1),
    ("us", 1_000),
    ("ms", 1_000_000),
    ("s", 1_000_000_000),
    ("m", 60 * 1_000_000_000),
    ("h", 3600 * 1_000_000_000),
    ("d", 86400 * 1_000_000_000),
)


#############################################################################
class ValidationError(ValueError):
    """Indicates a malformed property value or an illegal object name; fatal to the single object only."""


def getenv_any(key: str, default: str | None = None) -> str | None:
    """All shell environment variable names used for configuration start with this prefix."""
    return os.getenv(ENV_VAR_PREFIX + key, default)


def getenv_bool(key: str, default: bool = False) -> bool:
    """Returns environment variable ``key`` as bool with ``default`` fallback."""
    return str(getenv_any(key, str(default))).lower().strip() == "true"


def get_home_directory() -> str:
    """Reliably detects home dir without using HOME env var."""
    # thread-safe version of: os.environ.pop('HOME', None); os.path.expanduser('~')
    return pwd.getpwuid(os.getuid()).pw_dir


def human_readable_duration(duration: float, unit: str = "ns", separator: str = "", precision: int | None = None) -> str:
    """Formats a duration given in ``unit`` using the largest unit that keeps the value >= 1, e.g. 90s --> 1.5m."""
    if duration < 0:
        return "-" + human_readable_duration(-duration, unit=unit, separator=separator, precision=precision)
    nanos: float = duration * dict(_DURATION_UNITS)[unit]
    suffix, scale = _DURATION_UNITS[0]
    for candidate_suffix, candidate_scale in _DURATION_UNITS[1:]:
        if nanos < candidate_scale:
            break
        suffix, scale = candidate_suffix, candidate_scale
    value: float = nanos / scale
    if precision is not None:
        text: str = f"{value:.{precision}f}"
    elif suffix != "ns" and value < 10:
        text = f"{value:.1f}"
    else:
        text = str(round(value))
    return f"{text}{separator}{suffix}"


def dry(msg: str, is_dry_run: bool) -> str:
    """Prefix ``msg`` with 'Dry' when in dry-run mode."""
    return "Dry " + msg if is_dry_run else msg


def parent_dataset(dataset: str) -> str:
    """Returns the name of the parent dataset, or the empty string for a pool root.

    Example: tank/foo/bar --> tank/foo, tank --> ''
    """
    i: int = dataset.rfind("/")
    return dataset[0:i] if i >= 0 else ""


def is_pool_root(dataset: str) -> bool:
    """A dataset without a path separator names an entire pool."""
    return "/" not in dataset


def stderr_to_str(stderr: Any) -> str:
    """Workaround for https://github.com/python/cpython/issues/87597."""
    return str(stderr) if not isinstance(stderr, bytes) else stderr.decode("utf-8")


def die(msg: str, exit_code: int = DIE_STATUS) -> NoReturn:
    """Aborts the run with ``exit_code``; the caller's exit handler logs ``msg`` as the cause."""
    ex = SystemExit(msg)
    ex.code = exit_code
    raise ex


def subprocess_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess:
    """Same contract as subprocess.run(), except that on timeout the descendants of the child are terminated too, so a
    hung 'zfs' pipeline leaves no orphans behind."""
    timeout: float | None = kwargs.pop("timeout", None)
    check: bool = kwargs.pop("check", False)
    with subprocess.Popen(*args, **kwargs) as proc:
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            try:
                terminate_process_subtree(root_pid=proc.pid)
            finally:
                proc.kill()
            raise
        except BaseException:
            proc.kill()
            raise
    returncode: int = proc.returncode
    if check and returncode != 0:
        raise subprocess.CalledProcessError(returncode, proc.args, output=stdout, stderr=stderr)
    return subprocess.CompletedProcess(proc.args, returncode, stdout, stderr)


def terminate_process_subtree(
    except_current_process: bool = False, root_pid: int | None = None, sig: signal.Signals = signal.SIGTERM
) -> None:
    """Sends ``sig`` to ``root_pid`` (default: this process) and to all of its descendants, parents first."""
    current_pid: int = os.getpid()
    root_pid = current_pid if root_pid is None else root_pid
    pids: list[int] = _get_descendant_processes(root_pid)
    if root_pid != current_pid or not except_current_process:
        pids.insert(0, root_pid)
    for pid in pids:
        with contextlib.suppress(OSError):
            os.kill(pid, sig)


def _get_descendant_processes(root_pid: int) -> list[int]:
    """Returns the IDs of all descendants of the given process, as listed by 'ps'."""
    children: defaultdict[int, list[int]] = defaultdict(list)
    cmd: list[str] = ["ps", "-Ao", "pid,ppid"]
    lines: list[str] = subprocess.run(cmd, stdin=DEVNULL, stdout=PIPE, text=True, check=True).stdout.splitlines()
    for line in lines[1:]:  # skip header line
        pid, ppid = line.split()
        children[int(ppid)].append(int(pid))
    descendants: list[int] = []
    pending: list[int] = [root_pid]
    while pending:
        for child_pid in children[pending.pop()]:
            descendants.append(child_pid)
            pending.append(child_pid)
    return descendants


def close_quietly(fd: int) -> None:
    """Closes the given file descriptor, if any, ignoring errors such as an already closed descriptor."""
    if fd >= 0:
        with contextlib.suppress(OSError):
            os.close(fd)


def validate_dataset_name(dataset: str, input_text: str) -> str:
    """'zfs create' CLI does not accept dataset names that are empty or start or end in a slash, etc."""
    # Also see https://github.com/openzfs/zfs/issues/439#issuecomment-2784424
    # and https://github.com/openzfs/zfs/issues/8798
    if (
        dataset in ("", ".", "..")
        or any(dataset.startswith(prefix) for prefix in ("/", "./", "../"))
        or any(dataset.endswith(suffix) for suffix in ("/", "/.", "/.."))
        or any(substring in dataset for substring in ("//", "/./", "/../"))
        or any(char in SHELL_CHARS or (char.isspace() and char != " ") for char in dataset)
        or not dataset[0].isalpha()
    ):
        raise ValidationError(f"Invalid ZFS dataset name: '{dataset}' for: '{input_text}'")
    if len(dataset) > MAX_NAME_LENGTH:
        raise ValidationError(f"ZFS dataset name exceeds {MAX_NAME_LENGTH} chars: '{dataset}' for: '{input_text}'")
    return dataset


def validate_snapshot_name(snapshot: str, input_text: str) -> str:
    """Checks a fully qualified ``dataset@shortname`` snapshot name."""
    dataset, sep, short_name = snapshot.partition("@")
    if not sep or not short_name or "@" in short_name or "/" in short_name:
        raise ValidationError(f"Invalid ZFS snapshot name: '{snapshot}' for: '{input_text}'")
    if any(char in SHELL_CHARS or char.isspace() for char in short_name):
        raise ValidationError(f"Invalid ZFS snapshot name: '{snapshot}' for: '{input_text}'")
    if len(snapshot) > MAX_NAME_LENGTH:
        raise ValidationError(f"ZFS snapshot name exceeds {MAX_NAME_LENGTH} chars: '{snapshot}' for: '{input_text}'")
    validate_dataset_name(dataset, input_text)
    return snapshot


@contextlib.contextmanager
def xfinally(cleanup: Callable[[], None]) -> Iterator[None]:
    """Usage: with xfinally(lambda: cleanup()): ...

    Runs ``cleanup()`` when the ``with`` block exits. An error raised by ``cleanup()`` never masks an error raised earlier
    inside the block; it is attached to it as ``__context__`` instead, so both show up in the traceback. If the block
    succeeds, an error raised by ``cleanup()`` propagates normally.
    """
    try:
        yield
    except BaseException as exc:
        try:
            cleanup()
        except BaseException as cleanup_exc:
            exc.__context__ = cleanup_exc
        raise
    cleanup()
