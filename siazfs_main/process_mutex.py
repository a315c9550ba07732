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
"""
Purpose
-----------------
A named, cross-process mutex that guarantees that at most one siazfs instance per storage root takes, prunes or writes
properties at any time. Two instances racing on the same pool could otherwise create duplicate snapshots, destroy the same
snapshot twice, or interleave their 'zfs set' calls such that last-snapshot timestamps regress.

How This Is Achieved
--------------------
Each mutex name maps to a lock file in a private lock directory. Acquisition opens the lock file and takes an exclusive
advisory lock via flock(2), polling in non-blocking mode until the lock is obtained or the timeout elapses. While held, the
lock file contains the PID of the holder; an orderly release truncates the file before closing the descriptor. A lock file
that still contains a PID when the lock is obtained was left behind by a process that crashed while holding it; this is
surfaced as ABANDONED_RECOVERABLE so that the caller can proceed with a warning.

Assumptions
-----------
- The filesystem is POSIX-compliant and supports ``fcntl.flock`` advisory locks. All cooperating instances run on the same
  host and use the same lock directory.
- The kernel releases a flock when the process terminates or the fd is closed, so a crashed holder never blocks others.

Design Rationale
----------------
- The registry is an explicit object that the orchestrator owns, not a process-wide table, so tests can simulate multiple
  holders in one process: flocks taken through distinct open file descriptions conflict even within a single process.
- Acquisition never raises for expected outcomes. Every outcome is a MutexHandle whose ``state`` tells the caller what
  happened, and ``release()`` is idempotent so that it can run on every exit path via ``with`` or ``xfinally``.
- All OS calls go through the small ``FlockPlatform`` interface (canonicalize path, check access, try lock, read and write
  owner, unlock) so that the state machine never depends on a specific OS binding.
"""

from __future__ import (
    annotations,
)
import enum
import fcntl
import os
import re
import time
import types
from logging import (
    Logger,
)
from typing import (
    Callable,
    Final,
)

from siazfs_main.utils import (
    DIR_PERMISSIONS,
    FILE_PERMISSIONS,
    LOG_TRACE,
    close_quietly,
)

# constants:
LOCK_FILE_SUFFIX: Final[str] = ".lock"
_NAME_REGEX: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}")
_POLL_INTERVAL_SECS: Final[float] = 0.05


#############################################################################
class MutexState(enum.Enum):
    """Outcome of an acquisition attempt."""

    SUCCESS = "success"  # held
    IN_PROGRESS = "in_progress"  # already held by this registry; not acquired again
    ABANDONED_RECOVERABLE = "abandoned_recoverable"  # held, but the previous holder crashed while holding it
    BUSY = "busy"  # another holder kept the mutex until the timeout elapsed
    INVALID_NAME = "invalid_name"
    FATAL = "fatal"  # unexpected OS error, e.g. the lock directory is not writable


#############################################################################
class FlockPlatform:
    """Platform I/O for named locks, backed by lock files and flock(2)."""

    def __init__(self, lock_dir: str) -> None:
        self.lock_dir: Final[str] = lock_dir

    def canonicalize(self, name: str) -> str:
        """Returns the absolute path of the lock file of the given mutex name."""
        return os.path.join(os.path.realpath(self.lock_dir), name + LOCK_FILE_SUFFIX)

    def check_access(self) -> None:
        """Creates the lock directory if necessary; raises PermissionError if it is unusable."""
        os.makedirs(self.lock_dir, mode=DIR_PERMISSIONS, exist_ok=True)
        if not os.access(self.lock_dir, os.R_OK | os.W_OK | os.X_OK):
            raise PermissionError(f"Insufficient permissions for lock directory: {self.lock_dir}")

    def try_lock(self, path: str) -> int | None:
        """Returns an open fd holding the exclusive lock, or None if another holder has it."""
        fd: int = os.open(path, os.O_RDWR | os.O_CREAT | os.O_NOFOLLOW | os.O_CLOEXEC, FILE_PERMISSIONS)
        try:
            # Acquire an exclusive lock; will raise a BlockingIOError if lock is already held by another holder.
            # The (advisory) lock is auto-released when the process terminates or the fd is closed.
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)  # LOCK_NB ... non-blocking
        except OSError as e:
            close_quietly(fd)
            if isinstance(e, BlockingIOError):
                return None
            raise
        return fd

    def read_owner(self, fd: int) -> str:
        return os.pread(fd, 4096, 0).decode("utf-8", errors="replace")

    def write_owner(self, fd: int, owner: str) -> None:
        os.ftruncate(fd, 0)
        os.pwrite(fd, owner.encode("utf-8"), 0)

    def unlock(self, fd: int) -> None:
        """Marks the lock file as cleanly released, then releases the lock by closing the fd."""
        try:
            os.ftruncate(fd, 0)
        finally:
            close_quietly(fd)


#############################################################################
class MutexHandle:
    """Result of an acquisition; holds the lock iff ``is_held`` until ``release()`` is called."""

    def __init__(self, registry: MutexRegistry, name: str, state: MutexState, fd: int = -1, previous_owner: str = "") -> None:
        # immutable variables:
        self.name: Final[str] = name
        self.state: Final[MutexState] = state
        self.previous_owner: Final[str] = previous_owner  # content left behind by a crashed holder, if any
        self._registry: Final[MutexRegistry] = registry

        # mutable variables:
        self._fd: int = fd

    def __repr__(self) -> str:
        return f"MutexHandle(name={self.name!r}, state={self.state.value}, is_held={self.is_held})"

    @property
    def is_held(self) -> bool:
        return self._fd >= 0

    def release(self) -> None:
        """Releases the mutex if held; calling this more than once is a no-op."""
        fd: int = self._fd
        if fd >= 0:
            self._fd = -1
            self._registry._release(self, fd)

    def __enter__(self) -> MutexHandle:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: types.TracebackType | None,
    ) -> None:
        self.release()


#############################################################################
class MutexRegistry:
    """Acquires and tracks the named mutexes of one process; passed explicitly to whatever needs cross-process locking."""

    def __init__(
        self,
        lock_dir: str,
        log: Logger,
        platform: FlockPlatform | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        # immutable variables:
        self.log: Final[Logger] = log
        self.platform: Final[FlockPlatform] = FlockPlatform(lock_dir) if platform is None else platform
        self._clock: Final[Callable[[], float]] = clock
        self._sleep: Final[Callable[[float], None]] = sleep

        # mutable variables:
        self._held: dict[str, MutexHandle] = {}

    @property
    def held_names(self) -> list[str]:
        return sorted(self._held)

    def acquire(self, name: str, timeout_millis: int) -> MutexHandle:
        """Waits up to ``timeout_millis`` for the named mutex and returns a handle whose state reports the outcome."""
        if not _NAME_REGEX.fullmatch(name):
            self.log.error("Invalid mutex name: '%s'", name)
            return MutexHandle(self, name, MutexState.INVALID_NAME)
        if name in self._held:
            self.log.warning("Mutex is already held by this process: %s", name)
            return MutexHandle(self, name, MutexState.IN_PROGRESS)
        fd: int | None = None
        try:
            self.platform.check_access()
            path: str = self.platform.canonicalize(name)
            deadline: float = self._clock() + max(0, timeout_millis) / 1000
            while (fd := self.platform.try_lock(path)) is None:
                remaining: float = deadline - self._clock()
                if remaining <= 0:
                    self.log.debug("Mutex %s is still held by another process after %sms", name, timeout_millis)
                    return MutexHandle(self, name, MutexState.BUSY)
                self._sleep(min(_POLL_INTERVAL_SECS, remaining))
            previous_owner: str = self.platform.read_owner(fd).strip()
            self.platform.write_owner(fd, f"{os.getpid()}\n")
        except OSError as e:
            if fd is not None:
                close_quietly(fd)
            self.log.error("Cannot acquire mutex %s: %s", name, e)
            return MutexHandle(self, name, MutexState.FATAL)

        state: MutexState = MutexState.ABANDONED_RECOVERABLE if previous_owner else MutexState.SUCCESS
        if state is MutexState.ABANDONED_RECOVERABLE:
            self.log.warning("Recovered mutex %s abandoned by crashed process: %s", name, previous_owner)
        handle = MutexHandle(self, name, state, fd=fd, previous_owner=previous_owner)
        self._held[name] = handle
        self.log.log(LOG_TRACE, "Acquired mutex %s: %s", name, path)
        return handle

    def _release(self, handle: MutexHandle, fd: int) -> None:
        self._held.pop(handle.name, None)
        self.platform.unlock(fd)
        self.log.log(LOG_TRACE, "Released mutex %s", handle.name)

    def release_all(self) -> None:
        """Releases all mutexes still held by this registry."""
        for name in self.held_names:
            self.log.warning("Releasing mutex that is still held: %s", name)
            self._held[name].release()
