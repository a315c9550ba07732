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
"""Unit tests for the host-wide named mutex."""

from __future__ import (
    annotations,
)
import logging
import os
import shutil
import tempfile
import unittest
from unittest.mock import (
    MagicMock,
)

from siazfs_main.process_mutex import (
    LOCK_FILE_SUFFIX,
    FlockPlatform,
    MutexRegistry,
    MutexState,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestMutexRegistry,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestMutexRegistry(unittest.TestCase):

    def setUp(self) -> None:
        self.lock_dir: str = tempfile.mkdtemp(prefix="siazfs_test_locks_")
        self.log = MagicMock(logging.Logger)
        self.registry = MutexRegistry(self.lock_dir, self.log)

    def tearDown(self) -> None:
        self.registry.release_all()
        shutil.rmtree(self.lock_dir, ignore_errors=True)

    def lock_file(self, name: str) -> str:
        return os.path.join(self.lock_dir, name + LOCK_FILE_SUFFIX)

    def test_acquire_and_release(self) -> None:
        handle = self.registry.acquire("siazfs", timeout_millis=0)
        self.assertEqual(MutexState.SUCCESS, handle.state)
        self.assertTrue(handle.is_held)
        self.assertEqual(["siazfs"], self.registry.held_names)
        with open(self.lock_file("siazfs"), encoding="utf-8") as fd:
            self.assertEqual(str(os.getpid()), fd.read().strip())
        handle.release()
        self.assertFalse(handle.is_held)
        self.assertEqual([], self.registry.held_names)
        self.assertEqual(0, os.path.getsize(self.lock_file("siazfs")))
        handle.release()  # idempotent

    def test_contended_mutex_with_zero_timeout_is_busy(self) -> None:
        handle = self.registry.acquire("siazfs", timeout_millis=0)
        other = MutexRegistry(self.lock_dir, MagicMock(logging.Logger), sleep=MagicMock())
        busy = other.acquire("siazfs", timeout_millis=0)
        self.assertEqual(MutexState.BUSY, busy.state)
        self.assertFalse(busy.is_held)
        busy.release()  # no-op
        handle.release()
        again = other.acquire("siazfs", timeout_millis=0)
        self.assertEqual(MutexState.SUCCESS, again.state)
        again.release()

    def test_contended_mutex_polls_until_timeout(self) -> None:
        self.registry.acquire("siazfs", timeout_millis=0)
        now: list[float] = [100.0]

        def sleep(secs: float) -> None:
            now[0] += secs

        other = MutexRegistry(self.lock_dir, MagicMock(logging.Logger), clock=lambda: now[0], sleep=sleep)
        self.assertEqual(MutexState.BUSY, other.acquire("siazfs", timeout_millis=120).state)
        self.assertAlmostEqual(100.12, now[0])

    def test_already_held_by_this_registry(self) -> None:
        handle = self.registry.acquire("siazfs", timeout_millis=0)
        second = self.registry.acquire("siazfs", timeout_millis=0)
        self.assertEqual(MutexState.IN_PROGRESS, second.state)
        self.assertFalse(second.is_held)
        second.release()
        self.assertTrue(handle.is_held)

    def test_invalid_names(self) -> None:
        for name in ["", "../etc/passwd", "-siazfs", "a/b", "a b", "x" * 129]:
            with self.subTest(name=name):
                self.assertEqual(MutexState.INVALID_NAME, self.registry.acquire(name, timeout_millis=0).state)
        self.assertEqual([], os.listdir(self.lock_dir))

    def test_abandoned_lock_is_recoverable(self) -> None:
        with open(self.lock_file("siazfs"), "w", encoding="utf-8") as fd:
            fd.write("12345\n")  # left behind by a crashed holder
        handle = self.registry.acquire("siazfs", timeout_millis=0)
        self.assertEqual(MutexState.ABANDONED_RECOVERABLE, handle.state)
        self.assertEqual("12345", handle.previous_owner)
        self.assertTrue(handle.is_held)
        self.log.warning.assert_called_once()
        handle.release()
        self.assertEqual(MutexState.SUCCESS, self.registry.acquire("siazfs", timeout_millis=0).state)

    def test_unusable_lock_dir_is_fatal(self) -> None:
        not_a_dir = os.path.join(self.lock_dir, "file")
        with open(not_a_dir, "w", encoding="utf-8"):
            pass
        registry = MutexRegistry(not_a_dir, self.log)
        self.assertEqual(MutexState.FATAL, registry.acquire("siazfs", timeout_millis=0).state)
        self.assertEqual([], registry.held_names)

    def test_context_manager_and_release_all(self) -> None:
        with self.registry.acquire("a", timeout_millis=0) as handle:
            self.assertTrue(handle.is_held)
        self.assertFalse(handle.is_held)
        first = self.registry.acquire("b", timeout_millis=0)
        second = self.registry.acquire("c", timeout_millis=0)
        self.registry.release_all()
        self.assertFalse(first.is_held)
        self.assertFalse(second.is_held)
        self.assertEqual([], self.registry.held_names)

    def test_platform_is_injectable(self) -> None:
        platform = MagicMock(FlockPlatform)
        platform.canonicalize.return_value = "/locks/x.lock"
        platform.try_lock.return_value = 42
        platform.read_owner.return_value = ""
        registry = MutexRegistry(self.lock_dir, self.log, platform=platform)
        handle = registry.acquire("x", timeout_millis=0)
        self.assertEqual(MutexState.SUCCESS, handle.state)
        platform.write_owner.assert_called_once_with(42, f"{os.getpid()}\n")
        handle.release()
        platform.unlock.assert_called_once_with(42)
