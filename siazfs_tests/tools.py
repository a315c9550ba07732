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
"""Small tools shared by the siazfs test modules; standard library only."""

from __future__ import (
    annotations,
)
import contextlib
import inspect
import io
import logging
import os
import time
import types
import unittest
from collections.abc import (
    Iterable,
    Iterator,
)
from typing import (
    Callable,
)
from unittest.mock import (
    patch,
)


@contextlib.contextmanager
def suppress_output() -> Iterator[None]:
    """Silence stdout/stderr and temporarily disable logging to keep test output clean."""
    with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()):
        old_disable = logging.root.manager.disable
        try:
            logging.disable(logging.CRITICAL)
            yield
        finally:
            logging.disable(old_disable)


@contextlib.contextmanager
def local_timezone(tz: str) -> Iterator[None]:
    """Temporarily switches the local timezone of this process, e.g. to the POSIX rule string of Europe/Berlin."""
    try:
        with patch.dict(os.environ, {"TZ": tz}):
            time.tzset()
            yield
    finally:
        time.tzset()


def iter_test_case_classes(suite: unittest.TestSuite) -> Iterable[type[unittest.TestCase]]:
    """Yields the class of every test in the suite, descending into nested suites."""
    for test in suite:
        if isinstance(test, unittest.TestSuite):
            yield from iter_test_case_classes(test)
        else:
            yield type(test)


#############################################################################
class TestSuiteCompleteness(unittest.TestCase):
    """Fails if a test module defines a test class that its suite() function forgets to include."""

    def __init__(
        self,
        method_name: str = "runTest",
        modules: list[types.ModuleType] | None = None,
        class_predicate: Callable[[type[unittest.TestCase]], bool] | None = None,
    ) -> None:
        super().__init__(method_name)
        self.modules: list[types.ModuleType] = modules or []
        self.class_predicate: Callable[[type[unittest.TestCase]], bool] = class_predicate or (lambda _cls: False)

    def test_all_modules_have_a_complete_suite(self) -> None:
        failures: list[str] = []
        for module in self.modules:
            defined: set[str] = {
                cls.__name__
                for _, cls in inspect.getmembers(module, inspect.isclass)
                if issubclass(cls, unittest.TestCase) and cls.__module__ == module.__name__ and self.class_predicate(cls)
            }
            included: set[str] = {cls.__name__ for cls in iter_test_case_classes(module.suite())}
            missing: list[str] = sorted(defined - included)
            if missing:
                failures.append(f"- {module.__name__}: {', '.join(missing)}")
        if failures:
            self.fail("Test classes missing from their module's suite():\n" + "\n".join(failures))
