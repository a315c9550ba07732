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
"""Configuration subsystem; All CLI option/parameter values are reachable from the "Params" class."""

from __future__ import (
    annotations,
)
import argparse
import os
import re
import tempfile
from collections.abc import (
    Mapping,
)
from dataclasses import (
    dataclass,
    field,
)
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    Final,
)

from siazfs_main.argparse_cli import (
    LOCK_DIR_DEFAULT,
    LOG_DIR_DEFAULT,
)
from siazfs_main.period_anchors import (
    SnapshotTiming,
)
from siazfs_main.retry import (
    RetryPolicy,
)
from siazfs_main.snapshots import (
    SnapshotNaming,
)
from siazfs_main.utils import (
    DIR_PERMISSIONS,
    FILE_PERMISSIONS,
    SHELL_CHARS,
    die,
    get_home_directory,
)

# constants:
DEFAULT_TEMPLATE: Final[str] = "default"


#############################################################################
class LogParams:
    """Option values for logging."""

    def __init__(self, args: argparse.Namespace) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        if args.quiet:
            log_level: str = "ERROR"
        elif args.verbose >= 2:
            log_level = "TRACE"
        elif args.verbose >= 1:
            log_level = "DEBUG"
        else:
            log_level = "INFO"
        self.log_level: Final[str] = log_level
        self.timestamp: Final[str] = datetime.now().isoformat(sep="_", timespec="seconds")  # 2024-09-03_12:26:15
        self.quiet: Final[bool] = args.quiet
        self.home_dir: Final[str] = get_home_directory()
        log_parent_dir: Final[str] = args.log_dir if args.log_dir else os.path.join(self.home_dir, LOG_DIR_DEFAULT)
        if LOG_DIR_DEFAULT not in os.path.basename(log_parent_dir):
            die(f"Basename of --log-dir must contain the substring '{LOG_DIR_DEFAULT}', but got: {log_parent_dir}")
        subdir: str = self.timestamp[0 : self.timestamp.index("_")]  # 2024-09-03
        self.log_dir: Final[str] = os.path.join(log_parent_dir, subdir)
        os.makedirs(self.log_dir, mode=DIR_PERMISSIONS, exist_ok=True)
        fd, self.log_file = tempfile.mkstemp(suffix=".log", prefix=f"{self.timestamp}-", dir=self.log_dir)
        os.fchmod(fd, FILE_PERMISSIONS)
        os.close(fd)
        log_file_stem: str = os.path.basename(self.log_file)[0 : -len(".log")]
        # Python's standard logger naming API interprets chars such as '.', '-', ':', spaces, etc in special ways, e.g.
        # logging.getLogger("foo.bar") vs logging.getLogger("foo-bar"). Thus, we sanitize the Python logger name via a regex:
        self.logger_name_suffix: Final[str] = re.sub(r"[^A-Za-z0-9_]", repl="_", string=log_file_stem)

    def __repr__(self) -> str:
        return str(self.__dict__)


#############################################################################
@dataclass(frozen=True)
class Template:
    """Named bundle of the timing and naming of periodic snapshots; datasets select one via their 'template' property."""

    name: str
    timing: SnapshotTiming = field(default_factory=SnapshotTiming)
    naming: SnapshotNaming = field(default_factory=SnapshotNaming)


#############################################################################
class Params:
    """All parsed CLI options combined into a single bundle; simplifies passing around numerous settings and defaults."""

    def __init__(
        self,
        args: argparse.Namespace,
        log_params: LogParams,
        log: Logger,
        templates: Mapping[str, Template] | None = None,
    ) -> None:
        """Reads from ArgumentParser via args; ``templates`` adds or overrides templates besides the 'default' one."""
        # immutable variables:
        assert args is not None
        assert log_params is not None
        assert log is not None
        self.args: Final[argparse.Namespace] = args
        self.log_params: Final[LogParams] = log_params
        self.log: Final[Logger] = log

        self.dry_run: Final[bool] = args.dryrun
        self.take_snapshots: Final[bool] = args.take_snapshots
        self.prune_snapshots: Final[bool] = args.prune_snapshots
        self.check_zfs_properties: Final[bool] = args.check_zfs_properties
        self.prepare_zfs_properties: Final[bool] = args.prepare_zfs_properties
        self.zfs_program: Final[str] = self.validate_arg_str(args.zfs_program, "--zfs-program", forbidden="")
        self.mutex_name: Final[str] = args.mutex_name
        self.mutex_timeout_millis: Final[int] = args.mutex_timeout_millis
        self.lock_dir: Final[str] = args.lock_dir if args.lock_dir else os.path.join(log_params.home_dir, LOCK_DIR_DEFAULT)
        self.retry_policy: Final[RetryPolicy] = RetryPolicy(args)

        naming = SnapshotNaming(
            prefix=self.validate_arg_str(args.snapshot_prefix, "--snapshot-prefix"),
            separator=self.validate_arg_str(args.snapshot_separator, "--snapshot-separator"),
            source_system=self.validate_arg_str(args.source_system, "--source-system"),
        )
        all_templates: dict[str, Template] = {DEFAULT_TEMPLATE: Template(DEFAULT_TEMPLATE, SnapshotTiming.parse(args), naming)}
        all_templates.update(templates or {})
        for name, template in all_templates.items():
            if name != template.name:
                die(f"Template registered as '{name}' is named '{template.name}'")
        self.templates: Final[dict[str, Template]] = all_templates

    def template(self, name: str) -> Template | None:
        """Returns the template of the given name, or None if no such template is configured."""
        return self.templates.get(name)

    @staticmethod
    def validate_arg_str(value: str, option: str, forbidden: str = "@/") -> str:
        """Rejects empty values and values that could be misinterpreted by 'zfs' or a shell."""
        if not value or any(char in SHELL_CHARS or char.isspace() or char in forbidden for char in value):
            die(f"Invalid value for {option}: '{value}'")
        return value

    def __repr__(self) -> str:
        return str(self.__dict__)
