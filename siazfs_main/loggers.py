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
"""Logging helpers that build the per-job logger and a minimal logger for early failures.

Each siazfs.Job has its own separate Logger object such that multiple Jobs can run in the same Python process, for example
in tests, without interfering with each other's logging semantics. This is achieved by passing a unique
``logger_name_suffix`` per job to ``get_logger()`` so each job receives an isolated Logger instance. Callers are responsible
for closing any loggers they own via ``reset_logger()``.
"""
from __future__ import (
    annotations,
)
import contextlib
import logging
import sys
import time
from logging import (
    Logger,
)
from typing import (
    TYPE_CHECKING,
    Final,
)

from siazfs_main.utils import (
    LOG_TRACE,
    PROG_NAME,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from siazfs_main.configuration import (
        LogParams,
    )

# constants:
LOGGER_NAME: Final[str] = "siazfs_main.siazfs"
LOG_LEVEL_PREFIXES: Final[dict[int, str]] = {
    logging.CRITICAL: "[C] CRITICAL:",
    logging.ERROR: "[E] ERROR:",
    logging.WARNING: "[W]",
    logging.INFO: "[I]",
    logging.DEBUG: "[D]",
    LOG_TRACE: "[T]",
}
_CUSTOM_LEVEL_NAMES: Final[dict[int, str]] = {LOG_TRACE: "TRACE"}
_MESSAGE_COLUMN: Final[int] = 54  # values substituted for the first '%s' start at this column, so dataset names line up


def get_logger(log_params: LogParams, log: Logger | None = None, logger_name_suffix: str = "") -> Logger:
    """Returns a logger configured from CLI arguments or an optional third party logger."""
    _register_custom_levels()
    if log is not None:
        assert isinstance(log, Logger)
        return log  # use third party provided logger object

    name: str = f"{LOGGER_NAME}.{logger_name_suffix}" if logger_name_suffix else LOGGER_NAME
    log = _new_logger(name, log_params.log_level)
    handlers: list[logging.Handler] = [
        logging.StreamHandler(stream=sys.stdout),
        logging.FileHandler(log_params.log_file, encoding="utf-8"),
    ]
    for handler in handlers:
        handler.setFormatter(get_default_log_formatter())
        handler.setLevel(log_params.log_level)
        log.addHandler(handler)

    # perf: tell logging framework not to gather unnecessary expensive info for each log record
    logging.logProcesses = False
    logging.logThreads = False
    logging.logMultiprocessing = False
    logging.raiseExceptions = False  # avoid noisy tracebacks from logging handler errors like BrokenPipeError in production
    return log


def get_simple_logger(program: str = PROG_NAME, logger_name_suffix: str = "") -> Logger:
    """Returns a minimal stderr logger for failures that happen before the job logger exists."""
    _register_custom_levels()
    log = _new_logger(f"{program}.{logger_name_suffix}" if logger_name_suffix else program, logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(get_default_log_formatter(prefix=f"[{program}] ", pad=False))
    log.addHandler(handler)
    return log


def reset_logger(log: Logger) -> None:
    """Removes and closes logging handlers (and closes their files) and resets logger to default state."""
    for handler in log.handlers.copy():
        log.removeHandler(handler)
        with contextlib.suppress(BrokenPipeError):
            handler.flush()
        handler.close()
    for _filter in log.filters.copy():
        log.removeFilter(_filter)
    log.setLevel(logging.NOTSET)
    log.propagate = True


def _new_logger(name: str, level: int | str) -> Logger:
    log = Logger(name)  # noqa: LOG001 do not register logger with Logger.manager to avoid potential memory leak
    log.setLevel(level)
    log.propagate = False  # don't propagate log messages up to the root logger to avoid emitting duplicate messages
    return log


def _register_custom_levels() -> None:
    for level, level_name in _CUSTOM_LEVEL_NAMES.items():
        logging.addLevelName(level, level_name)


#############################################################################
class LevelPrefixFormatter(logging.Formatter):
    """Prepends a timestamp and a short level tag such as [I] or [E] ERROR: to each record.

    With ``pad``, the static part of a message is right-padded up to the first '%s' so that substituted values line up
    in a column.
    """

    def __init__(self, prefix: str = "", pad: bool = True) -> None:
        super().__init__()
        self.prefix: Final[str] = prefix
        self.pad: Final[bool] = pad

    def format(self, record: logging.LogRecord) -> str:
        timestamp: str = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.created))  # 2024-09-03 12:26:15
        head: str = f"{timestamp} {LOG_LEVEL_PREFIXES.get(record.levelno, '')} "
        template: str = str(record.msg)
        i: int = template.find("%s")
        if self.pad and i >= 1:
            template = template[0:i].ljust(_MESSAGE_COLUMN - len(head)) + template[i:]
        message: str = template % record.args if record.args else template
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            message += "\n" + record.exc_text
        if record.stack_info:
            message += "\n" + self.formatStack(record.stack_info)
        return self.prefix + head + message


def get_default_log_formatter(prefix: str = "", pad: bool = True) -> logging.Formatter:
    """Returns the formatter used by all siazfs log handlers."""
    return LevelPrefixFormatter(prefix=prefix, pad=pad)
