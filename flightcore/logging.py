# Copyright (C) 2024 Collimator, Inc.
# SPDX-License-Identifier: AGPL-3.0-only
#
# This program is free software: you can redistribute it and/or modify it under
# the terms of the GNU Affero General Public License as published by the Free
# Software Foundation, version 3. This program is distributed in the hope that it
# will be useful, but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the GNU Affero General
# Public License for more details.  You should have received a copy of the GNU
# Affero General Public License along with this program. If not, see
# <https://www.gnu.org/licenses/>.

"""Logging setup for flightcore.

All modules log through children of the package logger: the simulation loop
under `flightcore.simulation`, device workers under
`flightcore.iodevices.<device name>`.  Records may carry component context
attached with `logdata`, which `ColorFormatter` appends to the message.
"""

import logging
import time
from logging import CRITICAL, DEBUG, ERROR, INFO, WARNING

__all__ = [
    "logger",
    "logdata",
    "set_log_level",
    "set_file_handler",
    "set_stream_handler",
    "ColorFormatter",
    "DEBUG",
    "INFO",
    "WARNING",
    "ERROR",
    "CRITICAL",
]

_ANSI = {
    "bold": "\033[1m",
    "red": "\033[31m",
    "yellow": "\033[33m",
    "green": "\033[32m",
    "blue": "\033[34m",
    "grey": "\033[37m",
    "reset": "\033[0m",
}


class ColorFormatter(logging.Formatter):
    """Terminal formatter: level colors, worker thread and component extras.

    Enabled for the console by setting `LOG_COLOR=1` in the environment.
    """

    @staticmethod
    def _level_color(levelno: int) -> str:
        if levelno >= ERROR:
            return _ANSI["red"]
        if levelno >= WARNING:
            return _ANSI["yellow"]
        if levelno >= INFO:
            return _ANSI["green"]
        return _ANSI["blue"]

    def format(self, record: logging.LogRecord) -> str:
        stamp = time.strftime("%H:%M:%S", time.localtime(record.created))
        msecs = int(record.msecs)
        color = self._level_color(record.levelno)
        text = (
            f"{stamp}.{msecs:03d} {_ANSI['bold']}[{record.name}]"
            f"[{record.threadName}]{_ANSI['reset']} "
            f"{color}{record.levelname}{_ANSI['reset']}: {record.getMessage()}"
        )

        extras = getattr(record, "extras", None)
        if extras:
            text += " " + " ".join(
                f"{_ANSI['grey']}{key}{_ANSI['reset']}={value}"
                for key, value in extras.items()
            )
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


_plain_formatter = logging.Formatter(
    fmt="%(name)s:%(levelname)s [%(threadName)s] %(message)s"
)
_stream_handler = logging.StreamHandler()
_stream_handler.setFormatter(_plain_formatter)

logger = logging.getLogger(__package__)


def set_stream_handler(formatter: logging.Formatter = None):
    """Attach the console handler to the package logger, once.

    Args:
        formatter: Replaces the plain console format, e.g. `ColorFormatter()`.
    """
    if formatter is not None:
        _stream_handler.setFormatter(formatter)
    if _stream_handler not in logger.handlers:
        logger.addHandler(_stream_handler)


def set_file_handler(file, formatter: logging.Formatter = None) -> logging.Handler:
    """Also write the package logs to `file`, truncating it.

    Returns the handler, so that it can be removed with `logger.removeHandler`.
    """
    handler = logging.FileHandler(file, mode="w")
    handler.setFormatter(formatter or _plain_formatter)
    logger.addHandler(handler)
    return handler


def set_log_level(level, pkg: str | None = None):
    """Set the log level of the package logger, or of one of its children.

    Args:
        level: The log level to set, e.g. `logging.DEBUG` or `"DEBUG"`.
        pkg: Logger name, for instance "flightcore.iodevices". Defaults to the
            whole package.
    """
    logging.getLogger(pkg or __package__).setLevel(level)


def logdata(*, system=None, **kwargs):
    """Keyword arguments attaching extra context to a log record:

    logger.debug("update failed", **logdata(system=sys, t=1.0))

    The extras end up in `record.extras`.
    """
    extras = dict(kwargs)
    if system is not None and hasattr(system, "path"):
        extras["component"] = system.path or "root"

    if not extras:
        return {}
    return {"extra": {"extras": extras}}
