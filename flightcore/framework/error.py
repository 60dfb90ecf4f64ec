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

from __future__ import annotations

import warnings
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .system import System

__all__ = [
    "FlightCoreError",
    "ConfigurationError",
    "StateLengthError",
    "ConnectionOrderError",
    "ComponentRuntimeError",
    "SimulationError",
    "DeviceError",
]


class FlightCoreError(Exception):
    """Base class for all custom flightcore errors."""

    # A System is not always available, e.g. when validating a descriptor
    # before the tree is built. In that case pass the name path directly.

    def __init__(
        self,
        message=None,
        *,
        system: System = None,
        name_path: list[str] = None,
        time: float = None,
        device: str = None,
    ):
        """Create a new FlightCoreError.

        Only `message` is a positional argument, all others are keyword arguments.

        Args:
            message: A custom error message, defaults to the error class name.
            system: The System node the error occurred in, if available.
            name_path: The name path of the component, use if system can't be passed.
            time: Simulation time at which the error occurred, if applicable.
            device: Name of the I/O device involved, if applicable.
        """
        super().__init__(message)

        if system is not None and name_path is not None:
            warnings.warn(
                "Should not specify both system and name_path when raising exceptions"
            )

        if system is not None:
            self.name_path = list(system.name_path)
        else:
            self.name_path = name_path

        self.message = message
        self.time = time
        self.device = device

    def __str__(self):
        message = self.message or self.default_message
        return f"{message}{self._context_info()}"

    def _context_info(self) -> str:
        strbuf = []

        if self.name_path is not None:
            path = ".".join(self.name_path) if self.name_path else "root"
            strbuf.append(f" in component {path}")
        if self.device:
            strbuf.append(f" in device {self.device}")
        if self.time is not None:
            strbuf.append(f" at t={self.time:.6g}")
        if self.__cause__ is not None:
            strbuf.append(f": {type(self.__cause__).__name__}: {self.__cause__}")

        return "".join(strbuf)

    @property
    def component_name(self):
        if self.name_path is None:
            return None
        if len(self.name_path) == 0:
            return "root"
        return self.name_path[-1]

    @property
    def default_message(self):
        return type(self).__name__

    def caused_by(self, exc_type: type) -> bool:
        """Check if this error is or was caused by another error type.

        For instance, if a ComponentRuntimeError is raised because of a
        ZeroDivisionError, this method will return True when called with
        ZeroDivisionError as exc_type.
        """

        def _is_or_caused_by(exc, cause_type) -> bool:
            if not exc or not cause_type:
                return False
            if isinstance(exc, cause_type):
                return True
            return _is_or_caused_by(exc.__cause__, cause_type)

        return _is_or_caused_by(self, exc_type)


class ConfigurationError(FlightCoreError):
    """Invalid component tree or descriptor, detected when building the System.

    These are never recoverable: the System cannot be constructed."""

    pass


class StateLengthError(ConfigurationError):
    """A continuous state does not partition cleanly into its children."""

    def __init__(self, expected_length=None, actual_length=None, **kwargs):
        super().__init__(**kwargs)
        self.expected_length = expected_length
        self.actual_length = actual_length

    def __str__(self):
        if self.message:
            return f"{self.message}{self._context_info()}"
        return (
            f"State length mismatch: expected {self.expected_length}, "
            f"got {self.actual_length}" + self._context_info()
        )


class ConnectionOrderError(ConfigurationError):
    """A sibling connection is invalid or goes against the declared update order."""

    pass


class ComponentRuntimeError(FlightCoreError):
    """A component update failed for the current state. Fatal to the run.

    The original exception is found in the '__cause__' field."""

    pass


class SimulationError(FlightCoreError):
    """The model was misused or the ODE solver failed."""

    pass


class DeviceError(FlightCoreError):
    """Transport failure or malformed payload, local to one I/O device.

    Raised by devices and mappings, caught and logged by the I/O workers. It
    never reaches the integration loop."""

    pass
