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

"""Device and mapping interfaces for asynchronous I/O.

Devices run on their own worker threads and never touch the System: an input
device produces raw samples, which the simulation loop hands to the device's
`IOMapping` to assign to the System's inputs.  An output device receives the
result of mapping the latest output snapshot.
"""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Any

from ..framework.error import DeviceError
from ..framework.record import get_path, set_path

if TYPE_CHECKING:
    from ..framework import System
    from ..simulation.types import SimData

__all__ = [
    "IODevice",
    "InputDevice",
    "OutputDevice",
    "IOMapping",
    "PathMapping",
]


class IODevice(metaclass=abc.ABCMeta):
    """Lifecycle shared by input and output devices.

    `init` and `shutdown` are called on the device's worker thread, before the
    simulation starts and after the worker exits respectively.
    """

    @property
    def name(self) -> str:
        return type(self).__name__

    def init(self):
        pass

    def shutdown(self):
        pass

    def should_close(self) -> bool:
        """Return True to stop this device's worker, e.g. when a window closes."""
        return False


class InputDevice(IODevice):
    @abc.abstractmethod
    def get_data(self, timeout: float) -> Any:
        """Return a new input sample.

        May block, but for no longer than `timeout` seconds.  Returns None if
        no sample arrived in time.  Transport failures and malformed payloads
        raise `DeviceError` (or `OSError`, `ValueError`), which drop the sample.
        """
        pass


class OutputDevice(IODevice):
    @abc.abstractmethod
    def handle_data(self, data: Any):
        """Process one mapped output snapshot. May block."""
        pass


class IOMapping(metaclass=abc.ABCMeta):
    """Maps device data to System inputs and output snapshots to device data.

    `assign_input` is called on the simulation thread, `extract_output` on the
    output device's worker thread.
    """

    def assign_input(self, system: System, data: Any):
        raise NotImplementedError(
            f"{type(self).__name__} does not support input devices"
        )

    def extract_output(self, data: SimData) -> Any:
        return data


def _split_node_path(system: System, path: str) -> tuple[System, str]:
    # Leading path elements naming subsystems select the node, the rest is a
    # path into that node's input record.
    node = system
    parts = [p for p in path.split(".") if p]
    while parts and parts[0] in node.subsystems:
        node = node.subsystems[parts.pop(0)]
    return node, ".".join(parts)


class PathMapping(IOMapping):
    """Mapping by dotted paths.

    Args:
        input_path: Where input samples are written, e.g. `"controls.throttle"`
            sets `system.controls.u.throttle`, `"controls"` replaces the whole
            input record of the `controls` leaf.  Empty for the root's input.
        output_path: Component of the output snapshot's `y` sent to the
            device, e.g. `"airframe.kinematics"`.  Empty for the whole
            snapshot.
    """

    def __init__(self, input_path: str = "", output_path: str = ""):
        self.input_path = input_path
        self.output_path = output_path

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(input_path={self.input_path!r}, "
            f"output_path={self.output_path!r})"
        )

    def assign_input(self, system: System, data: Any):
        node, field_path = _split_node_path(system, self.input_path)
        try:
            if field_path:
                set_path(node.u, field_path, data)
            else:
                node.u = data
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
            raise DeviceError(
                f"Cannot assign input at '{self.input_path}'", system=node
            ) from exc

    def extract_output(self, data: SimData) -> Any:
        if not self.output_path:
            return data
        try:
            return get_path(data.y, self.output_path)
        except (AttributeError, KeyError, TypeError) as exc:
            raise DeviceError(
                f"Cannot extract output at '{self.output_path}'"
            ) from exc
