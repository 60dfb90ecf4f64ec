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

"""In-process loopback devices.

A `LoopbackOutput` and a `LoopbackInput` sharing one `OneSlotChannel` link an
output of the simulation back into one of its inputs, exercising both
directions of the I/O machinery without any transport.
"""

from __future__ import annotations

from typing import Any

from .channel import OneSlotChannel
from .devices import InputDevice, OutputDevice

__all__ = ["LoopbackInput", "LoopbackOutput"]


class LoopbackOutput(OutputDevice):
    """Writes every mapped snapshot into the shared link, overwriting."""

    def __init__(self, link: OneSlotChannel, name: str = "LoopbackOutput"):
        self.link = link
        self._name = name
        self.last_written: Any = None
        self.n_written = 0

    @property
    def name(self) -> str:
        return self._name

    def handle_data(self, data: Any):
        self.link.put(data)
        self.last_written = data
        self.n_written += 1


class LoopbackInput(InputDevice):
    """Reads the latest value from the shared link."""

    def __init__(self, link: OneSlotChannel, name: str = "LoopbackInput"):
        self.link = link
        self._name = name
        self.last_read: Any = None
        self.n_read = 0

    @property
    def name(self) -> str:
        return self._name

    def get_data(self, timeout: float) -> Any:
        data = self.link.take(timeout)
        if data is not None:
            self.last_read = data
            self.n_read += 1
        return data
