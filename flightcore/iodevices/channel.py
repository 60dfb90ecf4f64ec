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

"""One-slot, last-write-wins channel between the simulation loop and a device.

The simulation loop only uses the non-blocking methods (`put_nowait`,
`take_nowait`), which give up immediately if the device side holds the lock.
The device side may block: `put` waits for the (short-lived) lock and `take`
waits for a value with a timeout.  Neither side ever waits for the other to
consume or produce, so two devices looping back into each other cannot
deadlock the simulation.
"""

from __future__ import annotations

import threading
from typing import Any

__all__ = ["OneSlotChannel"]


class OneSlotChannel:
    def __init__(self, name: str = ""):
        self.name = name
        self._cond = threading.Condition(threading.Lock())
        self._value: Any = None
        self._full = False
        self._closed = False

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("full" if self._full else "empty")
        return f"{type(self).__name__}({self.name!r}, {state})"

    @property
    def closed(self) -> bool:
        return self._closed

    def empty(self) -> bool:
        return not self._full

    def _store(self, value: Any) -> bool:
        if self._closed:
            return False
        self._value, self._full = value, True
        self._cond.notify_all()
        return True

    def put(self, value: Any) -> bool:
        """Overwrite the slot, waiting for the lock if needed.

        Returns False if the channel is closed."""
        with self._cond:
            return self._store(value)

    def put_nowait(self, value: Any) -> bool:
        """Overwrite the slot unless the lock is held by the other side.

        Returns True if the value was stored."""
        if not self._cond.acquire(blocking=False):
            return False
        try:
            return self._store(value)
        finally:
            self._cond.release()

    def _pop(self) -> Any:
        value, self._value, self._full = self._value, None, False
        return value

    def take_nowait(self) -> Any:
        """Take the pending value, or return None if there is none or the lock
        is held by the other side."""
        if not self._cond.acquire(blocking=False):
            return None
        try:
            return self._pop() if self._full else None
        finally:
            self._cond.release()

    def take(self, timeout: float = None) -> Any:
        """Wait up to `timeout` seconds for a value and take it.

        Returns None on timeout, or once the channel is closed and drained.
        A value put before `close` is still returned."""
        with self._cond:
            self._cond.wait_for(lambda: self._full or self._closed, timeout)
            return self._pop() if self._full else None

    def close(self):
        """Close the channel, waking up any waiting `take`."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def reopen(self):
        with self._cond:
            self._closed = False
            self._value, self._full = None, False
