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

"""UDP devices with JSON payloads."""

from __future__ import annotations

import json
import socket
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from ..framework.error import DeviceError
from .devices import InputDevice, OutputDevice, PathMapping

if TYPE_CHECKING:
    from ..framework import System
    from ..simulation.types import SimData

__all__ = ["UDPInput", "UDPOutput", "JSONMapping", "JsonEncoder"]

# Largest UDP payload over IPv4
MAX_DATAGRAM_SIZE = 65507


class UDPInput(InputDevice):
    """Receives datagrams on a local address."""

    def __init__(self, address: str = "127.0.0.1", port: int = 49017):
        self.address = address
        self.port = port
        self.socket: socket.socket = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.address}:{self.port})"

    def init(self):
        # A new socket on each initialization, so the device can be restarted
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.socket.bind((self.address, self.port))
        # The port may have been chosen by the OS
        self.port = self.socket.getsockname()[1]

    def shutdown(self):
        if self.socket is not None:
            self.socket.close()
            self.socket = None

    def get_data(self, timeout: float) -> bytes | None:
        self.socket.settimeout(timeout)
        try:
            data, _ = self.socket.recvfrom(MAX_DATAGRAM_SIZE)
        except (socket.timeout, BlockingIOError):
            return None
        return data


class UDPOutput(OutputDevice):
    """Sends each payload as one datagram to a remote address."""

    def __init__(self, address: str = "127.0.0.1", port: int = 49017):
        self.address = address
        self.port = port
        self.socket: socket.socket = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.address}:{self.port})"

    def init(self):
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def shutdown(self):
        if self.socket is not None:
            self.socket.close()
            self.socket = None

    def handle_data(self, data: bytes):
        if len(data) > MAX_DATAGRAM_SIZE:
            raise DeviceError(
                f"Payload of {len(data)} bytes does not fit in a datagram",
                device=self.name,
            )
        if data:
            self.socket.sendto(data, (self.address, self.port))


class JsonEncoder(json.JSONEncoder):
    def default(self, obj):
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        if isinstance(obj, Mapping):
            return dict(obj)
        if hasattr(obj, "tolist"):
            return obj.tolist()
        return super().default(obj)


class JSONMapping(PathMapping):
    """Path mapping for JSON-encoded payloads.

    Args:
        record_type: A `dataclass_json` class used to decode input payloads,
            e.g. the input record type of the target component.  If None,
            payloads are decoded to plain JSON values.
        input_path: See `PathMapping`.
        output_path: See `PathMapping`.
    """

    def __init__(self, record_type: type = None, input_path="", output_path=""):
        super().__init__(input_path=input_path, output_path=output_path)
        self.record_type = record_type

    def assign_input(self, system: System, data: bytes):
        try:
            if self.record_type is not None:
                value = self.record_type.from_json(data)
            else:
                value = json.loads(data)
        except (ValueError, KeyError, TypeError) as exc:
            raise DeviceError("Malformed JSON payload") from exc
        super().assign_input(system, value)

    def extract_output(self, data: SimData) -> bytes:
        if self.output_path:
            value = super().extract_output(data)
        else:
            value = {"t": data.t, "y": data.y}
        try:
            return json.dumps(value, cls=JsonEncoder).encode()
        except (TypeError, ValueError) as exc:
            raise DeviceError("Output is not JSON serializable") from exc
