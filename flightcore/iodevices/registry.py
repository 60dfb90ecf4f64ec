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

"""Registry of asynchronous I/O devices attached to a Model.

Each attached device gets a worker thread and a one-slot channel.  Input
workers poll their device and overwrite their channel with the latest sample;
the Model takes whatever is pending at each accepted step and assigns it
through the device's mapping.  Output workers wait on their channel, which the
Model overwrites with the latest snapshot after each sample.

Device failures stay local: transport errors and malformed payloads drop the
sample and are logged, unexpected errors shut the device down.  Neither can
block or abort the simulation loop.
"""

from __future__ import annotations

import abc
import threading
from typing import TYPE_CHECKING, Any

from ..framework.error import DeviceError
from ..logging import logger as _root_logger
from .channel import OneSlotChannel
from .devices import InputDevice, IOMapping, OutputDevice, PathMapping

if TYPE_CHECKING:
    from ..framework import System
    from ..simulation import Model
    from ..simulation.types import SimData

__all__ = ["IORegistry"]

logger = _root_logger.getChild("iodevices")

# Failures local to one sample
_SAMPLE_ERRORS = (DeviceError, OSError, ValueError)


class _Interface(metaclass=abc.ABCMeta):
    def __init__(
        self,
        device: InputDevice | OutputDevice,
        mapping: IOMapping,
        start_event: threading.Event,
        poll_interval: float,
    ):
        self.device = device
        self.mapping = mapping
        self.channel = OneSlotChannel(device.name)
        self.start_event = start_event
        self.stop_event = threading.Event()
        self.poll_interval = poll_interval
        self.logger = logger.getChild(device.name)
        self.thread: threading.Thread = None

    def start(self, direction: str):
        self.stop_event.clear()
        self.channel.reopen()
        self.thread = threading.Thread(
            target=self._run,
            name=f"{self.device.name}-{direction}",
            daemon=True,
        )
        self.thread.start()

    def join(self, timeout: float = None):
        if self.thread is None:
            return
        self.thread.join(timeout)
        if self.thread.is_alive():
            self.logger.warning("Worker did not exit within %s s", timeout)
        self.thread = None

    def _running(self) -> bool:
        return not self.stop_event.is_set() and not self.device.should_close()

    def _run(self):
        self.logger.info(
            "Starting on thread %s...", threading.current_thread().name
        )
        try:
            self.device.init()
            self.logger.info("Waiting for simulation...")
            while not self.start_event.wait(self.poll_interval):
                if self.stop_event.is_set():
                    return
            self.logger.info("Running...")
            self._loop()
        except Exception as exc:  # pylint: disable=broad-except
            self.logger.error("Error during execution: %s", exc, exc_info=True)
        finally:
            self.device.shutdown()
            self.channel.close()
            self.logger.info("Closed")

    @abc.abstractmethod
    def _loop(self):
        pass


class _InputInterface(_Interface):
    def _poll(self, timeout: float):
        try:
            data = self.device.get_data(timeout)
        except _SAMPLE_ERRORS as exc:
            self.logger.warning("Input sample dropped: %s", exc)
            self.stop_event.wait(self.poll_interval)
            return
        if data is not None:
            self.channel.put(data)

    def _loop(self):
        while self._running():
            self._poll(self.poll_interval)
        # The device may have produced one last sample while stopping
        if not self.device.should_close():
            self._poll(0.0)
        self.logger.info("Shutting down...")

    def apply(self, system: System):
        """Assign the pending sample, if any. Called on the simulation thread."""
        data = self.channel.take_nowait()
        if data is None:
            return
        try:
            self.mapping.assign_input(system, data)
        except DeviceError as exc:
            self.logger.warning("Input sample dropped: %s", exc)
        except Exception as exc:  # pylint: disable=broad-except
            # A faulty mapping must not abort the simulation loop
            self.logger.error(
                "Input sample dropped, mapping failed: %s", exc, exc_info=True
            )


class _OutputInterface(_Interface):
    def _handle(self, data: SimData):
        try:
            self.device.handle_data(self.mapping.extract_output(data))
        except _SAMPLE_ERRORS as exc:
            self.logger.warning("Output snapshot dropped: %s", exc)

    def _loop(self):
        while not self.device.should_close():
            data = self.channel.take(timeout=self.poll_interval)
            if data is not None:
                self._handle(data)
            elif self.channel.closed or self.stop_event.is_set():
                break
        self.logger.info("Shutting down...")

    def publish(self, data: SimData):
        """Overwrite the pending snapshot. Called on the simulation thread."""
        if not self.channel.put_nowait(data):
            self.logger.debug("Output snapshot at t=%s not delivered", data.t)


class IORegistry:
    """Attach input and output devices to a Model.

    Example:

        registry = IORegistry(model)
        registry.attach_input(joystick, PathMapping(input_path="controls"))
        registry.attach_output(telemetry, PathMapping(output_path="airframe"))
        run_interactive(model, registry)
    """

    def __init__(self, model: Model, poll_interval: float = 0.05):
        """Create a registry for a model.

        Args:
            model: The Model whose inputs and outputs the devices access.
            poll_interval: Maximum time a worker waits before checking for
                shutdown.
        """
        self.model = model
        self.poll_interval = poll_interval
        self._start_event = threading.Event()
        self._inputs: list[_InputInterface] = []
        self._outputs: list[_OutputInterface] = []
        self._started = False

        model.add_input_callback(self._apply_inputs)
        model.add_sample_callback(self._publish)

    def __enter__(self) -> IORegistry:
        self.start()
        return self

    def __exit__(self, *exc_info):
        self.stop()

    @property
    def devices(self) -> list[Any]:
        return [io.device for io in self._inputs + self._outputs]

    def attach_input(self, device: InputDevice, mapping: IOMapping = None):
        if not isinstance(device, InputDevice):
            raise TypeError(f"{device!r} is not an InputDevice")
        if self._started:
            raise RuntimeError("Cannot attach devices while the registry is running")
        mapping = PathMapping() if mapping is None else mapping
        self._inputs.append(
            _InputInterface(device, mapping, self._start_event, self.poll_interval)
        )

    def attach_output(self, device: OutputDevice, mapping: IOMapping = None):
        if not isinstance(device, OutputDevice):
            raise TypeError(f"{device!r} is not an OutputDevice")
        if self._started:
            raise RuntimeError("Cannot attach devices while the registry is running")
        mapping = PathMapping() if mapping is None else mapping
        self._outputs.append(
            _OutputInterface(device, mapping, self._start_event, self.poll_interval)
        )

    def _apply_inputs(self, system: System):
        for io in self._inputs:
            io.apply(system)

    def _publish(self, data: SimData):
        for io in self._outputs:
            io.publish(data)

    def start(self):
        """Start all device workers and release them into their loops."""
        if self._started:
            return
        self._started = True
        for io in self._inputs:
            io.start("input")
        for io in self._outputs:
            io.start("output")
        self._start_event.set()
        logger.info(
            "Started %d input and %d output devices",
            len(self._inputs),
            len(self._outputs),
        )

    def stop(self, timeout: float = 5.0):
        """Stop all workers: output devices first, then input devices."""
        if not self._started:
            return
        for io in self._outputs:
            io.stop_event.set()
            io.channel.close()
        for io in self._outputs:
            io.join(timeout)
        for io in self._inputs:
            io.stop_event.set()
        for io in self._inputs:
            io.join(timeout)
        self._start_event.clear()
        self._started = False
        logger.info("All devices stopped")
