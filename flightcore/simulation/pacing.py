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

"""Real-time pacing of a Model against the wall clock.

After each accepted step of simulated duration `dt`, the driver computes

    wall_target = wall_reference + dt / pace

sleeps until the wall clock reaches it, then sets `wall_reference = wall_target`.
A step whose computation overruns its target is not compensated for: the loop
proceeds immediately and the effective rate degrades.  Overruns are counted in
`SimControl` and logged at debug level.
"""

from __future__ import annotations

import math
import threading
import time
from typing import TYPE_CHECKING

from ..framework.error import SimulationError
from ..logging import logger as _root_logger
from .types import SimControl

if TYPE_CHECKING:
    from ..iodevices import IORegistry
    from .model import Model
    from .time_history import TimeHistory

__all__ = ["RealTimeDriver", "run_interactive", "run"]

logger = _root_logger.getChild("simulation")


class RealTimeDriver:
    """Steps a Model so that simulated time tracks wall-clock time.

    The loop runs on the calling thread.  `stop`, `pause`, `resume` and
    `set_pace` may be called from any other thread; they take effect at the
    next step boundary.
    """

    def __init__(
        self,
        model: Model,
        pace: float = 1.0,
        pause_poll_interval: float = 0.01,
    ):
        """Create a pacing driver.

        Args:
            model: The Model to step.
            pace: Ratio of simulated time to wall-clock time.  `math.inf` runs
                as fast as possible.
            pause_poll_interval: Wall-clock period at which a paused loop checks
                for cancellation.
        """
        _check_pace(pace)
        self.model = model
        self.pause_poll_interval = pause_poll_interval
        self.control = SimControl(
            pace=pace,
            algorithm=model.options.ode_solver_method,
            t_start=model.t_start,
            t_end=model.t_end,
            t=model.t,
        )
        self._stop_requested = threading.Event()
        self._wake = threading.Event()

    #
    # Control, callable from any thread
    #
    def stop(self):
        """Request the loop to stop at the next step boundary."""
        self._stop_requested.set()
        with self.control.lock:
            self.control.running = False
        self._wake.set()

    def pause(self):
        with self.control.lock:
            self.control.paused = True
        self._wake.clear()

    def resume(self):
        with self.control.lock:
            self.control.paused = False
        self._wake.set()

    def set_pace(self, pace: float):
        _check_pace(pace)
        with self.control.lock:
            self.control.pace = pace

    #
    # Main loop
    #
    def _update_control(self, wall_start: float, wall_ref: float):
        with self.control.lock:
            self.control.t = self.model.t
            self.control.dt = self.model.last_step_size
            self.control.iter = self.model.n_steps
            self.control.wall_time = wall_ref - wall_start

    def _wait_while_paused(self):
        while True:
            with self.control.lock:
                if not self.control.paused:
                    return
            if self._stop_requested.is_set():
                return
            self._wake.wait(self.pause_poll_interval)

    def run(self) -> TimeHistory:
        """Run the paced loop until the end time or a call to `stop`.

        Returns:
            TimeHistory: The Model's time history.
        """
        model = self.model
        if model.done:
            raise SimulationError(
                f"Simulation has hit its end time {model.t_end}, call reinit()",
                time=model.t,
            )

        with self.control.lock:
            self.control.running = True
            self.control.overruns = 0
            self.control.max_lag = 0.0

        logger.info(
            "Starting paced simulation at t=%s (pace=%s) on thread %s",
            model.t,
            self.control.pace,
            threading.current_thread().name,
        )

        wall_start = time.perf_counter()
        wall_ref = wall_start

        try:
            while not model.done:
                self._update_control(wall_start, wall_ref)

                if self._stop_requested.is_set():
                    logger.info("Simulation aborted at t=%s", model.t)
                    break

                with self.control.lock:
                    paused, pace = self.control.paused, self.control.pace

                if paused:
                    self._wait_while_paused()
                    # Do not try to catch up on the time spent paused
                    wall_ref = time.perf_counter()
                    continue

                t_prev = model.t
                model.step()
                dt = model.t - t_prev

                if math.isinf(pace):
                    wall_ref = time.perf_counter()
                    continue

                wall_target = wall_ref + dt / pace
                remaining = wall_target - time.perf_counter()
                if remaining > 0.0:
                    time.sleep(remaining)
                else:
                    with self.control.lock:
                        self.control.overruns += 1
                        self.control.max_lag = max(self.control.max_lag, -remaining)
                    logger.debug(
                        "Step to t=%s overran its wall-clock target by %.3g s",
                        model.t,
                        -remaining,
                    )
                wall_ref = wall_target

        except KeyboardInterrupt:
            logger.info("Simulation interrupted at t=%s", model.t)

        finally:
            self._update_control(wall_start, time.perf_counter())
            with self.control.lock:
                self.control.running = False
                self.control.paused = False
            self._stop_requested.clear()

        logger.info(
            "Simulation finished at t=%s in %.3f s wall-clock time (%d overruns)",
            model.t,
            self.control.wall_time,
            self.control.overruns,
        )
        return model.history


def _check_pace(pace: float):
    if not pace > 0.0:
        raise SimulationError(f"Pace must be positive, got {pace}")


def run_interactive(
    model: Model,
    registry: IORegistry = None,
    pace: float = 1.0,
) -> TimeHistory:
    """Run a Model in real time with its I/O devices attached.

    Starts the device workers, runs the paced loop on the calling thread, then
    shuts the devices down, also if the simulation fails.
    """
    driver = RealTimeDriver(model, pace=pace)
    if registry is not None:
        registry.start()
    try:
        return driver.run()
    finally:
        if registry is not None:
            registry.stop()


def run(model: Model, registry: IORegistry = None) -> TimeHistory:
    """Run a Model as fast as possible with its I/O devices attached."""
    return run_interactive(model, registry, pace=math.inf)
