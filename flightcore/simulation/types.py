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

import dataclasses
import threading
from typing import Any, Callable, NamedTuple

from dataclasses_json import config, dataclass_json

from ..backend import ODESolverOptions

__all__ = [
    "ModelOptions",
    "SimData",
    "SimControl",
]


# Container for options related to the Model class.
@dataclass_json
@dataclasses.dataclass
class ModelOptions:
    """Options for the hybrid model.

    This also contains all configuration for the ODE solver as a subset of options
    so that multiple options classes don't need to be created separately.
    Options can be loaded from JSON, e.g. `ModelOptions.from_json(text)`.

    Attributes:
        t_start: Simulation start time.
        t_end: Simulation end time. Stepping beyond it is an error.
        dt: Initial integration step. Estimated by the solver if None.
        max_step: Upper bound on the integration step size. Unbounded if None.
        min_step: Lower bound on the integration step size (LSODA only).
        sample_period: Output sampling period, independent of the step size.
        ode_solver_method: One of the scipy methods (RK45, RK23, DOP853, Radau,
            BDF, LSODA) or "auto" (RK45).
        rtol: Relative tolerance for the adaptive solver.
        atol: Absolute tolerance for the adaptive solver.
        save_on: Whether samples are appended to the time history. Output
            devices still receive every sample when disabled.
        user_callback: Called with the System after every accepted step. May
            read but must not modify `x` or `t`.
    """

    t_start: float = 0.0
    t_end: float = 10.0
    dt: float = None
    max_step: float = None
    min_step: float = None
    sample_period: float = 0.02
    ode_solver_method: str = "auto"
    rtol: float = 1e-3
    atol: float = 1e-6
    save_on: bool = True

    user_callback: Callable[[Any], None] = dataclasses.field(
        default=None, metadata=config(exclude=lambda _: True)
    )

    @property
    def ode_options(self) -> ODESolverOptions:
        return ODESolverOptions(
            rtol=self.rtol,
            atol=self.atol,
            min_step_size=self.min_step,
            max_step_size=self.max_step,
            method=self.ode_solver_method,
        )

    def __repr__(self) -> str:
        return (
            f"ModelOptions("
            f"t_start={self.t_start}, "
            f"t_end={self.t_end}, "
            f"dt={self.dt}, "
            f"max_step={self.max_step}, "
            f"sample_period={self.sample_period}, "
            f"ode_solver_method={self.ode_solver_method}, "
            f"rtol={self.rtol}, "
            f"atol={self.atol}, "
            f"save_on={self.save_on}"
            f")"
        )


class SimData(NamedTuple):
    """Immutable output snapshot taken by the sampling callback.

    Attributes:
        t (float): Simulation time of the sample.
        y (Any): Deep copy of the root System's output record at `t`.
    """

    t: float
    y: Any


# Shared between the pacing loop and any observer thread (a GUI, a device)
# through `lock`.
@dataclasses.dataclass
class SimControl:
    running: bool = False  # checked on each loop iteration for termination
    paused: bool = False
    pace: float = 1.0
    algorithm: str = ""
    t_start: float = 0.0
    t_end: float = 0.0
    dt: float = 0.0  # last step size
    iter: int = 0  # total accepted steps
    t: float = 0.0  # simulation time
    wall_time: float = 0.0  # wall-clock time since start
    overruns: int = 0  # steps that finished past their wall-clock target
    max_lag: float = 0.0  # worst overrun, in wall-clock seconds

    lock: threading.RLock = dataclasses.field(
        default_factory=threading.RLock, repr=False, compare=False
    )

    def snapshot(self) -> dict[str, Any]:
        with self.lock:
            return {
                f.name: getattr(self, f.name)
                for f in dataclasses.fields(self)
                if f.name != "lock"
            }
