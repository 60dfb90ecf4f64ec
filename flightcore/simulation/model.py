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

"""Hybrid model: drives a System with an adaptive ODE solver.

The Model bridges three kinds of solver-level events to the component tree:

- derivative evaluations, requested by the solver at arbitrary provisional
  points `(t, y)`: the flat state is copied into the System, which computes
  `xdot` through its components;
- accepted steps: post-step corrections and discrete updates run exactly once
  per accepted step, and if any of them modified the continuous state the
  solver is restarted from the modified state;
- samples, at `t_start + k * sample_period` regardless of the step size:
  outputs are recomputed at the sample time (interpolated from the solver's
  dense output when strictly inside a step) and appended to the time history.

The solver's state vector is authoritative. The System's `x` and `t` mirror it
after every step and are scratch space during derivative evaluations.
"""

from __future__ import annotations

import copy
from typing import TYPE_CHECKING, Any, Callable

import numpy as np

from ..backend import ODESolver, ODESolverState, ScipySolver
from ..framework import ComponentBase, System
from ..framework.error import (
    FlightCoreError,
    SimulationError,
    StateLengthError,
)
from ..logging import logger as _root_logger
from .time_history import TimeHistory
from .types import ModelOptions, SimData

if TYPE_CHECKING:
    from ..backend import ODESolverBase
    from ..backend.typing import Array

__all__ = ["Model"]

logger = _root_logger.getChild("simulation")


def _check_options(options: ModelOptions) -> ModelOptions:
    """Check consistency of options."""

    if options is None:
        options = ModelOptions()

    if not options.t_end > options.t_start:
        raise SimulationError(
            f"End time {options.t_end} must be greater than start time "
            f"{options.t_start}"
        )

    if not (options.sample_period > 0.0 and np.isfinite(options.sample_period)):
        raise SimulationError(
            f"Sample period must be positive and finite, got {options.sample_period}"
        )

    if options.t_end - options.t_start < options.sample_period:
        raise SimulationError(
            "Simulation timespan cannot be shorter than the sample period"
        )

    if options.ode_solver_method not in ScipySolver.supported_methods:
        raise SimulationError(
            f"Invalid ODE solver method '{options.ode_solver_method}'. Must be one "
            f"of {list(ScipySolver.supported_methods)}"
        )

    if options.rtol <= 0.0 or options.atol <= 0.0:
        raise SimulationError("Solver tolerances must be positive")

    for name in ("dt", "max_step"):
        value = getattr(options, name)
        if value is not None and value <= 0.0:
            raise SimulationError(f"Option '{name}' must be positive, got {value}")

    return options


class Model:
    """Class for orchestrating simulations of hybrid component trees.

    Example:

        model = Model(Aircraft(), ModelOptions(t_end=60.0), ctx=environment)
        model.run()
        model.history.get("airframe.kinematics").stacked()
    """

    def __init__(
        self,
        system: System | ComponentBase,
        options: ModelOptions = None,
        ctx: Any = None,
        ode_solver: ODESolverBase = None,
    ):
        """Initialize the model.

        Args:
            system: The System to simulate, or the root descriptor to build it
                from.
            options: Options for the simulation.  See `ModelOptions`.
            ctx: External context passed to every component update (atmosphere,
                terrain, ...).  Owned by the caller.
            ode_solver: The ODE solver to use for integrating the continuous
                state.  If not provided, one is created from `options`.
        """
        if isinstance(system, ComponentBase):
            system = System(system)

        self.system = system
        self.options = options = _check_options(options)
        self.ctx = ctx

        if ode_solver is None:
            ode_solver = ODESolver(options.ode_options)
        self.solver = ode_solver

        self.history = TimeHistory()

        # The System's declared initial condition, restored by `reinit`
        self._x0 = system.x.copy()

        self._input_callbacks: list[Callable[[System], None]] = []
        self._sample_callbacks: list[Callable[[SimData], None]] = []

        self._abort: BaseException = None
        self._failed = False
        self._state: ODESolverState = None
        self._t_bound = options.t_end

        logger.debug("Model created: %s, solver: %s", options, type(ode_solver))

        self._initialize(self._x0, options.t_start)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(t={self.t:.6g}, system={self.system!r})"

    #
    # Public state
    #
    @property
    def t(self) -> float:
        return self._state.t

    @property
    def t_start(self) -> float:
        return self._t_start

    @property
    def t_end(self) -> float:
        return self.options.t_end

    @property
    def done(self) -> bool:
        return self.t >= self.options.t_end

    @property
    def last_step_size(self) -> float:
        return self._last_dt

    @property
    def n_steps(self) -> int:
        return self._n_steps

    @property
    def x(self) -> Array:
        return self.system.x

    @property
    def y(self) -> Any:
        return self.system.y

    #
    # Hooks used by the I/O registry
    #
    def add_input_callback(self, callback: Callable[[System], None]):
        """Register a callback applying pending inputs before discrete updates."""
        self._input_callbacks.append(callback)

    def add_sample_callback(self, callback: Callable[[SimData], None]):
        """Register a callback receiving every output sample."""
        self._sample_callbacks.append(callback)

    #
    # Bridges
    #
    def _solver_state_vector(self) -> Array:
        # Solvers cannot integrate an empty state, so stateless Systems get a
        # constant dummy one
        if self.system.size == 0:
            return np.zeros(1)
        return self.system.x.copy()

    def _f_ode(self, t: float, y: Array) -> Array:
        """Derivative bridge, called by the solver at provisional points."""
        if self._abort is not None:
            return np.zeros_like(y)
        try:
            if self.system.size > 0:
                self.system.x[:] = y
            self.system.t = t
            self.system.continuous_update(self.ctx)
        except Exception as exc:  # pylint: disable=broad-except
            # Exceptions cannot cross the solver boundary; `_check_abort`
            # raises it as soon as the solver returns.
            self._abort = exc
            return np.zeros_like(y)

        if self.system.size == 0:
            return np.zeros(1)
        # The solver keeps references to returned derivatives
        return self.system.xdot.copy()

    def _check_abort(self):
        exc, self._abort = self._abort, None
        if exc is None:
            return
        logger.debug("Simulation aborted: %s", exc)
        if isinstance(exc, FlightCoreError):
            raise exc
        raise SimulationError(
            "Derivative evaluation failed", time=self.system.t
        ) from exc

    def _sync_system(self, y: Array, t: float):
        if self.system.size > 0:
            self.system.x[:] = y
        self.system.t = t

    def _restart_solver(self, dt: float = None):
        self._state = self.solver.initialize(
            self._f_ode,
            self.system.t,
            self._solver_state_vector(),
            self._t_bound,
            dt,
        )
        self._check_abort()

    def _next_sample_time(self) -> float:
        return self._t_start + self._sample_index * self.options.sample_period

    def _take_sample(self, t: float):
        sample = SimData(t, copy.deepcopy(self.system.y))
        if self.options.save_on:
            self.history.append(sample)
        for callback in self._sample_callbacks:
            callback(sample)
        self._sample_index += 1

    def _sample_interior(self, state: ODESolverState):
        """Take the samples falling strictly inside the last accepted step."""
        while self._next_sample_time() < state.t - self._time_eps:
            ts = self._next_sample_time()
            self._sync_system(state.eval_interpolant(ts), ts)
            self.system.continuous_update(self.ctx)
            self._take_sample(ts)

    def _discrete_step(self, state: ODESolverState):
        """Discrete-step bridge, called once per accepted step."""
        for callback in self._input_callbacks:
            callback(self.system)

        modified = self.system.step_correction(self.ctx)
        modified |= self.system.discrete_update(self.ctx)

        if modified:
            logger.debug("Continuous state modified at t=%s, restarting solver", state.t)
            self._restart_solver(dt=state.dt)

    #
    # Initialization
    #
    def _initialize(self, x0: Array, t_start: float):
        x0 = np.asarray(x0, dtype=np.float64)
        if x0.shape != (self.system.size,):
            raise StateLengthError(
                expected_length=self.system.size,
                actual_length=x0.size,
                message=(
                    f"Initial state of shape {x0.shape} does not match the "
                    f"System state of length {self.system.size}"
                ),
            )
        if not t_start < self.options.t_end:
            raise SimulationError(
                f"Start time {t_start} must be less than end time "
                f"{self.options.t_end}"
            )

        self._t_start = float(t_start)
        self._time_eps = 1e-9 * max(1.0, self.options.sample_period)
        self._t_bound = self.options.t_end
        self._abort = None
        self._failed = False
        self._n_steps = 0
        self._last_dt = 0.0
        self._sample_index = 0

        self.system.x[:] = x0
        self.system.t = self._t_start
        self._restart_solver(dt=self.options.dt)

        # Outputs at the initial point, with the initial discrete state
        self._sync_system(self._state.y, self._state.t)
        self.system.continuous_update(self.ctx)

        self.history.truncate(0)
        self._take_sample(self._t_start)

    def reinit(
        self,
        x0: Array = None,
        t_start: float = None,
        u0: dict[str, Any] = None,
        d0: dict[str, Any] = None,
    ):
        """Restore an initial condition and restart the simulation.

        Inputs and discrete states are reset to the values declared by the
        components, then overridden by `u0` and `d0` where given.  The time
        history is truncated to its single initial entry.

        Args:
            x0: Initial continuous state.  Defaults to the System's initial
                state at Model creation.
            t_start: Start time.  Defaults to `options.t_start`.
            u0: Inputs to set, as a mapping from leaf path to input record.
                The empty path refers to the root System.
            d0: Discrete states to set, in the same format as `u0`.
        """
        if x0 is None:
            x0 = self._x0
        if t_start is None:
            t_start = self.options.t_start

        self.system.initialize()
        for attr, values in (("u", u0), ("d", d0)):
            for path, value in (values or {}).items():
                node = self.system[path] if path else self.system
                setattr(node, attr, value)

        logger.debug("Reinitializing model at t=%s", t_start)
        self._initialize(x0, t_start)

    #
    # Stepping
    #
    def step(self) -> float:
        """Advance the simulation by one accepted solver step.

        Returns:
            float: The simulation time at the end of the step.
        """
        if self._failed:
            raise SimulationError(
                "The last step failed, call reinit() before stepping again"
            )
        if self.t >= self._t_bound:
            raise SimulationError(
                f"Simulation has hit its end time {self._t_bound}, call reinit()",
                time=self.t,
            )

        try:
            self._accepted_step()
        except FlightCoreError:
            # The step result is discarded, only reinit() can recover
            self._failed = True
            raise
        except Exception as exc:
            self._failed = True
            raise SimulationError("Step failed", time=self.system.t) from exc

        if self.options.user_callback is not None:
            self.options.user_callback(self.system)

        self._n_steps += 1
        return self.t

    def _accepted_step(self):
        self.solver.set_boundary_time(self._t_bound)
        self._abort = None
        state = self.solver.step()
        self._check_abort()
        self._state = state
        self._last_dt = state.t - state.t_prev

        self._sample_interior(state)

        self._sync_system(state.y, state.t)
        self.system.continuous_update(self.ctx)

        self._discrete_step(state)

        if abs(self._next_sample_time() - self.t) <= self._time_eps:
            # Outputs observe the post-discrete state
            self.system.continuous_update(self.ctx)
            self._take_sample(self.t)

    def advance_to(self, boundary_time: float) -> float:
        """Step until the simulation time reaches `boundary_time`.

        The last step is shortened to end exactly at `boundary_time`.
        """
        if boundary_time > self.options.t_end:
            raise SimulationError(
                f"Cannot advance to t={boundary_time} beyond end time "
                f"{self.options.t_end}"
            )
        self._t_bound = boundary_time
        try:
            while self.t < boundary_time:
                self.step()
        finally:
            self._t_bound = self.options.t_end
        return self.t

    def step_for(self, duration: float) -> float:
        """Advance the simulation by `duration` seconds of simulation time."""
        return self.advance_to(self.t + duration)

    def run(self) -> TimeHistory:
        """Run the simulation to `options.t_end` and return the time history."""
        logger.info(
            "Running simulation from t=%s to t=%s", self.t, self.options.t_end
        )
        self.advance_to(self.options.t_end)
        logger.info("Simulation finished in %d steps", self._n_steps)
        return self.history
