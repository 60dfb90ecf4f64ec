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

"""Adaptive ODE solvers advancing the flat continuous state of a System.

The solvers wrap the step-by-step `scipy.integrate.OdeSolver` classes.  Unlike
`solve_ivp`, these give control back to the caller after every accepted step,
with a dense-output interpolant over that step, which is what the hybrid
simulation loop needs to run discrete updates and record samples in between.
"""

from __future__ import annotations

import abc
import dataclasses
from typing import TYPE_CHECKING, Callable

import numpy as np
import scipy.integrate

from ..framework.error import SimulationError

if TYPE_CHECKING:
    from scipy.integrate import DenseOutput, OdeSolver
    from .typing import Array


__all__ = [
    "ODESolverOptions",
    "ODESolverState",
    "ODESolverBase",
    "ODESolverError",
    "ScipySolver",
    "ODESolver",
]


class ODESolverError(SimulationError):
    pass


@dataclasses.dataclass
class ODESolverOptions:
    """Options for the ODE solver.

    See documentation for `ModelOptions` for details on these options.
    """

    rtol: float = 1e-3
    atol: float = 1e-6
    min_step_size: float = None
    max_step_size: float = None
    method: str = "auto"  # RK45


@dataclasses.dataclass
class ODESolverState:
    y: Array  # The current state of the system.
    t: float
    # The last accepted step size. Also used as first step when restarting.
    dt: float
    # The previous step time.  The interpolant is valid between (t_prev, t).
    t_prev: float = None
    interpolant: DenseOutput = None

    def __post_init__(self):
        if self.t_prev is None:
            self.t_prev = self.t

    def eval_interpolant(self, t_eval: float) -> Array:
        """Interpolate the state at a given time between (t_prev, t)."""
        if self.interpolant is None or t_eval == self.t:
            return self.y
        return self.interpolant(t_eval)


@dataclasses.dataclass
class ODESolverBase(metaclass=abc.ABCMeta):
    """Common interface for defining ODE solvers.

    This should typically not be used directly by users.  Instead, use the
    `Model` interface, which owns a solver and restarts it when needed.
    """

    rtol: float = 1e-3
    atol: float = 1e-6
    max_step_size: float = None
    min_step_size: float = None
    method: str = "auto"

    def _finalize(self):
        """Hook for any class-specific finalization after __post_init__."""
        pass

    def __post_init__(self):
        self._finalize()

    @abc.abstractmethod
    def initialize(
        self,
        func: Callable,
        t0: float,
        y0: Array,
        boundary_time: float,
        dt: float = None,
    ) -> ODESolverState:
        """Set up (or restart) the solver and return the initial state.

        Args:
            func: Right-hand side `func(t, y) -> ydot`.
            t0: The initial time.
            y0: The initial state, a 1-D float array.
            boundary_time: The solver does not step beyond this time.
            dt: The initial step size. If not provided, it will be estimated.
        """
        pass

    @abc.abstractmethod
    def step(self) -> ODESolverState:
        """Advance the solver forward one step.

        This will repeat the adaptive step attempt until a step is accepted,
        returning the result.  Rejected attempts are never visible to the
        caller.
        """
        pass

    @abc.abstractmethod
    def set_boundary_time(self, boundary_time: float):
        """Move the time beyond which the solver will not step."""
        pass


@dataclasses.dataclass
class ScipySolver(ODESolverBase):
    supported_methods = {
        "auto": "RK45",
        "default": "RK45",
        "non-stiff": "RK45",
        "stiff": "BDF",
        "RK45": "RK45",
        "RK23": "RK23",
        "DOP853": "DOP853",
        "Radau": "Radau",
        "BDF": "BDF",
        "LSODA": "LSODA",
    }

    def _finalize(self):
        try:
            self._method = self.supported_methods[self.method]
        except KeyError:
            raise ODESolverError(
                f"Invalid method '{self.method}' for SciPy ODE solver. Must be one "
                f"of {list(self.supported_methods.keys())}"
            ) from None

        self.options = {
            "rtol": self.rtol,
            "atol": self.atol,
            "max_step": self.max_step_size or np.inf,
        }

        if self._method == "LSODA":
            self.options["min_step"] = self.min_step_size or 0.0

        self._solver: OdeSolver = None
        self._func: Callable = None

    def initialize(self, func, t0, y0, boundary_time, dt=None) -> ODESolverState:
        self._func = func
        solver_cls = getattr(scipy.integrate, self._method)
        if dt is not None:
            # scipy rejects a first step larger than the integration interval
            dt = min(dt, abs(boundary_time - t0))
            if dt <= 0.0:
                dt = None
        self._solver = solver_cls(
            func,
            t0,
            np.array(y0, dtype=np.float64),
            t_bound=boundary_time,
            first_step=dt,
            **self.options,
        )
        return ODESolverState(
            y=self._solver.y,
            t=self._solver.t,
            dt=self._next_step_size(),
        )

    def set_boundary_time(self, boundary_time: float):
        if self._solver.t_bound == boundary_time:
            return
        if self._method == "LSODA":
            # The critical time is baked into the Fortran work arrays, restart
            solver = self._solver
            self.initialize(
                self._func, solver.t, solver.y, boundary_time, self._next_step_size()
            )
            return
        self._solver.t_bound = boundary_time
        # The solver sets its status to "finished" when the boundary time is
        # reached. Time is controlled by the caller, so keep it running.
        self._solver.status = "running"

    def step(self) -> ODESolverState:
        if self._solver is None:
            raise ODESolverError("Solver must be initialized before stepping")

        message = self._solver.step()
        if self._solver.status == "failed":
            raise ODESolverError(
                f"{self._method} step failed: {message}", time=self._solver.t
            )
        self._solver.status = "running"

        return ODESolverState(
            y=self._solver.y,
            t=self._solver.t,
            t_prev=self._solver.t_old,
            dt=self._next_step_size(),
            interpolant=self._solver.dense_output(),
        )

    def _next_step_size(self) -> float | None:
        # LSODA keeps its step size in the Fortran work arrays
        h_abs = getattr(self._solver, "h_abs", None)
        if h_abs is None:
            h_abs = self._solver.step_size
        return h_abs

    @property
    def t_bound(self) -> float:
        return self._solver.t_bound

    @property
    def nfev(self) -> int:
        return self._solver.nfev


def ODESolver(options: ODESolverOptions = None) -> ODESolverBase:
    """Create an ODE solver used to advance continuous time in hybrid simulation.

    Args:
        options (ODESolverOptions, optional):
            Options for the ODE solver.  Defaults to None.

    Returns:
        ODESolverBase:
            An instance of a class implementing the `ODESolverBase` interface.
    """

    if options is None:
        options = ODESolverOptions()
    options = dataclasses.asdict(options)

    return ScipySolver(**options)
