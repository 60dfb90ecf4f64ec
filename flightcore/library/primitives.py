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

"""Basic components: building blocks for models and tests.

The input records are `dataclass_json` dataclasses so that they can be fed
directly from JSON payloads with `JSONMapping`.
"""

from __future__ import annotations

import dataclasses
from typing import NamedTuple

import numpy as np
from dataclasses_json import dataclass_json

from ..framework import Component

__all__ = [
    "FirstOrder",
    "FirstOrderU",
    "Integrator",
    "ResetIntegrator",
    "ResetIntegratorU",
    "ResetIntegratorY",
    "QuaternionKinematics",
    "QuaternionKinematicsU",
    "Echo",
    "EchoU",
]


@dataclass_json
@dataclasses.dataclass
class FirstOrderU:
    input: float = 0.0


@dataclasses.dataclass(frozen=True)
class FirstOrder(Component):
    """First-order lag `ẋ = (u - x) / τ`, with output `y = x`.

    Parameters:
        tau: Time constant, must be positive.
        x0: Initial state.
    """

    tau: float = 1.0
    x0: float = 0.0

    def __post_init__(self):
        if not self.tau > 0.0:
            raise ValueError(f"Time constant must be positive, got {self.tau}")

    def init_x(self):
        return np.array([self.x0])

    def init_u(self):
        return FirstOrderU()

    def init_y(self):
        return self.x0

    def continuous_update(self, x, u, d, t, ctx):
        return (u.input - x) / self.tau, float(x[0])


@dataclasses.dataclass(frozen=True)
class Integrator(Component):
    """Integrate the input vector in time: `ẋ = u`, `y = x`.

    The input is a float array of the same shape as the state, written in
    place (`sys.u[:] = ...`) or replaced.
    """

    x0: tuple = (0.0,)

    def init_x(self):
        return np.array(self.x0, dtype=np.float64)

    def init_u(self):
        return np.zeros(len(self.x0))

    def init_y(self):
        return np.array(self.x0, dtype=np.float64)

    def continuous_update(self, x, u, d, t, ctx):
        return np.asarray(u, dtype=np.float64), x.copy()


@dataclass_json
@dataclasses.dataclass
class ResetIntegratorU:
    rate: float = 1.0


class ResetIntegratorY(NamedTuple):
    value: float
    resets: int


@dataclasses.dataclass(frozen=True)
class ResetIntegrator(Component):
    """Scalar integrator reset to `reset_value` once it reaches `threshold`.

    The reset is a discrete update: it happens at the end of the first accepted
    step where the state is past the threshold.  The discrete state counts the
    resets.
    """

    threshold: float = 1.0
    reset_value: float = 0.0
    x0: float = 0.0

    def init_x(self):
        return np.array([self.x0])

    def init_u(self):
        return ResetIntegratorU()

    def init_d(self):
        return 0

    def init_y(self):
        return ResetIntegratorY(self.x0, 0)

    def continuous_update(self, x, u, d, t, ctx):
        return np.array([u.rate]), ResetIntegratorY(float(x[0]), d)

    def discrete_update(self, x, u, d, t, ctx):
        if x[0] < self.threshold:
            return d, False
        x[0] = self.reset_value
        return d + 1, True


@dataclass_json
@dataclasses.dataclass
class QuaternionKinematicsU:
    omega: list = dataclasses.field(default_factory=lambda: [0.0, 0.0, 0.0])


@dataclasses.dataclass(frozen=True)
class QuaternionKinematics(Component):
    """Attitude quaternion `q = [w, x, y, z]` driven by the body angular rate.

    `q̇ = ½ q ⊗ [0, ω]`.  The quaternion drifts off the unit sphere under
    integration, so it is renormalized after every accepted step whose norm
    error exceeds `tol`.
    """

    q0: tuple = (1.0, 0.0, 0.0, 0.0)
    tol: float = 1e-9

    def init_x(self):
        q = np.array(self.q0, dtype=np.float64)
        return q / np.linalg.norm(q)

    def init_u(self):
        return QuaternionKinematicsU()

    def init_y(self):
        return self.init_x()

    def continuous_update(self, x, u, d, t, ctx):
        p, q, r = u.omega
        omega = np.array(
            [
                [0.0, -p, -q, -r],
                [p, 0.0, r, -q],
                [q, -r, 0.0, p],
                [r, q, -p, 0.0],
            ]
        )
        return 0.5 * omega @ x, x.copy()

    def post_step(self, x, u, d, t, ctx):
        norm = np.linalg.norm(x)
        if abs(norm - 1.0) <= self.tol:
            return False
        x /= norm
        return True


@dataclass_json
@dataclasses.dataclass
class EchoU:
    value: float = 0.0


@dataclasses.dataclass(frozen=True)
class Echo(Component):
    """Discrete pass-through: holds its input, sampled at each accepted step.

    The output is the value held by the last discrete update.
    """

    initial_value: float = 0.0

    def init_u(self):
        return EchoU(self.initial_value)

    def init_d(self):
        return self.initial_value

    def init_y(self):
        return self.initial_value

    def continuous_update(self, x, u, d, t, ctx):
        return None, d

    def discrete_update(self, x, u, d, t, ctx):
        return u.value, False
