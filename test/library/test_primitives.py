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

import dataclasses

import numpy as np
import pytest

from flightcore.framework import Group, System
from flightcore.library import (
    Echo,
    EchoU,
    FirstOrder,
    FirstOrderU,
    Integrator,
    QuaternionKinematics,
    QuaternionKinematicsU,
    ResetIntegrator,
    ResetIntegratorY,
)
from flightcore.simulation import Model, ModelOptions

pytestmark = pytest.mark.minimal


class TestFirstOrder:
    def test_derivative(self):
        system = System(FirstOrder(tau=2.0, x0=1.0))
        system.u = FirstOrderU(input=3.0)
        system.continuous_update()
        assert system.xdot[0] == 1.0
        assert system.y == 1.0

    def test_invalid_time_constant(self):
        with pytest.raises(ValueError):
            FirstOrder(tau=0.0)

    def test_input_from_json(self):
        assert FirstOrderU.from_json('{"input": 2.0}') == FirstOrderU(2.0)


class TestIntegrator:
    def test_ramp(self):
        options = ModelOptions(t_end=2.0, sample_period=0.5)
        model = Model(Integrator(x0=(1.0, 0.0)), options)
        model.reinit(u0={"": np.array([1.0, -2.0])})
        history = model.run()

        t = history.times
        expected = np.stack([1.0 + t, -2.0 * t], axis=1)
        np.testing.assert_allclose(history.stacked(), expected, atol=1e-9)

    def test_output_is_a_copy(self):
        system = System(Integrator(x0=(1.0,)))
        system.continuous_update()
        system.x[0] = 5.0
        assert system.y[0] == 1.0


class TestResetIntegrator:
    def test_sawtooth(self):
        options = ModelOptions(t_end=2.5, sample_period=0.1, max_step=0.01)
        model = Model(ResetIntegrator(threshold=1.0, reset_value=0.0), options)
        history = model.run()

        assert model.system.d == 2
        values = history.stacked().value
        assert values.max() < 1.0 + 0.01 + 1e-9
        assert history[-1].y.resets == 2
        assert isinstance(history[-1].y, ResetIntegratorY)

    def test_discrete_update(self):
        system = System(ResetIntegrator(threshold=1.0, reset_value=-1.0, x0=1.5))
        assert system.discrete_update()
        assert system.x[0] == -1.0
        assert system.d == 1
        assert not system.discrete_update()
        assert system.d == 1


class TestQuaternionKinematics:
    def test_rotation_about_z(self):
        options = ModelOptions(
            t_end=np.pi, sample_period=np.pi / 4, rtol=1e-8, atol=1e-10
        )
        model = Model(QuaternionKinematics(), options)
        model.reinit(u0={"": QuaternionKinematicsU(omega=[0.0, 0.0, 1.0])})
        history = model.run()

        t = history.times
        expected = np.stack(
            [np.cos(t / 2), np.zeros_like(t), np.zeros_like(t), np.sin(t / 2)],
            axis=1,
        )
        np.testing.assert_allclose(history.stacked(), expected, atol=1e-6)

    def test_stays_normalized(self):
        options = ModelOptions(t_end=20.0, sample_period=1.0)
        model = Model(QuaternionKinematics(tol=1e-12), options)
        model.reinit(u0={"": QuaternionKinematicsU(omega=[0.3, -0.2, 0.5])})
        model.run()
        assert np.linalg.norm(model.x) == pytest.approx(1.0, abs=1e-12)

    def test_initial_state_normalized(self):
        system = System(QuaternionKinematics(q0=(2.0, 0.0, 0.0, 0.0)))
        np.testing.assert_array_equal(system.x, [1.0, 0.0, 0.0, 0.0])

    def test_post_step(self):
        system = System(QuaternionKinematics())
        system.x[:] = [2.0, 0.0, 0.0, 0.0]
        assert system.step_correction()
        np.testing.assert_array_equal(system.x, [1.0, 0.0, 0.0, 0.0])
        assert not system.step_correction()


class TestEcho:
    def test_holds_value(self):
        system = System(Echo(initial_value=1.0))
        system.continuous_update()
        assert system.y == 1.0

        system.u = EchoU(2.0)
        system.continuous_update()
        assert system.y == 1.0

        assert not system.discrete_update()
        system.continuous_update()
        assert system.y == 2.0
        assert system.size == 0

    def test_in_group(self):
        @dataclasses.dataclass(frozen=True)
        class Relay(Group):
            first: Echo = dataclasses.field(default_factory=Echo)
            second: Echo = dataclasses.field(default_factory=Echo)

            def connections(self):
                return [("first", "second.value")]

        system = System(Relay())
        system.first.u = EchoU(3.0)
        system.discrete_update()
        system.continuous_update()
        assert system.y.first == 3.0
        assert system.second.u.value == 3.0

        system.discrete_update()
        system.continuous_update()
        assert system.y.second == 3.0
