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
import math

import numpy as np
import pytest

from flightcore.framework import (
    Component,
    ComponentRuntimeError,
    Group,
    SimulationError,
    StateLengthError,
    System,
)
from flightcore.library import (
    Echo,
    EchoU,
    FirstOrder,
    FirstOrderU,
    ResetIntegrator,
)
from flightcore.simulation import Model, ModelOptions

pytestmark = pytest.mark.minimal


@dataclasses.dataclass(frozen=True)
class Bomb(Component):
    t_fail: float = 0.5

    def init_x(self):
        return np.zeros(1)

    def continuous_update(self, x, u, d, t, ctx):
        if t >= self.t_fail:
            raise ValueError("out of table range")
        return np.ones(1), float(x[0])


@dataclasses.dataclass(frozen=True)
class Sawtooth(ResetIntegrator):
    """Records every evaluation and reset into the context list."""

    def continuous_update(self, x, u, d, t, ctx):
        ctx.append(("eval", t, float(x[0])))
        return super().continuous_update(x, u, d, t, ctx)

    def discrete_update(self, x, u, d, t, ctx):
        d, modified = super().discrete_update(x, u, d, t, ctx)
        if modified:
            ctx.append(("reset", t, float(x[0])))
        return d, modified


@dataclasses.dataclass(frozen=True)
class LagAndEcho(Group):
    lag: FirstOrder = dataclasses.field(default_factory=FirstOrder)
    echo: Echo = dataclasses.field(default_factory=Echo)


def _first_order_model(**kwargs) -> Model:
    options = ModelOptions(t_end=5.0, sample_period=1.0, rtol=1e-8, atol=1e-10)
    options = dataclasses.replace(options, **kwargs)
    model = Model(FirstOrder(tau=1.0), options)
    model.reinit(u0={"": FirstOrderU(input=1.0)})
    return model


class TestFirstOrderLag:
    def test_step_response(self):
        model = _first_order_model()
        history = model.run()

        assert len(history) == 6
        np.testing.assert_allclose(history.times, np.arange(6.0))
        expected = 1.0 - np.exp(-history.times)
        np.testing.assert_allclose(history.stacked(), expected, atol=1e-6)
        assert model.done

    @pytest.mark.parametrize(
        "method", ["RK45", "RK23", "DOP853", "Radau", "BDF", "LSODA"]
    )
    def test_solver_methods(self, method):
        model = _first_order_model(ode_solver_method=method, rtol=1e-6, atol=1e-8)
        history = model.run()
        expected = 1.0 - np.exp(-history.times)
        np.testing.assert_allclose(history.stacked(), expected, atol=1e-4)

    def test_samples_interpolated_within_steps(self):
        model = _first_order_model(sample_period=0.01)
        history = model.run()
        assert len(history) == 501
        # Most samples fall strictly inside a step
        assert model.n_steps < 500
        expected = 1.0 - np.exp(-history.times)
        np.testing.assert_allclose(history.stacked(), expected, atol=1e-6)


class TestSampling:
    @pytest.mark.parametrize(
        "t_end, sample_period",
        [(5.0, 1.0), (1.0, 0.1), (2.5, 1.0), (1.0, 0.3), (3.0, 0.02)],
    )
    def test_sample_count(self, t_end, sample_period):
        options = ModelOptions(t_end=t_end, sample_period=sample_period)
        model = Model(FirstOrder(), options)
        history = model.run()

        assert len(history) == math.floor(t_end / sample_period) + 1
        assert np.all(np.diff(history.times) > 0.0)
        assert history.times[0] == 0.0

    def test_sample_times_from_start(self):
        options = ModelOptions(t_start=1.0, t_end=2.0, sample_period=0.25)
        model = Model(FirstOrder(), options)
        history = model.run()
        np.testing.assert_allclose(history.times, [1.0, 1.25, 1.5, 1.75, 2.0])

    def test_save_off(self):
        samples = []
        options = ModelOptions(t_end=1.0, sample_period=0.5, save_on=False)
        model = Model(FirstOrder(), options)
        model.add_sample_callback(samples.append)
        model.run()
        assert len(model.history) == 0
        assert [s.t for s in samples] == [0.0, 0.5, 1.0]

    def test_snapshots_are_copies(self):
        options = ModelOptions(t_end=1.0, sample_period=0.5)
        model = Model(LagAndEcho(), options)
        model.run()
        first = model.history[0].y
        assert first is not model.history[1].y
        assert first.lag == 0.0

    def test_stateless_system(self):
        options = ModelOptions(t_end=1.0, sample_period=0.25)
        model = Model(Echo(), options)
        model.reinit(u0={"": EchoU(5.0)})
        history = model.run()

        assert len(history) == 5
        assert history.outputs[0] == 0.0
        # The last sample coincides with the step end and sees the discrete update
        assert history.outputs[-1] == 5.0
        assert model.system.d == 5.0


class TestReinit:
    def test_reinit_truncates_history(self):
        model = _first_order_model()
        model.run()
        assert len(model.history) == 6

        model.reinit()
        assert len(model.history) == 1
        assert model.t == 0.0
        assert model.history[0].t == 0.0
        assert model.x[0] == 0.0
        # Inputs are back to their declared initial values
        assert model.system.u.input == 0.0

    def test_reinit_with_initial_condition(self):
        model = _first_order_model()
        model.advance_to(2.0)

        model.reinit(x0=np.array([0.5]), t_start=1.0, u0={"": FirstOrderU(0.5)})
        assert model.t == 1.0
        assert model.system.t == 1.0
        assert model.x[0] == 0.5
        assert len(model.history) == 1
        assert model.history[0].y == 0.5

        # Equilibrium
        model.run()
        np.testing.assert_allclose(model.history.stacked(), 0.5, atol=1e-8)
        np.testing.assert_allclose(model.history.times, [1.0, 2.0, 3.0, 4.0, 5.0])

    def test_reinit_discrete_state(self):
        model = Model(LagAndEcho(), ModelOptions(t_end=1.0, sample_period=0.5))
        model.reinit(d0={"echo": 3.0})
        assert model.system.echo.d == 3.0
        assert model.history[0].y.echo == 3.0

    def test_reinit_wrong_length(self):
        model = _first_order_model()
        with pytest.raises(StateLengthError):
            model.reinit(x0=np.zeros(2))

    def test_reinit_after_end(self):
        model = _first_order_model()
        model.run()
        with pytest.raises(SimulationError):
            model.step()
        model.reinit()
        model.step()
        assert model.t > 0.0


class TestStepping:
    def test_advance_to(self):
        model = _first_order_model()
        assert model.advance_to(2.0) == 2.0
        assert model.t == 2.0
        assert model.system.t == 2.0
        np.testing.assert_allclose(model.x, 1.0 - np.exp(-2.0), atol=1e-6)

        assert model.step_for(0.5) == 2.5
        assert len(model.history) == 3

        with pytest.raises(SimulationError):
            model.advance_to(6.0)

    def test_step(self):
        model = _first_order_model()
        t = model.step()
        assert 0.0 < t <= 5.0
        assert model.n_steps == 1
        assert model.last_step_size == pytest.approx(t)

    def test_user_callback(self):
        calls = []
        model = _first_order_model(user_callback=lambda sys: calls.append(sys.t))
        model.run()
        assert len(calls) == model.n_steps
        assert calls[-1] == 5.0

    def test_unchanged_solver_state(self):
        # The echo updates its discrete state, but never the continuous state
        model = Model(LagAndEcho(), ModelOptions(t_end=2.0, sample_period=0.1))
        model.reinit(u0={"lag": FirstOrderU(1.0), "echo": EchoU(2.0)})

        discrete_step = model._discrete_step
        checks = []

        def _checked_discrete_step(state):
            solver = model.solver._solver
            before = (solver.t, solver.y.copy(), solver.f.copy(), solver.h_abs)
            discrete_step(state)
            after = model.solver._solver
            checks.append(after is solver)
            assert after.t == before[0]
            np.testing.assert_array_equal(after.y, before[1])
            np.testing.assert_array_equal(after.f, before[2])
            assert after.h_abs == before[3]

        model._discrete_step = _checked_discrete_step
        model.run()

        assert len(checks) == model.n_steps
        assert all(checks)
        assert model.system.echo.d == 2.0


class TestDiscreteReset:
    def test_reset_seen_by_next_evaluation(self):
        events = []
        options = ModelOptions(t_end=3.5, sample_period=0.5, max_step=0.05)
        model = Model(Sawtooth(threshold=1.0), options, ctx=events)
        model.run()

        resets = [i for i, e in enumerate(events) if e[0] == "reset"]
        assert len(resets) == 3
        for i in resets:
            kind, t_eval, x_eval = events[i + 1]
            assert kind == "eval"
            assert t_eval == events[i][1]
            assert x_eval == 0.0

        # Integration never continues from a pre-reset state
        evals = np.array([e[2] for e in events if e[0] == "eval"])
        assert evals.max() < 1.0 + 0.05 + 1e-9
        assert model.system.d == 3

    def test_reset_restarts_solver(self):
        model = Model(ResetIntegrator(x0=0.9), ModelOptions(t_end=1.0, max_step=0.2))
        solver = model.solver._solver
        while model.system.d == 0:
            model.step()
        assert model.solver._solver is not solver
        assert model.solver._solver.y[0] == 0.0
        assert model.x[0] == 0.0


class TestFailures:
    def test_component_error_aborts_run(self):
        model = Model(Bomb(t_fail=0.5), ModelOptions(t_end=1.0, sample_period=0.1))
        with pytest.raises(ComponentRuntimeError) as exc:
            model.run()

        assert exc.value.time >= 0.5
        assert exc.value.caused_by(ValueError)
        # The failed step is discarded
        assert model.t < 0.5 + 1e-12
        assert all(t < 0.5 for t in model.history.times)

        with pytest.raises(SimulationError, match="reinit"):
            model.step()

        model.reinit()
        assert model.t == 0.0
        assert len(model.history) == 1

    def test_nested_component_error(self):
        @dataclasses.dataclass(frozen=True)
        class Vehicle(Group):
            ok: FirstOrder = dataclasses.field(default_factory=FirstOrder)
            bomb: Bomb = dataclasses.field(default_factory=lambda: Bomb(0.25))

        model = Model(Vehicle(), ModelOptions(t_end=1.0, sample_period=0.1))
        with pytest.raises(ComponentRuntimeError) as exc:
            model.advance_to(1.0)
        assert exc.value.name_path == ["bomb"]
        assert "in component bomb" in str(exc.value)

    def test_sample_callback_error_fails_step(self):
        model = Model(FirstOrder(), ModelOptions(t_end=1.0, sample_period=0.1))

        def _broken_sink(sample):
            raise RuntimeError("sink unavailable")

        model.add_sample_callback(_broken_sink)
        with pytest.raises(SimulationError) as exc:
            model.run()
        assert exc.value.caused_by(RuntimeError)
        assert exc.value.time is not None

        # The half-finished step cannot be continued
        with pytest.raises(SimulationError, match="reinit"):
            model.step()

    def test_error_at_start(self):
        with pytest.raises(ComponentRuntimeError):
            Model(Bomb(t_fail=0.0), ModelOptions(t_end=1.0))


class TestOptions:
    def test_from_json(self):
        options = ModelOptions.from_json(
            '{"t_end": 2.0, "sample_period": 0.5, "ode_solver_method": "DOP853"}'
        )
        assert options.t_end == 2.0
        assert options.rtol == 1e-3
        assert options.ode_options.method == "DOP853"

        model = Model(FirstOrder(), options)
        assert len(model.run()) == 5

    def test_to_json_skips_callback(self):
        options = ModelOptions(user_callback=print)
        assert "user_callback" not in options.to_dict()

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"t_end": 0.0},
            {"sample_period": 0.0},
            {"sample_period": math.inf},
            {"t_end": 0.5, "sample_period": 1.0},
            {"ode_solver_method": "Euler"},
            {"rtol": 0.0},
            {"max_step": -1.0},
        ],
    )
    def test_invalid_options(self, kwargs):
        with pytest.raises(SimulationError):
            Model(FirstOrder(), ModelOptions(**kwargs))

    def test_accepts_system(self):
        system = System(FirstOrder())
        model = Model(system)
        assert model.system is system
