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

from flightcore.framework import (
    Component,
    ComponentRuntimeError,
    ConfigurationError,
    DeviceError,
    FlightCoreError,
    Group,
    SimulationError,
    StateLengthError,
    System,
)

pytestmark = pytest.mark.minimal


@dataclasses.dataclass(frozen=True)
class Bomb(Component):
    t_fail: float = 0.0

    def init_x(self):
        return np.zeros(1)

    def continuous_update(self, x, u, d, t, ctx):
        if t >= self.t_fail:
            raise KeyError("missing table entry")
        return np.zeros(1), None


@dataclasses.dataclass(frozen=True)
class Outer(Group):
    inner: Bomb = dataclasses.field(default_factory=Bomb)


def test_message_context():
    err = FlightCoreError("boom", name_path=["airframe", "aero"], time=1.5)
    assert str(err) == "boom in component airframe.aero at t=1.5"
    assert err.component_name == "aero"


def test_default_message():
    err = SimulationError()
    assert str(err) == "SimulationError"
    assert err.component_name is None


def test_device_context():
    err = DeviceError("socket closed", device="UDPInput")
    assert str(err) == "socket closed in device UDPInput"


def test_root_component():
    sys = System(Bomb(t_fail=0.0))
    with pytest.raises(ComponentRuntimeError) as exc:
        sys.continuous_update()
    assert exc.value.component_name == "root"
    assert "in component root" in str(exc.value)


def test_caused_by():
    sys = System(Outer())
    with pytest.raises(FlightCoreError) as exc:
        sys.continuous_update()
    assert isinstance(exc.value, ComponentRuntimeError)
    assert exc.value.caused_by(KeyError)
    assert not exc.value.caused_by(ValueError)
    assert exc.value.name_path == ["inner"]
    assert "KeyError" in str(exc.value)


def test_state_length_message():
    err = StateLengthError(expected_length=4, actual_length=3, name_path=["q"])
    assert isinstance(err, ConfigurationError)
    assert str(err) == "State length mismatch: expected 4, got 3 in component q"


def test_system_and_name_path_warns():
    sys = System(Outer())
    with pytest.warns(UserWarning):
        FlightCoreError("x", system=sys, name_path=["inner"])
