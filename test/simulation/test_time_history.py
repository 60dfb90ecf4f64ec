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

from typing import NamedTuple

import numpy as np
import pytest

from flightcore.framework import Record, SimulationError
from flightcore.simulation import SimData, TimeHistory

pytestmark = pytest.mark.minimal


class Aero(NamedTuple):
    lift: float
    drag: float


def _history(n=4) -> TimeHistory:
    history = TimeHistory()
    for i in range(n):
        y = Record(
            aero=Aero(lift=float(i), drag=0.1 * i),
            pos=np.array([i, 2.0 * i]),
        )
        history.append(SimData(0.5 * i, y))
    return history


class TestTimeHistory:
    def test_append_ordering(self):
        history = _history(2)
        with pytest.raises(SimulationError):
            history.append(SimData(0.5, None))
        with pytest.raises(SimulationError):
            history.append(SimData(0.0, None))
        assert len(history) == 2

    def test_sequence(self):
        history = _history()
        assert len(history) == 4
        assert history[0].t == 0.0
        assert history[-1].t == 1.5
        assert [s.t for s in history] == [0.0, 0.5, 1.0, 1.5]
        np.testing.assert_array_equal(history.times, [0.0, 0.5, 1.0, 1.5])
        assert history.outputs[2].aero.lift == 2.0

        sliced = history[1:3]
        assert isinstance(sliced, TimeHistory)
        np.testing.assert_array_equal(sliced.times, [0.5, 1.0])

    def test_truncate(self):
        history = _history()
        history.truncate()
        assert len(history) == 1
        assert history[0].t == 0.0
        history.truncate(0)
        assert len(history) == 0
        assert "empty" in repr(history)

    def test_get(self):
        history = _history()
        lift = history.get("aero.lift")
        np.testing.assert_array_equal(lift.stacked(), [0.0, 1.0, 2.0, 3.0])
        np.testing.assert_array_equal(lift.times, history.times)

    def test_stacked(self):
        stacked = _history().stacked()
        assert isinstance(stacked, Record)
        assert isinstance(stacked.aero, Aero)
        np.testing.assert_allclose(stacked.aero.drag, [0.0, 0.1, 0.2, 0.3])
        assert stacked.pos.shape == (4, 2)
        np.testing.assert_array_equal(stacked.pos[:, 1], [0.0, 2.0, 4.0, 6.0])

    def test_stacked_empty(self):
        with pytest.raises(SimulationError):
            TimeHistory().stacked()

    def test_repr(self):
        assert repr(_history()) == "TimeHistory(4 samples, t=0..1.5)"
