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

"""Time history of output snapshots recorded by a Model."""

from __future__ import annotations

from typing import Any, Iterator, Sequence

import numpy as np
from jax import tree_util

from ..framework.error import SimulationError
from ..framework.record import get_path
from .types import SimData

__all__ = ["TimeHistory"]


class TimeHistory(Sequence):
    """Append-only sequence of `SimData(t, y)` samples, strictly increasing in t.

    Only the Model's sampling callback appends, and only reinitialization
    truncates it.  Components of the output can be extracted by path:

        hist.get("airframe.aero").stacked()
    """

    def __init__(self, samples: Sequence[SimData] = ()):
        self._samples: list[SimData] = list(samples)

    def append(self, sample: SimData):
        if self._samples and sample.t <= self._samples[-1].t:
            raise SimulationError(
                f"Sample at t={sample.t} does not follow the last sample at "
                f"t={self._samples[-1].t}"
            )
        self._samples.append(sample)

    def truncate(self, length: int = 1):
        """Drop all samples after the first `length`."""
        del self._samples[length:]

    def __getitem__(self, index):
        if isinstance(index, slice):
            return TimeHistory(self._samples[index])
        return self._samples[index]

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[SimData]:
        return iter(self._samples)

    def __repr__(self) -> str:
        if not self._samples:
            return f"{type(self).__name__}(empty)"
        return (
            f"{type(self).__name__}({len(self)} samples, "
            f"t={self._samples[0].t:.6g}..{self._samples[-1].t:.6g})"
        )

    @property
    def times(self) -> np.ndarray:
        return np.array([s.t for s in self._samples], dtype=np.float64)

    @property
    def outputs(self) -> list[Any]:
        return [s.y for s in self._samples]

    def get(self, path: str) -> TimeHistory:
        """History of one component of the output, e.g. `"airframe.aero.lift"`."""
        return TimeHistory(SimData(s.t, get_path(s.y, path)) for s in self._samples)

    def stacked(self) -> Any:
        """Stack the outputs along a new leading (time) axis.

        Pytree outputs (Records, named tuples, dicts) are stacked leaf-wise,
        preserving their structure.
        """
        if not self._samples:
            raise SimulationError("Cannot stack an empty time history")
        return tree_util.tree_map(lambda *leaves: np.stack(leaves), *self.outputs)
