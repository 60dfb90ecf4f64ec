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

"""Component descriptors: the capability interface implemented by model authors.

A component descriptor is the immutable configuration of one state-space unit.
There are exactly two kinds:

- `Component`: a leaf. It declares its initial continuous state, input, output
  and discrete state records, and implements three functions over them:
  `continuous_update`, `discrete_update` and `post_step`.  These receive the
  component's local continuous state `x` (a view into the System's flat state
  array), its records, the current time and the external context shared by the
  whole tree (atmosphere, terrain, ...).

- `Group`: a named, ordered aggregate of child descriptors.  It composes the
  children's operations in declaration order and routes sibling outputs into
  sibling inputs according to its declared `connections`.

Descriptors hold no run-time data.  The run-time counterpart of a descriptor tree
is a `System`, which owns the numeric storage and dispatches to the descriptors.
Descriptors are typically frozen dataclasses, e.g.

    @dataclasses.dataclass(frozen=True)
    class FirstOrder(Component):
        tau: float = 1.0

        def init_x(self):
            return np.zeros(1)

        def init_u(self):
            return FirstOrderU()

        def continuous_update(self, x, u, d, t, ctx):
            return (u.input - x) / self.tau, x[0]
"""

from __future__ import annotations

import abc
import dataclasses
from typing import TYPE_CHECKING, Any

from .error import ConfigurationError

if TYPE_CHECKING:
    from ..backend.typing import Array
    from .system import System

__all__ = ["ComponentBase", "Component", "Group"]


class ComponentBase(metaclass=abc.ABCMeta):
    """Common base for leaf and group descriptors. Not subclassed directly."""

    def init_x(self) -> Array | None:
        """Initial continuous state, as a 1-D array, or None if there is none.

        For a Group, returning a value overrides the initial states declared by
        its children.  Its length must then equal the sum of their lengths.
        """
        return None

    @property
    def is_leaf(self) -> bool:
        return not isinstance(self, Group)


class Component(ComponentBase):
    """Leaf state-space unit.

    All methods have trivial defaults, so a component only overrides what it
    needs. A component without continuous state returns `None` as derivative.
    """

    def init_u(self) -> Any:
        """Initial (mutable) input record, or None."""
        return None

    def init_d(self) -> Any:
        """Initial discrete state record, or None."""
        return None

    def init_y(self) -> Any:
        """Output record before the first evaluation, or None."""
        return None

    def continuous_update(self, x: Array, u: Any, d: Any, t: float, ctx: Any):
        """Compute the state derivative and output for the current state.

        Must be free of side effects: `x` is passed as a read-only view.

        Returns:
            tuple: `(xdot, y)`, where `xdot` has the same length as `x` (or is
            None if the component has no continuous state) and `y` is the new
            output record.
        """
        return None, None

    def discrete_update(self, x: Array, u: Any, d: Any, t: float, ctx: Any):
        """Update the discrete state once per accepted integration step.

        `x` may be modified in place (resets, saturation), in which case the
        method must report it.

        Returns:
            tuple: `(d_new, modified)`, where `modified` is True iff `x` was
            changed.
        """
        return d, False

    def post_step(self, x: Array, u: Any, d: Any, t: float, ctx: Any) -> bool:
        """Apply a fixed-point correction to `x` after a step is accepted.

        Returns True iff `x` was modified in place.
        """
        return False


class Group(ComponentBase):
    """Ordered aggregate of child descriptors.

    Children are the `ComponentBase`-valued dataclass fields of the group, in
    field order.  Override `children` to declare them any other way.  The order
    is the update order: a child's inputs may only be fed from the outputs of
    children declared before it.

    The composition methods below are the defaults; a group can override them
    for custom wiring, as long as each child is updated exactly once.
    """

    def children(self) -> dict[str, ComponentBase]:
        if not dataclasses.is_dataclass(self):
            raise ConfigurationError(
                f"{type(self).__name__} is not a dataclass and must override "
                "`children()` to declare its subcomponents"
            )
        return {
            field.name: getattr(self, field.name)
            for field in dataclasses.fields(self)
            if isinstance(getattr(self, field.name), ComponentBase)
        }

    def connections(self) -> list[tuple[str, str]]:
        """Sibling routing as `(source, target)` pairs of dotted paths.

        The source is read from a child's output (`"engine.thrust"` reads
        `engine.y.thrust`), the target written into a later child's input
        (`"airframe.thrust"` sets `airframe.u.thrust`).  Each connection is
        applied right before the target child is updated.
        """
        return []

    def continuous_update(self, sys: System, ctx: Any) -> None:
        for name, child in sys.subsystems.items():
            sys.route_inputs(name)
            child.continuous_update(ctx)

    def discrete_update(self, sys: System, ctx: Any) -> bool:
        modified = False
        # Bitwise OR so that no child is skipped once a modification is seen
        for child in sys.subsystems.values():
            modified |= child.discrete_update(ctx)
        return modified

    def post_step(self, sys: System, ctx: Any) -> bool:
        modified = False
        for child in sys.subsystems.values():
            modified |= child.step_correction(ctx)
        return modified
