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

"""Run-time counterpart of a component descriptor tree.

A `System` is built once from a root descriptor.  Construction walks the tree
depth first and assigns every leaf a contiguous range of one flat float64 state
vector, so that:

- leaf ranges do not overlap and tile the parent range in declaration order,
- a group's `x` is a view spanning exactly the concatenation of its children,
- every node's `x` and `xdot` alias the root storage: writing through any node
  is visible through every other node and through the root.

This layout is what the ODE solver integrates.  Nodes also share a single time
cell, so `sys.t` is the same value everywhere in the tree.

Update dispatch follows the descriptors: leaves call their component functions
with their local views and records, groups call their composition methods,
which by default visit the children in declaration order.
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Any, Iterator, NamedTuple

import numpy as np

from ..logging import logger, logdata
from .component import ComponentBase
from .error import (
    ComponentRuntimeError,
    ConfigurationError,
    ConnectionOrderError,
    FlightCoreError,
    StateLengthError,
)
from .pprint import pprint_fancy, pprint_plain
from .record import Record, get_path, set_path

if TYPE_CHECKING:
    from ..backend.typing import Array

__all__ = ["System", "Connection"]


class Connection(NamedTuple):
    """Parsed sibling connection of a group node."""

    source: str
    source_path: str
    target: str
    target_path: str


@dataclasses.dataclass
class _Clock:
    t: float = 0.0


def _initial_x(component: ComponentBase, name_path: list[str]) -> np.ndarray | None:
    x0 = component.init_x()
    if x0 is None:
        return None
    x0 = np.asarray(x0, dtype=np.float64)
    if x0.ndim != 1:
        raise StateLengthError(
            message=f"Continuous state must be a 1-D array, got shape {x0.shape}",
            name_path=name_path,
        )
    return x0


def _children(component: ComponentBase, name_path: list[str]) -> dict:
    try:
        return component.children()
    except ConfigurationError as exc:
        if exc.name_path is None:
            exc.name_path = list(name_path)
        raise


def _state_length(component: ComponentBase, name_path: list[str]) -> int:
    """Length of the continuous state of a descriptor subtree, validated."""
    if not isinstance(component, ComponentBase):
        raise ConfigurationError(
            f"Expected a component descriptor, got {type(component).__name__}",
            name_path=name_path,
        )

    x0 = _initial_x(component, name_path)

    if component.is_leaf:
        return 0 if x0 is None else x0.size

    length = sum(
        _state_length(child, name_path + [name])
        for name, child in _children(component, name_path).items()
    )
    if x0 is not None and x0.size != length:
        raise StateLengthError(
            expected_length=length, actual_length=x0.size, name_path=name_path
        )
    return length


class System:
    """Instantiated component tree with flat continuous state storage.

    Build from the root descriptor:

        sys = System(Vehicle(...))

    Children are reachable as attributes or by dotted path:
    `sys.airframe.aero` or `sys["airframe.aero"]`.

    Attributes:
        x: Continuous state, a view into the flat root state vector.
        xdot: State derivative, a view into the flat root derivative vector.
        u: Input record. Mutable, and shared with whoever writes inputs.
        d: Discrete state record, replaced on each discrete update.
        y: Output record, recomputed on each continuous update.
        t: Current simulation time, shared by all nodes of the tree.
    """

    def __init__(
        self,
        component: ComponentBase,
        name: str = "",
        *,
        parent: System = None,
        offset: int = 0,
        _x: np.ndarray = None,
        _xdot: np.ndarray = None,
        _clock: _Clock = None,
    ):
        self.component = component
        self.name = name
        self.parent = parent

        if parent is None:
            size = _state_length(component, [])
            _x = np.zeros(size, dtype=np.float64)
            _xdot = np.zeros(size, dtype=np.float64)
            _clock = _Clock()
        else:
            size = _state_length(component, self.name_path)

        self._clock = _clock
        self._offset = offset
        self.x: Array = _x[offset : offset + size]
        self.xdot: Array = _xdot[offset : offset + size]

        self._subsystems: dict[str, System] = {}
        self._connections: list[Connection] = []

        if component.is_leaf:
            # Continuous updates must not modify the state
            self._x_readonly = self.x.view()
            self._x_readonly.flags.writeable = False
            self._u = component.init_u()
            self._d = component.init_d()
            self._y = component.init_y()
        else:
            child_offset = offset
            for child_name, child in _children(component, self.name_path).items():
                subsystem = System(
                    child,
                    child_name,
                    parent=self,
                    offset=child_offset,
                    _x=_x,
                    _xdot=_xdot,
                    _clock=_clock,
                )
                self._subsystems[child_name] = subsystem
                child_offset += subsystem.size
            self._connections = self._parse_connections()

        if parent is None:
            self._load_initial_state()
            logger.debug(
                "Built system with %d leaves and %d continuous states",
                len(list(self.leaves())),
                self.size,
            )

    def _parse_connections(self) -> list[Connection]:
        order = list(self._subsystems)
        connections = []
        for source, target in self.component.connections():
            src_name, _, src_path = source.partition(".")
            dst_name, _, dst_path = target.partition(".")
            for child_name in (src_name, dst_name):
                if child_name not in self._subsystems:
                    raise ConnectionOrderError(
                        f"Connection {source!r} -> {target!r} refers to unknown "
                        f"child {child_name!r}, expected one of {order}",
                        system=self,
                    )
            if not dst_path:
                raise ConnectionOrderError(
                    f"Connection target {target!r} must name an input field",
                    system=self,
                )
            if order.index(src_name) >= order.index(dst_name):
                raise ConnectionOrderError(
                    f"Connection {source!r} -> {target!r} feeds {dst_name!r} from "
                    f"{src_name!r}, which is not updated before it",
                    system=self,
                )
            connections.append(Connection(src_name, src_path, dst_name, dst_path))
        return connections

    def _load_initial_state(self):
        """Write the declared initial continuous state, children first.

        A group that declares its own initial state overrides its children's."""
        for subsystem in self._subsystems.values():
            subsystem._load_initial_state()
        x0 = _initial_x(self.component, self.name_path)
        if x0 is not None:
            self.x[:] = x0
        self.xdot[:] = 0.0

    def initialize(self):
        """Reset continuous state, inputs and discrete states to their declared
        initial values, and the time to zero."""
        for leaf in self.leaves():
            leaf._u = leaf.component.init_u()
            leaf._d = leaf.component.init_d()
            leaf._y = leaf.component.init_y()
        self._load_initial_state()
        self.t = 0.0

    #
    # Tree structure
    #
    @property
    def is_leaf(self) -> bool:
        return self.component.is_leaf

    @property
    def subsystems(self) -> dict[str, System]:
        return self._subsystems

    @property
    def connections(self) -> list[Connection]:
        return self._connections

    @property
    def name_path(self) -> list[str]:
        if self.parent is None:
            return []
        return self.parent.name_path + [self.name]

    @property
    def path(self) -> str:
        return ".".join(self.name_path)

    @property
    def root(self) -> System:
        return self if self.parent is None else self.parent.root

    @property
    def size(self) -> int:
        return self.x.size

    @property
    def slice(self) -> slice:
        """Range of this node within the root state vector."""
        return slice(self._offset, self._offset + self.size)

    def walk(self) -> Iterator[System]:
        """Depth-first traversal, including this node."""
        yield self
        for subsystem in self._subsystems.values():
            yield from subsystem.walk()

    def leaves(self) -> Iterator[System]:
        return (node for node in self.walk() if node.is_leaf)

    def __getitem__(self, path: str) -> System:
        node = self
        for name in path.split("."):
            try:
                node = node._subsystems[name]
            except KeyError:
                raise KeyError(
                    f"{self.path or 'root'} has no subsystem {path!r}"
                ) from None
        return node

    def __getattr__(self, name: str) -> System:
        # Only reached when normal attribute lookup fails
        if name.startswith("_"):
            raise AttributeError(name)
        subsystems = self.__dict__.get("_subsystems", {})
        if name in subsystems:
            return subsystems[name]
        raise AttributeError(
            f"'{type(self).__name__}' at {self.path or 'root'} has no attribute "
            f"or subsystem '{name}'"
        )

    def __dir__(self):
        return list(super().__dir__()) + list(self._subsystems)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.path or 'root'}: "
            f"{type(self.component).__name__}, size={self.size})"
        )

    #
    # Data
    #
    @property
    def t(self) -> float:
        return self._clock.t

    @t.setter
    def t(self, value: float):
        self._clock.t = float(value)

    @property
    def u(self) -> Any:
        if self.is_leaf:
            return self._u
        return Record.from_children({k: s.u for k, s in self._subsystems.items()})

    @u.setter
    def u(self, value: Any):
        if not self.is_leaf:
            raise AttributeError(
                f"Cannot replace the input of group {self.path or 'root'}, "
                "assign the inputs of its leaves instead"
            )
        self._u = value

    @property
    def d(self) -> Any:
        if self.is_leaf:
            return self._d
        return Record.from_children({k: s.d for k, s in self._subsystems.items()})

    @d.setter
    def d(self, value: Any):
        if not self.is_leaf:
            raise AttributeError(
                f"Cannot replace the discrete state of group {self.path or 'root'}, "
                "assign the discrete states of its leaves instead"
            )
        self._d = value

    @property
    def y(self) -> Any:
        if self.is_leaf:
            return self._y
        return Record.from_children({k: s.y for k, s in self._subsystems.items()})

    def route_inputs(self, target: str):
        """Apply the connections feeding the child `target`."""
        for conn in self._connections:
            if conn.target != target:
                continue
            value = get_path(self._subsystems[conn.source].y, conn.source_path)
            set_path(self._subsystems[target].u, conn.target_path, value)

    #
    # Update dispatch
    #
    def _call(self, method: str, *args):
        try:
            return getattr(self.component, method)(*args)
        except FlightCoreError:
            raise
        except Exception as exc:
            logger.debug(
                "%s failed: %s", method, exc, **logdata(system=self, t=self.t)
            )
            raise ComponentRuntimeError(
                f"{method} failed", system=self, time=self.t
            ) from exc

    def continuous_update(self, ctx: Any = None):
        """Compute `xdot` and `y` for the whole subtree at the current state."""
        if not self.is_leaf:
            self._call("continuous_update", self, ctx)
            return

        xdot, y = self._call(
            "continuous_update", self._x_readonly, self._u, self._d, self.t, ctx
        )
        if self.size > 0:
            xdot = None if xdot is None else np.ravel(xdot)
            if xdot is None or xdot.size != self.size:
                raise ComponentRuntimeError(
                    f"continuous_update returned a derivative of size "
                    f"{None if xdot is None else xdot.size}, expected {self.size}",
                    system=self,
                    time=self.t,
                )
            self.xdot[:] = xdot
        self._y = y

    def discrete_update(self, ctx: Any = None) -> bool:
        """Update discrete states of the subtree.

        Returns True iff the continuous state was modified in place."""
        if not self.is_leaf:
            return bool(self._call("discrete_update", self, ctx))

        d, modified = self._call(
            "discrete_update", self.x, self._u, self._d, self.t, ctx
        )
        self._d = d
        return bool(modified)

    def step_correction(self, ctx: Any = None) -> bool:
        """Run the post-step hooks of the subtree.

        Returns True iff the continuous state was modified in place."""
        if not self.is_leaf:
            return bool(self._call("post_step", self, ctx))
        return bool(self._call("post_step", self.x, self._u, self._d, self.t, ctx))

    #
    # Pretty-printing
    #
    def _pprint(self, prefix="", fancy=True) -> str:
        if fancy:
            return pprint_fancy(prefix, self)
        return pprint_plain(prefix, self)

    def _pprint_helper(self, prefix="", fancy=True) -> str:
        s = self._pprint(prefix=prefix, fancy=fancy)
        for subsystem in self._subsystems.values():
            s += subsystem._pprint_helper(prefix=f"{prefix}    ", fancy=fancy)
        return s

    def pprint(self, output=print, fancy=True) -> str:
        """Pretty-print the system tree with state ranges and connections."""
        s = self._pprint_helper(fancy=fancy).rstrip("\n")
        if output is not None:
            output(s)
        return s
