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

"""Container for the aggregated records of a group of components.

Leaf components define their own input, output and discrete state records
(dataclasses, named tuples, arrays or plain floats).  A group node in a System
exposes the records of its children as a `Record`: an ordered, immutable
mapping from child name to child record that also supports attribute access,
so that the output of a nested vehicle model can be read as
`sys.y.airframe.aero.lift`.

Children without a given record (e.g. a purely continuous component with no
discrete state) are omitted.  If no child has the record, the group's record is
`None`.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Iterable, Iterator

from jax import tree_util

__all__ = ["Record", "get_path", "set_path"]


class Record(Mapping):
    __slots__ = ("_fields",)

    def __init__(self, fields: Mapping | Iterable[tuple[str, Any]] = (), **kwargs):
        fields = dict(fields)
        fields.update(kwargs)
        object.__setattr__(self, "_fields", fields)

    @classmethod
    def from_children(cls, children: Mapping[str, Any]) -> Record | None:
        """Build a Record dropping `None` entries, or return None if all are None."""
        fields = {k: v for k, v in children.items() if v is not None}
        if not fields:
            return None
        return cls(fields)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._fields[name]
        except KeyError:
            raise AttributeError(
                f"{type(self).__name__} has no field '{name}'. "
                f"Available fields: {list(self._fields)}"
            ) from None

    def __setattr__(self, name: str, value: Any):
        raise AttributeError(
            f"{type(self).__name__} is immutable, use `with_field` to replace '{name}'"
        )

    def __getitem__(self, key: str) -> Any:
        return self._fields[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in self._fields.items())
        return f"{type(self).__name__}({fields})"

    def __reduce__(self):
        return (type(self), (dict(self._fields),))

    def __dir__(self):
        return list(super().__dir__()) + list(self._fields)

    def with_field(self, name: str, value: Any) -> Record:
        """Create a copy of this Record with one field replaced."""
        fields = dict(self._fields)
        fields[name] = value
        return type(self)(fields)


def get_path(obj: Any, path: str | list[str]) -> Any:
    """Returns the nested attribute or item of any record, using `.` as separator.

    Mappings (including `Record`) are indexed by key, everything else by attribute,
    so that `get_path(sys.y, "airframe.aero.lift")` works for any mix of
    records, dataclasses and named tuples.
    """
    parts = path.split(".") if isinstance(path, str) else list(path)
    for part in parts:
        if part == "":
            continue
        if isinstance(obj, Mapping):
            obj = obj[part]
        else:
            obj = getattr(obj, part)
    return obj


def set_path(obj: Any, path: str, value: Any):
    """Same as `get_path` but assigns the last element in place.

    The parent of the last element must be mutable: a dataclass instance, a
    numpy array (for integer indices) or a dict.
    """
    *head, last = path.split(".")
    parent = get_path(obj, head)
    if isinstance(parent, Record):
        raise AttributeError(
            f"Cannot assign '{last}' on an immutable Record; target a leaf record"
        )
    if isinstance(parent, dict):
        parent[last] = value
    elif last.isdigit() and hasattr(parent, "__setitem__"):
        parent[int(last)] = value
    else:
        setattr(parent, last, value)


#
# Register as custom pytree node
#    https://jax.readthedocs.io/en/latest/pytrees.html#extending-pytrees
#
# This lets the time history stack snapshots of nested output records into
# arrays with `tree_util.tree_map`, the same way it would for named tuples.
#
def _record_flatten(record: Record):
    return tuple(record.values()), tuple(record.keys())


def _record_unflatten(keys, children):
    return Record(zip(keys, children))


tree_util.register_pytree_node(Record, _record_flatten, _record_unflatten)
