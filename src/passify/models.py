"""Data models for passify."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

# A secret value: plain text (str) or binary data (bytes).
Entry = Union[str, bytes]


class NestedMap(dict):
    """A mapping from key to :data:`Node`.

    Each :class:`Branch` owns exactly one ``NestedMap`` and each ``NestedMap``
    owns its nodes, so a tree never shares or back-references a node.
    """

    def get_mut(self, key: Any) -> Node | None:
        """Single-level lookup of a node that the caller intends to modify."""
        return self.get(key)

    def remove(self, key: Any) -> Node | None:
        """Remove *key*, returning its node, or ``None`` if it was absent."""
        return self.pop(key, None)

    def __repr__(self) -> str:
        return f"NestedMap({dict.__repr__(self)})"


@dataclass
class Leaf:
    """A terminal node holding a value."""

    value: Any

    def __repr__(self) -> str:
        return f"Leaf({self.value!r})"


@dataclass
class Branch:
    """A node that is itself a keyed container of further nodes."""

    children: NestedMap = field(default_factory=NestedMap)

    def __post_init__(self) -> None:
        if not isinstance(self.children, NestedMap):
            self.children = NestedMap(self.children)

    @property
    def is_empty(self) -> bool:
        return len(self.children) == 0

    def get(self, key: Any) -> Node | None:
        return self.children.get(key)

    def __repr__(self) -> str:
        return f"Branch({dict.__repr__(self.children)})"


Node = Union[Leaf, Branch]


def is_binary(value: Entry) -> bool:
    """True when *value* is binary data rather than plain text."""
    return isinstance(value, (bytes, bytearray))
