"""Navigate and mutate a secret tree by multi-segment paths."""

from __future__ import annotations

import fnmatch
from collections.abc import Iterator, Sequence
from typing import Any

from passify.models import Branch, Leaf, NestedMap, Node

PATH_SEPARATOR = "."


class PathError(Exception):
    """Base class for errors raised while resolving a secret path."""


class EmptyPathError(PathError):
    """Raised when a path has no segments."""


class NotFoundError(PathError):
    """Raised when a path does not resolve to a secret."""


class ConflictError(PathError):
    """Raised when a path is already taken, or runs through a value."""


class EmptySecretError(PathError):
    """Raised when creating a secret that holds nothing."""


def join_path(path: Sequence[Any]) -> str:
    return PATH_SEPARATOR.join(str(segment) for segment in path)


def parse_path(text: str) -> list[str]:
    """Split a dotted path such as ``"db.prod.password"`` into segments.

    Segments are trimmed and empty ones dropped, so ``" a. .b "`` is
    ``["a", "b"]``.

    Raises:
        EmptyPathError: If no segment remains.
    """
    segments = [s.strip() for s in text.split(PATH_SEPARATOR)]
    segments = [s for s in segments if s]
    if not segments:
        raise EmptyPathError(f"Path {text!r} is empty.")
    return segments


def check_path(path: Sequence[Any]) -> list[Any]:
    """Return *path* as a list, rejecting the empty path."""
    segments = list(path)
    if not segments:
        raise EmptyPathError("Path must not be empty.")
    return segments


def _children(root: NestedMap | Node) -> NestedMap | None:
    if isinstance(root, Branch):
        return root.children
    if isinstance(root, Leaf):
        return None
    return root


def _resolve(root: NestedMap | Node, path: Sequence[Any]) -> Node | None:
    current = _children(root)
    node: Node | None = None
    for segment in check_path(path):
        if current is None:
            return None  # tried to descend into a leaf
        node = current.get(segment)
        if node is None:
            return None
        current = _children(node)
    return node


def _parent_of(root: NestedMap | Node, segments: list[Any]) -> NestedMap | None:
    """Return the map holding the last segment, without creating anything."""
    current = _children(root)
    for segment in segments[:-1]:
        if current is None:
            return None
        node = current.get(segment)
        if not isinstance(node, Branch):
            return None
        current = node.children
    return current


def get_from(root: NestedMap | Node, path: Sequence[Any]) -> Node | None:
    """Look up the node at *path*.

    Every segment but the last must resolve to a :class:`Branch`.  A missing
    segment and a segment that tries to descend into a :class:`Leaf` both
    yield ``None``.

    Raises:
        EmptyPathError: If *path* is empty.
    """
    return _resolve(root, path)


def get_mut_from(root: NestedMap | Node, path: Sequence[Any]) -> Node | None:
    """Look up the node at *path* for in-place modification.

    Same traversal and failure rules as :func:`get_from`.
    """
    return _resolve(root, path)


def contains_path(root: NestedMap | Node, path: Sequence[Any]) -> bool:
    return _resolve(root, path) is not None


def remove_entry_from(
    root: NestedMap | Node, path: Sequence[Any]
) -> tuple[Any, Node] | None:
    """Remove the node at *path* and return ``(key, node)``.

    Ancestors left empty by the removal are not pruned.  Returns ``None`` if
    an intermediate segment is missing or a leaf, or the last one is absent.

    Raises:
        EmptyPathError: If *path* is empty.
    """
    segments = check_path(path)
    parent = _parent_of(root, segments)
    key = segments[-1]
    if parent is None or key not in parent:
        return None
    return key, parent.pop(key)


def remove_from(root: NestedMap | Node, path: Sequence[Any]) -> Node | None:
    removed = remove_entry_from(root, path)
    return None if removed is None else removed[1]


def insert_into(root: NestedMap | Node, path: Sequence[Any], node: Node) -> Node | None:
    """Set the node at *path*, creating missing intermediate branches.

    An existing node at *path* is overwritten and returned.

    Raises:
        EmptyPathError: If *path* is empty.
        ConflictError: If *root* or a segment before the last holds a leaf.
            Nothing is created in that case.
    """
    segments = check_path(path)
    current = _children(root)
    if current is None:
        raise ConflictError("Cannot insert below a value.")

    for depth, segment in enumerate(segments[:-1]):
        child = current.get(segment)
        if child is None:
            child = Branch()
            current[segment] = child
        elif not isinstance(child, Branch):
            raise ConflictError(
                f"{join_path(segments[: depth + 1])} holds a value, not a group of secrets."
            )
        current = child.children

    previous = current.get(segments[-1])
    current[segments[-1]] = node
    return previous


def prune_empty(node: Node) -> Node:
    """Return *node* with every empty sub-branch removed, recursively.

    A branch holding only empty branches collapses to an empty branch.
    """
    if isinstance(node, Leaf):
        return node
    kept = NestedMap()
    for key, child in node.children.items():
        pruned = prune_empty(child)
        if isinstance(pruned, Branch) and pruned.is_empty:
            continue
        kept[key] = pruned
    return Branch(kept)


def iter_leaves(
    root: NestedMap | Node, prefix: tuple[Any, ...] = ()
) -> Iterator[tuple[tuple[Any, ...], Any]]:
    """Yield ``(path, value)`` for every leaf below *root*, depth first by key."""
    if isinstance(root, Leaf):
        yield prefix, root.value
        return
    children = _children(root)
    for key in sorted(children, key=str):
        yield from iter_leaves(children[key], prefix + (key,))


def filter_tree(root: NestedMap, pattern: str) -> NestedMap:
    """Return a new tree containing only leaves whose dotted path matches *pattern*.

    Branches are kept if any of their descendants match.
    Uses ``fnmatch`` glob syntax (e.g. ``"*db*"``, ``"prod.*.password"``).

    Args:
        root: The source tree.
        pattern: Glob pattern matched against each leaf's dotted path.

    Returns:
        A filtered copy of *root*.  Leaf nodes are shared with *root*.
    """
    filtered = NestedMap()
    for key, child in root.items():
        kept = _filter_node(child, (key,), pattern)
        if kept is not None:
            filtered[key] = kept
    return filtered


def _filter_node(node: Node, path: tuple[Any, ...], pattern: str) -> Node | None:
    """Recursively filter *node*.  Returns None if nothing matches."""
    if isinstance(node, Leaf):
        return node if fnmatch.fnmatchcase(join_path(path), pattern) else None

    kept_children = NestedMap()
    for key, child in node.children.items():
        result = _filter_node(child, path + (key,), pattern)
        if result is not None:
            kept_children[key] = result

    if kept_children:
        return Branch(kept_children)
    return None
