"""The secret store: a tree of secrets with create/read/update/delete semantics."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from passify.models import Branch, Entry, Leaf, NestedMap, Node
from passify.tree import (
    ConflictError,
    EmptySecretError,
    NotFoundError,
    check_path,
    contains_path,
    get_from,
    insert_into,
    iter_leaves,
    join_path,
    prune_empty,
    remove_from,
)

if TYPE_CHECKING:
    from passify.crypter import Crypter

logger = logging.getLogger(__name__)

Secret = Node | Entry | NestedMap


def _as_node(secret: Secret) -> Node:
    if isinstance(secret, (Leaf, Branch)):
        return prune_empty(secret)
    if isinstance(secret, (str, bytes)):
        return Leaf(secret)
    if isinstance(secret, dict):
        return prune_empty(Branch(NestedMap(secret)))
    raise TypeError(f"Unsupported secret type {type(secret).__name__!r}")


def _is_empty(node: Node) -> bool:
    return isinstance(node, Branch) and node.is_empty


class Store:
    """A tree of secrets addressed by paths.

    The lifecycle of a single path is ``absent -> create -> present ->
    update* -> delete -> absent``.  Creating a present path, and updating or
    deleting an absent one, raise rather than silently doing nothing.

    Deleting a secret also removes every ancestor group it leaves empty, so
    the tree never contains an empty :class:`~passify.models.Branch`.
    """

    def __init__(self, secrets: NestedMap | None = None) -> None:
        # the tree never holds an empty group
        self._secrets = prune_empty(Branch(secrets or NestedMap())).children

    @property
    def secrets(self) -> NestedMap:
        return self._secrets

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Store):
            return NotImplemented
        return self._secrets == other._secrets

    def __repr__(self) -> str:
        return f"Store({dict.__repr__(self._secrets)})"

    def __len__(self) -> int:
        return len(self._secrets)

    def create(self, path: Sequence[str], secret: Secret) -> None:
        """Create a new secret at *path*, creating intermediate groups.

        Raises:
            EmptyPathError: If *path* is empty.
            EmptySecretError: If *secret* is a group with no secrets in it.
            ConflictError: If *path* already exists, or a segment before the
                last holds a value.
        """
        segments = check_path(path)
        node = _as_node(secret)
        if _is_empty(node):
            raise EmptySecretError(f"Refusing to create empty secret {join_path(segments)}.")
        if contains_path(self._secrets, segments):
            raise ConflictError(f"Secret {join_path(segments)} already exists.")
        insert_into(self._secrets, segments, node)
        logger.debug("Created %s", join_path(segments))

    def read(self, path: Sequence[str]) -> Node:
        """Return the node at *path*.

        Raises:
            EmptyPathError: If *path* is empty.
            NotFoundError: If nothing exists at *path*.
        """
        segments = check_path(path)
        node = get_from(self._secrets, segments)
        if node is None:
            raise NotFoundError(f"Secret {join_path(segments)} not found.")
        return node

    def update(self, path: Sequence[str], secret: Secret) -> None:
        """Replace the secret at *path*.

        An empty group as the new value deletes *path* instead, see
        :meth:`delete`.

        Raises:
            EmptyPathError: If *path* is empty.
            NotFoundError: If nothing exists at *path*.
        """
        segments = check_path(path)
        node = _as_node(secret)
        if not contains_path(self._secrets, segments):
            raise NotFoundError(f"Secret {join_path(segments)} not found.")
        if _is_empty(node):
            self.delete(segments)
            return
        insert_into(self._secrets, segments, node)
        logger.debug("Updated %s", join_path(segments))

    def delete(self, path: Sequence[str]) -> Node:
        """Remove and return the node at *path*, pruning emptied ancestors.

        Raises:
            EmptyPathError: If *path* is empty.
            NotFoundError: If nothing exists at *path*.
        """
        segments = check_path(path)
        removed = remove_from(self._secrets, segments)
        if removed is None:
            raise NotFoundError(f"Secret {join_path(segments)} not found.")
        self._prune(segments[:-1])
        logger.debug("Deleted %s", join_path(segments))
        return removed

    def _prune(self, ancestors: list[Any]) -> None:
        """Remove empty branches along *ancestors*, deepest first."""
        for depth in range(len(ancestors), 0, -1):
            prefix = ancestors[:depth]
            node = get_from(self._secrets, prefix)
            if not _is_empty(node):
                break
            remove_from(self._secrets, prefix)

    def secret_paths(self) -> list[str]:
        """Return the dotted path of every stored value, sorted."""
        return [join_path(path) for path, _ in iter_leaves(self._secrets)]

    def encrypt(self, crypter: Crypter) -> bytes:
        return crypter.encrypt(self._secrets)

    @classmethod
    def decrypt(cls, data: bytes, crypter: Crypter) -> Store:
        return cls(crypter.decrypt(data))
