"""Flattened (untagged) encoding of secret trees.

A leaf is written as its bare value and a branch as a mapping, with no tag
telling them apart::

    {"<key>": "<string>" | [<byte>, ...] | {"<key>": ...}}

Decoding therefore infers the node kind by trial: a value is first tried as
a leaf (a string, then a list of byte-range integers) and only then as a
nested mapping.  This is fragile by nature: any leaf type that could also
parse as a mapping would be ambiguous, so new leaf shapes must never
overlap with JSON objects.
"""

from __future__ import annotations

import json
from typing import Any

from passify.models import Branch, Entry, Leaf, NestedMap, Node


class CodecError(ValueError):
    """Raised when a value does not fit the flattened tree shape."""


def _entry_to_plain(value: Entry) -> Any:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return list(value)
    raise CodecError(f"Cannot encode secret of type {type(value).__name__!r}")


def to_plain(tree: NestedMap | Node) -> Any:
    """Convert a tree or node into JSON-compatible Python objects."""
    if isinstance(tree, Leaf):
        return _entry_to_plain(tree.value)
    if isinstance(tree, Branch):
        return to_plain(tree.children)
    if isinstance(tree, dict):
        return {key: to_plain(child) for key, child in tree.items()}
    raise CodecError(f"Cannot encode node of type {type(tree).__name__!r}")


def _is_byte(item: Any) -> bool:
    return isinstance(item, int) and not isinstance(item, bool) and 0 <= item <= 255


def _entry_from_plain(data: Any) -> Entry | None:
    if isinstance(data, str):
        return data
    if isinstance(data, list) and all(_is_byte(item) for item in data):
        return bytes(data)
    return None


def node_from_plain(data: Any) -> Node:
    """Decode one value, trying the leaf shapes before the mapping shape."""
    value = _entry_from_plain(data)
    if value is not None:
        return Leaf(value)
    if isinstance(data, dict):
        return Branch(map_from_plain(data))
    raise CodecError(
        f"Expected a string, a list of bytes or a mapping, got {type(data).__name__!r}"
    )


def map_from_plain(data: Any) -> NestedMap:
    if not isinstance(data, dict):
        raise CodecError(f"Expected a mapping, got {type(data).__name__!r}")
    tree = NestedMap()
    for key, value in data.items():
        if not isinstance(key, str):
            raise CodecError(f"Secret names must be strings, got {key!r}")
        tree[key] = node_from_plain(value)
    return tree


def dumps(tree: NestedMap | Node, pretty: bool = False) -> str:
    """Serialize *tree* to JSON text."""
    if pretty:
        return json.dumps(to_plain(tree), indent=2, sort_keys=True, ensure_ascii=False)
    return json.dumps(to_plain(tree), ensure_ascii=False)


def loads(text: str | bytes) -> NestedMap:
    """Parse a JSON document into a tree.

    Raises:
        CodecError: If *text* is not JSON or not a mapping of secrets.
    """
    try:
        data = json.loads(text)
    except (ValueError, RecursionError) as exc:
        raise CodecError(f"Invalid JSON: {exc}") from exc
    try:
        return map_from_plain(data)
    except RecursionError as exc:
        raise CodecError("Document is nested too deeply") from exc


def encode_compact(tree: NestedMap) -> bytes:
    """Encode *tree* in the compact form stored inside encrypted blobs.

    Raises:
        CodecError: If *tree* holds a value that cannot be encoded, such as
            text with lone surrogates.
    """
    text = json.dumps(to_plain(tree), separators=(",", ":"), ensure_ascii=False)
    try:
        return text.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise CodecError(f"Secret text is not valid Unicode: {exc.reason}") from exc


def decode_compact(data: bytes) -> NestedMap:
    """Inverse of :func:`encode_compact`."""
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CodecError("Payload is not valid UTF-8") from exc
    return loads(text)


def parse_secret(text: str) -> Node:
    """Interpret a secret literal given on the command line.

    The text is read as JSON in the flattened shape, so ``{}`` is an empty
    group, ``[1, 2]`` binary data and ``{"user": "me"}`` a group.  Anything
    that is not such a document is taken verbatim as a string.
    """
    try:
        return node_from_plain(json.loads(text))
    except (ValueError, RecursionError):
        return Leaf(text)
