"""Rich-based formatters for passify output."""

from __future__ import annotations

from rich.text import Text
from rich.tree import Tree

from passify.models import Branch, Leaf, NestedMap, is_binary

_MAX_VALUE_LEN = 60


def _truncate(value: str) -> str:
    if len(value) <= _MAX_VALUE_LEN:
        return value
    return value[:_MAX_VALUE_LEN] + "…"


def _display_value(value: str | bytes) -> str:
    """Return the text shown for a value: the string itself, or a byte count."""
    if is_binary(value):
        return f"<{len(value)} bytes>"
    return _truncate(value)


def _leaf_label(name: str, leaf: Leaf, show_values: bool) -> Text:
    """Build a Rich :class:`Text` label for a stored value."""
    if is_binary(leaf.value):
        name_style = "bold cyan"
        type_tag = "[binary]"
    else:
        name_style = "bold green"
        type_tag = "[text]"

    label = Text()
    label.append(name, style=name_style)
    label.append(f" {type_tag}", style="dim")

    if show_values:
        style = "dim italic" if is_binary(leaf.value) else "italic"
        label.append(f"  {_display_value(leaf.value)}", style=style)

    return label


def _add_map(rich_tree: Tree, tree: NestedMap, show_values: bool) -> None:
    """Recursively add the entries of *tree* to *rich_tree*."""
    for key in sorted(tree, key=str):
        node = tree[key]
        if isinstance(node, Branch):
            branch = rich_tree.add(Text(str(key), style="bold blue"))
            _add_map(branch, node.children, show_values)
        else:
            rich_tree.add(_leaf_label(str(key), node, show_values))


def render_tree(tree: NestedMap, title: str = "secrets", show_values: bool = False) -> Tree:
    """Render a secret tree using Rich.

    Args:
        tree: The tree to render, e.g. :attr:`passify.store.Store.secrets`.
        title: Label of the root node, usually the store location.
        show_values: When *False*, values are hidden entirely.  Binary values
            are always shown as a byte count.

    Returns:
        A :class:`rich.tree.Tree` ready to be printed.
    """
    rich_root = Tree(Text(title, style="bold white"))
    if not tree:
        rich_root.add(Text("(empty)", style="dim"))
    _add_map(rich_root, tree, show_values)
    return rich_root
