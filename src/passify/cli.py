"""CLI entry point for passify."""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import NoReturn, TextIO

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from passify import __version__
from passify.backends import (
    BackendError,
    NoCrypterError,
    Source,
    make_crypter_supplier,
    parse_source,
)
from passify.backends import load as load_store
from passify.backends import save as save_store
from passify.codec import CodecError, dumps, loads, parse_secret
from passify.crypter import CryptoError, DecryptionError, SerializationError
from passify.formatters import render_tree
from passify.models import Node
from passify.store import Store
from passify.tree import EmptyPathError, PathError, filter_tree, iter_leaves, join_path, parse_path

console = Console()

PASSPHRASE_ENV = "PASSIFY_PASSPHRASE"
STORE_ENV = "PASSIFY_STORE"


def _abort(msg: str) -> NoReturn:
    console.print(f"[bold red]Error:[/] {escape(msg)}")
    sys.exit(1)


def _configure_logging(verbose: bool) -> None:
    logger = logging.getLogger("passify")
    logger.handlers.clear()
    logger.addHandler(RichHandler(console=Console(stderr=True), show_path=False))
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _prompt_passphrase() -> str | None:
    """Return the passphrase from the environment, or ask for it.

    Returns None when the prompt is interrupted or its input closed.
    """
    passphrase = os.environ.get(PASSPHRASE_ENV)
    if passphrase is not None:
        return passphrase
    try:
        return click.prompt(
            "Passphrase", hide_input=True, default="", show_default=False, err=True
        )
    except click.Abort:
        return None


def _parse_path(text: str) -> list[str]:
    try:
        return parse_path(text)
    except EmptyPathError:
        _abort(f"Invalid secret path {text!r}. Use dot-separated names, e.g. db.prod.password.")


def _parse_location(text: str | None) -> Source | None:
    if text is None:
        return None
    try:
        return parse_source(text)
    except ValueError as exc:
        _abort(str(exc))


def _read_secret(text: str) -> Node:
    """Parse SECRET, reading it from stdin when given as ``-``."""
    if text == "-":
        text = click.get_text_stream("stdin").read().rstrip("\n")
    return parse_secret(text)


@contextmanager
def _reported_errors() -> Iterator[None]:
    """Turn store failures into a one-line error and exit status 1."""
    try:
        yield
    except NoCrypterError:
        _abort("Aborted: no passphrase supplied.")
    except DecryptionError:
        _abort("Could not decrypt the store: wrong passphrase, or the data was tampered with.")
    except SerializationError as exc:
        _abort(f"Cannot encode or decode the store: {exc}")
    except CryptoError as exc:
        _abort(f"The store is corrupt: {exc}")
    except BackendError as exc:
        _abort(str(exc))
    except PathError as exc:
        _abort(str(exc))
    except CodecError as exc:
        _abort(f"Invalid secrets document: {exc}")


@dataclass
class _Session:
    """Where the store comes from and where it goes for one invocation."""

    source: Source | None
    destination: Source | None
    overwrite: bool = False
    profile: str | None = None
    region: str | None = None

    def load(self) -> Store:
        return load_store(
            self.source,
            make_crypter_supplier(_prompt_passphrase),
            profile=self.profile,
            region=self.region,
        )

    def save(self, store: Store) -> bool:
        """Save *store* to the destination, if one was given."""
        if self.destination is None:
            return False
        save_store(
            store,
            self.destination,
            make_crypter_supplier(_prompt_passphrase),
            overwrite=self.overwrite,
            profile=self.profile,
            region=self.region,
        )
        return True

    @property
    def title(self) -> str:
        return str(self.source) if self.source is not None else "(new store)"


def _report_change(session: _Session, store: Store, message: str) -> None:
    with _reported_errors():
        saved = session.save(store)
    console.print(message)
    if not saved:
        console.print("[dim]Not saved: pass --save OUTPUT to keep this change.[/]")


class _StoreGroup(click.Group):
    """Click Group that accepts the store location as a leading positional.

    ``passify store.bin read db.password`` is parsed as
    ``passify --store store.bin read db.password``.  The first token that is
    neither an option nor the value of one decides: a known command name
    leaves the arguments untouched, anything else becomes ``--store``.
    """

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        index = self._first_positional(ctx, args)
        if index is not None and args[index] not in self.commands:
            args = [*args[:index], "--store", args[index], *args[index + 1 :]]
        return super().parse_args(ctx, args)

    def _first_positional(self, ctx: click.Context, args: list[str]) -> int | None:
        takes_value = {
            opt
            for param in self.get_params(ctx)
            if isinstance(param, click.Option) and not param.is_flag
            for opt in param.opts
        }
        skip_next = False
        for index, arg in enumerate(args):
            if skip_next:
                skip_next = False
                continue
            if arg == "--":
                return None
            if arg.startswith("-"):
                skip_next = arg in takes_value
                continue
            return index
        return None


@click.group(cls=_StoreGroup)
@click.pass_context
@click.option(
    "--store",
    "-i",
    "store_location",
    envvar=STORE_ENV,
    default=None,
    metavar="INPUT",
    help="Load the store from INPUT: a file, a directory/ or s3://bucket/key.",
)
@click.option(
    "--save",
    "-s",
    "save_location",
    default=None,
    metavar="OUTPUT",
    help="Save the store to OUTPUT after the command.",
)
@click.option(
    "--overwrite/--no-overwrite",
    default=False,
    help="Replace OUTPUT if it already exists (default: no).",
)
@click.option("--profile", default=None, help="AWS named profile for S3 stores.")
@click.option("--region", default=None, help="AWS region for S3 stores.")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log debug output to stderr.")
@click.version_option(__version__, "--version", "-V")
def main(
    ctx: click.Context,
    store_location: str | None,
    save_location: str | None,
    overwrite: bool,
    profile: str | None,
    region: str | None,
    verbose: bool,
) -> None:
    """Keep secrets in a local, encrypted, hierarchical store.

    INPUT (optional, before the command) is where the store is loaded from.
    Without it, commands start from an empty store.  Secret paths are
    dot-separated, e.g. db.prod.password.

    \b
    Examples:
      passify store.bin print --pretty
      passify store.bin read db.prod.password
      passify store.bin -s store.bin --overwrite create db.prod.user admin
      passify -s store.bin import secrets.json
      passify ./secrets/ -s store.bin tree
    """
    _configure_logging(verbose)
    ctx.obj = _Session(
        source=_parse_location(store_location),
        destination=_parse_location(save_location),
        overwrite=overwrite,
        profile=profile,
        region=region,
    )


@main.command("print")
@click.option("--pretty", "-p", is_flag=True, default=False, help="Pretty print.")
@click.pass_obj
def print_cmd(session: _Session, pretty: bool) -> None:
    """Print the whole store as JSON."""
    with _reported_errors():
        store = session.load()
        click.echo(dumps(store.secrets, pretty=pretty))
        session.save(store)


@main.command("tree")
@click.option(
    "--show-values/--hide-values",
    default=False,
    help="Show or hide secret values (default: hide).",
)
@click.option(
    "--filter", "-f", "filter_pattern", default=None, help="Glob filter on dotted secret paths."
)
@click.pass_obj
def tree_cmd(session: _Session, show_values: bool, filter_pattern: str | None) -> None:
    """Render the store as a tree.

    \b
    Examples:
      passify store.bin tree
      passify store.bin tree --show-values --filter "db.*"
    """
    with _reported_errors():
        store = session.load()
        tree = store.secrets
        if filter_pattern:
            tree = filter_tree(tree, filter_pattern)
        console.print(render_tree(tree, title=session.title, show_values=show_values))
        session.save(store)


@main.command("list")
@click.option(
    "--filter", "-f", "filter_pattern", default=None, help="Glob filter on dotted secret paths."
)
@click.pass_obj
def list_cmd(session: _Session, filter_pattern: str | None) -> None:
    """List the path of every stored secret."""
    with _reported_errors():
        store = session.load()
        tree = store.secrets
        if filter_pattern:
            tree = filter_tree(tree, filter_pattern)
        for path, _ in iter_leaves(tree):
            click.echo(join_path(path))
        session.save(store)


@main.command("create")
@click.argument("path")
@click.argument("secret")
@click.pass_obj
def create_cmd(session: _Session, path: str, secret: str) -> None:
    """Create a new secret at PATH.

    SECRET is stored verbatim unless it is JSON: '{"user": "me"}' creates a
    group of secrets, '[104, 105]' binary data.  Use - to read it from stdin.
    Missing groups along PATH are created.
    """
    segments = _parse_path(path)
    with _reported_errors():
        node = _read_secret(secret)
        store = session.load()
        store.create(segments, node)
    _report_change(session, store, f"[bold green]Created[/] {escape(join_path(segments))}")


@main.command("read")
@click.argument("path")
@click.option("--pretty", "-p", is_flag=True, default=False, help="Pretty print.")
@click.pass_obj
def read_cmd(session: _Session, path: str, pretty: bool) -> None:
    """Print the secret or group at PATH as JSON."""
    segments = _parse_path(path)
    with _reported_errors():
        store = session.load()
        click.echo(dumps(store.read(segments), pretty=pretty))
        session.save(store)


@main.command("update")
@click.argument("path")
@click.argument("secret")
@click.pass_obj
def update_cmd(session: _Session, path: str, secret: str) -> None:
    """Replace the secret at PATH.

    SECRET follows the same rules as for create; '{}' deletes PATH.
    """
    segments = _parse_path(path)
    with _reported_errors():
        node = _read_secret(secret)
        store = session.load()
        store.update(segments, node)
    _report_change(session, store, f"[bold green]Updated[/] {escape(join_path(segments))}")


@main.command("delete")
@click.argument("path")
@click.pass_obj
def delete_cmd(session: _Session, path: str) -> None:
    """Delete the secret or group at PATH.

    Groups left empty by the deletion are removed too.
    """
    segments = _parse_path(path)
    with _reported_errors():
        store = session.load()
        store.delete(segments)
    _report_change(session, store, f"[bold green]Deleted[/] {escape(join_path(segments))}")


@main.command("import")
@click.argument("document", type=click.File("r"))
@click.pass_obj
def import_cmd(session: _Session, document: TextIO) -> None:
    """Create every top-level secret of a JSON DOCUMENT (- for stdin).

    Existing secrets are never replaced: a name already in the store aborts
    the import.
    """
    with _reported_errors():
        imported = loads(document.read())
        store = session.load()
        for key, node in imported.items():
            store.create([key], node)
    _report_change(session, store, f"[bold green]Imported[/] {len(imported)} secret(s)")
