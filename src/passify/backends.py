"""Load and save secret stores: encrypted files, plain directories and S3 objects."""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Union

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from passify.crypter import Crypter
from passify.models import Branch, Entry, Leaf, NestedMap, Node
from passify.store import Store

if TYPE_CHECKING:
    from mypy_boto3_s3 import S3Client

logger = logging.getLogger(__name__)

S3_SCHEME = "s3://"

_ARN_RE = re.compile(r"arn:aws[a-zA-Z-]*:[a-zA-Z0-9-]+:\S+")
_ACCOUNT_RE = re.compile(r"\b\d{12}\b")

_RETRY_CONFIG = Config(retries={"max_attempts": 5, "mode": "adaptive"})

PassphraseSupplier = Callable[[], Union[str, None]]
CrypterSupplier = Callable[[], Union[Crypter, None]]


class BackendError(Exception):
    """Raised when a store cannot be read from or written to its source."""


class NoCrypterError(BackendError):
    """Raised when no passphrase was supplied for an encrypted source."""


@dataclass(frozen=True)
class FileSource:
    """A single encrypted file."""

    path: Path

    def __str__(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class DirectorySource:
    """A plain directory tree: files are values, subdirectories are groups."""

    path: Path

    def __str__(self) -> str:
        return f"{self.path}{os.sep}"


@dataclass(frozen=True)
class S3Source:
    """A single encrypted S3 object."""

    bucket: str
    key: str

    def __str__(self) -> str:
        return f"{S3_SCHEME}{self.bucket}/{self.key}"


Source = Union[FileSource, DirectorySource, S3Source]


def parse_source(text: str) -> Source:
    """Parse a store location.

    * ``s3://bucket/key`` is an S3 object.
    * A path ending in a separator, or naming an existing directory, is a
      directory tree.
    * Anything else is an encrypted file.

    Raises:
        ValueError: If *text* is empty or an incomplete S3 location.
    """
    trimmed = text.strip()
    if not trimmed:
        raise ValueError("Store location must not be empty.")
    if trimmed.startswith(S3_SCHEME):
        bucket, _, key = trimmed[len(S3_SCHEME) :].partition("/")
        if not bucket or not key:
            raise ValueError(f"Invalid S3 location {trimmed!r}; expected s3://bucket/key.")
        return S3Source(bucket=bucket, key=key)
    path = Path(trimmed)
    if trimmed.endswith(("/", os.sep)) or path.is_dir():
        return DirectorySource(path)
    return FileSource(path)


def make_crypter_supplier(passphrase_supplier: PassphraseSupplier) -> CrypterSupplier:
    """Adapt a passphrase supplier into a supplier of :class:`Crypter` objects.

    The returned callable yields ``None`` whenever *passphrase_supplier* does.
    """

    def supply() -> Crypter | None:
        passphrase = passphrase_supplier()
        if passphrase is None:
            return None
        return Crypter(passphrase)

    return supply


def _require_crypter(supplier: CrypterSupplier, source: Source) -> Crypter:
    crypter = supplier()
    if crypter is None:
        raise NoCrypterError(f"No passphrase supplied for {source}.")
    return crypter


def load(
    source: Source | None,
    crypter_supplier: CrypterSupplier,
    profile: str | None = None,
    region: str | None = None,
) -> Store:
    """Load a store from *source*, or return an empty store when *source* is None.

    *crypter_supplier* is only called for encrypted sources.

    Raises:
        BackendError: If the source cannot be read.
        NoCrypterError: If no crypter was supplied for an encrypted source.
        CryptoError: If the blob cannot be decrypted.
    """
    if source is None:
        return Store()
    if isinstance(source, FileSource):
        data = _read_file(source.path)
        return Store.decrypt(data, _require_crypter(crypter_supplier, source))
    if isinstance(source, DirectorySource):
        return Store(_read_directory(source.path))
    if isinstance(source, S3Source):
        data = _get_object(source, profile, region)
        return Store.decrypt(data, _require_crypter(crypter_supplier, source))
    raise TypeError(f"Unknown source {source!r}")


def save(
    store: Store,
    source: Source,
    crypter_supplier: CrypterSupplier,
    overwrite: bool = False,
    profile: str | None = None,
    region: str | None = None,
) -> None:
    """Save *store* to *source*.

    Args:
        store:            The store to persist.
        source:           Where to write it.
        crypter_supplier: Called once for encrypted destinations.
        overwrite:        Replace an existing file, directory or object.
        profile:          AWS named profile for S3 destinations.
        region:           AWS region for S3 destinations.

    Raises:
        BackendError: If the destination exists and *overwrite* is False, or
            cannot be written.
        NoCrypterError: If no crypter was supplied for an encrypted destination.
    """
    if isinstance(source, FileSource):
        if not overwrite and source.path.exists():
            raise BackendError(f"{source} already exists; pass --overwrite to replace it.")
        blob = store.encrypt(_require_crypter(crypter_supplier, source))
        _replace_file(source.path, blob)
    elif isinstance(source, DirectorySource):
        _write_directory(store.secrets, source.path, overwrite)
    elif isinstance(source, S3Source):
        client = _make_client(profile, region)
        if not overwrite and _object_exists(client, source):
            raise BackendError(f"{source} already exists; pass --overwrite to replace it.")
        blob = store.encrypt(_require_crypter(crypter_supplier, source))
        _put_object(client, source, blob)
    else:
        raise TypeError(f"Unknown source {source!r}")


# -- files ------------------------------------------------------------------


def _read_file(path: Path) -> bytes:
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise BackendError(f"Failed to read {path}: {exc.strerror or exc}") from exc
    logger.debug("Read %d bytes from %s", len(data), path)
    return data


def _write_file(path: Path, data: bytes) -> None:
    try:
        path.write_bytes(data)
    except OSError as exc:
        raise BackendError(f"Failed to write {path}: {exc.strerror or exc}") from exc
    logger.debug("Wrote %d bytes to %s", len(data), path)


def _replace_file(path: Path, data: bytes) -> None:
    """Write *data* to a sibling temporary file, then move it over *path*."""
    try:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    except OSError as exc:
        raise BackendError(f"Failed to write {path}: {exc.strerror or exc}") from exc
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_path, path)
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise BackendError(f"Failed to write {path}: {exc.strerror or exc}") from exc
    logger.debug("Wrote %d bytes to %s", len(data), path)


# -- directories ------------------------------------------------------------


def _read_value(path: Path) -> Leaf:
    data = _read_file(path)
    try:
        return Leaf(data.decode("utf-8"))
    except UnicodeDecodeError:
        return Leaf(data)


def _read_directory(path: Path) -> NestedMap:
    if not path.is_dir():
        raise BackendError(f"{path} is not a directory.")
    tree = NestedMap()
    try:
        children = sorted(path.iterdir())
    except OSError as exc:
        raise BackendError(f"Failed to list {path}: {exc.strerror or exc}") from exc
    for child in children:
        if child.is_dir():
            subtree = _read_directory(child)
            if subtree:  # empty directories hold no secrets
                tree[child.name] = Branch(subtree)
        else:
            tree[child.name] = _read_value(child)
    return tree


def _check_component(key: object) -> str:
    name = str(key)
    if name in ("", ".", "..") or "/" in name or os.sep in name or "\0" in name:
        raise BackendError(f"Secret name {name!r} cannot be used as a file name.")
    return name


def _encode_value(value: Entry, path: Path) -> bytes:
    if not isinstance(value, str):
        return bytes(value)
    try:
        return value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise BackendError(f"Secret {path.name!r} is not valid Unicode: {exc.reason}") from exc


def _write_node(node: Node, path: Path) -> None:
    if isinstance(node, Branch):
        _write_map(node.children, path)
        return
    _write_file(path, _encode_value(node.value, path))


def _write_map(tree: NestedMap, path: Path) -> None:
    try:
        path.mkdir(exist_ok=True)
    except OSError as exc:
        raise BackendError(f"Failed to create {path}: {exc.strerror or exc}") from exc
    for key, node in tree.items():
        _write_node(node, path / _check_component(key))


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _write_directory(tree: NestedMap, path: Path, overwrite: bool) -> None:
    """Write *tree* into a sibling temporary directory, then move it to *path*.

    An existing target is only replaced once the new tree is complete, so a
    failed write leaves it untouched.
    """
    for key in _iter_keys(tree):
        _check_component(key)
    if path.exists() and not overwrite:
        raise BackendError(f"{path} already exists; pass --overwrite to replace it.")

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(dir=path.parent, prefix=f".{path.name}."))
    except OSError as exc:
        raise BackendError(f"Failed to create {path}: {exc.strerror or exc}") from exc

    try:
        _write_map(tree, staging)
    except BackendError:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    retired = None
    try:
        if path.exists() or path.is_symlink():
            retired = staging.with_name(f"{staging.name}.old")
            os.replace(path, retired)
        os.replace(staging, path)
    except OSError as exc:
        if retired is not None and not path.exists():
            os.replace(retired, path)
            retired = None
        shutil.rmtree(staging, ignore_errors=True)
        raise BackendError(f"Failed to replace {path}: {exc.strerror or exc}") from exc
    if retired is not None:
        try:
            _remove_path(retired)
        except OSError as exc:
            logger.warning("Could not remove old copy %s: %s", retired, exc.strerror or exc)
    logger.debug("Wrote directory tree to %s", path)


def _iter_keys(tree: NestedMap) -> Iterator[object]:
    for key, node in tree.items():
        yield key
        if isinstance(node, Branch):
            yield from _iter_keys(node.children)


# -- S3 ---------------------------------------------------------------------


def _sanitize_error(msg: str) -> str:
    """Strip ARNs and AWS account IDs from error messages."""
    msg = _ARN_RE.sub("arn:***", msg)
    msg = _ACCOUNT_RE.sub("***", msg)
    return msg


def _make_client(profile: str | None, region: str | None) -> S3Client:
    session = boto3.Session(profile_name=profile, region_name=region)
    return session.client("s3", config=_RETRY_CONFIG)  # type: ignore[return-value]


def _get_object(source: S3Source, profile: str | None, region: str | None) -> bytes:
    client = _make_client(profile, region)
    try:
        response = client.get_object(Bucket=source.bucket, Key=source.key)
        data = response["Body"].read()
    except ClientError as exc:
        if exc.response["Error"]["Code"] in ("NoSuchKey", "404"):
            raise BackendError(f"No store found at {source}.") from exc
        raise BackendError(f"Failed to read {source}: {_sanitize_error(str(exc))}") from exc
    except BotoCoreError as exc:
        raise BackendError(f"Failed to read {source}: {_sanitize_error(str(exc))}") from exc
    logger.debug("Read %d bytes from %s", len(data), source)
    return data


def _object_exists(client: S3Client, source: S3Source) -> bool:
    try:
        client.head_object(Bucket=source.bucket, Key=source.key)
    except ClientError as exc:
        if exc.response["Error"]["Code"] in ("NoSuchKey", "404", "NotFound"):
            return False
        raise BackendError(f"Failed to inspect {source}: {_sanitize_error(str(exc))}") from exc
    except BotoCoreError as exc:
        raise BackendError(f"Failed to inspect {source}: {_sanitize_error(str(exc))}") from exc
    return True


def _put_object(client: S3Client, source: S3Source, data: bytes) -> None:
    try:
        client.put_object(
            Bucket=source.bucket,
            Key=source.key,
            Body=data,
            ContentType="application/octet-stream",
        )
    except (ClientError, BotoCoreError) as exc:
        raise BackendError(f"Failed to write {source}: {_sanitize_error(str(exc))}") from exc
    logger.debug("Wrote %d bytes to %s", len(data), source)
