"""Tests for passify.backends."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from passify.backends import (
    BackendError,
    DirectorySource,
    FileSource,
    NoCrypterError,
    S3Source,
    _sanitize_error,
    load,
    make_crypter_supplier,
    parse_source,
    save,
)
from passify.crypter import Crypter, DecryptionError
from passify.models import Branch, Leaf, NestedMap
from passify.store import Store

BUCKET = "passify-test"


def _supplier(passphrase: str = "pw"):
    return make_crypter_supplier(lambda: passphrase)


def _no_crypter():
    return None


class TestParseSource:
    def test_file(self, tmp_path):
        assert parse_source(str(tmp_path / "store.bin")) == FileSource(tmp_path / "store.bin")

    def test_trailing_separator_is_directory(self, tmp_path):
        source = parse_source(f"{tmp_path / 'new-dir'}/")
        assert source == DirectorySource(tmp_path / "new-dir")

    def test_existing_directory(self, tmp_path):
        assert parse_source(str(tmp_path)) == DirectorySource(tmp_path)

    def test_s3(self):
        assert parse_source("s3://bucket/path/to/store.bin") == S3Source(
            bucket="bucket", key="path/to/store.bin"
        )

    @pytest.mark.parametrize("text", ["s3://", "s3://bucket", "s3://bucket/", "s3:///key"])
    def test_incomplete_s3(self, text):
        with pytest.raises(ValueError, match="s3://bucket/key"):
            parse_source(text)

    @pytest.mark.parametrize("text", ["", "   "])
    def test_empty(self, text):
        with pytest.raises(ValueError):
            parse_source(text)

    def test_str_forms(self, tmp_path):
        assert str(FileSource(tmp_path / "a")) == str(tmp_path / "a")
        assert str(DirectorySource(tmp_path)) == f"{tmp_path}{os.sep}"
        assert str(S3Source("b", "k")) == "s3://b/k"


class TestMakeCrypterSupplier:
    def test_builds_crypter(self):
        assert isinstance(_supplier()(), Crypter)

    def test_none_passes_through(self):
        assert make_crypter_supplier(lambda: None)() is None

    def test_empty_passphrase_is_a_passphrase(self):
        assert isinstance(make_crypter_supplier(lambda: "")(), Crypter)


class TestLoadNone:
    def test_empty_store(self):
        supplier = MagicMock()
        assert load(None, supplier) == Store()
        supplier.assert_not_called()


class TestFileBackend:
    def test_round_trip(self, tmp_path, sample_tree):
        source = FileSource(tmp_path / "store.bin")
        save(Store(sample_tree), source, _supplier())
        assert load(source, _supplier()) == Store(sample_tree)

    def test_file_is_encrypted(self, tmp_path):
        source = FileSource(tmp_path / "store.bin")
        save(Store(NestedMap({"user": Leaf("plain-text-secret")})), source, _supplier())
        assert b"plain-text-secret" not in source.path.read_bytes()

    def test_refuses_to_overwrite(self, tmp_path):
        path = tmp_path / "store.bin"
        path.write_bytes(b"existing")
        with pytest.raises(BackendError, match="--overwrite"):
            save(Store(), FileSource(path), _supplier())
        assert path.read_bytes() == b"existing"

    def test_overwrite(self, tmp_path, sample_tree):
        source = FileSource(tmp_path / "store.bin")
        save(Store(), source, _supplier())
        save(Store(sample_tree), source, _supplier(), overwrite=True)
        assert load(source, _supplier()) == Store(sample_tree)

    def test_missing_file(self, tmp_path):
        with pytest.raises(BackendError, match="Failed to read"):
            load(FileSource(tmp_path / "missing.bin"), _supplier())

    def test_load_without_passphrase(self, tmp_path):
        source = FileSource(tmp_path / "store.bin")
        save(Store(), source, _supplier())
        with pytest.raises(NoCrypterError):
            load(source, _no_crypter)

    def test_save_without_passphrase_writes_nothing(self, tmp_path):
        source = FileSource(tmp_path / "store.bin")
        with pytest.raises(NoCrypterError):
            save(Store(), source, _no_crypter)
        assert not source.path.exists()

    def test_wrong_passphrase(self, tmp_path, sample_tree):
        source = FileSource(tmp_path / "store.bin")
        save(Store(sample_tree), source, _supplier("right"))
        with pytest.raises(DecryptionError):
            load(source, _supplier("wrong"))

    def test_missing_parent_directory(self, tmp_path):
        with pytest.raises(BackendError, match="Failed to write"):
            save(Store(), FileSource(tmp_path / "no" / "such" / "store.bin"), _supplier())


class TestDirectoryBackend:
    def test_round_trip(self, tmp_path, sample_tree):
        source = DirectorySource(tmp_path / "tree")
        save(Store(sample_tree), source, _no_crypter)
        assert load(source, _no_crypter) == Store(sample_tree)

    def test_layout(self, tmp_path, sample_tree):
        root = tmp_path / "tree"
        save(Store(sample_tree), DirectorySource(root), _no_crypter)
        assert (root / "nested" / "inner" / "deep" / "foo").read_text() == "bar"
        assert (root / "sibling").read_text() == "outer_sibling"
        assert (root / "binary").read_bytes() == bytes([245, 107, 95, 100])

    def test_binary_stays_binary(self, tmp_path, sample_tree):
        source = DirectorySource(tmp_path / "tree")
        save(Store(sample_tree), source, _no_crypter)
        assert load(source, _no_crypter).read(["binary"]) == Leaf(bytes([245, 107, 95, 100]))

    def test_text_files_become_text(self, tmp_path):
        (tmp_path / "token").write_text("abc")
        assert load(DirectorySource(tmp_path), _no_crypter).read(["token"]) == Leaf("abc")

    def test_empty_subdirectories_skipped(self, tmp_path):
        (tmp_path / "empty" / "emptier").mkdir(parents=True)
        (tmp_path / "key").write_text("v")
        assert load(DirectorySource(tmp_path), _no_crypter) == Store(
            NestedMap({"key": Leaf("v")})
        )

    def test_crypter_never_requested(self, tmp_path, sample_tree):
        supplier = MagicMock()
        source = DirectorySource(tmp_path / "tree")
        save(Store(sample_tree), source, supplier)
        load(source, supplier)
        supplier.assert_not_called()

    @pytest.mark.parametrize("name", ["..", ".", "a/b", "nul\0byte"])
    def test_unsafe_names_rejected(self, tmp_path, name):
        root = tmp_path / "tree"
        store = Store(NestedMap({"ok": Leaf("v"), "group": Branch({name: Leaf("x")})}))
        with pytest.raises(BackendError, match="file name"):
            save(store, DirectorySource(root), _no_crypter)
        assert not root.exists()

    def test_refuses_to_overwrite(self, tmp_path):
        root = tmp_path / "tree"
        root.mkdir()
        (root / "keep").write_text("me")
        with pytest.raises(BackendError, match="--overwrite"):
            save(Store(), DirectorySource(root), _no_crypter)
        assert (root / "keep").read_text() == "me"

    def test_overwrite_replaces_contents(self, tmp_path):
        root = tmp_path / "tree"
        root.mkdir()
        (root / "stale").write_text("old")
        store = Store(NestedMap({"fresh": Leaf("new")}))
        save(store, DirectorySource(root), _no_crypter, overwrite=True)
        assert sorted(p.name for p in root.iterdir()) == ["fresh"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(BackendError, match="not a directory"):
            load(DirectorySource(tmp_path / "missing"), _no_crypter)

    def test_failed_overwrite_keeps_old_tree(self, tmp_path):
        source = DirectorySource(tmp_path / "tree")
        save(Store(NestedMap({"keep": Leaf("old")})), source, _no_crypter)

        too_long = Store(NestedMap({"x" * 300: Leaf("new")}))
        with pytest.raises(BackendError):
            save(too_long, source, _no_crypter, overwrite=True)

        assert load(source, _no_crypter) == Store(NestedMap({"keep": Leaf("old")}))
        assert [p.name for p in tmp_path.iterdir()] == ["tree"]

    def test_unencodable_value_keeps_old_tree(self, tmp_path):
        source = DirectorySource(tmp_path / "tree")
        save(Store(NestedMap({"keep": Leaf("old")})), source, _no_crypter)

        with pytest.raises(BackendError, match="not valid Unicode"):
            save(Store(NestedMap({"a": Leaf("\udcff")})), source, _no_crypter, overwrite=True)

        assert load(source, _no_crypter) == Store(NestedMap({"keep": Leaf("old")}))
        assert [p.name for p in tmp_path.iterdir()] == ["tree"]

    def test_creates_missing_parents(self, tmp_path):
        source = DirectorySource(tmp_path / "a" / "b" / "tree")
        save(Store(NestedMap({"k": Leaf("v")})), source, _no_crypter)
        assert load(source, _no_crypter).read(["k"]) == Leaf("v")


class TestFileReplacement:
    def test_failed_write_keeps_old_file(self, tmp_path, sample_tree):
        source = FileSource(tmp_path / "store.bin")
        save(Store(sample_tree), source, _supplier())
        before = source.path.read_bytes()

        with patch("passify.backends.os.replace", side_effect=OSError(28, "No space left")):
            with pytest.raises(BackendError, match="Failed to write"):
                save(Store(), source, _supplier(), overwrite=True)

        assert source.path.read_bytes() == before
        assert [p.name for p in tmp_path.iterdir()] == ["store.bin"]


class TestS3Backend:
    def test_round_trip(self, s3_client, sample_tree):
        source = S3Source(BUCKET, "stores/main.bin")
        save(Store(sample_tree), source, _supplier())
        assert load(source, _supplier()) == Store(sample_tree)

    def test_object_is_encrypted(self, s3_client):
        source = S3Source(BUCKET, "main.bin")
        save(Store(NestedMap({"user": Leaf("plain-text-secret")})), source, _supplier())
        body = s3_client.get_object(Bucket=BUCKET, Key="main.bin")["Body"].read()
        assert b"plain-text-secret" not in body

    def test_missing_object(self, s3_client):
        with pytest.raises(BackendError, match="No store found"):
            load(S3Source(BUCKET, "missing.bin"), _supplier())

    def test_refuses_to_overwrite(self, s3_client):
        s3_client.put_object(Bucket=BUCKET, Key="main.bin", Body=b"existing")
        with pytest.raises(BackendError, match="--overwrite"):
            save(Store(), S3Source(BUCKET, "main.bin"), _supplier())
        body = s3_client.get_object(Bucket=BUCKET, Key="main.bin")["Body"].read()
        assert body == b"existing"

    def test_overwrite(self, s3_client, sample_tree):
        source = S3Source(BUCKET, "main.bin")
        save(Store(), source, _supplier())
        save(Store(sample_tree), source, _supplier(), overwrite=True)
        assert load(source, _supplier()) == Store(sample_tree)

    def test_wrong_passphrase(self, s3_client, sample_tree):
        source = S3Source(BUCKET, "main.bin")
        save(Store(sample_tree), source, _supplier("right"))
        with pytest.raises(DecryptionError):
            load(source, _supplier("wrong"))

    def test_load_without_passphrase(self, s3_client):
        source = S3Source(BUCKET, "main.bin")
        save(Store(), source, _supplier())
        with pytest.raises(NoCrypterError):
            load(source, _no_crypter)


class TestSanitizeError:
    def test_strips_arns(self):
        msg = "Error with arn:aws:s3:::passify-test/stores/123456789012"
        result = _sanitize_error(msg)
        assert "123456789012" not in result
        assert "arn:***" in result

    def test_strips_account_ids(self):
        msg = "Account 123456789012 does not have access"
        result = _sanitize_error(msg)
        assert "123456789012" not in result
        assert "***" in result

    def test_preserves_non_sensitive_content(self):
        msg = "Access denied for GetObject"
        assert _sanitize_error(msg) == msg


def test_sources_are_hashable():
    sources = {FileSource(Path("a")), DirectorySource(Path("a")), S3Source("b", "k")}
    assert len(sources) == 3
