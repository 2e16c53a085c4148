"""Passphrase-based encryption of whole secret trees.

Blob layout::

    [12-byte random nonce][AES-256-GCM ciphertext + 16-byte tag]

The plaintext is the compact encoding of the tree (see
:func:`passify.codec.encode_compact`), compressed with raw deflate.  The key
is the SHA-256 digest of the passphrase; a fresh nonce is drawn for every
encryption so the same passphrase can safely encrypt many payloads.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import zlib
from typing import Final

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from passify.codec import CodecError, decode_compact, encode_compact
from passify.models import NestedMap

logger = logging.getLogger(__name__)

KEY_SIZE: Final[int] = 32  # 256 bits
NONCE_SIZE: Final[int] = 12  # 96 bits
TAG_SIZE: Final[int] = 16  # 128 bits
COMPRESSION_LEVEL: Final[int] = 8


class CryptoError(Exception):
    """Base class for errors turning a tree into a blob and back."""


class SerializationError(CryptoError):
    """Raised when a tree cannot be encoded, or a decrypted payload decoded."""


class DecryptionError(CryptoError):
    """Raised when a blob fails authentication: wrong passphrase or tampering."""


class InflationError(CryptoError):
    """Raised when a decrypted payload is not a valid deflate stream."""


def derive_key(passphrase: str) -> bytes:
    """Derive the 256-bit cipher key from *passphrase*.

    The empty passphrase is accepted and yields the digest of ``b""``.
    """
    return hashlib.sha256(passphrase.encode("utf-8")).digest()


def _deflate(data: bytes) -> bytes:
    deflater = zlib.compressobj(COMPRESSION_LEVEL, zlib.DEFLATED, -zlib.MAX_WBITS)
    return deflater.compress(data) + deflater.flush()


def _inflate(data: bytes) -> bytes:
    inflater = zlib.decompressobj(-zlib.MAX_WBITS)
    try:
        inflated = inflater.decompress(data) + inflater.flush()
    except zlib.error as exc:
        raise InflationError(f"Failed to inflate payload: {exc}") from exc
    if not inflater.eof:
        raise InflationError("Failed to inflate payload: stream is truncated")
    return inflated


class Crypter:
    """Encrypts and decrypts secret trees with a passphrase-derived key.

    Usage:
        crypter = Crypter("correct horse battery staple")
        blob = crypter.encrypt(tree)
        assert crypter.decrypt(blob) == tree
    """

    __slots__ = ("_cipher",)

    def __init__(self, passphrase: str) -> None:
        self._cipher = AESGCM(derive_key(passphrase))

    def __repr__(self) -> str:
        return "Crypter(<key hidden>)"

    def encrypt(self, payload: NestedMap) -> bytes:
        """Serialize, compress and encrypt *payload*.

        Raises:
            SerializationError: If *payload* holds something that cannot be encoded.
        """
        try:
            binary = encode_compact(payload)
        except CodecError as exc:
            raise SerializationError(f"Could not serialize payload: {exc}") from exc

        nonce = secrets.token_bytes(NONCE_SIZE)
        blob = nonce + self._cipher.encrypt(nonce, _deflate(binary), None)
        logger.debug("Encrypted %d bytes of payload into %d bytes", len(binary), len(blob))
        return blob

    def decrypt(self, data: bytes) -> NestedMap:
        """Decrypt, inflate and deserialize a blob made by :meth:`encrypt`.

        Raises:
            DecryptionError: If the blob is truncated, tampered with, or was
                encrypted under another passphrase.
            InflationError: If the authenticated payload is not valid deflate data.
            SerializationError: If the inflated payload is not a secret tree.
        """
        if len(data) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Encrypted store is too short to be valid")

        nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            compressed = self._cipher.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise DecryptionError("Authentication failed: wrong passphrase or tampered data") from exc

        binary = _inflate(compressed)
        try:
            tree = decode_compact(binary)
        except CodecError as exc:
            raise SerializationError(f"Could not deserialize payload: {exc}") from exc
        logger.debug("Decrypted %d bytes into %d top-level secrets", len(data), len(tree))
        return tree
