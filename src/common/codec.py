"""
Payload codec: password-derived AES-GCM encryption with optional deflate compression.

Wire format (bytes):

    marker ++ iv(12) ++ ciphertext

where marker is b"ENCRYPTED:" for encrypted-only payloads and
b"COMPRESSED:ENCRYPTED:" for payloads that were zip-deflated first. Anything
without a marker must be a plaintext JSON document (legacy backups).
"""

from __future__ import annotations

import asyncio
import functools
import io
import json
import logging
import os
import zipfile
from enum import Enum
from typing import Callable, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import ConfigurationError, CryptoError, FormatError
from .notify import Notifier, LogNotifier
from .settings import Settings


logger = logging.getLogger(__name__)

ENCRYPTED_MARKER = b"ENCRYPTED:"
COMPRESSED_MARKER = b"COMPRESSED:ENCRYPTED:"
IV_LENGTH = 12
KDF_SALT = b"cloud-snapshot-backup-salt"
KDF_ITERATIONS = 100_000
KEY_LENGTH = 32
COMPRESSION_THRESHOLD = 10 * 1024 * 1024
ZIP_MEMBER = "data.json"

DECRYPT_FAILED_MESSAGE = "Failed to decrypt backup. Please re-enter encryption key."
MISSING_KEY_MESSAGE = "Please configure an encryption key in the backup settings before proceeding."


class BlobFormat(str, Enum):
    PLAIN = "plain"
    ENCRYPTED = "encrypted"
    COMPRESSED_ENCRYPTED = "compressed-encrypted"
    CHUNKED_ENVELOPE = "chunked-envelope"


def derive_key(password: str) -> AESGCM:
    """Derive the AES-256-GCM key for `password` (PBKDF2-SHA256, fixed salt).

    Deterministic: the same password always yields the same key. The raw key
    bytes are not kept; the returned object can only encrypt and decrypt.
    """
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_LENGTH, salt=KDF_SALT, iterations=KDF_ITERATIONS)
    return AESGCM(kdf.derive(password.encode("utf-8")))


def compress(data: bytes) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
        zf.writestr(ZIP_MEMBER, data)
    return buf.getvalue()


def decompress(data: bytes) -> bytes:
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            return zf.read(ZIP_MEMBER)
    except (zipfile.BadZipFile, KeyError) as exc:
        raise FormatError("Compressed payload is not a valid archive") from exc


def classify_blob(blob: bytes) -> BlobFormat:
    """Decide which of the known variants `blob` is; raise FormatError otherwise."""
    head = bytes(blob[: len(COMPRESSED_MARKER)])
    if head.startswith(COMPRESSED_MARKER):
        return BlobFormat.COMPRESSED_ENCRYPTED
    if head.startswith(ENCRYPTED_MARKER):
        return BlobFormat.ENCRYPTED
    try:
        doc = json.loads(bytes(blob).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise FormatError("Invalid backup data format") from exc
    if not isinstance(doc, dict):
        raise FormatError("Invalid backup data format: top level is not an object")
    if doc.get("__format") == "chunked":
        return BlobFormat.CHUNKED_ENVELOPE
    return BlobFormat.PLAIN


def encrypt_payload(plaintext: bytes, key: AESGCM, *, compress_threshold: int = COMPRESSION_THRESHOLD) -> bytes:
    """Encrypt with a fresh random IV; compress first when over `compress_threshold` bytes."""
    if len(plaintext) > compress_threshold:
        marker = COMPRESSED_MARKER
        body = compress(plaintext)
        logger.info("Compressed payload %d -> %d bytes", len(plaintext), len(body))
    else:
        marker = ENCRYPTED_MARKER
        body = plaintext
    iv = os.urandom(IV_LENGTH)
    return marker + iv + key.encrypt(iv, body, None)


def decrypt_payload(blob: bytes, key: AESGCM) -> bytes:
    """Authenticate and decrypt an encrypted blob. Raises CryptoError on any mismatch."""
    fmt = classify_blob(blob)
    if fmt is BlobFormat.COMPRESSED_ENCRYPTED:
        marker_len = len(COMPRESSED_MARKER)
    elif fmt is BlobFormat.ENCRYPTED:
        marker_len = len(ENCRYPTED_MARKER)
    else:
        raise FormatError(f"Blob is not encrypted ({fmt.value})")

    iv = bytes(blob[marker_len : marker_len + IV_LENGTH])
    ciphertext = bytes(blob[marker_len + IV_LENGTH :])
    if len(iv) != IV_LENGTH:
        raise CryptoError("Encrypted blob is truncated")
    try:
        body = key.decrypt(iv, ciphertext, None)
    except InvalidTag as exc:
        raise CryptoError("Decryption failed: wrong key or corrupted data") from exc

    if fmt is BlobFormat.COMPRESSED_ENCRYPTED:
        return decompress(body)
    return body


class PayloadCodec:
    """
    Settings-aware codec used by the backup pipeline.

    - Reads bucket and encryption key from `Settings` on every call.
    - A missing key, failed encryption or failed decryption invalidates the
      stored key (failures only), notifies the user and calls every registered
      halt listener (the scheduler stops its interval) before raising.
    - Key derivation, AES work and notifier calls run in the default executor.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        notifier: Optional[Notifier] = None,
        compress_threshold: int = COMPRESSION_THRESHOLD,
    ) -> None:
        self._settings = settings
        self._notifier = notifier or LogNotifier()
        self._compress_threshold = compress_threshold
        self._halt_listeners: List[Callable[[], None]] = []

    def add_halt_listener(self, listener: Callable[[], None]) -> None:
        self._halt_listeners.append(listener)

    def _halt(self) -> None:
        for listener in self._halt_listeners:
            listener()

    async def _notify(self, message: str, *, title: str) -> None:
        # Notifiers may block on network I/O; keep the event loop free
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, functools.partial(self._notifier.alert, message, title=title))

    async def _require_key(self) -> str:
        self._settings.require_bucket()
        try:
            return self._settings.require_encryption_key()
        except ConfigurationError:
            logger.warning("No encryption key configured")
            self._halt()
            await self._notify(MISSING_KEY_MESSAGE, title="Configuration Required")
            raise

    def _invalidate_key(self) -> None:
        self._settings.clear_encryption_key()
        self._halt()

    async def encrypt(self, plaintext: bytes) -> bytes:
        password = await self._require_key()
        loop = asyncio.get_running_loop()
        try:
            key = await loop.run_in_executor(None, derive_key, password)
            return await loop.run_in_executor(
                None, lambda: encrypt_payload(plaintext, key, compress_threshold=self._compress_threshold)
            )
        except Exception as exc:
            logger.error("Encryption failed: %s", exc)
            self._invalidate_key()
            raise CryptoError("Encryption failed") from exc

    async def decrypt(self, blob: bytes) -> bytes:
        """Return the plaintext JSON payload carried by `blob`.

        Unmarked blobs are returned as-is when they parse as a JSON object
        (legacy plaintext backups, chunked envelopes); otherwise FormatError.
        """
        fmt = classify_blob(blob)
        if fmt in (BlobFormat.PLAIN, BlobFormat.CHUNKED_ENVELOPE):
            logger.info("Backup is not encrypted (%s), using as-is", fmt.value)
            return bytes(blob)

        password = await self._require_key()
        loop = asyncio.get_running_loop()
        try:
            key = await loop.run_in_executor(None, derive_key, password)
            return await loop.run_in_executor(None, decrypt_payload, blob, key)
        except Exception as exc:
            logger.error("Decryption/decompression failed: %s", exc)
            self._invalidate_key()
            await self._notify(DECRYPT_FAILED_MESSAGE, title="Decryption Failed")
            if isinstance(exc, CryptoError):
                raise
            raise CryptoError("Decryption failed") from exc


__all__ = [
    "BlobFormat",
    "PayloadCodec",
    "classify_blob",
    "compress",
    "decompress",
    "decrypt_payload",
    "derive_key",
    "encrypt_payload",
    "ENCRYPTED_MARKER",
    "COMPRESSED_MARKER",
    "IV_LENGTH",
]
