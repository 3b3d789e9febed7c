from __future__ import annotations


class CloudBackupError(RuntimeError):
    """Base error for backup/restore failures."""


class ConfigurationError(CloudBackupError):
    """Bucket or encryption key missing; the user has to configure them."""


class CryptoError(CloudBackupError):
    """Wrong key or corrupted ciphertext. Stored key material is invalidated."""


class FormatError(CloudBackupError):
    """Payload is neither plaintext JSON nor a recognized encrypted envelope."""


class TransientIOError(CloudBackupError):
    """A single store key or object-store call failed; safe to skip or retry."""


class FatalIOError(CloudBackupError):
    """The overall backup/restore network operation failed."""


__all__ = [
    "CloudBackupError",
    "ConfigurationError",
    "CryptoError",
    "FormatError",
    "TransientIOError",
    "FatalIOError",
]
