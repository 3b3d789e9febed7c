"""
Common utilities for cloud-snapshot-backup.

Modules:
- codec: PBKDF2/AES-GCM payload encryption with deflate compression
- settings: device settings kept in the local string store
- notify: user-facing alerts (log or Telegram)
- op_queue: single-flight FIFO of named cloud operations
- scheduler: interval-driven backup scheduler
"""

__all__ = [
    "codec",
    "errors",
    "notify",
    "op_queue",
    "scheduler",
    "settings",
]
