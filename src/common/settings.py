from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Mapping, Optional

from .errors import ConfigurationError


# Device settings persisted in the string store
ENCRYPTION_KEY = "encryption-key"
BUCKET = "aws-bucket"
ACCESS_KEY = "aws-access-key"
SECRET_KEY = "aws-secret-key"
REGION = "aws-region"
ENDPOINT = "aws-endpoint"
BACKUP_INTERVAL = "backup-interval"
SYNC_MODE = "sync-mode"
IMPORT_THRESHOLD = "import-size-threshold"
EXPORT_THRESHOLD = "export-size-threshold"
ALERT_SMALLER_CLOUD = "alert-smaller-cloud"
STATUS_HIDDEN = "sync-status-hidden"
STATUS_POSITION = "sync-status-position"
BACKUP_RUNNING = "backup-running"
LAST_TIME_BASED_BACKUP = "last-time-based-backup"
LAST_DAILY_BACKUP = "last-daily-backup-in-s3"
LAST_CLOUD_SYNC = "last-cloud-sync"
EXTENSION_URLS = "extension-urls"

# Keys a restored snapshot must never overwrite on this device
PRESERVED_KEYS: FrozenSet[str] = frozenset(
    {
        IMPORT_THRESHOLD,
        EXPORT_THRESHOLD,
        ALERT_SMALLER_CLOUD,
        ENCRYPTION_KEY,
        BUCKET,
        ACCESS_KEY,
        SECRET_KEY,
        REGION,
        ENDPOINT,
        BACKUP_INTERVAL,
        SYNC_MODE,
        STATUS_HIDDEN,
        STATUS_POSITION,
        BACKUP_RUNNING,
        LAST_TIME_BASED_BACKUP,
        LAST_DAILY_BACKUP,
        LAST_CLOUD_SYNC,
    }
)

DEFAULT_BACKUP_INTERVAL = 60.0
DEFAULT_IMPORT_THRESHOLD = 1.0
DEFAULT_EXPORT_THRESHOLD = 10.0
CANONICAL_SCRIPT_URL = "https://cloud-snapshot-backup.github.io/cloud-snapshot-backup/s3.js"


def getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    return v if v not in (None, "") else default


def _positive_float(raw: Optional[str], default: float) -> float:
    # Unset, unparsable, zero and negative values all fall back to the default
    try:
        val = float(raw) if raw is not None else 0.0
    except ValueError:
        return default
    return val if val > 0 else default


@dataclass(frozen=True)
class S3Credentials:
    bucket: str
    region: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    endpoint_url: Optional[str] = None


class Settings:
    """
    Typed access to the device settings kept in the local string store.

    The string store is the source of truth; nothing is cached here, so a
    setting changed by the host is visible on the next read.
    """

    def __init__(self, store) -> None:
        self._store = store

    @property
    def store(self):
        return self._store

    def _get(self, key: str) -> Optional[str]:
        val = self._store.get(key)
        return val if val not in (None, "") else None

    # -------- Credentials --------
    @property
    def encryption_key(self) -> Optional[str]:
        return self._get(ENCRYPTION_KEY)

    def clear_encryption_key(self) -> None:
        self._store.remove(ENCRYPTION_KEY)

    @property
    def bucket(self) -> Optional[str]:
        return self._get(BUCKET)

    def require_bucket(self) -> str:
        bucket = self.bucket
        if not bucket:
            raise ConfigurationError("Backup not configured: missing bucket name")
        return bucket

    def require_encryption_key(self) -> str:
        key = self.encryption_key
        if not key:
            raise ConfigurationError("Encryption key not configured")
        return key

    def s3_credentials(self) -> S3Credentials:
        return S3Credentials(
            bucket=self.require_bucket(),
            region=self._get(REGION),
            access_key=self._get(ACCESS_KEY),
            secret_key=self._get(SECRET_KEY),
            endpoint_url=self._get(ENDPOINT),
        )

    # -------- Tunables --------
    @property
    def backup_interval_seconds(self) -> float:
        return _positive_float(self._get(BACKUP_INTERVAL), DEFAULT_BACKUP_INTERVAL)

    @property
    def import_threshold_percent(self) -> float:
        return _positive_float(self._get(IMPORT_THRESHOLD), DEFAULT_IMPORT_THRESHOLD)

    @property
    def export_threshold_percent(self) -> float:
        return _positive_float(self._get(EXPORT_THRESHOLD), DEFAULT_EXPORT_THRESHOLD)

    @property
    def alert_on_smaller_cloud(self) -> bool:
        return self._get(ALERT_SMALLER_CLOUD) == "true"

    # -------- Bookkeeping --------
    def set_backup_running(self, running: bool) -> None:
        self._store.set(BACKUP_RUNNING, "true" if running else "false")

    def record_cloud_sync(self, *, at_ms: Optional[int] = None) -> None:
        self._store.set(LAST_CLOUD_SYNC, str(at_ms if at_ms is not None else int(time.time() * 1000)))

    @property
    def last_cloud_sync_ms(self) -> Optional[int]:
        return _optional_int(self._get(LAST_CLOUD_SYNC))

    @property
    def last_time_based_backup_ms(self) -> Optional[int]:
        return _optional_int(self._get(LAST_TIME_BASED_BACKUP))

    def record_time_based_backup(self, at_ms: int) -> None:
        self._store.set(LAST_TIME_BASED_BACKUP, str(at_ms))

    @property
    def last_daily_backup(self) -> Optional[str]:
        return self._get(LAST_DAILY_BACKUP)

    def record_daily_backup(self, day: str) -> None:
        self._store.set(LAST_DAILY_BACKUP, day)

    # -------- Loader registration --------
    def extension_urls(self) -> List[str]:
        raw = self._get(EXTENSION_URLS)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError:
            return []
        return [u for u in data if isinstance(u, str)] if isinstance(data, list) else []

    def ensure_extension_registered(self, url: str = CANONICAL_SCRIPT_URL) -> bool:
        """Append `url` to the loader list unless a URL for the same script is already there.

        Returns True when the list was changed.
        """
        urls = self.extension_urls()
        script_name = url.rsplit("/", 1)[-1]
        if any(u == url or u.endswith("/" + script_name) for u in urls):
            return False
        urls.append(url)
        self._store.set(EXTENSION_URLS, json.dumps(urls))
        return True

    # -------- Bootstrap --------
    def seed(self, values: Mapping[str, Optional[str]]) -> List[str]:
        """Fill unset settings from `values`; existing device settings win.

        Returns the keys that were written.
        """
        written: List[str] = []
        for key, val in values.items():
            if val in (None, "") or self._get(key) is not None:
                continue
            self._store.set(key, str(val))
            written.append(key)
        return written


# Environment variables that may seed unset device settings
ENV_TO_SETTING: Dict[str, str] = {
    "BACKUP_BUCKET": BUCKET,
    "BACKUP_ENCRYPTION_KEY": ENCRYPTION_KEY,
    "AWS_REGION": REGION,
    "BACKUP_ENDPOINT_URL": ENDPOINT,
    "BACKUP_INTERVAL": BACKUP_INTERVAL,
}


def settings_from_env() -> Dict[str, Optional[str]]:
    return {setting: getenv(env) for env, setting in ENV_TO_SETTING.items()}


def _optional_int(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


__all__ = [
    "Settings",
    "S3Credentials",
    "PRESERVED_KEYS",
    "CANONICAL_SCRIPT_URL",
    "getenv",
    "settings_from_env",
]
