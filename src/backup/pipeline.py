from __future__ import annotations

import asyncio
import functools
import logging
import time
from datetime import datetime, UTC
from typing import Any, Callable, Dict, Optional

from common.codec import PayloadCodec
from common.notify import LogNotifier, Notifier
from common.settings import Settings
from state.s3_store import S3BackupStore
from state.serializer import (
    CHUNK_SIZE,
    MAX_PAYLOAD_SIZE,
    apply_snapshot,
    build_snapshot,
    finalize_for_transport,
)
from state.stores import ObjectStore, StringStore


logger = logging.getLogger(__name__)

TIME_BACKUP_INTERVAL_MINUTES = 15
TIME_BACKUP_PREFIX = f"T-{TIME_BACKUP_INTERVAL_MINUTES}-"
DAILY_BACKUP_PREFIX = "daily/"


class CloudSync:
    """
    Backup and restore pipelines between the local stores and S3.

    backup:  snapshot -> finalize -> encrypt -> upload (+ rolling copies)
    restore: download -> decrypt -> apply

    The S3 store is built from the current settings on every run unless one is
    injected, so credential changes take effect on the next cycle. Payload
    sizes seen by this process feed the smaller-cloud guard.
    """

    def __init__(
        self,
        *,
        strings: StringStore,
        objects: ObjectStore,
        settings: Settings,
        codec: PayloadCodec,
        notifier: Optional[Notifier] = None,
        transport: Optional[S3BackupStore] = None,
        transport_factory: Optional[Callable[[Settings], S3BackupStore]] = None,
        chunk_size: int = CHUNK_SIZE,
        max_payload_size: int = MAX_PAYLOAD_SIZE,
        rolling_copies: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._strings = strings
        self._objects = objects
        self._settings = settings
        self._codec = codec
        self._notifier = notifier or LogNotifier()
        self._transport = transport
        self._transport_factory = transport_factory or S3BackupStore.from_settings
        self._chunk_size = chunk_size
        self._max_payload_size = max_payload_size
        self._rolling_copies = rolling_copies
        self._clock = clock
        self.cloud_size = 0
        self.local_size = 0

    def reset_sizes(self) -> None:
        self.cloud_size = 0
        self.local_size = 0

    def _store(self) -> S3BackupStore:
        if self._transport is not None:
            return self._transport
        return self._transport_factory(self._settings)

    async def _local_payload(self) -> bytes:
        snapshot = await build_snapshot(self._strings, self._objects, chunk_size=self._chunk_size)
        return finalize_for_transport(snapshot, max_size=self._max_payload_size, chunk_size=self._chunk_size)

    async def _confirm_shrink(self, *, new_size: int, old_size: int, threshold: float, what: str) -> bool:
        """True when the operation may proceed despite `new_size` being smaller."""
        if not self._settings.alert_on_smaller_cloud or old_size <= 0:
            return True
        shrink = (old_size - new_size) / old_size * 100
        if shrink <= threshold:
            return True
        message = (
            f"The {what} copy ({new_size / 1024:.1f} KB) is {shrink:.1f}% smaller than the "
            f"current one ({old_size / 1024:.1f} KB). Do you want to proceed?"
        )
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, functools.partial(self._notifier.confirm, message, title="Smaller Backup Detected")
        )

    async def backup(self) -> Dict[str, Any]:
        bucket = self._settings.require_bucket()
        store = self._store()
        await store.reap_stale_multipart_sessions()

        payload = await self._local_payload()
        self.local_size = len(payload)
        logger.info("Backup payload: %.2f MB", len(payload) / 1024 / 1024)
        if not await self._confirm_shrink(
            new_size=len(payload),
            old_size=self.cloud_size,
            threshold=self._settings.export_threshold_percent,
            what="local",
        ):
            logger.warning("Backup skipped: local data is smaller than the cloud copy")
            return {"ok": True, "skipped": True, "bytes": 0}

        blob = await self._codec.encrypt(payload)
        await store.upload(blob)
        self.cloud_size = len(payload)
        now_ms = int(self._clock() * 1000)
        self._settings.record_cloud_sync(at_ms=now_ms)

        copies = await self._write_rolling_copies(store, blob, now_ms) if self._rolling_copies else []
        return {"ok": True, "skipped": False, "bucket": bucket, "key": store.key, "bytes": len(blob), "copies": copies}

    async def _write_rolling_copies(self, store: S3BackupStore, blob: bytes, now_ms: int) -> list[str]:
        written: list[str] = []
        last_time_based = self._settings.last_time_based_backup_ms
        if last_time_based is None or now_ms - last_time_based >= TIME_BACKUP_INTERVAL_MINUTES * 60 * 1000:
            key = TIME_BACKUP_PREFIX + store.key
            await store.upload(blob, key=key)
            self._settings.record_time_based_backup(now_ms)
            written.append(key)

        today = datetime.fromtimestamp(now_ms / 1000, UTC).strftime("%Y%m%d")
        if self._settings.last_daily_backup != today:
            key = f"{DAILY_BACKUP_PREFIX}{today}-{store.key}"
            await store.upload(blob, key=key)
            self._settings.record_daily_backup(today)
            written.append(key)
        return written

    async def restore(self) -> Dict[str, Any]:
        self._settings.require_bucket()
        store = self._store()
        blob = await store.download()
        if blob is None:
            logger.info("No cloud backup found, nothing to import")
            return {"ok": True, "imported": False}

        payload = await self._codec.decrypt(blob)
        if self._settings.alert_on_smaller_cloud:
            self.local_size = len(await self._local_payload())
        if not await self._confirm_shrink(
            new_size=len(payload),
            old_size=self.local_size,
            threshold=self._settings.import_threshold_percent,
            what="cloud",
        ):
            logger.warning("Import skipped: cloud copy is smaller than local data")
            return {"ok": True, "imported": False, "skipped": True}

        result = await apply_snapshot(payload, self._strings, self._objects)
        self.cloud_size = len(payload)
        self._settings.record_cloud_sync(at_ms=int(self._clock() * 1000))
        return {
            "ok": True,
            "imported": True,
            "strings": result.strings_written,
            "objects": result.objects_written,
            "skipped_keys": result.strings_skipped + result.objects_skipped,
            "local_data_modified": result.local_data_modified,
        }


__all__ = ["CloudSync"]
