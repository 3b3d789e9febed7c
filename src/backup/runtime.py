from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

import boto3
from botocore.exceptions import ClientError

from common.codec import PayloadCodec
from common.notify import LogNotifier, Notifier, TelegramNotifier
from common.scheduler import BackupScheduler
from common.settings import ENCRYPTION_KEY, Settings, getenv, settings_from_env
from state.s3_store import S3BackupStore
from state.stores import JsonFileStringStore, ObjectStore, SqliteObjectStore, StringStore

from .pipeline import CloudSync


ENV_DATA_DIR = "BACKUP_DATA_DIR"
ENV_PARAM_PREFIX = "PARAM_PREFIX"
ENV_LOG = "BACKUP_LOG"

DEFAULT_DATA_DIR = ".data"
STRING_STORE_FILE = "local-storage.json"
OBJECT_STORE_FILE = "keyval-store.sqlite"

SSM_PARAM_NAMES = ["encryption_key", "telegram_bot_token", "telegram_chat_id"]


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                out[name] = None
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


def logging_enabled() -> bool:
    return (getenv(ENV_LOG) or "").lower() == "true"


@dataclass
class Runtime:
    strings: StringStore
    objects: ObjectStore
    settings: Settings
    notifier: Notifier
    codec: PayloadCodec
    sync: CloudSync
    scheduler: BackupScheduler


def build_runtime(
    *,
    data_dir: Optional[str] = None,
    strings: Optional[StringStore] = None,
    objects: Optional[ObjectStore] = None,
    notifier: Optional[Notifier] = None,
    transport: Optional[S3BackupStore] = None,
) -> Runtime:
    """Assemble stores, settings, codec, pipeline and scheduler from the environment.

    - Stores default to files under BACKUP_DATA_DIR (default: ./.data).
    - Env vars and, when PARAM_PREFIX is set, SSM parameters only fill settings
      that are not already stored on this device.
    - Alerts go to Telegram when a bot token and chat id are available.
    """
    base = Path(data_dir or getenv(ENV_DATA_DIR, DEFAULT_DATA_DIR))
    strings = strings if strings is not None else JsonFileStringStore(base / STRING_STORE_FILE)
    objects = objects if objects is not None else SqliteObjectStore(base / OBJECT_STORE_FILE)

    settings = Settings(strings)
    settings.seed(settings_from_env())

    params: Dict[str, Optional[str]] = {k: None for k in SSM_PARAM_NAMES}
    prefix = getenv(ENV_PARAM_PREFIX)
    if prefix:
        params = _load_ssm_params(prefix, SSM_PARAM_NAMES)
        settings.seed({ENCRYPTION_KEY: params.get("encryption_key")})

    if notifier is None:
        token = params.get("telegram_bot_token") or getenv("TELEGRAM_BOT_TOKEN")
        chat = params.get("telegram_chat_id") or getenv("TELEGRAM_CHAT_ID")
        notifier = TelegramNotifier(token, chat) if token and chat else LogNotifier()

    codec = PayloadCodec(settings, notifier=notifier)
    sync = CloudSync(
        strings=strings,
        objects=objects,
        settings=settings,
        codec=codec,
        notifier=notifier,
        transport=transport,
    )
    scheduler = BackupScheduler(backup=sync.backup, restore=sync.restore, settings=settings)
    codec.add_halt_listener(scheduler.halt)
    # New credentials may point at another bucket; size history no longer applies
    scheduler.add_reconfigure_listener(sync.reset_sizes)
    return Runtime(
        strings=strings,
        objects=objects,
        settings=settings,
        notifier=notifier,
        codec=codec,
        sync=sync,
        scheduler=scheduler,
    )


__all__ = ["Runtime", "build_runtime", "logging_enabled"]
