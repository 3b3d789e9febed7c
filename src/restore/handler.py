from __future__ import annotations

import asyncio
from typing import Any, Dict

from backup.runtime import build_runtime


async def _restore_once() -> Dict[str, Any]:
    rt = build_runtime()
    return await rt.sync.restore()


def run_once() -> Dict[str, Any]:
    """
    Download the cloud copy and apply it to the local stores once.

    Device-local settings (credentials, interval, sync timestamps) are kept.
    Returns: {"ok": True, "imported": bool, ...}; {"imported": False} when the
    bucket holds no backup yet.
    """
    return asyncio.run(_restore_once())


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    return run_once()
