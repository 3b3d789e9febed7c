from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from .runtime import build_runtime, logging_enabled


logger = logging.getLogger(__name__)


async def _backup_once() -> Dict[str, Any]:
    rt = build_runtime()
    return await rt.sync.backup()


def run_once() -> Dict[str, Any]:
    """
    Run a single backup cycle outside the scheduler.

    - Builds the runtime from env (see `backup.runtime.build_runtime`).
    - Snapshots both local stores, encrypts and uploads to the configured bucket.

    Returns: {"ok": True, "skipped": bool, "bytes": N, ...}.
    Raises ConfigurationError/CryptoError/FatalIOError on failure.
    """
    return asyncio.run(_backup_once())


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    return run_once()


async def serve() -> None:
    """Long-running mode: import once, then back up on the configured interval."""
    rt = build_runtime()
    try:
        await rt.scheduler.boot()
        await asyncio.Event().wait()
    finally:
        await rt.scheduler.aclose()


def _configure_logging() -> None:
    if logging_enabled():
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def main() -> None:
    _configure_logging()
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == "__main__":
    main()
