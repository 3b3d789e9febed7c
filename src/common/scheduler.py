"""
Periodic backup scheduler.

Phases: IDLE -> STARTING -> RUNNING, and on a failed backup
RUNNING -> FAILED -> (restart after a delay) -> STARTING -> RUNNING.

All flags live in one `SchedulerState` owned by the scheduler. Mutual
exclusion relies on the event loop: flags are checked and set without an
await in between.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from .op_queue import OperationQueue
from .settings import Settings


logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 15.0
START_DEBOUNCE_SECONDS = 0.1
RESTART_DELAY_SECONDS = 5.0

Operation = Callable[[], Awaitable[Any]]


class SchedulerPhase(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"


@dataclass
class SchedulerState:
    running: bool = False
    waiting_for_user_input: bool = False
    page_loaded: bool = False
    visible: bool = True
    export_in_flight: bool = False
    import_in_flight: bool = False
    last_import_succeeded: bool = False


class BackupScheduler:
    """
    Drives `backup` on an interval with at most one backup in flight.

    - `start_interval()` is debounced and guarded against double starts; once
      confirmed it queues an immediate backup and ticks every
      `max(backup-interval, min_interval)` seconds.
    - `perform_backup()` skips while waiting for user input, before the page is
      loaded, while hidden, or before a successful import; a call during an
      in-flight backup is re-queued instead of run.
    - A failed backup stops the interval and schedules one restart attempt.
    - `halt()` is the codec's hook for a missing or invalidated key.
    """

    def __init__(
        self,
        *,
        backup: Operation,
        restore: Operation,
        settings: Settings,
        queue: Optional[OperationQueue] = None,
        min_interval: float = MIN_INTERVAL_SECONDS,
        debounce: float = START_DEBOUNCE_SECONDS,
        restart_delay: float = RESTART_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._backup = backup
        self._restore = restore
        self._settings = settings
        self.queue = queue or OperationQueue()
        self.state = SchedulerState()
        self._phase = SchedulerPhase.IDLE
        self._min_interval = min_interval
        self._debounce = debounce
        self._restart_delay = restart_delay
        self._sleep = sleep
        self._timer: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()
        self._reconfigure_listeners: List[Callable[[], None]] = []

    def add_reconfigure_listener(self, listener: Callable[[], None]) -> None:
        """Call `listener` whenever the user finishes changing the configuration."""
        self._reconfigure_listeners.append(listener)

    @property
    def phase(self) -> SchedulerPhase:
        return self._phase

    @property
    def interval_seconds(self) -> float:
        return max(self._settings.backup_interval_seconds, self._min_interval)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    # -------- Interval --------
    def start_interval(self) -> None:
        if self.state.waiting_for_user_input:
            logger.info("Skipping interval start - waiting for user input")
            return
        if self.state.running:
            logger.info("Backup interval already running, skipping start")
            return

        logger.info("Starting backup interval...")
        if self._timer is not None:
            logger.info("Clearing existing interval")
            self._clear_timer()
        self._settings.set_backup_running(False)
        self._phase = SchedulerPhase.STARTING
        self._spawn(self._confirm_start())

    async def _confirm_start(self) -> None:
        await self._sleep(self._debounce)
        if self.state.waiting_for_user_input or self.state.running:
            logger.info("Another backup interval was started or waiting for user input, skipping")
            return
        if self._phase is not SchedulerPhase.STARTING:
            logger.info("Backup interval start was cancelled, skipping")
            return

        seconds = self.interval_seconds
        self._settings.set_backup_running(True)
        logger.info("Setting backup interval to %s seconds", seconds)
        self.queue.enqueue("immediate-backup", self.perform_backup)
        self.state.running = True
        self._phase = SchedulerPhase.RUNNING
        self._timer = self._spawn(self._tick_loop(seconds))
        logger.info("Backup interval started")

    async def _tick_loop(self, seconds: float) -> None:
        me = asyncio.current_task()
        while True:
            await self._sleep(seconds)
            if not self.state.running or self._timer is not me:
                logger.info("Backup interval flag was cleared, stopping interval")
                return
            logger.debug("Interval triggered")
            try:
                await self.perform_backup()
            except Exception:
                logger.exception("Unhandled error in backup interval")

    def _clear_timer(self) -> None:
        # A sleeping tick loop notices the cleared handle when it wakes up
        self._timer = None
        self.state.running = False

    def stop_interval(self) -> None:
        if self._phase is SchedulerPhase.STARTING:
            # The debounced start sees the phase change and gives up
            logger.info("Cancelling pending backup interval start")
            self._phase = SchedulerPhase.IDLE
        if self._timer is None and not self.state.running:
            return
        logger.info("Clearing existing backup interval")
        self._clear_timer()
        self._settings.set_backup_running(False)
        if self._phase is not SchedulerPhase.FAILED:
            self._phase = SchedulerPhase.IDLE

    def halt(self) -> None:
        """Stop backing up until the user fixes the configuration."""
        self.stop_interval()
        self.state.last_import_succeeded = False
        self._phase = SchedulerPhase.IDLE

    # -------- Operations --------
    async def perform_backup(self) -> None:
        if self.state.waiting_for_user_input:
            logger.info("Backup skipped - waiting for user input")
            return
        if not self.state.page_loaded:
            logger.info("Page not fully loaded, skipping backup")
            return
        if not self.state.visible:
            logger.info("Tab is hidden, skipping backup")
            return
        if self.state.export_in_flight:
            logger.info("Previous backup still in progress, queueing this iteration")
            self.queue.enqueue("backup", self.perform_backup)
            return
        if not self.state.last_import_succeeded:
            logger.info("Import not yet successful, skipping backup")
            return

        self.state.export_in_flight = True
        try:
            await self._backup()
        except Exception:
            logger.exception("Backup failed")
            self._on_backup_failed()
        else:
            logger.info("Backup completed")
        finally:
            self.state.export_in_flight = False

    def _on_backup_failed(self) -> None:
        if self.state.running:
            self.stop_interval()
        self._phase = SchedulerPhase.FAILED
        self._spawn(self._restart_later())

    async def _restart_later(self) -> None:
        await self._sleep(self._restart_delay)
        if self.state.running or self._phase is not SchedulerPhase.FAILED:
            return
        logger.info("Restarting backup interval after failure")
        self._phase = SchedulerPhase.IDLE
        self.start_interval()

    async def perform_restore(self) -> None:
        """Import the cloud copy; success marks local state as trustworthy."""
        if self.state.import_in_flight:
            logger.info("Restore already in progress, skipping")
            return
        self.state.import_in_flight = True
        try:
            await self._restore()
        except Exception:
            self.state.last_import_succeeded = False
            raise
        else:
            self.state.last_import_succeeded = True
        finally:
            self.state.import_in_flight = False

    def enqueue_backup(self) -> bool:
        return self.queue.enqueue("immediate-backup", self.perform_backup)

    def enqueue_restore(self) -> bool:
        return self.queue.enqueue("restore", self.perform_restore)

    # -------- Host lifecycle --------
    async def boot(self) -> None:
        """Page load: import the cloud copy once, then start the interval."""
        self.state.page_loaded = True
        self.enqueue_restore()
        await self.queue.join()
        self.start_interval()

    def set_visibility(self, visible: bool) -> None:
        self.state.visible = visible
        if visible and not self.state.running:
            logger.info("Tab became visible, resuming backup interval")
            self.start_interval()

    def begin_user_input(self) -> None:
        self.state.waiting_for_user_input = True
        self.stop_interval()

    def end_user_input(self) -> None:
        """Configuration changed: re-import and restart the interval."""
        self.state.waiting_for_user_input = False
        for listener in self._reconfigure_listeners:
            listener()
        self.enqueue_restore()
        self.start_interval()

    async def aclose(self) -> None:
        """Cancel timers and pending restarts (process shutdown only)."""
        self.stop_interval()
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._phase = SchedulerPhase.IDLE


__all__ = ["BackupScheduler", "SchedulerPhase", "SchedulerState"]
