from __future__ import annotations

import asyncio

import pytest

from common.op_queue import OperationQueue
from common.scheduler import BackupScheduler, SchedulerPhase
from common.settings import Settings
from state.stores import MemoryStringStore


class Calls:
    def __init__(self, *, fail_first: int = 0) -> None:
        self.count = 0
        self._fail_first = fail_first

    async def __call__(self):
        self.count += 1
        if self.count <= self._fail_first:
            raise RuntimeError("upload failed")


def _scheduler(*, interval="10", backup=None, restore=None, **kwargs):
    store = MemoryStringStore({"backup-interval": interval})
    kwargs.setdefault("min_interval", 0)
    kwargs.setdefault("debounce", 0)
    kwargs.setdefault("restart_delay", 0.02)
    scheduler = BackupScheduler(
        backup=backup or Calls(),
        restore=restore or Calls(),
        settings=Settings(store),
        queue=OperationQueue(settle_delay=0, failure_delay=0),
        **kwargs,
    )
    return scheduler, store


def _ready(scheduler):
    scheduler.state.page_loaded = True
    scheduler.state.last_import_succeeded = True


def test_interval_has_a_floor():
    scheduler, _ = _scheduler(interval="10", min_interval=15)
    assert scheduler.interval_seconds == 15
    scheduler, _ = _scheduler(interval="120", min_interval=15)
    assert scheduler.interval_seconds == 120
    scheduler, _ = _scheduler(interval="0", min_interval=15)
    assert scheduler.interval_seconds == 60


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "flags",
    [
        {"page_loaded": False},
        {"visible": False},
        {"waiting_for_user_input": True},
        {"last_import_succeeded": False},
    ],
)
async def test_backup_guards(flags):
    backup = Calls()
    scheduler, _ = _scheduler(backup=backup)
    _ready(scheduler)
    for name, value in flags.items():
        setattr(scheduler.state, name, value)

    await scheduler.perform_backup()

    assert backup.count == 0
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_backup_runs_when_ready():
    backup = Calls()
    scheduler, _ = _scheduler(backup=backup)
    _ready(scheduler)

    await scheduler.perform_backup()

    assert backup.count == 1
    assert scheduler.state.export_in_flight is False
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_backup_during_export_is_requeued():
    backup = Calls()
    scheduler, _ = _scheduler(backup=backup)
    _ready(scheduler)
    scheduler.state.export_in_flight = True

    await scheduler.perform_backup()

    assert backup.count == 0
    assert scheduler.queue.names == ["backup"]
    scheduler.state.export_in_flight = False
    await scheduler.queue.join()
    assert backup.count == 1
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_start_runs_immediate_backup_then_ticks():
    backup = Calls()
    scheduler, store = _scheduler(interval="0.01", backup=backup)
    _ready(scheduler)

    scheduler.start_interval()
    assert scheduler.phase is SchedulerPhase.STARTING

    await asyncio.sleep(0.06)

    assert scheduler.phase is SchedulerPhase.RUNNING
    assert store.get("backup-running") == "true"
    assert backup.count >= 2
    await scheduler.aclose()
    assert scheduler.phase is SchedulerPhase.IDLE


@pytest.mark.asyncio
async def test_double_start_yields_one_interval():
    backup = Calls()
    scheduler, _ = _scheduler(backup=backup)
    _ready(scheduler)

    scheduler.start_interval()
    scheduler.start_interval()
    await asyncio.sleep(0.02)
    scheduler.start_interval()
    await asyncio.sleep(0.02)

    assert scheduler.state.running is True
    assert backup.count == 1
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_stopped_interval_does_not_tick():
    backup = Calls()
    scheduler, store = _scheduler(interval="0.01", backup=backup)
    _ready(scheduler)
    scheduler.start_interval()
    await asyncio.sleep(0.03)

    scheduler.stop_interval()
    seen = backup.count
    await asyncio.sleep(0.04)

    assert backup.count == seen
    assert store.get("backup-running") == "false"
    assert scheduler.phase is SchedulerPhase.IDLE
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_user_input_blocks_start_until_finished():
    backup, restore = Calls(), Calls()
    scheduler, _ = _scheduler(backup=backup, restore=restore)
    _ready(scheduler)

    scheduler.begin_user_input()
    scheduler.start_interval()
    await asyncio.sleep(0.02)
    assert scheduler.state.running is False
    assert backup.count == 0

    scheduler.end_user_input()
    await asyncio.sleep(0.02)
    await scheduler.queue.join()

    assert restore.count == 1
    assert scheduler.state.running is True
    assert backup.count == 1
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_failed_backup_restarts_interval():
    backup = Calls(fail_first=1)
    scheduler, _ = _scheduler(backup=backup, restart_delay=0.2)
    _ready(scheduler)

    scheduler.start_interval()
    await asyncio.sleep(0.02)
    assert scheduler.phase is SchedulerPhase.FAILED
    assert scheduler.state.running is False

    await asyncio.sleep(0.3)

    assert scheduler.phase is SchedulerPhase.RUNNING
    assert backup.count == 2
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_halt_stops_and_requires_new_import():
    backup = Calls()
    scheduler, _ = _scheduler(backup=backup)
    _ready(scheduler)
    scheduler.start_interval()
    await asyncio.sleep(0.02)
    assert backup.count == 1

    scheduler.halt()
    await scheduler.perform_backup()

    assert scheduler.phase is SchedulerPhase.IDLE
    assert scheduler.state.running is False
    assert scheduler.state.last_import_succeeded is False
    assert backup.count == 1
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_boot_imports_then_starts():
    backup, restore = Calls(), Calls()
    scheduler, _ = _scheduler(backup=backup, restore=restore)

    await scheduler.boot()
    await asyncio.sleep(0.02)

    assert restore.count == 1
    assert scheduler.state.last_import_succeeded is True
    assert scheduler.phase is SchedulerPhase.RUNNING
    assert backup.count == 1
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_boot_with_failed_import_never_backs_up():
    backup, restore = Calls(), Calls(fail_first=1)
    scheduler, _ = _scheduler(backup=backup, restore=restore)

    await scheduler.boot()
    await asyncio.sleep(0.02)

    assert restore.count == 1
    assert scheduler.state.last_import_succeeded is False
    assert backup.count == 0
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_becoming_visible_restarts_interval():
    scheduler, _ = _scheduler()
    _ready(scheduler)

    scheduler.set_visibility(False)
    assert scheduler.phase is SchedulerPhase.IDLE

    scheduler.set_visibility(True)
    assert scheduler.phase is SchedulerPhase.STARTING
    await asyncio.sleep(0.01)
    assert scheduler.phase is SchedulerPhase.RUNNING
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_halt_during_start_debounce_keeps_interval_stopped():
    backup = Calls()
    scheduler, store = _scheduler(backup=backup, debounce=0.05)
    _ready(scheduler)

    scheduler.start_interval()
    assert scheduler.phase is SchedulerPhase.STARTING
    scheduler.halt()
    await asyncio.sleep(0.1)

    assert scheduler.phase is SchedulerPhase.IDLE
    assert scheduler.state.running is False
    assert store.get("backup-running") == "false"
    assert backup.count == 0
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_stop_during_start_debounce_then_start_again():
    backup = Calls()
    scheduler, _ = _scheduler(backup=backup, debounce=0.05)
    _ready(scheduler)

    scheduler.start_interval()
    scheduler.stop_interval()
    await asyncio.sleep(0.1)
    assert scheduler.state.running is False

    scheduler.start_interval()
    await asyncio.sleep(0.1)
    assert scheduler.phase is SchedulerPhase.RUNNING
    assert backup.count == 1
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_end_user_input_notifies_reconfigure_listeners():
    scheduler, _ = _scheduler()
    seen = []
    scheduler.add_reconfigure_listener(lambda: seen.append("reset"))

    scheduler.begin_user_input()
    assert seen == []
    scheduler.end_user_input()

    assert seen == ["reset"]
    await scheduler.queue.join()
    await scheduler.aclose()
