from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, List, Optional


logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class QueuedOperation:
    name: str
    action: Action


class OperationQueue:
    """
    FIFO of named cloud operations, run one at a time.

    - `enqueue` drops an operation whose name equals the current tail's name
      (the tail may be the operation that is running right now).
    - The head is removed only after its action settles. Success waits
      `settle_delay` before the next item; failure is logged, the item is
      dropped and the queue waits `failure_delay`.
    - Processing is single-flight: `process()` while already processing is a no-op.

    Must be used from within a running event loop.
    """

    def __init__(
        self,
        *,
        settle_delay: float = 1.0,
        failure_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._items: Deque[QueuedOperation] = deque()
        self._processing = False
        self._task: Optional[asyncio.Task] = None
        self._settle_delay = settle_delay
        self._failure_delay = failure_delay
        self._sleep = sleep

    def __len__(self) -> int:
        return len(self._items)

    @property
    def names(self) -> List[str]:
        return [op.name for op in self._items]

    @property
    def is_processing(self) -> bool:
        return self._processing

    def enqueue(self, name: str, action: Action) -> bool:
        """Append `(name, action)` unless it duplicates the tail; start processing.

        Returns False when the operation was coalesced away.
        """
        if self._items and self._items[-1].name == name:
            logger.info("Skipping duplicate operation: %s", name)
            return False
        self._items.append(QueuedOperation(name=name, action=action))
        logger.info("Added %s to cloud operation queue", name)
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.process())
        return True

    async def process(self) -> None:
        if self._processing or not self._items:
            return
        self._processing = True
        logger.info("Processing cloud operation queue (%d items)", len(self._items))
        try:
            while self._items:
                op = self._items[0]
                try:
                    logger.info("Executing queued operation: %s", op.name)
                    await op.action()
                except Exception:
                    logger.exception("Error executing queued operation %s", op.name)
                    self._items.popleft()
                    await self._sleep(self._failure_delay)
                else:
                    # The finished item stays the tail while backend state settles
                    await self._sleep(self._settle_delay)
                    self._items.popleft()
                    logger.info("Completed operation: %s", op.name)
        finally:
            self._processing = False
        logger.info("Cloud operation queue processing completed")

    async def join(self) -> None:
        """Wait until the queue has been drained."""
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)


__all__ = ["OperationQueue", "QueuedOperation"]
