"""In-memory bounded-concurrency processing queue.

Document ids wait in a FIFO backlog; at most ``concurrency`` jobs run at the
same time as asyncio tasks. The backlog is volatile: after a restart the
document store is re-scanned and unfinished documents are enqueued again.

All state is mutated from the event loop thread only, so admission needs no
lock.
"""

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable

from pydantic import BaseModel

from services.shared import metrics

logger = logging.getLogger(__name__)

JobHandler = Callable[[str], Awaitable[None]]


class QueueHealth(BaseModel):
    queued: int
    active_jobs: int


class ProcessingQueue:
    """Drives document ids through a job handler with bounded concurrency.

    A document id is never queued or running twice at the same time: enqueuing
    an id that is already claimed is a no-op.
    """

    def __init__(self, handler: JobHandler, concurrency: int = 2) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._handler = handler
        self._concurrency = concurrency
        self._backlog: deque[str] = deque()
        self._claimed: set[str] = set()
        self._active = 0
        self._tasks: set[asyncio.Task[None]] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def concurrency(self) -> int:
        return self._concurrency

    def enqueue(self, document_id: str) -> bool:
        """Append a document to the backlog and try to start work.

        Must be called from the event loop.

        Returns:
            False if the document was already queued or running
        """
        if document_id in self._claimed:
            logger.debug(f"Document {document_id} already queued, ignoring")
            return False
        self._claimed.add(document_id)
        self._backlog.append(document_id)
        self._idle.clear()
        self._admit_next()
        return True

    def health(self) -> QueueHealth:
        return QueueHealth(queued=len(self._backlog), active_jobs=self._active)

    async def join(self) -> None:
        """Wait until the backlog is empty and no job is running."""
        await self._idle.wait()

    def _admit_next(self) -> None:
        while self._active < self._concurrency and self._backlog:
            document_id = self._backlog.popleft()
            self._active += 1
            task = asyncio.create_task(self._run(document_id), name=f"process-{document_id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        self._update_gauges()

    async def _run(self, document_id: str) -> None:
        try:
            await self._handler(document_id)
        except Exception:
            logger.exception(f"Failed to process document {document_id}")
        finally:
            self._active -= 1
            self._claimed.discard(document_id)
            self._admit_next()
            if self._active == 0 and not self._backlog:
                self._idle.set()

    def _update_gauges(self) -> None:
        metrics.queue_backlog.set(len(self._backlog))
        metrics.queue_active_jobs.set(self._active)

    async def shutdown(self) -> None:
        """Drop the backlog and wait for running jobs to finish."""
        dropped = len(self._backlog)
        for document_id in self._backlog:
            self._claimed.discard(document_id)
        self._backlog.clear()
        if dropped:
            logger.info(f"Dropped {dropped} queued documents, they are recovered on next start")
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._idle.set()
        self._update_gauges()
