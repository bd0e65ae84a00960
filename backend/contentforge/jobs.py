from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

Work = Callable[[], Awaitable[None]]


class JobQueue:
    """Background work queue drained by a small worker pool.

    Work is keyed (record id, session id). A key that is queued or running
    cannot be submitted again, so one record never generates twice at once.
    Workers start lazily inside the running event loop on first submit.
    """

    def __init__(self, workers: int = 4) -> None:
        self.size = max(1, int(workers))
        self._queue: Optional[asyncio.Queue[Tuple[str, Work]]] = None
        self._workers: List[asyncio.Task] = []
        self._inflight: Set[str] = set()

    def is_active(self, key: str) -> bool:
        return key in self._inflight

    def submit(self, key: str, work: Work) -> bool:
        """Enqueue `work` under `key`. Returns False if the key is already in flight."""
        if key in self._inflight:
            logger.info("job %s already queued or running; ignoring duplicate submit", key)
            return False
        self._ensure_workers()
        assert self._queue is not None
        self._inflight.add(key)
        self._queue.put_nowait((key, work))
        return True

    def _ensure_workers(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._workers = [t for t in self._workers if not t.done()]
        while len(self._workers) < self.size:
            self._workers.append(asyncio.create_task(self._worker(len(self._workers))))

    async def _worker(self, n: int) -> None:
        assert self._queue is not None
        while True:
            key, work = await self._queue.get()
            try:
                await work()
            except asyncio.CancelledError:
                raise
            except Exception:
                # Work functions record their own failures; this is the last line.
                logger.exception("worker %d: job %s crashed", n, key)
            finally:
                self._inflight.discard(key)
                self._queue.task_done()

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        for t in self._workers:
            t.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
        self._inflight.clear()
