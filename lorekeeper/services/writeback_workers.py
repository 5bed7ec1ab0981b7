"""Background worker pool for the memory writeback pipeline."""

import asyncio
import logging
from typing import List, Optional

from lorekeeper.services.memory_writeback import (
    MemoryWritebackPipeline, ProcessOutcome, default_worker_id
)

logger = logging.getLogger(__name__)


class WritebackWorkerPool:
    """
    Runs N asyncio workers that drain the pending-write queue.
    
    Each worker calls the synchronous ``process_next`` in a thread, so
    embedding and database work never block the event loop. Workers keep
    processing while there is eligible work and otherwise sleep for the
    poll interval or until ``notify()`` is called.
    """
    
    def __init__(
        self,
        pipeline: MemoryWritebackPipeline,
        workers: int = 2,
        poll_interval_seconds: float = 2.0
    ):
        self.pipeline = pipeline
        self.worker_count = workers
        self.poll_interval_seconds = poll_interval_seconds
        self.running = False
        self._wakeup: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: List[asyncio.Task] = []
    
    async def start(self):
        """Start the workers. Rows left over from a previous run are picked up first."""
        if self.running:
            logger.warning("Writeback worker pool already running")
            return
        
        stats = await asyncio.to_thread(self.pipeline.get_stats)
        if stats.total:
            logger.info(
                f"Pending memory writes at startup: {stats.ready} ready, "
                f"{stats.waiting_retry} waiting for retry, {stats.claimed} claimed, "
                f"{stats.exhausted} exhausted"
            )
        
        self.running = True
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._worker(default_worker_id(i)), name=f"writeback-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(f"Writeback worker pool started with {self.worker_count} worker(s)")
    
    async def stop(self):
        """Stop the workers, waiting for in-flight items to finish."""
        if not self.running:
            return
        
        self.running = False
        if self._wakeup:
            self._wakeup.set()
        
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                logger.error(f"Writeback worker ended with error: {result}")
        self._tasks = []
        self._loop = None
        logger.info("Writeback worker pool stopped")
    
    def notify(self):
        """
        Wake idle workers (call after enqueueing a pending write).
        
        Safe to call from any thread; the wakeup is scheduled on the
        pool's event loop.
        """
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(wakeup.set)
    
    async def _worker(self, worker_id: str):
        logger.debug(f"Writeback worker {worker_id} running")
        
        while self.running:
            try:
                outcome = await asyncio.to_thread(self.pipeline.process_next, worker_id)
            except asyncio.CancelledError:
                logger.info(f"Writeback worker {worker_id} cancelled")
                break
            except Exception as e:
                logger.error(f"Error in writeback worker {worker_id}: {e}", exc_info=True)
                outcome = ProcessOutcome.IDLE
            
            if outcome != ProcessOutcome.IDLE:
                continue
            
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break
            if self.running:
                self._wakeup.clear()
        
        logger.debug(f"Writeback worker {worker_id} stopped")
