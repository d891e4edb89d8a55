import asyncio
from typing import Any, Dict, Optional
from cravecrafted.common.logging_setup import get_logger

logger = get_logger("cravecrafted.workers")

SENTINEL = None  # queue sentinel


class BaseWorker():
    """In-process queue drained by `workers_count` asyncio tasks, subclasses implement `task_executor`."""

    def __init__(self, name: str = "worker", workers_count: int = 2, max_queue_size: int = 1000):
        self.name = name
        self.queue: asyncio.Queue[Optional[Dict[str, Any]]] = asyncio.Queue(maxsize=max_queue_size)
        self.worker_loops: Dict[str, asyncio.Task] = {}
        self.workers_count: int = workers_count
        self._processed = 0

    @property
    def processed(self) -> int:
        return self._processed

    def start(self):
        if not self.worker_loops:
            for i in range(self.workers_count):
                cur_worker_name = f"{self.name}:{i+1}"
                self.worker_loops[cur_worker_name] = asyncio.create_task(self._worker_loop(cur_worker_name))
                logger.info("worker.started", extra={"worker": cur_worker_name})

    def enqueue(self, task: Dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(task)
            return True
        except asyncio.QueueFull:
            logger.warning("worker.queue_full", extra={"worker": self.name, "task_kind": task.get("kind")})
            return False

    async def stop(self):
        """Send one sentinel per worker loop."""
        for _ in range(len(self.worker_loops)):
            await self.queue.put(SENTINEL)

    async def shutdown(self, *, drain_first: bool = True, drain_timeout: float = 30.0, wait_timeout: float = 30.0):
        """Graceful stop: optionally wait for the queue to drain, then send sentinels and await the loops."""
        if not self.worker_loops:
            return
        if drain_first:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=drain_timeout)
                logger.debug("worker.queue_drained", extra={"worker": self.name})
            except asyncio.TimeoutError:
                logger.warning("worker.drain_timeout", extra={"worker": self.name})

        await self.stop()

        for wname, task in self.worker_loops.items():
            try:
                await asyncio.wait_for(task, timeout=wait_timeout)
            except asyncio.TimeoutError:
                logger.warning("worker.stop_timeout", extra={"worker": wname})
                task.cancel()
        self.worker_loops = {}

    async def _worker_loop(self, cur_worker_name):
        while True:
            qitem = await self.queue.get()
            try:
                if qitem is SENTINEL:
                    logger.info("worker.sentinel_received", extra={"worker": cur_worker_name})
                    break
                try:
                    await self.task_executor(qitem, cur_worker_name)
                    self._processed += 1
                except Exception:
                    logger.exception("worker.task_failed", extra={"worker": cur_worker_name, "task_kind": qitem.get("kind")})
            finally:
                # always mark done for each get()
                self.queue.task_done()

    async def task_executor(self, task: Dict[str, Any], wname: str) -> None:
        raise NotImplementedError
