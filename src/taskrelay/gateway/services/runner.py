"""TaskRunner -- 单 worker 的 asyncio 执行队列

每个进程同一时刻只执行一个任务。调度器和 API 只负责 submit，
执行本身在后台 worker 中完成。
"""

import asyncio
import contextlib

import structlog

from .executor import TaskExecutor

log = structlog.get_logger()


class TaskRunner:
    def __init__(self, executor: TaskExecutor) -> None:
        self._executor = executor
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._queued: set[str] = set()
        self._worker: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def queued_count(self) -> int:
        return len(self._queued)

    def submit(self, task_id: str) -> bool:
        """入队；已在队列中的 task_id 不重复入队

        Returns:
            True 表示新入队
        """
        if task_id in self._queued:
            return False
        self._queued.add(task_id)
        self._queue.put_nowait(task_id)
        log.debug("task_submitted", task_id=task_id, queue_size=self._queue.qsize())
        return True

    async def drain(self) -> None:
        """等待队列中所有任务执行完毕"""
        await self._queue.join()

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run_worker())
        log.info("task_runner_started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        log.info("task_runner_stopped", pending=self._queue.qsize())

    async def _run_worker(self) -> None:
        while True:
            task_id = await self._queue.get()
            self._queued.discard(task_id)
            try:
                await self._executor.run(task_id)
            except Exception as e:
                log.error(
                    "task_runner_execution_error",
                    task_id=task_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
            finally:
                self._queue.task_done()
