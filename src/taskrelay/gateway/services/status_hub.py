"""StatusHub -- 内存中状态广播器

每个订阅者持有一个有界 asyncio.Queue。按任务订阅接收该任务的 Event；
全局订阅接收所有任务的 StatusEvent 与 Notification。
队列满的订阅者被直接丢弃，重新连接时通过快照接口补齐当前状态。
"""

import asyncio
from collections import defaultdict

import structlog
from taskrelay.core.models import Event, Notification, StatusEvent

log = structlog.get_logger()

StreamItem = Event | StatusEvent | Notification


class StatusHub:
    """基于 asyncio.Queue 的发布/订阅"""

    def __init__(self, queue_maxsize: int = 100) -> None:
        # task_id -> set of asyncio.Queue
        self._task_subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._global_subscribers: set[asyncio.Queue] = set()
        self._queue_maxsize = queue_maxsize

    @property
    def has_global_subscribers(self) -> bool:
        return bool(self._global_subscribers)

    @property
    def subscriber_count(self) -> int:
        return len(self._global_subscribers) + sum(
            len(queues) for queues in self._task_subscribers.values()
        )

    async def subscribe(self, task_id: str | None = None) -> asyncio.Queue:
        """订阅事件流；task_id 为 None 时订阅全部任务的状态与通知"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_maxsize)
        if task_id is None:
            self._global_subscribers.add(queue)
        else:
            self._task_subscribers[task_id].add(queue)
        return queue

    def is_subscribed(self, queue: asyncio.Queue, task_id: str | None = None) -> bool:
        """队列满被丢弃后返回 False"""
        if task_id is None:
            return queue in self._global_subscribers
        return queue in self._task_subscribers.get(task_id, ())

    async def unsubscribe(self, queue: asyncio.Queue, task_id: str | None = None) -> None:
        """取消订阅"""
        if task_id is None:
            self._global_subscribers.discard(queue)
            return
        self._task_subscribers[task_id].discard(queue)
        if not self._task_subscribers[task_id]:
            del self._task_subscribers[task_id]

    async def broadcast(self, task_id: str, event: Event) -> None:
        """向指定任务的订阅者广播事件"""
        queues = self._task_subscribers.get(task_id)
        if not queues:
            return
        dead = self._offer(queues, event)
        for q in dead:
            queues.discard(q)
        if not queues:
            self._task_subscribers.pop(task_id, None)

    async def publish_status(self, status_event: StatusEvent) -> None:
        """向全局订阅者推送状态流转"""
        self._publish_global(status_event)

    async def publish_notification(self, notification: Notification) -> None:
        """向全局订阅者推送通知"""
        self._publish_global(notification)

    def _publish_global(self, item: StreamItem) -> None:
        dead = self._offer(self._global_subscribers, item)
        for q in dead:
            self._global_subscribers.discard(q)

    @staticmethod
    def _offer(queues: set[asyncio.Queue], item: StreamItem) -> list[asyncio.Queue]:
        dead: list[asyncio.Queue] = []
        for queue in queues:
            try:
                queue.put_nowait(item)
            except asyncio.QueueFull:
                dead.append(queue)
        if dead:
            log.warning("status_subscriber_dropped", count=len(dead))
        return dead
