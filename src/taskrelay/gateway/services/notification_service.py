"""NotificationService -- 需要人工关注的事件

needs_review 以 kind=review/importance=warning 呈现，任务失败以
kind=notify/importance=error 呈现，两者可区分。通知保存在内存中，
超过上限时淘汰最旧的；每次创建或状态变化都推送到 StatusHub。
"""

from collections import OrderedDict
from datetime import UTC, datetime

import structlog
from taskrelay.core.config import NOTIFICATION_MAX
from taskrelay.core.models import (
    Notification,
    NotificationImportance,
    NotificationKind,
    NotificationStatus,
    Task,
)
from ulid import ULID

from .status_hub import StatusHub

log = structlog.get_logger()


class NotificationNotFoundError(LookupError):
    code = "NOTIFICATION_NOT_FOUND"

    def __init__(self, notification_id: str) -> None:
        super().__init__(f"Notification with id {notification_id} does not exist")
        self.notification_id = notification_id


class NotificationService:
    def __init__(
        self,
        hub: StatusHub | None = None,
        max_notifications: int = NOTIFICATION_MAX,
    ) -> None:
        self._hub = hub
        self._max = max_notifications
        self._items: OrderedDict[str, Notification] = OrderedDict()

    async def notify(
        self,
        message: str,
        task_id: str | None = None,
        importance: NotificationImportance = NotificationImportance.INFO,
    ) -> Notification:
        return await self._add(
            NotificationKind.NOTIFY,
            message,
            task_id=task_id,
            importance=importance,
        )

    async def request_input(
        self,
        question: str,
        options: list[str] | None = None,
        task_id: str | None = None,
    ) -> Notification:
        """显式的“需要输入”请求"""
        return await self._add(
            NotificationKind.REQUEST_INPUT,
            question,
            task_id=task_id,
            importance=NotificationImportance.WARNING,
            options=options or [],
        )

    async def raise_review(self, task: Task, reason: str) -> Notification:
        """任务输出未通过校验，需要人工处理"""
        return await self._add(
            NotificationKind.REVIEW,
            f"Task '{task.title}' needs review: {reason}",
            task_id=task.task_id,
            importance=NotificationImportance.WARNING,
        )

    async def mark_read(self, notification_id: str) -> Notification:
        item = self._require(notification_id)
        item.status = NotificationStatus.READ
        item.read_at = datetime.now(UTC)
        await self._publish(item)
        return item

    async def dismiss(self, notification_id: str) -> Notification:
        item = self._require(notification_id)
        item.status = NotificationStatus.DISMISSED
        await self._publish(item)
        return item

    async def respond(self, notification_id: str, response: str) -> Notification:
        item = self._require(notification_id)
        item.response = response
        item.responded_at = datetime.now(UTC)
        item.status = NotificationStatus.READ
        if item.read_at is None:
            item.read_at = item.responded_at
        await self._publish(item)
        log.info(
            "notification_responded",
            notification_id=notification_id,
            task_id=item.task_id,
        )
        return item

    def get(self, notification_id: str) -> Notification | None:
        return self._items.get(notification_id)

    def get_pending(self) -> list[Notification]:
        """尚未读取或忽略的通知，最新在前"""
        return [
            n
            for n in reversed(self._items.values())
            if n.status in (NotificationStatus.PENDING, NotificationStatus.DELIVERED)
        ]

    def get_all(self) -> list[Notification]:
        return list(reversed(self._items.values()))

    async def _add(
        self,
        kind: NotificationKind,
        message: str,
        task_id: str | None = None,
        importance: NotificationImportance = NotificationImportance.INFO,
        options: list[str] | None = None,
    ) -> Notification:
        item = Notification(
            notification_id=str(ULID()),
            kind=kind,
            task_id=task_id,
            message=message,
            importance=importance,
            options=options or [],
            created_at=datetime.now(UTC),
        )
        self._items[item.notification_id] = item
        while len(self._items) > self._max:
            self._items.popitem(last=False)

        log.info(
            "notification_raised",
            notification_id=item.notification_id,
            kind=kind.value,
            task_id=task_id,
        )
        await self._publish(item)
        return item

    async def _publish(self, item: Notification) -> None:
        if self._hub is None:
            return
        delivered = self._hub.has_global_subscribers
        await self._hub.publish_notification(item.model_copy())
        if delivered and item.status == NotificationStatus.PENDING:
            item.status = NotificationStatus.DELIVERED

    def _require(self, notification_id: str) -> Notification:
        item = self._items.get(notification_id)
        if item is None:
            raise NotificationNotFoundError(notification_id)
        return item
