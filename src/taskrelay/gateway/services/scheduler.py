"""TriggerScheduler -- 轮询外部触发源，把到期的事件发生转成任务

保证：
- 每个 (event_uid, occurrence_key) 最多触发一次，跨进程重启也成立。
  台账写入先于任务创建，崩溃时宁可漏发也不重复。
- 递归事件的所有发生共享 recurrence_id = uid，会话沿用第一次发生的会话。
- 冷启动时只触发回看窗口内的事件，不补发过期事件。
"""

import asyncio
import contextlib
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import structlog
from taskrelay.core.config import (
    LEDGER_RETENTION_HOURS,
    RECENT_FIRED_LIMIT,
    SCHEDULER_LOOK_AHEAD_MINUTES,
    SCHEDULER_POLL_INTERVAL_S,
)
from taskrelay.core.models import (
    ActorType,
    CreatedBy,
    CreateTaskInput,
    FiredTrigger,
    SourceType,
    TaskType,
    TriggerEvent,
)
from taskrelay.core.store.protocols import TriggerLedger

from .runner import TaskRunner
from .task_service import TaskService

log = structlog.get_logger()


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class TriggerSource(Protocol):
    """外部触发源（日历类）"""

    async def get_upcoming(self, look_ahead_minutes: int) -> list[TriggerEvent]: ...


class InMemoryTriggerSource:
    """进程内触发源，由 POST /api/triggers 写入

    同一 (uid, occurrence_key) 重复添加时以最后一次为准。
    """

    def __init__(self, now: Callable[[], datetime] | None = None) -> None:
        self._now = now or (lambda: datetime.now(UTC))
        self._events: dict[tuple[str, str], TriggerEvent] = {}

    def add(self, event: TriggerEvent) -> None:
        self._events[(event.uid, event.occurrence_key)] = event

    def list_events(self) -> list[TriggerEvent]:
        return sorted(self._events.values(), key=lambda e: _utc(e.start))

    async def get_upcoming(self, look_ahead_minutes: int) -> list[TriggerEvent]:
        now = self._now()
        horizon = now + timedelta(minutes=look_ahead_minutes)
        # 超过台账保留期的事件不可能再触发
        stale_before = now - timedelta(hours=LEDGER_RETENTION_HOURS)
        for key in [k for k, e in self._events.items() if _utc(e.start) < stale_before]:
            del self._events[key]
        return [e for e in self.list_events() if _utc(e.start) <= horizon]


class TriggerScheduler:
    def __init__(
        self,
        source: TriggerSource,
        ledger: TriggerLedger,
        task_service: TaskService,
        runner: TaskRunner | None = None,
        poll_interval_s: float = SCHEDULER_POLL_INTERVAL_S,
        look_ahead_minutes: int = SCHEDULER_LOOK_AHEAD_MINUTES,
        retention_hours: int = LEDGER_RETENTION_HOURS,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._source = source
        self._ledger = ledger
        self._tasks = task_service
        self._runner = runner
        self._poll_interval_s = poll_interval_s
        self._look_ahead_minutes = look_ahead_minutes
        self._retention_hours = retention_hours
        self._now = now or (lambda: datetime.now(UTC))
        self._loop_task: asyncio.Task | None = None
        self._poll_lock = asyncio.Lock()
        self._last_poll_at: datetime | None = None
        self._next_poll_at: datetime | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def poll(self) -> list[str]:
        """执行一轮轮询，返回本轮新触发的任务 ID"""
        async with self._poll_lock:
            now = _utc(self._now())
            self._last_poll_at = now
            look_back = now - timedelta(minutes=self._look_ahead_minutes)

            try:
                events = await self._source.get_upcoming(self._look_ahead_minutes)
            except Exception as e:
                log.error("trigger_source_fetch_failed", error_type=type(e).__name__, error=str(e))
                events = []

            fired: list[str] = []
            for event in events:
                start = _utc(event.start)
                if start > now or start < look_back:
                    continue
                try:
                    task_id = await self._fire(event, now)
                except Exception as e:
                    log.error(
                        "trigger_fire_failed",
                        event_uid=event.uid,
                        occurrence_key=event.occurrence_key,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    continue
                if task_id:
                    fired.append(task_id)

            await self._submit_due(now)
            log.info("scheduler_poll_completed", events=len(events), fired=len(fired))
            return fired

    async def _fire(self, event: TriggerEvent, now: datetime) -> str | None:
        occurrence_key = event.occurrence_key
        marked = await self._ledger.try_mark_fired(
            FiredTrigger(
                event_uid=event.uid,
                occurrence_key=occurrence_key,
                title=event.title,
                scheduled_start=_utc(event.start),
                fired_at=now,
            )
        )
        if not marked:
            log.debug("trigger_already_fired", event_uid=event.uid, occurrence_key=occurrence_key)
            return None

        task, created = await self._tasks.resolve_occurrence(
            CreateTaskInput(
                type=TaskType.SCHEDULED,
                source_type=SourceType.EXTERNAL_TRIGGER,
                source_ref=event.uid,
                title=event.title,
                instructions=event.description,
                recurrence_id=event.uid if event.is_recurring else None,
                occurrence_date=occurrence_key,
                scheduled_for=_utc(event.start),
                created_by=CreatedBy.SCHEDULER,
                work=event.work,
                delivery=event.delivery,
            ),
            actor=ActorType.SCHEDULER,
            idempotency_key=f"trigger:{event.uid}:{occurrence_key}",
        )
        await self._ledger.attach_task(event.uid, occurrence_key, task.task_id)
        log.info(
            "trigger_fired",
            event_uid=event.uid,
            occurrence_key=occurrence_key,
            task_id=task.task_id,
            created=created,
            recurring=event.is_recurring,
        )
        if self._runner is not None:
            self._runner.submit(task.task_id)
        return task.task_id

    async def _submit_due(self, now: datetime) -> None:
        """提交所有可执行的 pending 任务；进程重启后内存队列为空，由此恢复"""
        if self._runner is None:
            return
        try:
            due = await self._tasks.list_due_tasks(now)
        except Exception as e:
            log.error("due_task_query_failed", error_type=type(e).__name__, error=str(e))
            return
        for task in due:
            self._runner.submit(task.task_id)

    async def start(self) -> None:
        """清理过期台账 -> 立即轮询一次 -> 启动轮询循环"""
        if self.running:
            return
        cutoff = _utc(self._now()) - timedelta(hours=self._retention_hours)
        pruned = await self._ledger.prune_fired_before(cutoff)
        if pruned:
            log.info("trigger_ledger_pruned", removed=pruned)
        await self.poll()
        self._loop_task = asyncio.create_task(self._poll_loop())
        log.info(
            "scheduler_started",
            poll_interval_s=self._poll_interval_s,
            look_ahead_minutes=self._look_ahead_minutes,
        )

    async def stop(self) -> None:
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._loop_task
        self._loop_task = None
        self._next_poll_at = None
        log.info("scheduler_stopped")

    async def _poll_loop(self) -> None:
        while True:
            self._next_poll_at = _utc(self._now()) + timedelta(seconds=self._poll_interval_s)
            await asyncio.sleep(self._poll_interval_s)
            try:
                await self.poll()
            except Exception as e:
                log.error("scheduler_poll_failed", error_type=type(e).__name__, error=str(e))

    async def get_status(self) -> dict[str, Any]:
        recent = await self._ledger.recent(RECENT_FIRED_LIMIT)
        return {
            "running": self.running,
            "poll_interval_s": self._poll_interval_s,
            "look_ahead_minutes": self._look_ahead_minutes,
            "fired_count": await self._ledger.count(),
            "last_poll_at": self._last_poll_at.isoformat() if self._last_poll_at else None,
            "next_poll_at": self._next_poll_at.isoformat() if self._next_poll_at else None,
            "recently_fired": [r.model_dump(mode="json") for r in recent],
        }
