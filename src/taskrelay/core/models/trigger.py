"""触发源事件与触发台账记录"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from .task import DeliveryAction, WorkItem


def occurrence_key_for(start: datetime) -> str:
    """发生时间键：UTC ISO-8601，naive 时间按 UTC 处理"""
    if start.tzinfo is None:
        start = start.replace(tzinfo=UTC)
    return start.astimezone(UTC).isoformat()


class TriggerEvent(BaseModel):
    """外部触发源提供的可触发事件（日历类）"""

    uid: str = Field(min_length=1, description="触发源内稳定的事件 UID")
    source_id: str = Field(default="default", description="触发源标识")
    title: str
    description: str = ""
    start: datetime
    end: datetime | None = None
    rrule: str | None = Field(default=None, description="递归规则；设置即为递归事件")
    work: list[WorkItem] = Field(default_factory=list)
    delivery: list[DeliveryAction] = Field(default_factory=list)

    @property
    def is_recurring(self) -> bool:
        return self.rrule is not None

    @property
    def occurrence_key(self) -> str:
        return occurrence_key_for(self.start)


class FiredTrigger(BaseModel):
    """触发台账中的一行，键为 (event_uid, occurrence_key)"""

    event_uid: str
    occurrence_key: str
    title: str = ""
    scheduled_start: datetime
    fired_at: datetime
    task_id: str | None = None
