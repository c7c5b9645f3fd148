"""执行日志条目 -- 任务的内部工作记录，永不投递"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class LogEntryKind(StrEnum):
    PROMPT = "prompt"
    RESPONSE = "response"
    OUTCOME = "outcome"
    ERROR = "error"


class LogEntry(BaseModel):
    entry_id: str = Field(description="ULID")
    task_id: str
    recurrence_id: str | None = None
    ts: datetime
    kind: LogEntryKind
    content: str
