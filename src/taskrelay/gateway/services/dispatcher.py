"""DeliveryDispatcher -- 按动作逐一发送已校验的内容

每个动作每次执行恰好调用一次 send，不重试；一个渠道失败不影响其他渠道。
内容原样传递，不做任何重新格式化。
"""

import structlog
from pydantic import BaseModel
from taskrelay.core.models import DeliveryResultPayload, DeliveryStatus, EventType

from .channels import ChannelRegistry, SendResult
from .task_service import TaskService

log = structlog.get_logger()


class DispatchItem(BaseModel):
    """一个已校验的投递项"""

    action_index: int
    channel: str
    recipient: str | None = None
    content: str


class DispatchOutcome(BaseModel):
    action_index: int
    channel: str
    status: DeliveryStatus
    error: str = ""


class DeliveryReport(BaseModel):
    outcomes: list[DispatchOutcome]

    @property
    def all_succeeded(self) -> bool:
        return all(o.status == DeliveryStatus.COMPLETED for o in self.outcomes)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == DeliveryStatus.FAILED)


class DeliveryDispatcher:
    def __init__(self, registry: ChannelRegistry, task_service: TaskService) -> None:
        self._registry = registry
        self._task_service = task_service

    async def dispatch(self, task_id: str, items: list[DispatchItem]) -> DeliveryReport:
        """依次发送每个投递项，结果逐项记录为事件"""
        outcomes: list[DispatchOutcome] = []
        for item in items:
            result = await self._send_once(task_id, item)
            status = DeliveryStatus.COMPLETED if result.success else DeliveryStatus.FAILED
            outcomes.append(
                DispatchOutcome(
                    action_index=item.action_index,
                    channel=item.channel,
                    status=status,
                    error=result.error,
                )
            )
            await self._record_result(task_id, item, status, result)
        return DeliveryReport(outcomes=outcomes)

    async def _send_once(self, task_id: str, item: DispatchItem) -> SendResult:
        sender = self._registry.get(item.channel)
        if sender is None:
            log.warning("delivery_unknown_channel", task_id=task_id, channel=item.channel)
            return SendResult(success=False, error=f"Unknown delivery channel: {item.channel}")

        try:
            result = await sender.send(item.recipient, item.content)
        except Exception as e:
            log.error(
                "delivery_send_failed",
                task_id=task_id,
                channel=item.channel,
                error_type=type(e).__name__,
                error=str(e),
            )
            return SendResult(success=False, error=f"{type(e).__name__}: {e}")

        log.info(
            "delivery_sent" if result.success else "delivery_rejected",
            task_id=task_id,
            channel=item.channel,
            action_index=item.action_index,
            error=result.error or None,
        )
        return result

    async def _record_result(
        self,
        task_id: str,
        item: DispatchItem,
        status: DeliveryStatus,
        result: SendResult,
    ) -> None:
        # 发送已经发生，事件写入失败不能改变投递结果
        try:
            await self._task_service.record_event(
                task_id,
                EventType.DELIVERY_COMPLETED if result.success else EventType.DELIVERY_FAILED,
                DeliveryResultPayload(
                    action_index=item.action_index,
                    channel=item.channel,
                    recipient=item.recipient,
                    status=status,
                    content_length=len(item.content),
                    error=result.error,
                ).model_dump(mode="json"),
            )
        except Exception as e:
            log.error(
                "delivery_event_record_failed",
                task_id=task_id,
                channel=item.channel,
                error_type=type(e).__name__,
            )
