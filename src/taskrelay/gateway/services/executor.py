"""TaskExecutor -- 单个任务一次执行的状态机驱动

流程：
1. pending -> running，写入 started_at
2. 所有投递动作都有预置内容时跳过推理引擎，预置内容即交付物
3. 递归任务加载同一 recurrence_id 先前发生的有界历史
4. 构建 prompt（指令、历史、允许的渠道、分隔规则）并调用推理引擎
5. 提取并校验交付物；失败转入 needs_review，不投递任何内容
6. 校验通过后按动作交给 DeliveryDispatcher
7. 汇总投递结果：全部成功 -> completed；任一失败 -> failed（已发送的不回滚）

推理失败、校验失败、投递失败都记录在任务上（状态 + 事件 + 执行日志），
不向调用方抛出。
"""

from datetime import UTC, datetime

import structlog
from taskrelay.core.config import (
    DELIVERABLE_TAG,
    NO_DELIVERABLE_SENTINEL,
    PRIOR_CONTEXT_ENTRY_MAX_CHARS,
    PRIOR_CONTEXT_WINDOW,
    RESPONSE_SUMMARY_MAX_BYTES,
)
from taskrelay.core.exceptions import TaskStatusConflictError
from taskrelay.core.models import (
    DeliverablePayload,
    DeliveryAction,
    DeliveryStatus,
    EventType,
    LogEntry,
    LogEntryKind,
    ModelCallCompletedPayload,
    ModelCallFailedPayload,
    ModelCallStartedPayload,
    NotificationImportance,
    Task,
    TaskStatus,
    WorkItemStatus,
    validate_transition,
)
from taskrelay.provider import ModelCallResult, ReasoningEngine

from .channels import ChannelRegistry
from .deliverable import NoDeliverable, Rejected, extract_deliverables, resolve_for_channels
from .dispatcher import DeliveryDispatcher, DeliveryReport, DispatchItem
from .notification_service import NotificationService
from .task_service import TaskService

log = structlog.get_logger()


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "... [truncated]"


def _summarize_response(content: str) -> str:
    """响应摘要截断到 RESPONSE_SUMMARY_MAX_BYTES"""
    encoded = content.encode("utf-8")
    if len(encoded) <= RESPONSE_SUMMARY_MAX_BYTES:
        return content
    truncated = encoded[:RESPONSE_SUMMARY_MAX_BYTES].decode("utf-8", errors="ignore")
    return truncated + "... [truncated, see execution log]"


def build_prompt(task: Task, prior: list[LogEntry], allowed_channels: list[str]) -> str:
    """组装推理引擎输入"""
    sections = [f"Task: {task.title}"]
    if task.instructions:
        sections.append(f"Instructions:\n{task.instructions}")
    if task.work:
        sections.append(
            "Work items:\n" + "\n".join(f"- {item.description}" for item in task.work)
        )

    if prior:
        history = "\n".join(
            f"- [{entry.ts.isoformat()}] "
            f"{_truncate(entry.content, PRIOR_CONTEXT_ENTRY_MAX_CHARS)}"
            for entry in prior
        )
        sections.append(f"Prior context from this recurring task:\n{history}")
        sections.append("Current execution:")

    targets = [a for a in task.delivery if not a.is_precomposed]
    if targets:
        target_lines = "\n".join(
            f"- {a.channel}" + (f" (recipient: {a.recipient})" if a.recipient else "")
            for a in targets
        )
        sections.append(
            "Delivery:\n"
            f"Allowed channels: {', '.join(allowed_channels) or '(none configured)'}\n"
            f"This task delivers to:\n{target_lines}\n"
            f"Write the user-facing output between a line containing only <{DELIVERABLE_TAG}> "
            f"and a line containing only </{DELIVERABLE_TAG}>. Everything outside that block "
            "is treated as internal notes and is never sent.\n"
            f'Use <{DELIVERABLE_TAG} channel="NAME"> when a channel needs different text.\n'
            f"If nothing should be sent, put only {NO_DELIVERABLE_SENTINEL} inside the block."
        )
    else:
        sections.append("This task has no delivery channels; record your work only.")
    return "\n\n".join(sections)


class TaskExecutor:
    """任务执行器（由 TaskRunner 串行调用）"""

    def __init__(
        self,
        task_service: TaskService,
        engine: ReasoningEngine,
        dispatcher: DeliveryDispatcher,
        registry: ChannelRegistry,
        notifications: NotificationService | None = None,
        model_alias: str = "main",
    ) -> None:
        self._tasks = task_service
        self._engine = engine
        self._dispatcher = dispatcher
        self._registry = registry
        self._notifications = notifications
        self._model_alias = model_alias

    async def run(self, task_id: str) -> TaskStatus | None:
        """执行一个 pending 任务，返回最终状态；未执行时返回 None"""
        task = await self._tasks.get_task(task_id)
        if task is None:
            log.warning("task_execution_skipped", task_id=task_id, reason="not_found")
            return None
        if task.status != TaskStatus.PENDING:
            log.info(
                "task_execution_skipped",
                task_id=task_id,
                reason="not_pending",
                status=task.status.value,
            )
            return None

        try:
            await self._tasks.transition(
                task_id,
                TaskStatus.PENDING,
                TaskStatus.RUNNING,
                reason="execution started",
                extra_fields={"started_at": datetime.now(UTC)},
            )
        except TaskStatusConflictError:
            log.info("task_state_conflict_skip_execution", task_id=task_id)
            return None

        task = await self._tasks.require_task(task_id)
        log.info("task_execution_started", task_id=task_id, recurrence_id=task.recurrence_id)
        try:
            return await self._execute(task)
        except Exception as e:
            log.error(
                "task_execution_crashed",
                task_id=task_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._fail_after_crash(task, e)
            return TaskStatus.FAILED

    async def _execute(self, task: Task) -> TaskStatus:
        work = [item.model_copy() for item in task.work]
        delivery = [action.model_copy() for action in task.delivery]
        needs_content = task.actions_needing_deliverable()
        response: str | None = None

        if task.has_precomposed_delivery:
            log.info("reasoning_skipped_precomposed", task_id=task.task_id)
        else:
            result = await self._invoke_engine(task)
            if result is None:
                return TaskStatus.FAILED
            response = result.content

        for item in work:
            item.status = WorkItemStatus.COMPLETED
        if work:
            await self._tasks.save_progress(task.task_id, work=work)

        resolved: dict[str, str | None] = {}
        if needs_content:
            channels = list(dict.fromkeys(delivery[i].channel for i in needs_content))
            parse = extract_deliverables(response or "")
            outcome = resolve_for_channels(parse, channels)
            if isinstance(outcome, Rejected):
                return await self._hold_for_review(task, delivery, outcome)
            resolved = outcome
            await self._tasks.record_event(
                task.task_id,
                EventType.DELIVERABLE_ACCEPTED,
                DeliverablePayload(
                    outcome="no_deliverable" if isinstance(parse, NoDeliverable) else "extracted",
                    channels=[c for c, content in resolved.items() if content is not None],
                ).model_dump(mode="json"),
            )

        items: list[DispatchItem] = []
        for index, action in enumerate(delivery):
            if action.status != DeliveryStatus.PENDING:
                continue
            content = action.content if action.is_precomposed else resolved.get(action.channel)
            if content is None:
                action.status = DeliveryStatus.SKIPPED
                continue
            items.append(
                DispatchItem(
                    action_index=index,
                    channel=action.channel,
                    recipient=action.recipient,
                    content=content,
                )
            )

        report = DeliveryReport(outcomes=[])
        if items:
            report = await self._dispatcher.dispatch(task.task_id, items)
            for outcome in report.outcomes:
                delivery[outcome.action_index].status = outcome.status
        if delivery:
            await self._tasks.save_progress(task.task_id, delivery=delivery)

        final = TaskStatus.FAILED if report.failed_count else TaskStatus.COMPLETED
        await self._tasks.transition(
            task.task_id,
            TaskStatus.RUNNING,
            final,
            reason=(
                f"{report.failed_count} delivery action(s) failed"
                if report.failed_count
                else "execution completed"
            ),
            extra_fields={"completed_at": datetime.now(UTC)},
        )
        await self._tasks.append_log(
            task, LogEntryKind.OUTCOME, self._outcome_summary(task, final, items, response)
        )
        if final == TaskStatus.FAILED and self._notifications:
            failed = [o.channel for o in report.outcomes if o.status == DeliveryStatus.FAILED]
            await self._notifications.notify(
                f"Task '{task.title}' failed delivery to: {', '.join(failed)}",
                task_id=task.task_id,
                importance=NotificationImportance.ERROR,
            )
        log.info(
            "task_execution_finished",
            task_id=task.task_id,
            status=final.value,
            sent=len(items) - report.failed_count,
            failed=report.failed_count,
        )
        return final

    async def _invoke_engine(self, task: Task) -> ModelCallResult | None:
        """调用推理引擎；失败时把任务置为 failed 并返回 None"""
        prior: list[LogEntry] = []
        if task.recurrence_id:
            prior = await self._tasks.recent_recurrence_log(
                task, PRIOR_CONTEXT_WINDOW, kinds=[LogEntryKind.OUTCOME]
            )
        prompt = build_prompt(task, prior, self._registry.channel_names())
        await self._tasks.append_log(task, LogEntryKind.PROMPT, prompt)

        continuity = bool(task.session_id)
        await self._tasks.record_event(
            task.task_id,
            EventType.MODEL_CALL_STARTED,
            ModelCallStartedPayload(
                model_alias=self._model_alias,
                session_id=task.session_id,
                continuity=continuity,
                prior_context_entries=len(prior),
                request_summary=_truncate(f"{task.title}: {task.instructions}", 200),
            ).model_dump(mode="json"),
        )

        started = datetime.now(UTC)
        try:
            result = await self._engine.invoke(
                prompt,
                session_id=task.session_id,
                continuity=continuity,
            )
        except Exception as e:
            duration_ms = int((datetime.now(UTC) - started).total_seconds() * 1000)
            log.error(
                "reasoning_call_failed",
                task_id=task.task_id,
                error_type=type(e).__name__,
            )
            await self._tasks.record_event(
                task.task_id,
                EventType.MODEL_CALL_FAILED,
                ModelCallFailedPayload(
                    model_alias=self._model_alias,
                    error_type=type(e).__name__,
                    error_message="推理引擎调用失败，请查看执行日志",
                    duration_ms=max(duration_ms, 0),
                ).model_dump(mode="json"),
            )
            await self._tasks.append_log(task, LogEntryKind.ERROR, f"{type(e).__name__}: {e}")
            await self._finish_failed(task, f"reasoning failure: {type(e).__name__}")
            return None

        await self._tasks.record_event(
            task.task_id,
            EventType.MODEL_CALL_COMPLETED,
            ModelCallCompletedPayload(
                model_alias=result.model_alias,
                model_name=result.model_name,
                provider=result.provider,
                response_summary=_summarize_response(result.content),
                duration_ms=result.duration_ms,
                token_usage=result.token_usage.model_dump(),
            ).model_dump(mode="json"),
        )
        # 原始响应作为内部工作记录保存
        await self._tasks.append_log(task, LogEntryKind.RESPONSE, result.content)
        return result

    async def _hold_for_review(
        self,
        task: Task,
        delivery: list[DeliveryAction],
        rejection: Rejected,
    ) -> TaskStatus:
        """交付物校验失败：所有待投递动作标记 needs_review，不发送任何内容"""
        for action in delivery:
            if action.status == DeliveryStatus.PENDING:
                action.status = DeliveryStatus.NEEDS_REVIEW
        await self._tasks.save_progress(task.task_id, delivery=delivery)
        await self._tasks.record_event(
            task.task_id,
            EventType.DELIVERABLE_REJECTED,
            DeliverablePayload(
                outcome="rejected",
                reason=f"{rejection.reason}: {rejection.detail}".rstrip(": "),
            ).model_dump(mode="json"),
        )
        await self._tasks.transition(
            task.task_id,
            TaskStatus.RUNNING,
            TaskStatus.NEEDS_REVIEW,
            reason=f"deliverable rejected: {rejection.reason}",
        )
        await self._tasks.append_log(
            task,
            LogEntryKind.OUTCOME,
            f"Occurrence {task.occurrence_date or task.created_at.isoformat()}: "
            f"held for review ({rejection.reason}); nothing was delivered.",
        )
        if self._notifications:
            await self._notifications.raise_review(task, rejection.reason)
        log.warning(
            "deliverable_rejected",
            task_id=task.task_id,
            reason=rejection.reason,
            detail=rejection.detail,
        )
        return TaskStatus.NEEDS_REVIEW

    async def _finish_failed(self, task: Task, reason: str) -> None:
        await self._tasks.transition(
            task.task_id,
            TaskStatus.RUNNING,
            TaskStatus.FAILED,
            reason=reason,
            extra_fields={"completed_at": datetime.now(UTC)},
        )
        await self._tasks.append_log(
            task,
            LogEntryKind.OUTCOME,
            f"Occurrence {task.occurrence_date or task.created_at.isoformat()}: failed ({reason}).",
        )
        if self._notifications:
            await self._notifications.notify(
                f"Task '{task.title}' failed: {reason}",
                task_id=task.task_id,
                importance=NotificationImportance.ERROR,
            )

    async def _fail_after_crash(self, task: Task, error: Exception) -> None:
        """兜底：执行中出现未预期异常时，尽量把任务推进到 failed"""
        try:
            current = await self._tasks.require_task(task.task_id)
            if not validate_transition(current.status, TaskStatus.FAILED):
                return
            await self._tasks.append_log(
                task, LogEntryKind.ERROR, f"{type(error).__name__}: {error}"
            )
            await self._tasks.transition(
                task.task_id,
                current.status,
                TaskStatus.FAILED,
                reason=f"internal error: {type(error).__name__}",
                extra_fields={"completed_at": datetime.now(UTC)},
            )
        except Exception as inner:
            log.error(
                "failed_to_record_failure",
                task_id=task.task_id,
                error_type=type(inner).__name__,
            )

    @staticmethod
    def _outcome_summary(
        task: Task,
        final: TaskStatus,
        items: list[DispatchItem],
        response: str | None,
    ) -> str:
        """供后续发生参考的有界结果摘要"""
        lines = [f"Occurrence {task.occurrence_date or task.created_at.isoformat()}: {final.value}"]
        if items:
            lines.extend(f"[{item.channel}] {item.content}" for item in items)
        elif response:
            lines.append(response)
        else:
            lines.append("nothing was delivered")
        return _truncate("\n".join(lines), PRIOR_CONTEXT_ENTRY_MAX_CHARS)
