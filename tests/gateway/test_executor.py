"""TaskExecutor 测试：推理、交付物校验、投递与最终状态"""

import pytest_asyncio
from taskrelay.core.models import (
    CreateTaskInput,
    DeliveryAction,
    DeliveryStatus,
    EventType,
    LogEntryKind,
    NotificationImportance,
    NotificationKind,
    TaskStatus,
    WorkItem,
    WorkItemStatus,
)
from taskrelay.gateway.services.channels import ChannelRegistry, SendResult
from taskrelay.gateway.services.dispatcher import DeliveryDispatcher
from taskrelay.gateway.services.executor import TaskExecutor, build_prompt
from taskrelay.gateway.services.notification_service import NotificationService
from taskrelay.gateway.services.status_hub import StatusHub
from taskrelay.gateway.services.task_service import TaskService
from taskrelay.provider import ModelCallResult, ProviderError


class FakeEngine:
    """按顺序返回预设响应并记录调用"""

    def __init__(self, *responses: str | Exception) -> None:
        self._responses = list(responses)
        self.calls: list[dict] = []

    async def invoke(self, prompt, session_id=None, continuity=False):
        self.calls.append({"prompt": prompt, "session_id": session_id, "continuity": continuity})
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return ModelCallResult(content=response, model_alias="main", model_name="fake")


class FakeSender:
    def __init__(self, success: bool = True) -> None:
        self.sent: list[tuple[str | None, str]] = []
        self._success = success

    async def send(self, recipient, content):
        self.sent.append((recipient, content))
        if self._success:
            return SendResult(success=True)
        return SendResult(success=False, error="HTTP 503")


def deliverable(text: str, channel: str | None = None) -> str:
    opening = f'<deliverable channel="{channel}">' if channel else "<deliverable>"
    return f"{opening}\n{text}\n</deliverable>"


@pytest_asyncio.fixture
async def service(store_group) -> TaskService:
    return TaskService(store_group, StatusHub())


@pytest_asyncio.fixture
async def notifications() -> NotificationService:
    return NotificationService()


@pytest_asyncio.fixture
async def chat() -> FakeSender:
    return FakeSender()


@pytest_asyncio.fixture
async def email() -> FakeSender:
    return FakeSender(success=False)


@pytest_asyncio.fixture
async def registry(chat, email) -> ChannelRegistry:
    registry = ChannelRegistry()
    registry.register("chat", chat)
    registry.register("email", email)
    return registry


@pytest_asyncio.fixture
async def make_executor(service, registry, notifications):
    def factory(engine) -> TaskExecutor:
        return TaskExecutor(
            service,
            engine,
            DeliveryDispatcher(registry, service),
            registry,
            notifications=notifications,
        )

    return factory


class TestHappyPath:
    async def test_deliverable_sent_and_task_completed(self, service, make_executor, chat):
        task = await service.create_task(
            CreateTaskInput(
                title="Morning brief",
                instructions="Summarize the calendar",
                work=[WorkItem(description="read calendar")],
                delivery=[DeliveryAction(channel="chat", recipient="alice")],
            )
        )
        engine = FakeEngine("Looked at 3 events.\n" + deliverable("You have 3 meetings today."))

        status = await make_executor(engine).run(task.task_id)

        assert status == TaskStatus.COMPLETED
        assert chat.sent == [("alice", "You have 3 meetings today.")]
        done = await service.require_task(task.task_id)
        assert done.status == TaskStatus.COMPLETED
        assert done.started_at is not None
        assert done.completed_at is not None
        assert done.work[0].status == WorkItemStatus.COMPLETED
        assert done.delivery[0].status == DeliveryStatus.COMPLETED

        types = [e.type for e in await service.get_events(task.task_id)]
        for expected in (
            EventType.MODEL_CALL_STARTED,
            EventType.MODEL_CALL_COMPLETED,
            EventType.DELIVERABLE_ACCEPTED,
            EventType.DELIVERY_COMPLETED,
        ):
            assert expected in types

    async def test_notes_outside_block_stay_internal(self, service, make_executor, chat):
        task = await service.create_task(
            CreateTaskInput(title="t", delivery=[DeliveryAction(channel="chat")])
        )
        response = "internal reasoning here\n" + deliverable("public text") + "\ntrailing notes"
        await make_executor(FakeEngine(response)).run(task.task_id)

        assert chat.sent == [(None, "public text")]
        log = await service.get_execution_log(task.task_id)
        responses = [e.content for e in log if e.kind == LogEntryKind.RESPONSE]
        assert responses == [response]

    async def test_no_delivery_records_work_only(self, service, make_executor, chat):
        task = await service.create_task(CreateTaskInput(title="think"))
        engine = FakeEngine("just notes")

        status = await make_executor(engine).run(task.task_id)

        assert status == TaskStatus.COMPLETED
        assert chat.sent == []
        assert "no delivery channels" in engine.calls[0]["prompt"]

    async def test_session_continuity(self, service, make_executor):
        task = await service.create_task(CreateTaskInput(title="t"))
        engine = FakeEngine("ok")
        await make_executor(engine).run(task.task_id)

        assert engine.calls[0]["session_id"] == task.session_id
        assert engine.calls[0]["continuity"] is True


class TestPrecomposed:
    async def test_engine_skipped(self, service, make_executor, chat):
        task = await service.create_task(
            CreateTaskInput(
                title="Reminder",
                delivery=[DeliveryAction(channel="chat", content="Standup in 5 minutes")],
            )
        )
        engine = FakeEngine()

        status = await make_executor(engine).run(task.task_id)

        assert status == TaskStatus.COMPLETED
        assert engine.calls == []
        assert chat.sent == [(None, "Standup in 5 minutes")]


class TestRejection:
    async def test_missing_block_goes_to_review(
        self, service, make_executor, chat, notifications
    ):
        task = await service.create_task(
            CreateTaskInput(title="Digest", delivery=[DeliveryAction(channel="chat")])
        )
        status = await make_executor(FakeEngine("Here is your digest, no tags.")).run(
            task.task_id
        )

        assert status == TaskStatus.NEEDS_REVIEW
        assert chat.sent == []
        held = await service.require_task(task.task_id)
        assert held.status == TaskStatus.NEEDS_REVIEW
        assert held.delivery[0].status == DeliveryStatus.NEEDS_REVIEW

        types = [e.type for e in await service.get_events(task.task_id)]
        assert EventType.DELIVERABLE_REJECTED in types
        assert EventType.DELIVERY_COMPLETED not in types

        pending = notifications.get_pending()
        assert len(pending) == 1
        assert pending[0].kind == NotificationKind.REVIEW
        assert pending[0].task_id == task.task_id

    async def test_internal_marker_rejected(self, service, make_executor, chat):
        task = await service.create_task(
            CreateTaskInput(title="t", delivery=[DeliveryAction(channel="chat")])
        )
        response = deliverable("<thinking>plan</thinking>\nResult")
        status = await make_executor(FakeEngine(response)).run(task.task_id)

        assert status == TaskStatus.NEEDS_REVIEW
        assert chat.sent == []

    async def test_rejection_holds_every_action(self, service, make_executor, chat):
        task = await service.create_task(
            CreateTaskInput(
                title="t",
                delivery=[
                    DeliveryAction(channel="chat", content="fixed text"),
                    DeliveryAction(channel="chat", recipient="bob"),
                ],
            )
        )
        status = await make_executor(FakeEngine("<deliverable>\nunterminated")).run(task.task_id)

        assert status == TaskStatus.NEEDS_REVIEW
        assert chat.sent == []
        held = await service.require_task(task.task_id)
        assert {a.status for a in held.delivery} == {DeliveryStatus.NEEDS_REVIEW}


class TestSentinel:
    async def test_no_deliverable_skips_action(self, service, make_executor, chat):
        task = await service.create_task(
            CreateTaskInput(title="t", delivery=[DeliveryAction(channel="chat")])
        )
        status = await make_executor(FakeEngine(deliverable("NO_DELIVERABLE"))).run(task.task_id)

        assert status == TaskStatus.COMPLETED
        assert chat.sent == []
        done = await service.require_task(task.task_id)
        assert done.delivery[0].status == DeliveryStatus.SKIPPED


class TestFailures:
    async def test_partial_delivery_failure(
        self, service, make_executor, chat, email, notifications
    ):
        task = await service.create_task(
            CreateTaskInput(
                title="Fan out",
                delivery=[DeliveryAction(channel="chat"), DeliveryAction(channel="email")],
            )
        )
        status = await make_executor(FakeEngine(deliverable("hello"))).run(task.task_id)

        assert status == TaskStatus.FAILED
        # 已发送的不回滚
        assert chat.sent == [(None, "hello")]
        assert email.sent == [(None, "hello")]
        failed = await service.require_task(task.task_id)
        assert [a.status for a in failed.delivery] == [
            DeliveryStatus.COMPLETED,
            DeliveryStatus.FAILED,
        ]
        alerts = notifications.get_pending()
        assert alerts[0].importance == NotificationImportance.ERROR
        assert "email" in alerts[0].message

    async def test_per_channel_blocks(self, service, make_executor, chat, email):
        task = await service.create_task(
            CreateTaskInput(
                title="t",
                delivery=[DeliveryAction(channel="chat"), DeliveryAction(channel="email")],
            )
        )
        response = deliverable("short", channel="chat") + "\n" + deliverable(
            "long form", channel="email"
        )
        await make_executor(FakeEngine(response)).run(task.task_id)

        assert chat.sent == [(None, "short")]
        assert email.sent == [(None, "long form")]

    async def test_engine_error_fails_task(self, service, make_executor, chat, notifications):
        task = await service.create_task(
            CreateTaskInput(title="t", delivery=[DeliveryAction(channel="chat")])
        )
        status = await make_executor(FakeEngine(ProviderError("proxy down"))).run(task.task_id)

        assert status == TaskStatus.FAILED
        assert chat.sent == []
        types = [e.type for e in await service.get_events(task.task_id)]
        assert EventType.MODEL_CALL_FAILED in types
        log = await service.get_execution_log(task.task_id)
        assert any(e.kind == LogEntryKind.ERROR and "proxy down" in e.content for e in log)
        assert notifications.get_pending()[0].importance == NotificationImportance.ERROR


class TestRunGuards:
    async def test_missing_task(self, make_executor):
        assert await make_executor(FakeEngine()).run("task-missing") is None

    async def test_non_pending_task_not_executed(self, service, make_executor):
        task = await service.create_task(CreateTaskInput(title="t"))
        await service.complete_task(task.task_id)
        engine = FakeEngine("x")

        assert await make_executor(engine).run(task.task_id) is None
        assert engine.calls == []


class TestPriorContext:
    async def test_later_occurrence_sees_earlier_outcome(self, service, make_executor, chat):
        first = await service.create_task(
            CreateTaskInput(
                title="Weekly report",
                recurrence_id="evt-weekly",
                occurrence_date="2026-10-05",
                delivery=[DeliveryAction(channel="chat")],
            )
        )
        second = await service.create_task(
            CreateTaskInput(
                title="Weekly report",
                recurrence_id="evt-weekly",
                occurrence_date="2026-10-12",
                delivery=[DeliveryAction(channel="chat")],
            )
        )
        engine = FakeEngine(deliverable("Shipped v1"), deliverable("Shipped v2"))
        executor = make_executor(engine)

        await executor.run(first.task_id)
        await executor.run(second.task_id)

        assert "Prior context" not in engine.calls[0]["prompt"]
        second_prompt = engine.calls[1]["prompt"]
        assert "Prior context from this recurring task:" in second_prompt
        assert "Shipped v1" in second_prompt
        assert second_prompt.index("Prior context") < second_prompt.index("Current execution:")
        assert engine.calls[1]["session_id"] == first.session_id


class TestBuildPrompt:
    async def test_prompt_lists_channels_and_rules(self, service):
        task = await service.create_task(
            CreateTaskInput(
                title="Brief",
                instructions="Be concise",
                delivery=[DeliveryAction(channel="chat", recipient="alice")],
            )
        )
        prompt = build_prompt(task, [], ["chat", "email"])

        assert "Instructions:\nBe concise" in prompt
        assert "Allowed channels: chat, email" in prompt
        assert "- chat (recipient: alice)" in prompt
        assert "NO_DELIVERABLE" in prompt
