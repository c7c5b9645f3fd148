"""SessionReasoningEngine + EchoMessageAdapter 测试"""

import pytest
from taskrelay.core.config import DELIVERABLE_TAG
from taskrelay.provider import (
    EchoMessageAdapter,
    InMemorySessionHistory,
    ModelCallResult,
    ProviderError,
    SessionReasoningEngine,
)


class RecordingClient:
    """记录每次收到的 messages"""

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.calls: list[list[dict[str, str]]] = []
        self.fail_with = fail_with

    async def complete(self, messages, model_alias="main", **kwargs) -> ModelCallResult:
        self.calls.append(list(messages))
        if self.fail_with is not None:
            raise self.fail_with
        return ModelCallResult(content=f"reply {len(self.calls)}", model_alias=model_alias)


class TestSessionReasoningEngine:
    async def test_continuity_replays_session_history(self):
        client = RecordingClient()
        engine = SessionReasoningEngine(client)

        await engine.invoke("first", session_id="session-1", continuity=True)
        await engine.invoke("second", session_id="session-1", continuity=True)

        assert client.calls[1] == [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "reply 1"},
            {"role": "user", "content": "second"},
        ]

    async def test_without_continuity_no_history(self):
        client = RecordingClient()
        engine = SessionReasoningEngine(client)

        await engine.invoke("first", session_id="session-1", continuity=True)
        await engine.invoke("alone", session_id="session-1", continuity=False)

        assert client.calls[1] == [{"role": "user", "content": "alone"}]

    async def test_sessions_are_isolated(self):
        client = RecordingClient()
        engine = SessionReasoningEngine(client, system_prompt="be brief")

        await engine.invoke("a", session_id="session-1", continuity=True)
        await engine.invoke("b", session_id="session-2", continuity=True)

        assert client.calls[1] == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "b"},
        ]

    async def test_failure_is_provider_error_and_not_recorded(self):
        history = InMemorySessionHistory()
        engine = SessionReasoningEngine(RecordingClient(fail_with=RuntimeError("boom")), history=history)

        with pytest.raises(ProviderError):
            await engine.invoke("hello", session_id="session-1", continuity=True)
        assert history.get("session-1") == []

    async def test_model_alias_forwarded(self):
        engine = SessionReasoningEngine(RecordingClient(), model_alias="cheap")
        result = await engine.invoke("hello")
        assert result.model_alias == "cheap"
        assert engine.model_alias == "cheap"


class TestInMemorySessionHistory:
    def test_message_bound(self):
        history = InMemorySessionHistory(max_messages=2)
        history.append("s", [{"role": "user", "content": str(i)} for i in range(5)])
        assert [m["content"] for m in history.get("s")] == ["3", "4"]

    def test_least_recently_used_session_evicted(self):
        history = InMemorySessionHistory(max_sessions=2)
        history.append("s1", [{"role": "user", "content": "1"}])
        history.append("s2", [{"role": "user", "content": "2"}])
        history.get("s1")
        history.append("s3", [{"role": "user", "content": "3"}])

        assert history.get("s2") == []
        assert history.get("s1") != []


class TestEchoMessageAdapter:
    async def test_wraps_first_line_in_deliverable(self):
        adapter = EchoMessageAdapter()
        result = await adapter.complete(
            [{"role": "user", "content": "\nTask: weekly report\nInstructions: ..."}]
        )
        assert result.content == (
            f"<{DELIVERABLE_TAG}>\nEcho: Task: weekly report\n</{DELIVERABLE_TAG}>"
        )
        assert result.provider == "echo"
        assert result.token_usage.total_tokens > 0

    async def test_plain_mode(self):
        adapter = EchoMessageAdapter(wrap_deliverable=False)
        result = await adapter.complete([{"role": "user", "content": "hi"}])
        assert result.content == "Echo: hi"
