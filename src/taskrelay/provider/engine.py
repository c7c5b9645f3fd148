"""推理引擎契约与会话连续性

执行器只依赖 ReasoningEngine.invoke(prompt, session_id, continuity)。
SessionReasoningEngine 把任意 complete(messages) 客户端（LiteLLMClient、
EchoMessageAdapter）适配成该契约，并在 continuity=True 时按 session_id
续接历史对话。同一 session 的调用由上层保证串行。
"""

from collections import OrderedDict, deque
from typing import Protocol

import structlog

from .exceptions import ProviderError
from .models import ModelCallResult

log = structlog.get_logger()


class ReasoningEngine(Protocol):
    """推理引擎接口：失败以 ProviderError 抛出，从不返回部分响应"""

    async def invoke(
        self,
        prompt: str,
        session_id: str | None = None,
        continuity: bool = False,
    ) -> ModelCallResult: ...


class CompletionClient(Protocol):
    async def complete(
        self,
        messages: list[dict[str, str]],
        model_alias: str = "main",
        **kwargs,
    ) -> ModelCallResult: ...


class SessionHistory(Protocol):
    """会话历史存储接口"""

    def get(self, session_id: str) -> list[dict[str, str]]: ...

    def append(self, session_id: str, messages: list[dict[str, str]]) -> None: ...


class InMemorySessionHistory:
    """有界内存会话历史

    每个 session 最多保留 max_messages 条消息，最多保留 max_sessions 个 session，
    超出时淘汰最久未使用的 session。
    """

    def __init__(self, max_messages: int = 40, max_sessions: int = 256) -> None:
        self._max_messages = max_messages
        self._max_sessions = max_sessions
        self._sessions: OrderedDict[str, deque[dict[str, str]]] = OrderedDict()

    def get(self, session_id: str) -> list[dict[str, str]]:
        turns = self._sessions.get(session_id)
        if turns is None:
            return []
        self._sessions.move_to_end(session_id)
        return list(turns)

    def append(self, session_id: str, messages: list[dict[str, str]]) -> None:
        turns = self._sessions.get(session_id)
        if turns is None:
            turns = deque(maxlen=self._max_messages)
            self._sessions[session_id] = turns
        turns.extend(messages)
        self._sessions.move_to_end(session_id)
        while len(self._sessions) > self._max_sessions:
            self._sessions.popitem(last=False)


class SessionReasoningEngine:
    """complete(messages) 客户端 -> ReasoningEngine 适配层"""

    def __init__(
        self,
        client: CompletionClient,
        model_alias: str = "main",
        history: SessionHistory | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self._client = client
        self._model_alias = model_alias
        self._history = history if history is not None else InMemorySessionHistory()
        self._system_prompt = system_prompt

    @property
    def model_alias(self) -> str:
        return self._model_alias

    async def invoke(
        self,
        prompt: str,
        session_id: str | None = None,
        continuity: bool = False,
    ) -> ModelCallResult:
        use_session = continuity and session_id is not None
        messages: list[dict[str, str]] = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        if use_session:
            messages.extend(self._history.get(session_id))
        user_message = {"role": "user", "content": prompt}
        messages.append(user_message)

        try:
            result = await self._client.complete(messages, model_alias=self._model_alias)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"推理引擎调用失败: {e}") from e

        # 失败的调用不写入会话
        if use_session:
            self._history.append(
                session_id,
                [user_message, {"role": "assistant", "content": result.content}],
            )
            log.debug(
                "session_turn_recorded",
                session_id=session_id,
                history_messages=len(messages) - 1,
            )
        return result
