"""EchoMessageAdapter -- 离线开发用推理引擎

不访问网络：取最后一条 user message 的首个非空行回声，并按交付物分隔格式包裹，
开发环境下执行-投递流水线因此能完整跑通。
"""

import time

from taskrelay.core.config import DELIVERABLE_TAG

from .models import ModelCallResult, TokenUsage


def _headline(messages: list[dict[str, str]]) -> str:
    users = [m for m in messages if m.get("role") == "user"] or messages
    if not users:
        return "(empty)"
    for line in users[-1].get("content", "").splitlines():
        if line.strip():
            return line.strip()
    return "(empty)"


class EchoMessageAdapter:
    def __init__(self, wrap_deliverable: bool = True) -> None:
        self._wrap_deliverable = wrap_deliverable

    async def complete(
        self,
        messages: list[dict[str, str]],
        model_alias: str = "echo",
        **kwargs,
    ) -> ModelCallResult:
        started = time.monotonic()
        text = f"Echo: {_headline(messages)}"
        if self._wrap_deliverable:
            text = f"<{DELIVERABLE_TAG}>\n{text}\n</{DELIVERABLE_TAG}>"

        # 按空白切分粗估 token 数
        prompt_tokens = sum(len(m.get("content", "").split()) for m in messages)
        completion_tokens = len(text.split())
        return ModelCallResult(
            content=text,
            model_alias=model_alias,
            model_name="echo",
            provider="echo",
            duration_ms=int((time.monotonic() - started) * 1000),
            token_usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )
