"""LiteLLMClient -- 经由 LiteLLM Proxy 调用推理模型

执行器只关心两类失败：Proxy 不可达（ProxyUnreachableError）与
模型侧拒绝/报错（ProviderError）。两者都不会返回部分响应。
"""

import time
from typing import Any

import httpx
import structlog
from litellm import acompletion

from .exceptions import ProviderError, ProxyUnreachableError
from .models import ModelCallResult, TokenUsage

log = structlog.get_logger()

HEALTH_CHECK_TIMEOUT_S = 5
HEALTH_CHECK_PATH = "/health/liveliness"

_UNREACHABLE_TYPES: tuple[type[Exception], ...] = (
    ConnectionError,
    OSError,
    TimeoutError,
    httpx.TransportError,
)
# litellm 自己的连接类异常，按类名识别
_UNREACHABLE_NAMES = frozenset({"APIConnectionError", "APITimeoutError", "Timeout"})


def _usage_from(response: Any) -> TokenUsage:
    usage = getattr(response, "usage", None)
    if usage is None:
        return TokenUsage()
    try:
        return TokenUsage(
            prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            total_tokens=int(getattr(usage, "total_tokens", 0) or 0),
        )
    except (TypeError, ValueError):
        return TokenUsage()


class LiteLLMClient:
    """complete(messages) 的 LiteLLM Proxy 实现"""

    def __init__(
        self,
        proxy_base_url: str = "http://localhost:4000",
        proxy_api_key: str = "",
        timeout_s: int = 30,
        temperature: float = 0.2,
    ) -> None:
        self._proxy_base_url = proxy_base_url.rstrip("/")
        self._proxy_api_key = proxy_api_key
        self._timeout_s = timeout_s
        self._temperature = temperature

    @property
    def proxy_base_url(self) -> str:
        return self._proxy_base_url

    async def complete(
        self,
        messages: list[dict[str, str]],
        model_alias: str = "main",
        max_tokens: int | None = None,
        **kwargs,
    ) -> ModelCallResult:
        """发送一次 chat completion

        Raises:
            ProxyUnreachableError: 连接失败或超时
            ProviderError: Proxy 返回错误（模型不可用、配额耗尽等）
        """
        request = self._build_request(messages, model_alias, max_tokens, kwargs)
        started = time.monotonic()
        log.debug("litellm_call_start", model_alias=model_alias, message_count=len(messages))

        try:
            response = await acompletion(**request)
        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            log.error(
                "litellm_call_failed",
                model_alias=model_alias,
                error_type=type(e).__name__,
                error=str(e),
                duration_ms=duration_ms,
            )
            raise self._translate_error(e) from e

        result = self._to_result(response, model_alias, int((time.monotonic() - started) * 1000))
        log.info(
            "litellm_call_completed",
            model_alias=model_alias,
            model_name=result.model_name,
            provider=result.provider,
            duration_ms=result.duration_ms,
            total_tokens=result.token_usage.total_tokens,
        )
        return result

    def _build_request(
        self,
        messages: list[dict[str, str]],
        model_alias: str,
        max_tokens: int | None,
        extra: dict[str, Any],
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": model_alias,
            "messages": messages,
            "api_base": self._proxy_base_url,
            "api_key": self._proxy_api_key or "no-key",
            "temperature": self._temperature,
            "timeout": self._timeout_s,
        }
        if max_tokens is not None:
            request["max_tokens"] = max_tokens
        request.update(extra)
        return request

    @staticmethod
    def _to_result(response: Any, model_alias: str, duration_ms: int) -> ModelCallResult:
        hidden = getattr(response, "_hidden_params", None) or {}
        return ModelCallResult(
            content=response.choices[0].message.content or "",
            model_alias=model_alias,
            model_name=str(getattr(response, "model", "") or ""),
            provider=str(hidden.get("custom_llm_provider", "") or ""),
            duration_ms=duration_ms,
            token_usage=_usage_from(response),
        )

    def _translate_error(self, error: Exception) -> ProviderError:
        if isinstance(error, _UNREACHABLE_TYPES) or type(error).__name__ in _UNREACHABLE_NAMES:
            return ProxyUnreachableError(proxy_url=self._proxy_base_url, original_error=error)
        return ProviderError(f"LLM 调用失败: {error}")

    async def health_check(self) -> bool:
        """GET {proxy}/health/liveliness，200 视为可达；从不抛出异常"""
        url = f"{self._proxy_base_url}{HEALTH_CHECK_PATH}"
        try:
            async with httpx.AsyncClient() as http_client:
                resp = await http_client.get(url, timeout=HEALTH_CHECK_TIMEOUT_S)
        except Exception as e:
            log.debug("health_check_failed", url=url, error=str(e))
            return False
        return resp.status_code == 200
