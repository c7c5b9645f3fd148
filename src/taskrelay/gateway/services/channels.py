"""投递渠道 -- ChannelSender 接口、注册表与 webhook 实现"""

from typing import Protocol

import httpx
import structlog
from pydantic import BaseModel
from taskrelay.core.config import CHANNEL_SEND_TIMEOUT_S

log = structlog.get_logger()


class SendResult(BaseModel):
    """单次发送结果"""

    success: bool
    error: str = ""
    provider_ref: str | None = None


class ChannelSender(Protocol):
    """渠道发送接口：每次执行每个动作最多调用一次，渠道无需自行去重"""

    async def send(self, recipient: str | None, content: str) -> SendResult: ...


class ChannelRegistry:
    """渠道名 -> ChannelSender"""

    def __init__(self) -> None:
        self._senders: dict[str, ChannelSender] = {}

    def register(self, name: str, sender: ChannelSender) -> None:
        self._senders[name] = sender

    def get(self, name: str) -> ChannelSender | None:
        return self._senders.get(name)

    def channel_names(self) -> list[str]:
        return sorted(self._senders)


class WebhookChannelSender:
    """通过 HTTP POST 把内容交给外部渠道服务

    请求体: {"recipient": ..., "content": ...}；2xx 视为成功。
    """

    def __init__(
        self,
        name: str,
        url: str,
        timeout_s: float = CHANNEL_SEND_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._name = name
        self._url = url
        self._timeout_s = timeout_s
        self._transport = transport

    async def send(self, recipient: str | None, content: str) -> SendResult:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_s,
                transport=self._transport,
            ) as client:
                resp = await client.post(
                    self._url,
                    json={"recipient": recipient, "content": content},
                )
        except httpx.HTTPError as e:
            log.warning("channel_send_error", channel=self._name, error=str(e))
            return SendResult(success=False, error=f"{type(e).__name__}: {e}")

        if resp.is_success:
            return SendResult(success=True, provider_ref=resp.headers.get("X-Message-ID"))
        return SendResult(success=False, error=f"HTTP {resp.status_code}")


def build_channel_registry(webhooks: dict[str, str]) -> ChannelRegistry:
    """按配置创建渠道注册表"""
    registry = ChannelRegistry()
    for name, url in webhooks.items():
        registry.register(name, WebhookChannelSender(name, url))
        log.info("channel_registered", channel=name, kind="webhook")
    return registry
