"""taskrelay Provider -- 推理引擎抽象层

taskrelay.provider 的公开接口导出。
"""

from .client import LiteLLMClient
from .config import ProviderConfig, load_provider_config
from .echo_adapter import EchoMessageAdapter
from .engine import (
    CompletionClient,
    InMemorySessionHistory,
    ReasoningEngine,
    SessionHistory,
    SessionReasoningEngine,
)
from .exceptions import ProviderError, ProxyUnreachableError
from .models import ModelCallResult, TokenUsage

__all__ = [
    "ModelCallResult",
    "TokenUsage",
    "LiteLLMClient",
    "EchoMessageAdapter",
    "ReasoningEngine",
    "CompletionClient",
    "SessionHistory",
    "InMemorySessionHistory",
    "SessionReasoningEngine",
    "ProviderConfig",
    "load_provider_config",
    "ProviderError",
    "ProxyUnreachableError",
]
