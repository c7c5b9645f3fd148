"""推理引擎配置

全部来自环境变量；provider 与具体模型名由 LiteLLM Proxy 侧决定，这里只有别名。
"""

import os
from typing import Literal

import structlog
from pydantic import BaseModel, Field, SecretStr

log = structlog.get_logger()

# 字符串字段：环境变量 -> 字段名
_STR_ENV = {
    "LITELLM_PROXY_URL": "proxy_base_url",
    "TASKRELAY_LLM_MODE": "llm_mode",
    "TASKRELAY_MODEL_ALIAS": "model_alias",
    "TASKRELAY_SYSTEM_PROMPT": "system_prompt",
}


class ProviderConfig(BaseModel):
    """推理引擎配置

    环境变量:
        LITELLM_PROXY_URL, LITELLM_PROXY_KEY
        TASKRELAY_LLM_MODE (litellm/echo), TASKRELAY_MODEL_ALIAS
        TASKRELAY_LLM_TIMEOUT_S, TASKRELAY_SYSTEM_PROMPT
    """

    proxy_base_url: str = Field(default="http://localhost:4000")
    proxy_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Proxy 访问密钥，不是上游 provider 的 key",
    )
    llm_mode: Literal["litellm", "echo"] = "litellm"
    timeout_s: int = Field(default=30, ge=1, description="单次调用超时（秒）")
    model_alias: str = Field(default="main", min_length=1)
    system_prompt: str | None = Field(default=None, description="每次调用前置的 system 消息")


def load_provider_config() -> ProviderConfig:
    values: dict = {
        field: os.environ[env] for env, field in _STR_ENV.items() if os.environ.get(env)
    }
    if key := os.environ.get("LITELLM_PROXY_KEY"):
        values["proxy_api_key"] = SecretStr(key)

    raw_timeout = os.environ.get("TASKRELAY_LLM_TIMEOUT_S")
    if raw_timeout:
        if raw_timeout.isdigit():
            values["timeout_s"] = int(raw_timeout)
        else:
            log.warning(
                "invalid_timeout_config",
                env_var="TASKRELAY_LLM_TIMEOUT_S",
                value=raw_timeout,
                fallback=30,
            )

    return ProviderConfig(**values)
