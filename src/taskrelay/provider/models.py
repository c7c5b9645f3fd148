"""数据模型 -- TokenUsage + ModelCallResult"""

from pydantic import BaseModel, Field


class TokenUsage(BaseModel):
    """Token 使用统计

    key 命名对齐 OpenAI/LiteLLM 行业标准：
    prompt_tokens / completion_tokens / total_tokens
    """

    prompt_tokens: int = Field(default=0, ge=0, description="输入 token 数")
    completion_tokens: int = Field(default=0, ge=0, description="输出 token 数")
    total_tokens: int = Field(default=0, ge=0, description="总 token 数")


class ModelCallResult(BaseModel):
    """推理引擎调用结果

    所有实现（LiteLLM、Echo、测试桩）统一返回此类型；content 为完整响应文本。
    """

    content: str = Field(description="完整响应文本")
    model_alias: str = Field(description="请求时使用的模型别名")
    model_name: str = Field(default="", description="实际调用的模型名称")
    provider: str = Field(default="", description="实际 provider")
    duration_ms: int = Field(default=0, ge=0, description="端到端耗时（毫秒）")
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
