"""推理引擎调用失败时抛出的异常"""


class ProviderError(Exception):
    """推理引擎调用失败；执行器据此把任务判为 failed"""


class ProxyUnreachableError(ProviderError):
    """LiteLLM Proxy 连接失败或超时"""

    def __init__(self, proxy_url: str, original_error: Exception) -> None:
        super().__init__(f"LiteLLM Proxy 不可达: {proxy_url} ({original_error})")
        self.proxy_url = proxy_url
        self.original_error = original_error
