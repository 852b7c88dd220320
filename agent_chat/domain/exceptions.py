"""统一业务异常模型。

Transport、存储与会话层抛出的错误都继承自 BusinessError，
调用方（UI 或脚本）只需捕获这一个基类即可给出提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_WRITE_ERROR"）。
        message: 用户可读错误信息。
        http_status: 来自 Agent API 的 HTTP 状态码，默认 400。
        extra: 其他补充字段（例如 agent_id）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、读超时等。"""


class ApiError(BusinessError):
    """Agent API 返回非 2xx（且非 429）时抛出。"""


class RateLimitError(BusinessError):
    """Agent API 限流（429）。"""


class ValidationError(BusinessError):
    """参数或配置校验失败，例如未选择 Agent、base_url 为空。"""


class StoreError(BusinessError):
    """会话存储读写失败。

    不会回滚内存中的会话状态，下一次 commit 会再次尝试写入。
    """
