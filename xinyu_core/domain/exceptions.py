"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在调用方（UI / 会话层）做统一捕获与用户提示。

流式请求的错误分类：

- InvalidRequest: 请求无法构造或序列化，调用失败且没有任何副作用。
- AuthenticationError: HTTP 401。
- RateLimitError: HTTP 429。
- ServerError: 5xx 以及其他非 2xx 状态码。
- TransportError: 连接失败、HTTP 响应异常、流中途断开、超出截止时间。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class InvalidRequest(ValidationError):
    """请求信封无法构造或序列化。"""


class AuthenticationError(BusinessError):
    """服务端拒绝凭证（401）。"""


class RateLimitError(BusinessError):
    """服务端限流（429），是否重试由调用方决定。"""


class ServerError(BusinessError):
    """服务端返回 5xx 或其他非 2xx 状态码。"""

    @property
    def status_code(self) -> int:
        return self.http_status


class TransportError(BusinessError):
    """网络层错误，例如连接失败、超时、流中途断开等。"""

    def __init__(self, code: str, message: str, http_status: Optional[int] = None, **extra):
        super().__init__(code=code, message=message, http_status=http_status or 503, **extra)


class MalformedStreamError(TransportError):
    """连续无法解析的 SSE 数据行超过上限。"""
