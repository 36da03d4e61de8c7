"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于编排层在每个生成通道的边界统一捕获并转换为消息级错误状态。

只有 ConversationNotFoundError / ValidationError 这类调用方错误会直接
抛给调用者，其余后端错误都不会越过通道边界。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class ConversationNotFoundError(BusinessError):
    """会话不存在，属于调用方错误，直接抛出。"""

    def __init__(self, conversation_id: str):
        super().__init__(
            code="CONVERSATION_NOT_FOUND",
            message=f"Conversation not found: {conversation_id}",
            http_status=404,
            conversation_id=conversation_id,
        )


class ConnectionUnavailableError(BusinessError):
    """未配置任何后端连接，请求发出之前即失败。"""


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时、流中途断开等。"""


class ProtocolError(BusinessError):
    """后端返回的数据无法解析。"""


class ApiError(BusinessError):
    """后端返回非 2xx 且不属于认证/限流的错误。"""


class AuthenticationError(ApiError):
    """认证失败（401/403）。"""


class RateLimitError(ApiError):
    """后端限流（429）。"""


class StoreError(BusinessError):
    """持久化读写失败。"""
