"""
Enclave 客户端自定义异常

提供层次化的异常类，用于精确的错误处理:
- 请求通道: RateLimited / TransportFailure / Timeout / RemoteError
- 推送通道: ParseFailure / StreamError / ConnectionError
- 本地校验: AuthRequired / ValidationError
"""

from typing import Optional

RESPONSE_EXCERPT_LENGTH = 200


def truncate(text: Optional[str], limit: int = RESPONSE_EXCERPT_LENGTH) -> str:
    """截断文本，超出部分以 ... 标记"""
    if not text:
        return ""
    if len(text) > limit:
        return text[:limit] + "..."
    return text


class EnclaveError(Exception):
    """Enclave 基础异常类"""

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(self.message)


class RequestError(EnclaveError):
    """请求通道错误基类"""

    def __init__(
        self,
        message: str,
        method: str = "",
        target: str = "",
        code: str = "REQUEST_ERROR",
    ):
        super().__init__(message, code=code)
        self.method = method
        self.target = target


class RateLimited(RequestError):
    """速率限制重试耗尽"""

    def __init__(
        self,
        method: str,
        target: str,
        attempts: int,
        status: int = 429,
        response_body: Optional[str] = None,
    ):
        super().__init__(
            f"Rate limited on {method} {target} after {attempts} attempts",
            method=method,
            target=target,
            code="RATE_LIMITED",
        )
        self.attempts = attempts
        self.status = status
        self.response_body = response_body


class TransportFailure(RequestError):
    """传输层错误 (连接拒绝、DNS、断连) 重试耗尽"""

    def __init__(
        self,
        method: str,
        target: str,
        attempts: int,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(
            f"Transport failure on {method} {target} after {attempts} attempts: {cause}",
            method=method,
            target=target,
            code="TRANSPORT_FAILURE",
        )
        self.attempts = attempts
        self.cause = cause


class Timeout(RequestError):
    """本地请求超时 (不重试)"""

    def __init__(self, method: str, target: str, timeout: float):
        super().__init__(
            f"Request timeout after {timeout}s: {method} {target}",
            method=method,
            target=target,
            code="TIMEOUT",
        )
        self.timeout = timeout


class RemoteError(RequestError):
    """
    远端返回非成功状态 (不重试)

    消息格式:
        Enclave API Error: <message>
          Endpoint: <METHOD> <target>
          Status Code: <status>
          Response: <前 200 字符>...
    """

    def __init__(
        self,
        message: str,
        target: str,
        method: str,
        status: Optional[int] = None,
        response_body: Optional[str] = None,
    ):
        lines = [
            f"Enclave API Error: {message}",
            f"  Endpoint: {method} {target}",
        ]
        if status:
            lines.append(f"  Status Code: {status}")
        if response_body:
            lines.append(f"  Response: {truncate(response_body)}")

        super().__init__("\n".join(lines), method=method, target=target, code="REMOTE_ERROR")
        self.reason = message
        self.status = status
        self.response_body = response_body


class ParseFailure(EnclaveError):
    """推送帧解析失败 (帧被丢弃，连接保持)"""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message, code="PARSE_FAILURE")
        self.raw = truncate(raw)


class StreamError(EnclaveError):
    """远端推送的 error 类型帧"""

    def __init__(self, message: str, channel: str = "", data: object = None):
        super().__init__(message, code="STREAM_ERROR")
        self.channel = channel
        self.data = data


class AuthRequired(EnclaveError):
    """私有频道订阅缺少凭证"""

    def __init__(self, channel: str):
        super().__init__(
            f"Authentication required for {channel} subscription",
            code="AUTH_REQUIRED",
        )
        self.channel = channel


class ConnectionError(EnclaveError):
    """WebSocket 连接相关错误"""

    def __init__(
        self,
        message: str,
        url: str = "",
        reconnect_attempts: int = 0
    ):
        super().__init__(message, code="CONNECTION_ERROR")
        self.url = url
        self.reconnect_attempts = reconnect_attempts


class ValidationError(EnclaveError):
    """参数验证错误"""

    def __init__(self, message: str, field: str = ""):
        super().__init__(message, code="VALIDATION_ERROR")
        self.field = field
