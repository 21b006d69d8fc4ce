"""
clawlink.errors
错误分类：连接失败 / 认证失败 / 调用超时 / 远端错误 / 连接关闭 / 畸形帧。
每种致命错误携带进程退出码。
"""
from __future__ import annotations

from typing import Any

EXIT_OK = 0
EXIT_CONN = 1
EXIT_AUTH = 2
EXIT_OP = 3
EXIT_TIMEOUT = 4
EXIT_USAGE = 5


class GatewayError(Exception):
    exit_code = EXIT_OP


class ConnectionFailed(GatewayError):
    """Gateway unreachable, establishment timed out, or closed before auth."""
    exit_code = EXIT_CONN


class AuthError(GatewayError):
    exit_code = EXIT_AUTH


class StaleDeviceToken(AuthError):
    """The cached device token was rejected by the gateway."""


class CallTimeout(GatewayError):
    exit_code = EXIT_TIMEOUT

    def __init__(self, method: str):
        super().__init__(f"Timeout waiting for response to {method}")
        self.method = method


class RemoteError(GatewayError):
    def __init__(self, method: str, detail: Any):
        super().__init__(f"{method} failed: {describe_error(detail)}")
        self.method = method
        self.detail = detail


class ConnectionClosed(GatewayError):
    pass


class MalformedFrame(ValueError):
    pass


def describe_error(detail: Any) -> str:
    if isinstance(detail, dict):
        message = detail.get("message")
        code = detail.get("code")
        if message and code:
            return f"{code}: {message}"
        if message or code:
            return str(message or code)
    if detail is None:
        return "Unknown error"
    return str(detail)
