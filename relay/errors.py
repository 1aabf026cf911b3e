"""
统一异常模型模块

异常层级:
    RelayError (基类)
    ├── ConfigError (配置错误 - 启动时致命)
    ├── HttpParseError (HTTP 请求解析失败 - 会话内)
    ├── DialError (经 SOCKS5 代理拨号失败 - 会话内)
    └── UpstreamError (上游 HTTP 传输失败 - 会话内)

中继中没有任何重试：除 ConfigError 外，所有错误只结束其所属的会话。
"""

from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """错误分类"""
    CONFIG = "config"       # 配置错误
    PROTOCOL = "protocol"   # 客户端协议错误
    NETWORK = "network"     # 网络/代理错误
    UNKNOWN = "unknown"     # 未知错误


class RelayError(Exception):
    """
    基础异常类

    Attributes:
        message: 错误消息
        category: 错误分类
        cause: 原始异常（如有）
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class ConfigError(RelayError):
    """配置值无效"""
    category = ErrorCategory.CONFIG


class HttpParseError(RelayError):
    """无法从客户端流中解析出 HTTP 请求"""
    category = ErrorCategory.PROTOCOL


class DialError(RelayError):
    """经 SOCKS5 代理建立上游连接失败"""
    category = ErrorCategory.NETWORK

    def __init__(self, host: str, port: int, *, cause: Optional[BaseException] = None):
        super().__init__(f"无法连接 {host}:{port}", cause=cause)
        self.host = host
        self.port = port


class UpstreamError(RelayError):
    """上游 HTTP 请求失败"""
    category = ErrorCategory.NETWORK
