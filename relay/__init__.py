"""
YAMN 本地中继

在 YAMN 客户端前面运行的本地回环中继：按连接识别协议，HTTP 请求按路由表
重写后转发，其他连接（SMTP）原样转发到固定上游，全部经 SOCKS5 代理出站。

使用示例：
    from relay import RelayConfig, RelayServer
    server = RelayServer(RelayConfig())
    await server.start()
    await server.serve_forever()
"""

__version__ = "1.0.0"

from .config import Address, RelayConfig, CompanionConfig, parse_address
from .errors import RelayError, ConfigError, HttpParseError, DialError, UpstreamError
from .sniffer import SniffResult

# 延迟导入网络相关模块，避免只用配置时加载 aiohttp
def __getattr__(name):
    if name == 'RelayServer':
        from .server import RelayServer
        return RelayServer
    elif name == 'HttpRouter':
        from .http_router import HttpRouter
        return HttpRouter
    elif name == 'OpaqueRelay':
        from .opaque import OpaqueRelay
        return OpaqueRelay
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

__all__ = [
    'Address',
    'RelayConfig',
    'CompanionConfig',
    'parse_address',
    'RelayError',
    'ConfigError',
    'HttpParseError',
    'DialError',
    'UpstreamError',
    'SniffResult',
    'RelayServer',
    'HttpRouter',
    'OpaqueRelay',
]
