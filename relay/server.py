"""
中继服务器模块 - 连接调度

此模块包含 RelayServer 类，负责绑定监听地址、接受客户端连接，并为每个连接
在独立的任务中创建 RelaySession。一个缓慢或卡住的连接不会阻塞新连接的接受。

使用示例:
    >>> config = RelayConfig()
    >>> server = RelayServer(config)
    >>> await server.start()
    >>> await server.serve_forever()
"""

import asyncio
import logging
from typing import Optional

from .config import Address, RelayConfig
from .http_router import HttpRouter
from .logger import log_event
from .opaque import OpaqueRelay, DialerFactory, socks5_dialer
from .session import RelaySession

logger = logging.getLogger(__name__)


class RelayServer:
    """
    中继服务器类 - 管理监听套接字和连接分派

    绑定失败对整个进程是致命的：start() 直接抛出 OSError，不重试。
    接受连接时的临时错误由事件循环的异常处理器记录，监听继续。

    Attributes:
        config: 中继配置（只读，与所有会话共享）
        router: HTTP 路由器
        relay: 透明中继
    """

    def __init__(self, config: RelayConfig, dialer_factory: DialerFactory = socks5_dialer):
        self.config = config
        self.router = HttpRouter(config)
        self.relay = OpaqueRelay(config, dialer_factory)
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def address(self) -> Address:
        """实际绑定的地址（监听端口为 0 时由系统分配）"""
        if self._server is None or not self._server.sockets:
            return self.config.listen
        host, port = self._server.sockets[0].getsockname()[:2]
        return Address(host, port)

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """
        处理客户端连接

        由 asyncio.start_server 为每个连接在独立任务中调用。
        """
        session = RelaySession(reader, writer, self.config, self.router, self.relay)
        await session.run()

    def _handle_loop_error(self, loop: asyncio.AbstractEventLoop, context: dict):
        """事件循环异常处理器：记录接受错误等，不终止监听"""
        exc = context.get('exception')
        message = context.get('message', '')
        if 'socket' in context:
            log_event(logger, logging.WARNING, 'accept_error', f"接受连接错误: {message} {exc or ''}")
        else:
            log_event(logger, logging.ERROR, 'loop_error', f"事件循环错误: {message} {exc or ''}")

    async def start(self):
        """
        绑定监听地址并开始接受连接

        Raises:
            OSError: 绑定失败
        """
        asyncio.get_running_loop().set_exception_handler(self._handle_loop_error)
        self._server = await asyncio.start_server(
            self.handle_client,
            self.config.listen.host,
            self.config.listen.port,
        )
        log_event(logger, logging.INFO, 'listening', f"代理监听于 {self.address}",
                  address=str(self.address), proxy=str(self.config.proxy))

    async def serve_forever(self):
        """持续服务直到被取消"""
        if self._server is None:
            await self.start()
        try:
            # 不用 Server.serve_forever：它被取消时会等待所有连接结束
            await asyncio.get_running_loop().create_future()
        finally:
            self.close()

    def close(self):
        """
        停止接受新连接

        不等待进行中的会话（wait_closed 会等所有连接结束），它们随进程退出被丢弃。
        """
        if self._server is not None:
            self._server.close()
            self._server = None
