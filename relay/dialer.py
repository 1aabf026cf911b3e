"""
SOCKS5 拨号模块

所有出站连接都经过 SOCKS5 代理建立，从不直连。目标主机名交给代理解析
（远程 DNS），以免本地 DNS 泄漏。

能力模型:
- Dialer: 基础契约，dial(host, port) 使用拨号器自身的超时
- DeadlineDialer: 增强契约，dial_within(host, port, timeout) 支持调用方给出的时限

调用方在构造时确定使用哪一个契约，而不是在每次拨号时做类型检查。
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from python_socks import ProxyError, ProxyTimeoutError, ProxyConnectionError
from python_socks.async_.asyncio import Proxy

from .config import Address
from .connection import Connection, open_connection
from .errors import ConfigError, DialError

logger = logging.getLogger(__name__)

DialFunc = Callable[[str, int], Awaitable[Connection]]


class Dialer(ABC):
    """基础拨号契约"""

    @abstractmethod
    async def dial(self, host: str, port: int) -> Connection:
        """
        建立到 host:port 的连接

        Raises:
            DialError: 连接失败
        """


class DeadlineDialer(Dialer):
    """支持调用方时限的拨号契约"""

    @abstractmethod
    async def dial_within(self, host: str, port: int, timeout: float) -> Connection:
        """在 timeout 秒内建立连接，超时抛出 DialError"""


class Socks5Dialer(DeadlineDialer):
    """
    经 SOCKS5 代理拨号

    Attributes:
        proxy: 代理地址
        connect_timeout: 拨号器自身的连接超时（秒）
        keepalive_interval: 拨出的上游连接开启的 keep-alive 间隔（秒）
    """

    def __init__(self, proxy: Address, connect_timeout: float, keepalive_interval: float = 30.0):
        if connect_timeout <= 0:
            raise ConfigError("connect_timeout 必须为正数")
        self.proxy = proxy
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        try:
            self._proxy = Proxy.from_url(f"socks5://{proxy}", rdns=True)
        except ValueError as e:
            raise ConfigError(f"无效的 SOCKS5 代理地址: {proxy}", cause=e) from e

    async def _connect(self, host: str, port: int, timeout: float) -> Connection:
        try:
            sock = await self._proxy.connect(dest_host=host, dest_port=port, timeout=timeout)
            conn = await open_connection(sock, peer=f"{host}:{port}")
        except (ProxyError, ProxyTimeoutError, ProxyConnectionError,
                asyncio.TimeoutError, OSError) as e:
            raise DialError(host, port, cause=e) from e
        if not conn.set_keepalive(self.keepalive_interval):
            logger.debug(f"上游连接不支持 keep-alive: {host}:{port}")
        logger.debug(f"经代理 {self.proxy} 连接成功: {host}:{port}")
        return conn

    async def dial(self, host: str, port: int) -> Connection:
        return await self._connect(host, port, self.connect_timeout)

    async def dial_within(self, host: str, port: int, timeout: float) -> Connection:
        try:
            return await asyncio.wait_for(self._connect(host, port, timeout), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise DialError(host, port, cause=e) from e


def resolve_dial(dialer: Dialer, timeout: float) -> DialFunc:
    """
    按拨号器的能力选择拨号方式

    DeadlineDialer 使用有时限的拨号，其他拨号器退回到 dial()。
    """
    if isinstance(dialer, DeadlineDialer):
        async def dial(host: str, port: int) -> Connection:
            return await dialer.dial_within(host, port, timeout)
        return dial
    return dialer.dial
