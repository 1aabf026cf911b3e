"""
透明中继模块

把未识别为 HTTP 的连接（SMTP 提交会话）经 SOCKS5 代理原样转发到固定上游。

数据转发:
- 两个独立任务分别负责 客户端 -> 上游 和 上游 -> 客户端
- 任一方向结束（EOF 或错误）即结束整个会话，另一方向被取消，两端连接都关闭

识别阶段已缓冲的字节（PeekableReader）最先按序送往上游。
"""

import asyncio
import logging
from typing import Callable, Optional

from .config import RelayConfig
from .connection import Connection
from .dialer import Dialer, Socks5Dialer, resolve_dial
from .errors import ConfigError, DialError
from .logger import log_event

logger = logging.getLogger(__name__)

READ_CHUNK = 32768

DialerFactory = Callable[[RelayConfig], Dialer]


def socks5_dialer(config: RelayConfig) -> Dialer:
    """默认拨号器：经配置的 SOCKS5 代理"""
    return Socks5Dialer(config.proxy, config.connect_timeout, config.keepalive_interval)


async def pipe(src: Connection, dst: Connection):
    """从 src 读取并写入 dst，直到 src 到达 EOF；错误向上抛出"""
    while True:
        data = await src.reader.read(READ_CHUNK)
        if not data:
            return
        await dst.write(data)


async def pump(client: Connection, upstream: Connection) -> Optional[BaseException]:
    """
    双向转发，第一个方向结束时返回

    Returns:
        Optional[BaseException]: 先结束的方向的错误，正常 EOF 时为 None
    """
    tasks = [
        asyncio.create_task(pipe(client, upstream)),
        asyncio.create_task(pipe(upstream, client)),
    ]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    for task in done:
        if task.exception() is not None:
            return task.exception()
    return None


class OpaqueRelay:
    """
    透明中继

    Attributes:
        config: 中继配置（只读）
    """

    def __init__(self, config: RelayConfig, dialer_factory: DialerFactory = socks5_dialer):
        self.config = config
        self._dialer_factory = dialer_factory

    async def handle(self, client: Connection):
        """处理一个透明会话；所有失败都在会话内记录后结束"""
        target = self.config.smtp_target

        try:
            dialer = self._dialer_factory(self.config)
        except ConfigError as e:
            log_event(logger, logging.ERROR, 'upstream_error', f"SOCKS5 拨号器创建错误: {e}",
                      target=str(target), category=e.category.value)
            return
        dial = resolve_dial(dialer, self.config.connect_timeout)

        logger.debug(f"连接 SMTP 目标: {target} (代理 {self.config.proxy})")
        try:
            upstream = await dial(target.host, target.port)
        except DialError as e:
            log_event(logger, logging.WARNING, 'upstream_error', f"经代理连接 SMTP 目标失败: {e}",
                      target=str(target), category=e.category.value)
            return

        try:
            # 上游连接的 keep-alive 由拨号器负责
            if not client.set_keepalive(self.config.keepalive_interval):
                logger.debug(f"客户端连接不支持 keep-alive: peer={client.peer}")

            log_event(logger, logging.INFO, 'relay_established', "连接已建立，开始数据传输",
                      target=str(target))
            error = await pump(client, upstream)
            if error is not None:
                log_event(logger, logging.WARNING, 'relay_error', f"连接错误: {error}",
                          target=str(target))
        finally:
            await upstream.close()
