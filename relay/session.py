"""
中继会话模块

本模块定义了 RelaySession 类，负责一个已接受连接从建立到关闭的完整生命周期：
协议识别、按协议分派到 HTTP 路由器或透明中继，以及在所有退出路径上关闭连接。

超时策略:
- 识别窗口（initial_timeout）只约束窥视
- I/O 窗口（io_timeout）约束协议确定后的整个 HTTP 往返或透明会话
- 窗口用 asyncio.wait_for 表达，离开作用域即清除，短窗口不会截断后续阶段
"""

import asyncio
import itertools
import logging

from .config import RelayConfig
from .connection import Connection
from .http_router import HttpRouter
from .logger import bind_context, log_event, reset_context
from .opaque import OpaqueRelay
from .sniffer import PeekableReader, SniffResult, sniff

logger = logging.getLogger(__name__)

_session_ids = itertools.count(1)


class RelaySession:
    """
    中继会话类 - 处理单个客户端连接

    工作流程:
    1. 记录新连接
    2. 在识别窗口内窥视前 4 字节并分类
    3. 在 I/O 窗口内运行 HTTP 路由器或透明中继
    4. 关闭客户端连接

    Attributes:
        client: 客户端连接（读取端为 PeekableReader）
        config: 中继配置（只读）
        session_id: 进程内递增的会话编号
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        config: RelayConfig,
        router: HttpRouter,
        relay: OpaqueRelay,
    ):
        self.client = Connection.from_streams(PeekableReader(reader), writer)
        self.config = config
        self.router = router
        self.relay = relay
        self.session_id = next(_session_ids)

    async def run(self):
        """主会话处理器；任何错误都不会离开会话"""
        token = bind_context(session=self.session_id, peer=self.client.peer)
        log_event(logger, logging.INFO, 'connection_opened', "新连接")
        try:
            protocol = await sniff(self.client.reader, self.config.initial_timeout)
            log_event(logger, logging.INFO, 'protocol_classified',
                      f"开始 {protocol.value.upper()} 会话", protocol=protocol.value)

            if protocol is SniffResult.HTTP:
                handler = self.router.handle(self.client)
            else:
                handler = self.relay.handle(self.client)
            await asyncio.wait_for(handler, timeout=self.config.io_timeout)

        except asyncio.TimeoutError:
            log_event(logger, logging.WARNING, 'session_timeout',
                      f"会话超过 I/O 窗口 ({self.config.io_timeout:g}s)")
        except asyncio.CancelledError:
            logger.debug("会话被取消")
            raise
        except Exception as e:
            log_event(logger, logging.ERROR, 'session_error', f"会话错误: {e}",
                      error=type(e).__name__)
        finally:
            await self.client.close()
            log_event(logger, logging.INFO, 'session_closed', "连接已关闭")
            reset_context(token)
