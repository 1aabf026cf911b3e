"""
连接管理模块

本模块定义中继会话使用的全双工连接，以及可选的 TCP keep-alive 能力。

每个透明会话有两个连接：面向客户端的连接和上游连接。会话在所有退出路径上
（成功、错误、超时）负责关闭它拥有的连接。
"""

import asyncio
import socket
import logging
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)


def format_peer(writer: asyncio.StreamWriter) -> str:
    """返回对端地址字符串，未知时返回 "unknown" """
    peer = writer.get_extra_info('peername')
    if not peer:
        return "unknown"
    return f"{peer[0]}:{peer[1]}"


def enable_keepalive(writer: asyncio.StreamWriter, interval: float) -> bool:
    """
    在底层 TCP socket 上开启 keep-alive

    底层传输不提供 TCP socket 时（例如 Unix socket、测试替身）直接跳过，
    这不是错误。

    Returns:
        bool: 是否已开启
    """
    sock = writer.get_extra_info('socket')
    if sock is None or sock.family not in (socket.AF_INET, socket.AF_INET6):
        return False

    seconds = max(1, int(interval))
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
    # 各平台支持的选项不同，缺失的选项跳过
    if hasattr(socket, 'TCP_KEEPIDLE'):
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, seconds)
    elif hasattr(socket, 'TCP_KEEPALIVE'):
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPALIVE, seconds)
    if hasattr(socket, 'TCP_KEEPINTVL'):
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, seconds)
    return True


@dataclass
class Connection:
    """
    全双工字节流连接

    Attributes:
        reader: 读取端（asyncio.StreamReader 或 PeekableReader）
        writer: 写入端
        peer: 对端地址字符串
        closed: 是否已关闭
    """
    reader: Any
    writer: asyncio.StreamWriter
    peer: str = "unknown"
    closed: bool = False

    @classmethod
    def from_streams(cls, reader: Any, writer: asyncio.StreamWriter) -> 'Connection':
        return cls(reader=reader, writer=writer, peer=format_peer(writer))

    def set_keepalive(self, interval: float) -> bool:
        """开启 TCP keep-alive；传输不支持时返回 False"""
        if self.closed:
            return False
        try:
            return enable_keepalive(self.writer, interval)
        except OSError as e:
            logger.debug(f"设置 keep-alive 失败: peer={self.peer}, error={e}")
            return False

    async def write(self, data: bytes):
        self.writer.write(data)
        await self.writer.drain()

    async def close(self):
        """
        关闭连接

        可以重复调用；关闭过程中的错误只记录 DEBUG 日志。
        """
        if self.closed:
            return
        self.closed = True
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"关闭连接时出错: peer={self.peer}, error={e}")


async def open_connection(sock: socket.socket, peer: Optional[str] = None) -> Connection:
    """把已连接的 socket 包装为 Connection"""
    reader, writer = await asyncio.open_connection(sock=sock)
    conn = Connection.from_streams(reader, writer)
    if peer:
        conn.peer = peer
    return conn
