"""
协议识别模块

在新连接上窥视开头的几个字节（不消费它们），判断会话是 HTTP 还是透明字节流。

识别规则:
- 前 4 字节为 "GET "、"POST"、"HEAD" 或 "CONN"（CONNECT 的前缀）-> HTTP
- 其他任何内容、不足 4 字节、连接关闭或识别窗口超时 -> OPAQUE

SMTP 客户端在收到服务端问候前不会发送数据，因此 SMTP 会话总是在识别窗口
超时后被判定为 OPAQUE。
"""

import asyncio
import logging
from enum import Enum

logger = logging.getLogger(__name__)

PEEK_SIZE = 4
HTTP_PREFIXES = (b"GET ", b"POST", b"HEAD", b"CONN")


class SniffResult(Enum):
    """协议识别结果"""
    HTTP = "http"
    OPAQUE = "opaque"


def classify(prefix: bytes) -> SniffResult:
    """按前缀分类；不足 PEEK_SIZE 字节的前缀一律为 OPAQUE"""
    if len(prefix) >= PEEK_SIZE and prefix[:PEEK_SIZE] in HTTP_PREFIXES:
        return SniffResult.HTTP
    return SniffResult.OPAQUE


class PeekableReader:
    """
    支持窥视的流读取器

    包装 asyncio.StreamReader。peek() 读到的字节保存在内部缓冲区，之后的
    read / readline / readexactly 先返回这些字节，再读底层流，因此窥视
    不会丢失任何数据（包括超时或提前 EOF 时已读到的部分前缀）。
    """

    def __init__(self, reader: asyncio.StreamReader):
        self._reader = reader
        self._pending = b''

    @property
    def buffered(self) -> bytes:
        """已窥视但尚未被读取的字节"""
        return self._pending

    async def _fill(self, n: int):
        while len(self._pending) < n:
            chunk = await self._reader.read(n - len(self._pending))
            if not chunk:
                return
            self._pending += chunk

    async def peek(self, n: int, timeout: float) -> bytes:
        """
        在 timeout 秒内窥视至多 n 个字节

        Returns:
            bytes: 窥视到的字节（可能少于 n）

        Raises:
            asyncio.TimeoutError: 识别窗口内数据不足 n 字节且连接未关闭
        """
        await asyncio.wait_for(self._fill(n), timeout=timeout)
        return self._pending[:n]

    def _take(self, n: int) -> bytes:
        data, self._pending = self._pending[:n], self._pending[n:]
        return data

    async def read(self, n: int = -1) -> bytes:
        if self._pending:
            if n < 0:
                return self._take(len(self._pending)) + await self._reader.read()
            return self._take(n)
        return await self._reader.read(n)

    async def readexactly(self, n: int) -> bytes:
        head = self._take(n)
        if len(head) == n:
            return head
        try:
            return head + await self._reader.readexactly(n - len(head))
        except asyncio.IncompleteReadError as e:
            raise asyncio.IncompleteReadError(head + e.partial, n) from None

    async def readline(self) -> bytes:
        if self._pending:
            idx = self._pending.find(b'\n')
            if idx >= 0:
                return self._take(idx + 1)
            return self._take(len(self._pending)) + await self._reader.readline()
        return await self._reader.readline()

    def at_eof(self) -> bool:
        return not self._pending and self._reader.at_eof()


async def sniff(reader: PeekableReader, timeout: float) -> SniffResult:
    """
    识别连接协议

    窥视失败（超时、连接重置）不是错误，而是 OPAQUE 的信号。
    """
    try:
        prefix = await reader.peek(PEEK_SIZE, timeout)
    except asyncio.TimeoutError:
        logger.debug(f"识别窗口超时，已缓冲 {len(reader.buffered)} 字节")
        return SniffResult.OPAQUE
    except (ConnectionError, OSError) as e:
        logger.debug(f"窥视失败: {e}")
        return SniffResult.OPAQUE
    return classify(prefix)
