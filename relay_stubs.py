"""
测试用的本地服务器

- Socks5Stub: 最小 SOCKS5 服务器，把请求的 host:port 映射到本地地址
- HttpUpstream: 记录收到的请求并返回固定响应的 HTTP 上游
- SmtpUpstream: 发送问候、逐行应答的 SMTP 风格上游
"""

import asyncio
import logging
import socket
import struct
from typing import Dict, List, Optional, Tuple

from relay.config import Address

VERSION = 0x05
AUTH_NONE = 0x00
CMD_CONNECT = 0x01
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04
REP_SUCCESS = 0x00
REP_HOST_UNREACHABLE = 0x04

REPLY_TAIL = bytes([0, ATYP_IPV4, 0, 0, 0, 0, 0, 0])


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
    try:
        while True:
            data = await reader.read(32768)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except (ConnectionError, OSError):
        pass
    finally:
        writer.close()


def unused_port() -> int:
    """返回当前未被监听的本地端口"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


class _Server:
    """本地 asyncio 服务器的公共部分"""

    def __init__(self):
        self._server: Optional[asyncio.AbstractServer] = None
        self.connections = 0

    async def handle(self, reader, writer):
        raise NotImplementedError

    async def _handle(self, reader, writer):
        self.connections += 1
        try:
            await self.handle(reader, writer)
        finally:
            writer.close()

    @property
    def address(self) -> Address:
        host, port = self._server.sockets[0].getsockname()[:2]
        return Address(host, port)

    async def __aenter__(self):
        self._server = await asyncio.start_server(self._handle, '127.0.0.1', 0)
        return self

    async def __aexit__(self, *exc):
        self._server.close()


class Socks5Stub(_Server):
    """
    SOCKS5 服务器替身

    targets 把客户端请求的 (host, port) 映射到实际连接的本地地址；
    未映射的目标返回 "host unreachable"。

    Attributes:
        requests: 收到的 CONNECT 目标列表
    """

    def __init__(self, targets: Dict[Tuple[str, int], Address]):
        super().__init__()
        self.targets = dict(targets)
        self.requests: List[Tuple[str, int]] = []

    async def handle(self, reader, writer):
        try:
            version, nmethods = await reader.readexactly(2)
            if version != VERSION:
                return
            await reader.readexactly(nmethods)
            writer.write(bytes([VERSION, AUTH_NONE]))
            await writer.drain()

            _, cmd, _, atyp = await reader.readexactly(4)
            if atyp == ATYP_IPV4:
                host = socket.inet_ntoa(await reader.readexactly(4))
            elif atyp == ATYP_DOMAIN:
                length = (await reader.readexactly(1))[0]
                host = (await reader.readexactly(length)).decode()
            elif atyp == ATYP_IPV6:
                host = socket.inet_ntop(socket.AF_INET6, await reader.readexactly(16))
            else:
                return
            port = struct.unpack('>H', await reader.readexactly(2))[0]
            self.requests.append((host, port))

            target = self.targets.get((host, port))
            if cmd != CMD_CONNECT or target is None:
                writer.write(bytes([VERSION, REP_HOST_UNREACHABLE]) + REPLY_TAIL)
                await writer.drain()
                return

            remote_reader, remote_writer = await asyncio.open_connection(target.host, target.port)
            writer.write(bytes([VERSION, REP_SUCCESS]) + REPLY_TAIL)
            await writer.drain()
            await asyncio.gather(
                _pipe(reader, remote_writer),
                _pipe(remote_reader, writer),
            )
        except (asyncio.IncompleteReadError, ConnectionError, OSError) as e:
            logging.getLogger(__name__).debug(f"SOCKS5 替身连接结束: {e}")


class HttpUpstream(_Server):
    """
    HTTP 上游替身

    Attributes:
        response: 每个请求返回的原始响应字节
        requests: 收到的 (请求头原文, 请求体) 列表
    """

    def __init__(self, response: bytes):
        super().__init__()
        self.response = response
        self.requests: List[Tuple[bytes, bytes]] = []

    async def handle(self, reader, writer):
        head = await reader.readuntil(b'\r\n\r\n')
        body = b''
        for line in head.split(b'\r\n'):
            name, _, value = line.partition(b':')
            if name.strip().lower() == b'content-length':
                body = await reader.readexactly(int(value))
            elif name.strip().lower() == b'transfer-encoding' and b'chunked' in value.lower():
                while True:
                    size = int((await reader.readline()).strip(), 16)
                    if size == 0:
                        await reader.readline()
                        break
                    body += await reader.readexactly(size)
                    await reader.readexactly(2)
        self.requests.append((head, body))
        writer.write(self.response)
        await writer.drain()


class SmtpUpstream(_Server):
    """
    SMTP 风格上游替身

    连接后发送 220 问候；每收到一行回复 "250 <行>"；收到 QUIT 回复 221 并关闭。

    Attributes:
        received: 收到的全部字节
    """

    def __init__(self, greeting: bytes = b"220 relay.test ESMTP\r\n"):
        super().__init__()
        self.greeting = greeting
        self.received = b''
        self.closed = asyncio.Event()

    async def handle(self, reader, writer):
        try:
            writer.write(self.greeting)
            await writer.drain()
            while True:
                line = await reader.readline()
                if not line:
                    break
                self.received += line
                if line.strip().upper() == b'QUIT':
                    writer.write(b"221 bye\r\n")
                    await writer.drain()
                    break
                writer.write(b"250 " + line)
                await writer.drain()
        except (ConnectionError, OSError):
            pass
        finally:
            self.closed.set()


async def read_all(reader: asyncio.StreamReader, timeout: float = 5.0) -> bytes:
    """读取直到 EOF"""
    return await asyncio.wait_for(reader.read(), timeout=timeout)


async def wait_for_event(caplog, event: str, timeout: float = 5.0):
    """等待 caplog 中出现指定事件"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while event not in events(caplog):
        if loop.time() > deadline:
            raise AssertionError(f"未出现事件 {event}: {events(caplog)}")
        await asyncio.sleep(0.01)


def events(caplog) -> List[str]:
    """caplog 中记录的事件名列表"""
    return [r.event for r in caplog.records if hasattr(r, 'event')]
