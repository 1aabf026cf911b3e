"""
HTTP 路由模块

从已识别为 HTTP 的连接中解析一个请求，按 host+path 精确匹配路由表，
经 SOCKS5 代理向映射的 URL 重新发出请求，并把完整响应原样写回客户端。

行为约定:
- 每个连接只处理一个请求（不支持 keep-alive、流水线和上游连接复用）
- 解析失败或路由未命中时不向客户端写任何字节，直接关闭
- 上游请求只尝试一次，失败不重试，也不会退回直连
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional
from urllib.parse import unquote, urlsplit

import aiohttp
from aiohttp_socks import ProxyConnector
from multidict import CIMultiDict
from python_socks import ProxyError

from .config import RelayConfig
from .connection import Connection
from .errors import HttpParseError, UpstreamError
from .logger import log_event

logger = logging.getLogger(__name__)

MAX_HEAD_SIZE = 64 * 1024
READ_CHUNK = 32768

# 不让 aiohttp 自动添加请求头，出站请求头只来自原请求
SKIP_AUTO_HEADERS = ('Accept', 'Accept-Encoding', 'User-Agent', 'Content-Type')


@dataclass
class HttpRequest:
    """
    解析后的 HTTP 请求

    Attributes:
        method: 请求方法
        target: 请求行中的目标（原样）
        version: 协议版本字符串，如 "HTTP/1.1"
        headers: 请求头（保持原顺序，大小写不敏感）
        host: 目标主机（绝对 URI 的 authority，否则为 Host 头）
        path: 目标路径（已解码，不含查询串）
        body: 请求体的异步迭代器，无请求体时为 None
    """
    method: str
    target: str
    version: str
    headers: CIMultiDict
    host: str
    path: str
    body: Optional[AsyncIterator[bytes]] = None

    @property
    def route_key(self) -> str:
        """路由键：host 与 path 直接拼接，不做任何规范化"""
        return self.host + self.path


# ============================================================================
# 请求解析
# ============================================================================

async def _read_head_line(reader, consumed: int) -> bytes:
    try:
        line = await reader.readline()
    except (ValueError, asyncio.LimitOverrunError) as e:
        raise HttpParseError("请求头过长", cause=e) from e
    if consumed + len(line) > MAX_HEAD_SIZE:
        raise HttpParseError("请求头过长")
    return line


def _split_target(method: str, target: str, headers: CIMultiDict):
    """根据请求目标的形式确定 (host, path)"""
    if target.startswith('/'):
        return headers.get('Host', ''), unquote(urlsplit(target).path)
    if '://' in target:
        parts = urlsplit(target)
        if not parts.netloc:
            raise HttpParseError(f"请求目标缺少主机: {target!r}")
        # authority 去掉 userinfo，保持大小写
        return parts.netloc.rpartition('@')[2], unquote(parts.path)
    if method == 'CONNECT':
        return target, ''
    if target == '*':
        return headers.get('Host', ''), ''
    raise HttpParseError(f"无法识别的请求目标: {target!r}")


async def _fixed_body(reader, length: int) -> AsyncIterator[bytes]:
    remaining = length
    while remaining > 0:
        chunk = await reader.read(min(READ_CHUNK, remaining))
        if not chunk:
            raise asyncio.IncompleteReadError(b'', remaining)
        remaining -= len(chunk)
        yield chunk


async def _chunked_body(reader) -> AsyncIterator[bytes]:
    while True:
        size_line = await reader.readline()
        try:
            size = int(size_line.split(b';', 1)[0].strip(), 16)
        except ValueError:
            raise HttpParseError(f"chunk 长度无效: {size_line[:32]!r}") from None
        if size == 0:
            # 丢弃 trailer，直到空行
            while True:
                line = await reader.readline()
                if line in (b'\r\n', b'\n', b''):
                    return
        # 按 READ_CHUNK 分段转发，chunk 长度由客户端声明，不能整块缓冲
        remaining = size
        while remaining > 0:
            data = await reader.readexactly(min(READ_CHUNK, remaining))
            remaining -= len(data)
            yield data
        await reader.readexactly(2)


async def read_request(reader) -> HttpRequest:
    """
    从流中解析一个 HTTP 请求（请求行和请求头）

    请求体不在这里读取，而是作为异步迭代器返回，由出站请求直接从客户端
    连接流式读取。

    Raises:
        HttpParseError: 请求格式错误、连接提前关闭或请求头过长
    """
    line = await _read_head_line(reader, 0)
    consumed = len(line)
    if not line.endswith(b'\n'):
        raise HttpParseError("连接在请求行结束前关闭")

    parts = line.decode('latin-1').rstrip('\r\n').split(' ')
    if len(parts) != 3 or not all(parts):
        raise HttpParseError(f"请求行格式错误: {line[:80]!r}")
    method, target, version = parts
    if not version.startswith('HTTP/1.'):
        raise HttpParseError(f"不支持的协议版本: {version!r}")

    headers = CIMultiDict()
    while True:
        line = await _read_head_line(reader, consumed)
        consumed += len(line)
        if line in (b'\r\n', b'\n'):
            break
        if not line.endswith(b'\n'):
            raise HttpParseError("连接在请求头结束前关闭")
        name, sep, value = line.decode('latin-1').partition(':')
        if not sep or not name or name != name.strip():
            raise HttpParseError(f"请求头格式错误: {line[:80]!r}")
        headers.add(name, value.strip())

    host, path = _split_target(method, target, headers)

    body = None
    if 'chunked' in headers.get('Transfer-Encoding', '').lower():
        body = _chunked_body(reader)
    elif 'Content-Length' in headers:
        try:
            length = int(headers['Content-Length'])
        except ValueError:
            raise HttpParseError(f"Content-Length 无效: {headers['Content-Length']!r}") from None
        if length < 0:
            raise HttpParseError("Content-Length 为负数")
        if length > 0:
            body = _fixed_body(reader, length)

    return HttpRequest(method, target, version, headers, host, path, body)


def outbound_headers(request: HttpRequest) -> CIMultiDict:
    """
    复制原请求头作为出站请求头

    Host 由目标 URL 的 authority 决定，因此不复制。Transfer-Encoding 是逐跳头，
    请求体长度未知时 aiohttp 会重新按 chunked 发送。chunked 请求同时带有
    Content-Length 时以 chunked 为准（RFC 7230 3.3.3），Content-Length 不转发。
    """
    headers = CIMultiDict(request.headers)
    headers.popall('Host', None)
    if 'chunked' in headers.get('Transfer-Encoding', '').lower():
        headers.popall('Content-Length', None)
    headers.popall('Transfer-Encoding', None)
    return headers


# ============================================================================
# 路由器
# ============================================================================

class HttpRouter:
    """
    HTTP 路由器

    整个 HTTP 会话在调用方的任务上顺序执行：解析、拨号、转发、写回。

    Attributes:
        config: 中继配置（只读）
    """

    def __init__(self, config: RelayConfig):
        self.config = config

    def _make_session(self) -> aiohttp.ClientSession:
        # 每个请求独立的连接器：只经 SOCKS5 出站，远程 DNS，不复用连接
        connector = ProxyConnector.from_url(self.config.proxy_url, rdns=True, force_close=True)
        return aiohttp.ClientSession(
            connector=connector,
            auto_decompress=False,
            timeout=aiohttp.ClientTimeout(total=None),
        )

    async def handle(self, client: Connection):
        """处理一个 HTTP 会话；所有失败都在会话内记录后结束"""
        try:
            request = await read_request(client.reader)
        except HttpParseError as e:
            log_event(logger, logging.WARNING, 'http_parse_error', f"HTTP 解析错误: {e}")
            return

        key = request.route_key
        target_url = self.config.lookup(key)
        if target_url is None:
            log_event(logger, logging.WARNING, 'route_miss', f"无目标: {key}", key=key)
            return

        log_event(logger, logging.INFO, 'route_hit', f"路由 {key} -> {target_url}",
                  key=key, method=request.method, url=target_url)

        try:
            status = await self.forward(request, target_url, client)
        except UpstreamError as e:
            log_event(logger, logging.WARNING, 'upstream_error', f"请求失败: {e}", url=target_url,
                      category=e.category.value)
            return
        except (ConnectionError, OSError) as e:
            log_event(logger, logging.WARNING, 'client_write_error', f"客户端写入错误: {e}")
            return

        log_event(logger, logging.INFO, 'http_success', f"成功 ({status})", status=status)

    async def forward(self, request: HttpRequest, target_url: str, client: Connection) -> int:
        """
        经代理发出请求并把响应写回客户端

        Returns:
            int: 上游状态码

        Raises:
            UpstreamError: 代理拨号、上游请求或读取上游响应失败
            ConnectionError / OSError: 写回客户端失败
        """
        async with self._make_session() as session:
            try:
                resp = await session.request(
                    request.method,
                    target_url,
                    headers=outbound_headers(request),
                    data=request.body,
                    skip_auto_headers=SKIP_AUTO_HEADERS,
                )
            except (aiohttp.ClientError, ProxyError, HttpParseError,
                    asyncio.IncompleteReadError, asyncio.TimeoutError, OSError) as e:
                raise UpstreamError(f"{request.method} {target_url}", cause=e) from e

            async with resp:
                await write_response(resp, client, request.method)
                return resp.status


def _status_line(resp: aiohttp.ClientResponse) -> bytes:
    version = resp.version or aiohttp.HttpVersion11
    return f"HTTP/{version.major}.{version.minor} {resp.status} {resp.reason or ''}\r\n".encode('latin-1')


def response_has_body(method: str, status: int) -> bool:
    """HEAD 的响应以及 1xx / 204 / 304 响应没有响应体"""
    if method == 'HEAD':
        return False
    return not (100 <= status < 200 or status in (204, 304))


async def write_response(resp: aiohttp.ClientResponse, client: Connection, method: str = 'GET'):
    """
    把上游响应原样写回客户端：状态行、原始响应头、响应体

    aiohttp 会解开 chunked 编码，因此 chunked 响应体在这里重新按 chunk 封装，
    使写回的字节与响应头一致。没有响应体的响应只写状态行和响应头。
    """
    head = _status_line(resp)
    head += b''.join(name + b': ' + value + b'\r\n' for name, value in resp.raw_headers)
    head += b'\r\n'
    await client.write(head)

    if not response_has_body(method, resp.status):
        return

    chunked = 'chunked' in resp.headers.get('Transfer-Encoding', '').lower()
    try:
        async for data in resp.content.iter_any():
            if not data:
                continue
            if chunked:
                data = b'%x\r\n' % len(data) + data + b'\r\n'
            await client.write(data)
    except aiohttp.ClientError as e:
        raise UpstreamError("读取上游响应体失败", cause=e) from e

    if chunked:
        await client.write(b'0\r\n\r\n')
