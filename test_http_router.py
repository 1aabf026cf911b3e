#!/usr/bin/env python3
"""
HTTP 路由测试

请求解析的单元测试，以及经 SOCKS5 替身的端到端路由测试。
"""

import asyncio
import logging

import pytest

from relay.config import Address, RelayConfig
from relay.errors import HttpParseError
from relay.http_router import READ_CHUNK, outbound_headers, read_request, response_has_body
from relay.server import RelayServer
from relay.sniffer import PeekableReader
from relay_stubs import HttpUpstream, Socks5Stub, events, read_all, unused_port, wait_for_event

RESPONSE = (
    b"HTTP/1.1 200 OK\r\n"
    b"Content-Length: 5\r\n"
    b"X-Upstream: yes\r\n"
    b"Connection: close\r\n"
    b"\r\n"
    b"hello"
)


def _reader(data: bytes) -> PeekableReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return PeekableReader(reader)


async def _drain(body) -> bytes:
    if body is None:
        return b''
    return b''.join([chunk async for chunk in body])


# ============================================================================
# 请求解析
# ============================================================================

def test_absolute_form_request():
    async def scenario():
        request = await read_request(_reader(
            b"GET http://dummy.tld/pubring.mix?x=1 HTTP/1.1\r\n"
            b"Host: dummy.tld\r\n"
            b"Accept: */*\r\n"
            b"\r\n"
        ))
        assert request.method == 'GET'
        assert request.host == 'dummy.tld'
        assert request.path == '/pubring.mix'
        assert request.route_key == 'dummy.tld/pubring.mix'
        assert request.body is None

    asyncio.run(scenario())


def test_origin_form_uses_host_header():
    async def scenario():
        request = await read_request(_reader(
            b"HEAD /yamn/mlist2%2Etxt HTTP/1.0\r\nHost: Dummy.TLD\r\n\r\n"
        ))
        assert request.route_key == 'Dummy.TLD/yamn/mlist2.txt'

    asyncio.run(scenario())


def test_connect_authority_form():
    async def scenario():
        request = await read_request(_reader(b"CONNECT example.org:443 HTTP/1.1\r\n\r\n"))
        assert request.route_key == 'example.org:443'

    asyncio.run(scenario())


def test_content_length_body():
    async def scenario():
        request = await read_request(_reader(
            b"POST /submit HTTP/1.1\r\nHost: dummy.tld\r\nContent-Length: 11\r\n\r\nhello world"
        ))
        assert await _drain(request.body) == b'hello world'

    asyncio.run(scenario())


def test_chunked_body():
    async def scenario():
        request = await read_request(_reader(
            b"POST /submit HTTP/1.1\r\nHost: dummy.tld\r\nTransfer-Encoding: chunked\r\n\r\n"
            b"5\r\nhello\r\n6;ext=1\r\n world\r\n0\r\nX-Trailer: 1\r\n\r\n"
        ))
        assert await _drain(request.body) == b'hello world'

    asyncio.run(scenario())


@pytest.mark.parametrize('raw', [
    b"",
    b"GET /x HTTP/1.1",
    b"GET  HTTP/1.1\r\n\r\n",
    b"GET /x SPDY/3\r\n\r\n",
    b"GET /x HTTP/1.1\r\nno colon here\r\n\r\n",
    b"GET /x HTTP/1.1\r\nHost : x\r\n\r\n",
    b"GET /x HTTP/1.1\r\nHost: x\r\n",
    b"POST /x HTTP/1.1\r\nContent-Length: abc\r\n\r\n",
    b"GET x HTTP/1.1\r\n\r\n",
])
def test_malformed_requests(raw):
    async def scenario():
        with pytest.raises(HttpParseError):
            await read_request(_reader(raw))

    asyncio.run(scenario())


def test_oversized_head():
    async def scenario():
        raw = b"GET /x HTTP/1.1\r\n" + b"X-Pad: " + b"a" * 70000 + b"\r\n\r\n"
        with pytest.raises(HttpParseError):
            await read_request(_reader(raw))

    asyncio.run(scenario())


def test_outbound_headers_drop_host_and_transfer_encoding():
    async def scenario():
        request = await read_request(_reader(
            b"POST /x HTTP/1.1\r\nHost: dummy.tld\r\nX-A: 1\r\nX-A: 2\r\nCookie: c\r\n"
            b"Transfer-Encoding: chunked\r\n\r\n"
        ))
        headers = outbound_headers(request)
        assert 'Host' not in headers
        assert 'Transfer-Encoding' not in headers
        assert headers.getall('X-A') == ['1', '2']
        assert headers['Cookie'] == 'c'
        assert request.headers['Host'] == 'dummy.tld'

    asyncio.run(scenario())


def test_chunked_request_drops_content_length():
    async def scenario():
        request = await read_request(_reader(
            b"POST /x HTTP/1.1\r\nHost: dummy.tld\r\nContent-Length: 20\r\n"
            b"Transfer-Encoding: chunked\r\n\r\n5\r\nhello\r\n0\r\n\r\n"
        ))
        headers = outbound_headers(request)
        assert 'Content-Length' not in headers
        assert 'Transfer-Encoding' not in headers
        assert await _drain(request.body) == b'hello'

    asyncio.run(scenario())


def test_large_chunk_is_streamed_in_slices():
    size = READ_CHUNK * 3 + 17

    async def scenario():
        request = await read_request(_reader(
            b"POST /x HTTP/1.1\r\nHost: dummy.tld\r\nTransfer-Encoding: chunked\r\n\r\n"
            + b'%x\r\n' % size + b'a' * size + b"\r\n0\r\n\r\n"
        ))
        return [chunk async for chunk in request.body]

    pieces = asyncio.run(scenario())
    assert max(len(piece) for piece in pieces) <= READ_CHUNK
    assert b''.join(pieces) == b'a' * size


@pytest.mark.parametrize('method, status, expected', [
    ('GET', 200, True),
    ('POST', 404, True),
    ('HEAD', 200, False),
    ('GET', 101, False),
    ('GET', 204, False),
    ('GET', 304, False),
])
def test_response_has_body(method, status, expected):
    assert response_has_body(method, status) is expected


# ============================================================================
# 端到端
# ============================================================================

def _config(proxy: Address, routes) -> RelayConfig:
    return RelayConfig(
        proxy=proxy,
        listen=Address('127.0.0.1', 0),
        connect_timeout=5,
        initial_timeout=2,
        io_timeout=10,
        routes=routes,
    )


async def _exchange(server: RelayServer, request: bytes) -> bytes:
    reader, writer = await asyncio.open_connection(*server.address)
    writer.write(request)
    await writer.drain()
    try:
        return await read_all(reader)
    finally:
        writer.close()


ROUTES = {
    'dummy.tld/pubring.mix': 'http://upstream.test/yamn/pubring.mix',
    'dummy.tld/submit': 'http://upstream.test/yamn/submit',
    'dummy.tld/dead': 'http://unreachable.test/dead',
}


def test_routed_request_is_relayed_verbatim(caplog):
    caplog.set_level(logging.INFO)

    async def scenario():
        async with HttpUpstream(RESPONSE) as upstream:
            async with Socks5Stub({('upstream.test', 80): upstream.address}) as socks:
                server = RelayServer(_config(socks.address, ROUTES))
                await server.start()
                try:
                    reply = await _exchange(
                        server,
                        b"GET http://dummy.tld/pubring.mix HTTP/1.1\r\n"
                        b"Host: dummy.tld\r\n"
                        b"X-Client: yamn\r\n"
                        b"\r\n",
                    )
                finally:
                    server.close()

                assert reply == RESPONSE
                assert socks.requests == [('upstream.test', 80)]
                head, body = upstream.requests[0]
                assert head.startswith(b"GET /yamn/pubring.mix HTTP/1.1\r\n")
                assert b"\r\nHost: upstream.test\r\n" in head
                assert b"\r\nX-Client: yamn\r\n" in head
                assert b"dummy.tld" not in head
                assert b"User-Agent" not in head
                assert body == b''
                await wait_for_event(caplog, 'session_closed')

    asyncio.run(scenario())
    assert 'route_hit' in events(caplog)
    assert 'http_success' in events(caplog)
    success = [r for r in caplog.records if getattr(r, 'event', None) == 'http_success']
    assert success[0].fields['status'] == 200


def test_post_body_and_method_preserved():
    async def scenario():
        async with HttpUpstream(RESPONSE) as upstream:
            async with Socks5Stub({('upstream.test', 80): upstream.address}) as socks:
                server = RelayServer(_config(socks.address, ROUTES))
                await server.start()
                try:
                    reply = await _exchange(
                        server,
                        b"POST /submit HTTP/1.1\r\n"
                        b"Host: dummy.tld\r\n"
                        b"Content-Type: text/plain\r\n"
                        b"Content-Length: 11\r\n"
                        b"\r\n"
                        b"hello world",
                    )
                finally:
                    server.close()

                assert reply == RESPONSE
                head, body = upstream.requests[0]
                assert head.startswith(b"POST /yamn/submit HTTP/1.1\r\n")
                assert b"\r\nContent-Type: text/plain\r\n" in head
                assert body == b'hello world'

    asyncio.run(scenario())


def test_chunked_request_body_is_streamed():
    async def scenario():
        async with HttpUpstream(RESPONSE) as upstream:
            async with Socks5Stub({('upstream.test', 80): upstream.address}) as socks:
                server = RelayServer(_config(socks.address, ROUTES))
                await server.start()
                try:
                    reply = await _exchange(
                        server,
                        b"POST /submit HTTP/1.1\r\n"
                        b"Host: dummy.tld\r\n"
                        b"Transfer-Encoding: chunked\r\n"
                        b"\r\n"
                        b"6\r\nremail\r\n4\r\ner m\r\n3\r\nsg.\r\n0\r\n\r\n",
                    )
                finally:
                    server.close()

                assert reply == RESPONSE
                head, body = upstream.requests[0]
                assert b"\r\nTransfer-Encoding: chunked\r\n" in head
                assert body == b'remailer msg.'

    asyncio.run(scenario())


def test_chunked_response_is_reframed():
    chunked = (
        b"HTTP/1.1 200 OK\r\n"
        b"Transfer-Encoding: chunked\r\n"
        b"\r\n"
        b"5\r\nhello\r\n6\r\n world\r\n0\r\n\r\n"
    )

    async def scenario():
        async with HttpUpstream(chunked) as upstream:
            async with Socks5Stub({('upstream.test', 80): upstream.address}) as socks:
                server = RelayServer(_config(socks.address, ROUTES))
                await server.start()
                try:
                    return await _exchange(
                        server, b"GET /pubring.mix HTTP/1.1\r\nHost: dummy.tld\r\n\r\n"
                    )
                finally:
                    server.close()

    reply = asyncio.run(scenario())
    head, _, body = reply.partition(b"\r\n\r\n")
    assert head == b"HTTP/1.1 200 OK\r\nTransfer-Encoding: chunked"
    assert body.endswith(b"0\r\n\r\n")

    decoded = b''
    rest = body
    while True:
        size_line, _, rest = rest.partition(b"\r\n")
        size = int(size_line, 16)
        if size == 0:
            break
        decoded += rest[:size]
        rest = rest[size + 2:]
    assert decoded == b'hello world'


def test_route_miss_closes_without_bytes(caplog):
    caplog.set_level(logging.INFO)

    async def scenario():
        async with Socks5Stub({}) as socks:
            server = RelayServer(_config(socks.address, ROUTES))
            await server.start()
            try:
                reply = await _exchange(
                    server, b"GET http://dummy.tld/other.txt HTTP/1.1\r\nHost: dummy.tld\r\n\r\n"
                )
                await wait_for_event(caplog, 'session_closed')
            finally:
                server.close()
            assert reply == b''
            assert socks.connections == 0

    asyncio.run(scenario())
    miss = [r for r in caplog.records if getattr(r, 'event', None) == 'route_miss']
    assert miss[0].fields['key'] == 'dummy.tld/other.txt'
    assert 'route_hit' not in events(caplog)


def test_parse_error_closes_without_bytes(caplog):
    caplog.set_level(logging.INFO)

    async def scenario():
        server = RelayServer(_config(Address('127.0.0.1', unused_port()), ROUTES))
        await server.start()
        try:
            reply = await _exchange(server, b"GET  HTTP/1.1\r\n\r\n")
            await wait_for_event(caplog, 'session_closed')
        finally:
            server.close()
        assert reply == b''

    asyncio.run(scenario())
    assert 'http_parse_error' in events(caplog)


def test_upstream_dial_failure_closes_without_bytes(caplog):
    caplog.set_level(logging.INFO)

    async def scenario():
        async with Socks5Stub({}) as socks:
            server = RelayServer(_config(socks.address, ROUTES))
            await server.start()
            try:
                reply = await _exchange(
                    server, b"GET /dead HTTP/1.1\r\nHost: dummy.tld\r\n\r\n"
                )
                await wait_for_event(caplog, 'session_closed')
            finally:
                server.close()
            assert reply == b''
            assert socks.requests == [('unreachable.test', 80)]

    asyncio.run(scenario())
    assert 'upstream_error' in events(caplog)
    assert 'http_success' not in events(caplog)
    failure = [r for r in caplog.records if getattr(r, 'event', None) == 'upstream_error']
    assert failure[0].fields['category'] == 'network'


def test_proxy_unreachable_closes_without_bytes(caplog):
    caplog.set_level(logging.INFO)

    async def scenario():
        server = RelayServer(_config(Address('127.0.0.1', unused_port()), ROUTES))
        await server.start()
        try:
            reply = await _exchange(
                server, b"GET /pubring.mix HTTP/1.1\r\nHost: dummy.tld\r\n\r\n"
            )
            await wait_for_event(caplog, 'session_closed')
        finally:
            server.close()
        assert reply == b''

    asyncio.run(scenario())
    assert 'upstream_error' in events(caplog)


def test_repeated_requests_are_independent():
    async def scenario():
        async with HttpUpstream(RESPONSE) as upstream:
            async with Socks5Stub({('upstream.test', 80): upstream.address}) as socks:
                server = RelayServer(_config(socks.address, ROUTES))
                await server.start()
                request = b"GET /pubring.mix HTTP/1.1\r\nHost: dummy.tld\r\n\r\n"
                try:
                    replies = await asyncio.gather(
                        _exchange(server, request), _exchange(server, request)
                    )
                finally:
                    server.close()

                assert replies == [RESPONSE, RESPONSE]
                assert upstream.connections == 2
                assert socks.requests == [('upstream.test', 80)] * 2

    asyncio.run(scenario())


def test_head_chunked_response_has_no_terminator():
    response = (
        b"HTTP/1.1 200 OK\r\n"
        b"Transfer-Encoding: chunked\r\n"
        b"Connection: close\r\n"
        b"\r\n"
    )

    async def scenario():
        async with HttpUpstream(response) as upstream:
            async with Socks5Stub({('upstream.test', 80): upstream.address}) as socks:
                server = RelayServer(_config(socks.address, ROUTES))
                await server.start()
                try:
                    reply = await _exchange(
                        server, b"HEAD /pubring.mix HTTP/1.1\r\nHost: dummy.tld\r\n\r\n"
                    )
                finally:
                    server.close()

                assert reply == response
                head, _ = upstream.requests[0]
                assert head.startswith(b"HEAD /yamn/pubring.mix HTTP/1.1\r\n")

    asyncio.run(scenario())


def test_chunked_request_with_content_length_is_forwarded_chunked():
    async def scenario():
        async with HttpUpstream(RESPONSE) as upstream:
            async with Socks5Stub({('upstream.test', 80): upstream.address}) as socks:
                server = RelayServer(_config(socks.address, ROUTES))
                await server.start()
                try:
                    reply = await _exchange(
                        server,
                        b"POST /submit HTTP/1.1\r\n"
                        b"Host: dummy.tld\r\n"
                        b"Content-Length: 20\r\n"
                        b"Transfer-Encoding: chunked\r\n"
                        b"\r\n"
                        b"5\r\nhello\r\n0\r\n\r\n",
                    )
                finally:
                    server.close()

                assert reply == RESPONSE
                head, body = upstream.requests[0]
                assert b"Content-Length: 20" not in head
                assert body == b'hello'

    asyncio.run(scenario())
