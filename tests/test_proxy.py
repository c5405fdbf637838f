"""Tests for the proxy relay: pass-through of headers, bodies and failures."""

import asyncio
import gzip
import json
import logging

import aiohttp
import pytest
from multidict import CIMultiDict

from conftest import BIG_BODY
from optic_tap.errors import ProxyBindError, RelayError
from optic_tap.proxy import ProxyRelay, filter_headers
from optic_tap.stream import ErrorStream


def test_filter_headers_keeps_repeats_and_drops_hop_by_hop():
    headers = CIMultiDict(
        [
            ("Host", "localhost"),
            ("Connection", "keep-alive"),
            ("Transfer-Encoding", "chunked"),
            ("Accept", "a"),
            ("Accept", "b"),
        ]
    )
    out = filter_headers(headers, drop=("host",))
    assert list(out.items()) == [("Accept", "a"), ("Accept", "b")]


async def _with_relay(api_url, body, *, debug_print=False):
    """Start a relay in front of ``api_url`` and run ``body(session, relay_url, errors)``."""
    errors = ErrorStream()
    async with aiohttp.ClientSession(auto_decompress=False) as session:
        relay = ProxyRelay(api_url, session, errors, debug_print=debug_print)
        port = await relay.start("127.0.0.1", 0)
        try:
            return await body(session, f"http://127.0.0.1:{port}", errors)
        finally:
            await relay.stop()


def test_relays_get_and_rewrites_host(upstream_server):
    async def scenario():
        async with upstream_server() as upstream:

            async def body(session, relay_url, errors):
                async with session.get(f"{relay_url}/json?x=1", headers={"X-Custom": "yes"}) as resp:
                    return resp.status, await resp.json()

            status, data = await _with_relay(upstream.url, body)
            return status, data, upstream.requests

    status, data, requests = asyncio.run(scenario())
    assert status == 200
    assert data == {"ip": "1.2.3.4"}
    assert len(requests) == 1
    assert requests[0]["path"] == "/json?x=1"
    assert requests[0]["headers"]["X-Custom"] == "yes"
    assert requests[0]["headers"]["Host"].startswith("127.0.0.1:")


def test_repeated_response_headers_survive(upstream_server):
    async def scenario():
        async with upstream_server() as upstream:

            async def body(session, relay_url, errors):
                async with session.get(f"{relay_url}/multi") as resp:
                    await resp.read()
                    return resp.headers.getall("Set-Cookie"), resp.headers.getall("X-Multi")

            return await _with_relay(upstream.url, body)

    cookies, multi = asyncio.run(scenario())
    assert cookies == ["a=1; Path=/", "b=2; Path=/"]
    assert multi == ["first", "second"]


def test_request_body_forwarded_unmodified(upstream_server):
    payload = b'{"name": "widget", "tags": ["a", "b"]}\x00\xff'

    async def scenario():
        async with upstream_server() as upstream:

            async def body(session, relay_url, errors):
                async with session.post(
                    f"{relay_url}/echo", data=payload, headers={"Content-Type": "application/x-test"}
                ) as resp:
                    return await resp.read(), resp.headers["Content-Type"]

            echoed, content_type = await _with_relay(upstream.url, body)
            return echoed, content_type, upstream.requests[0]

    echoed, content_type, seen = asyncio.run(scenario())
    assert seen["method"] == "POST"
    assert seen["body"] == payload
    assert echoed == payload
    assert content_type == "application/x-test"


def test_large_response_is_streamed_in_full(upstream_server):
    async def scenario():
        async with upstream_server() as upstream:

            async def body(session, relay_url, errors):
                async with session.get(f"{relay_url}/big") as resp:
                    return await resp.read()

            return await _with_relay(upstream.url, body)

    assert asyncio.run(scenario()) == BIG_BODY


def test_compressed_body_passes_through_verbatim(upstream_server):
    async def scenario():
        async with upstream_server() as upstream:

            async def body(session, relay_url, errors):
                async with session.get(f"{relay_url}/gzip") as resp:
                    return resp.headers.get("Content-Encoding"), await resp.read()

            return await _with_relay(upstream.url, body)

    encoding, raw = asyncio.run(scenario())
    assert encoding == "gzip"
    assert json.loads(gzip.decompress(raw)) == {"zipped": True}


def test_non_200_status_is_relayed(upstream_server):
    async def scenario():
        async with upstream_server() as upstream:

            async def body(session, relay_url, errors):
                async with session.delete(f"{relay_url}/status/404") as resp:
                    await resp.read()
                    errors.close()
                    return resp.status, await errors.collect()

            return await _with_relay(upstream.url, body)

    status, errors = asyncio.run(scenario())
    assert status == 404
    assert errors == []


def test_unreachable_upstream_reports_and_keeps_serving(closed_url):
    async def scenario():
        async def body(session, relay_url, errors):
            statuses = []
            for _ in range(2):
                async with session.get(f"{relay_url}/json") as resp:
                    statuses.append(resp.status)
            errors.close()
            return statuses, await errors.collect()

        return await _with_relay(closed_url, body)

    statuses, errors = asyncio.run(scenario())
    assert statuses == [502, 502]
    assert len(errors) == 2
    assert all(isinstance(e, RelayError) for e in errors)
    assert errors[0].method == "GET"
    assert errors[0].url.endswith("/json")


def test_second_bind_on_same_port_fails(closed_url):
    async def scenario():
        async with aiohttp.ClientSession() as session:
            first = ProxyRelay(closed_url, session, ErrorStream())
            port = await first.start("127.0.0.1", 0)
            try:
                second = ProxyRelay(closed_url, session, ErrorStream())
                with pytest.raises(ProxyBindError) as excinfo:
                    await second.start("127.0.0.1", port)
                assert not second.running
                return excinfo.value, port
            finally:
                await first.stop()

    err, port = asyncio.run(scenario())
    assert err.port == port
    assert isinstance(err.cause, OSError)


def test_debug_print_dumps_request_and_response(upstream_server, caplog):
    caplog.set_level(logging.INFO, logger="optic-tap")

    async def scenario():
        async with upstream_server() as upstream:

            async def body(session, relay_url, errors):
                async with session.post(f"{relay_url}/echo", data=b"dump-me") as resp:
                    return await resp.read()

            return await _with_relay(upstream.url, body, debug_print=True)

    assert asyncio.run(scenario()) == b"dump-me"
    assert "POST http://127.0.0.1:" in caplog.text
    assert "HTTP/1.1 200 OK" in caplog.text
    assert caplog.text.count("dump-me") >= 2


def test_large_request_body_forwarded_in_full(upstream_server):
    async def scenario():
        async with upstream_server() as upstream:

            async def body(session, relay_url, errors):
                async with session.post(f"{relay_url}/echo", data=BIG_BODY) as resp:
                    return resp.status, await resp.read()

            status, echoed = await _with_relay(upstream.url, body)
            return status, echoed, upstream.requests

    status, echoed, requests = asyncio.run(scenario())
    assert status == 200
    assert len(requests) == 1
    assert requests[0]["body"] == BIG_BODY
    assert echoed == BIG_BODY


def test_double_slash_path_is_relayed_verbatim(upstream_server):
    async def scenario():
        async with upstream_server() as upstream:

            async def body(session, relay_url, errors):
                port = int(relay_url.rsplit(":", 1)[1])
                reader, writer = await asyncio.open_connection("127.0.0.1", port)
                writer.write(b"GET //example.invalid/json?x=1 HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n")
                await writer.drain()
                raw = await reader.read()
                writer.close()
                return raw

            raw = await _with_relay(upstream.url, body)
            return raw, upstream.paths

    raw, paths = asyncio.run(scenario())
    assert raw.startswith(b"HTTP/1.1 ")
    assert paths == ["//example.invalid/json?x=1"]
