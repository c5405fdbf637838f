"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import gzip
import json
import socket
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import pytest
from aiohttp import web
from yarl import URL

BIG_BODY = bytes(range(256)) * (12 * 1024)  # 3 MiB, many socket buffers


@dataclass
class Upstream:
    url: URL
    port: int
    requests: list[dict] = field(default_factory=list)

    @property
    def paths(self) -> list[str]:
        return [r["path"] for r in self.requests]


async def _upstream_handler(request: web.Request, upstream: Upstream, on_request) -> web.StreamResponse:
    body = await request.read()
    upstream.requests.append(
        {
            "method": request.method,
            "path": request.raw_path,
            "headers": request.headers.copy(),
            "body": body,
        }
    )
    if on_request is not None:
        on_request(request)

    path = request.path
    if path == "/json":
        return web.json_response({"ip": "1.2.3.4"})
    if path.startswith("/status/"):
        return web.Response(status=int(path.rsplit("/", 1)[1]), text="status")
    if path == "/echo":
        return web.Response(body=body, headers={"Content-Type": request.headers.get("Content-Type", "")})
    if path == "/multi":
        resp = web.Response(text="multi")
        resp.headers.add("Set-Cookie", "a=1; Path=/")
        resp.headers.add("Set-Cookie", "b=2; Path=/")
        resp.headers.add("X-Multi", "first")
        resp.headers.add("X-Multi", "second")
        return resp
    if path == "/big":
        resp = web.StreamResponse(headers={"Content-Type": "application/octet-stream"})
        await resp.prepare(request)
        for i in range(0, len(BIG_BODY), 100_000):
            await resp.write(BIG_BODY[i : i + 100_000])
        await resp.write_eof()
        return resp
    if path == "/gzip":
        return web.Response(
            body=gzip.compress(json.dumps({"zipped": True}).encode()),
            headers={"Content-Type": "application/json", "Content-Encoding": "gzip"},
        )
    return web.json_response({"path": path})


@asynccontextmanager
async def serve_upstream(port: int = 0, on_request=None):
    """Run a fake API on 127.0.0.1 for the duration of the block."""
    app = web.Application(client_max_size=0)
    runner = web.AppRunner(app)
    upstream = Upstream(url=URL("http://127.0.0.1"), port=port)

    async def handler(request):
        return await _upstream_handler(request, upstream, on_request)

    app.router.add_route("*", "/{path_info:.*}", handler)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    upstream.port = site._server.sockets[0].getsockname()[1]
    upstream.url = URL(f"http://127.0.0.1:{upstream.port}/")
    try:
        yield upstream
    finally:
        await runner.cleanup()


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def upstream_server():
    """Factory for an in-process fake upstream API."""
    return serve_upstream


@pytest.fixture
def free_port():
    return find_free_port()


@pytest.fixture
def closed_url():
    """URL of a local port nothing listens on."""
    return URL(f"http://127.0.0.1:{find_free_port()}/")


@pytest.fixture
def optic_port(monkeypatch, free_port):
    monkeypatch.setenv("OPTIC_API_PORT", str(free_port))
    return free_port
