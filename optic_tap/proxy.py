"""Proxy relay – forward every request to the API under test and stream the response back."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping

import aiohttp
from aiohttp import web
from multidict import CIMultiDict
from yarl import URL

from optic_tap.errors import ProxyBindError, RelayError
from optic_tap.stream import ErrorStream

log = logging.getLogger("optic-tap")

CHUNK_SIZE = 64 * 1024

# ---------------------------------------------------------------------------
# Header helpers
# ---------------------------------------------------------------------------

HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Never let the client invent headers the inbound request did not carry.
SKIP_AUTO_HEADERS = ("Accept", "Accept-Encoding", "User-Agent", "Content-Type")


def filter_headers(headers: Mapping[str, str], *, drop: Iterable[str] = ()) -> CIMultiDict[str]:
    """Copy headers minus hop-by-hop ones, keeping repeated values in order."""
    skip = HOP_BY_HOP | {name.lower() for name in drop}
    out: CIMultiDict[str] = CIMultiDict()
    for k, v in headers.items():
        if k.lower() in skip:
            continue
        out.add(k, v)
    return out


def dump_request(method: str, url: URL, headers: Mapping[str, str], body: bytes) -> str:
    lines = [f"{method} {url} HTTP/1.1"]
    lines += [f"{k}: {v}" for k, v in headers.items()]
    return "\n".join(lines) + "\n\n" + body.decode("utf-8", errors="replace")


def dump_response(resp: aiohttp.ClientResponse, body: bytes) -> str:
    lines = [f"HTTP/{resp.version.major}.{resp.version.minor} {resp.status} {resp.reason or ''}".rstrip()]
    lines += [f"{k}: {v}" for k, v in resp.headers.items()]
    return "\n".join(lines) + "\n\n" + body.decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------


class ProxyRelay:
    """HTTP listener that relays any request to ``api_url``.

    Each instance owns its application and router, so several relays can live
    in one process. Failed relay calls are reported on ``errors`` and answered
    with 502 when nothing has been sent yet; the listener keeps serving.
    """

    def __init__(
        self,
        api_url: URL,
        session: aiohttp.ClientSession,
        errors: ErrorStream,
        *,
        debug_print: bool = False,
    ):
        self.api_url = api_url
        self.session = session
        self.errors = errors
        self.debug_print = debug_print
        self.host: str | None = None
        self.port: int = 0
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        # bodies are relayed as-is, whatever their size
        app = web.Application(client_max_size=0)
        app.router.add_route("*", "/{path_info:.*}", self.handle)
        return app

    async def start(self, host: str | None, port: int) -> int:
        """Bind the listener and return the actual port. Raises ProxyBindError."""
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        try:
            await site.start()
        except OSError as exc:
            await runner.cleanup()
            raise ProxyBindError(host, port, exc) from exc
        self._runner = runner
        self.host = host

        # Resolve actual port (site._server is a private API; fall back to the requested one)
        try:
            self.port = site._server.sockets[0].getsockname()[1]
        except (AttributeError, IndexError, OSError):
            self.port = port
        log.info(f"Proxy listening on {host or '*'}:{self.port} → {self.api_url}")
        return self.port

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    @property
    def running(self) -> bool:
        return self._runner is not None

    def upstream_url(self, request: web.Request) -> URL:
        # Inbound paths are absolute, so they replace the API base path.
        # raw_path keeps the path byte-for-byte, including a leading "//".
        return URL(f"{self.api_url.origin()}{request.raw_path}", encoded=True)

    async def handle(self, request: web.Request) -> web.StreamResponse:
        upstream_url = self.upstream_url(request)
        log.info(f"→ {request.method} {request.path_qs}")

        fwd_headers = filter_headers(request.headers, drop=("Host",))

        if self.debug_print:
            # Dumping needs the whole body; it is streamed when debug is off
            body = await request.read()
            log.info(dump_request(request.method, upstream_url, fwd_headers, body))
            data = body or None
        else:
            data = request.content if request.can_read_body else None

        try:
            upstream_resp = await self.session.request(
                request.method,
                upstream_url,
                headers=fwd_headers,
                data=data,
                allow_redirects=False,
                skip_auto_headers=SKIP_AUTO_HEADERS,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            return self._fail(request, upstream_url, exc)

        async with upstream_resp:
            return await self._relay_response(request, upstream_url, upstream_resp)

    async def _relay_response(
        self,
        request: web.Request,
        upstream_url: URL,
        upstream_resp: aiohttp.ClientResponse,
    ) -> web.StreamResponse:
        resp = web.StreamResponse(status=upstream_resp.status, reason=upstream_resp.reason)
        for k, v in upstream_resp.headers.items():
            if k.lower() not in HOP_BY_HOP:
                resp.headers.add(k, v)

        try:
            if self.debug_print:
                # Dumping needs the whole body; streaming resumes when debug is off
                data = await upstream_resp.read()
                log.info(dump_response(upstream_resp, data))
                await resp.prepare(request)
                await resp.write(data)
            else:
                await resp.prepare(request)
                async for chunk in upstream_resp.content.iter_chunked(CHUNK_SIZE):
                    await resp.write(chunk)
            await resp.write_eof()
        except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as exc:
            if not resp.prepared:
                return self._fail(request, upstream_url, exc)
            self.errors.put(RelayError(request.method, str(upstream_url), exc))
            log.error(f"← {upstream_resp.status} {request.path_qs} interrupted: {exc!r}")
            return resp

        log.info(f"← {upstream_resp.status} {request.path_qs}")
        return resp

    def _fail(self, request: web.Request, upstream_url: URL, exc: BaseException) -> web.Response:
        err = RelayError(request.method, str(upstream_url), exc)
        log.error(f"upstream error: {err}")
        self.errors.put(err)
        return web.Response(status=502, text=str(exc))
