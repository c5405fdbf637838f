"""Tester – run test definitions through Optic while relaying Optic's traffic to the real API."""

from __future__ import annotations

import asyncio
import json
import logging
import posixpath
from collections.abc import Callable, Iterable, Mapping

import aiohttp
from yarl import URL

from optic_tap.config import Config, TestDefinition, TripFunc, resolve_listen_addr
from optic_tap.errors import BadStatusError, CaseError, ProxyBindError, TestRunError
from optic_tap.net import wait_internet_access
from optic_tap.proxy import CHUNK_SIZE, ProxyRelay
from optic_tap.stream import ErrorStream

log = logging.getLogger("optic-tap")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/86.0.4240.183 Safari/537.36"
)


def default_headers_middleware(headers: Mapping[str, str]) -> TripFunc:
    """Client middleware that forces ``headers`` onto every outgoing request."""
    fixed = dict(headers)

    async def middleware(req: aiohttp.ClientRequest, handler) -> aiohttp.ClientResponse:
        for k, v in fixed.items():
            req.headers[k] = v
        return await handler(req)

    return middleware


class Tester:
    """Starts the proxy relay and runs test definitions against Optic.

    Construction validates the listen address; everything else happens on
    ``start_proxy()`` / ``start_all()``. Errors from both the relay and the
    test loop arrive on the returned ErrorStream.
    """

    __test__ = False

    def __init__(self, config: Config):
        self.listen_host, self.listen_port = resolve_listen_addr(config.proxy_listen_addr)
        self.config = config
        self.relay: ProxyRelay | None = None
        self._session: aiohttp.ClientSession | None = None
        self._proxy_started = False
        self._proxy_errors: ErrorStream | None = None
        self._tasks: set[asyncio.Task] = set()

    async def __aenter__(self) -> "Tester":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None:
            middlewares = (self.config.trip_func,) if self.config.trip_func else ()
            self._session = aiohttp.ClientSession(auto_decompress=False, middlewares=middlewares)
        return self._session

    async def _check_internet(self) -> None:
        if self.config.internet_check_timeout:
            log.info(f"Waiting up to {self.config.internet_check_timeout:g}s for internet access")
            await wait_internet_access(self.config.internet_check_timeout, self.config.internet_check_url)

    async def _start_relay(self, errors: ErrorStream) -> None:
        if self._proxy_started:
            return
        self._proxy_started = True
        self._proxy_errors = errors
        self.relay = ProxyRelay(
            self.config.api_url,
            self._client(),
            errors,
            debug_print=self.config.debug_print,
        )
        try:
            await self.relay.start(self.listen_host, self.listen_port)
        except ProxyBindError as exc:
            log.error(str(exc))
            errors.put(exc)

    async def start_proxy(self) -> ErrorStream:
        """Start only the proxy, usually as pre-setup before the tests.

        The returned stream carries relay errors for the life of the proxy and
        is never closed by the tester.
        """
        if self._proxy_started:
            return self._proxy_errors
        await self._check_internet()
        errors = ErrorStream()
        await self._start_relay(errors)
        return errors

    async def start_all(self, tests: Iterable[TestDefinition]) -> tuple[ErrorStream, Callable[[], None]]:
        """Start the proxy (unless start_proxy() already did) and then the tests.

        Returns the error stream, closed once every test has been attempted,
        and a cancel function that stops the loop before the next test.
        """
        await self._check_internet()
        errors = ErrorStream()
        cancelled = asyncio.Event()
        await self._start_relay(errors)

        task = asyncio.create_task(self._run_tests(list(tests), errors, cancelled))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return errors, cancelled.set

    async def run(self, tests: Iterable[TestDefinition]) -> None:
        """Run every test to completion, raising TestRunError with all collected errors."""
        errors, _ = await self.start_all(tests)
        collected = await errors.collect()
        if collected:
            raise TestRunError(collected)

    async def _run_tests(
        self,
        tests: list[TestDefinition],
        errors: ErrorStream,
        cancelled: asyncio.Event,
    ) -> None:
        log.info(f"Defined {len(tests)} tests")
        try:
            for test in tests:
                if cancelled.is_set():
                    log.info("Test run cancelled")
                    break
                log.info(f"Running test: {test.name} ({test.method} {test.request_url})")
                try:
                    await self.run_test(test)
                except CaseError as exc:
                    log.warning(str(exc))
                    errors.put(exc)
                except Exception as exc:
                    log.exception(f"Test {test.name} crashed")
                    errors.put(CaseError(test.name, repr(exc)))
        finally:
            errors.close()

    def test_url(self, test: TestDefinition) -> URL:
        """Optic URL for a test: Optic's origin + the API base path + the test path."""
        rel = URL(test.request_url)
        path = posixpath.normpath(self.config.api_url.raw_path.rstrip("/") + "/" + rel.raw_path.lstrip("/"))
        return self.config.optic_url.join(URL.build(path=path, query_string=rel.raw_query_string, encoded=True))

    async def run_test(self, test: TestDefinition) -> None:
        try:
            url = self.test_url(test)
        except (TypeError, ValueError) as exc:
            raise CaseError(test.name, f"bad request url {test.request_url!r}: {exc}") from exc
        data = None
        headers = {}
        if test.data is not None:
            try:
                data = json.dumps(test.data).encode("utf-8")
            except (TypeError, ValueError) as exc:
                raise CaseError(test.name, f"cannot encode body: {exc}") from exc
            headers["Content-Type"] = "application/json"

        try:
            async with self._client().request(test.method, url, data=data, headers=headers) as resp:
                if resp.status != 200:
                    raise BadStatusError(test.name, resp.status)
                # drain the body so all of it passes through Optic
                async for _ in resp.content.iter_chunked(CHUNK_SIZE):
                    pass
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
            # ValueError: aiohttp rejected the method or URL while building the request
            raise CaseError(test.name, str(exc) or repr(exc)) from exc

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self.relay is not None:
            await self.relay.stop()
        if self._session is not None:
            await self._session.close()
            self._session = None
