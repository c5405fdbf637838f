"""Reachability gate – block until outbound HTTP works (e.g. firewall prompt accepted)."""

from __future__ import annotations

import asyncio
import logging

import aiohttp

from optic_tap.config import DEFAULT_INTERNET_CHECK_URL
from optic_tap.errors import InternetCheckTimeout

log = logging.getLogger("optic-tap")

PROBE_INTERVAL = 1.0


async def wait_internet_access(
    timeout: float,
    url: str = DEFAULT_INTERNET_CHECK_URL,
    interval: float = PROBE_INTERVAL,
) -> None:
    """Probe ``url`` every ``interval`` seconds until one request gets any response.

    Raises InternetCheckTimeout once ``timeout`` seconds have passed without a
    successful probe. A probe still in flight at the deadline is capped by the
    remaining time, so this never blocks much past ``timeout``.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempts = 0
    async with aiohttp.ClientSession() as session:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            attempts += 1
            try:
                async with session.get(url, timeout=aiohttp.ClientTimeout(total=remaining)) as resp:
                    log.debug(f"internet check: {url} answered {resp.status}")
                return
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                log.debug(f"internet check attempt {attempts} failed: {exc!r}")
            await asyncio.sleep(min(interval, max(deadline - loop.time(), 0)))
    raise InternetCheckTimeout(timeout)
