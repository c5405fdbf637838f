"""Configuration and test definitions."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from aiohttp import ClientMiddlewareType
from yarl import URL

from optic_tap.errors import ConfigError

PORT_ENV = "OPTIC_API_PORT"
DEFAULT_INTERNET_CHECK_URL = "https://google.com/"

# aiohttp client middleware; wraps every request the shared session sends
TripFunc = ClientMiddlewareType


@dataclass(frozen=True)
class Config:
    # API under test. TestDefinition.request_url is relative to this URL.
    api_url: URL
    # Optic listen URL, the "baseUrl" in optic.yml.
    optic_url: URL
    # "host" is expanded to "host:$OPTIC_API_PORT". "host:port" is used as-is,
    # which bypasses Optic; only useful for debugging.
    proxy_listen_addr: str = ""
    # Dump relayed requests and responses to the log.
    debug_print: bool = False
    trip_func: TripFunc | None = None
    # Seconds to wait for internet access before giving up. 0 skips the check.
    internet_check_timeout: float = 0
    internet_check_url: str = DEFAULT_INTERNET_CHECK_URL


@dataclass(frozen=True)
class TestDefinition:
    __test__ = False

    name: str
    data: Any = None  # JSON-serializable or None
    request_url: str = "/"  # relative to Config.api_url
    method: str = "GET"

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TestDefinition":
        try:
            return cls(
                name=raw["name"],
                data=raw.get("data"),
                request_url=raw["request_url"],
                method=raw.get("method", "GET").upper(),
            )
        except KeyError as exc:
            raise ConfigError(f"test definition missing field {exc}") from exc


def must_url(text: str) -> URL:
    """Parse an absolute URL, raising ConfigError when it has no scheme or host."""
    try:
        url = URL(text)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"bad url {text!r}: {exc}") from exc
    if not url.is_absolute() or not url.scheme:
        raise ConfigError(f"bad url {text!r}: not absolute")
    return url


def resolve_listen_addr(addr: str, env: Mapping[str, str] = os.environ) -> tuple[str | None, int]:
    """Split a proxy listen address into (host, port).

    A bare hostname takes its port from ``$OPTIC_API_PORT``. An empty host
    means every interface and is returned as ``None``.
    """
    if ":" in addr:
        host, _, raw_port = addr.rpartition(":")
        source = f"listen address {addr!r}"
    else:
        host, raw_port = addr, env.get(PORT_ENV, "")
        source = PORT_ENV
    host = host.strip("[]")
    try:
        port = int(raw_port)
    except ValueError:
        raise ConfigError(f"bad {source}: {raw_port!r} is not an integer") from None
    if not 0 < port < 65536:
        raise ConfigError(f"bad {source}: {port} is not a valid port")
    return host or None, port
