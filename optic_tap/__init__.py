"""optic-tap: drive API tests through Optic and relay its traffic to the real API.

Optic documents an API by watching traffic on its own port and forwarding it
to the real service. optic-tap stands up that forwarding target as a local
reverse proxy, then replays declared test definitions through Optic's public
URL, collecting failures without stopping the run.
"""

from __future__ import annotations

__version__ = "0.2.0"

from optic_tap.config import Config, TestDefinition, must_url, resolve_listen_addr
from optic_tap.errors import (
    BadStatusError,
    CaseError,
    ConfigError,
    InternetCheckTimeout,
    OpticTapError,
    ProxyBindError,
    RelayError,
    TestRunError,
)
from optic_tap.formatter import format_spec
from optic_tap.net import wait_internet_access
from optic_tap.proxy import ProxyRelay, filter_headers
from optic_tap.stream import ErrorStream
from optic_tap.tester import DEFAULT_USER_AGENT, Tester, default_headers_middleware

__all__ = [
    "__version__",
    "BadStatusError",
    "CaseError",
    "Config",
    "ConfigError",
    "DEFAULT_USER_AGENT",
    "ErrorStream",
    "InternetCheckTimeout",
    "OpticTapError",
    "ProxyBindError",
    "ProxyRelay",
    "RelayError",
    "TestDefinition",
    "TestRunError",
    "Tester",
    "default_headers_middleware",
    "filter_headers",
    "format_spec",
    "must_url",
    "resolve_listen_addr",
    "wait_internet_access",
]
