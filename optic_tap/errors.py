"""Exception types raised and reported by optic-tap."""

from __future__ import annotations


class OpticTapError(Exception):
    """Base class for every optic-tap error."""


class ConfigError(OpticTapError):
    """Configuration is unusable; raised at construction, before any network activity."""


class InternetCheckTimeout(OpticTapError):
    """No outbound request succeeded within the configured timeout."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"internet check timed out after {timeout:g}s")


class CaseError(OpticTapError):
    """A single test case failed at the transport level."""

    def __init__(self, name: str, message: str):
        self.name = name
        super().__init__(f"{name}: {message}")


class BadStatusError(CaseError):
    def __init__(self, name: str, status: int):
        self.status = status
        super().__init__(name, f"bad status code: {status}")


class RelayError(OpticTapError):
    """One relayed call failed. The listener keeps serving."""

    def __init__(self, method: str, url: str, cause: BaseException):
        self.method = method
        self.url = url
        self.cause = cause
        super().__init__(f"relay {method} {url}: {cause}")


class ProxyBindError(OpticTapError):
    def __init__(self, host: str | None, port: int, cause: OSError):
        self.host = host
        self.port = port
        self.cause = cause
        super().__init__(f"proxy listen on {host or '*'}:{port}: {cause}")


class TestRunError(OpticTapError):
    """Aggregate of every error collected during a run."""

    __test__ = False

    def __init__(self, errors: list[BaseException]):
        self.errors = list(errors)
        super().__init__("\n".join(str(e) for e in self.errors))
