"""CLI entry points for optic-tap."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from optic_tap import __version__
from optic_tap.config import Config, TestDefinition, must_url
from optic_tap.errors import ConfigError, OpticTapError, TestRunError
from optic_tap.tester import DEFAULT_USER_AGENT, Tester, default_headers_middleware

# Ensure print output is visible immediately when piped
if hasattr(sys.stdout, "reconfigure"):
    sys.stdout.reconfigure(line_buffering=True)

log = logging.getLogger("optic-tap")


def setup_logging(verbose: bool = False) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(message)s", datefmt="%H:%M:%S"))
    log.addHandler(handler)
    log.setLevel(logging.DEBUG if verbose else logging.INFO)
    # Suppress aiohttp access logs
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def load_tests(path: Path) -> list[TestDefinition]:
    """Read a JSON array of ``{name, data, request_url, method}`` objects."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"cannot read tests from {path}: {exc}") from exc
    if not isinstance(raw, list):
        raise ConfigError(f"{path}: expected a JSON array of tests")
    return [TestDefinition.from_dict(item) for item in raw]


def parse_header(value: str) -> tuple[str, str]:
    name, sep, val = value.partition(":")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"expected 'Name: value', got {value!r}")
    return name.strip(), val.strip()


def build_config(args: argparse.Namespace) -> Config:
    headers = {"User-Agent": DEFAULT_USER_AGENT} if args.browser_ua else {}
    headers.update(dict(args.headers))
    return Config(
        api_url=must_url(args.api_url),
        optic_url=must_url(args.optic_url),
        proxy_listen_addr=args.listen,
        debug_print=args.debug,
        trip_func=default_headers_middleware(headers) if headers else None,
        internet_check_timeout=args.internet_timeout,
    )


async def async_main(args: argparse.Namespace) -> int:
    try:
        config = build_config(args)
        tests = load_tests(args.tests)
        async with Tester(config) as tester:
            await tester.run(tests)
    except TestRunError as exc:
        print(f"\n❌ {len(exc.errors)} error(s):\n{exc}", file=sys.stderr)
        return 1
    except OpticTapError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"✅ {len(tests)} tests passed")
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    if argv is None:
        argv = sys.argv[1:]
    if argv and argv[0] == "run":
        argv = argv[1:]

    parser = argparse.ArgumentParser(
        prog="optic-tap",
        description="Run API tests through Optic while relaying its traffic to the real API. "
        "Use 'optic-tap format FILE' to post-process the generated OpenAPI document.",
    )
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--api-url", required=True, help="URL of the API under test")
    parser.add_argument(
        "--optic-url",
        default="http://localhost:8889",
        help="Optic base URL, the baseUrl in optic.yml (default: http://localhost:8889)",
    )
    parser.add_argument(
        "--listen",
        default="localhost",
        help="Proxy listen address; a bare host uses $OPTIC_API_PORT (default: localhost)",
    )
    parser.add_argument("--tests", type=Path, required=True, help="JSON file with the test definitions")
    parser.add_argument(
        "-H",
        "--header",
        type=parse_header,
        action="append",
        default=[],
        dest="headers",
        help="'Name: value' header added to every request (repeatable)",
    )
    parser.add_argument(
        "--browser-ua", action="store_true", dest="browser_ua", help="Send a desktop browser User-Agent"
    )
    parser.add_argument("--debug", action="store_true", help="Dump relayed requests and responses")
    parser.add_argument(
        "--internet-timeout",
        type=float,
        default=0,
        dest="internet_timeout",
        help="Seconds to wait for internet access before starting (default: 0 = skip)",
    )
    return parser.parse_args(argv)


def main_entry() -> None:
    """Entry point for the optic-tap CLI."""
    if len(sys.argv) > 1 and sys.argv[1] == "format":
        from optic_tap.formatter import format_main

        sys.exit(format_main(sys.argv[2:]))

    args = parse_args()
    setup_logging(args.debug)
    try:
        code = asyncio.run(async_main(args))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)
