from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import structlog

from composition_resolver.browser import BrowserLog, ChromiumOptions
from composition_resolver.config import ResolverConfig, load_config
from composition_resolver.errors import ResolverError
from composition_resolver.log import configure_logging
from composition_resolver.orchestrator import ResolutionRequest, select_composition

logger = structlog.get_logger(__name__)


def _parse_props(raw: str | None) -> dict[str, Any]:
    """``--props`` takes inline JSON or a path to a JSON file."""
    if not raw:
        return {}
    text = raw
    candidate = Path(raw)
    if not raw.lstrip().startswith("{") and candidate.is_file():
        text = candidate.read_text(encoding="utf-8")
    try:
        props = json.loads(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"--props is neither valid JSON nor a JSON file: {exc}") from exc
    if not isinstance(props, dict):
        raise argparse.ArgumentTypeError("--props must be a JSON object")
    return props


def _parse_env(pairs: list[str]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise argparse.ArgumentTypeError(f"--env expects KEY=VALUE, got {pair!r}")
        env[key.strip()] = value
    return env


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="composition-resolver",
        description="Print the metadata of a composition from a served (or local) bundle.",
    )
    ap.add_argument("serve_url", help="http(s) URL of a served bundle, or a bundle directory")
    ap.add_argument("composition_id", help="id of the composition to resolve")
    ap.add_argument("--props", default=None, help="input props as JSON or a path to a JSON file")
    ap.add_argument("--env", action="append", default=[], metavar="KEY=VALUE", help="env variable for the bundle")
    ap.add_argument("--timeout", type=int, default=None, help="timeout in milliseconds")
    ap.add_argument("--port", type=int, default=None, help="port for the content server")
    ap.add_argument("--browser-executable", default=None)
    ap.add_argument("--config", default=None, help="path to a resolver YAML config")
    ap.add_argument("--log-browser", action="store_true", help="echo the page console")
    ap.add_argument("--verbose", action="store_true")
    return ap


def request_from_args(args: argparse.Namespace, config: ResolverConfig) -> ResolutionRequest:
    env = dict(config.env_variables)
    env.update(_parse_env(args.env))

    on_browser_log = None
    if args.log_browser:
        def on_browser_log(log: BrowserLog) -> None:
            logger.info("Browser console", type=log.type, text=log.text)

    return ResolutionRequest(
        id=args.composition_id,
        serve_url=args.serve_url,
        input_props=_parse_props(args.props),
        env_variables=env,
        timeout_in_milliseconds=args.timeout if args.timeout is not None else config.timeout_in_milliseconds,
        browser_executable=args.browser_executable or config.browser_executable,
        chromium_options=ChromiumOptions(**config.chromium.model_dump()),
        launch_timeout_in_milliseconds=config.launch_timeout_in_milliseconds,
        port=args.port if args.port is not None else config.port,
        verbose=bool(args.verbose or config.verbose),
        on_browser_log=on_browser_log,
        retries_remaining=config.injection_retries,
        retry_delay_seconds=config.injection_retry_delay_seconds,
    )


async def _amain(argv: list[str]) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    config = load_config(args.config)
    configure_logging("DEBUG" if args.verbose else config.log_level)

    try:
        request = request_from_args(args, config)
    except argparse.ArgumentTypeError as exc:
        ap.error(str(exc))

    try:
        metadata = await select_composition(request)
    except ResolverError as exc:
        logger.error("Could not resolve composition", composition=request.id, error_kind=type(exc).__name__, error=str(exc))
        return 1

    sys.stdout.write(json.dumps(metadata, ensure_ascii=False, sort_keys=True) + "\n")
    sys.stdout.flush()
    return 0


def main() -> None:
    try:
        rc = asyncio.run(_amain(sys.argv[1:]))
    except KeyboardInterrupt:
        rc = 130
    sys.exit(int(rc))


if __name__ == "__main__":
    main()
