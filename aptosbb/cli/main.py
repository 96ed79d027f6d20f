"""AptosBB CLI: fork an Aptos network and run a pentest scenario against it.

Usage:
    aptosbb default                 Fork with an anonymous connection (rate limited)
    aptosbb api                     Fork using the API key in APTOSBB_KEY
    aptosbb config                  Show current configuration
    aptosbb --version               Print version

Examples:
    aptosbb default
    aptosbb api --network testnet --scenario my_tests.vault:drain
    aptosbb default --node-url http://127.0.0.1:8080/v1 --scenario my_tests.smoke:run
"""

from __future__ import annotations

import argparse
import asyncio
import inspect
import os
import sys

from aptosbb.core.errors import AptosBBError, ConnectivityError
from aptosbb.core.logging import setup_logging

VERSION = "0.1.0"

# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_DIM = "\033[2m"


def _c(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}"


# ── CLI argument parser ─────────────────────────────────────────────────────


def _add_fork_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--network",
        choices=["mainnet", "testnet", "devnet", "local"],
        help="Network to fork (default: APTOSBB_NETWORK or mainnet)",
    )
    parser.add_argument("--node-url", help="Fullnode REST URL, overrides --network")
    parser.add_argument(
        "--scenario",
        help="Scenario to run as 'module:function' (default: built-in smoke scenario)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aptosbb",
        description="AptosBB: Aptos bug bounty pentesting harness",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")

    sub = parser.add_subparsers(dest="command")

    default_p = sub.add_parser("default", help="Use an anonymous connection (rate limited)")
    _add_fork_arguments(default_p)

    api_p = sub.add_parser("api", help="Use the API key from APTOSBB_KEY for higher rate limits")
    _add_fork_arguments(api_p)

    sub.add_parser("config", help="Show current configuration")

    return parser


# ── Fork commands ────────────────────────────────────────────────────────────


def _api_key_from_env() -> str:
    api_key = os.environ.get("APTOSBB_KEY")
    if api_key is None:
        raise AptosBBError("APTOSBB_KEY environment variable not found. Please set it with your API key.")
    if not api_key:
        raise AptosBBError("APTOSBB_KEY environment variable is empty. Please set it with your API key.")
    return api_key


async def _run_fork(args: argparse.Namespace) -> int:
    """Connect, then hand the session to the scenario."""
    from aptosbb.harness.scenarios import DEFAULT_SCENARIO, load_scenario
    from aptosbb.harness.session import AptosBB

    api_key = None
    if args.command == "api":
        print("Starting AptosBB in API mode...")
        try:
            api_key = _api_key_from_env()
        except AptosBBError as exc:
            print(_c(f"Error: {exc}", _RED), file=sys.stderr)
            return 1
        print("Using API key from APTOSBB_KEY environment variable")
    else:
        print("Starting AptosBB in default mode (rate limited)...")
        print(_c("Using anonymous connection - may hit rate limits", _YELLOW))

    try:
        scenario = load_scenario(args.scenario or DEFAULT_SCENARIO)
    except (ImportError, ValueError) as exc:
        print(_c(f"Error: cannot load scenario: {exc}", _RED), file=sys.stderr)
        return 1

    try:
        aptosbb = await AptosBB.from_network_latest(
            network=args.network,
            node_url=args.node_url,
            api_key=api_key,
        )
    except (ConnectivityError, ValueError) as exc:
        print(_c(f"Connection failed: {exc}", _RED), file=sys.stderr)
        return 1

    print(
        _c("Connected", _GREEN)
        + f" at version {aptosbb.version} (chain id {aptosbb.chain_id})"
    )
    print("\nRunning scenario against the forked state...\n")

    try:
        result = scenario(aptosbb)
        if inspect.isawaitable(result):
            await result
    except Exception as exc:
        print(_c(f"\nScenario failed: {exc}", _RED), file=sys.stderr)
        return 1
    finally:
        aptosbb.close()

    print(_c("\nComplete!", _GREEN))
    return 0


# ── Config command ───────────────────────────────────────────────────────────


def _run_config() -> int:
    """Print current settings (redacted)."""
    from aptosbb.core.config import get_settings

    s = get_settings()
    print(f"\n{_BOLD}AptosBB Configuration{_RESET}\n")
    for field_name in sorted(s.model_fields.keys()):
        val = getattr(s, field_name, "")
        if any(kw in field_name for kw in ("password", "secret", "key", "token")):
            val = "****" if val else "(not set)"
        print(f"  {_DIM}{field_name}:{_RESET}  {val}")
    print()
    return 0


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"aptosbb {VERSION}")
        return 0

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "config":
        return _run_config()

    from aptosbb.core.config import get_settings

    settings = get_settings()
    setup_logging(settings.app_env, settings.log_level)

    if args.command in ("default", "api"):
        return asyncio.run(_run_fork(args))

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
