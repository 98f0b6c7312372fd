"""Command-line interface for walletsession."""

from __future__ import annotations

import argparse
import asyncio
import json
import os

from pathlib import Path
from typing import TYPE_CHECKING

from .config import _user_config_path


if TYPE_CHECKING:
    from .types import LoginResult


def main(argv: list[str] | None = None) -> int:
    """Run the main CLI entry point.

    Returns
    -------
    int
        Exit code.
    """
    parser = argparse.ArgumentParser(
        prog="walletsession",
        description="walletsession configuration and session tools",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Show or export configuration",
    )
    config_group = config_parser.add_mutually_exclusive_group()
    config_group.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration",
    )
    config_group.add_argument(
        "--toml",
        action="store_true",
        help="Export configuration as TOML",
    )
    config_group.add_argument(
        "--env",
        action="store_true",
        help="Export configuration as environment variables",
    )
    config_group.add_argument(
        "--sources",
        action="store_true",
        help="Show configuration file sources",
    )
    config_parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Output file path (default: stdout)",
    )

    # token command
    token_parser = subparsers.add_parser("token", help="Inspect stored or given credentials")
    token_sub = token_parser.add_subparsers(dest="token_command")
    inspect_parser = token_sub.add_parser("inspect", help="Describe a credential without verifying it")
    inspect_parser.add_argument(
        "token",
        nargs="?",
        help="Credential to inspect (default: the stored credential)",
    )

    # whoami command
    subparsers.add_parser("whoami", help="Check the stored session against the backend")

    args = parser.parse_args(argv)

    if args.command == "config":
        return handle_config(args)
    if args.command == "token":
        if args.token_command == "inspect":
            return handle_token_inspect(args)
        token_parser.print_help()
        return 0
    if args.command == "whoami":
        return handle_whoami(args)
    parser.print_help()
    return 0


def handle_config(args: argparse.Namespace) -> int:
    """Handle the config command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    from .config import WalletSessionSettings

    if args.sources:
        return show_config_sources()

    settings = WalletSessionSettings()
    if args.toml:
        output = settings.to_toml()
    elif args.env:
        output = settings.to_env()
    else:
        output = settings.show()

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Configuration written to {args.output}")
    else:
        print(output)

    return 0


def show_config_sources() -> int:
    """Show configuration file sources and whether they were found."""
    env_file = os.environ.get("WALLETSESSION_CONFIG_FILE", "")
    sources = [
        ("pyproject.toml [tool.walletsession]", Path("pyproject.toml")),
        ("./walletsession.toml", Path("walletsession.toml")),
        ("User config", _user_config_path()),
        ("WALLETSESSION_CONFIG_FILE", Path(env_file) if env_file else None),
    ]

    print("Configuration Sources (in order of precedence):\n")
    print(f"{'Source':<40} {'Status':<15} {'Path'}")
    print("-" * 80)
    print(f"{'Built-in defaults':<40} {'Active':<15}")

    for name, path in sources:
        if path is None:
            print(f"{name:<40} {'Not set':<15}")
            continue
        status = "Found" if path.exists() else "Not found"
        print(f"{name:<40} {status:<15} {path}")

    env_vars = sorted(k for k in os.environ if k.startswith("WALLETSESSION_"))
    status = f"{len(env_vars)} set" if env_vars else "None set"
    print(f"{'Environment variables':<40} {status:<15} {', '.join(env_vars)}")
    return 0


def handle_token_inspect(args: argparse.Namespace) -> int:
    """Print the unverified description of a credential as JSON."""
    from .challenge import inspect_token

    token = args.token or asyncio.run(_stored_token())
    if not token:
        print("No credential stored")
        return 1
    metadata = inspect_token(token)
    print(json.dumps({**metadata.__dict__, "expired": metadata.is_expired}, indent=2))
    return 0


async def _stored_token() -> str | None:
    from .config import get_settings
    from .token_store import create_token_store

    return await create_token_store(get_settings().storage).get_token()


def handle_whoami(args: argparse.Namespace) -> int:  # noqa: ARG001
    """Check the stored credential against the configured backend."""
    result = asyncio.run(_whoami())
    if result.success and result.user is not None:
        print(f"{result.user.id} ({result.user.display_address})")
        return 0
    if result.error is not None:
        print(f"Session check failed [{result.error.kind.value}]: {result.error.message}")
        return 1
    print("Not logged in")
    return 1


async def _whoami() -> LoginResult:
    from .backend import BackendSessionClient
    from .config import get_settings
    from .log import configure_from_settings
    from .token_store import create_token_store

    settings = get_settings()
    configure_from_settings(settings.log)
    backend = BackendSessionClient(create_token_store(settings.storage), settings.backend)
    try:
        return await backend.check_existing_session()
    finally:
        await backend.close()
