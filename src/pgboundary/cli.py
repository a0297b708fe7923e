"""Command line interface.

    pgboundary [-c CONFIG] [-v] connect TARGET
    pgboundary [-c CONFIG] [-v] list
    pgboundary [-c CONFIG] [-v] shutdown [TARGET]
"""

import argparse
import sys
from collections.abc import Sequence

from .common.exceptions import PgBoundaryError, ShutdownError
from .common.logging import get_logger, setup_logging
from .config import AppConfig, load_config, load_config_from_default_locations
from .reconciler import OperationResult, Reconciler

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pgboundary",
        description="Broker database tunnels through Boundary and serve them via pgbouncer.",
    )
    parser.add_argument(
        "-c",
        "--config",
        help="config file (default: ./pgboundary.ini, ~/.pgboundary/pgboundary.ini, "
        "or $XDG_CONFIG_HOME/pgboundary/pgboundary.ini)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="verbose output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    connect = subparsers.add_parser("connect", help="Connect to a target")
    connect.add_argument("target")

    subparsers.add_parser(
        "list", help="List configured targets and active pgbouncer connections"
    )

    shutdown = subparsers.add_parser(
        "shutdown",
        help="Shutdown one connection, or all connections and pgbouncer",
    )
    shutdown.add_argument("connection", nargs="?")

    return parser


def _load(path: str | None) -> AppConfig:
    if path:
        return load_config(path)
    return load_config_from_default_locations()


def _report(result: OperationResult) -> None:
    if result.outcome.is_warning:
        print(f"Warning: {result.message}", file=sys.stderr)


def _print_status(reconciler: Reconciler, verbose: bool) -> None:
    status = reconciler.status()
    if status.proxy_running:
        if verbose:
            print(f"PgBouncer is running (pid: {status.pid})")
        print("Active PgBouncer connections:")
        for conn in status.connections:
            if verbose and conn.tunnel_pid > 0:
                state = "" if conn.tunnel_alive else ", not running"
                print(f"  {conn.name} (boundary pid: {conn.tunnel_pid}{state})")
            else:
                print(f"  {conn.name}")
        print()
    elif verbose:
        print("PgBouncer is not running\n")

    print("Available boundary targets:")
    for target in reconciler.list_targets():
        print(f"  {target.name}:")
        print(f"    Host:         {target.host}")
        print(f"    Target:       {target.target}")
        print(f"    Auth Scope:   {target.auth_scope}")
        print(f"    Target Scope: {target.target_scope}")
        print(f"    Database:     {target.database}")
        print()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level="DEBUG" if args.verbose else "WARNING")

    try:
        reconciler = Reconciler.from_config(_load(args.config))

        if args.command == "connect":
            _report(reconciler.connect(args.target))
        elif args.command == "list":
            _print_status(reconciler, args.verbose)
        elif args.connection:
            _report(reconciler.disconnect(args.connection))
        else:
            _report(reconciler.disconnect_all())
    except ShutdownError as e:
        for error in e.errors:
            print(f"Warning: {error}", file=sys.stderr)
        return 1
    except PgBoundaryError as e:
        logger.debug("Command failed", command=args.command, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
