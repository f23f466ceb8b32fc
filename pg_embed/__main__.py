"""
Entry point for pg_embed.

    python -m pg_embed fetch --version 16.2.0
    python -m pg_embed serve --version 16.2.0 --param timezone=UTC
"""

import argparse
import logging
import signal
import sys
import threading

from .application.exceptions import PgEmbedError
from .application.service import PgServer
from .application.versions import resolve
from .infrastructure.containers import Container

logger = logging.getLogger(__name__)


def setup_logging(level: str):
    """Applies basic logging configuration."""
    logging.basicConfig(level=level)


def _parse_params(pairs):
    params = {}
    for pair in pairs or []:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise argparse.ArgumentTypeError(
                f"Expected name=value, got {pair!r}"
            )
        params[name.strip()] = value.strip()
    return params


def run_fetch(container: Container, args: argparse.Namespace):
    """Pre-warms the binary cache for one version."""
    package = container.binary_cache().acquire(resolve(args.version))
    print(package.root)


def run_serve(container: Container, args: argparse.Namespace):
    """Runs one instance in the foreground until interrupted."""
    stop_requested = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop_requested.set())

    server = PgServer(
        args.version,
        admin_user=args.user,
        server_params=_parse_params(args.param),
        instance_id=args.instance_id,
        clear_instance_dir_on_stop=args.clear,
        container=container,
    )
    with server:
        print(server.dsn(), flush=True)
        logger.info(f"Instance directory: {server.workspace_path}")
        try:
            stop_requested.wait()
        except KeyboardInterrupt:
            pass


def run_application(args: argparse.Namespace):
    """Wires and runs the requested command using the DI container."""

    container = Container()
    try:
        setup_logging(level=container.options().logging.level)
        args.handler(container, args)
    except (PgEmbedError, argparse.ArgumentTypeError) as e:
        logger.error(f"An application error occurred: {e}")
        sys.exit(1)
    finally:
        container.shutdown_resources()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pg_embed", description="Disposable PostgreSQL instances"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    fetch = commands.add_parser("fetch", help="Download binaries into the cache")
    fetch.add_argument("--version", required=True, help="e.g. 16.2.0")
    fetch.set_defaults(handler=run_fetch)

    serve = commands.add_parser("serve", help="Run an instance until Ctrl-C")
    serve.add_argument("--version", required=True, help="e.g. 16.2.0")
    serve.add_argument("--user", default="postgres", help="Admin user name")
    serve.add_argument(
        "--instance-id", help="Reuse the data directory of this instance"
    )
    serve.add_argument(
        "--param",
        action="append",
        metavar="NAME=VALUE",
        help="Server parameter override, repeatable",
    )
    serve.add_argument(
        "--clear",
        action="store_true",
        help="Delete the instance directory on exit",
    )
    serve.set_defaults(handler=run_serve)
    return parser


def main():
    run_application(build_parser().parse_args())


if __name__ == "__main__":
    main()
