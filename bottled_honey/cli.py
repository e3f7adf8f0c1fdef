"""
Honeypot command line entry point

A very basic Terraria honeypot: listens for connection requests,
occasionally requests a password, scrapes some basic data from the client
and sends it to an OpenTelemetry endpoint.

Every option can also be set through the environment (see Settings);
flags given on the command line win.
"""
import argparse
import asyncio
import signal
import sys
from typing import List, Optional, Set

import structlog

from bottled_honey import __version__
from bottled_honey.config import Settings, load_settings
from bottled_honey.engine.listener import Listener
from bottled_honey.engine.password_gate import PasswordGate
from bottled_honey.exceptions import BindError, ConfigurationError
from bottled_honey.logging import setup_logging
from bottled_honey.telemetry import TelemetrySink, build_exporter

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bottled-honey",
        description="A very basic Terraria honeypot",
    )
    parser.add_argument(
        "address",
        nargs="?",
        help="Address the honeypot should bind to (ip:port) [env: ADDRESS]",
    )
    parser.add_argument(
        "-p",
        "--password-chance",
        type=float,
        help="Chance a password is requested after connecting, 0.0 to 1.0 [env: PASSWORD_CHANCE]",
    )
    parser.add_argument(
        "--reject-password",
        action="store_true",
        default=None,
        help="Disconnect clients after their password attempt [env: REJECT_PASSWORD]",
    )
    parser.add_argument(
        "--otel-endpoint",
        help="OpenTelemetry endpoint to send traces to [env: OTEL_ENDPOINT]",
    )
    parser.add_argument(
        "--otel-headers",
        help='Extra headers for the OpenTelemetry endpoint, "key=val,key=val" [env: OTEL_HEADERS]',
    )
    parser.add_argument(
        "--log-level",
        help="Log level [env: LOG_LEVEL]",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


async def serve(settings: Settings) -> None:
    """Run the honeypot until SIGINT/SIGTERM."""
    sink = TelemetrySink(build_exporter(settings), queue_size=settings.telemetry_queue_size)
    listener = Listener(settings, PasswordGate(), sink)

    await listener.start()
    sink.start()

    loop = asyncio.get_running_loop()
    shutdown_tasks: Set[asyncio.Task] = set()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown, listener, sig, shutdown_tasks)
        except NotImplementedError:
            # Windows event loops don't support signal handlers
            pass

    try:
        await listener.serve_forever()
    finally:
        await listener.stop()
        await sink.stop()


def request_shutdown(listener: Listener, sig: signal.Signals, pending: Set[asyncio.Task]) -> asyncio.Task:
    """Schedule a listener stop from a signal handler, keeping the task referenced until it ends."""
    task = asyncio.ensure_future(_shutdown(listener, sig))
    pending.add(task)
    task.add_done_callback(pending.discard)
    return task


async def _shutdown(listener: Listener, sig: signal.Signals) -> None:
    logger.info("shutdown_requested", signal=sig.name)
    await listener.stop()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(
            address=args.address,
            password_chance=args.password_chance,
            reject_password=args.reject_password,
            otel_endpoint=args.otel_endpoint,
            otel_headers=args.otel_headers,
            log_level=args.log_level,
        )
    except ConfigurationError as e:
        print(f"bottled-honey: {e.message}: {e.details.get('errors')}", file=sys.stderr)
        return 1

    setup_logging(settings.log_level, settings.log_dir)
    logger.info(
        "honeypot_starting",
        version=__version__,
        address=settings.address,
        password_chance=settings.password_chance,
        otel_endpoint=settings.otel_endpoint,
    )

    try:
        asyncio.run(serve(settings))
    except BindError as e:
        logger.error("bind_failed", error=e.message, address=settings.address)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
