from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal

from pathlib import Path
from typing import Optional

from shared.protocol import (
    DEFAULT_ADMIN_PORT,
    DEFAULT_PORT,
    IDLE_REAP_INTERVAL,
    PERSISTENT_IDLE_TIMEOUT,
    SERVER_HEARTBEAT_INTERVAL,
)

from server.admin_dashboard import AdminServer
from server.idle_reaper import IdleReaper
from server.liveness import LivenessMonitor
from server.party_registry import PartyRegistry
from server.relay_server import RelayServer

logger = logging.getLogger(__name__)


def _default_port() -> int:
    raw = os.environ.get("PORT")
    if raw is None:
        return DEFAULT_PORT
    try:
        return int(raw)
    except ValueError:
        return DEFAULT_PORT


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Watch party synchronization relay")
    parser.add_argument("--host", default="0.0.0.0", help="Host/IP to bind the WebSocket relay")
    parser.add_argument("--port", type=int, default=_default_port(), help="WebSocket relay port (default: $PORT or 8080)")
    parser.add_argument("--admin-host", default="127.0.0.1", help="Host for the admin dashboard server")
    parser.add_argument("--admin-port", type=int, default=DEFAULT_ADMIN_PORT, help="Port for the admin dashboard server")
    parser.add_argument("--no-admin", action="store_true", help="Do not start the admin dashboard")
    parser.add_argument(
        "--heartbeat-interval",
        type=float,
        default=SERVER_HEARTBEAT_INTERVAL,
        help="Seconds between liveness probes",
    )
    parser.add_argument(
        "--reap-interval",
        type=float,
        default=IDLE_REAP_INTERVAL,
        help="Seconds between idle party sweeps",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=PERSISTENT_IDLE_TIMEOUT,
        help="Seconds an empty persistent party is kept",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    return parser


def configure_logging(args: argparse.Namespace) -> None:
    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )


async def run_server(args: argparse.Namespace) -> None:
    registry = PartyRegistry()
    liveness = LivenessMonitor(interval=args.heartbeat_interval)
    reaper = IdleReaper(registry, interval=args.reap_interval, idle_timeout=args.idle_timeout)
    relay_server = RelayServer(args.host, args.port, registry, liveness=liveness)
    admin_server: Optional[AdminServer] = None
    if not args.no_admin:
        admin_server = AdminServer(
            registry,
            host=args.admin_host,
            port=args.admin_port,
            connection_counter=relay_server.connection_count,
        )

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        if stop_event.is_set():
            logger.debug("Shutdown already in progress")
            return
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    await relay_server.start()
    if admin_server is not None:
        await admin_server.start()

    background = [
        asyncio.create_task(liveness.run()),
        asyncio.create_task(reaper.run()),
    ]

    await stop_event.wait()

    logger.info("Stopping services")

    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)

    try:
        await relay_server.stop()
    except Exception:
        logger.exception("Error stopping relay server")

    if admin_server is not None:
        try:
            await admin_server.stop()
        except Exception:
            logger.exception("Error stopping admin server")

    logger.info("Shutdown complete")


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(args)
    try:
        asyncio.run(run_server(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
