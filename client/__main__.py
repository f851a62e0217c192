from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any, Dict

from shared.protocol import DEFAULT_PORT, ServerMessageType

from .party_client import PartyClient
from .player import SimulatedPlayer
from .sync_controller import SyncController

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Headless watch party client")
    parser.add_argument(
        "server_url",
        nargs="?",
        default=f"ws://localhost:{DEFAULT_PORT}",
        help="WebSocket URL of the relay server",
    )
    parser.add_argument("--username", default="Anonymous", help="Display name shown to other participants")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--create", action="store_true", help="Create a new party")
    group.add_argument("--join", metavar="CODE", help="Join an existing party by code")
    parser.add_argument("--password", default=None, help="Party password (optional)")
    parser.add_argument("--persistent", action="store_true", help="Keep the created party alive while empty")
    parser.add_argument("--video-url", default="https://example.com/watch", help="URL reported as the local video")
    parser.add_argument("--video-title", default="", help="Title reported with the local video")
    parser.add_argument("--no-rejoin", action="store_true", help="Do not re-join the party after a reconnect")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    return parser


async def run_client(args: argparse.Namespace) -> None:
    player = SimulatedPlayer(args.video_url, title=args.video_title)
    controller = SyncController(player)

    async def on_message(message_type: ServerMessageType, payload: Dict[str, Any]) -> None:
        if message_type == ServerMessageType.PARTY_CREATED:
            logger.info("Party code: %s (share it with your friends)", payload.get("partyCode"))
        elif message_type == ServerMessageType.PARTICIPANTS:
            names = [
                f"{entry.get('username')}{'' if entry.get('synced') else ' (not synced)'}"
                for entry in payload.get("participants", [])
            ]
            logger.info("Participants: %s", ", ".join(names))
        elif message_type == ServerMessageType.SYNC:
            logger.info(
                "%s -> %s; local position %.2fs, paused=%s",
                payload.get("username"),
                payload.get("action"),
                player.current_time,
                player.paused,
            )

    client = PartyClient(
        args.server_url,
        controller=controller,
        on_message=on_message,
        rejoin=not args.no_rejoin,
    )
    player.add_listener(client.handle_player_event)
    runner = asyncio.create_task(client.run())
    try:
        await client.wait_connected()
        await client.announce_video(player.descriptor)
        if args.create:
            await client.create_party(args.username, password=args.password, persistent=args.persistent)
        else:
            await client.join(args.join, args.username, password=args.password)
        await runner
    finally:
        await client.close()
        runner.cancel()


def main() -> None:
    args = build_parser().parse_args()

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(run_client(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
