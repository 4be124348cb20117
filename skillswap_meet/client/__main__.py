# skillswap_meet/client/__main__.py
"""
Headless meeting participant.

    python -m skillswap_meet.client --room r1 --identity alice --name Alice

Joins a room with the local camera/microphone (or receive-only), logs the
participant list periodically and leaves cleanly on Ctrl+C.
"""
import argparse
import asyncio
import logging
import signal

from skillswap_meet.core.config import settings
from skillswap_meet.core.security import issue_token

from .invitations import InvitationInbox
from .media import MediaProvider
from .session import MeetingSession
from .signaling import SignalingClient, fetch_ice_servers

logger = logging.getLogger("skillswap_meet.client")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="skillswap-meet", description="Join a SkillSwap meeting room")
    parser.add_argument("--server", default=settings.SIGNALING_URL, help="Signaling WebSocket URL")
    parser.add_argument("--api", default=settings.API_URL, help="Base URL of the HTTP API")
    auth = parser.add_mutually_exclusive_group(required=True)
    auth.add_argument("--token", help="Identity token issued by the server")
    auth.add_argument("--identity", help="Sign a token locally with AUTH_SECRET (development only)")
    parser.add_argument("--room", required=True, help="Room id to join")
    parser.add_argument("--name", default="User", help="Display name shown to other participants")
    parser.add_argument("--receive-only", action="store_true", help="Do not open local capture devices")
    parser.add_argument("--status-interval", type=int, default=10, help="Seconds between participant reports")
    return parser


async def run(args: argparse.Namespace) -> None:
    token = args.token or issue_token(args.identity)
    signaling = SignalingClient(args.server, token=token)
    await signaling.connect()

    inbox = InvitationInbox(signaling)
    ice_servers = await fetch_ice_servers(args.api)
    session = MeetingSession(
        signaling,
        args.room,
        display_name=args.name,
        media_provider=MediaProvider(capture=not args.receive_only),
        ice_servers=ice_servers,
        inbox=inbox
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        async with session:
            while not stop.is_set():
                try:
                    await asyncio.wait_for(stop.wait(), timeout=args.status_interval)
                except asyncio.TimeoutError:
                    pass
                people = [view.to_dict() for view in session.participants()]
                logger.info(f"Participants in {args.room}: {people}")
                for invitation in inbox.pending():
                    logger.info(f"Pending invitation from {invitation.inviter_display_name} to {invitation.room_id}")
    finally:
        await signaling.close()


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    args = build_parser().parse_args()
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
