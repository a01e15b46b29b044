"""campus-call command-line entrypoint."""

import argparse
import asyncio
import datetime
import logging
import signal

import asyncpg
from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from campus_call.call.controller import CallController
from campus_call.call.incoming import IncomingCall, IncomingCallWatcher
from campus_call.call.media import MediaStream
from campus_call.call.peer import PeerConnectionManager
from campus_call.call.ringtone import Ringer
from campus_call.call.state import Role
from campus_call.call.store import PgCallSessionStore
from campus_call.config import Settings, load_settings
from campus_call.database import create_pool, run_migrations
from campus_call.matchmaking import Matchmaker, PgMatchQueue
from campus_call.rtc import AiortcMediaDevices, AiortcPeerConnection
from campus_call.signaling.pubsub import PgPubSub

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="campus-call")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("migrate", help="apply pending database migrations")
    sub.add_parser("expire", help="end ringing sessions past the ring timeout")

    call = sub.add_parser("call", help="ring another user")
    call.add_argument("user")
    call.add_argument("peer")
    call.add_argument("--record", help="write the remote media to this file")

    listen = sub.add_parser("listen", help="wait for incoming calls")
    listen.add_argument("user")
    listen.add_argument("--decline", action="store_true")
    listen.add_argument("--record", help="write the remote media to this file")

    rand = sub.add_parser("random", help="get paired with a random waiting user")
    rand.add_argument("user")
    rand.add_argument("--record", help="write the remote media to this file")
    return parser


class RemoteSink:
    """Consumes remote tracks into a recording or discards them."""

    def __init__(self, path: str | None) -> None:
        self._media = MediaRecorder(path) if path else MediaBlackhole()
        self._started = False

    def __call__(self, stream: MediaStream) -> None:
        for track in stream.get_tracks():
            self._media.addTrack(track)
        if not self._started:
            self._started = True
            asyncio.get_running_loop().create_task(self._media.start())

    async def stop(self) -> None:
        if self._started:
            await self._media.stop()


def build_controller(
    settings: Settings,
    pubsub: PgPubSub,
    store: PgCallSessionStore,
    *,
    local_id: str,
    peer_id: str,
    session_id: str,
    role: Role,
    ringer: Ringer | None = None,
) -> CallController:
    devices = AiortcMediaDevices(
        video_device=settings.video_device, audio_device=settings.audio_device
    )
    media = PeerConnectionManager(
        devices, AiortcPeerConnection, settings.ice_servers
    )
    return CallController(
        local_id=local_id,
        peer_id=peer_id,
        session_id=session_id,
        role=role,
        pubsub=pubsub,
        store=store,
        media=media,
        ringer=ringer,
        ring_timeout=settings.ring_timeout if ringer is not None else None,
    )


async def run_call(controller: CallController, record: str | None) -> None:
    sink = RemoteSink(record)
    controller.attach_remote_view(sink)
    async with controller:
        if controller.role == Role.CALLER:
            await controller.start()
        else:
            await controller.answer()
        await controller.wait_ended()
    await sink.stop()
    logger.info("Call finished: %s", controller.end_reason)


async def cmd_call(
    args: argparse.Namespace,
    settings: Settings,
    pool: asyncpg.Pool,
    pubsub: PgPubSub,
    store: PgCallSessionStore,
) -> None:
    session = await store.create(args.user, args.peer)
    ringer = Ringer(
        lambda pcm: logger.debug("Ring (%d bytes)", len(pcm)),
        interval=settings.ring_interval,
    )
    controller = build_controller(
        settings,
        pubsub,
        store,
        local_id=args.user,
        peer_id=args.peer,
        session_id=session.id,
        role=Role.CALLER,
        ringer=ringer,
    )
    await run_call(controller, args.record)


async def cmd_listen(
    args: argparse.Namespace,
    settings: Settings,
    pool: asyncpg.Pool,
    pubsub: PgPubSub,
    store: PgCallSessionStore,
) -> None:
    calls: asyncio.Queue[IncomingCall] = asyncio.Queue()
    watcher = IncomingCallWatcher(
        pubsub, store, args.user, on_incoming=calls.put_nowait
    )
    await watcher.open()
    try:
        while True:
            await calls.get()
            if args.decline:
                await watcher.decline()
                continue
            call = watcher.accept()
            if call is None:
                continue
            logger.info("Answering %s (%s)", call.caller_name, call.caller_id)
            controller = build_controller(
                settings,
                pubsub,
                store,
                local_id=args.user,
                peer_id=call.caller_id,
                session_id=call.session_id,
                role=Role.CALLEE,
            )
            await run_call(controller, args.record)
    finally:
        await watcher.close()


async def cmd_random(
    args: argparse.Namespace,
    settings: Settings,
    pool: asyncpg.Pool,
    pubsub: PgPubSub,
    store: PgCallSessionStore,
) -> None:
    matchmaker = Matchmaker(
        user_id=args.user,
        queue=PgMatchQueue(pool),
        store=store,
        pubsub=pubsub,
        poll_interval=settings.match_poll_interval,
        notify_linger=settings.match_notify_linger,
        rejoin_after=settings.match_rejoin_after,
    )
    try:
        await matchmaker.search()
        logger.info("Waiting for a partner...")
        match = await matchmaker.wait()
    finally:
        await matchmaker.close()
    logger.info("Matched with %s as %s", match.peer_name, match.role)
    controller = build_controller(
        settings,
        pubsub,
        store,
        local_id=args.user,
        peer_id=match.peer_id,
        session_id=match.session_id,
        role=match.role,
    )
    await run_call(controller, args.record)


COMMANDS = {"call": cmd_call, "listen": cmd_listen, "random": cmd_random}


async def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    logging.getLogger().setLevel(settings.log_level)

    pool = await create_pool(settings.database_url)
    try:
        if args.command == "migrate":
            await run_migrations(pool)
            return
        store = PgCallSessionStore(pool)
        if args.command == "expire":
            await store.expire_ringing(
                datetime.timedelta(seconds=settings.ring_timeout)
            )
            return

        pubsub = PgPubSub(pool)
        loop = asyncio.get_running_loop()
        task = asyncio.create_task(
            COMMANDS[args.command](args, settings, pool, pubsub, store)
        )
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, task.cancel)
        try:
            await task
        except asyncio.CancelledError:
            logger.info("Shutting down...")
        finally:
            await pubsub.close()
    finally:
        await pool.close()


if __name__ == "__main__":
    asyncio.run(main())
