#!/usr/bin/env python3
"""WebSocket signaling relay for two-party calls.

Clients connect to ws://host:port/?room=<id> (no room means room "default").
Every text frame a client sends is forwarded unchanged to the other members of
its room. The relay never looks inside messages, never announces joins or
leaves, and never speaks for a client that disconnected.
"""

import argparse, asyncio, logging, os, uuid
from typing import Dict, Optional
from urllib.parse import parse_qs, urlsplit

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

DEFAULT_ROOM = 'default'
ROOM_FULL = 1013  # "try again later"


def room_from_path(path: str) -> str:
    rooms = parse_qs(urlsplit(path).query).get('room')
    return rooms[0] if rooms and rooms[0] else DEFAULT_ROOM


class Participant:
    """One connection. Outbound frames are queued and written by a single task,
    so each recipient sees every sender's frames in the order they were sent."""

    def __init__(self, ws, conn_id: Optional[str] = None):
        self.ws = ws
        self.conn_id = conn_id or uuid.uuid4().hex
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._writer = asyncio.ensure_future(self._drain())

    def deliver(self, raw):
        self._outbox.put_nowait(raw)

    async def _drain(self):
        try:
            while True:
                raw = await self._outbox.get()
                await self.ws.send(raw)
                self._outbox.task_done()
        except ConnectionClosed:
            logger.info('send to %s failed, connection closed', self.conn_id)

    async def drained(self):
        """Wait until the outbox is empty or the connection has failed."""
        joined = asyncio.ensure_future(self._outbox.join())
        await asyncio.wait({joined, self._writer}, return_when=asyncio.FIRST_COMPLETED)
        joined.cancel()

    def close(self):
        self._writer.cancel()


class Room:
    def __init__(self, room_id: str, max_members: Optional[int] = None):
        self.room_id = room_id
        self.max_members = max_members
        self.members: Dict[str, Participant] = {}

    @property
    def full(self) -> bool:
        return self.max_members is not None and len(self.members) >= self.max_members


class Relay:
    """Rooms of connected participants. Lives on one event loop; broadcast
    iterates over a snapshot, so members may leave mid-broadcast."""

    def __init__(self, max_peers: Optional[int] = None):
        self.max_peers = max_peers
        self.rooms: Dict[str, Room] = {}

    def join(self, room_id: str, participant: Participant) -> bool:
        room = self.rooms.get(room_id)
        if room is None:
            room = self.rooms[room_id] = Room(room_id, self.max_peers)
        if room.full:
            if not room.members:
                del self.rooms[room_id]
            return False
        room.members[participant.conn_id] = participant
        return True

    def leave(self, room_id: str, participant: Participant):
        room = self.rooms.get(room_id)
        if room is None:
            return
        room.members.pop(participant.conn_id, None)
        if not room.members:
            del self.rooms[room_id]

    def broadcast(self, room_id: str, sender_id: str, raw) -> int:
        """Queue ``raw`` for every member of the room except the sender."""
        room = self.rooms.get(room_id)
        if room is None:
            return 0
        sent = 0
        for conn_id, peer in list(room.members.items()):
            if conn_id != sender_id:
                peer.deliver(raw)
                sent += 1
        return sent

    def members(self, room_id: str) -> list:
        room = self.rooms.get(room_id)
        return list(room.members) if room else []

    async def handle(self, ws):
        """Handle one WebSocket connection."""
        room_id = room_from_path(ws.request.path)
        participant = Participant(ws)
        if not self.join(room_id, participant):
            logger.warning('room %s full, refusing %s', room_id, participant.conn_id)
            participant.close()
            await ws.close(ROOM_FULL, 'room full')
            return

        logger.info('new client connected %s (room %s)', participant.conn_id, room_id)
        try:
            async for msg in ws:
                self.broadcast(room_id, participant.conn_id, msg)
        except ConnectionClosed:
            pass
        finally:
            self.leave(room_id, participant)
            participant.close()
            logger.info('disconnected %s (room %s)', participant.conn_id, room_id)


def serve_relay(relay: Relay, host: str, port: int, origins=None):
    """Return the websockets server (use with ``async with``)."""
    # clients without an Origin header (non-browser) are always let through
    return serve(relay.handle, host, port, origins=[*origins, None] if origins else None)


def parse_args(argv=None):
    env_origins = [o for o in os.environ.get('RELAY_ORIGINS', '').split(',') if o]
    p = argparse.ArgumentParser(description='Two-party call signaling relay')
    p.add_argument('--host', default=os.environ.get('RELAY_HOST', '0.0.0.0'))
    p.add_argument('--port', type=int, default=int(os.environ.get('RELAY_PORT', 3000)))
    p.add_argument('--origin', action='append', dest='origins', default=None,
                   help='Allowed Origin header (repeatable, default: any)')
    p.add_argument('--max-peers', type=int, default=None,
                   help='Refuse connections beyond this many per room')
    p.add_argument('--log-level', default='INFO')
    args = p.parse_args(argv)
    if args.origins is None:
        args.origins = env_origins
    return args


async def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(),
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    relay = Relay(max_peers=args.max_peers)
    async with serve_relay(relay, args.host, args.port, args.origins):
        logger.info('Server is running on ws://%s:%d', args.host, args.port)
        await asyncio.Future()  # run forever


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    run()
