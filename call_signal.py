"""Signaling wire format and the participant side of the relay connection.

Messages are JSON objects tagged by ``type``:

    {"type": "ready"}
    {"type": "bye"}
    {"type": "offer", "sdp": "..."}
    {"type": "answer", "sdp": "..."}
    {"type": "candidate", "candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}

A candidate message whose three fields are all empty marks the end of
candidates; on the wire it is sent as ``{"type": "candidate", "candidate": null}``.
"""
import asyncio, json, logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

READY = 'ready'
OFFER = 'offer'
ANSWER = 'answer'
CANDIDATE = 'candidate'
BYE = 'bye'
MESSAGE_TYPES = (READY, OFFER, ANSWER, CANDIDATE, BYE)


class SignalingError(ValueError):
    """Inbound message that does not match the wire schema."""


# ============ MESSAGES ============

@dataclass
class Candidate:
    candidate: Optional[str] = None
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None

    @property
    def is_end(self) -> bool:
        """True for the end-of-candidates marker."""
        return not self.candidate and not self.sdpMid and self.sdpMLineIndex is None

    def to_message(self) -> dict:
        msg = {'type': CANDIDATE, 'candidate': self.candidate or None}
        if self.sdpMid is not None:
            msg['sdpMid'] = self.sdpMid
        if self.sdpMLineIndex is not None:
            msg['sdpMLineIndex'] = self.sdpMLineIndex
        return msg

    @classmethod
    def from_message(cls, msg: dict) -> 'Candidate':
        return cls(candidate=msg.get('candidate'), sdpMid=msg.get('sdpMid'),
                   sdpMLineIndex=msg.get('sdpMLineIndex'))


def ready_message() -> dict:
    return {'type': READY}

def bye_message() -> dict:
    return {'type': BYE}

def offer_message(sdp: str) -> dict:
    return {'type': OFFER, 'sdp': sdp}

def answer_message(sdp: str) -> dict:
    return {'type': ANSWER, 'sdp': sdp}


def parse_message(raw) -> dict:
    """Decode and validate one inbound message (str, bytes or an already decoded dict)."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise SignalingError(f'not JSON: {e}') from e
    if not isinstance(raw, dict):
        raise SignalingError('message is not an object')
    msg_type = raw.get('type')
    if msg_type not in MESSAGE_TYPES:
        raise SignalingError(f'unknown message type: {msg_type!r}')
    if msg_type in (OFFER, ANSWER) and not isinstance(raw.get('sdp'), str):
        raise SignalingError(f'{msg_type} without sdp')
    if msg_type == CANDIDATE:
        for key in ('candidate', 'sdpMid'):
            if raw.get(key) is not None and not isinstance(raw[key], str):
                raise SignalingError(f'bad {key}: {raw[key]!r}')
        index = raw.get('sdpMLineIndex')
        if index is not None and (isinstance(index, bool) or not isinstance(index, int)):
            raise SignalingError(f'bad sdpMLineIndex: {index!r}')
    return raw


# ============ RELAY CONNECTION ============

class SignalingChannel:
    """WebSocket connection from one participant to the relay.

    ``send`` only enqueues, so it can be called from synchronous peer-connection
    callbacks; a single writer task drains the queue in order.
    """

    def __init__(self, url: str, room: Optional[str] = None):
        self.url = url
        if room:
            self.url += ('&' if '?' in url else '?') + urlencode({'room': room})
        self.ws = None
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None

    async def connect(self):
        self.ws = await connect(self.url)
        self._writer = asyncio.ensure_future(self._drain())
        logger.info('connected to relay %s', self.url)
        return self

    def send(self, message: dict):
        self._outbox.put_nowait(json.dumps(message))

    async def _drain(self):
        try:
            while True:
                raw = await self._outbox.get()
                await self.ws.send(raw)
                self._outbox.task_done()
        except ConnectionClosed:
            logger.info('relay connection closed, dropping %d queued messages', self._outbox.qsize())

    async def flush(self):
        """Wait until every queued message has been sent, or the connection is gone."""
        if self._writer is None:
            return
        joined = asyncio.ensure_future(self._outbox.join())
        await asyncio.wait({joined, self._writer}, return_when=asyncio.FIRST_COMPLETED)
        joined.cancel()

    def __aiter__(self):
        return self.ws.__aiter__()

    async def close(self):
        await self.flush()
        if self._writer:
            self._writer.cancel()
        if self.ws:
            await self.ws.close()
