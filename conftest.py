"""In-memory stand-ins for the relay connection, media devices and peer connection."""
import asyncio, itertools, json

from aiortc import RTCSessionDescription
from pyee import EventEmitter

from call_client import CallConfig, CallSession
from call_media import LocalPreview, MediaStream
from call_rtc import NegotiationFailure
from call_signal import Candidate

HOST_CANDIDATE = 'candidate:1 1 udp 2122260223 192.168.1.2 50000 typ host'


class FakeSignaling:
    """Records every message; ``pending`` holds the ones not yet delivered."""

    def __init__(self):
        self.sent = []
        self.pending = []

    def send(self, message):
        self.sent.append(message)
        self.pending.append(json.dumps(message))

    def types(self):
        return [m['type'] for m in self.sent]


class FakeTrack:
    def __init__(self, kind):
        self.kind = kind
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeMedia:
    def __init__(self, error=None):
        self.error = error
        self.remote = []
        self.rendering_stopped = False
        self.gate = None  # set to an asyncio.Event to hold acquisition

    async def acquire_local_media(self, constraints):
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise self.error
        return MediaStream([FakeTrack('audio'), FakeTrack('video')])

    def render_local(self, stream):
        return LocalPreview(stream)

    def render_remote(self, stream):
        self.remote.append(stream)

    async def stop_rendering(self):
        self.rendering_stopped = True


class FakePeerConnection(EventEmitter):
    _ids = itertools.count(1)

    def __init__(self, config, fail_on=()):
        super().__init__()
        self.config = config
        self.fail_on = set(fail_on)
        self.id = next(self._ids)
        self.tracks = []
        self.candidates = []
        self.localDescription = None
        self.remoteDescription = None
        self.signalingState = 'stable'
        self.connectionState = 'new'
        self.closed = False
        self.gate = None  # set to an asyncio.Event to hold createOffer
        self.remote_stream = MediaStream()

    def _check(self, step):
        if step in self.fail_on:
            raise NegotiationFailure(f'{step} rejected')

    def addTrack(self, track):
        self._check('addTrack')
        self.tracks.append(track)

    async def createOffer(self):
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        self._check('createOffer')
        return RTCSessionDescription(sdp=f'offer-{self.id:04d}', type='offer')

    async def createAnswer(self):
        await asyncio.sleep(0)
        self._check('createAnswer')
        return RTCSessionDescription(sdp=f'answer-{self.id:04d}', type='answer')

    async def setLocalDescription(self, description):
        await asyncio.sleep(0)
        self._check('setLocalDescription')
        self.localDescription = description
        self.signalingState = 'have-local-offer' if description.type == 'offer' else 'stable'
        self.emit('icecandidate', Candidate(HOST_CANDIDATE, '0', 0))
        self.emit('icecandidate', Candidate())

    async def setRemoteDescription(self, description):
        await asyncio.sleep(0)
        self._check('setRemoteDescription')
        self.remoteDescription = description
        self.signalingState = 'have-remote-offer' if description.type == 'offer' else 'stable'
        track = FakeTrack('audio')
        self.remote_stream.add_track(track)
        self.emit('track', track, self.remote_stream)

    async def addIceCandidate(self, candidate):
        self._check('addIceCandidate')
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = 'closed'
        self.emit('connectionstatechange', 'closed')


class PeerFactory:
    def __init__(self, fail_on=()):
        self.fail_on = fail_on
        self.gate = None
        self.created = []

    def __call__(self, config):
        pc = FakePeerConnection(config, self.fail_on)
        pc.gate = self.gate
        self.created.append(pc)
        return pc


class Participant:
    """A session wired to fakes, with helpers to look at what it did."""

    def __init__(self, media_error=None, fail_on=()):
        self.signaling = FakeSignaling()
        self.media = FakeMedia(media_error)
        self.peers = PeerFactory(fail_on)
        self.errors = []
        self.states = []
        self.session = CallSession(self.signaling, self.media, CallConfig(ice_servers=()),
                                   peer_factory=self.peers,
                                   on_state_change=self.states.append,
                                   on_error=self.errors.append)

    async def deliver_to(self, other, count=None):
        """Hand this side's undelivered messages to ``other``, oldest first."""
        n = len(self.signaling.pending) if count is None else count
        for _ in range(n):
            await other.session.handle_message(self.signaling.pending.pop(0))


async def exchange(a, b):
    """Deliver messages both ways until neither side has anything left to say."""
    while a.signaling.pending or b.signaling.pending:
        await a.deliver_to(b)
        await b.deliver_to(a)
