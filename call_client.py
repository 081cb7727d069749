"""Call negotiation for one participant.

Usage:
    channel = await SignalingChannel('ws://localhost:3000', room='demo').connect()
    session = CallSession(channel, MediaDevices())
    pump = asyncio.ensure_future(run_session(session, channel))

    await session.start()     # acquire media, send 'ready'
    ...                       # the other side's 'ready' makes us the offerer
    session.toggle_mute()     # local preview only
    await session.hangup()    # tear down, send 'bye'

Whoever has no peer connection when a 'ready' arrives becomes the offerer; the
other side answers. When both sides start at once both send offers; the offer
with the larger sdp stands and the other side answers it instead of its own.
Inbound messages and start() are serialized per session.
Hangup, bye and transport loss clear the peer connection immediately, and
every in-flight step checks that its peer connection is still current after
each await.
"""
import asyncio, logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from aiortc import RTCSessionDescription
from websockets.exceptions import ConnectionClosed

from call_media import MediaAcquisitionFailure, MediaConstraints
from call_rtc import DEFAULT_ICE_SERVERS, AiortcPeerConnection, NegotiationFailure
from call_signal import (ANSWER, BYE, CANDIDATE, OFFER, READY, Candidate, SignalingError,
                         answer_message, bye_message, offer_message, parse_message, ready_message)

logger = logging.getLogger(__name__)

# states a peer connection reports once the remote side is gone
LOST_STATES = ('failed', 'disconnected', 'closed')


class ProtocolViolation(Exception):
    """Message that makes no sense in the current call state. Dropped."""


class CallState(str, Enum):
    IDLE = 'idle'
    READY = 'ready'              # local media held, 'ready' sent, no peer connection
    NEGOTIATING = 'negotiating'
    ACTIVE = 'active'


@dataclass(frozen=True)
class CallControls:
    """Which user actions are currently enabled."""
    start: bool
    hangup: bool
    mute: bool


@dataclass
class CallConfig:
    ice_servers: tuple = DEFAULT_ICE_SERVERS
    ice_candidate_pool_size: int = 10
    constraints: MediaConstraints = field(default_factory=MediaConstraints)


def aiortc_peer_factory(config: CallConfig) -> AiortcPeerConnection:
    return AiortcPeerConnection(config.ice_servers, config.ice_candidate_pool_size)


class CallSession:
    def __init__(self, signaling, media, config: Optional[CallConfig] = None,
                 peer_factory: Callable = aiortc_peer_factory,
                 on_state_change: Optional[Callable] = None,
                 on_error: Optional[Callable] = None):
        self.signaling = signaling
        self.media = media
        self.config = config or CallConfig()
        self._peer_factory = peer_factory
        self._on_state_change = on_state_change
        self._on_error = on_error
        self._lock = asyncio.Lock()
        self._epoch = 0  # bumped by every teardown
        self._ignore_stale_candidates = False
        self._lost: Optional[asyncio.Future] = None  # teardown after transport loss

        self.state = CallState.IDLE
        self.pc = None
        self.local_stream = None
        self.remote_stream = None
        self.preview = None

    # ============ STATE ============

    @property
    def controls(self) -> CallControls:
        idle = self.state is CallState.IDLE
        return CallControls(start=idle, hangup=not idle, mute=not idle)

    @property
    def preview_audible(self) -> bool:
        return bool(self.preview and self.preview.audible)

    def _set_state(self, state: CallState):
        if state is self.state:
            return
        logger.info('call state %s -> %s', self.state.value, state.value)
        self.state = state
        if self._on_state_change:
            self._on_state_change(state)

    def _check_active(self, pc):
        if pc is self.pc and pc.localDescription and pc.remoteDescription:
            self._set_state(CallState.ACTIVE)

    # ============ LOCAL TRIGGERS ============

    async def start(self) -> bool:
        """Acquire local media and announce readiness. Returns False if media failed."""
        async with self._lock:
            if self.state is not CallState.IDLE:
                logger.info('start ignored, call state is %s', self.state.value)
                return False
            epoch = self._epoch
            try:
                stream = await self.media.acquire_local_media(self.config.constraints)
            except MediaAcquisitionFailure as e:
                logger.warning('could not acquire local media: %s', e)
                if self._on_error:
                    self._on_error(e)
                return False
            if epoch != self._epoch:
                logger.info('hung up while acquiring media')
                stream.stop()
                return False
            self.local_stream = stream
            self.preview = self.media.render_local(stream)
            self._set_state(CallState.READY)
            self.signaling.send(ready_message())
            return True

    async def hangup(self):
        if self.state is CallState.IDLE:
            self._epoch += 1
            logger.debug('hangup while idle')
            return
        await self._teardown()
        self.signaling.send(bye_message())

    def toggle_mute(self) -> bool:
        """Flip whether the local preview is audible. The outbound tracks are untouched."""
        if self.preview is None:
            logger.debug('mute ignored, no local media')
            return False
        self.preview.audible = not self.preview.audible
        logger.debug('local preview audible: %s', self.preview.audible)
        return self.preview.audible

    # ============ INBOUND MESSAGES ============

    async def handle_message(self, raw):
        try:
            msg = parse_message(raw)
        except SignalingError as e:
            logger.warning('dropping malformed message: %s', e)
            return
        handler = {
            READY: self._on_ready,
            OFFER: self._on_offer,
            ANSWER: self._on_answer,
            CANDIDATE: self._on_candidate,
            BYE: self._on_bye,
        }[msg['type']]
        async with self._lock:
            if self.local_stream is None:
                logger.info('not ready yet, dropping %s', msg['type'])
                return
            try:
                await handler(msg)
            except ProtocolViolation as e:
                logger.warning('protocol violation, dropping %s: %s', msg['type'], e)

    async def _on_ready(self, msg):
        if self.pc is not None:
            logger.info('already in call, ignoring ready')
            return
        await self._make_call()

    async def _make_call(self):
        pc = self._create_peer_connection()
        try:
            self._add_local_tracks(pc)
            offer = await pc.createOffer()
            if pc is not self.pc:
                return
            self.signaling.send(offer_message(offer.sdp))
            await pc.setLocalDescription(offer)
            self._check_active(pc)
        except NegotiationFailure as e:
            await self._fail(pc, e)

    async def _on_offer(self, msg):
        if self.pc is not None:
            if not self._offers_collided(self.pc):
                raise ProtocolViolation('existing peer connection')
            # both sides sent an offer; the larger sdp stays offerer, the other answers
            if self.pc.localDescription.sdp >= msg['sdp']:
                logger.info('offer collision, keeping our own offer')
                self._ignore_stale_candidates = True
                return
            logger.info('offer collision, answering the remote offer')
            await self._abandon_offer()
        pc = self._create_peer_connection()
        try:
            self._add_local_tracks(pc)
            await pc.setRemoteDescription(RTCSessionDescription(sdp=msg['sdp'], type=OFFER))
            if pc is not self.pc:
                return
            answer = await pc.createAnswer()
            if pc is not self.pc:
                return
            self.signaling.send(answer_message(answer.sdp))
            await pc.setLocalDescription(answer)
            self._check_active(pc)
        except NegotiationFailure as e:
            await self._fail(pc, e)

    async def _on_answer(self, msg):
        pc = self.pc
        if pc is None:
            raise ProtocolViolation('no peer connection')
        if pc.signalingState != 'have-local-offer':
            raise ProtocolViolation(f'not waiting for an answer ({pc.signalingState})')
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=msg['sdp'], type=ANSWER))
            if pc is not self.pc:
                return
            self._ignore_stale_candidates = False
            self._check_active(pc)
        except NegotiationFailure as e:
            await self._fail(pc, e)

    async def _on_candidate(self, msg):
        pc = self.pc
        if pc is None:
            # candidate raced ahead of the peer connection; not buffered
            logger.info('no peer connection, dropping candidate')
            return
        if self._ignore_stale_candidates and pc.remoteDescription is None:
            logger.debug('dropping candidate for the abandoned remote offer')
            return
        candidate = Candidate.from_message(msg)
        try:
            await pc.addIceCandidate(candidate)
        except NegotiationFailure as e:
            logger.warning('remote candidate rejected: %s', e)

    async def _on_bye(self, msg):
        if self.pc is None:
            logger.debug('bye without peer connection')
            return
        await self._teardown()

    # ============ PEER CONNECTION ============

    def _create_peer_connection(self):
        pc = self._peer_factory(self.config)

        @pc.on('icecandidate')
        def on_candidate(candidate):
            if pc is self.pc:
                self.signaling.send(candidate.to_message())

        @pc.on('track')
        def on_track(track, stream):
            if pc is not self.pc:
                return
            if self.remote_stream is None:
                self.remote_stream = stream
                self.media.render_remote(stream)
            self._set_state(CallState.ACTIVE)

        @pc.on('connectionstatechange')
        def on_connection_state(state):
            if pc is self.pc and state in LOST_STATES:
                logger.warning('peer connection %s, cleaning up', state)
                self._lost = asyncio.ensure_future(self._teardown())
                self._lost.add_done_callback(self._log_lost_teardown)

        self.pc = pc
        self._set_state(CallState.NEGOTIATING)
        return pc

    def _offers_collided(self, pc) -> bool:
        return (pc.signalingState == 'have-local-offer' and pc.remoteDescription is None
                and pc.localDescription is not None)

    async def _abandon_offer(self):
        """Drop our unanswered offer but keep local media for answering."""
        pc, self.pc = self.pc, None
        self._ignore_stale_candidates = False
        await pc.close()

    def _add_local_tracks(self, pc):
        for track in self.local_stream.tracks:
            pc.addTrack(track)

    async def _fail(self, pc, error):
        if pc is not self.pc:
            return
        logger.error('negotiation failed: %s', error)
        await self._teardown()

    def _log_lost_teardown(self, task):
        if not task.cancelled() and task.exception() is not None:
            logger.error('cleanup after transport loss failed: %r', task.exception())

    async def _teardown(self):
        """Drop the call. Handles are cleared before the first await."""
        pc, stream = self.pc, self.local_stream
        had_remote = self.remote_stream is not None
        self.pc = self.local_stream = self.remote_stream = self.preview = None
        self._ignore_stale_candidates = False
        self._epoch += 1
        self._set_state(CallState.IDLE)

        if pc is not None:
            await pc.close()
        if stream is not None:
            stream.stop()
        if had_remote:
            await self.media.stop_rendering()


async def run_session(session: CallSession, channel):
    """Feed relay messages into the session one at a time until the relay goes away."""
    try:
        async for raw in channel:
            await session.handle_message(raw)
    except ConnectionClosed as e:
        logger.warning('relay connection lost: %s', e)
