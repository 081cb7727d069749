"""aiortc peer connection as the call engine sees it.

aiortc gathers all local candidates inside ``setLocalDescription`` and has no
per-candidate event. This wrapper turns the gathered set into trickle events
(``icecandidate`` for each, then the end marker) so the engine can speak the
same trickle protocol a browser peer does. Remote tracks are grouped into one
remote stream, and aiortc's errors surface as ``NegotiationFailure``.
"""
import logging

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from pyee.asyncio import AsyncIOEventEmitter

from call_media import MediaStream
from call_signal import Candidate

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = ('stun:stun1.l.google.com:19302', 'stun:stun2.l.google.com:19302')


class NegotiationFailure(Exception):
    """The peer connection rejected a description, offer/answer or candidate."""


def rtc_configuration(ice_servers=DEFAULT_ICE_SERVERS) -> RTCConfiguration:
    ice_servers = list(ice_servers)
    return RTCConfiguration(iceServers=[RTCIceServer(urls=ice_servers)] if ice_servers else [])


def parse_candidate(candidate: Candidate):
    """Wire candidate -> aiortc RTCIceCandidate."""
    sdp = candidate.candidate
    if not sdp:
        raise NegotiationFailure('candidate without a candidate string')
    if sdp.startswith('candidate:'):
        sdp = sdp[len('candidate:'):]
    try:
        ice = candidate_from_sdp(sdp)
    except (ValueError, IndexError) as e:
        raise NegotiationFailure(f'bad candidate {candidate.candidate!r}: {e}') from e
    ice.sdpMid = candidate.sdpMid
    ice.sdpMLineIndex = candidate.sdpMLineIndex
    return ice


class AiortcPeerConnection(AsyncIOEventEmitter):
    """Events: ``icecandidate(Candidate)``, ``track(track, stream)``,
    ``connectionstatechange(state)``."""

    def __init__(self, ice_servers=DEFAULT_ICE_SERVERS, candidate_pool_size: int = 0):
        super().__init__()
        # aiortc gathers on setLocalDescription only, the pool size is informational
        self.candidate_pool_size = candidate_pool_size
        self._pc = RTCPeerConnection(rtc_configuration(ice_servers))
        self._remote_stream = None
        self._candidates_sent = False
        self._pc.on('track', self._on_track)
        self._pc.on('connectionstatechange', self._on_connection_state)

    @property
    def localDescription(self):
        return self._pc.localDescription

    @property
    def remoteDescription(self):
        return self._pc.remoteDescription

    @property
    def signalingState(self) -> str:
        return self._pc.signalingState

    @property
    def connectionState(self) -> str:
        return self._pc.connectionState

    async def _call(self, coro):
        try:
            return await coro
        except (InvalidAccessError, InvalidStateError, ValueError) as e:
            raise NegotiationFailure(str(e)) from e

    def addTrack(self, track):
        try:
            return self._pc.addTrack(track)
        except (InvalidAccessError, InvalidStateError) as e:
            raise NegotiationFailure(str(e)) from e

    async def createOffer(self):
        return await self._call(self._pc.createOffer())

    async def createAnswer(self):
        return await self._call(self._pc.createAnswer())

    async def setRemoteDescription(self, description):
        await self._call(self._pc.setRemoteDescription(description))

    async def setLocalDescription(self, description):
        await self._call(self._pc.setLocalDescription(description))
        if not self._candidates_sent:
            self._candidates_sent = True
            self._emit_local_candidates()

    async def addIceCandidate(self, candidate: Candidate):
        """Add a remote candidate. No candidate string means end of candidates,
        for the transport named by mid / m-line index or for all of them."""
        if not candidate.candidate:
            for _, _, transport in self._ice_transports(candidate.sdpMid, candidate.sdpMLineIndex):
                await self._call(transport.addRemoteCandidate(None))
            return
        await self._call(self._pc.addIceCandidate(parse_candidate(candidate)))

    async def close(self):
        await self._pc.close()

    def _ice_transports(self, mid=None, index=None):
        """(m-line index, mid, RTCIceTransport) for each distinct ICE transport,
        optionally only the one carrying the given mid (or else m-line index)."""
        seen = set()
        for i, transceiver in enumerate(self._pc.getTransceivers()):
            if mid is not None and transceiver.mid != mid:
                continue
            if mid is None and index is not None and i != index:
                continue
            dtls = transceiver.sender.transport
            if dtls is None or id(dtls.transport) in seen:
                continue
            seen.add(id(dtls.transport))
            yield i, transceiver.mid, dtls.transport

    def _emit_local_candidates(self):
        count = 0
        for index, mid, transport in self._ice_transports():
            for c in transport.iceGatherer.getLocalCandidates():
                count += 1
                self.emit('icecandidate', Candidate(
                    candidate='candidate:' + candidate_to_sdp(c),
                    sdpMid=mid,
                    sdpMLineIndex=index,
                ))
        logger.debug('gathered %d local candidates', count)
        self.emit('icecandidate', Candidate())

    def _on_track(self, track):
        if self._remote_stream is None:
            self._remote_stream = MediaStream()
        self._remote_stream.add_track(track)
        self.emit('track', track, self._remote_stream)

    def _on_connection_state(self):
        self.emit('connectionstatechange', self._pc.connectionState)
