"""Local capture and remote rendering for headless participants.

Without a configured source the participant sends aiortc's synthetic tracks
(silence and a flat video frame), which is enough to negotiate and exchange
media with a browser peer. A source is anything ffmpeg can open: a capture
device (``/dev/video0`` with format ``v4l2``) or a media file.
"""
import asyncio, logging, uuid
from dataclasses import dataclass
from typing import Optional

from aiortc import AudioStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

logger = logging.getLogger(__name__)


class MediaAcquisitionFailure(Exception):
    """Local audio/video could not be acquired."""

class PermissionDenied(MediaAcquisitionFailure):
    pass

class DeviceUnavailable(MediaAcquisitionFailure):
    pass


@dataclass(frozen=True)
class MediaConstraints:
    video: bool = True
    audio: bool = True
    echo_cancellation: bool = True


class MediaStream:
    """A group of tracks that are started, rendered and stopped together."""

    def __init__(self, tracks=()):
        self.id = str(uuid.uuid4())
        self.tracks = list(tracks)

    def add_track(self, track):
        if track not in self.tracks:
            self.tracks.append(track)

    def kinds(self) -> list:
        return [t.kind for t in self.tracks]

    def stop(self):
        for track in self.tracks:
            track.stop()


@dataclass
class LocalPreview:
    """Local monitor of the captured stream. Muting it never touches the sent tracks."""
    stream: MediaStream
    audible: bool = False


class MediaDevices:
    def __init__(self, source: Optional[str] = None, source_format: Optional[str] = None,
                 source_options: Optional[dict] = None, record_to: Optional[str] = None):
        self.source = source
        self.source_format = source_format
        self.source_options = source_options or {}
        self.record_to = record_to
        self._player = None
        self._sink = None
        self._sink_started = None

    async def acquire_local_media(self, constraints: MediaConstraints = MediaConstraints()) -> MediaStream:
        if not (constraints.audio or constraints.video):
            raise DeviceUnavailable('neither audio nor video requested')

        if self.source is None:
            tracks = []
            if constraints.audio:
                tracks.append(AudioStreamTrack())
            if constraints.video:
                tracks.append(VideoStreamTrack())
            return MediaStream(tracks)

        # ffmpeg has no echo canceller here; the constraint is accepted and ignored
        try:
            self._player = MediaPlayer(self.source, format=self.source_format,
                                       options=self.source_options)
        except PermissionError as e:
            raise PermissionDenied(f'{self.source}: {e}') from e
        except OSError as e:
            raise DeviceUnavailable(f'{self.source}: {e}') from e

        tracks = []
        if constraints.audio and self._player.audio:
            tracks.append(self._player.audio)
        if constraints.video and self._player.video:
            tracks.append(self._player.video)
        if not tracks:
            raise DeviceUnavailable(f'{self.source}: no matching audio/video')
        return MediaStream(tracks)

    def render_local(self, stream: MediaStream) -> LocalPreview:
        logger.debug('local preview: %s', ', '.join(stream.kinds()))
        return LocalPreview(stream)

    def render_remote(self, stream: MediaStream):
        """Attach the remote stream to a recorder (or a blackhole)."""
        self._sink = MediaRecorder(self.record_to) if self.record_to else MediaBlackhole()
        self._sink_started = asyncio.ensure_future(self._start_sink(self._sink, stream))

    async def _start_sink(self, sink, stream):
        # tracks of one remote stream arrive together, pick up all of them
        for track in stream.tracks:
            sink.addTrack(track)
        await sink.start()
        logger.info('rendering remote %s', ', '.join(stream.kinds()))

    async def stop_rendering(self):
        sink, started = self._sink, self._sink_started
        self._sink = self._sink_started = None
        if sink is None:
            return
        await started
        await sink.stop()
