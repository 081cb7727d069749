"""Local capture and remote rendering."""
import asyncio

import pytest

from call_media import DeviceUnavailable, MediaConstraints, MediaDevices, MediaStream


def test_synthetic_tracks():
    async def run():
        devices = MediaDevices()
        stream = await devices.acquire_local_media(MediaConstraints())
        assert stream.kinds() == ['audio', 'video']
        audio_only = await devices.acquire_local_media(MediaConstraints(video=False))
        assert audio_only.kinds() == ['audio']
        assert stream.id != audio_only.id

        preview = devices.render_local(stream)
        assert preview.stream is stream
        assert not preview.audible

        stream.stop()
        audio_only.stop()
        assert all(t.readyState == 'ended' for t in stream.tracks)
    asyncio.run(run())


def test_nothing_requested():
    async def run():
        with pytest.raises(DeviceUnavailable):
            await MediaDevices().acquire_local_media(MediaConstraints(audio=False, video=False))
    asyncio.run(run())


def test_missing_source(tmp_path):
    async def run():
        devices = MediaDevices(source=str(tmp_path / 'no-such-file.webm'))
        with pytest.raises(DeviceUnavailable):
            await devices.acquire_local_media()
    asyncio.run(run())


def test_render_remote_into_blackhole():
    async def run():
        devices = MediaDevices()
        remote = await devices.acquire_local_media()
        devices.render_remote(remote)
        await devices.stop_rendering()
        await devices.stop_rendering()  # already stopped
        remote.stop()
    asyncio.run(run())


def test_stream_tracks_are_unique():
    stream = MediaStream()
    marker = object()
    stream.add_track(marker)
    stream.add_track(marker)
    assert stream.tracks == [marker]
