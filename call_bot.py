#!/usr/bin/env python3
"""Headless call participant.

Modes:
  1. Relay and two headless participants in one process (demo/test):
     python3 call_bot.py --demo

  2. Join a room on a running relay and take part in a call with a browser:
     python3 call_bot.py --join --url ws://localhost:3000 --room demo
     python3 call_bot.py --join --source /dev/video0 --source-format v4l2 --record call.mp4
"""
import argparse, asyncio, logging, os, sys

from call_client import CallConfig, CallSession, CallState, run_session
from call_media import MediaDevices
from call_rtc import DEFAULT_ICE_SERVERS
from call_signal import SignalingChannel
from relay import Relay, serve_relay

logger = logging.getLogger('call_bot')


async def wait_for_state(session, state, tries=20, interval=0.5) -> bool:
    for _ in range(tries):
        if session.state is state:
            return True
        await asyncio.sleep(interval)
    return session.state is state


async def open_participant(url, room, config, media):
    channel = await SignalingChannel(url, room=room).connect()
    session = CallSession(channel, media, config,
                          on_error=lambda e: print(f'[call_bot] media error: {e}'))
    pump = asyncio.ensure_future(run_session(session, channel))
    return session, channel, pump


async def close_participant(session, channel, pump):
    if session.state is not CallState.IDLE:
        await session.hangup()
    await channel.close()
    pump.cancel()


async def demo():
    """Two headless participants call each other through an in-process relay."""
    relay = Relay(max_peers=2)
    async with serve_relay(relay, '127.0.0.1', 0) as server:
        port = server.sockets[0].getsockname()[1]
        url = f'ws://127.0.0.1:{port}'
        print(f'[demo] Relay on {url}')

        # loopback only, no STUN needed
        config = CallConfig(ice_servers=())
        alice = await open_participant(url, 'demo', config, MediaDevices())
        bob = await open_participant(url, 'demo', config, MediaDevices())

        await alice[0].start()
        print('[demo] alice ready')
        await bob[0].start()
        print('[demo] bob ready, alice should call')

        if not (await wait_for_state(alice[0], CallState.ACTIVE)
                and await wait_for_state(bob[0], CallState.ACTIVE)):
            print(f'[demo] FAILED: alice={alice[0].state.value} bob={bob[0].state.value}')
            await close_participant(*alice)
            await close_participant(*bob)
            return False
        print('[demo] Call active on both sides')

        await asyncio.sleep(2)
        await alice[0].hangup()
        print('[demo] alice hung up')
        ok = await wait_for_state(bob[0], CallState.IDLE)
        print(f'[demo] bob is {bob[0].state.value}')

        await close_participant(*alice)
        await close_participant(*bob)
        print('\n[demo] Done.')
        return ok


async def join_mode(args):
    """Join a room, start the call and stay in it until hangup, bye or --duration."""
    config = CallConfig(ice_servers=tuple(args.ice_servers),
                        ice_candidate_pool_size=args.ice_pool_size)
    media = MediaDevices(source=args.source, source_format=args.source_format,
                         record_to=args.record)
    session, channel, pump = await open_participant(args.url, args.room, config, media)

    if not await session.start():
        await close_participant(session, channel, pump)
        return False
    print(f'[call_bot] ready in room {args.room!r}, waiting for the other side...')

    try:
        elapsed = 0.0
        was_in_call = False
        while not pump.done():
            await asyncio.sleep(0.5)
            elapsed += 0.5
            if session.state is CallState.ACTIVE and not was_in_call:
                was_in_call = True
                print('[call_bot] call active')
            if was_in_call and session.state is CallState.IDLE:
                print('[call_bot] call ended')
                break
            if args.duration and elapsed >= args.duration:
                break
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        await close_participant(session, channel, pump)
    return True


def parse_args(argv=None):
    env_ice = [s for s in os.environ.get('CALL_ICE_SERVERS', '').split(',') if s]
    p = argparse.ArgumentParser()
    p.add_argument('--demo', action='store_true', help='Relay and two headless participants')
    p.add_argument('--join', action='store_true', help='Join a room on a running relay')
    p.add_argument('--url', default=os.environ.get('CALL_RELAY_URL', 'ws://localhost:3000'))
    p.add_argument('--room', default='default')
    p.add_argument('--ice-server', action='append', dest='ice_servers', default=None,
                   help='STUN/TURN URL (repeatable)')
    p.add_argument('--ice-pool-size', type=int, default=10)
    p.add_argument('--source', help='Capture device or media file (default: synthetic tracks)')
    p.add_argument('--source-format', help='ffmpeg input format, e.g. v4l2')
    p.add_argument('--record', help='Write remote media to this file')
    p.add_argument('--duration', type=float, default=0, help='Hang up after N seconds')
    p.add_argument('--log-level', default='WARNING')
    args = p.parse_args(argv)
    if args.ice_servers is None:
        args.ice_servers = env_ice or list(DEFAULT_ICE_SERVERS)
    return args


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(),
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    if args.demo:
        ok = asyncio.run(demo())
    elif args.join:
        ok = asyncio.run(join_mode(args))
    else:
        print('Usage: call_bot.py --demo | --join')
        print('  --demo: Relay and two headless participants (tests everything)')
        print('  --join: Join a room and call whoever else is in it')
        return 2
    return 0 if ok else 1


if __name__ == '__main__':
    sys.exit(main())
