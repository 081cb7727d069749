"""call_bot command line."""
from call_bot import main, parse_args
from call_rtc import DEFAULT_ICE_SERVERS


def test_defaults(monkeypatch):
    monkeypatch.delenv('CALL_ICE_SERVERS', raising=False)
    monkeypatch.delenv('CALL_RELAY_URL', raising=False)
    args = parse_args(['--join'])
    assert args.join and not args.demo
    assert args.url == 'ws://localhost:3000'
    assert args.room == 'default'
    assert args.ice_servers == list(DEFAULT_ICE_SERVERS)
    assert args.ice_pool_size == 10


def test_environment_and_flags(monkeypatch):
    monkeypatch.setenv('CALL_ICE_SERVERS', 'stun:a.example:3478,turn:b.example:3478')
    monkeypatch.setenv('CALL_RELAY_URL', 'ws://relay.example:3000')
    args = parse_args(['--join', '--room', 'r1'])
    assert args.url == 'ws://relay.example:3000'
    assert args.room == 'r1'
    assert args.ice_servers == ['stun:a.example:3478', 'turn:b.example:3478']

    args = parse_args(['--ice-server', 'stun:c.example:3478'])
    assert args.ice_servers == ['stun:c.example:3478']


def test_no_mode_is_usage_error(capsys):
    assert main([]) == 2
    assert 'Usage' in capsys.readouterr().out
