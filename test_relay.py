"""End-to-end tests: headless clients against a live signaling server.

Each test starts the server on an ephemeral port and drives it with
ShuffleClient instances over real WebSocket connections.
"""
import asyncio, functools, json
import pytest, pytest_asyncio
from websockets.asyncio.server import serve
from relay import handle, dispatch, parse_args
from sessions import SessionManager
from shuffle_client import ShuffleClient


@pytest_asyncio.fixture
async def server():
    manager = SessionManager(shuffle_interval=0.3, countdown_duration=10, shuffle_delay=0.05)
    async with serve(functools.partial(handle, manager=manager), '127.0.0.1', 0) as srv:
        port = srv.sockets[0].getsockname()[1]
        yield f'ws://127.0.0.1:{port}', manager
        for session in manager.sessions.values():
            if session.timer is not None:
                session.timer.cancel()


async def joined(url, session_code, name):
    client = ShuffleClient(name=name)
    await client.connect(url)
    await client.join(session_code)
    await client.wait_for('participantListUpdate')
    return client


async def members(client, expected, timeout=2.0):
    """Wait until the client's latest participant list matches."""
    while True:
        msg = await client.wait_for('participantListUpdate', timeout)
        if msg.payload == expected:
            return msg


async def until(predicate, timeout=2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_pair_signal_then_third_joins(server):
    url, manager = server

    alice = await joined(url, 'X', 'alice')
    bob = await joined(url, 'X', 'bob')
    await members(alice, ['alice', 'bob'])
    assert bob.participants == ['alice', 'bob']

    a_pair = await alice.wait_for('shuffle')
    b_pair = await bob.wait_for('shuffle')
    session = manager.sessions['X']
    assert {a_pair.payload['partnerId'], b_pair.payload['partnerId']} == set(session.participants)
    assert a_pair.payload['partnerName'] == 'bob'
    assert b_pair.payload['partnerName'] == 'alice'
    assert alice.polite != bob.polite

    offer = {'sdp': {'type': 'offer', 'sdp': 'v=0\r\no=- 1 2 IN IP4 127.0.0.1\r\n'}}
    await alice.signal(alice.partner_id, offer)
    msg = await bob.wait_for('webrtc-signal')
    assert msg.payload == {'from': bob.partner_id, 'signal': offer}

    carol = await joined(url, 'X', 'carol')
    for client in (alice, bob):
        await members(client, ['alice', 'bob', 'carol'])
    for client in (alice, bob, carol):
        await client.wait_for('shuffle')

    links = manager.sessions['X'].links
    assert len(links) == 3
    assert all(a != b for a, b in links.items())
    assert set(links.values()) == set(links)

    for client in (alice, bob, carol):
        await client.close()


@pytest.mark.asyncio
async def test_recurring_shuffle_reaches_clients(server):
    url, manager = server
    clients = [await joined(url, 'R', name) for name in ('a', 'b', 'c')]
    for client in clients[:2]:
        await members(client, ['a', 'b', 'c'])
    for client in clients:
        await client.wait_for('shuffle')

    for client in clients:
        countdown = await client.wait_for('shuffle-countdown', timeout=2.0)
        assert countdown.payload == {'duration': 10}
        await client.wait_for('shuffle', timeout=2.0)

    for client in clients:
        await client.close()


@pytest.mark.asyncio
async def test_disconnect_updates_members_and_tears_down(server):
    url, manager = server
    alice = await joined(url, 'D', 'alice')
    bob = await joined(url, 'D', 'bob')
    carol = await joined(url, 'D', 'carol')
    await members(alice, ['alice', 'bob', 'carol'])
    await members(bob, ['alice', 'bob', 'carol'])

    await carol.close()
    await members(alice, ['alice', 'bob'])
    await members(bob, ['alice', 'bob'])
    await until(lambda: manager.sessions['D'].timer is None)

    await alice.close()
    await bob.close()
    await until(lambda: 'D' not in manager.sessions)


@pytest.mark.asyncio
async def test_bad_input_keeps_connection_open(server):
    url, manager = server
    client = ShuffleClient(name='mallory')
    await client.connect(url)

    await client.ws.send('{not json')
    await client.ws.send('[' * 200000)
    await client.ws.send(json.dumps(['joinSession']))
    await client.ws.send(json.dumps({'type': 'joinSession', 'payload': 'X'}))
    await client.ws.send(json.dumps({'type': 'joinSession', 'payload': {'sessionCode': ''}}))
    await client.ws.send(json.dumps({'type': 'teleport', 'payload': {}}))
    await client.signal('nobody', {'candidate': 'x'})
    assert manager.sessions == {}

    await client.join('B')
    await members(client, ['mallory'])
    assert not client.has_messages()
    await client.close()


@pytest.mark.asyncio
async def test_signal_to_other_session_is_dropped(server):
    url, manager = server
    alice = await joined(url, 'S1', 'alice')
    bob = await joined(url, 'S2', 'bob')

    [bob_id] = manager.sessions['S2'].participants
    await alice.signal(bob_id, {'candidate': 'x'})
    await asyncio.sleep(0.1)
    assert not bob.has_messages()

    await alice.close()
    await bob.close()


def test_dispatch_routes_join_and_signal():
    sent = []
    manager = SessionManager(send=lambda conn, msg: sent.append((conn, msg)))
    dispatch(manager, 'ws-a', 'a', json.dumps({'type': 'joinSession',
                                                'payload': {'sessionCode': 'X', 'participantName': 'alice'}}))
    dispatch(manager, 'ws-b', 'b', json.dumps({'type': 'joinSession',
                                                'payload': {'sessionCode': 'X', 'participantName': 'bob'}}))
    sent.clear()

    dispatch(manager, 'ws-a', 'a', json.dumps({'type': 'webrtc-signal',
                                                'payload': {'to': 'b', 'signal': {'candidate': 'c1'}}}))

    assert sent == [('ws-b', {'type': 'webrtc-signal', 'payload': {'from': 'a', 'signal': {'candidate': 'c1'}}})]


def test_parse_args_reads_environment(monkeypatch):
    monkeypatch.setenv('PORT', '4040')
    monkeypatch.setenv('USE_HTTPS', '1')
    monkeypatch.setenv('SHUFFLE_INTERVAL', '60')
    args = parse_args([])
    assert (args.port, args.https, args.interval) == (4040, True, 60.0)
    assert (args.countdown, args.delay) == (10, 3.0)
    assert isinstance(args.countdown, int)

    monkeypatch.delenv('USE_HTTPS')
    args = parse_args(['--port', '5050', '--delay', '1'])
    assert (args.port, args.https, args.delay) == (5050, False, 1.0)


@pytest.mark.asyncio
async def test_receive_with_zero_timeout_does_not_block():
    client = ShuffleClient(name='idle')
    with pytest.raises(asyncio.TimeoutError):
        await client.receive(timeout=0)
