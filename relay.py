#!/usr/bin/env python3
"""WebSocket signaling server for Shuffle Chat.

Each connection gets a fresh participant id. Clients join a session by code,
get paired into a rotating cycle, and trade WebRTC signals through here.
Media never passes through the server."""

import argparse, asyncio, functools, json, logging, os, ssl, uuid
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosedError
from sessions import (SessionManager, MalformedMessage, SHUFFLE_INTERVAL,
                      COUNTDOWN_DURATION, SHUFFLE_DELAY)

logger = logging.getLogger(__name__)


def dispatch(manager: SessionManager, ws, participant_id: str, raw):
    """Apply one inbound frame. Bad input is logged and dropped."""
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError):
        logger.warning('Unparseable message from %s', participant_id)
        return
    if not isinstance(data, dict) or not isinstance(data.get('payload', {}), dict):
        logger.warning('Malformed message from %s', participant_id)
        return

    msg_type = data.get('type')
    payload = data.get('payload') or {}
    if msg_type == 'joinSession':
        try:
            manager.join(payload.get('sessionCode'), payload.get('participantName'),
                         ws, participant_id=participant_id)
        except MalformedMessage as e:
            logger.warning('Rejected join from %s: %s', participant_id, e)
    elif msg_type == 'webrtc-signal':
        manager.relay(participant_id, payload.get('to'), payload.get('signal'))
    else:
        logger.debug('Ignoring message type %r from %s', msg_type, participant_id)


async def handle(ws, manager: SessionManager):
    """Handle one WebSocket connection."""
    participant_id = str(uuid.uuid4())
    logger.info('New participant connected with ID: %s', participant_id)
    try:
        async for msg in ws:
            dispatch(manager, ws, participant_id, msg)
    except ConnectionClosedError as e:
        logger.info('Connection %s dropped: %s', participant_id, e)
    finally:
        manager.leave(participant_id)


def ssl_context(cert: str, key: str) -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(cert, key)
    return ctx


def parse_args(argv=None):
    env = os.environ
    p = argparse.ArgumentParser(description='Shuffle Chat signaling server')
    p.add_argument('--host', default=env.get('HOST', '0.0.0.0'))
    p.add_argument('--port', type=int, default=int(env.get('PORT', 3000)))
    p.add_argument('--https', action='store_true', default=bool(env.get('USE_HTTPS')),
                   help='Serve wss:// using --cert and --key')
    p.add_argument('--cert', default='certs/cert.pem')
    p.add_argument('--key', default='certs/key.pem')
    p.add_argument('--interval', type=float, default=float(env.get('SHUFFLE_INTERVAL', SHUFFLE_INTERVAL)),
                   help='Seconds between recurring shuffles')
    p.add_argument('--countdown', type=int, default=int(env.get('SHUFFLE_COUNTDOWN', COUNTDOWN_DURATION)),
                   help='Countdown duration announced to clients')
    p.add_argument('--delay', type=float, default=float(env.get('SHUFFLE_DELAY', SHUFFLE_DELAY)),
                   help='Seconds between the countdown and the shuffle')
    p.add_argument('--log-level', default=env.get('LOG_LEVEL', 'INFO'))
    return p.parse_args(argv)


async def run(args):
    manager = SessionManager(shuffle_interval=args.interval,
                             countdown_duration=args.countdown,
                             shuffle_delay=args.delay)
    tls = ssl_context(args.cert, args.key) if args.https else None
    handler = functools.partial(handle, manager=manager)
    async with serve(handler, args.host, args.port, ssl=tls):
        scheme = 'wss' if tls else 'ws'
        logger.info('Shuffle signal server on %s://%s:%s', scheme, args.host, args.port)
        await asyncio.Future()  # run forever


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(),
                        format='%(asctime)s - %(levelname)s - %(message)s')
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()
