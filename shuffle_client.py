#!/usr/bin/env python3
"""Headless Shuffle Chat client: no browser needed.

Speaks the same JSON protocol as the web client, minus the media.
Useful for scripted demos, load checks and tests.

Usage:
    client = ShuffleClient(name="bot")
    await client.connect("ws://localhost:3000")
    await client.join("lobby")

    msg = await client.wait_for("shuffle")  # blocks until paired
    if not client.polite:
        await client.signal(client.partner_id, {"sdp": {...}})

    msg = await client.receive()  # anything else the server sends
    await client.close()
"""
import argparse, asyncio, json, logging
from dataclasses import dataclass
from typing import Any, Optional
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosedError

logger = logging.getLogger(__name__)


@dataclass
class Message:
    type: str  # 'participantListUpdate', 'shuffle', 'shuffle-countdown', 'webrtc-signal'
    payload: Any = None


class ShuffleClient:
    def __init__(self, name: str = 'shuffle-agent'):
        self.name = name
        self.ws = None
        self.participants: list = []
        self.partner_id: Optional[str] = None
        self.partner_name: Optional[str] = None
        self.polite: Optional[bool] = None
        self._msg_queue: asyncio.Queue = asyncio.Queue()
        self._reader: Optional[asyncio.Task] = None

    async def _send_raw(self, msg: dict):
        await self.ws.send(json.dumps(msg))

    async def _read(self):
        try:
            async for raw in self.ws:
                await self._handle_raw(raw)
        except ConnectionClosedError as e:
            logger.info('connection lost: %s', e)

    async def _handle_raw(self, raw):
        try:
            data = json.loads(raw)
            msg = Message(type=data.get('type', ''), payload=data.get('payload'))
        except (ValueError, AttributeError) as e:
            logger.warning('bad frame from server: %s', e)
            return

        if msg.type == 'participantListUpdate':
            self.participants = list(msg.payload or [])
        elif msg.type == 'shuffle':
            self.partner_id = msg.payload['partnerId']
            self.partner_name = msg.payload['partnerName']
            self.polite = msg.payload['polite']
        await self._msg_queue.put(msg)

    # ============ PUBLIC API ============

    async def connect(self, url: str):
        self.ws = await connect(url)
        self._reader = asyncio.create_task(self._read())

    async def join(self, session_code: str):
        """Join (or create) the session with this code."""
        await self._send_raw({'type': 'joinSession',
                              'payload': {'sessionCode': session_code, 'participantName': self.name}})

    async def signal(self, to: str, signal):
        """Send an opaque signaling payload to another participant."""
        await self._send_raw({'type': 'webrtc-signal', 'payload': {'to': to, 'signal': signal}})

    async def receive(self, timeout: float = None) -> Message:
        """Receive next message. Blocks until one arrives."""
        if timeout is not None:
            return await asyncio.wait_for(self._msg_queue.get(), timeout)
        return await self._msg_queue.get()

    async def wait_for(self, msg_type: str, timeout: float = 5.0) -> Message:
        """Skip messages until one of msg_type arrives."""
        async def scan():
            while True:
                msg = await self._msg_queue.get()
                if msg.type == msg_type:
                    return msg
        return await asyncio.wait_for(scan(), timeout)

    def has_messages(self) -> bool:
        return not self._msg_queue.empty()

    async def close(self):
        if self.ws:
            await self.ws.close()
        if self._reader:
            await self._reader


async def watch(url, session_code, name):
    client = ShuffleClient(name=name)
    await client.connect(url)
    await client.join(session_code)
    print(f'Joined session {session_code} as {name}. Ctrl+C to quit.')
    try:
        while True:
            msg = await client.receive()
            print(f'[{msg.type}] {json.dumps(msg.payload)}')
    finally:
        await client.close()


def main():
    p = argparse.ArgumentParser(description='Join a Shuffle Chat session and print what arrives')
    p.add_argument('--url', default='ws://localhost:3000')
    p.add_argument('--session', default='lobby')
    p.add_argument('--name', default='shuffle-agent')
    args = p.parse_args()
    try:
        asyncio.run(watch(args.url, args.session, args.name))
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()
