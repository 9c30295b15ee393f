"""Session state for the Shuffle Chat signaling server.

Tracks who is in which session, pairs participants into a rotating cycle,
and relays opaque WebRTC signals between them. Nothing here awaits: every
operation runs to completion on the event loop, and outbound messages are
queued without blocking.
"""
import asyncio, json, logging, random, uuid
from dataclasses import dataclass, field
from typing import Callable, Optional
from websockets.asyncio.server import broadcast

logger = logging.getLogger(__name__)

SHUFFLE_INTERVAL = 600  # seconds between recurring shuffles
COUNTDOWN_DURATION = 10  # seconds shown to clients before a shuffle
SHUFFLE_DELAY = 3  # seconds between the countdown and the shuffle


class MalformedMessage(ValueError):
    """Inbound payload is missing required fields."""


def send_json(connection, message: dict):
    """Queue a JSON message on one connection. Closed connections are skipped."""
    broadcast([connection], json.dumps(message))

# ============ REGISTRY ============

@dataclass
class Participant:
    id: str
    name: str
    connection: object  # owned by the connection layer


@dataclass
class Session:
    code: str
    participants: dict = field(default_factory=dict)  # id -> Participant
    links: dict = field(default_factory=dict)  # id -> partner id
    timer: Optional[asyncio.Task] = None

    def names(self) -> list:
        return [p.name for p in self.participants.values()]

# ============ SHUFFLE ENGINE ============

def pair_cycle(participant_ids, rng=random) -> dict:
    """Randomly order the ids and link each one to the next, wrapping around.

    Returns {from_id: to_id}. With fewer than two ids there is nobody to
    pair, so the result is empty.
    """
    order = list(participant_ids)
    if len(order) < 2:
        return {}
    rng.shuffle(order)
    return {pid: order[(i + 1) % len(order)] for i, pid in enumerate(order)}


def is_polite(participant_id: str, partner_id: str) -> bool:
    """The polite side waits for an offer; the other side sends it.

    Both ends compute this from the two ids alone, so for any pair exactly
    one of them ends up polite.
    """
    return participant_id > partner_id

# ============ SESSION MANAGER ============

class SessionManager:
    """Process-wide table of live sessions, keyed by session code."""

    def __init__(self, send: Callable = send_json, rng=random,
                 shuffle_interval: float = SHUFFLE_INTERVAL,
                 countdown_duration: int = COUNTDOWN_DURATION,
                 shuffle_delay: float = SHUFFLE_DELAY):
        self.send = send
        self.rng = rng
        self.shuffle_interval = shuffle_interval
        self.countdown_duration = countdown_duration
        self.shuffle_delay = shuffle_delay
        self.sessions: dict = {}  # code -> Session
        self._membership: dict = {}  # participant id -> session code

    def session_of(self, participant_id: str) -> Optional[Session]:
        code = self._membership.get(participant_id)
        return self.sessions.get(code) if code is not None else None

    def broadcast(self, session: Session, message: dict):
        for p in list(session.participants.values()):
            self.send(p.connection, message)

    def _broadcast_members(self, session: Session):
        self.broadcast(session, {'type': 'participantListUpdate', 'payload': session.names()})

    # ---- lifecycle ----

    def join(self, session_code, participant_name, connection, participant_id: str = None) -> str:
        """Register a participant, creating the session on first use."""
        if not isinstance(session_code, str) or not session_code:
            raise MalformedMessage('joinSession needs a non-empty sessionCode')
        if not isinstance(participant_name, str) or not participant_name:
            raise MalformedMessage('joinSession needs a non-empty participantName')

        participant_id = participant_id or str(uuid.uuid4())
        if participant_id in self._membership:
            # one session per participant; joining again moves them
            self.leave(participant_id)

        session = self.sessions.get(session_code)
        if session is None:
            session = self.sessions[session_code] = Session(session_code)
            logger.info('Session %s created', session_code)
        session.participants[participant_id] = Participant(participant_id, participant_name, connection)
        self._membership[participant_id] = session_code
        logger.info('Participant %s (%s) joined session %s', participant_name, participant_id, session_code)

        self._broadcast_members(session)
        if len(session.participants) >= 2:
            self.initiate_shuffle_cycle(session)
        return participant_id

    def leave(self, participant_id: str):
        """Drop a participant. Unknown ids are ignored."""
        code = self._membership.pop(participant_id, None)
        if code is None:
            return
        session = self.sessions[code]
        del session.participants[participant_id]
        logger.info('Participant %s left session %s', participant_id, code)

        if not session.participants:
            self._cancel_timer(session)
            del self.sessions[code]
            logger.info('Session %s closed.', code)
            return

        self._broadcast_members(session)
        if len(session.participants) > 1:
            self.initiate_shuffle_cycle(session)

    # ---- shuffling ----

    def shuffle(self, session: Session) -> dict:
        """Pair everyone in the session and tell each participant their partner."""
        links = pair_cycle(session.participants.keys(), self.rng)
        session.links = links

        assignments = {}
        for from_id, to_id in links.items():
            partner = session.participants[to_id]
            assignments[from_id] = {
                'partnerId': to_id,
                'partnerName': partner.name,
                'polite': is_polite(from_id, to_id),
            }
            logger.debug('Shuffling %s to %s', from_id, to_id)
            self.send(session.participants[from_id].connection,
                      {'type': 'shuffle', 'payload': assignments[from_id]})
        return assignments

    def initiate_shuffle_cycle(self, session: Session):
        """Shuffle now, then keep rotating while there are more than two people."""
        self._cancel_timer(session)
        self.shuffle(session)
        if len(session.participants) > 2:
            session.timer = asyncio.get_running_loop().create_task(self._rotate(session))

    async def _rotate(self, session: Session):
        while True:
            await asyncio.sleep(self.shuffle_interval)
            self.broadcast(session, {'type': 'shuffle-countdown',
                                     'payload': {'duration': self.countdown_duration}})
            await asyncio.sleep(self.shuffle_delay)
            self.shuffle(session)

    def _cancel_timer(self, session: Session):
        if session.timer is not None:
            session.timer.cancel()
            session.timer = None

    # ---- signaling ----

    def relay(self, sender_id: str, recipient_id, signal):
        """Forward a signal to a participant in the sender's session. Best effort."""
        session = self.session_of(sender_id)
        recipient = None
        if session is not None and isinstance(recipient_id, str):
            recipient = session.participants.get(recipient_id)
        if recipient is None:
            logger.debug('Dropping signal from %s to unknown participant %s', sender_id, recipient_id)
            return
        self.send(recipient.connection, {'type': 'webrtc-signal',
                                         'payload': {'from': sender_id, 'signal': signal}})
