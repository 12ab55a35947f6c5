"""Session registry: live connections, their identities and joined rooms.

Each registered connection gets a Session with an unbounded outbound queue
drained by a single pump task, so everything sent to one connection goes
out in the order it was enqueued. Callers enqueue synchronously with
``broadcast`` / ``send``; nothing here awaits the network on their behalf.

State is sharded:
    - rooms: conversation id -> connection ids, one lock per room
    - identities: identity -> connection ids, one lock per identity

Locks guard only short synchronous sections and are never held across a
verifier, store or presence call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from .auth_provider import IdentityVerifier, UnknownIdentity, VerificationError, VerifiedIdentity
from .conversations import ConversationDirectory
from .errors import AccessDenied, AuthenticationFailed, NotFound, ValidationFailed
from .locks import KeyedLocks
from .metrics import metrics

if TYPE_CHECKING:
    from .presence import PresenceBroadcaster

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """What the registry needs from a transport connection."""

    id: str

    async def send(self, payload: dict[str, Any]) -> None: ...


@dataclass
class Session:
    """A registered connection and everything the registry knows about it."""

    connection: Connection
    identity: str | None = None
    display_name: str | None = None
    rooms: set[str] = field(default_factory=set)
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    pump: asyncio.Task | None = None
    closed: bool = False

    @property
    def id(self) -> str:
        return self.connection.id

    @property
    def authenticated(self) -> bool:
        return self.identity is not None


class SessionRegistry:
    """Tracks live sessions and fans events out to them."""

    def __init__(
        self,
        verifier: IdentityVerifier,
        directory: ConversationDirectory,
        presence: PresenceBroadcaster | None = None,
    ) -> None:
        self.verifier = verifier
        self.directory = directory
        self.presence = presence
        self._sessions: dict[str, Session] = {}
        self._rooms: dict[str, set[str]] = {}
        self._identities: dict[str, set[str]] = {}
        self._room_locks = KeyedLocks()
        self._identity_locks = KeyedLocks()

    # --- Lifecycle ---

    def register(self, connection: Connection) -> Session:
        """Record an unauthenticated connection and start its outbound pump."""
        existing = self._sessions.get(connection.id)
        if existing is not None:
            return existing
        session = Session(connection=connection)
        session.pump = asyncio.create_task(self._pump(session))
        self._sessions[connection.id] = session
        return session

    async def authenticate(self, connection_id: str, credential: str | None) -> VerifiedIdentity:
        """Verify a credential and bind the resulting identity to a connection.

        Raises:
            AuthenticationFailed: reason no_credential, invalid_credential
                or identity_not_found
            ValidationFailed: connection already bound to another identity
            ServiceUnavailable: the verifier could not be reached
        """
        session = self._require_session(connection_id)
        if not isinstance(credential, str) or not credential.strip():
            raise AuthenticationFailed("no_credential")

        try:
            verified = await self.verifier.verify(credential.strip())
        except VerificationError as e:
            logger.info(f"Rejected credential on {connection_id}: {e.reason}")
            raise AuthenticationFailed("invalid_credential") from e
        except UnknownIdentity as e:
            raise AuthenticationFailed("identity_not_found") from e

        if session.closed:
            raise AuthenticationFailed("invalid_credential", "Connection closed")
        if session.identity is not None:
            if session.identity != verified.identity:
                raise ValidationFailed("Connection is already authenticated")
            return verified

        session.identity = verified.identity
        session.display_name = verified.display_name
        with self._identity_locks.hold(verified.identity):
            connections = self._identities.setdefault(verified.identity, set())
            connections.add(connection_id)
            first = len(connections) == 1

        logger.info(f"Connection {connection_id} authenticated as {verified.identity}")
        if first and self.presence is not None:
            await self.presence.announce(verified.identity, True)
        return verified

    async def disconnect(self, connection_id: str) -> None:
        """Tear down a connection. Safe to call more than once."""
        session = self._sessions.pop(connection_id, None)
        if session is None:
            return
        session.closed = True
        if session.pump is not None:
            session.pump.cancel()

        for conversation_id in list(session.rooms):
            self._remove_from_room(conversation_id, connection_id)
        session.rooms.clear()

        last = False
        if session.identity is not None:
            with self._identity_locks.hold(session.identity):
                connections = self._identities.get(session.identity)
                if connections is not None:
                    connections.discard(connection_id)
                    if not connections:
                        del self._identities[session.identity]
                        last = True

        logger.info(f"Connection {connection_id} disconnected")
        if last and self.presence is not None:
            await self.presence.announce(session.identity, False)

    # --- Rooms ---

    async def join_room(self, connection_id: str, conversation_id: str) -> None:
        """Subscribe an authenticated connection to a conversation's events.

        Raises:
            AccessDenied: unauthenticated, not a participant, or no such conversation
        """
        session = self._require_session(connection_id)
        if not session.authenticated:
            raise AccessDenied()
        try:
            await self.directory.require_member(conversation_id, session.identity)
        except (NotFound, AccessDenied) as e:
            raise AccessDenied() from e

        if session.closed:
            return
        with self._room_locks.hold(conversation_id):
            self._rooms.setdefault(conversation_id, set()).add(connection_id)
        session.rooms.add(conversation_id)

    def leave_room(self, connection_id: str, conversation_id: str) -> None:
        session = self._sessions.get(connection_id)
        if session is None:
            return
        session.rooms.discard(conversation_id)
        self._remove_from_room(conversation_id, connection_id)

    def _remove_from_room(self, conversation_id: str, connection_id: str) -> None:
        with self._room_locks.hold(conversation_id):
            members = self._rooms.get(conversation_id)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._rooms[conversation_id]

    def typing(self, connection_id: str, conversation_id: str, is_typing: bool) -> int:
        """Relay a typing indicator to the rest of a joined room."""
        session = self._require_session(connection_id)
        if not session.authenticated or conversation_id not in session.rooms:
            raise AccessDenied()
        event = {
            "event": "typing",
            "conversationId": conversation_id,
            "identity": session.identity,
            "displayName": session.display_name,
            "isTyping": bool(is_typing),
        }
        return len(self.broadcast(conversation_id, event, exclude=connection_id))

    # --- Fan-out ---

    def broadcast(
        self, conversation_id: str, event: dict[str, Any], exclude: str | None = None
    ) -> list[Session]:
        """Enqueue an event on every session joined to a room.

        Returns the sessions the event was enqueued on.
        """
        recipients = [s for s in self.room_sessions(conversation_id) if s.id != exclude]
        for session in recipients:
            session.outbox.put_nowait(event)
        if recipients:
            metrics.increment("fanout_events", len(recipients))
        return recipients

    def send(self, connection_id: str, payload: dict[str, Any]) -> bool:
        """Enqueue a payload for one connection. Returns False if it is gone."""
        session = self._sessions.get(connection_id)
        if session is None or session.closed:
            return False
        session.outbox.put_nowait(payload)
        return True

    async def flush(self) -> None:
        """Wait until every live outbox has been drained."""
        for session in list(self._sessions.values()):
            if not session.closed:
                await session.outbox.join()

    async def _pump(self, session: Session) -> None:
        while True:
            payload = await session.outbox.get()
            try:
                await session.connection.send(payload)
            except Exception:
                logger.warning(f"Failed to deliver to connection {session.id}", exc_info=True)
            finally:
                session.outbox.task_done()

    # --- Queries ---

    def get(self, connection_id: str) -> Session | None:
        return self._sessions.get(connection_id)

    def _require_session(self, connection_id: str) -> Session:
        session = self._sessions.get(connection_id)
        if session is None:
            raise NotFound("Unknown connection")
        return session

    def room_sessions(self, conversation_id: str) -> list[Session]:
        with self._room_locks.hold(conversation_id):
            connection_ids = list(self._rooms.get(conversation_id, ()))
        return [self._sessions[c] for c in connection_ids if c in self._sessions]

    def identity_sessions(self, identity: str) -> list[Session]:
        with self._identity_locks.hold(identity):
            connection_ids = list(self._identities.get(identity, ()))
        return [self._sessions[c] for c in connection_ids if c in self._sessions]

    def is_online(self, identity: str) -> bool:
        with self._identity_locks.hold(identity):
            return bool(self._identities.get(identity))

    def stats(self) -> dict[str, int]:
        return {
            "connected_identities": len(self._identities),
            "active_rooms": len(self._rooms),
            "total_sessions": len(self._sessions),
        }
