"""Shared pytest configuration and fixtures."""

import itertools
import os

# Set environment variables before any imports
os.environ["COURIER_DB"] = ":memory:"
# Ensure no external verifier or push gateway is used in tests
for var in ("COURIER_CONFIG", "COURIER_AUTH_URL", "COURIER_FCM_PROJECT", "COURIER_FCM_TOKEN"):
    os.environ.pop(var, None)


import pytest

from courier.auth import canonical_identity
from courier.auth_provider import (
    EXPIRED,
    IdentityVerifier,
    UnknownIdentity,
    VerificationError,
    VerifiedIdentity,
)
from courier.metrics import metrics
from courier.push import GatewayResult, PushGateway
from courier.service import Courier, reset_courier, set_courier
from courier.store import SqliteStore

_connection_ids = itertools.count(1)


class FakeVerifier(IdentityVerifier):
    """Credential "token-<name>" verifies as <name>; "expired-..." is expired."""

    def __init__(self):
        self.unknown: set[str] = set()
        self.calls: list[str] = []

    async def verify(self, credential: str) -> VerifiedIdentity:
        self.calls.append(credential)
        if credential.startswith("expired-"):
            raise VerificationError(EXPIRED)
        if not credential.startswith("token-"):
            raise VerificationError()
        name = credential[len("token-") :]
        if name in self.unknown:
            raise UnknownIdentity(name)
        return VerifiedIdentity(canonical_identity(name), name.capitalize())


class FakeGateway(PushGateway):
    """Records calls. Tokens listed in ``errors`` fail with that code."""

    def __init__(self):
        self.calls: list[dict] = []
        self.errors: dict[str, str] = {}
        self.raise_on_send = False

    async def send(self, tokens, title, body, data):
        self.calls.append({"tokens": list(tokens), "title": title, "body": body, "data": data})
        if self.raise_on_send:
            raise RuntimeError("gateway exploded")
        return [
            GatewayResult(token, token not in self.errors, self.errors.get(token))
            for token in tokens
        ]

    @property
    def sent_tokens(self) -> list[str]:
        return [t for call in self.calls for t in call["tokens"]]


class FakeConnection:
    """In-memory stand-in for a WebSocket connection."""

    def __init__(self, connection_id: str | None = None):
        self.id = connection_id or f"conn-{next(_connection_ids)}"
        self.received: list[dict] = []

    async def send(self, payload: dict) -> None:
        self.received.append(payload)

    def events(self, kind: str | None = None) -> list[dict]:
        return [
            p for p in self.received if "event" in p and (kind is None or p["event"] == kind)
        ]


@pytest.fixture(autouse=True)
def reset_state():
    """Reset metrics and the global courier between tests."""
    metrics.reset()
    reset_courier()
    yield
    reset_courier()


@pytest.fixture
def store():
    store = SqliteStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def courier(store, verifier, gateway):
    courier = Courier(store, verifier, gateway)
    set_courier(courier)
    return courier


@pytest.fixture
def connect(courier):
    """Factory: register, authenticate and join rooms for a fake connection."""

    async def _connect(identity: str, *conversation_ids: str) -> FakeConnection:
        connection = FakeConnection()
        courier.registry.register(connection)
        await courier.registry.authenticate(connection.id, f"token-{identity}")
        for conversation_id in conversation_ids:
            await courier.registry.join_room(connection.id, conversation_id)
        await courier.registry.flush()
        connection.received.clear()
        return connection

    return _connect


@pytest.fixture
def conversation(courier):
    """Factory: open a conversation between two identities."""

    async def _open(first: str = "alice", second: str = "bob") -> dict:
        conversation, _ = await courier.directory.open_conversation(first, second)
        return conversation

    return _open
