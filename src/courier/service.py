"""Service container wiring the courier components together.

Usage:
    courier = Courier.from_settings(CourierSettings.load())
    set_courier(courier)

Tests build a Courier directly with an in-memory store and fake verifier
and gateway, then install it with set_courier().
"""

from __future__ import annotations

import logging

from .auth_provider import IdentityVerifier, load_verifier
from .config import CourierConfigError, CourierSettings
from .conversations import ConversationDirectory
from .coordinator import DeliveryCoordinator
from .locks import AsyncKeyedLocks
from .presence import PresenceBroadcaster
from .push import PushFallback, PushGateway, build_gateway
from .receipts import ReceiptTracker
from .sessions import SessionRegistry
from .store import SqliteStore, Store

logger = logging.getLogger(__name__)


class Courier:
    """All long-lived components of one courier instance."""

    def __init__(
        self,
        store: Store,
        verifier: IdentityVerifier,
        gateway: PushGateway,
        settings: CourierSettings | None = None,
    ) -> None:
        self.settings = settings or CourierSettings()
        self.store = store
        self.verifier = verifier
        self.gateway = gateway

        conversation_locks = AsyncKeyedLocks()
        self.directory = ConversationDirectory(store)
        self.registry = SessionRegistry(verifier, self.directory)
        self.presence = PresenceBroadcaster(store, self.directory, self.registry)
        self.registry.presence = self.presence
        self.receipts = ReceiptTracker(store, self.directory, self.registry, conversation_locks)
        self.push = PushFallback(store, gateway, self.settings.cipher_placeholder)
        self.coordinator = DeliveryCoordinator(
            store, self.directory, self.registry, self.push, conversation_locks
        )

    @classmethod
    def from_settings(cls, settings: CourierSettings) -> "Courier":
        verifier = load_verifier(settings)
        if verifier is None:
            raise CourierConfigError(
                "No identity verifier configured. Set COURIER_AUTH_MODULE or COURIER_AUTH_URL."
            )
        logger.info(f"Using identity verifier: {verifier.name}")
        return cls(SqliteStore(settings.db_path), verifier, build_gateway(settings), settings)

    async def close(self) -> None:
        await self.coordinator.drain()
        await self.gateway.close()
        self.store.close()


# --- Global singleton ---

_courier: Courier | None = None


def get_courier() -> Courier:
    """Get the global courier instance, building it from settings on first call."""
    global _courier
    if _courier is None:
        _courier = Courier.from_settings(CourierSettings.load())
    return _courier


def set_courier(courier: Courier) -> None:
    """Replace the global courier instance (testing, embedding)."""
    global _courier
    _courier = courier


def reset_courier() -> None:
    """Reset the global courier instance (for testing)."""
    global _courier
    _courier = None
