"""Presence broadcaster.

Called by the session registry when an identity's first session comes up
or its last session goes away. Records last-seen time and emits one
presence event into every conversation room the identity belongs to.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from .conversations import ConversationDirectory
from .errors import CourierError
from .store import DocumentExists, Store, run_sync

if TYPE_CHECKING:
    from .sessions import SessionRegistry

logger = logging.getLogger(__name__)


class PresenceBroadcaster:
    def __init__(
        self, store: Store, directory: ConversationDirectory, registry: SessionRegistry
    ) -> None:
        self.store = store
        self.directory = directory
        self.registry = registry

    async def announce(self, identity: str, online: bool) -> int:
        """Record and broadcast a presence change.

        Failures are logged and never propagate to the caller.

        Returns:
            Number of conversations the event was emitted to.
        """
        now = datetime.now(timezone.utc).isoformat()
        try:
            await self._record(identity, now)
        except CourierError:
            logger.warning(f"Failed to record last-seen for {identity}", exc_info=True)

        try:
            conversation_ids = await self.directory.ids_for(identity)
        except CourierError:
            logger.warning(f"Failed to broadcast presence for {identity}", exc_info=True)
            return 0

        for conversation_id in conversation_ids:
            self.registry.broadcast(
                conversation_id,
                {
                    "event": "presence",
                    "conversationId": conversation_id,
                    "identity": identity,
                    "online": online,
                    "timestamp": now,
                },
            )
        logger.debug(
            f"{identity} is {'online' if online else 'offline'} "
            f"({len(conversation_ids)} conversations)"
        )
        return len(conversation_ids)

    async def _record(self, identity: str, now: str) -> None:
        changes = {"last_seen_at": now}
        updated = await run_sync(self.store.update_by_id, "presence", identity, changes)
        if updated is not None:
            return
        try:
            await run_sync(self.store.create, "presence", {"id": identity, **changes})
        except DocumentExists:
            await run_sync(self.store.update_by_id, "presence", identity, changes)

    async def last_seen(self, identity: str) -> str | None:
        record = await run_sync(self.store.find_by_id, "presence", identity)
        return record["last_seen_at"] if record else None
