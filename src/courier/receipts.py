"""Read-receipt tracking.

Receipts live on the message document as a reader -> timestamp mapping,
so a second mark by the same reader finds its entry and does nothing.
Updates for one conversation are serialized with the same keyed locks
the delivery coordinator uses.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from .conversations import ConversationDirectory
from .errors import ValidationFailed
from .locks import AsyncKeyedLocks
from .metrics import metrics
from .sessions import SessionRegistry
from .store import Store, run_sync

logger = logging.getLogger(__name__)


class ReceiptTracker:
    def __init__(
        self,
        store: Store,
        directory: ConversationDirectory,
        registry: SessionRegistry,
        locks: AsyncKeyedLocks,
    ) -> None:
        self.store = store
        self.directory = directory
        self.registry = registry
        self.locks = locks

    async def mark_read(
        self,
        conversation_id: str,
        reader: str,
        message_ids: list[str] | None = None,
        origin: str | None = None,
    ) -> list[str]:
        """Mark messages of a conversation as read by ``reader``.

        Args:
            conversation_id: Conversation the messages belong to
            reader: Canonical identity of the reader
            message_ids: Specific messages to mark; None marks every message
                the reader has not read yet. Ids from other conversations
                are ignored.
            origin: Connection id that asked, excluded from the read events

        Returns:
            Ids of the messages newly marked, in persistence order.
        """
        await self.directory.require_member(conversation_id, reader)
        if message_ids is not None and not isinstance(message_ids, (list, tuple)):
            raise ValidationFailed("messageIds must be a list")

        async with self.locks.hold(conversation_id):
            if message_ids is None:
                candidates = await run_sync(
                    self.store.find_many,
                    "messages",
                    {"conversation_id": conversation_id, "sender": {"$ne": reader}},
                )
            else:
                wanted = list(dict.fromkeys(str(m) for m in message_ids))
                if not wanted:
                    return []
                candidates = await run_sync(
                    self.store.find_many,
                    "messages",
                    {"id": {"$in": wanted}, "conversation_id": conversation_id},
                )

            marked: list[dict[str, Any]] = []
            for message in candidates:
                receipts = message.get("receipts") or {}
                if message["sender"] == reader or reader in receipts:
                    continue
                now = datetime.now(timezone.utc).isoformat()
                await run_sync(
                    self.store.update_by_id,
                    "messages",
                    message["id"],
                    {"receipts": {**receipts, reader: now}, "delivery_state": "read"},
                )
                marked.append({"id": message["id"], "read_at": now})

            for entry in marked:
                self.registry.broadcast(
                    conversation_id,
                    {
                        "event": "read",
                        "conversationId": conversation_id,
                        "messageId": entry["id"],
                        "reader": reader,
                        "readAt": entry["read_at"],
                    },
                    exclude=origin,
                )

        if marked:
            metrics.increment("receipts_marked", len(marked))
        return [entry["id"] for entry in marked]
