"""Conversation directory: direct conversations between two identities.

Conversations are created lazily and looked up by an order-independent
pair key, so asking twice for (a, b) or (b, a) yields one record.
``require_member`` is the single membership check every other component
goes through.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from .auth import pair_key
from .errors import AccessDenied, NotFound, ValidationFailed
from .locks import AsyncKeyedLocks
from .store import Store, run_sync

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def conversation_view(conversation: dict[str, Any]) -> dict[str, Any]:
    """Wire representation of a conversation."""
    return {
        "conversationId": conversation["id"],
        "participants": list(conversation["participants"]),
        "lastMessageId": conversation.get("last_message_id"),
        "lastActivityAt": conversation.get("last_activity_at"),
        "active": conversation.get("active", True),
        "createdAt": conversation.get("created_at"),
    }


def clamp_page(limit: int, offset: int, default: int) -> tuple[int, int]:
    """Bound pagination parameters to sane values."""
    if limit is None or limit <= 0:
        limit = default
    return min(limit, MAX_PAGE_SIZE), max(offset or 0, 0)


class ConversationDirectory:
    """Creates, looks up and summarizes conversations."""

    def __init__(self, store: Store) -> None:
        self.store = store
        self._pair_locks = AsyncKeyedLocks()

    async def open_conversation(self, initiator: str, peer: str) -> tuple[dict[str, Any], bool]:
        """Return the conversation between two identities, creating it if needed.

        Returns:
            (conversation, created) where created is False when an existing
            conversation was returned (reactivated if it had been left).
        """
        if initiator == peer:
            raise ValidationFailed("Cannot open a conversation with yourself")

        key = pair_key(initiator, peer)
        async with self._pair_locks.hold(key):
            existing = await run_sync(
                self.store.find_many, "conversations", {"pair_key": key}, limit=1
            )
            if existing:
                conversation = existing[0]
                if not conversation.get("active", True):
                    now = datetime.now(timezone.utc).isoformat()
                    conversation = await run_sync(
                        self.store.update_by_id,
                        "conversations",
                        conversation["id"],
                        {"active": True, "updated_at": now},
                    )
                    logger.info(f"Reactivated conversation {conversation['id']}")
                return conversation, False

            now = datetime.now(timezone.utc).isoformat()
            conversation = await run_sync(
                self.store.create,
                "conversations",
                {
                    "participants": [initiator, peer],
                    "pair_key": key,
                    "last_message_id": None,
                    "last_activity_at": now,
                    "active": True,
                    "created_at": now,
                    "updated_at": now,
                },
            )
            logger.info(f"Opened conversation {conversation['id']}")
            return conversation, True

    async def get(self, conversation_id: str) -> dict[str, Any] | None:
        return await run_sync(self.store.find_by_id, "conversations", conversation_id)

    async def require_member(
        self, conversation_id: str, identity: str, require_active: bool = True
    ) -> dict[str, Any]:
        """Fetch a conversation the identity participates in.

        Raises:
            NotFound: conversation absent, or inactive when require_active
            AccessDenied: identity is not a participant
        """
        conversation = await self.get(conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        if require_active and not conversation.get("active", True):
            raise NotFound("Conversation not found")
        if identity not in conversation["participants"]:
            raise AccessDenied()
        return conversation

    async def list_for(self, identity: str, limit: int = 50, offset: int = 0) -> list[dict]:
        """Active conversations of an identity, most recent activity first."""
        limit, offset = clamp_page(limit, offset, 50)
        return await run_sync(
            self.store.find_many,
            "conversations",
            {"participants": {"$contains": identity}, "active": True},
            sort=[("last_activity_at", -1)],
            limit=limit,
            offset=offset,
        )

    async def ids_for(self, identity: str) -> list[str]:
        """Ids of every active conversation the identity belongs to."""
        conversations = await run_sync(
            self.store.find_many,
            "conversations",
            {"participants": {"$contains": identity}, "active": True},
        )
        return [c["id"] for c in conversations]

    async def shares_conversation(self, identity: str, other: str) -> bool:
        """True if the two identities have an active conversation together."""
        if identity == other:
            return True
        found = await run_sync(
            self.store.count,
            "conversations",
            {"pair_key": pair_key(identity, other), "active": True},
        )
        return found > 0

    async def deactivate(self, conversation_id: str, identity: str) -> dict[str, Any]:
        """Soft-delete a conversation on behalf of one of its participants."""
        conversation = await self.require_member(conversation_id, identity, require_active=False)
        if not conversation.get("active", True):
            return conversation
        now = datetime.now(timezone.utc).isoformat()
        updated = await run_sync(
            self.store.update_by_id,
            "conversations",
            conversation_id,
            {"active": False, "updated_at": now},
        )
        logger.info(f"Conversation {conversation_id} left by {identity}")
        return updated or conversation

    async def record_message(self, conversation_id: str, message: dict[str, Any]) -> None:
        """Point the conversation summary at a freshly persisted message."""
        await run_sync(
            self.store.update_by_id,
            "conversations",
            conversation_id,
            {
                "last_message_id": message["id"],
                "last_activity_at": message["created_at"],
                "updated_at": message["created_at"],
            },
        )

    async def stats(self, conversation_id: str, identity: str) -> dict[str, Any]:
        """Message counts and time range for a conversation."""
        await self.require_member(conversation_id, identity)
        in_conversation = {"conversation_id": conversation_id}

        total = await run_sync(self.store.count, "messages", in_conversation)
        own = await run_sync(
            self.store.count, "messages", {**in_conversation, "sender": identity}
        )
        first = await run_sync(
            self.store.find_many, "messages", in_conversation, sort=[("created_at", 1)], limit=1
        )
        last = await run_sync(
            self.store.find_many, "messages", in_conversation, sort=[("created_at", -1)], limit=1
        )

        by_type: dict[str, int] = {}
        for message_type in ("plain", "cipher", "system", "payment"):
            count = await run_sync(
                self.store.count, "messages", {**in_conversation, "type": message_type}
            )
            if count:
                by_type[message_type] = count

        return {
            "conversationId": conversation_id,
            "totalMessages": total,
            "ownMessages": own,
            "otherMessages": total - own,
            "firstMessageAt": first[0]["created_at"] if first else None,
            "lastMessageAt": last[0]["created_at"] if last else None,
            "byType": by_type,
        }
