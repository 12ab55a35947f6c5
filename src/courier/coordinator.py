"""Delivery coordinator: the one submit path shared by every transport.

submit() validates, persists, updates the conversation summary, fans the
message out to live sessions and hands offline participants to push.
Persist and enqueue happen under a per-conversation lock, so every live
session sees a conversation's messages in persistence order.

Everything after persistence is best-effort. A failed summary update, a
failed fan-out or a failed push is logged and the submit still succeeds.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Coroutine

from .conversations import ConversationDirectory, clamp_page
from .errors import AccessDenied, CourierError, NotFound, ValidationFailed
from .locks import AsyncKeyedLocks
from .metrics import metrics
from .push import PushFallback
from .sessions import SessionRegistry
from .store import Store, run_sync

logger = logging.getLogger(__name__)

MESSAGE_TYPES = ("plain", "cipher", "system", "payment")
DELIVERY_STATES = ("queued", "delivered", "failed", "read")
PAYMENT_STATUSES = ("pending", "confirmed", "failed")
MAX_CONTENT_LENGTH = 10000

CIPHER_FIELDS = ("algorithm", "iv", "auth_tag", "salt", "sender_public_key", "fingerprint")
CIPHER_OPTIONAL_FIELDS = ("key_derivation", "version")

_CIPHER_WIRE = {
    "algorithm": "algorithm",
    "iv": "iv",
    "auth_tag": "authTag",
    "salt": "salt",
    "sender_public_key": "senderPublicKey",
    "fingerprint": "fingerprint",
    "key_derivation": "keyDerivation",
    "version": "version",
}


def message_view(message: dict[str, Any], include_receipts: bool = False) -> dict[str, Any]:
    """Wire representation of a message."""
    view: dict[str, Any] = {
        "messageId": message["id"],
        "conversationId": message["conversation_id"],
        "senderIdentity": message["sender"],
        "content": message["content"],
        "type": message["type"],
        "timestamp": message["created_at"],
        "deliveryState": message["delivery_state"],
    }
    if message.get("cipher"):
        view["cipherDescriptor"] = {
            _CIPHER_WIRE[k]: v for k, v in message["cipher"].items() if k in _CIPHER_WIRE
        }
    if message.get("payment"):
        payment = message["payment"]
        view["paymentDescriptor"] = {
            "amount": payment.get("amount"),
            "transactionHash": payment.get("transaction_hash"),
            "status": payment.get("status"),
        }
    if include_receipts:
        view["receipts"] = dict(message.get("receipts") or {})
    return view


def message_event(message: dict[str, Any]) -> dict[str, Any]:
    return {"event": "message", **message_view(message)}


def _validate_cipher(cipher: dict[str, Any] | None, message_type: str) -> dict[str, Any] | None:
    if message_type != "cipher":
        if cipher:
            raise ValidationFailed("Cipher descriptor is only allowed on cipher messages")
        return None
    if not isinstance(cipher, dict):
        raise ValidationFailed("Cipher messages require a cipher descriptor")
    missing = [f for f in CIPHER_FIELDS if not isinstance(cipher.get(f), str) or not cipher[f]]
    if missing:
        raise ValidationFailed(f"Cipher descriptor missing: {', '.join(missing)}")
    descriptor = {f: cipher[f] for f in CIPHER_FIELDS}
    for f in CIPHER_OPTIONAL_FIELDS:
        if cipher.get(f) is not None:
            descriptor[f] = cipher[f]
    return descriptor


def _validate_payment(payment: dict[str, Any] | None, message_type: str) -> dict[str, Any] | None:
    if message_type != "payment":
        if payment:
            raise ValidationFailed("Payment descriptor is only allowed on payment messages")
        return None
    if payment is None:
        return None
    if not isinstance(payment, dict):
        raise ValidationFailed("Payment descriptor must be an object")

    amount = payment.get("amount")
    if amount is not None:
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount < 0:
            raise ValidationFailed("Payment amount must be a non-negative number")
    status = payment.get("status") or "pending"
    if status not in PAYMENT_STATUSES:
        raise ValidationFailed(f"Unknown payment status: {status!r}")
    transaction_hash = payment.get("transaction_hash")
    if transaction_hash is not None and not isinstance(transaction_hash, str):
        raise ValidationFailed("Transaction hash must be a string")
    return {"amount": amount, "transaction_hash": transaction_hash, "status": status}


class DeliveryCoordinator:
    def __init__(
        self,
        store: Store,
        directory: ConversationDirectory,
        registry: SessionRegistry,
        push: PushFallback,
        locks: AsyncKeyedLocks,
    ) -> None:
        self.store = store
        self.directory = directory
        self.registry = registry
        self.push = push
        self.locks = locks
        self._tasks: set[asyncio.Task] = set()

    async def submit(
        self,
        conversation_id: str,
        sender: str,
        content: str,
        type: str = "plain",
        cipher: dict[str, Any] | None = None,
        payment: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Persist a message and deliver it to the other participant.

        Returns the persisted message (delivery_state "queued").

        Raises:
            NotFound: conversation absent or inactive
            AccessDenied: sender is not a participant
            ValidationFailed: bad content, type or descriptors
            TransientError: storage unavailable, safe to retry
        """
        conversation = await self.directory.require_member(conversation_id, sender)

        if not isinstance(content, str) or not content.strip():
            raise ValidationFailed("Message content is required")
        content = content.strip()
        if len(content) > MAX_CONTENT_LENGTH:
            raise ValidationFailed(f"Message content exceeds {MAX_CONTENT_LENGTH} characters")
        if type not in MESSAGE_TYPES:
            raise ValidationFailed(f"Unknown message type: {type!r}")
        cipher = _validate_cipher(cipher, type)
        payment = _validate_payment(payment, type)

        document: dict[str, Any] = {
            "conversation_id": conversation_id,
            "sender": sender,
            "content": content,
            "type": type,
            "delivery_state": "queued",
            "receipts": {},
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        if cipher:
            document["cipher"] = cipher
        if payment:
            document["payment"] = payment

        others = [p for p in conversation["participants"] if p != sender]

        async with self.locks.hold(conversation_id):
            message = await run_sync(self.store.create, "messages", document)
            metrics.increment("messages_submitted")

            try:
                await self.directory.record_message(conversation_id, message)
            except CourierError:
                logger.warning(
                    f"Summary update failed for conversation {conversation_id}", exc_info=True
                )

            delivered_to = self.registry.broadcast(conversation_id, message_event(message))

        if any(session.identity in others for session in delivered_to):
            self._spawn(self._mark_delivered(conversation_id, message["id"]))

        offline = [p for p in others if not self.registry.is_online(p)]
        if offline:
            self._spawn(self._push(message, offline))

        return message

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for outstanding background delivery work."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _mark_delivered(self, conversation_id: str, message_id: str) -> None:
        try:
            async with self.locks.hold(conversation_id):
                message = await run_sync(self.store.find_by_id, "messages", message_id)
                if message is not None and message["delivery_state"] == "queued":
                    await run_sync(
                        self.store.update_by_id,
                        "messages",
                        message_id,
                        {"delivery_state": "delivered"},
                    )
        except CourierError:
            logger.warning(f"Failed to mark {message_id} delivered", exc_info=True)

    async def _push(self, message: dict[str, Any], recipients: list[str]) -> None:
        try:
            report = await self.push.notify_message(message, recipients)
        except Exception:
            logger.warning(f"Push fallback failed for message {message['id']}", exc_info=True)
            return
        if report.attempted:
            logger.debug(f"Push for {message['id']}: {report.to_dict()}")

    # --- Reads and edits ---

    async def history(
        self, conversation_id: str, reader: str, limit: int = 50, offset: int = 0
    ) -> list[dict[str, Any]]:
        """A page of messages, oldest first.

        Pages count back from the newest message: offset 0 is the latest
        ``limit`` messages.
        """
        await self.directory.require_member(conversation_id, reader)
        limit, offset = clamp_page(limit, offset, 50)
        newest_first = await run_sync(
            self.store.find_many,
            "messages",
            {"conversation_id": conversation_id},
            sort=[("created_at", -1)],
            limit=limit,
            offset=offset,
        )
        return list(reversed(newest_first))

    async def search(
        self, conversation_id: str, reader: str, query: str, limit: int = 20, offset: int = 0
    ) -> dict[str, Any]:
        """Case-insensitive substring search over readable message content."""
        await self.directory.require_member(conversation_id, reader)
        query = (query or "").strip()
        if not query:
            raise ValidationFailed("Search query is required")
        limit, offset = clamp_page(limit, offset, 20)

        filter = {
            "conversation_id": conversation_id,
            "type": {"$in": ["plain", "system", "payment"]},
            "content": {"$icontains": query},
        }
        messages = await run_sync(
            self.store.find_many,
            "messages",
            filter,
            sort=[("created_at", -1)],
            limit=limit,
            offset=offset,
        )
        total = await run_sync(self.store.count, "messages", filter)
        return {"messages": messages, "total": total, "query": query}

    async def _own_message(self, message_id: str, requester: str) -> dict[str, Any]:
        message = await run_sync(self.store.find_by_id, "messages", message_id)
        if message is None:
            raise NotFound("Message not found")
        if message["sender"] != requester:
            raise AccessDenied()
        return message

    async def delete_message(self, message_id: str, requester: str) -> None:
        """Delete a message. Only its sender may do so."""
        message = await self._own_message(message_id, requester)
        conversation_id = message["conversation_id"]

        async with self.locks.hold(conversation_id):
            await run_sync(self.store.delete_by_id, "messages", message_id)
            conversation = await self.directory.get(conversation_id)
            if conversation and conversation.get("last_message_id") == message_id:
                latest = await run_sync(
                    self.store.find_many,
                    "messages",
                    {"conversation_id": conversation_id},
                    sort=[("created_at", -1)],
                    limit=1,
                )
                await run_sync(
                    self.store.update_by_id,
                    "conversations",
                    conversation_id,
                    {"last_message_id": latest[0]["id"] if latest else None},
                )
        logger.info(f"Message {message_id} deleted by {requester}")

    async def update_payment_status(
        self, message_id: str, requester: str, status: str
    ) -> dict[str, Any]:
        """Move a payment message to a new transaction status. Sender only."""
        message = await self._own_message(message_id, requester)
        if message["type"] != "payment":
            raise ValidationFailed("Not a payment message")
        if status not in PAYMENT_STATUSES:
            raise ValidationFailed(f"Unknown payment status: {status!r}")

        payment = dict(message.get("payment") or {"amount": None, "transaction_hash": None})
        payment["status"] = status
        updated = await run_sync(
            self.store.update_by_id, "messages", message_id, {"payment": payment}
        )
        if updated is None:
            raise NotFound("Message not found")
        return updated
