"""FastAPI application for courier.

HTTP routes and the /ws WebSocket only adapt framing. All behavior lives in
the components reached through the service container (service.py).
"""

import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated, Any, Literal

from fastapi import FastAPI, Header, HTTPException, Query, Request, Response, WebSocket
from fastapi.responses import JSONResponse
from fastapi.websockets import WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from uuid_extensions import uuid7

from ._version import __version__
from .auth import canonical_identity
from .auth_provider import (
    UnknownIdentity,
    VerificationError,
    VerifiedIdentity,
    extract_bearer_token,
)
from .conversations import conversation_view
from .coordinator import message_view
from .errors import AccessDenied, AuthenticationFailed, CourierError, ValidationFailed
from .metrics import metrics
from .push import endpoint_view
from .service import Courier, get_courier

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build (or reuse) the courier instance and close it on shutdown."""
    courier = get_courier()
    yield
    await courier.close()


app = FastAPI(
    title="courier",
    description="Real-time delivery core for direct messaging",
    version=__version__,
    lifespan=lifespan,
)


# --- Request Timing Middleware ---


@app.middleware("http")
async def add_timing_middleware(request: Request, call_next):
    """Middleware to track request timing for metrics."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000

    # Collapse ids so requests aggregate per route
    parts = request.url.path.strip("/").split("/")
    if parts[0] == "conversations":
        action = parts[2] if len(parts) > 2 else ("item" if len(parts) > 1 else "list")
        endpoint = f"conversations/{action}"
    elif parts[0] == "messages":
        endpoint = "messages/status" if parts[-1] == "status" else "messages/item"
    elif parts[0] in ("devices", "presence", "health", "metrics"):
        endpoint = parts[0]
    else:
        endpoint = "other"

    metrics.record_request(endpoint, duration_ms)

    # Add timing header for debugging
    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"

    return response


@app.exception_handler(CourierError)
async def courier_error_handler(request: Request, exc: CourierError) -> JSONResponse:
    """Single translation point from component errors to HTTP responses."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


# --- Request Models ---


class CipherDescriptor(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    algorithm: str | None = None
    iv: str | None = None
    auth_tag: str | None = Field(default=None, alias="authTag")
    salt: str | None = None
    sender_public_key: str | None = Field(default=None, alias="senderPublicKey")
    fingerprint: str | None = None
    key_derivation: str | None = Field(default=None, alias="keyDerivation")
    version: str | int | None = None


class PaymentDescriptor(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: float | None = None
    transaction_hash: str | None = Field(default=None, alias="transactionHash")
    status: str | None = None


class SubmitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str
    type: str = "plain"
    cipher_descriptor: CipherDescriptor | None = Field(default=None, alias="cipherDescriptor")
    payment_descriptor: PaymentDescriptor | None = Field(default=None, alias="paymentDescriptor")

    def descriptors(self) -> tuple[dict | None, dict | None]:
        cipher = self.cipher_descriptor.model_dump() if self.cipher_descriptor else None
        payment = self.payment_descriptor.model_dump() if self.payment_descriptor else None
        return cipher, payment


class SubmitFrame(SubmitRequest):
    conversation_id: str = Field(alias="conversationId")


class AuthenticateFrame(BaseModel):
    credential: str | None = None


class ReadFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_ids: list[str] | None = Field(default=None, alias="messageIds")


class TypingFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_typing: bool = Field(default=True, alias="isTyping")


class OpenConversationRequest(BaseModel):
    peer: str


class MarkReadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_ids: list[str] | None = Field(default=None, alias="messageIds")


class PaymentStatusRequest(BaseModel):
    status: Literal["pending", "confirmed", "failed"]


class RegisterDeviceRequest(BaseModel):
    token: str
    platform: str | None = None


# --- Auth helpers ---


async def _require_identity(authorization: str | None) -> VerifiedIdentity:
    """Resolve the caller's identity from a bearer credential."""
    token = extract_bearer_token(authorization)
    if not token:
        raise HTTPException(401, "Authorization: Bearer <token> header required")
    courier = get_courier()
    try:
        return await courier.verifier.verify(token)
    except VerificationError as e:
        raise AuthenticationFailed("invalid_credential", "Invalid credential") from e
    except UnknownIdentity as e:
        raise AuthenticationFailed("identity_not_found", "Unknown identity") from e


def _canonical(raw: str, what: str = "identity") -> str:
    try:
        return canonical_identity(raw)
    except ValueError:
        raise HTTPException(400, f"Malformed {what}")


# --- Health & Metrics ---


@app.get("/health")
def health():
    return {"status": "ok", "version": __version__}


@app.get("/metrics")
async def get_metrics(authorization: Annotated[str | None, Header()] = None):
    """Timing stats, delivery counters and live session counts."""
    await _require_identity(authorization)
    return {**metrics.to_dict(), "sessions": get_courier().registry.stats()}


# --- Conversations ---


@app.post("/conversations")
async def open_conversation(
    request: OpenConversationRequest,
    response: Response,
    authorization: Annotated[str | None, Header()] = None,
):
    caller = await _require_identity(authorization)
    peer = _canonical(request.peer, "peer identity")
    conversation, created = await get_courier().directory.open_conversation(
        caller.identity, peer
    )
    response.status_code = 201 if created else 200
    return {"conversation": conversation_view(conversation), "created": created}


@app.get("/conversations")
async def list_conversations(
    authorization: Annotated[str | None, Header()] = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    caller = await _require_identity(authorization)
    conversations = await get_courier().directory.list_for(caller.identity, limit, offset)
    return {"conversations": [conversation_view(c) for c in conversations]}


@app.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    authorization: Annotated[str | None, Header()] = None,
):
    caller = await _require_identity(authorization)
    conversation = await get_courier().directory.require_member(conversation_id, caller.identity)
    view = conversation_view(conversation)
    view["online"] = {p: get_courier().registry.is_online(p) for p in conversation["participants"]}
    return view


@app.delete("/conversations/{conversation_id}")
async def leave_conversation(
    conversation_id: str,
    authorization: Annotated[str | None, Header()] = None,
):
    caller = await _require_identity(authorization)
    conversation = await get_courier().directory.deactivate(conversation_id, caller.identity)
    return conversation_view(conversation)


@app.get("/conversations/{conversation_id}/stats")
async def conversation_stats(
    conversation_id: str,
    authorization: Annotated[str | None, Header()] = None,
):
    caller = await _require_identity(authorization)
    return await get_courier().directory.stats(conversation_id, caller.identity)


# --- Messages ---


@app.post("/conversations/{conversation_id}/messages", status_code=201)
async def submit_message(
    conversation_id: str,
    request: SubmitRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    caller = await _require_identity(authorization)
    cipher, payment = request.descriptors()
    message = await get_courier().coordinator.submit(
        conversation_id,
        caller.identity,
        request.content,
        request.type,
        cipher=cipher,
        payment=payment,
    )
    return message_view(message)


@app.get("/conversations/{conversation_id}/messages")
async def message_history(
    conversation_id: str,
    authorization: Annotated[str | None, Header()] = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    caller = await _require_identity(authorization)
    messages = await get_courier().coordinator.history(
        conversation_id, caller.identity, limit, offset
    )
    return {"messages": [message_view(m, include_receipts=True) for m in messages]}


@app.get("/conversations/{conversation_id}/search")
async def search_messages(
    conversation_id: str,
    q: str = Query(..., min_length=1),
    authorization: Annotated[str | None, Header()] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    caller = await _require_identity(authorization)
    result = await get_courier().coordinator.search(
        conversation_id, caller.identity, q, limit, offset
    )
    return {
        "messages": [message_view(m) for m in result["messages"]],
        "total": result["total"],
        "query": result["query"],
    }


@app.post("/conversations/{conversation_id}/read")
async def mark_read(
    conversation_id: str,
    request: MarkReadRequest | None = None,
    authorization: Annotated[str | None, Header()] = None,
):
    caller = await _require_identity(authorization)
    message_ids = request.message_ids if request else None
    marked = await get_courier().receipts.mark_read(conversation_id, caller.identity, message_ids)
    return {"marked": marked, "count": len(marked)}


@app.put("/messages/{message_id}/status")
async def update_payment_status(
    message_id: str,
    request: PaymentStatusRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    caller = await _require_identity(authorization)
    message = await get_courier().coordinator.update_payment_status(
        message_id, caller.identity, request.status
    )
    return message_view(message)


@app.delete("/messages/{message_id}")
async def delete_message(
    message_id: str,
    authorization: Annotated[str | None, Header()] = None,
):
    caller = await _require_identity(authorization)
    await get_courier().coordinator.delete_message(message_id, caller.identity)
    return {"deleted": True, "messageId": message_id}


# --- Devices & Presence ---


@app.post("/devices", status_code=201)
async def register_device(
    request: RegisterDeviceRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    caller = await _require_identity(authorization)
    endpoint = await get_courier().push.register_endpoint(
        caller.identity, request.token, request.platform
    )
    return endpoint_view(endpoint)


@app.delete("/devices")
async def unregister_device(
    token: str = Query(...),
    authorization: Annotated[str | None, Header()] = None,
):
    caller = await _require_identity(authorization)
    removed = await get_courier().push.unregister_endpoint(caller.identity, token)
    if not removed:
        raise HTTPException(404, "Device not registered")
    return {"removed": True}


@app.get("/presence/{identity}")
async def get_presence(
    identity: str,
    authorization: Annotated[str | None, Header()] = None,
):
    """Presence of the caller or of someone they share a conversation with."""
    caller = await _require_identity(authorization)
    identity = _canonical(identity)
    courier = get_courier()
    if not await courier.directory.shares_conversation(caller.identity, identity):
        raise AccessDenied()
    return {
        "identity": identity,
        "online": courier.registry.is_online(identity),
        "lastSeenAt": await courier.presence.last_seen(identity),
    }


# --- WebSocket ---


class WebSocketConnection:
    """Adapts a Starlette WebSocket to the registry's Connection protocol.

    Fan-out events ({"event": ...}) are wrapped into {type, data} frames;
    replies built by the handler are already frames.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.id = str(uuid7())
        self.websocket = websocket

    async def send(self, payload: dict[str, Any]) -> None:
        if "event" in payload:
            payload = {"type": payload["event"], "data": payload}
        await self.websocket.send_json(payload)


def _frame(type: str, data: dict[str, Any] | None = None, ref: Any = None) -> dict[str, Any]:
    frame: dict[str, Any] = {"type": type, "data": data or {}}
    if ref is not None:
        frame["ref"] = ref
    return frame


def _error_frame(error: CourierError, ref: Any = None) -> dict[str, Any]:
    return _frame("error", error.to_dict(), ref)


async def _handle_frame(courier: Courier, connection_id: str, frame: dict[str, Any]) -> None:
    """Dispatch one inbound frame. Replies go through the connection's outbox."""
    registry = courier.registry
    frame_type = frame.get("type")
    data = frame.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationFailed("Frame data must be an object")
    ref = frame.get("ref")

    def reply(type: str, payload: dict[str, Any] | None = None) -> None:
        registry.send(connection_id, _frame(type, payload, ref))

    if frame_type == "ping":
        reply("pong")
        return

    if frame_type == "authenticate":
        auth = AuthenticateFrame.model_validate(data)
        verified = await registry.authenticate(connection_id, auth.credential)
        reply(
            "authenticated",
            {"identity": verified.identity, "displayName": verified.display_name},
        )
        return

    session = registry.get(connection_id)
    if session is None or not session.authenticated:
        raise AuthenticationFailed("no_credential", "Authenticate first")
    if frame_type not in ("join", "leave", "send", "read", "typing"):
        raise ValidationFailed(f"Unknown frame type: {frame_type!r}")
    conversation_id = data.get("conversationId")
    if not isinstance(conversation_id, str) or not conversation_id:
        raise ValidationFailed("conversationId is required")

    if frame_type == "join":
        await registry.join_room(connection_id, conversation_id)
        reply("joined", {"conversationId": conversation_id})
    elif frame_type == "leave":
        registry.leave_room(connection_id, conversation_id)
        reply("left", {"conversationId": conversation_id})
    elif frame_type == "send":
        submit = SubmitFrame.model_validate(data)
        cipher, payment = submit.descriptors()
        message = await courier.coordinator.submit(
            conversation_id,
            session.identity,
            submit.content,
            submit.type,
            cipher=cipher,
            payment=payment,
        )
        reply("sent", message_view(message))
    elif frame_type == "read":
        read = ReadFrame.model_validate(data)
        await courier.receipts.mark_read(
            conversation_id, session.identity, read.message_ids, origin=connection_id
        )
    else:
        typing = TypingFrame.model_validate(data)
        registry.typing(connection_id, conversation_id, typing.is_typing)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Bidirectional session: authenticate, join rooms, send and receive events."""
    await websocket.accept()
    courier = get_courier()
    connection = WebSocketConnection(websocket)
    courier.registry.register(connection)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
                if not isinstance(frame, dict):
                    raise ValueError("frame must be an object")
            except ValueError:
                courier.registry.send(
                    connection.id,
                    _frame("error", {"code": "VALIDATION_FAILED", "error": "Malformed frame"}),
                )
                continue

            try:
                await _handle_frame(courier, connection.id, frame)
            except CourierError as e:
                courier.registry.send(connection.id, _error_frame(e, frame.get("ref")))
            except ValidationError as e:
                courier.registry.send(
                    connection.id,
                    _frame(
                        "error",
                        {"code": "VALIDATION_FAILED", "error": str(e.errors()[0]["msg"])},
                        frame.get("ref"),
                    ),
                )
    except WebSocketDisconnect:
        pass
    finally:
        await courier.registry.disconnect(connection.id)
