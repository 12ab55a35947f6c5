"""Push fallback for participants with no live session.

Owns DeviceEndpoint records: registration, lookup and pruning. Nothing else
in courier changes endpoint validity or deletes endpoints.

Gateways report a result per token. Results are partitioned into:
    - sent: accepted by the gateway
    - pruned: permanently invalid token, endpoint deleted from its owner
    - transient: anything else, endpoint left untouched, no retry
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from .config import DEFAULT_CIPHER_PLACEHOLDER, CourierSettings
from .errors import CourierError, ValidationFailed
from .locks import AsyncKeyedLocks
from .metrics import metrics
from .store import Store, run_sync

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"^[A-Za-z0-9_:.\-]{8,4096}$")

PERMANENT_ERROR_CODES = frozenset(
    {
        "UNREGISTERED",
        "INVALID_ARGUMENT",
        "NOT_FOUND",
        "messaging/invalid-argument",
        "messaging/invalid-registration-token",
        "messaging/registration-token-not-registered",
    }
)

BODY_PREVIEW_CHARS = 100


def is_valid_token(token: Any) -> bool:
    return isinstance(token, str) and bool(_TOKEN_RE.match(token))


def endpoint_view(endpoint: dict[str, Any]) -> dict[str, Any]:
    return {
        "endpointId": endpoint["id"],
        "identity": endpoint["identity"],
        "platform": endpoint.get("platform"),
        "valid": endpoint.get("valid", True),
        "createdAt": endpoint.get("created_at"),
    }


@dataclass
class GatewayResult:
    """Outcome of one token in a gateway call."""

    token: str
    success: bool
    error_code: str | None = None

    @property
    def permanent(self) -> bool:
        return not self.success and self.error_code in PERMANENT_ERROR_CODES


@dataclass
class PushReport:
    """Per-call summary returned by PushFallback.notify."""

    sent: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)
    transient: list[str] = field(default_factory=list)
    skipped: int = 0

    @property
    def attempted(self) -> int:
        return len(self.sent) + len(self.pruned) + len(self.transient)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent": len(self.sent),
            "pruned": len(self.pruned),
            "transient": len(self.transient),
            "skipped": self.skipped,
        }


class PushGateway(ABC):
    """Third-party push delivery."""

    @abstractmethod
    async def send(
        self, tokens: list[str], title: str, body: str, data: dict[str, str]
    ) -> list[GatewayResult]:
        """Deliver one notification to each token."""

    async def close(self) -> None:
        pass


class NullPushGateway(PushGateway):
    """Used when push delivery is not configured. Every token is transient."""

    async def send(
        self, tokens: list[str], title: str, body: str, data: dict[str, str]
    ) -> list[GatewayResult]:
        logger.info(f"Push not configured; dropping notification for {len(tokens)} device(s)")
        return [GatewayResult(token, False, "NOT_CONFIGURED") for token in tokens]


class FcmPushGateway(PushGateway):
    """Firebase Cloud Messaging HTTP v1 gateway.

    One request per token, sent concurrently. Error classification uses the
    FCM error code from the response details when present and the canonical
    status otherwise (UNREGISTERED, INVALID_ARGUMENT, NOT_FOUND, ...).
    """

    BASE_URL = "https://fcm.googleapis.com/v1"

    def __init__(
        self,
        project_id: str,
        access_token: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.project_id = project_id
        self.access_token = access_token
        self.timeout = timeout
        self.transport = transport

    @property
    def url(self) -> str:
        return f"{self.BASE_URL}/projects/{self.project_id}/messages:send"

    async def send(
        self, tokens: list[str], title: str, body: str, data: dict[str, str]
    ) -> list[GatewayResult]:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        async with httpx.AsyncClient(
            timeout=self.timeout, headers=headers, transport=self.transport
        ) as client:
            return list(
                await asyncio.gather(
                    *(self._send_one(client, token, title, body, data) for token in tokens)
                )
            )

    async def _send_one(
        self,
        client: httpx.AsyncClient,
        token: str,
        title: str,
        body: str,
        data: dict[str, str],
    ) -> GatewayResult:
        message = {
            "message": {
                "token": token,
                "notification": {"title": title, "body": body},
                "data": {k: str(v) for k, v in data.items()},
            }
        }
        try:
            response = await client.post(self.url, json=message)
        except httpx.RequestError as e:
            logger.warning(f"FCM request failed: {e}")
            return GatewayResult(token, False, "UNAVAILABLE")

        if response.status_code == 200:
            return GatewayResult(token, True)
        return GatewayResult(token, False, self._error_code(response))

    @staticmethod
    def _error_code(response: httpx.Response) -> str:
        try:
            error = response.json().get("error", {})
        except ValueError:
            return f"HTTP_{response.status_code}"
        for detail in error.get("details") or []:
            if detail.get("errorCode"):
                return detail["errorCode"]
        return error.get("status") or f"HTTP_{response.status_code}"


def build_gateway(settings: CourierSettings) -> PushGateway:
    if settings.push_enabled:
        return FcmPushGateway(
            settings.fcm_project_id, settings.fcm_access_token, settings.push_timeout
        )
    logger.info("FCM not configured; push notifications are disabled")
    return NullPushGateway()


class PushFallback:
    """Device endpoint registry and push delivery."""

    def __init__(
        self,
        store: Store,
        gateway: PushGateway,
        cipher_placeholder: str = DEFAULT_CIPHER_PLACEHOLDER,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.cipher_placeholder = cipher_placeholder
        self._identity_locks = AsyncKeyedLocks()

    # --- Endpoints ---

    async def register_endpoint(
        self, identity: str, token: str, platform: str | None = None
    ) -> dict[str, Any]:
        """Register a device token for an identity. Idempotent per (identity, token)."""
        if not is_valid_token(token):
            raise ValidationFailed("Malformed device token")

        async with self._identity_locks.hold(identity):
            existing = await run_sync(
                self.store.find_many,
                "device_endpoints",
                {"identity": identity, "token": token},
                limit=1,
            )
            if existing:
                endpoint = existing[0]
                changes: dict[str, Any] = {}
                if not endpoint.get("valid", True):
                    changes["valid"] = True
                if platform and platform != endpoint.get("platform"):
                    changes["platform"] = platform
                if changes:
                    endpoint = await run_sync(
                        self.store.update_by_id, "device_endpoints", endpoint["id"], changes
                    )
                return endpoint

            return await run_sync(
                self.store.create,
                "device_endpoints",
                {
                    "identity": identity,
                    "token": token,
                    "platform": platform,
                    "valid": True,
                    "created_at": datetime.now(timezone.utc).isoformat(),
                },
            )

    async def unregister_endpoint(self, identity: str, token: str) -> bool:
        """Remove one of the identity's own endpoints. Returns True if it existed."""
        existing = await run_sync(
            self.store.find_many, "device_endpoints", {"identity": identity, "token": token}
        )
        removed = False
        for endpoint in existing:
            removed |= await run_sync(self.store.delete_by_id, "device_endpoints", endpoint["id"])
        return removed

    async def endpoints_for(self, identity: str) -> list[dict[str, Any]]:
        return await run_sync(
            self.store.find_many, "device_endpoints", {"identity": identity, "valid": True}
        )

    # --- Delivery ---

    async def notify(
        self,
        endpoints: list[dict[str, Any]],
        title: str,
        body: str,
        payload: dict[str, str],
    ) -> PushReport:
        """Send one notification to a set of endpoints and prune dead ones."""
        report = PushReport()

        by_token: dict[str, list[dict[str, Any]]] = {}
        seen: set[tuple[str, str]] = set()
        for endpoint in endpoints:
            token = endpoint.get("token")
            key = (endpoint.get("identity"), token)
            if key in seen or not endpoint.get("valid", True) or not is_valid_token(token):
                report.skipped += 1
                continue
            seen.add(key)
            by_token.setdefault(token, []).append(endpoint)

        if not by_token:
            return report

        tokens = list(by_token)
        try:
            results = await self.gateway.send(tokens, title, body, payload)
        except Exception:
            logger.warning("Push gateway call failed", exc_info=True)
            results = []
        outcome = {r.token: r for r in results}

        for token in tokens:
            result = outcome.get(token)
            if result is not None and result.success:
                report.sent.append(token)
            elif result is not None and result.permanent:
                removed = [await self._prune(e, result.error_code) for e in by_token[token]]
                if all(removed):
                    report.pruned.append(token)
                else:
                    report.transient.append(token)
            else:
                report.transient.append(token)

        metrics.increment("push_sent", len(report.sent))
        metrics.increment("push_pruned", len(report.pruned))
        metrics.increment("push_transient", len(report.transient))
        return report

    async def _prune(self, endpoint: dict[str, Any], error_code: str | None) -> bool:
        try:
            await run_sync(self.store.delete_by_id, "device_endpoints", endpoint["id"])
        except CourierError:
            logger.warning(f"Failed to prune endpoint {endpoint['id']}", exc_info=True)
            return False
        logger.info(
            f"Pruned push endpoint {endpoint['id']} of {endpoint['identity']} ({error_code})"
        )
        return True

    async def notify_message(self, message: dict[str, Any], recipients: list[str]) -> PushReport:
        """Notify offline recipients about a message."""
        endpoints: list[dict[str, Any]] = []
        for identity in recipients:
            endpoints.extend(await self.endpoints_for(identity))
        if not endpoints:
            return PushReport()

        return await self.notify(
            endpoints,
            title=f"New message from {message['sender']}",
            body=self._body_for(message),
            payload={
                "conversationId": message["conversation_id"],
                "messageId": message["id"],
                "type": message["type"],
            },
        )

    def _body_for(self, message: dict[str, Any]) -> str:
        if message["type"] == "cipher":
            return self.cipher_placeholder
        if message["type"] == "payment":
            return "Payment"
        content = message["content"]
        if len(content) > BODY_PREVIEW_CHARS:
            content = content[: BODY_PREVIEW_CHARS - 3] + "..."
        return content
