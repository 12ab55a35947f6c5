"""Pluggable identity verification for courier.

Verifiers can be configured via settings / environment variables:
- COURIER_AUTH_MODULE: Python module path for a custom verifier (e.g. 'myapp.tokens')
- COURIER_AUTH_URL: If set, uses the built-in HTTP verification service

Custom verifier modules must expose:
- verify(credential: str) -> VerifiedIdentity | dict   (sync or async)

and signal failures by raising VerificationError or UnknownIdentity.

The identity returned by any verifier is canonicalized here, which makes
this module the boundary where identities enter the system.
"""

from __future__ import annotations

import importlib
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from .auth import canonical_identity
from .config import CourierSettings
from .errors import TransientError

logger = logging.getLogger(__name__)

INVALID = "INVALID"
EXPIRED = "EXPIRED"
MALFORMED = "MALFORMED"


@dataclass(frozen=True)
class VerifiedIdentity:
    """Result of a successful verification."""

    identity: str
    display_name: str | None = None


class VerificationError(Exception):
    """The credential was rejected."""

    def __init__(self, reason: str = INVALID, message: str | None = None) -> None:
        if reason not in (INVALID, EXPIRED, MALFORMED):
            reason = INVALID
        self.reason = reason
        super().__init__(message or f"Credential rejected: {reason}")


class UnknownIdentity(Exception):
    """The credential was valid but names an identity that does not exist."""

    pass


class ServiceUnavailable(TransientError):
    """The verification service could not be reached."""

    pass


def _to_verified(result: Any) -> VerifiedIdentity:
    if isinstance(result, VerifiedIdentity):
        identity, display_name = result.identity, result.display_name
    elif isinstance(result, dict):
        identity, display_name = result.get("identity"), result.get("display_name")
    else:
        raise VerificationError(MALFORMED, "Verifier returned an unexpected result")

    if not identity:
        raise UnknownIdentity("Verifier returned no identity")
    try:
        return VerifiedIdentity(canonical_identity(identity), display_name)
    except ValueError as e:
        raise VerificationError(MALFORMED, str(e)) from e


class IdentityVerifier(ABC):
    """Validates a bearer credential and returns the verified identity."""

    @abstractmethod
    async def verify(self, credential: str) -> VerifiedIdentity:
        """Verify a credential.

        Raises:
            VerificationError: credential invalid, expired or malformed
            UnknownIdentity: credential valid but identity unknown
            ServiceUnavailable: verifier unreachable
        """

    @property
    def name(self) -> str:
        return type(self).__name__


class ModuleVerifier(IdentityVerifier):
    """Delegates to a user-supplied module exposing ``verify(credential)``."""

    def __init__(self, module_path: str) -> None:
        try:
            self.module = importlib.import_module(module_path)
        except ImportError as e:
            raise ImportError(f"Failed to import auth module '{module_path}': {e}") from e
        if not hasattr(self.module, "verify"):
            raise ImportError(f"Auth module '{module_path}' does not define verify()")
        self.module_path = module_path

    async def verify(self, credential: str) -> VerifiedIdentity:
        result = self.module.verify(credential)
        if inspect.isawaitable(result):
            result = await result
        return _to_verified(result)

    @property
    def name(self) -> str:
        return f"custom:{self.module_path}"


class HttpIdentityVerifier(IdentityVerifier):
    """Verifies credentials against an HTTP service.

    Contract:
        POST {auth_url}/verify {"token": "..."}
        200 -> {"identity": "...", "display_name": "..."}
        401 -> {"error": "INVALID" | "EXPIRED" | "MALFORMED"}
        404 -> identity not found
    """

    def __init__(self, auth_url: str, timeout: float = 5.0) -> None:
        self.auth_url = auth_url.rstrip("/")
        self.timeout = timeout

    async def verify(self, credential: str) -> VerifiedIdentity:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.auth_url}/verify", json={"token": credential})
        except httpx.RequestError as e:
            raise ServiceUnavailable(f"Auth service unavailable: {e}") from e

        if response.status_code == 200:
            return _to_verified(response.json())
        if response.status_code == 404:
            raise UnknownIdentity("Identity not found")
        if response.status_code in (400, 401, 403):
            try:
                reason = response.json().get("error", INVALID)
            except ValueError:
                reason = INVALID
            raise VerificationError(str(reason).upper())

        logger.warning(f"Auth service returned unexpected status {response.status_code}")
        raise ServiceUnavailable(f"Auth service returned {response.status_code}")

    @property
    def name(self) -> str:
        return "http"


def load_verifier(settings: CourierSettings) -> IdentityVerifier | None:
    """Build the configured verifier, or None if no auth is configured."""
    if settings.auth_module:
        return ModuleVerifier(settings.auth_module)
    if settings.auth_url:
        return HttpIdentityVerifier(settings.auth_url)
    return None


def extract_bearer_token(authorization: str | None) -> str | None:
    """
    Extract bearer token from Authorization header.

    Args:
        authorization: The full Authorization header value

    Returns:
        The token if valid Bearer format, None otherwise
    """
    if not authorization:
        return None

    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None

    scheme, token = parts
    if scheme.lower() != "bearer":
        return None

    return token.strip() or None
