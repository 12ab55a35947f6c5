"""Tests for identity normalization and pluggable verifiers."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from courier.auth import canonical_identity, pair_key
from courier.auth_provider import (
    EXPIRED,
    INVALID,
    MALFORMED,
    HttpIdentityVerifier,
    ModuleVerifier,
    ServiceUnavailable,
    UnknownIdentity,
    VerificationError,
    VerifiedIdentity,
    extract_bearer_token,
    load_verifier,
)
from courier.config import CourierSettings
from courier.errors import TransientError


class TestCanonicalIdentity:
    def test_strips_and_lowercases(self):
        assert canonical_identity("  Alice@Example.COM ") == "alice@example.com"

    def test_uuid_like_identities(self):
        raw = "0F8FAD5B-D9CB-469F-A165-70867728950E"
        assert canonical_identity(raw) == raw.lower()

    @pytest.mark.parametrize("raw", [None, "", "   ", "has space", "-leading-dash", "x" * 200])
    def test_rejects_malformed(self, raw):
        with pytest.raises(ValueError):
            canonical_identity(raw)

    def test_pair_key_is_order_independent(self):
        assert pair_key("bob", "alice") == pair_key("alice", "bob") == "alice|bob"


class TestExtractBearerToken:
    def test_valid_bearer_token(self):
        assert extract_bearer_token("Bearer abc123") == "abc123"
        assert extract_bearer_token("bearer ABC123") == "ABC123"

    def test_bearer_with_spaces(self):
        assert extract_bearer_token("Bearer   token_with_spaces  ") == "token_with_spaces"

    def test_invalid_formats(self):
        assert extract_bearer_token(None) is None
        assert extract_bearer_token("") is None
        assert extract_bearer_token("Basic abc123") is None
        assert extract_bearer_token("Bearertoken") is None  # No space
        assert extract_bearer_token("Bearer    ") is None


def _mock_client(mock_client_cls, response=None, side_effect=None):
    client = MagicMock()
    client.post = AsyncMock(return_value=response, side_effect=side_effect)
    mock_client_cls.return_value.__aenter__.return_value = client
    return client


def _response(status_code, body=None):
    response = MagicMock()
    response.status_code = status_code
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body or {}
    return response


class TestHttpIdentityVerifier:
    @pytest.mark.asyncio
    @patch("courier.auth_provider.httpx.AsyncClient")
    async def test_valid_credential(self, mock_client_cls):
        client = _mock_client(
            mock_client_cls,
            _response(200, {"identity": " Alice ", "display_name": "Alice A."}),
        )
        verifier = HttpIdentityVerifier("https://auth.example.com/")

        result = await verifier.verify("good-token")

        assert result == VerifiedIdentity("alice", "Alice A.")
        client.post.assert_called_once_with(
            "https://auth.example.com/verify", json={"token": "good-token"}
        )

    @pytest.mark.asyncio
    @patch("courier.auth_provider.httpx.AsyncClient")
    async def test_expired_credential(self, mock_client_cls):
        _mock_client(mock_client_cls, _response(401, {"error": "expired"}))
        with pytest.raises(VerificationError) as exc_info:
            await HttpIdentityVerifier("https://auth.example.com").verify("old")
        assert exc_info.value.reason == EXPIRED

    @pytest.mark.asyncio
    @patch("courier.auth_provider.httpx.AsyncClient")
    async def test_unparseable_rejection_is_invalid(self, mock_client_cls):
        _mock_client(mock_client_cls, _response(401, ValueError("not json")))
        with pytest.raises(VerificationError) as exc_info:
            await HttpIdentityVerifier("https://auth.example.com").verify("bad")
        assert exc_info.value.reason == INVALID

    @pytest.mark.asyncio
    @patch("courier.auth_provider.httpx.AsyncClient")
    async def test_unknown_identity(self, mock_client_cls):
        _mock_client(mock_client_cls, _response(404))
        with pytest.raises(UnknownIdentity):
            await HttpIdentityVerifier("https://auth.example.com").verify("ghost")

    @pytest.mark.asyncio
    @patch("courier.auth_provider.httpx.AsyncClient")
    async def test_malformed_identity_in_response(self, mock_client_cls):
        _mock_client(mock_client_cls, _response(200, {"identity": "not valid!"}))
        with pytest.raises(VerificationError) as exc_info:
            await HttpIdentityVerifier("https://auth.example.com").verify("token")
        assert exc_info.value.reason == MALFORMED

    @pytest.mark.asyncio
    @patch("courier.auth_provider.httpx.AsyncClient")
    async def test_network_error_is_transient(self, mock_client_cls):
        _mock_client(mock_client_cls, side_effect=httpx.ConnectError("Connection refused"))
        with pytest.raises(ServiceUnavailable) as exc_info:
            await HttpIdentityVerifier("https://auth.example.com").verify("token")
        assert isinstance(exc_info.value, TransientError)

    @pytest.mark.asyncio
    @patch("courier.auth_provider.httpx.AsyncClient")
    async def test_server_error_is_transient(self, mock_client_cls):
        _mock_client(mock_client_cls, _response(502))
        with pytest.raises(ServiceUnavailable):
            await HttpIdentityVerifier("https://auth.example.com").verify("token")


class TestModuleVerifier:
    @pytest.mark.asyncio
    async def test_sync_module(self, tmp_path, monkeypatch):
        (tmp_path / "sync_tokens.py").write_text(
            "def verify(credential):\n"
            "    return {'identity': credential.upper(), 'display_name': 'Sync'}\n"
        )
        monkeypatch.syspath_prepend(str(tmp_path))

        verifier = ModuleVerifier("sync_tokens")

        assert await verifier.verify("bob") == VerifiedIdentity("bob", "Sync")
        assert verifier.name == "custom:sync_tokens"

    @pytest.mark.asyncio
    async def test_async_module_raising(self, tmp_path, monkeypatch):
        (tmp_path / "async_tokens.py").write_text(
            "from courier.auth_provider import VerificationError\n"
            "async def verify(credential):\n"
            "    raise VerificationError('EXPIRED')\n"
        )
        monkeypatch.syspath_prepend(str(tmp_path))

        with pytest.raises(VerificationError) as exc_info:
            await ModuleVerifier("async_tokens").verify("x")
        assert exc_info.value.reason == EXPIRED

    def test_missing_module(self):
        with pytest.raises(ImportError, match="Failed to import"):
            ModuleVerifier("definitely_not_a_module_xyz")

    def test_module_without_verify(self, tmp_path, monkeypatch):
        (tmp_path / "empty_tokens.py").write_text("x = 1\n")
        monkeypatch.syspath_prepend(str(tmp_path))
        with pytest.raises(ImportError, match="verify"):
            ModuleVerifier("empty_tokens")


class TestLoadVerifier:
    def test_none_when_unconfigured(self):
        assert load_verifier(CourierSettings()) is None

    def test_http_from_url(self):
        verifier = load_verifier(CourierSettings(auth_url="https://auth.example.com"))
        assert isinstance(verifier, HttpIdentityVerifier)
        assert verifier.name == "http"

    def test_module_takes_precedence(self):
        # courier.auth exists but has no verify(), so the module path is what gets tried
        with pytest.raises(ImportError, match="verify"):
            load_verifier(
                CourierSettings(auth_module="courier.auth", auth_url="https://auth.example.com")
            )
