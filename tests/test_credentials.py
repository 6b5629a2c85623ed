"""Tests for the credential store and token endpoints.

Covers:
- Format validation
- Upsert keyed by installation (one row, status reset)
- Secret never returned, prefix only
- Provider probe result mapping (MockTransport)
- Validation status transitions and failure threshold
- Endpoint ownership checks
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import func, select

from app.core.exceptions import (
    CredentialInactiveError,
    CredentialNotConfiguredError,
    ValidationFailedError,
)
from app.models.tenant import Credential
from app.services.credentials import (
    MAX_VALIDATION_FAILURES,
    ValidationOutcome,
    get_active_credential,
    get_credential,
    probe_token,
    record_validation,
    reveal_secret,
    save_credential,
    validate_token_format,
)
from conftest import TEST_AGENT_TOKEN, create_installation, create_user, login


class TestFormat:
    def test_valid_api_key(self) -> None:
        validate_token_format(TEST_AGENT_TOKEN, "api_key")

    def test_api_key_needs_prefix(self) -> None:
        with pytest.raises(ValidationFailedError):
            validate_token_format("sk-openai-0123456789abcdef", "api_key")

    def test_oauth_token_has_no_prefix_rule(self) -> None:
        validate_token_format("oat-0123456789abcdefghij", "oauth_token")

    @pytest.mark.parametrize("token", ["sk-ant-short", "sk-ant-" + "x" * 500])
    def test_length_bounds(self, token: str) -> None:
        with pytest.raises(ValidationFailedError):
            validate_token_format(token, "api_key")

    def test_unknown_type(self) -> None:
        with pytest.raises(ValidationFailedError):
            validate_token_format(TEST_AGENT_TOKEN, "password")


class TestStore:
    @pytest.mark.asyncio
    async def test_save_twice_keeps_one_row(self, db, tenant, settings) -> None:
        user, installation = tenant
        credential = await get_credential(db, installation.id)
        credential.key_status = "invalid"
        credential.failure_count = 3
        await db.commit()

        replacement = "sk-ant-REDACTED"
        saved = await save_credential(
            db, installation=installation, user=user, token=replacement,
            token_type="api_key", settings=settings,
        )
        await db.commit()

        count = await db.scalar(select(func.count()).select_from(Credential))
        assert count == 1
        assert saved.key_status == "active"
        assert saved.failure_count == 0
        assert reveal_secret(saved, settings) == replacement

    @pytest.mark.asyncio
    async def test_stored_values_are_encrypted(self, db, tenant) -> None:
        _, installation = tenant
        credential = await get_credential(db, installation.id)
        assert TEST_AGENT_TOKEN not in credential.encrypted_key
        assert credential.key_prefix == "sk-ant-api03..."

    @pytest.mark.asyncio
    async def test_active_credential_required(self, db, tenant) -> None:
        _, installation = tenant
        await get_active_credential(db, installation.id)

        credential = await get_credential(db, installation.id)
        credential.key_status = "rate_limited"
        await db.flush()
        with pytest.raises(CredentialInactiveError):
            await get_active_credential(db, installation.id)

    @pytest.mark.asyncio
    async def test_missing_credential(self, db) -> None:
        with pytest.raises(CredentialNotConfiguredError):
            await get_active_credential(db, 999)


def _probe_transport(status_code: int, captured: list[httpx.Request] | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if captured is not None:
            captured.append(request)
        return httpx.Response(status_code, json={})

    return httpx.MockTransport(handler)


class TestProbe:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status_code", "result"),
        [(200, "valid"), (400, "valid"), (401, "unauthorized"), (429, "rate_limited"), (529, "error")],
    )
    async def test_status_mapping(self, status_code, result) -> None:
        outcome = await probe_token(TEST_AGENT_TOKEN, "api_key", transport=_probe_transport(status_code))
        assert outcome.result == result

    @pytest.mark.asyncio
    async def test_api_key_header(self) -> None:
        captured: list[httpx.Request] = []
        await probe_token(TEST_AGENT_TOKEN, "api_key", transport=_probe_transport(200, captured))
        assert captured[0].headers["x-api-key"] == TEST_AGENT_TOKEN
        assert "authorization" not in captured[0].headers
        assert json.loads(captured[0].content)["max_tokens"] == 1

    @pytest.mark.asyncio
    async def test_oauth_bearer_header(self) -> None:
        captured: list[httpx.Request] = []
        await probe_token("oat-token-0123456789abc", "oauth_token", transport=_probe_transport(200, captured))
        assert captured[0].headers["authorization"] == "Bearer oat-token-0123456789abc"

    @pytest.mark.asyncio
    async def test_network_error_is_error_outcome(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        outcome = await probe_token(TEST_AGENT_TOKEN, "api_key", transport=httpx.MockTransport(handler))
        assert outcome.result == "error"
        assert outcome.valid is False


class TestRecordValidation:
    @pytest.mark.asyncio
    async def test_unauthorized_invalidates_immediately(self, db, tenant) -> None:
        _, installation = tenant
        credential = await get_credential(db, installation.id)
        await record_validation(db, credential, ValidationOutcome("unauthorized", "bad key"))
        assert credential.key_status == "invalid"
        assert credential.failure_count == 1

    @pytest.mark.asyncio
    async def test_errors_invalidate_at_threshold(self, db, tenant) -> None:
        _, installation = tenant
        credential = await get_credential(db, installation.id)
        for _ in range(MAX_VALIDATION_FAILURES - 1):
            await record_validation(db, credential, ValidationOutcome("error", "boom"))
        assert credential.key_status == "active"

        await record_validation(db, credential, ValidationOutcome("error", "boom"))
        assert credential.key_status == "invalid"
        assert credential.failure_count == MAX_VALIDATION_FAILURES

    @pytest.mark.asyncio
    async def test_rate_limited(self, db, tenant) -> None:
        _, installation = tenant
        credential = await get_credential(db, installation.id)
        await record_validation(db, credential, ValidationOutcome("rate_limited"))
        assert credential.key_status == "rate_limited"

    @pytest.mark.asyncio
    async def test_success_resets(self, db, tenant) -> None:
        _, installation = tenant
        credential = await get_credential(db, installation.id)
        await record_validation(db, credential, ValidationOutcome("error", "boom"))
        await record_validation(db, credential, ValidationOutcome("valid"))
        assert credential.key_status == "active"
        assert credential.failure_count == 0
        assert credential.last_validated_at is not None


class TestTokenEndpoints:
    @pytest.mark.asyncio
    async def test_save_returns_prefix_only(self, client, db, settings) -> None:
        user = await create_user(db)
        await create_installation(db, owner=user)
        await db.commit()
        login(client, user, settings)

        resp = await client.post(
            "/api/tokens",
            json={"installation_id": 42, "token": TEST_AGENT_TOKEN, "token_type": "api_key"},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["key_status"] == "active"
        assert data["key_prefix"] == "sk-ant-api03..."
        assert TEST_AGENT_TOKEN not in resp.text

    @pytest.mark.asyncio
    async def test_save_for_foreign_installation_is_403(self, client, db, tenant, settings) -> None:
        other = await create_user(db, github_user_id=5005, login="oscar")
        await db.commit()
        login(client, other, settings)
        resp = await client.post(
            "/api/tokens",
            json={"installation_id": 42, "token": TEST_AGENT_TOKEN, "token_type": "api_key"},
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_invalid_format_is_400(self, client, tenant, settings) -> None:
        user, _ = tenant
        login(client, user, settings)
        resp = await client.post(
            "/api/tokens",
            json={"installation_id": 42, "token": "not-a-key-at-all-really", "token_type": "api_key"},
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_list_tokens(self, client, tenant, settings) -> None:
        user, _ = tenant
        login(client, user, settings)
        resp = await client.get("/api/tokens")
        assert resp.status_code == 200
        assert [t["installation_id"] for t in resp.json()] == [42]

    @pytest.mark.asyncio
    async def test_validate_updates_status(self, client, tenant, settings) -> None:
        user, _ = tenant
        login(client, user, settings)
        outcome = ValidationOutcome("unauthorized", "Invalid or expired token")
        with patch("app.api.tokens.probe_token", new=AsyncMock(return_value=outcome)) as probe:
            resp = await client.post("/api/tokens/validate", json={"installation_id": 42})

        assert resp.status_code == 200
        data = resp.json()
        assert data["valid"] is False
        assert data["credential"]["key_status"] == "invalid"
        probe.assert_awaited_once_with(TEST_AGENT_TOKEN, "api_key")
