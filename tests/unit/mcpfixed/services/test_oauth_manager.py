# -*- coding: utf-8 -*-
"""Location: ./tests/unit/mcpfixed/services/test_oauth_manager.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Tests for the OAuth authorization flow engine.
"""

# Standard
import asyncio
from contextlib import contextmanager
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

# Third-Party
import httpx
from pydantic import SecretStr
import pytest
import pytest_asyncio
import respx
from sqlalchemy import select, update

# First-Party
from mcpfixed.db import OAuthConfiguration, OAuthToken, PendingAuthorizationFlow, Tool, utc_now
from mcpfixed.errors import AuthExpiredError, AuthRequiredError, ConflictError, NotFoundError, UpstreamError
from mcpfixed.schemas import AuthFlowState, OAuthConfigurationCreate, OAuthConfigurationUpdate, TokenStatus
from mcpfixed.services.oauth_manager import build_authorization_url, code_challenge_s256, MANUAL_INTERVENTION_MESSAGE, OAuthManager
from mcpfixed.services.token_storage_service import TokenStorageService
from mcpfixed.services.tool_registry import DbToolRegistry

TOKEN_URL = "https://auth.example.com/token"


@pytest_asyncio.fixture
async def http_client():
    client = httpx.AsyncClient()
    yield client
    await client.aclose()


@pytest.fixture
def manager(encryption, http_client):
    return OAuthManager(token_storage=TokenStorageService(encryption), encryption=encryption, http_client=http_client)


@pytest.fixture
def tool(test_db):
    row = Tool(name="wiki", endpoint="https://mcp.example.com/mcp")
    test_db.add(row)
    test_db.commit()
    return row


@pytest.fixture
def config(manager, test_db, tool):
    return manager.create_configuration(
        test_db,
        OAuthConfigurationCreate(
            tool_id=tool.name,
            client_id="client-1",
            client_secret=SecretStr("s3cret"),
            authorization_url="https://auth.example.com/authorize",
            token_url=TOKEN_URL,
            scopes=["read", "write"],
            redirect_uri="http://localhost:8765/oauth/callback",
        ),
    )


def _seed_token(manager, test_db, config, **payload):
    row = test_db.get(OAuthConfiguration, config.id)
    data = {"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 7200}
    data.update(payload)
    return manager.token_storage.store_tokens(test_db, row, {k: v for k, v in data.items() if v is not None})


def _expire(test_db, config):
    test_db.execute(update(OAuthToken).where(OAuthToken.config_id == config.id).values(expires_at=utc_now() - timedelta(minutes=1)))
    test_db.commit()
    test_db.expire_all()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
def test_create_configuration_encrypts_secret(manager, test_db, config, tool):
    row = test_db.get(OAuthConfiguration, config.id)
    assert row.client_secret_encrypted != "s3cret"
    assert manager.encryption.decrypt_secret(row.client_secret_encrypted) == "s3cret"
    assert test_db.get(Tool, tool.id).auth_type == "oauth"
    assert "client_secret" not in config.model_dump()


def test_create_configuration_conflict(manager, test_db, config, tool):
    with pytest.raises(ConflictError):
        manager.create_configuration(
            test_db,
            OAuthConfigurationCreate(tool_id=tool.id, client_id="other", authorization_url="https://a.example/auth", token_url="https://a.example/token", redirect_uri="http://localhost/cb"),
        )


def test_create_configuration_unknown_tool(manager, test_db):
    with pytest.raises(NotFoundError):
        manager.create_configuration(
            test_db,
            OAuthConfigurationCreate(tool_id="missing", client_id="c", authorization_url="https://a.example/auth", token_url="https://a.example/token", redirect_uri="http://localhost/cb"),
        )


def test_configuration_rejects_plain_http():
    with pytest.raises(ValueError):
        OAuthConfigurationCreate(tool_id="t", client_id="c", authorization_url="http://a.example/auth", token_url="https://a.example/token", redirect_uri="http://localhost/cb")


def test_update_configuration(manager, test_db, config):
    updated = manager.update_configuration(test_db, config.id, OAuthConfigurationUpdate(scopes=["read"], pkce_enabled=False))
    assert updated.scopes == ["read"]
    assert updated.pkce_enabled is False
    with pytest.raises(NotFoundError):
        manager.update_configuration(test_db, "missing", OAuthConfigurationUpdate(scopes=[]))


def test_authorization_url_core_params_override_extras(test_db, config):
    row = test_db.get(OAuthConfiguration, config.id)
    row.additional_params = {"prompt": "consent", "state": "attacker"}
    url = build_authorization_url(row, "real-state", "http://localhost/cb", ["read"], None)
    query = parse_qs(urlparse(url).query)
    assert query["state"] == ["real-state"]
    assert query["prompt"] == ["consent"]
    assert "code_challenge" not in query


# ---------------------------------------------------------------------------
# Flow
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_initiate_reports_manual_intervention(manager, test_db, config):
    result = await manager.initiate_auth_flow(test_db, "wiki")

    assert result.success is False
    assert result.requires_browser is True
    assert result.flow_state == AuthFlowState.MANUAL_INTERVENTION_PENDING
    intervention = result.manual_intervention
    assert intervention.message == MANUAL_INTERVENTION_MESSAGE
    assert any("--callback" in step for step in intervention.instructions)

    query = parse_qs(urlparse(intervention.authorization_url).query)
    assert query["state"] == [intervention.state]
    assert query["code_challenge_method"] == ["S256"]
    assert query["scope"] == ["read write"]

    flow = test_db.execute(select(PendingAuthorizationFlow).where(PendingAuthorizationFlow.state == intervention.state)).scalar_one()
    assert code_challenge_s256(flow.code_verifier) == query["code_challenge"][0]
    assert len(flow.code_verifier) == 128


@pytest.mark.asyncio
async def test_initiate_unknown_tool(manager, test_db):
    result = await manager.initiate_auth_flow(test_db, "nope")
    assert result.success is False
    assert result.error.type == "NotFound"


@pytest.mark.asyncio
@respx.mock
async def test_callback_issues_token_and_consumes_state(manager, test_db, config):
    route = respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 7200, "token_type": "bearer"}))
    started = await manager.initiate_auth_flow(test_db, "wiki")
    state = started.manual_intervention.state

    result = await manager.handle_callback(test_db, "the-code", state)

    assert result.success is True
    assert result.flow_state == AuthFlowState.TOKEN_ISSUED
    assert result.token.has_refresh_token is True
    sent = parse_qs(route.calls.last.request.content.decode())
    assert sent["grant_type"] == ["authorization_code"]
    assert sent["code"] == ["the-code"]
    assert sent["client_secret"] == ["s3cret"]
    assert len(sent["code_verifier"][0]) == 128

    headers = await manager.get_auth_headers(test_db, "wiki")
    assert headers == {"Authorization": "Bearer at-1"}

    replay = await manager.handle_callback(test_db, "the-code", state)
    assert replay.success is False
    assert replay.error.type == "NotFound"
    assert route.call_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_callback_with_expired_state(manager, test_db, config):
    route = respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"access_token": "at"}))
    started = await manager.initiate_auth_flow(test_db, "wiki")
    state = started.manual_intervention.state
    test_db.execute(update(PendingAuthorizationFlow).values(expires_at=utc_now() - timedelta(seconds=1)))
    test_db.commit()

    result = await manager.handle_callback(test_db, "code", state)

    assert result.success is False
    assert result.error.type == "NotFound"
    assert not route.called
    assert test_db.execute(select(PendingAuthorizationFlow)).first() is None


@pytest.mark.asyncio
@respx.mock
async def test_callback_invalid_grant(manager, test_db, config):
    respx.post(TOKEN_URL).mock(return_value=httpx.Response(400, json={"error": "invalid_grant"}))
    started = await manager.initiate_auth_flow(test_db, "wiki")

    result = await manager.handle_callback(test_db, "bad-code", started.manual_intervention.state)

    assert result.success is False
    assert result.error.type == "AuthExpired"
    assert test_db.execute(select(OAuthToken)).first() is None


@pytest.mark.asyncio
@respx.mock
async def test_form_encoded_token_response(manager, test_db, config):
    respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, text="access_token=at-form&token_type=bearer"))
    started = await manager.initiate_auth_flow(test_db, "wiki")

    result = await manager.handle_callback(test_db, "code", started.manual_intervention.state)

    assert result.success is True
    assert await manager.get_auth_headers(test_db, "wiki") == {"Authorization": "Bearer at-form"}


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
@respx.mock
async def test_refresh_skips_valid_token(manager, test_db, config):
    route = respx.post(TOKEN_URL)
    _seed_token(manager, test_db, config)

    result = await manager.refresh_token(test_db, "wiki")

    assert result.success is True
    assert result.refreshed is False
    assert not route.called


@pytest.mark.asyncio
@respx.mock
async def test_forced_refresh_keeps_refresh_token(manager, test_db, config):
    route = respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"access_token": "at-2", "expires_in": 3600}))
    _seed_token(manager, test_db, config)

    result = await manager.refresh_token(test_db, "wiki", force=True)

    assert result.success is True
    assert result.flow_state == AuthFlowState.REFRESHED
    sent = parse_qs(route.calls.last.request.content.decode())
    assert sent["grant_type"] == ["refresh_token"]
    assert sent["refresh_token"] == ["rt-1"]
    row = manager.token_storage.get_token_row(test_db, config.id)
    assert manager.token_storage.decrypt_access_token(row) == "at-2"
    assert manager.token_storage.decrypt_refresh_token(row) == "rt-1"


@pytest.mark.asyncio
async def test_refresh_without_token(manager, test_db, config):
    result = await manager.refresh_token(test_db, "wiki")
    assert result.success is False
    assert result.error.type == "AuthRequired"


@pytest.mark.asyncio
async def test_refresh_without_refresh_token(manager, test_db, config):
    _seed_token(manager, test_db, config, refresh_token=None)
    _expire(test_db, config)

    result = await manager.refresh_token(test_db, "wiki")

    assert result.success is False
    assert result.error.type == "AuthExpired"
    assert result.should_retry is False


@pytest.mark.asyncio
@respx.mock
async def test_refresh_invalid_grant_discards_refresh_token(manager, test_db, config):
    respx.post(TOKEN_URL).mock(return_value=httpx.Response(400, json={"error": "invalid_grant"}))
    _seed_token(manager, test_db, config)
    _expire(test_db, config)

    result = await manager.refresh_token(test_db, "wiki")

    assert result.success is False
    assert result.flow_state == AuthFlowState.EXPIRED
    assert result.should_retry is False
    assert manager.token_storage.get_token_row(test_db, config.id).refresh_token is None


@pytest.mark.asyncio
@respx.mock
async def test_refresh_network_failure_is_retryable(manager, test_db, config, isolated_settings, monkeypatch):
    monkeypatch.setattr(isolated_settings, "oauth_max_retries", 1)
    route = respx.post(TOKEN_URL).mock(side_effect=httpx.ConnectError("refused"))
    _seed_token(manager, test_db, config)

    result = await manager.refresh_token(test_db, "wiki", force=True)

    assert result.success is False
    assert result.should_retry is True
    assert result.error.type == "NetworkError"
    assert route.call_count == 2
    assert manager.token_storage.get_token_row(test_db, config.id).refresh_token is not None


@pytest.mark.asyncio
@respx.mock
async def test_refresh_server_error_recovers(manager, test_db, config):
    respx.post(TOKEN_URL).mock(side_effect=[httpx.Response(503), httpx.Response(200, json={"access_token": "at-2"})])
    _seed_token(manager, test_db, config)

    result = await manager.refresh_token(test_db, "wiki", force=True)

    assert result.success is True


# ---------------------------------------------------------------------------
# Headers, status and logout
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_headers_empty_without_configuration(manager, test_db, tool):
    assert await manager.get_auth_headers(test_db, tool.id) == {}


@pytest.mark.asyncio
async def test_headers_without_token_start_flow(manager, test_db, config):
    with pytest.raises(AuthRequiredError) as exc:
        await manager.get_auth_headers(test_db, "wiki")
    assert exc.value.manual_intervention is not None
    assert test_db.execute(select(PendingAuthorizationFlow)).first() is not None


@pytest.mark.asyncio
@respx.mock
async def test_headers_refresh_expired_token(manager, test_db, config):
    respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"access_token": "fresh", "expires_in": 7200}))
    _seed_token(manager, test_db, config)
    _expire(test_db, config)

    assert await manager.get_auth_headers(test_db, "wiki") == {"Authorization": "Bearer fresh"}


@pytest.mark.asyncio
async def test_headers_expired_without_refresh_token(manager, test_db, config):
    _seed_token(manager, test_db, config, refresh_token=None)
    _expire(test_db, config)

    with pytest.raises(AuthExpiredError):
        await manager.get_auth_headers(test_db, "wiki")


@pytest.mark.asyncio
async def test_status_and_logout(manager, test_db, config, tool):
    status = manager.get_auth_status(test_db, "wiki")
    assert status.configured is True
    assert status.status == TokenStatus.NO_TOKEN

    await manager.initiate_auth_flow(test_db, "wiki")
    assert manager.get_auth_status(test_db, "wiki").flow_state == AuthFlowState.MANUAL_INTERVENTION_PENDING

    _seed_token(manager, test_db, config)
    status = manager.get_auth_status(test_db, "wiki")
    assert status.authenticated is True
    assert status.needs_refresh is False
    assert "at-1" not in status.model_dump_json()

    assert manager.logout(test_db, "wiki") == 1
    assert manager.get_auth_status(test_db, "wiki").status == TokenStatus.NO_TOKEN
    assert test_db.execute(select(PendingAuthorizationFlow)).first() is None


def test_status_unconfigured_and_logout_unknown(manager, test_db, tool):
    assert manager.get_auth_status(test_db, "wiki").configured is False
    with pytest.raises(NotFoundError):
        manager.logout(test_db, "wiki")


@pytest.mark.asyncio
async def test_authentication_probe_rejected(manager, test_db, config, stub_client):
    manager.tool_registry = DbToolRegistry(encryption=manager.encryption)
    manager.protocol_client = stub_client
    stub_client.operations = UpstreamError("forbidden", status=403)
    _seed_token(manager, test_db, config)

    result = await manager.test_authentication(test_db, "wiki")

    assert result.authenticated is False
    assert result.probe_ok is False
    assert stub_client.list_calls[0]["headers"] == {"Authorization": "Bearer at-1"}


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_cleanup_expired_flows(manager, test_db, config):
    await manager.initiate_auth_flow(test_db, "wiki")
    await manager.initiate_auth_flow(test_db, "wiki")
    assert manager.cleanup_expired_flows(test_db) == 0

    test_db.execute(update(PendingAuthorizationFlow).values(expires_at=utc_now() - timedelta(seconds=5)))
    test_db.commit()
    assert manager.cleanup_expired_flows(test_db) == 2


@pytest.mark.asyncio
@respx.mock
async def test_refresh_expiring_tokens(manager, test_db, config):
    respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"access_token": "renewed", "expires_in": 86400}))
    _seed_token(manager, test_db, config, expires_in=60)

    counts = await manager.refresh_expiring_tokens(test_db)

    assert counts == {"checked": 1, "refreshed": 1, "failed": 0}
    row = manager.token_storage.get_token_row(test_db, config.id)
    assert manager.token_storage.decrypt_access_token(row) == "renewed"


def _rotating_token_endpoint(spent):
    """Token endpoint that rotates refresh tokens and rejects spent ones."""
    live = {"rt-1"}

    def handler(request):
        sent = parse_qs(request.content.decode())["refresh_token"][0]
        if sent not in live:
            return httpx.Response(400, json={"error": "invalid_grant"})
        live.discard(sent)
        spent.append(sent)
        issued = f"rt-{len(spent) + 1}"
        live.add(issued)
        return httpx.Response(200, json={"access_token": f"at-{len(spent) + 1}", "refresh_token": issued, "expires_in": 7200})

    return handler


@pytest.mark.asyncio
@respx.mock
async def test_concurrent_refreshes_keep_rotated_refresh_token(manager, test_db, config):
    spent = []
    respx.post(TOKEN_URL).mock(side_effect=_rotating_token_endpoint(spent))
    _seed_token(manager, test_db, config)

    results = await asyncio.gather(manager.refresh_token(test_db, "wiki", force=True), manager.refresh_token(test_db, "wiki", force=True))

    assert [r.success for r in results] == [True, True]
    assert spent == ["rt-1", "rt-2"]
    row = manager.token_storage.get_token_row(test_db, config.id)
    assert manager.token_storage.decrypt_refresh_token(row) == "rt-3"
    assert len(test_db.execute(select(OAuthToken)).all()) == 1


@pytest.mark.asyncio
@respx.mock
async def test_concurrent_header_requests_refresh_once(manager, test_db, config):
    route = respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"access_token": "fresh", "expires_in": 7200}))
    _seed_token(manager, test_db, config)
    _expire(test_db, config)

    headers = await asyncio.gather(manager.get_auth_headers(test_db, "wiki"), manager.get_auth_headers(test_db, "wiki"))

    assert headers == [{"Authorization": "Bearer fresh"}] * 2
    assert route.call_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_refresh_with_unreadable_refresh_token(manager, test_db, config):
    route = respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"access_token": "at-2"}))
    _seed_token(manager, test_db, config)
    test_db.execute(update(OAuthToken).values(refresh_token="not-a-ciphertext"))
    test_db.commit()

    result = await manager.refresh_token(test_db, "wiki", force=True)

    assert result.success is False
    assert result.error.type == "SecurityError"
    assert result.should_retry is False
    assert not route.called


@pytest.mark.asyncio
@respx.mock
async def test_callback_with_fractional_expires_in(manager, test_db, config):
    respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"access_token": "at-1", "expires_in": "7200.0"}))
    started = await manager.initiate_auth_flow(test_db, "wiki")

    result = await manager.handle_callback(test_db, "code", started.manual_intervention.state)

    assert result.success is True
    assert result.token.status == TokenStatus.VALID
    assert result.token.expires_at is not None


@pytest.mark.asyncio
@respx.mock
async def test_background_refresh_loop(manager, test_db, config, isolated_settings, monkeypatch):
    monkeypatch.setattr(isolated_settings, "oauth_max_retries", 0)
    broken_url = "https://broken.example.com/token"
    respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"access_token": "renewed", "expires_in": 86400}))
    broken = respx.post(broken_url).mock(return_value=httpx.Response(400, json={"error": "invalid_request"}))

    other_tool = Tool(name="notes", endpoint="https://notes.example.com/mcp")
    test_db.add(other_tool)
    test_db.commit()
    other = manager.create_configuration(
        test_db,
        OAuthConfigurationCreate(tool_id="notes", client_id="client-2", authorization_url="https://broken.example.com/authorize", token_url=broken_url, redirect_uri="http://localhost/cb"),
    )
    # The failing token comes first in expiry order
    _seed_token(manager, test_db, other, expires_in=30)
    _seed_token(manager, test_db, config, expires_in=60)
    await manager.initiate_auth_flow(test_db, "wiki")
    test_db.execute(update(PendingAuthorizationFlow).values(expires_at=utc_now() - timedelta(seconds=5)))
    test_db.commit()

    @contextmanager
    def session_factory():
        yield test_db

    task = manager.start_background_refresh(interval=0.01, session_factory=session_factory)
    for _ in range(200):
        if test_db.execute(select(PendingAuthorizationFlow)).first() is None:
            break
        await asyncio.sleep(0.01)
    await manager.stop_background_refresh()

    assert task.done()
    assert broken.called
    renewed = manager.token_storage.get_token_row(test_db, config.id)
    assert manager.token_storage.decrypt_access_token(renewed) == "renewed"
    untouched = manager.token_storage.get_token_row(test_db, other.id)
    assert manager.token_storage.decrypt_access_token(untouched) == "at-1"
    assert untouched.refresh_token is not None
    assert test_db.execute(select(PendingAuthorizationFlow)).first() is None


@pytest.mark.asyncio
async def test_stop_background_refresh_without_task(manager):
    await manager.stop_background_refresh()
