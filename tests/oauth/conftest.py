from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from macro_mcp import remote_auth
from macro_mcp.auth.models import IssuedAuthorizationCode, PendingAuthorization, RegisteredClient
from macro_mcp.config import Settings
from macro_mcp.http_server import create_app
from macro_mcp.persistence import InMemoryProvider
from macro_mcp.upstream import SupabaseAuthClient, UpstreamSession, UpstreamUser

from oauth_helpers import OAuthFlow, PUBLIC_URL, SUPABASE_URL


@pytest.fixture(autouse=True)
def settings(monkeypatch):
    monkeypatch.setattr(Settings, "MCP_SERVER_PUBLIC_URL", PUBLIC_URL)
    monkeypatch.setattr(Settings, "OAUTH_PATH_PREFIX", "/oauth")
    monkeypatch.setattr(Settings, "MCP_RESOURCE_PATH", "/mcp")
    monkeypatch.setattr(Settings, "SUPABASE_URL", SUPABASE_URL)
    monkeypatch.setattr(Settings, "SUPABASE_ANON_KEY", "anon-key")
    monkeypatch.setattr(Settings, "UPSTREAM_FLOW", "pkce")
    monkeypatch.setattr(Settings, "OAUTH_STATE_TTL_SECONDS", 600)
    monkeypatch.setattr(Settings, "OAUTH_CODE_TTL_SECONDS", 600)
    monkeypatch.setattr(Settings, "OAUTH_TOKEN_EXPIRES_IN", 3600)
    monkeypatch.setattr(Settings, "OAUTH_DEFAULT_CLIENT_ID", "mcp-client")
    monkeypatch.setattr(Settings, "OAUTH_DEFAULT_SCOPE", "openid")
    monkeypatch.setattr(Settings, "OAUTH_ALLOW_PLAIN_PKCE_FALLBACK", False)
    monkeypatch.setattr(Settings, "OAUTH_ALLOW_CONFIDENTIAL_CLIENTS", True)
    monkeypatch.setattr(Settings, "OAUTH_REQUIRE_REGISTERED_CLIENT", False)
    return Settings


@pytest.fixture(autouse=True)
def stores(monkeypatch):
    """Fresh in-memory stores for every test: (pending, codes, clients)."""
    pending = InMemoryProvider(PendingAuthorization)
    codes = InMemoryProvider(IssuedAuthorizationCode)
    clients = InMemoryProvider(RegisteredClient)
    monkeypatch.setattr(remote_auth, "pending_authorizations_store", pending)
    monkeypatch.setattr(remote_auth, "authorization_codes_store", codes)
    monkeypatch.setattr(remote_auth, "registered_clients_store", clients)
    return pending, codes, clients


@pytest.fixture
def upstream(monkeypatch):
    """
    Real URL building, mocked network calls. Every upstream code exchanges to
    the same session and every token resolves to the same user.
    """
    user = UpstreamUser(id="user-1", email="user@example.com")
    client = SupabaseAuthClient(base_url=SUPABASE_URL, anon_key="anon-key")
    client.exchange_code_for_session = AsyncMock(return_value=UpstreamSession(
        access_token="sb-access-token",
        refresh_token="sb-refresh-token",
        expires_in=1800,
        user=user,
    ))
    client.get_user = AsyncMock(return_value=user)
    monkeypatch.setattr(remote_auth, "get_upstream_client", lambda: client)
    return client


@pytest.fixture
def app(settings, upstream):
    return create_app()


@pytest.fixture
def http(app):
    return TestClient(app, follow_redirects=False)


@pytest.fixture
def flow(http):
    return OAuthFlow(http)
