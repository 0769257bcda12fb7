from datetime import datetime, timedelta, timezone

import pytest

from macro_mcp.auth.models import CodeChallengeMethod, PendingAuthorization
from macro_mcp.upstream import UpstreamAuthError

from oauth_helpers import CHALLENGE, CLIENT_REDIRECT, PUBLIC_URL, query_of


class TestCallbackWithUpstreamCode:

    def test_issues_code_and_redirects_to_client(self, flow, stores):
        _, codes_store, _ = stores
        response = flow.callback(flow.start())
        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(CLIENT_REDIRECT + "?")
        params = query_of(location)
        assert params["state"] == "client-state-xyz"

        record = codes_store.get(params["code"])
        assert record.upstream_access_token == "sb-access-token"
        assert record.upstream_refresh_token == "sb-refresh-token"
        assert record.upstream_expires_in == 1800
        assert record.code_challenge == CHALLENGE
        assert record.code_challenge_method is CodeChallengeMethod.S256
        assert record.redirect_uri == CLIENT_REDIRECT
        assert record.client_id == "mcp-client"
        assert record.user_id == "user-1"
        assert record.user_email == "user@example.com"

    def test_exchanges_with_server_side_verifier(self, flow, stores, upstream):
        pending_store, _, _ = stores
        state = flow.start()
        verifier = pending_store.get(state).upstream_code_verifier
        flow.callback(state, code="upstream-xyz")
        upstream.exchange_code_for_session.assert_awaited_once_with("upstream-xyz", verifier)

    def test_state_is_single_use(self, flow, upstream):
        state = flow.start()
        assert flow.callback(state).status_code == 302

        replay = flow.callback(state)
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_request"
        assert upstream.exchange_code_for_session.await_count == 1

    def test_client_state_omitted_when_not_supplied(self, flow):
        response = flow.callback(flow.start(state=None))
        assert "state" not in query_of(response.headers["location"])

    def test_existing_query_on_client_redirect_is_preserved(self, flow):
        response = flow.callback(flow.start(redirect_uri="myapp://oauth/done?from=mcp"))
        location = response.headers["location"]
        assert location.startswith("myapp://oauth/done?")
        params = query_of(location)
        assert params["from"] == "mcp"
        assert params["code"]

    def test_every_callback_mints_a_fresh_code(self, flow):
        first = query_of(flow.callback(flow.start()).headers["location"])["code"]
        second = query_of(flow.callback(flow.start()).headers["location"])["code"]
        assert first != second
        assert len(first) >= 43

    def test_code_ttl_is_applied(self, flow, stores):
        _, codes_store, _ = stores
        code = flow.issue_code()
        record = codes_store.get(code)
        assert (record.expires_at - record.created_at) == timedelta(seconds=600)


class TestCallbackStateValidation:

    def test_unknown_state(self, flow, stores):
        _, codes_store, _ = stores
        response = flow.callback("made-up-state")
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert len(codes_store) == 0

    def test_state_only_is_rejected_in_pkce_flow(self, flow, stores):
        pending_store, _, _ = stores
        state = flow.start()
        response = flow.http.get("/oauth/callback", params={"state": state})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        # Nothing was consumed; the real upstream redirect can still complete
        assert pending_store.get(state) is not None

    def test_state_only_with_unknown_state(self, http, stores):
        _, codes_store, _ = stores
        response = http.get("/oauth/callback", params={"state": "never-issued"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert "location" not in response.headers
        assert len(codes_store) == 0

    def test_missing_state(self, http):
        response = http.get("/oauth/callback", params={"code": "upstream-code"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_expired_state(self, flow, stores, upstream):
        pending_store, codes_store, _ = stores
        past = datetime.now(timezone.utc) - timedelta(minutes=20)
        pending_store.set("old-state", PendingAuthorization(
            state_token="old-state",
            client_id="mcp-client",
            redirect_uri=CLIENT_REDIRECT,
            scope="openid",
            code_challenge=CHALLENGE,
            code_challenge_method=CodeChallengeMethod.S256,
            upstream_code_verifier="v" * 43,
            created_at=past,
            expires_at=past + timedelta(minutes=10),
        ))
        response = flow.callback("old-state")
        assert response.status_code == 400
        assert len(codes_store) == 0
        upstream.exchange_code_for_session.assert_not_awaited()


class TestCallbackUpstreamFailures:

    def test_upstream_error_shows_page_and_burns_state(self, flow, stores):
        pending_store, codes_store, _ = stores
        state = flow.start()
        response = flow.http.get("/oauth/callback", params={
            "state": state,
            "error": "access_denied",
            "error_description": "<script>alert(1)</script>",
        })
        assert response.status_code == 400
        assert "text/html" in response.headers["content-type"]
        assert "<script>alert(1)</script>" not in response.text
        assert "&lt;script&gt;" in response.text
        assert pending_store.get(state) is None
        assert len(codes_store) == 0

    def test_upstream_error_without_state(self, http):
        response = http.get("/oauth/callback", params={"error": "server_error"})
        assert response.status_code == 400
        assert "Authentication Failed" in response.text

    def test_exchange_failure_issues_no_code(self, flow, stores, upstream):
        pending_store, codes_store, _ = stores
        upstream.exchange_code_for_session.side_effect = UpstreamAuthError("rejected", status_code=400)
        state = flow.start()
        response = flow.callback(state)
        assert response.status_code == 502
        assert len(codes_store) == 0
        # The attempt is over; the state cannot be retried
        assert pending_store.get(state) is None

    def test_upstream_code_without_upstream_verifier(self, flow, stores, settings, monkeypatch, upstream):
        _, codes_store, _ = stores
        monkeypatch.setattr(settings, "UPSTREAM_FLOW", "implicit")
        response = flow.callback(flow.start(), code="unexpected")
        assert response.status_code == 502
        assert len(codes_store) == 0
        upstream.exchange_code_for_session.assert_not_awaited()

    def test_code_store_failure_shows_error_page(self, flow, stores, monkeypatch):
        import redis

        _, codes_store, _ = stores

        def broken_set(*args, **kwargs):
            raise redis.ConnectionError("down")

        monkeypatch.setattr(codes_store, "set", broken_set)
        response = flow.callback(flow.start())
        assert response.status_code == 500
        assert "location" not in response.headers


class TestImplicitCallback:

    @pytest.fixture(autouse=True)
    def implicit(self, settings, monkeypatch):
        monkeypatch.setattr(settings, "UPSTREAM_FLOW", "implicit")

    def test_state_only_renders_bridge_page_without_consuming_state(self, flow, stores):
        pending_store, _, _ = stores
        state = flow.start()
        response = flow.http.get("/oauth/callback", params={"state": state})
        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]
        assert f'action="{PUBLIC_URL}/oauth/callback"' in response.text
        assert f'value="{state}"' in response.text
        assert pending_store.get(state) is not None

    def test_bridge_page_escapes_state(self, http, stores):
        pending_store, _, _ = stores
        hostile = '"><script>x</script>'
        now = datetime.now(timezone.utc)
        pending_store.set(hostile, PendingAuthorization(
            state_token=hostile,
            client_id="mcp-client",
            redirect_uri=CLIENT_REDIRECT,
            scope="openid",
            code_challenge=CHALLENGE,
            code_challenge_method=CodeChallengeMethod.S256,
            created_at=now,
            expires_at=now + timedelta(minutes=10),
        ))
        response = http.get("/oauth/callback", params={"state": hostile})
        assert response.status_code == 200
        assert "<script>x</script>" not in response.text

    def test_unknown_state_gets_no_bridge(self, http):
        response = http.get("/oauth/callback", params={"state": "never-issued"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_consumed_state_gets_no_bridge(self, flow):
        state = flow.start()
        flow.http.post("/oauth/callback", data={"state": state, "access_token": "fragment-access"})
        response = flow.http.get("/oauth/callback", params={"state": state})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_expired_state_gets_no_bridge(self, http, stores):
        pending_store, _, _ = stores
        past = datetime.now(timezone.utc) - timedelta(minutes=20)
        pending_store.set("old-state", PendingAuthorization(
            state_token="old-state",
            client_id="mcp-client",
            redirect_uri=CLIENT_REDIRECT,
            scope="openid",
            code_challenge=CHALLENGE,
            code_challenge_method=CodeChallengeMethod.S256,
            created_at=past,
            expires_at=past + timedelta(minutes=10),
        ))
        response = http.get("/oauth/callback", params={"state": "old-state"})
        assert response.status_code == 400
        assert "text/html" not in response.headers["content-type"]

    def test_posted_tokens_are_verified_and_bound_to_code(self, flow, stores, upstream):
        _, codes_store, _ = stores
        state = flow.start()
        response = flow.http.post("/oauth/callback", data={
            "state": state,
            "access_token": "fragment-access",
            "refresh_token": "fragment-refresh",
            "expires_in": "900",
        })
        assert response.status_code == 303
        upstream.get_user.assert_awaited_once_with("fragment-access")

        record = codes_store.get(query_of(response.headers["location"])["code"])
        assert record.upstream_access_token == "fragment-access"
        assert record.upstream_refresh_token == "fragment-refresh"
        assert record.upstream_expires_in == 900

    def test_tokens_in_query_are_accepted(self, flow, stores):
        _, codes_store, _ = stores
        response = flow.http.get("/oauth/callback", params={
            "state": flow.start(),
            "access_token": "query-access",
            "expires_in": "not-a-number",
        })
        assert response.status_code == 302
        record = codes_store.get(query_of(response.headers["location"])["code"])
        assert record.upstream_expires_in is None
        assert record.upstream_refresh_token is None

    def test_unverifiable_token_issues_no_code(self, flow, stores, upstream):
        _, codes_store, _ = stores
        upstream.get_user.side_effect = UpstreamAuthError("bad token", status_code=401)
        response = flow.http.post("/oauth/callback", data={"state": flow.start(), "access_token": "forged"})
        assert response.status_code == 502
        assert len(codes_store) == 0

    def test_post_without_token_is_rejected(self, flow, stores):
        pending_store, _, _ = stores
        state = flow.start()
        response = flow.http.post("/oauth/callback", data={"state": state})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert pending_store.get(state) is not None

    def test_posted_error_burns_state(self, flow, stores):
        pending_store, _, _ = stores
        state = flow.start()
        response = flow.http.post("/oauth/callback", data={"state": state, "error": "access_denied"})
        assert response.status_code == 400
        assert pending_store.get(state) is None
