"""
===========================================================================
OAUTH AUTHORIZATION SERVER PROXY IN FRONT OF SUPABASE AUTH
===========================================================================

### Requirement ###
-------------------------------
1.  MCP hosts (Claude Desktop, Cursor, ...) expect the server they talk to to be
    a standards compliant OAuth 2.0 authorization server: RFC 8414 discovery,
    RFC 7591 dynamic client registration, and the authorization code grant with
    RFC 7636 PKCE.

2.  User accounts live in a hosted identity provider (Supabase Auth, federated
    to Google). Supabase is not an authorization server the hosts can use
    directly, and its credentials must not be handed to arbitrary clients
    before the user has authenticated.

### Solution and Mechanism ###
-----------------------------
This module makes the macro-mcp backend itself the authorization server and
delegates only the act of logging in to Supabase.

1.  /authorize validates the client request, parks it as a PendingAuthorization
    under a fresh state token, and sends the browser to Supabase with our
    /callback (carrying that state token) as the post-login destination.

2.  /callback consumes the PendingAuthorization (single use, taken atomically
    before any other work), obtains a verified Supabase session for the user,
    and mints our own short lived authorization code bound to the client's
    PKCE challenge and redirect URI.

3.  /token consumes that code (single use), checks the PKCE verifier and the
    redirect URI, and hands the Supabase access/refresh tokens to the client.
    The protected resource later validates those tokens against Supabase.

4.  /register issues client ids (and, for confidential clients, secrets) so
    hosts need no pre-shared credentials.

Every step is a separate stateless request, correlated only through the store.
"""


from fastapi import Request, status, Query, Form, APIRouter
from fastapi.responses import RedirectResponse, JSONResponse, Response
from fastapi.templating import Jinja2Templates
from urllib.parse import urlencode, urlparse, urlunparse, parse_qsl
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.status import HTTP_401_UNAUTHORIZED
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional
import base64
import binascii
import hashlib
import hmac
import secrets
import redis

from macro_mcp.config import Settings, public_base_url, public_url, oauth_url
from macro_mcp.logging_util import get_logger, redact
from macro_mcp.persistence import PersistenceFactory
from macro_mcp.upstream import UpstreamAuthError, UpstreamSession, get_upstream_client
from macro_mcp.utils.exceptions import OAuthError, NO_STORE_HEADERS
from macro_mcp.auth.models import (
    ClientRegistrationRequest,
    CodeChallengeMethod,
    IssuedAuthorizationCode,
    PendingAuthorization,
    RegisteredClient,
    TokenEndpointAuthMethod,
)
from macro_mcp.auth.pkce import (
    generate_code_verifier,
    is_well_formed_challenge,
    parse_challenge_method,
    s256_challenge,
    verify_code_verifier,
)


logger = get_logger(__name__)

# Mounted under Settings.OAUTH_PATH_PREFIX
authRouter = APIRouter()
# Mounted at the root: discovery documents and health
publicRouter = APIRouter()

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent / "templates"))


# --- Configuration ---

PUBLIC_PATHS = {
    "/",
    "/health",
    "/favicon.ico",
}

PUBLIC_PREFIXES = (
    "/.well-known/",
)

SUPPORTED_RESPONSE_TYPES = ["code"]
# Grant types a client may list at registration. The token endpoint itself only
# serves authorization_code; refresh_token is tolerated here because hosts
# routinely ask for it.
REGISTRABLE_GRANT_TYPES = {"authorization_code", "refresh_token"}

DISCOVERY_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, MCP-Protocol-Version",
}

INVALID_GRANT_DESCRIPTION = "Authorization code is invalid, expired, or was issued to another request"


pending_authorizations_store = PersistenceFactory.create(PendingAuthorization, scope="pending_authorizations")
authorization_codes_store = PersistenceFactory.create(IssuedAuthorizationCode, scope="authorization_codes")
registered_clients_store = PersistenceFactory.create(RegisteredClient, scope="registered_clients")


def all_stores():
    return [pending_authorizations_store, authorization_codes_store, registered_clients_store]


@contextmanager
def store_errors(operation: str):
    """Store failures become server_error without leaking backend detail."""
    try:
        yield
    except redis.RedisError as e:
        logger.error(f"Store failure during {operation}", exc_info=e)
        raise OAuthError.server_error() from e


def build_url_with_params(base_uri: str, params: dict[str, Optional[str]]) -> str:
    """
    Append or replace query parameters on base_uri, keeping the rest of its
    query (blank values and repeated keys included) untouched.
    """
    url = urlparse(base_uri)
    new_params = {k: v for k, v in params.items() if v is not None}
    query = [(k, v) for k, v in parse_qsl(url.query, keep_blank_values=True) if k not in new_params]
    query.extend(new_params.items())
    return urlunparse(url._replace(query=urlencode(query)))


def supported_auth_methods() -> list[str]:
    methods = [TokenEndpointAuthMethod.NONE.value]
    if Settings.OAUTH_ALLOW_CONFIDENTIAL_CLIENTS:
        methods += [
            TokenEndpointAuthMethod.CLIENT_SECRET_POST.value,
            TokenEndpointAuthMethod.CLIENT_SECRET_BASIC.value,
        ]
    return methods


def hash_client_secret(client_secret: str) -> str:
    return hashlib.sha256(client_secret.encode("utf-8")).hexdigest()


# --- Discovery ---

def authorization_server_metadata() -> dict:
    challenge_methods = [CodeChallengeMethod.S256.value]
    if Settings.OAUTH_ALLOW_PLAIN_PKCE_FALLBACK:
        challenge_methods.append(CodeChallengeMethod.PLAIN.value)
    return {
        "issuer": public_base_url(),
        "authorization_endpoint": oauth_url("authorize"),
        "token_endpoint": oauth_url("token"),
        "registration_endpoint": oauth_url("register"),
        "scopes_supported": Settings.OAUTH_DEFAULT_SCOPE.split(),
        "response_types_supported": SUPPORTED_RESPONSE_TYPES,
        "grant_types_supported": ["authorization_code"],
        "code_challenge_methods_supported": challenge_methods,
        "token_endpoint_auth_methods_supported": supported_auth_methods(),
    }


def protected_resource_metadata() -> dict:
    return {
        "resource": public_url(Settings.MCP_RESOURCE_PATH),
        "authorization_servers": [public_base_url()],
        "scopes_supported": Settings.OAUTH_DEFAULT_SCOPE.split(),
        "bearer_methods_supported": ["header"],
    }


@publicRouter.get("/.well-known/oauth-authorization-server")
async def oauth_authorization_server():
    """
    ## OAuth 2.0 Authorization Server Metadata (RFC 8414)

    Points MCP clients at this server's own /authorize, /token and /register.
    A pure function of configuration: no state, no authentication.
    """
    logger.debug("Serving OAuth authorization server metadata")
    return JSONResponse(content=authorization_server_metadata(), headers=DISCOVERY_HEADERS)


@publicRouter.get("/.well-known/oauth-protected-resource")
@publicRouter.get("/.well-known/oauth-protected-resource/{resource_path:path}")
async def oauth_protected_resource(resource_path: str = ""):
    """
    ## Protected Resource Metadata (RFC 9728)

    Tells clients that this server protects the MCP endpoint and is also its
    authorization server. The path-suffixed form
    (`/.well-known/oauth-protected-resource/mcp`) serves the same document.
    """
    logger.debug("Serving OAuth protected resource metadata")
    return JSONResponse(content=protected_resource_metadata(), headers=DISCOVERY_HEADERS)


@publicRouter.options("/.well-known/oauth-authorization-server")
@publicRouter.options("/.well-known/oauth-protected-resource")
@publicRouter.options("/.well-known/oauth-protected-resource/{resource_path:path}")
async def discovery_preflight(resource_path: str = ""):
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=DISCOVERY_HEADERS)


@publicRouter.get("/health")
async def health():
    return {
        "status": "ok",
        "service": Settings.SERVICE_NAME,
        "version": Settings.SERVICE_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# --- Dynamic Client Registration ---

def _is_acceptable_redirect_uri(uri: str) -> bool:
    """Absolute URI without fragment; http(s) URIs need a host, native app schemes do not."""
    parsed = urlparse(uri)
    if not parsed.scheme or parsed.fragment:
        return False
    if parsed.scheme in ("http", "https"):
        return bool(parsed.netloc)
    return True


@authRouter.post("/register", status_code=status.HTTP_201_CREATED)
async def register_client(payload: ClientRegistrationRequest):
    """
    ## Dynamic Client Registration (RFC 7591)

    Public clients (`none`, PKCE only) get a client_id. Confidential clients
    (`client_secret_post` / `client_secret_basic`) also get a client_secret,
    returned here and never again: only its hash is stored.

    All validation happens before anything is written, so a rejected request
    leaves no partial record.
    """
    logger.info(f"Received client registration request with client_name: {payload.client_name}")

    redirect_uris = payload.redirect_uris or []
    if not redirect_uris:
        raise OAuthError("invalid_redirect_uri", "redirect_uris is required and must be a non-empty array")
    bad_uris = [uri for uri in redirect_uris if not _is_acceptable_redirect_uri(uri)]
    if bad_uris:
        raise OAuthError("invalid_redirect_uri", f"Invalid redirect URIs: {', '.join(bad_uris)}")

    grant_types = payload.grant_types or ["authorization_code"]
    unsupported = [gt for gt in grant_types if gt not in REGISTRABLE_GRANT_TYPES]
    if unsupported:
        raise OAuthError("invalid_grant_type", f"Unsupported grant types: {', '.join(unsupported)}")
    if "authorization_code" not in grant_types:
        raise OAuthError("invalid_grant_type", "grant_types must include authorization_code")

    response_types = payload.response_types or list(SUPPORTED_RESPONSE_TYPES)
    if any(rt not in SUPPORTED_RESPONSE_TYPES for rt in response_types):
        raise OAuthError("invalid_client_metadata", 'Only the "code" response type is supported')

    requested_method = payload.token_endpoint_auth_method or TokenEndpointAuthMethod.NONE.value
    if requested_method not in supported_auth_methods():
        raise OAuthError(
            "invalid_client_metadata",
            f"Unsupported token_endpoint_auth_method. Supported: {', '.join(supported_auth_methods())}",
        )
    auth_method = TokenEndpointAuthMethod(requested_method)

    client_secret = secrets.token_urlsafe(32) if auth_method.is_confidential else None
    client = RegisteredClient(
        client_id=f"mcp_{secrets.token_hex(16)}",
        client_name=payload.client_name or "MCP Client",
        redirect_uris=redirect_uris,
        grant_types=grant_types,
        response_types=response_types,
        scope=payload.scope,
        token_endpoint_auth_method=auth_method,
        client_secret_hash=hash_client_secret(client_secret) if client_secret else None,
        issued_at=int(datetime.now(timezone.utc).timestamp()),
    )

    with store_errors("client registration"):
        registered_clients_store.set(client.client_id, client)

    logger.info(f"Client registered successfully: client_id={client.client_id}, auth_method={auth_method.value}")

    document = {
        "client_id": client.client_id,
        "client_name": client.client_name,
        "redirect_uris": client.redirect_uris,
        "grant_types": client.grant_types,
        "response_types": client.response_types,
        "token_endpoint_auth_method": auth_method.value,
        "client_id_issued_at": client.issued_at,
    }
    if client.scope:
        document["scope"] = client.scope
    if client_secret:
        document["client_secret"] = client_secret
        document["client_secret_expires_at"] = 0
    return JSONResponse(content=document, status_code=status.HTTP_201_CREATED, headers=NO_STORE_HEADERS)


# --- Authorization (upstream redirect builder) ---

def _resolve_client_pkce(code_challenge: Optional[str], code_challenge_method: Optional[str]) -> tuple[str, CodeChallengeMethod]:
    """
    Strict by default: an S256 challenge is required. With
    OAUTH_ALLOW_PLAIN_PKCE_FALLBACK the server also accepts `plain` (explicit or
    implied by a missing method) and, when the challenge is missing entirely,
    substitutes one of its own. A substituted challenge binds the code to a
    secret the client does not hold, so such a flow cannot be redeemed at /token.
    """
    lenient = Settings.OAUTH_ALLOW_PLAIN_PKCE_FALLBACK

    if not code_challenge:
        if not lenient:
            raise OAuthError.invalid_request("PKCE is required. Must include code_challenge with S256 method")
        logger.warning("Authorization request without PKCE; substituting a server generated plain challenge")
        return generate_code_verifier(), CodeChallengeMethod.PLAIN

    method = parse_challenge_method(code_challenge_method, allow_plain=lenient)
    if method is None:
        raise OAuthError.invalid_request("Unsupported code_challenge_method. Must be S256")
    if not is_well_formed_challenge(code_challenge, method):
        raise OAuthError.invalid_request("Malformed code_challenge")
    if method is CodeChallengeMethod.PLAIN:
        logger.warning("Accepting plain PKCE challenge (lenient mode)")
    return code_challenge, method


@authRouter.get("/authorize")
async def authorize(
        response_type: Optional[str] = Query(None),
        client_id: Optional[str] = Query(None),
        redirect_uri: Optional[str] = Query(None),
        scope: Optional[str] = Query(None),
        state: Optional[str] = Query(None),
        code_challenge: Optional[str] = Query(None),
        code_challenge_method: Optional[str] = Query(None),
    ):
    """
    ## OAuth 2.0 Authorization Endpoint

    Validates the client request, parks it under a fresh state token and sends
    the browser to Supabase. Every validation failure happens before the store
    is written, and is answered with a JSON error instead of a redirect since
    the redirect URI is not trusted yet.

    Process:
    1. Parameter validation: redirect_uri present, response_type == code.
    2. Client binding: a registered client_id may only use its registered
       redirect URIs. Unknown client ids are accepted unless
       OAUTH_REQUIRE_REGISTERED_CLIENT is set.
    3. PKCE: S256 challenge required (see `_resolve_client_pkce`).
    4. PendingAuthorization stored under a 256 bit state token, TTL
       OAUTH_STATE_TTL_SECONDS.
    5. 302 to Supabase /auth/v1/authorize, redirect_to = our /callback?state=...
    """
    logger.info(
        f"Authorization request: client_id={client_id}, redirect_uri={redirect_uri}, "
        f"response_type={response_type}, has_code_challenge={bool(code_challenge)}"
    )

    if not redirect_uri:
        raise OAuthError.invalid_request("Missing required parameter: redirect_uri")

    if response_type != "code":
        raise OAuthError("unsupported_response_type", 'Only "code" response type is supported')

    effective_client_id = client_id or Settings.OAUTH_DEFAULT_CLIENT_ID
    with store_errors("authorization client lookup"):
        client = registered_clients_store.get(client_id) if client_id else None

    if client is not None and redirect_uri not in client.redirect_uris:
        logger.warning(f"Authorization request with unregistered redirect_uri for client_id: {client_id}")
        raise OAuthError.invalid_request("redirect_uri is not registered for this client")
    if client is None and Settings.OAUTH_REQUIRE_REGISTERED_CLIENT:
        logger.warning(f"Authorization request from unknown client_id: {client_id}")
        raise OAuthError.invalid_request("Unknown client_id")

    challenge, method = _resolve_client_pkce(code_challenge, code_challenge_method)
    upstream = get_upstream_client()

    state_token = secrets.token_urlsafe(32)
    upstream_verifier = generate_code_verifier() if Settings.UPSTREAM_FLOW == "pkce" else None
    now = datetime.now(timezone.utc)

    pending = PendingAuthorization(
        state_token=state_token,
        client_state=state,
        client_id=effective_client_id,
        redirect_uri=redirect_uri,
        scope=scope or (client.scope if client and client.scope else Settings.OAUTH_DEFAULT_SCOPE),
        code_challenge=challenge,
        code_challenge_method=method,
        upstream_code_verifier=upstream_verifier,
        created_at=now,
        expires_at=now + timedelta(seconds=Settings.OAUTH_STATE_TTL_SECONDS),
    )
    with store_errors("pending authorization write"):
        pending_authorizations_store.set(state_token, pending, ttl_in_sec=Settings.OAUTH_STATE_TTL_SECONDS)

    logger.info(f"Created pending authorization {redact(state_token)} for client_id: {effective_client_id}")

    callback_url = build_url_with_params(oauth_url("callback"), {"state": state_token})
    upstream_url = upstream.build_authorize_url(
        callback_url,
        code_challenge=s256_challenge(upstream_verifier) if upstream_verifier else None,
    )
    logger.debug(f"Redirecting to upstream login for state: {redact(state_token)}")
    return RedirectResponse(url=upstream_url, status_code=status.HTTP_302_FOUND)


# --- Upstream callback ---

def _error_page(request: Request, title: str, message: str, status_code: int):
    return templates.TemplateResponse(
        request,
        "error.html",
        {"title": title, "message": message},
        status_code=status_code,
        headers=NO_STORE_HEADERS,
    )


def _parse_expires_in(raw: Optional[str]) -> Optional[int]:
    if raw is None or not str(raw).isdigit():
        return None
    return int(raw)


async def _fail_from_upstream(request: Request, state: Optional[str], error: str, error_description: Optional[str]):
    """
    Upstream reported an error. The attempt is over: burn the state token so it
    cannot be replayed, and show a terminal page. No code is issued.
    """
    logger.error(f"Upstream authentication error for state {redact(state)}: {error} {error_description or ''}")
    if state:
        try:
            pending_authorizations_store.take(state)
        except redis.RedisError:
            logger.error("Could not discard pending authorization after upstream error", exc_info=True)
    return _error_page(
        request,
        "Authentication Failed",
        f"{error_description or error}. Please start the connection again from your application.",
        status.HTTP_400_BAD_REQUEST,
    )


async def _complete_callback(
    request: Request,
    state: str,
    *,
    upstream_code: Optional[str],
    access_token: Optional[str],
    refresh_token: Optional[str],
    expires_in: Optional[str],
    redirect_status: int,
):
    """
    Shared by the GET (upstream redirect) and POST (fragment bridge) callbacks.

    1. Take the PendingAuthorization. Missing or expired is a hard stop.
    2. Resolve a verified upstream session. The pending record is already gone,
       so a slow or failing upstream holds nothing hostage.
    3. Mint and store our code, then redirect to the client with code + state.
    """
    with store_errors("pending authorization take"):
        pending = pending_authorizations_store.take(state)

    if pending is None or pending.is_expired():
        logger.warning(f"Callback with unknown, consumed or expired state: {redact(state)}")
        raise OAuthError.invalid_request("State parameter not found or expired")

    logger.info(f"Callback accepted for state {redact(state)}, client_id: {pending.client_id}")

    try:
        upstream = get_upstream_client()
        if upstream_code:
            if not pending.upstream_code_verifier:
                raise UpstreamAuthError("Upstream returned a code for a flow without an upstream verifier")
            session = await upstream.exchange_code_for_session(upstream_code, pending.upstream_code_verifier)
        else:
            # Tokens that arrive directly are only trusted once upstream vouches for them
            user = await upstream.get_user(access_token)
            session = UpstreamSession(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_in=_parse_expires_in(expires_in),
                user=user,
            )
    except UpstreamAuthError:
        logger.error(f"Could not obtain a verified upstream session for client_id: {pending.client_id}", exc_info=True)
        return _error_page(
            request,
            "Authentication Failed",
            "We could not verify your sign-in with the identity provider. Please start the connection again from your application.",
            status.HTTP_502_BAD_GATEWAY,
        )

    logger.info(f"Upstream session obtained for user_id={session.user.id}, email={session.user.email}")

    new_code = secrets.token_urlsafe(32)
    now = datetime.now(timezone.utc)
    record = IssuedAuthorizationCode(
        code=new_code,
        upstream_access_token=session.access_token,
        upstream_refresh_token=session.refresh_token,
        upstream_expires_in=session.expires_in,
        code_challenge=pending.code_challenge,
        code_challenge_method=pending.code_challenge_method,
        redirect_uri=pending.redirect_uri,
        client_id=pending.client_id,
        scope=pending.scope,
        user_id=session.user.id,
        user_email=session.user.email,
        created_at=now,
        expires_at=now + timedelta(seconds=Settings.OAUTH_CODE_TTL_SECONDS),
    )
    try:
        authorization_codes_store.set(new_code, record, ttl_in_sec=Settings.OAUTH_CODE_TTL_SECONDS)
    except redis.RedisError:
        logger.error("Could not persist authorization code", exc_info=True)
        return _error_page(
            request,
            "Authentication Error",
            "Sign-in succeeded but the authorization could not be completed. Please try again.",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    logger.info(f"Authorization code {redact(new_code)} issued for client_id: {pending.client_id}")

    final_redirect_url = build_url_with_params(pending.redirect_uri, {"code": new_code, "state": pending.client_state})
    return RedirectResponse(url=final_redirect_url, status_code=redirect_status, headers=NO_STORE_HEADERS)


@authRouter.get("/callback")
async def upstream_callback(
    request: Request,
    state: Optional[str] = Query(None),
    code: Optional[str] = Query(None),
    access_token: Optional[str] = Query(None),
    refresh_token: Optional[str] = Query(None),
    expires_in: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
):
    """
    ## Upstream Callback (redirect from Supabase)

    Supabase sends the browser here after sign-in with our state token and
    either an upstream `code` (PKCE flow), the tokens themselves, or an error.

    In the implicit flow the tokens sit in the URL fragment, which never reaches
    the server. A request carrying only `state` therefore gets a small page that
    reads the fragment and posts it back to POST /callback. The page is only
    served for a live state in the implicit flow, and it does not consume it.
    """
    logger.info(f"Callback received: has_state={bool(state)}, has_code={bool(code)}, error={error}")

    if error:
        return await _fail_from_upstream(request, state, error, error_description)

    if not state:
        raise OAuthError.invalid_request("Missing state parameter")

    if not code and not access_token:
        # Only a live implicit-flow attempt gets the bridge; looking does not consume
        with store_errors("pending authorization lookup"):
            pending = pending_authorizations_store.get(state)
        if pending is None or pending.is_expired():
            logger.warning(f"Bridge requested for unknown, consumed or expired state: {redact(state)}")
            raise OAuthError.invalid_request("State parameter not found or expired")
        if Settings.UPSTREAM_FLOW != "implicit":
            logger.warning(f"Callback without upstream code for state: {redact(state)}")
            raise OAuthError.invalid_request("Missing code or access_token")
        return templates.TemplateResponse(
            request,
            "callback_bridge.html",
            {"state": state, "action": oauth_url("callback")},
            headers=NO_STORE_HEADERS,
        )

    return await _complete_callback(
        request,
        state,
        upstream_code=code,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
        redirect_status=status.HTTP_302_FOUND,
    )


@authRouter.post("/callback")
async def upstream_callback_post(
    request: Request,
    state: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    access_token: Optional[str] = Form(None),
    refresh_token: Optional[str] = Form(None),
    expires_in: Optional[str] = Form(None),
    error: Optional[str] = Form(None),
    error_description: Optional[str] = Form(None),
):
    """
    ## Upstream Callback (token bearing form post)

    Target of the fragment bridge page. Answers with 303 so the browser
    follows the redirect to the client with a GET.
    """
    logger.info(f"Callback post received: has_state={bool(state)}, has_token={bool(access_token)}, error={error}")

    if error:
        return await _fail_from_upstream(request, state, error, error_description)

    if not state:
        raise OAuthError.invalid_request("Missing state parameter")
    if not code and not access_token:
        raise OAuthError.invalid_request("Missing code or access_token")

    return await _complete_callback(
        request,
        state,
        upstream_code=code,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
        redirect_status=status.HTTP_303_SEE_OTHER,
    )


# --- Token exchange ---

def _client_credentials(request: Request, client_id: Optional[str], client_secret: Optional[str]) -> tuple[Optional[str], Optional[str], bool]:
    """
    Returns (client_id, client_secret, used_basic). HTTP Basic wins over form
    fields (RFC 6749 section 2.3.1).
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.lower().startswith("basic "):
        return client_id, client_secret, False
    try:
        decoded = base64.b64decode(auth_header.split(" ", 1)[1].strip(), validate=True).decode("utf-8")
        basic_id, basic_secret = decoded.split(":", 1)
    except (ValueError, binascii.Error, UnicodeDecodeError):
        raise OAuthError.invalid_client("Malformed HTTP Basic client credentials")
    return basic_id, basic_secret, True


def _authenticate_client(
    request: Request,
    client_id: Optional[str],
    client_secret: Optional[str],
    bound_client_id: Optional[str],
) -> Optional[str]:
    """
    Registered confidential clients must prove their secret with the method they
    registered. The client checked is the one the request names or, when it
    names none, the one the code was issued to, so leaving the credentials out
    does not skip authentication. Public and unregistered clients are
    identified by PKCE alone.
    """
    client_id, client_secret, used_basic = _client_credentials(request, client_id, client_secret)
    client_id = client_id or bound_client_id
    if not client_id:
        return None

    with store_errors("token client lookup"):
        client = registered_clients_store.get(client_id)
    if client is None or not client.token_endpoint_auth_method.is_confidential:
        return client_id

    expected_basic = client.token_endpoint_auth_method is TokenEndpointAuthMethod.CLIENT_SECRET_BASIC
    if used_basic != expected_basic or not client_secret:
        logger.warning(f"Client {client_id} did not authenticate with {client.token_endpoint_auth_method.value}")
        raise OAuthError.invalid_client("Client authentication failed")
    if not hmac.compare_digest(hash_client_secret(client_secret), client.client_secret_hash):
        logger.warning(f"Invalid client secret for client_id: {client_id}")
        raise OAuthError.invalid_client("Client authentication failed")
    return client_id


@authRouter.post("/token")
async def token_exchange(
    request: Request,
    grant_type: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    code_verifier: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    ):
    """
    ## OAuth 2.0 Token Endpoint (authorization_code + PKCE)

    Checks, in this order, stopping at the first failure:
    1. grant_type == authorization_code       -> unsupported_grant_type
       (confidential clients authenticate here -> invalid_client; a code
       issued to a confidential client needs that client's secret even when
       the request names no client)
    2. code present and known                 -> invalid_grant
    3. code not expired                       -> invalid_grant
    4. code_verifier present                  -> invalid_request
    5. verifier matches the recorded challenge, with the recorded method -> invalid_grant
    6. redirect_uri identical to the authorized one -> invalid_grant
       (and, when named, the same client_id  -> invalid_grant)

    The code is taken out of the store atomically in step 2, so it is spent no
    matter how the rest of the request goes, including a response that never
    reaches the client. A failed attempt burns the code; the client restarts
    from /authorize.
    """
    logger.info(
        f"Token exchange requested: grant_type={grant_type}, client_id={client_id}, "
        f"has_code={bool(code)}, has_verifier={bool(code_verifier)}"
    )

    if grant_type != "authorization_code":
        logger.warning(f"Unsupported grant type: {grant_type}")
        raise OAuthError("unsupported_grant_type", "Only authorization_code grant type is supported")

    # Peek without consuming: a client that fails authentication keeps its code
    bound_client_id = None
    if code:
        with store_errors("authorization code lookup"):
            issued = authorization_codes_store.get(code)
        bound_client_id = issued.client_id if issued else None

    authenticated_client_id = _authenticate_client(request, client_id, client_secret, bound_client_id)

    if not code:
        logger.warning("Token request without code")
        raise OAuthError.invalid_grant(INVALID_GRANT_DESCRIPTION)

    with store_errors("authorization code take"):
        record = authorization_codes_store.take(code)

    if record is None:
        logger.warning(f"Unknown or already used authorization code: {redact(code)}")
        raise OAuthError.invalid_grant(INVALID_GRANT_DESCRIPTION)

    if record.is_expired():
        logger.warning(f"Expired authorization code: {redact(code)}")
        raise OAuthError.invalid_grant(INVALID_GRANT_DESCRIPTION)

    if not code_verifier:
        logger.warning(f"Token request without code_verifier for code: {redact(code)}")
        raise OAuthError.invalid_request("code_verifier is required for PKCE")

    if not verify_code_verifier(code_verifier, record.code_challenge, record.code_challenge_method):
        logger.warning(f"PKCE verification failed for client_id: {record.client_id}")
        raise OAuthError.invalid_grant(INVALID_GRANT_DESCRIPTION)

    if redirect_uri != record.redirect_uri:
        logger.warning(f"redirect_uri mismatch for client_id: {record.client_id}")
        raise OAuthError.invalid_grant(INVALID_GRANT_DESCRIPTION)

    if authenticated_client_id and authenticated_client_id != record.client_id:
        logger.warning(f"Code issued to {record.client_id} presented by {authenticated_client_id}")
        raise OAuthError.invalid_grant(INVALID_GRANT_DESCRIPTION)

    logger.info(f"Token exchange successful for user_id={record.user_id}, email={record.user_email}")

    body = {
        "access_token": record.upstream_access_token,
        "token_type": "Bearer",
        "expires_in": record.upstream_expires_in or Settings.OAUTH_TOKEN_EXPIRES_IN,
        "scope": record.scope,
    }
    if record.upstream_refresh_token:
        body["refresh_token"] = record.upstream_refresh_token
    return JSONResponse(content=body, status_code=status.HTTP_200_OK, headers=NO_STORE_HEADERS)


# --- Protected resource guard ---

class AuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer token authentication for the protected resource.

    Discovery, health and every OAuth endpoint are public. Anything else needs
    `Authorization: Bearer <supabase access token>`; the token is checked against
    Supabase and the verified user is put on `request.state.user`.
    """

    def _unauthorized_response(self, detail: str, error: Optional[str] = "invalid_token") -> JSONResponse:
        """
        RFC 6750 section 3.1: a request without credentials gets the challenge
        but no error code (`error=None`).
        """
        resource_metadata = public_url("/.well-known/oauth-protected-resource")
        challenge = f'Bearer realm="OAuth", resource_metadata="{resource_metadata}"'
        content = {"error_description": detail}
        if error:
            challenge += f', error="{error}"'
            content = {"error": error, **content}
        return JSONResponse(
            status_code=HTTP_401_UNAUTHORIZED,
            content=content,
            headers={"WWW-Authenticate": challenge},
        )

    @staticmethod
    def is_public_path(path: str) -> bool:
        return (
            path in PUBLIC_PATHS
            or path.startswith(PUBLIC_PREFIXES)
            or path == Settings.OAUTH_PATH_PREFIX
            or path.startswith(Settings.OAUTH_PATH_PREFIX + "/")
        )

    async def dispatch(self, request: Request, call_next):

        path = request.url.path
        if request.method == "OPTIONS" or self.is_public_path(path):
            logger.debug(f"Bypassing authentication for path: {path}")
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        if not auth_header:
            logger.warning(f"Missing Authorization header for path: {path}")
            return self._unauthorized_response("Missing Authorization header", error=None)

        scheme, _, token = auth_header.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer":
            logger.warning(f"Invalid authorization scheme for path: {path}")
            return self._unauthorized_response("Authorization scheme must be Bearer")
        if not token:
            logger.warning(f"Empty token value for path: {path}")
            return self._unauthorized_response("Token value is empty")

        try:
            user = await get_upstream_client().get_user(token)
        except UpstreamAuthError as e:
            if e.status_code is None or e.status_code >= 500:
                logger.error(f"Token validation unavailable for path: {path}", exc_info=True)
                return JSONResponse(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    content={"error": "temporarily_unavailable", "error_description": "Token validation is temporarily unavailable"},
                )
            logger.warning(f"Token rejected by upstream for path: {path}")
            return self._unauthorized_response("Invalid or expired token")

        request.state.user = user
        logger.debug(f"Token validated for user_id={user.id} on path: {path}")
        return await call_next(request)
