"""
Client for the upstream identity provider (Supabase Auth).

The authorization server needs exactly two things from upstream:

1.  A login URL that sends the browser through the social provider and back to
    a return address of our choosing (`build_authorize_url`).
2.  A verified end-user identity plus an access/refresh token pair once the user
    has authenticated. That is either `exchange_code_for_session` (PKCE flow: the
    callback carries an upstream code), or `get_user` on tokens that arrived
    directly (implicit flow).

`get_user` also validates bearer tokens presented to the protected resource.
"""

from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode
import httpx

from macro_mcp.config import Settings
from macro_mcp.logging_util import get_logger


logger = get_logger(__name__)


class UpstreamAuthError(Exception):
    """The identity provider rejected the request or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class UpstreamUser:
    id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class UpstreamSession:
    access_token: str
    refresh_token: Optional[str]
    expires_in: Optional[int]
    user: UpstreamUser


def _parse_user(payload: Any) -> UpstreamUser:
    if not isinstance(payload, dict) or not payload.get("id"):
        raise UpstreamAuthError("Upstream user payload has no id")
    return UpstreamUser(id=str(payload["id"]), email=payload.get("email"))


class SupabaseAuthClient:

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        provider: str = "google",
        scopes: str = "openid email offline_access",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.provider = provider
        self.scopes = scopes
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _headers(self, access_token: Optional[str] = None) -> dict[str, str]:
        headers = {"apikey": self.anon_key}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    def build_authorize_url(self, redirect_to: str, code_challenge: Optional[str] = None) -> str:
        params = {
            "provider": self.provider,
            "scopes": self.scopes,
            "redirect_to": redirect_to,
        }
        if code_challenge:
            # Supabase expects the method in lower case
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "s256"
        return f"{self.base_url}/auth/v1/authorize?{urlencode(params)}"

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Upstream {method} {path} failed with {e.response.status_code}: {e.response.text[:200]}")
            raise UpstreamAuthError(f"Upstream rejected {path}", status_code=e.response.status_code) from e
        except httpx.HTTPError as e:
            logger.error(f"Upstream {method} {path} unreachable: {e!r}")
            raise UpstreamAuthError(f"Upstream unreachable for {path}") from e
        except ValueError as e:
            raise UpstreamAuthError(f"Upstream returned a non-JSON body for {path}") from e
        if not isinstance(payload, dict):
            raise UpstreamAuthError(f"Upstream returned an unexpected body for {path}")
        return payload

    async def exchange_code_for_session(self, auth_code: str, code_verifier: str) -> UpstreamSession:
        payload = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "pkce"},
            json={"auth_code": auth_code, "code_verifier": code_verifier},
            headers=self._headers(),
        )
        access_token = payload.get("access_token")
        if not access_token:
            raise UpstreamAuthError("Upstream session has no access_token")
        expires_in = payload.get("expires_in")
        return UpstreamSession(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            user=_parse_user(payload.get("user")),
        )

    async def get_user(self, access_token: str) -> UpstreamUser:
        payload = await self._request("GET", "/auth/v1/user", headers=self._headers(access_token))
        return _parse_user(payload)


_upstream_client: Optional[SupabaseAuthClient] = None

def get_upstream_client() -> SupabaseAuthClient:
    """
    Process-wide client built from Settings on first use.
    """
    global _upstream_client
    if _upstream_client is None:
        if not Settings.SUPABASE_URL:
            raise RuntimeError("SUPABASE_URL is not set. Please set it to your Supabase project URL.")
        _upstream_client = SupabaseAuthClient(
            base_url=Settings.SUPABASE_URL,
            anon_key=Settings.SUPABASE_ANON_KEY,
            provider=Settings.UPSTREAM_PROVIDER,
            scopes=Settings.UPSTREAM_SCOPES,
            timeout=Settings.UPSTREAM_TIMEOUT_SECONDS,
        )
    return _upstream_client
