from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, model_validator


def ensure_aware_utc(dt: datetime) -> datetime:
    """
    Naive datetimes are treated as UTC so that records written by older
    code compare correctly against `datetime.now(timezone.utc)`.
    """
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class CodeChallengeMethod(str, Enum):
    S256 = "S256"
    PLAIN = "plain"


class TokenEndpointAuthMethod(str, Enum):
    NONE = "none"
    CLIENT_SECRET_POST = "client_secret_post"
    CLIENT_SECRET_BASIC = "client_secret_basic"

    @property
    def is_confidential(self) -> bool:
        return self is not TokenEndpointAuthMethod.NONE


class _ExpiringRecord(BaseModel):
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return ensure_aware_utc(self.expires_at) <= now


class PendingAuthorization(_ExpiringRecord):
    """
    One in-flight authorization attempt, keyed by `state_token` and consumed by the
    upstream callback.

    `redirect_uri` is kept as the exact string the client sent: the token endpoint
    compares it byte for byte, so it must not be normalized.
    """
    state_token: str
    client_state: Optional[str] = None
    client_id: str
    redirect_uri: str
    scope: str
    code_challenge: str
    code_challenge_method: CodeChallengeMethod
    # Verifier for the PKCE leg between this server and the upstream provider.
    # Unrelated to the calling client's challenge and never sent to the client.
    upstream_code_verifier: Optional[str] = None


class IssuedAuthorizationCode(_ExpiringRecord):
    code: str
    upstream_access_token: str
    upstream_refresh_token: Optional[str] = None
    upstream_expires_in: Optional[int] = None
    code_challenge: str
    code_challenge_method: CodeChallengeMethod
    redirect_uri: str
    client_id: str
    scope: str
    # Diagnostics only, never used for an authorization decision
    user_id: Optional[str] = None
    user_email: Optional[str] = None


class RegisteredClient(BaseModel):
    client_id: str
    client_name: Optional[str] = None
    redirect_uris: list[str]
    grant_types: list[str]
    response_types: list[str]
    scope: Optional[str] = None
    token_endpoint_auth_method: TokenEndpointAuthMethod
    # sha256 hex digest, present exactly for the secret based auth methods
    client_secret_hash: Optional[str] = None
    issued_at: int

    @model_validator(mode="after")
    def _secret_matches_auth_method(self):
        if self.token_endpoint_auth_method.is_confidential and not self.client_secret_hash:
            raise ValueError(f"{self.token_endpoint_auth_method.value} clients must carry a secret")
        if not self.token_endpoint_auth_method.is_confidential and self.client_secret_hash:
            raise ValueError("public clients must not carry a secret")
        if not self.redirect_uris:
            raise ValueError("redirect_uris must not be empty")
        return self


class ClientRegistrationRequest(BaseModel):
    """Body of POST /register (RFC 7591). Unknown metadata fields are ignored."""
    redirect_uris: Optional[list[str]] = None
    client_name: Optional[str] = None
    scope: Optional[str] = None
    grant_types: Optional[list[str]] = None
    response_types: Optional[list[str]] = None
    token_endpoint_auth_method: Optional[str] = None
