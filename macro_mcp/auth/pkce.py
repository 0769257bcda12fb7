"""
PKCE (RFC 7636) helpers shared by the authorization and token endpoints.
"""

import base64
import hashlib
import hmac
import re
import secrets
from typing import Optional

from .models import CodeChallengeMethod


# Verifiers and S256 challenges share the unreserved alphabet. An S256 challenge is
# always 43 characters, verifiers are 43 to 128.
_PKCE_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
_PKCE_S256_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9\-_]{43}$")


def _base64url_no_pad(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def s256_challenge(code_verifier: str) -> str:
    return _base64url_no_pad(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_code_verifier() -> str:
    # 32 random bytes -> 43 base64url characters, the RFC 7636 minimum length
    return secrets.token_urlsafe(32)


def parse_challenge_method(method: Optional[str], allow_plain: bool) -> Optional[CodeChallengeMethod]:
    """
    Map the `code_challenge_method` query value to a supported method.
    Returns None when the method is not acceptable. An absent method means
    `plain` (RFC 7636 section 4.3), so it is only acceptable when plain is.
    """
    if method is None or method == "":
        return CodeChallengeMethod.PLAIN if allow_plain else None
    if method == CodeChallengeMethod.S256.value:
        return CodeChallengeMethod.S256
    if method == CodeChallengeMethod.PLAIN.value and allow_plain:
        return CodeChallengeMethod.PLAIN
    return None


def is_well_formed_challenge(code_challenge: str, method: CodeChallengeMethod) -> bool:
    if method is CodeChallengeMethod.S256:
        return bool(_PKCE_S256_CHALLENGE_RE.match(code_challenge))
    return bool(_PKCE_VERIFIER_RE.match(code_challenge))


def verify_code_verifier(code_verifier: str, code_challenge: str, method: CodeChallengeMethod) -> bool:
    """
    Recompute the challenge with the method recorded at issuance and compare in
    constant time. A verifier outside the RFC alphabet/length never matches.
    """
    if not _PKCE_VERIFIER_RE.match(code_verifier):
        return False
    if method is CodeChallengeMethod.S256:
        computed = s256_challenge(code_verifier)
    else:
        computed = code_verifier
    return hmac.compare_digest(computed.encode("utf-8"), code_challenge.encode("utf-8"))
