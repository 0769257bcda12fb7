import os
from urllib.parse import urljoin
from dotenv import load_dotenv

load_dotenv()


# Pending authorizations and issued codes never outlive this, whatever the env says.
MAX_AUTH_RECORD_TTL_SECONDS = 600


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_ttl(name: str, default: int) -> int:
    return min(int(os.getenv(name) or default), MAX_AUTH_RECORD_TTL_SECONDS)


class Settings:

    # General Settings
    PORT = int(os.getenv("PORT", "3000"))
    MCP_SERVER_PUBLIC_URL = os.getenv("MCP_SERVER_PUBLIC_URL") or os.getenv("BASE_URL") or f"http://localhost:{PORT}"
    OAUTH_PATH_PREFIX = "/" + os.getenv("OAUTH_PATH_PREFIX", "/oauth").strip("/")
    MCP_RESOURCE_PATH = "/" + os.getenv("MCP_RESOURCE_PATH", "/mcp").strip("/")
    SERVICE_NAME = "macro-mcp"
    SERVICE_VERSION = "2.0.0"

    ## Upstream identity provider (Supabase Auth)
    SUPABASE_URL = os.getenv("SUPABASE_URL", "")
    SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")
    UPSTREAM_PROVIDER = os.getenv("UPSTREAM_PROVIDER", "google")
    UPSTREAM_SCOPES = os.getenv("UPSTREAM_SCOPES", "openid email offline_access")
    UPSTREAM_FLOW = os.getenv("UPSTREAM_FLOW", "pkce").lower()  # "pkce" or "implicit"
    UPSTREAM_TIMEOUT_SECONDS = float(os.getenv("UPSTREAM_TIMEOUT_SECONDS") or 10)

    ## Authorization server
    OAUTH_STATE_TTL_SECONDS = _env_ttl("OAUTH_STATE_TTL_SECONDS", 600)
    OAUTH_CODE_TTL_SECONDS = _env_ttl("OAUTH_CODE_TTL_SECONDS", 600)
    OAUTH_TOKEN_EXPIRES_IN = int(os.getenv("OAUTH_TOKEN_EXPIRES_IN") or 3600)
    OAUTH_DEFAULT_CLIENT_ID = os.getenv("OAUTH_DEFAULT_CLIENT_ID", "mcp-client")
    OAUTH_DEFAULT_SCOPE = os.getenv("OAUTH_DEFAULT_SCOPE", "openid")
    OAUTH_ALLOW_PLAIN_PKCE_FALLBACK = _env_bool("OAUTH_ALLOW_PLAIN_PKCE_FALLBACK", False)
    OAUTH_ALLOW_CONFIDENTIAL_CLIENTS = _env_bool("OAUTH_ALLOW_CONFIDENTIAL_CLIENTS", True)
    OAUTH_REQUIRE_REGISTERED_CLIENT = _env_bool("OAUTH_REQUIRE_REGISTERED_CLIENT", False)

    ## Persistence
    STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory").lower()
    REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_PASSWORD = os.getenv("REDIS_PASSWORD") or None
    REDIS_DB = int(os.getenv("REDIS_DB", "0"))
    STORE_SWEEP_INTERVAL_SECONDS = int(os.getenv("STORE_SWEEP_INTERVAL_SECONDS") or 60)

    ## Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FILE = os.getenv("LOG_FILE") or None

    REQUIRED_VARS = ("SUPABASE_URL", "SUPABASE_ANON_KEY")

    @classmethod
    def validate(cls) -> None:
        """
        Fails fast at startup when the upstream identity provider is not configured.
        Not run at import time so that tests can patch attributes freely.
        """
        missing = [name for name in cls.REQUIRED_VARS if not getattr(cls, name)]
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
        if cls.UPSTREAM_FLOW not in ("pkce", "implicit"):
            raise RuntimeError(f"UPSTREAM_FLOW must be 'pkce' or 'implicit', got '{cls.UPSTREAM_FLOW}'")
        if cls.STORAGE_BACKEND not in ("memory", "redis"):
            raise RuntimeError(f"STORAGE_BACKEND must be 'memory' or 'redis', got '{cls.STORAGE_BACKEND}'")


def public_base_url() -> str:
    """
    The issuer identifier. No trailing slash: RFC 8414 clients compare it
    character for character.
    """
    return Settings.MCP_SERVER_PUBLIC_URL.rstrip("/")


def public_url(path: str) -> str:
    """
    Absolute URL of a path on this server, as seen by calling clients.
    """
    return urljoin(public_base_url() + "/", path.lstrip("/"))


def oauth_url(endpoint: str) -> str:
    return public_url(f"{Settings.OAUTH_PATH_PREFIX}/{endpoint}")
