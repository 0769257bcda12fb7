from typing import Optional
from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from macro_mcp.logging_util import get_logger


logger = get_logger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


class OAuthError(Exception):
    """
    An error reported to the caller in the RFC 6749 shape
    `{"error": ..., "error_description": ...}`.
    """

    def __init__(
        self,
        error: str,
        description: str,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        headers: Optional[dict[str, str]] = None,
    ):
        self.error = error
        self.description = description
        self.status_code = status_code
        self.headers = headers or {}
        super().__init__(f"{error}: {description}")

    @classmethod
    def invalid_request(cls, description: str) -> "OAuthError":
        return cls("invalid_request", description)

    @classmethod
    def invalid_grant(cls, description: str = "Authorization code is invalid or expired") -> "OAuthError":
        return cls("invalid_grant", description)

    @classmethod
    def invalid_client(cls, description: str) -> "OAuthError":
        return cls(
            "invalid_client",
            description,
            status_code=status.HTTP_401_UNAUTHORIZED,
            headers={"WWW-Authenticate": 'Basic realm="OAuth"'},
        )

    @classmethod
    def server_error(cls, description: str = "The server encountered an unexpected condition") -> "OAuthError":
        return cls("server_error", description, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code,
            content={"error": self.error, "error_description": self.description},
            headers={**NO_STORE_HEADERS, **self.headers},
        )


async def oauth_error_handler(request: Request, exc: OAuthError):
    logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.error}")
    return exc.to_response()


def _validation_error_code(path: str, invalid_fields: list[str]) -> str:
    if path.endswith("/register"):
        if any("redirect_uris" in field for field in invalid_fields):
            return "invalid_redirect_uri"
        if any("grant_types" in field for field in invalid_fields):
            return "invalid_grant_type"
        return "invalid_client_metadata"
    return "invalid_request"


async def validation_exception_handler(request: Request, exc: RequestValidationError):

    invalid_params = []
    for error in exc.errors():
        invalid_params.append({
            "field": ".".join(map(str, error["loc"])),  # e.g. "body.redirect_uris.0"
            "reason": error["msg"],
        })

    logger.warning(
        f"Validation failed for {request.method} {request.url.path}",
        extra={"errors": invalid_params},
    )

    fields = [p["field"] for p in invalid_params]
    description = "; ".join(f"{p['field']}: {p['reason']}" for p in invalid_params) or "Malformed request"
    return OAuthError(_validation_error_code(request.url.path, fields), description).to_response()


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return OAuthError.server_error().to_response()
