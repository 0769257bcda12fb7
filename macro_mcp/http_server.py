import asyncio
import contextlib
from typing import Optional
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp
import uvicorn

from macro_mcp.config import Settings
from macro_mcp.logging_util import configure_logging, get_logger
from macro_mcp.persistence import InMemoryProvider, ttl_cleanup_task
from macro_mcp.remote_auth import authRouter, publicRouter, AuthMiddleware, all_stores
from macro_mcp.utils.exceptions import (
    OAuthError,
    oauth_error_handler,
    validation_exception_handler,
    unhandled_exception_handler,
)


logger = get_logger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    # Redis expires keys itself; only process-local stores need sweeping
    in_memory = [store for store in all_stores() if isinstance(store, InMemoryProvider)]
    cleanup = None
    if in_memory:
        cleanup = asyncio.create_task(ttl_cleanup_task(in_memory, Settings.STORE_SWEEP_INTERVAL_SECONDS))
    logger.info(f"{Settings.SERVICE_NAME} authorization server starting, public URL {Settings.MCP_SERVER_PUBLIC_URL}")
    try:
        yield
    finally:
        if cleanup is not None:
            cleanup.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cleanup


def create_app(resource_app: Optional[ASGIApp] = None) -> FastAPI:
    """
    Build the authorization server. `resource_app` (the MCP transport) is mounted
    at Settings.MCP_RESOURCE_PATH behind bearer authentication.
    """
    app = FastAPI(title="macro-mcp authorization server", version=Settings.SERVICE_VERSION, lifespan=lifespan)

    app.add_exception_handler(OAuthError, oauth_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Last added runs first: CORS wraps auth so 401s still carry CORS headers
    app.add_middleware(AuthMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["WWW-Authenticate"],
    )

    app.include_router(publicRouter)
    app.include_router(authRouter, prefix=Settings.OAUTH_PATH_PREFIX)

    if resource_app is not None:
        app.mount(Settings.MCP_RESOURCE_PATH, resource_app)

    return app


app = create_app()


def main():
    Settings.validate()
    configure_logging(
        level=Settings.LOG_LEVEL,
        console_level=Settings.LOG_LEVEL,
        file_level="DEBUG",
        log_file=Settings.LOG_FILE,
        max_bytes=5 * 1024 * 1024,  # 5 MB
        backup_count=3,
    )
    uvicorn.run(app, host="0.0.0.0", port=Settings.PORT)


if __name__ == "__main__":
    main()
