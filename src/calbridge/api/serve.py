"""API server for ``python -m calbridge serve``.

Builds the FastAPI app around one :class:`AuthorizationServer`, which the
lifespan initializes (persisted clients, expiry sweep) and shuts down.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calbridge import __version__
from calbridge.api.oauth2.errors import OAuthError
from calbridge.api.oauth2.server import AuthorizationServer, build_oauth_server
from calbridge.config import Settings, get_settings

logger = logging.getLogger(__name__)

_BUILTIN_ORIGINS = ["http://localhost:6274"]  # MCP Inspector


def create_api_app(
    settings: Settings | None = None, server: AuthorizationServer | None = None
) -> FastAPI:
    """Build the broker application.

    Pass *server* to supply a pre-wired AuthorizationServer (tests do this);
    otherwise one is built from *settings*.
    """
    from calbridge.api.v1 import mount_v1_routers
    from calbridge.api.v1.oauth2 import oauth_error_handler

    settings = settings or get_settings()
    oauth_server = server or build_oauth_server(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await oauth_server.initialize()
        try:
            yield
        finally:
            await oauth_server.shutdown()

    app = FastAPI(
        title="calbridge",
        description="OAuth broker for the calendar tool.",
        version=__version__,
        docs_url="/api/v1/docs",
        redoc_url="/api/v1/redoc",
        openapi_url="/api/v1/openapi.json",
        lifespan=lifespan,
    )
    app.state.oauth_server = oauth_server
    app.state.settings = settings

    # --- CORS -----------------------------------------------------------
    origins = list(set(_BUILTIN_ORIGINS + settings.api_cors_allowed_origins))
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    app.add_exception_handler(OAuthError, oauth_error_handler)

    mount_v1_routers(app)

    return app


def run_api_server(
    host: str = "127.0.0.1",
    port: int = 3000,
    dev: bool = False,
    settings: Settings | None = None,
) -> None:
    """Start the broker under uvicorn."""
    import uvicorn
    from rich.console import Console

    settings = settings or get_settings()
    console = Console(stderr=True)
    console.rule("[bold]calbridge OAuth broker")
    console.print(f"Issuer:   {settings.public_issuer_url}")
    console.print(f"Listening on http://{host}:{port}")
    console.print(f"API docs: http://{host}:{port}/api/v1/docs\n")

    if dev:
        import pathlib

        src_dir = str(pathlib.Path(__file__).resolve().parent.parent)
        uvicorn.run(
            "calbridge.api.serve:create_api_app",
            factory=True,
            host=host,
            port=port,
            reload=True,
            reload_dirs=[src_dir],
            reload_includes=["*.py"],
            log_level="debug",
        )
    else:
        app = create_api_app(settings)
        uvicorn.run(app, host=host, port=port, log_config=None)
