# API v1 router aggregation.
# Created: 2026-10-08
#
# mount_v1_routers(app) registers the domain routers at /api/v1/ and the
# OAuth router at the issuer root.

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)

# Domain routers, imported lazily inside mount_v1_routers() to avoid circular imports.
_V1_ROUTERS: list[tuple[str, str, str]] = [
    # (module_path, attr_name, tag)
    ("calbridge.api.v1.health", "router", "Health"),
    ("calbridge.api.v1.session", "router", "Session"),
]

_ROOT_ROUTERS: list[tuple[str, str, str]] = [
    ("calbridge.api.v1.oauth2", "router", "OAuth2"),
]


def mount_v1_routers(app: FastAPI) -> None:
    """Mount all routers on *app*.

    A router that fails to import is a broken install, so the error propagates.
    """
    import importlib

    from fastapi import APIRouter

    for prefix, routers in (("/api/v1", _V1_ROUTERS), ("", _ROOT_ROUTERS)):
        for module_path, attr_name, tag in routers:
            mod = importlib.import_module(module_path)
            router: APIRouter = getattr(mod, attr_name)
            app.include_router(router, prefix=prefix)
            logger.debug("Mounted router: %s (%s) at %r", module_path, tag, prefix or "/")
