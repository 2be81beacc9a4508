"""Middleware: API key authentication."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from classifyx.config import Settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against CLASSIFYX_API_KEY, if one is configured."""
    settings: Settings = request.app.state.settings
    if settings.api_key is None:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), settings.api_key.encode()):
        logger.info("Rejected request to %s: bad or missing API key", request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
