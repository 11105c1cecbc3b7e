from __future__ import annotations

import logging
import secrets

from fastapi import Depends, HTTPException, Request, status

from .config import Settings, get_settings

logger = logging.getLogger("security")

SERVICE_TOKEN_HEADER = "X-Service-Token"


def verify_service_token(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    expected = settings.service_token
    if not expected:
        # No token configured: open access for local development, warn once per app.
        if not getattr(request.app.state, "service_token_warning", False):
            logger.warning("service token not configured; %s is unauthenticated", request.url.path)
            request.app.state.service_token_warning = True  # type: ignore[attr-defined]
        return

    provided = request.headers.get(SERVICE_TOKEN_HEADER, "")
    if not provided or not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid service token")
