"""API key authentication for the run status and control endpoints.

Authentication is optional and controlled by environment variable:

    - HOOKDEPLOY_API_KEY: When set, every ``/api`` endpoint requires
      ``Authorization: Bearer <key>``.  When unset, the endpoints are open
      (suitable for deployments behind a trusted network boundary).

Webhook endpoints are not covered; they authenticate deliveries with the
per-pipeline HMAC secret instead.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

API_KEY_ENV = "HOOKDEPLOY_API_KEY"

_bearer_scheme = HTTPBearer(auto_error=False)


def get_security_config() -> dict:
    """Get current security configuration status."""
    api_key = os.environ.get(API_KEY_ENV)
    return {
        "authentication_required": api_key is not None,
        "api_key_env_var": API_KEY_ENV,
    }


def generate_api_key() -> str:
    """Generate a key suitable for HOOKDEPLOY_API_KEY."""
    return secrets.token_urlsafe(32)


async def require_api_key(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> bool:
    """FastAPI dependency that validates the API key if one is configured.

    An empty-string key still enforces authentication (``is None`` check), so
    a blank variable never silently opens the endpoints.
    """
    expected_key = os.environ.get(API_KEY_ENV)
    if expected_key is None:
        return True

    client = request.client.host if request.client else "unknown"
    if credentials is None:
        logger.warning("API request without credentials from %s", client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required. Provide Authorization: Bearer <api_key> header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not secrets.compare_digest(credentials.credentials, expected_key):
        logger.warning("Invalid API key from %s", client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True
