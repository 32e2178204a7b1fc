"""Identity collaborator: turns a bearer token into a validated user id.

Sessions are issued elsewhere; this module only verifies HS256 tokens
and hands the ``sub`` claim to the finance services as the user id.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import jwt
from fastapi import Header, HTTPException

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "bearer "


@dataclass
class CurrentUser:
    id: str
    email: Optional[str] = None


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.lower().startswith(_BEARER_PREFIX):
        raise HTTPException(401, "Missing bearer token")
    token = authorization[len(_BEARER_PREFIX):].strip()
    if not token:
        raise HTTPException(401, "Missing bearer token")
    return token


def verify_token(token: str, settings: Settings) -> dict[str, Any]:
    """Decode *token*; the audience is checked only when one is configured."""
    if not settings.auth_jwt_secret:
        raise HTTPException(500, "AUTH_JWT_SECRET is not configured")

    audience = (settings.auth_jwt_audience or "").strip() or None
    try:
        return jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=["HS256"],
            audience=audience,
            options={"verify_aud": audience is not None},
        )
    except jwt.InvalidTokenError as exc:
        logger.debug("Token rejected: %s", exc)
        raise HTTPException(401, "Invalid token")


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    claims = verify_token(_bearer_token(authorization), get_settings())
    subject = claims.get("sub")
    if not subject:
        raise HTTPException(401, "Invalid token")
    return CurrentUser(id=str(subject), email=claims.get("email"))
