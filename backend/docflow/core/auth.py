import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Header, HTTPException

from docflow.core.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class CurrentUser:
    id: str
    email: Optional[str] = None


def _decode_token(token: str, settings) -> dict:
    audience = (settings.supabase_jwt_audience or "").strip()
    kwargs = {"audience": audience} if audience else {}
    options = {"verify_aud": bool(audience)}
    return jwt.decode(
        token,
        settings.supabase_jwt_secret,
        algorithms=["HS256"],
        options=options,
        **kwargs,
    )


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    """Resolve the requesting user from a Supabase-issued HS256 bearer token.

    Exports and documents are owned by exactly one user, so every query
    downstream is scoped by ``CurrentUser.id``.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "Missing bearer token")

    settings = get_settings()
    if not settings.supabase_jwt_secret:
        raise HTTPException(500, "SUPABASE_JWT_SECRET is not configured")

    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = _decode_token(token, settings)
    except jwt.InvalidTokenError as exc:
        logger.debug("Token rejected: %s", exc)
        raise HTTPException(401, "Invalid token") from exc

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(401, "Invalid token")

    return CurrentUser(id=str(user_id), email=payload.get("email"))
