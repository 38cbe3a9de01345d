from __future__ import annotations

import logging
from typing import Optional

from fastapi import HTTPException, Request
from jose import JWTError, jwt

from . import config

log = logging.getLogger(__name__)


def parse_supabase_token(token: str, secret: str, audience: str = "authenticated") -> Optional[dict]:
    """Verify a Supabase access token (HS256) and return its claims, or None."""
    if not token or not secret:
        return None
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=audience,
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError:
        return None
    if not str(claims.get("sub") or "").strip():
        return None
    return claims


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization") or ""
    parts = auth_header.split()
    if len(parts) >= 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


async def get_current_user(request: Request) -> dict:
    """Return the authenticated dashboard user or raise 401."""
    if config.DISABLE_AUTH:
        return {"id": "dev", "email": None, "role": "authenticated"}
    if not config.SUPABASE_JWT_SECRET:
        log.warning("SUPABASE_JWT_SECRET is empty; admin routes reject every request")
    claims = parse_supabase_token(
        _bearer_token(request) or "",
        config.SUPABASE_JWT_SECRET,
        config.SUPABASE_JWT_AUDIENCE,
    )
    if not claims:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return {
        "id": str(claims["sub"]),
        "email": claims.get("email"),
        "role": claims.get("role"),
    }
