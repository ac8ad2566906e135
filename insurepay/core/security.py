# insurepay/core/security.py
from __future__ import annotations
import hmac
import time
from typing import Optional, Dict, Any, Tuple
import jwt
from fastapi import Header, HTTPException, status
from insurepay.core.settings import settings

ADMIN_TOKEN_TYPE = "admin_access"


def verify_jwt_token(token: str) -> Dict[str, Any]:
    options = {"require": ["exp"], "verify_signature": True}
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options=options,
        )
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {e}")


def check_access_code(candidate: str) -> bool:
    return hmac.compare_digest(candidate.encode("utf-8"), settings.ADMIN_ACCESS_CODE.encode("utf-8"))


def mint_admin_token(
    *,
    ttl_seconds: Optional[int] = None,
    extra_claims: Optional[Dict[str, Any]] = None,
) -> Tuple[str, int]:
    """
    Issue a short-lived admin session token. Returns (token, exp epoch seconds).
    """
    now = int(time.time())
    exp = now + (ttl_seconds if ttl_seconds is not None else settings.ADMIN_TOKEN_TTL_SECONDS)
    payload: Dict[str, Any] = {
        "type": ADMIN_TOKEN_TYPE,
        "iat": now,
        "exp": exp,
    }
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM), exp


def require_admin(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    """
    FastAPI dependency: every admin request carries its own bearer token,
    re-validated (signature, expiry, token type) on each call.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid Authorization header")
    token = authorization.split("Bearer ", 1)[1].strip()
    claims = verify_jwt_token(token)
    if claims.get("type") != ADMIN_TOKEN_TYPE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return claims
