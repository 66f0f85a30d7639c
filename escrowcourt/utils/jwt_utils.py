import os
import time
import logging
from typing import Optional, Dict, Any, Tuple

import jwt

logger = logging.getLogger(__name__)

ROLES = ("customer", "store", "admin")
ALGORITHM = "HS256"


def _secret() -> str:
    return os.getenv("SECRET_KEY") or "dev-secret-change-me"


def create_token(actor_id: str, role: str = "customer", ttl_seconds: int = 60 * 60 * 24) -> str:
    """Issue an actor token. Identity lives upstream; this exists for ops scripts and tests."""
    issued = int(time.time())
    claims = {
        "sub": str(actor_id),
        "role": (role or "customer").strip().lower(),
        "iat": issued,
        "exp": issued + int(ttl_seconds),
    }
    return jwt.encode(claims, _secret(), algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, _secret(), algorithms=[ALGORITHM], options={"require": ["sub", "exp"]})
    except jwt.PyJWTError as e:
        logger.info("token_rejected err=%s", e)
        return None


def get_bearer_token(auth_header: str) -> Optional[str]:
    scheme, _, token = (auth_header or "").strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def actor_from_payload(payload: Dict[str, Any] | None) -> Tuple[Optional[str], Optional[str]]:
    """(actor_id, role) from verified claims, or (None, None) for an unusable token."""
    if not payload:
        return None, None
    sub = str(payload.get("sub") or "").strip()
    role = str(payload.get("role") or "").strip().lower()
    if not sub or role not in ROLES:
        return None, None
    return sub[:64], role
