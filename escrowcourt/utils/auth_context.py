from __future__ import annotations

from flask import g, request

from escrowcourt.errors import Unauthenticated
from escrowcourt.services.actors import Actor
from escrowcourt.utils.jwt_utils import actor_from_payload, decode_token, get_bearer_token


def capture_auth_context() -> None:
    """before_request hook: resolve the bearer token into g.auth_user_id / g.auth_role."""
    g.auth_user_id = None
    g.auth_role = None
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return
    actor_id, role = actor_from_payload(decode_token(token))
    if not actor_id:
        return
    g.auth_user_id = actor_id
    g.auth_role = role
    try:
        import sentry_sdk

        sentry_sdk.set_user({"id": actor_id})
        sentry_sdk.set_tag("auth_role", role)
    except Exception:
        pass


def current_actor() -> Actor:
    actor_id = getattr(g, "auth_user_id", None)
    role = getattr(g, "auth_role", None)
    if not actor_id or not role:
        raise Unauthenticated("Authentication required")
    return Actor(id=actor_id, role=role)
