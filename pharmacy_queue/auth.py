from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Depends, HTTPException, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pharmacy_queue.config import Settings, get_settings
from pharmacy_queue.domain import Actor

STAFF_ROLES = ("admin", "pharmacist")

_bearer = HTTPBearer(auto_error=False)


def actor_from_token(token: Optional[str], settings: Settings) -> Optional[Actor]:
    if not token:
        return None
    for known, account in settings.staff_tokens.items():
        if secrets.compare_digest(known, token):
            return Actor(user_id=account.user_id, role=account.role)
    return None


def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    settings: Settings = Depends(get_settings),
) -> Actor:
    """
    Resolve the bearer token to a staff account.

    Tokens are issued by the identity provider and mapped to accounts through
    ``settings.staff_tokens``.
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    actor = actor_from_token(credentials.credentials, settings)
    if actor is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return actor


def websocket_actor(
    websocket: WebSocket, settings: Settings, roles: tuple[str, ...] = STAFF_ROLES
) -> Optional[Actor]:
    """
    Staff account for a WebSocket handshake, or None.

    Browsers cannot set headers on a WebSocket, so a ``token`` query
    parameter is accepted next to ``Authorization: Bearer``.
    """
    token = websocket.query_params.get("token", "")
    scheme, _, credentials = websocket.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        token = credentials.strip()
    actor = actor_from_token(token, settings)
    if actor is None or actor.role not in roles:
        return None
    return actor


def require_roles(*roles: str):
    """
    Usage::

        @app.post("/x")
        def x(actor: Actor = Depends(require_roles("admin"))): ...
    """

    def dep(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"required_roles": list(roles), "role": actor.role},
            )
        return actor

    return dep


require_staff = require_roles(*STAFF_ROLES)
require_admin = require_roles("admin")
