from __future__ import annotations

from fastapi import Header, HTTPException, Request

from zonetrust.services.kill_switch.engine import KillSwitchEngine


def get_engine(request: Request) -> KillSwitchEngine:
    # One engine per app; tests swap it by building the app with their own engine.
    return request.app.state.kill_switch_engine


def get_actor(x_actor_id: str | None = Header(default=None, alias="X-Actor-Id")) -> str:
    # Identity is resolved upstream; this service only requires that an actor is named.
    actor = (x_actor_id or "").strip()
    if not actor:
        raise HTTPException(
            status_code=401,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "X-Actor-Id header is required"},
        )
    return actor
