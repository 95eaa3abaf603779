"""
Actor identity handed over by the upstream auth gateway.

Tokens are verified before requests reach this service; the gateway forwards
the authenticated principal as X-Actor-Role / X-Actor-Id headers.
"""
from typing import Optional

from fastapi import Header, HTTPException, status
from pydantic import TypeAdapter, ValidationError

from models.domain_models import Actor

_actor_adapter = TypeAdapter(Actor)


def actor_from_headers(role: Optional[str], actor_id: Optional[str]) -> Actor:
    if not role or not actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing actor identity")
    role = role.strip().lower()
    try:
        return _actor_adapter.validate_python({"role": role, "id": actor_id})
    except ValidationError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Unknown actor role '{role}'")


def get_actor(
    x_actor_role: Optional[str] = Header(default=None, alias="X-Actor-Role"),
    x_actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
) -> Actor:
    return actor_from_headers(x_actor_role, x_actor_id)
