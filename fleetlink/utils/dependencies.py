"""
Caller identity for the API.

Authentication happens upstream; requests carry the resolved caller in the
X-Actor-Id / X-Actor-Type headers.
"""

from typing import NamedTuple, Optional

from fastapi import Header, HTTPException, status

from .logging_config import actor_id_var

ACTOR_HEADER_TYPES = ("driver", "partner", "partner_staff", "platform_operator")


class Actor(NamedTuple):
    id: str
    type: str


async def get_current_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_type: Optional[str] = Header(None),
) -> Actor:
    if not x_actor_id or not x_actor_type:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-Id and X-Actor-Type headers are required",
        )
    if x_actor_type not in ACTOR_HEADER_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid X-Actor-Type. Must be one of: {', '.join(ACTOR_HEADER_TYPES)}",
        )
    actor = Actor(id=x_actor_id.strip(), type=x_actor_type)
    actor_id_var.set(actor.id)
    return actor
