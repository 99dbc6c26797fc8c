import json

from fastapi import Header, HTTPException, status
from pydantic import BaseModel

ADMIN_ROLE = "admin"


class Actor(BaseModel):
    user_id: str
    roles: list[str] = []

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in {r.lower() for r in self.roles}


async def get_actor(
    x_user_sub: str | None = Header(default=None),
    x_user_roles: str | None = Header(default=None),
) -> Actor:
    """Caller identity as forwarded by the gateway after it verified the token."""
    if not x_user_sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Sub header")

    roles = []
    if x_user_roles:
        try:
            roles = json.loads(x_user_roles)
        except json.JSONDecodeError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-User-Roles must be a JSON list")
        if not isinstance(roles, list):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-User-Roles must be a JSON list")

    return Actor(user_id=x_user_sub, roles=[str(r) for r in roles])


def require_admin(actor: Actor):
    if not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access forbidden for this role")
