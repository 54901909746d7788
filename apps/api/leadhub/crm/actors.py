from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from leadhub.core.config import get_settings


def coerce_user_uuid(value: str | uuid.UUID) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(value)
    except ValueError:
        return uuid.uuid5(uuid.NAMESPACE_URL, f"leadhub-actor:{value}")


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    roles: set[str] = field(default_factory=set)
    is_super_admin: bool = False
    correlation_id: str | None = None

    @property
    def user_uuid(self) -> uuid.UUID:
        return coerce_user_uuid(self.user_id)


def system_actor() -> ActorUser:
    """Actor recorded on writes that have no authenticated user behind them."""
    settings = get_settings()
    return ActorUser(
        user_id=settings.system_actor_user_id,
        roles={"system"},
        is_super_admin=True,
    )


SYSTEM_ACTOR = system_actor()


def resolve_actor(actor_user: ActorUser | None) -> ActorUser:
    if actor_user is None or not actor_user.user_id or actor_user.user_id == "anonymous":
        return SYSTEM_ACTOR
    return actor_user


def is_elevated(actor_user: ActorUser | None) -> bool:
    if actor_user is None:
        return False
    if actor_user.is_super_admin:
        return True
    elevated = {role.lower() for role in get_settings().elevated_roles}
    return any(role.lower() in elevated for role in actor_user.roles)
