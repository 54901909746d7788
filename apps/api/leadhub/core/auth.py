from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from leadhub.core.config import get_settings

ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)

    def has_role(self, role: str) -> bool:
        return role in self.roles


def bearer_token(request: Request) -> str | None:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def decode_token(token: str) -> dict[str, Any] | None:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def user_from_claims(claims: dict[str, Any]) -> AuthUser:
    roles = claims.get("roles")
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=str(claims.get("sub") or ANONYMOUS_SUBJECT), roles=[str(role) for role in roles])


async def get_current_user(request: Request) -> AuthUser:
    # unauthenticated callers become guests; route-level checks decide what they may see
    token = bearer_token(request)
    claims = decode_token(token) if token else None
    if claims is None:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])
    return user_from_claims(claims)
